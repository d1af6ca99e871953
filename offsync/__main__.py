from offsync.cli.__main__ import main

main()
