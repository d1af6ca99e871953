"""Command-line interface for offsync."""
