"""Conflict detection and resolution.

The resolver compares a local operation with the origin's entity state and
returns a decision; it never reads or writes the operation log. Open
(deferred) conflicts are checkpointed to the store's settings so the
operations they hold can still be resolved after a restart. Strategies
live in a module-level registry so applications can add their own (for
example a domain-specific 3-way merge) with ``register_strategy``.
"""

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, FrozenSet, List, Optional, Tuple, Union

from offsync.errors import ConflictNotFoundError, StorageError
from offsync.events import EventBus, EventKind
from offsync.storage.base import OperationLogStore
from offsync.types import (
    Conflict,
    Operation,
    OperationKind,
    RemoteState,
    ResolutionAction,
    ResolutionOutcome,
)

logger = logging.getLogger(__name__)

# Bookkeeping keys that never make two entity snapshots meaningfully different
IGNORED_FIELDS = frozenset({"id", "version", "timestamp", "updated_at", "updatedAt"})

# Fields whose disagreement makes a conflict critical
CRITICAL_FIELDS = frozenset({"type", "status", "priority", "entity_type", "kind"})

# Maximum size for merged arrays to prevent resource exhaustion
MAX_MERGED_ARRAY_SIZE = 500

# Resolved conflict ids remembered for idempotent re-resolution
MAX_REMEMBERED_OUTCOMES = 1000

MANUAL = "manual"

# Settings key holding the open conflicts
OPEN_CONFLICTS_KEY = "open_conflicts"


def _strip_ignored(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if data is None:
        return None
    return {k: v for k, v in data.items() if k not in IGNORED_FIELDS}


def _hash(value: Any) -> str:
    return hashlib.sha256(json.dumps(value, sort_keys=True, default=str).encode("utf-8")).hexdigest()


def same_content(local: Optional[Dict[str, Any]], remote: Optional[Dict[str, Any]]) -> bool:
    """Whether two snapshots are equal once bookkeeping fields are ignored."""
    return _strip_ignored(local) == _strip_ignored(remote)


def conflicting_fields(local: Optional[Dict[str, Any]], remote: Optional[Dict[str, Any]]) -> List[str]:
    """Fields the local payload sets to a value the origin does not hold."""
    if not local or remote is None:
        return []
    return sorted(
        key
        for key, value in local.items()
        if key not in IGNORED_FIELDS and (key not in remote or remote[key] != value)
    )


def conflict_severity(fields: List[str], deleted: bool) -> str:
    if deleted or any(f in CRITICAL_FIELDS for f in fields):
        return "critical"
    if len(fields) > 3:
        return "high"
    if len(fields) > 1:
        return "medium"
    return "low"


def describe_conflict(kind: OperationKind, remote_deleted: bool, fields: List[str]) -> str:
    if kind == OperationKind.DELETE:
        return "Conflict: Entity was modified remotely while deleted locally"
    if remote_deleted:
        return "Conflict: Entity was deleted remotely while modified locally"
    if len(fields) == 1:
        return f"Conflict: Field '{fields[0]}' has conflicting values"
    if fields:
        return f"Conflict: {len(fields)} fields have conflicting values ({', '.join(fields)})"
    return "Conflict: Remote version changed since this operation was created"


# === Strategies ===


class ConflictStrategy(ABC):
    """Turns a conflict into a resolution outcome."""

    name: str = ""

    @abstractmethod
    def resolve(self, conflict: Conflict) -> ResolutionOutcome:
        ...

    def _apply_local(
        self, conflict: Conflict, data: Optional[Dict[str, Any]], decision: str
    ) -> ResolutionOutcome:
        return ResolutionOutcome(
            conflict_id=conflict.id,
            operation_id=conflict.operation_id,
            strategy=self.name,
            action=ResolutionAction.APPLY_LOCAL,
            resolved_data=data,
            remote_version=conflict.remote_version,
            policy_decision=decision,
        )

    def _discard_local(self, conflict: Conflict, decision: str) -> ResolutionOutcome:
        return ResolutionOutcome(
            conflict_id=conflict.id,
            operation_id=conflict.operation_id,
            strategy=self.name,
            action=ResolutionAction.DISCARD_LOCAL,
            resolved_data=conflict.remote_data,
            remote_version=conflict.remote_version,
            superseded_by=f"remote@{conflict.remote_version}",
            policy_decision=decision,
        )


def local_write_wins(conflict: Conflict) -> Tuple[bool, str]:
    """Decide which side wrote last. Returns (local_wins, policy_decision)."""
    remote_ts = conflict.remote_timestamp
    if remote_ts is None or conflict.local_timestamp > remote_ts:
        return True, "local_wins"
    if remote_ts > conflict.local_timestamp:
        return False, "remote_wins"
    # Equal timestamps: deterministic tie-break, smallest hash wins
    local_hash = _hash(_strip_ignored(conflict.local_data))
    remote_hash = _hash(_strip_ignored(conflict.remote_data))
    if remote_hash < local_hash:
        return False, "remote_wins_tie_hash"
    return True, "local_wins_tie_hash"


class LastWriteWins(ConflictStrategy):
    """The later write becomes canonical; the loser is not retried."""

    name = "last_write_wins"

    def resolve(self, conflict: Conflict) -> ResolutionOutcome:
        local_wins, decision = local_write_wins(conflict)
        if local_wins:
            return self._apply_local(conflict, conflict.local_data, decision)
        return self._discard_local(conflict, decision)


class FieldMerge(ConflictStrategy):
    """Merge disjoint field changes; overlapping fields fall back to last-write-wins.

    When the conflict carries a base snapshot, both sides' changes are
    computed against it (3-way). Otherwise every field in the local payload
    counts as a local change. Overlapping dicts merge recursively and lists
    merge as a union.
    """

    name = "field_merge"

    def resolve(self, conflict: Conflict) -> ResolutionOutcome:
        local = conflict.local_data
        remote = conflict.remote_data
        if conflict.kind == OperationKind.DELETE or local is None or remote is None:
            # Nothing to merge field by field
            local_wins, decision = local_write_wins(conflict)
            if local_wins:
                return self._apply_local(conflict, local, decision)
            return self._discard_local(conflict, decision)

        base = conflict.base_state
        if base is not None:
            local_changed = {k for k, v in local.items() if base.get(k) != v}
            remote_changed = {
                k for k in set(remote) | set(base) if remote.get(k) != base.get(k)
            }
        else:
            local_changed = set(local)
            remote_changed = set(remote)
        local_changed -= IGNORED_FIELDS

        overlap = {k for k in local_changed & remote_changed if local[k] != remote.get(k)}
        local_wins, decision = local_write_wins(conflict) if overlap else (True, "disjoint")

        merged = dict(remote)
        for key in local_changed - overlap:
            merged[key] = local[key]
        for key in overlap:
            merged[key] = _merge_values(local[key], remote[key], local_wins)

        if same_content(merged, remote):
            return self._discard_local(conflict, f"merged_{decision}")
        return self._apply_local(conflict, merged, f"merged_{decision}")


def _merge_values(local: Any, remote: Any, local_wins: bool) -> Any:
    if isinstance(local, dict) and isinstance(remote, dict):
        merged = dict(remote)
        for key, value in local.items():
            if key in remote and remote[key] != value:
                merged[key] = _merge_values(value, remote[key], local_wins)
            else:
                merged[key] = value
        return merged
    if isinstance(local, list) and isinstance(remote, list):
        first, second = (local, remote) if local_wins else (remote, local)
        merged_list = list(first)
        for item in second:
            if item not in merged_list:
                merged_list.append(item)
        if len(merged_list) > MAX_MERGED_ARRAY_SIZE:
            logger.warning(
                f"Merged array truncated from {len(merged_list)} to {MAX_MERGED_ARRAY_SIZE} items"
            )
        return merged_list[:MAX_MERGED_ARRAY_SIZE]
    return local if local_wins else remote


class ServerWins(ConflictStrategy):
    name = "server_wins"

    def resolve(self, conflict: Conflict) -> ResolutionOutcome:
        return self._discard_local(conflict, "remote_wins")


class ClientWins(ConflictStrategy):
    name = "client_wins"

    def resolve(self, conflict: Conflict) -> ResolutionOutcome:
        return self._apply_local(conflict, conflict.local_data, "local_wins")


class Manual(ConflictStrategy):
    """Defer to a collaborator; the operation is held until resolve_manual()."""

    name = MANUAL

    def resolve(self, conflict: Conflict) -> ResolutionOutcome:
        return ResolutionOutcome(
            conflict_id=conflict.id,
            operation_id=conflict.operation_id,
            strategy=self.name,
            action=ResolutionAction.DEFER,
            remote_version=conflict.remote_version,
        )


_STRATEGIES: Dict[str, ConflictStrategy] = {}


def register_strategy(strategy: ConflictStrategy) -> None:
    """Register (or replace) a strategy under its ``name``."""
    if not strategy.name:
        raise ValueError("Conflict strategies need a name")
    _STRATEGIES[strategy.name] = strategy


def get_strategy(name: str) -> ConflictStrategy:
    try:
        return _STRATEGIES[name]
    except KeyError:
        raise ValueError(f"Unknown conflict strategy: {name}") from None


def strategy_names() -> FrozenSet[str]:
    return frozenset(_STRATEGIES)


for _strategy in (LastWriteWins(), FieldMerge(), ServerWins(), ClientWins(), Manual()):
    register_strategy(_strategy)


# === Resolver ===


class ConflictResolver:
    """Detects conflicts and produces idempotent resolutions.

    Args:
        strategies: Strategy name per entity type.
        default_strategy: Strategy for entity types without an entry.
        enabled: When False every conflict is deferred to a collaborator.
        max_history: Number of resolutions kept for inspection.
        store: Where open conflicts are checkpointed, if anywhere.
    """

    def __init__(
        self,
        strategies: Optional[Dict[str, str]] = None,
        default_strategy: str = "last_write_wins",
        enabled: bool = True,
        max_history: int = 100,
        store: Optional[OperationLogStore] = None,
    ):
        self.events = EventBus()
        self.store = store
        self._lock = threading.RLock()
        self._open: Dict[str, Conflict] = {}  # Deferred conflicts by id
        self._outcomes: "OrderedDict[str, ResolutionOutcome]" = OrderedDict()
        self._resolved_operations: Dict[str, str] = {}  # operation id -> conflict id
        self._history: Deque[ResolutionOutcome] = deque(maxlen=max_history)
        self.configure(strategies or {}, default_strategy, enabled)

    def configure(self, strategies: Dict[str, str], default_strategy: str, enabled: bool) -> None:
        for name in [default_strategy, *strategies.values()]:
            get_strategy(name)
        with self._lock:
            self.strategies = dict(strategies)
            self.default_strategy = default_strategy
            self.enabled = enabled

    def strategy_for(self, entity_type: str) -> str:
        if not self.enabled:
            return MANUAL
        return self.strategies.get(entity_type, self.default_strategy)

    # === Detection ===

    def already_applied(self, op: Operation, remote: RemoteState) -> bool:
        """Whether the origin already holds what the operation would write."""
        if op.kind == OperationKind.DELETE:
            return remote.data is None
        if op.kind == OperationKind.SYNC:
            return True
        return remote.data is not None and same_content(op.payload, remote.data)

    def detect(self, op: Operation, remote: RemoteState) -> Optional[Conflict]:
        """Return the conflict between ``op`` and the origin's state, if any.

        The conflict id is derived from the divergence itself, so detecting
        the same divergence twice returns an equal conflict.
        """
        if self.already_applied(op, remote):
            return None

        if op.base_version is not None and remote.version is not None:
            diverged = op.base_version != remote.version
        elif remote.updated_at is not None:
            diverged = remote.updated_at > op.created_at
        else:
            # The origin reported a conflict without version information
            diverged = True
        if not diverged:
            return None

        conflict_id = _hash(
            {
                "operation": op.id,
                "remote_version": remote.version,
                "local": op.payload,
                "remote": remote.data,
            }
        )
        with self._lock:
            existing = self._open.get(conflict_id)
            if existing is not None:
                return existing
            is_new = conflict_id not in self._outcomes

            remote_deleted = remote.data is None
            fields = conflicting_fields(op.payload, remote.data)
            conflict = Conflict(
                id=conflict_id,
                operation_id=op.id,
                entity_type=op.entity_type,
                entity_id=op.entity_id,
                kind=op.kind,
                local_data=op.payload,
                remote_data=remote.data,
                local_version=op.base_version,
                remote_version=remote.version,
                local_timestamp=op.created_at,
                remote_timestamp=remote.updated_at,
                fields=fields,
                severity=conflict_severity(
                    fields, remote_deleted or op.kind == OperationKind.DELETE
                ),
                description=describe_conflict(op.kind, remote_deleted, fields),
                base_state=op.metadata.get("base_state") if op.metadata else None,
            )

        if is_new:
            logger.info(
                f"Conflict on {op.entity_type}/{op.entity_id} "
                f"(op={op.id}, severity={conflict.severity}): {conflict.description}"
            )
            self.events.publish(EventKind.CONFLICT_DETECTED, conflict=conflict)
        return conflict

    # === Resolution ===

    def resolve(
        self, conflict: Conflict, strategy: Optional[str] = None, resolved_by: str = "auto"
    ) -> ResolutionOutcome:
        """Resolve a conflict with its configured strategy (or ``strategy``).

        Resolving a conflict that already has an outcome returns that same
        outcome and emits nothing. Deferred conflicts stay open.
        """
        with self._lock:
            cached = self._outcomes.get(conflict.id)
            if cached is not None:
                return cached

            name = strategy or self.strategy_for(conflict.entity_type)
            outcome = get_strategy(name).resolve(conflict)
            if outcome.action == ResolutionAction.DEFER:
                self._open[conflict.id] = conflict
                self._persist_open()
                logger.info(f"Conflict {conflict.id[:12]} deferred for manual resolution")
                return outcome

            outcome.resolved_by = resolved_by
            self._record(conflict, outcome)

        self.events.publish(EventKind.CONFLICT_RESOLVED, resolution=outcome)
        return outcome

    def resolve_manual(
        self, operation_id: str, resolution: Union[str, Dict[str, Any]]
    ) -> ResolutionOutcome:
        """Resolve the open conflict holding ``operation_id``.

        Args:
            operation_id: The held operation.
            resolution: A strategy name, or the resolved entity data to send.

        Raises:
            ConflictNotFoundError: if no conflict holds the operation.
        """
        if isinstance(resolution, str) and resolution == MANUAL:
            raise ValueError("A manual resolution needs a strategy name or data")

        with self._lock:
            conflict = self.get_conflict_for_operation(operation_id)
            if conflict is None:
                previous = self._resolved_operations.get(operation_id)
                if previous is not None and previous in self._outcomes:
                    return self._outcomes[previous]
                raise ConflictNotFoundError(operation_id)

        if isinstance(resolution, str):
            return self.resolve(conflict, strategy=resolution, resolved_by="user")

        with self._lock:
            if conflict.id in self._outcomes:
                return self._outcomes[conflict.id]
            outcome = ResolutionOutcome(
                conflict_id=conflict.id,
                operation_id=operation_id,
                strategy=MANUAL,
                action=ResolutionAction.APPLY_LOCAL,
                resolved_data=dict(resolution),
                remote_version=conflict.remote_version,
                policy_decision="user_data",
                resolved_by="user",
            )
            self._record(conflict, outcome)

        self.events.publish(EventKind.CONFLICT_RESOLVED, resolution=outcome)
        return outcome

    def _record(self, conflict: Conflict, outcome: ResolutionOutcome) -> None:
        if self._open.pop(conflict.id, None) is not None:
            self._persist_open()
        self._outcomes[conflict.id] = outcome
        while len(self._outcomes) > MAX_REMEMBERED_OUTCOMES:
            self._outcomes.popitem(last=False)
        self._resolved_operations[conflict.operation_id] = conflict.id
        self._history.append(outcome)
        logger.info(
            f"Resolved conflict {conflict.id[:12]} on {conflict.entity_type}/{conflict.entity_id} "
            f"with {outcome.strategy}: {outcome.action.value} ({outcome.policy_decision})"
        )

    # === Persistence ===

    def _persist_open(self) -> None:
        """Checkpoint the open conflicts. Callers hold the lock."""
        if self.store is None:
            return
        try:
            self.store.save_setting(
                OPEN_CONFLICTS_KEY, [conflict.to_dict() for conflict in self._open.values()]
            )
        except StorageError as e:
            logger.error(f"Could not persist open conflicts: {e}", exc_info=True)

    def load(self) -> int:
        """Restore the open conflicts checkpointed by a previous run."""
        if self.store is None:
            return 0
        restored = 0
        with self._lock:
            for data in self.store.load_setting(OPEN_CONFLICTS_KEY, []):
                try:
                    conflict = Conflict.from_dict(data)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping unreadable open conflict: {e}")
                    continue
                self._open[conflict.id] = conflict
                restored += 1
        if restored:
            logger.info(f"Restored {restored} open conflicts")
        return restored

    # === Inspection ===

    def open_conflicts(self) -> List[Conflict]:
        with self._lock:
            return list(self._open.values())

    @property
    def has_open_conflicts(self) -> bool:
        with self._lock:
            return bool(self._open)

    def get_conflict_for_operation(self, operation_id: str) -> Optional[Conflict]:
        with self._lock:
            for conflict in self._open.values():
                if conflict.operation_id == operation_id:
                    return conflict
        return None

    def discard(self, operation_id: str) -> Optional[Conflict]:
        """Drop the open conflict for an operation without resolving it."""
        with self._lock:
            conflict = self.get_conflict_for_operation(operation_id)
            if conflict is not None:
                del self._open[conflict.id]
                self._persist_open()
            return conflict

    def clear(self) -> List[Conflict]:
        """Drop every open conflict. Returns what was dropped."""
        with self._lock:
            dropped = list(self._open.values())
            self._open.clear()
            if dropped:
                self._persist_open()
        return dropped

    def resolution_history(self) -> List[ResolutionOutcome]:
        with self._lock:
            return list(self._history)

    def strategies_available(self) -> List[str]:
        return sorted(strategy_names())
