# Durable State Store
# File: state_store.py

"""
Transactional record store shared by the fleet registry and order ledger.

Records are kept per collection and handed out as copies, so every mutation goes
through update()/compare_and_set(). Locks are per entity; callers that need to
hold several locks take them in the order drone -> order -> job.
"""

import copy
import json
import logging
import os
import threading
from collections import deque
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from errors import ConflictError, ErrorCodes, NotFoundError, PersistenceError
from models import BreakageEvent, Drone, Job, Order, to_dict

logger = logging.getLogger(__name__)

DRONES = 'drones'
ORDERS = 'orders'
JOBS = 'jobs'
BREAKAGE_EVENTS = 'breakage_events'

RECORD_TYPES = {
    DRONES: Drone,
    ORDERS: Order,
    JOBS: Job,
    BREAKAGE_EVENTS: BreakageEvent,
}

NOT_FOUND_CODES = {
    DRONES: ErrorCodes.DRONE_001,
    ORDERS: ErrorCodes.ORDER_001,
    JOBS: ErrorCodes.JOB_002,
    BREAKAGE_EVENTS: ErrorCodes.VALIDATION_001,
}


class StateStore:
    """In-process store with per-entity locking and optional JSON persistence"""

    def __init__(self, snapshot_path: Optional[str] = None, history_size: int = 100):
        self.snapshot_path = snapshot_path
        self.persistence_enabled = snapshot_path is not None
        self._tables: Dict[str, Dict[str, Any]] = {kind: {} for kind in RECORD_TYPES}
        self._table_lock = threading.RLock()
        self._entity_locks: Dict[tuple, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self.state_history = deque(maxlen=history_size)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def lock(self, kind: str, entity_id: str) -> threading.RLock:
        """Return the lock guarding a single record"""
        key = (kind, entity_id)
        with self._locks_guard:
            entity_lock = self._entity_locks.get(key)
            if entity_lock is None:
                entity_lock = threading.RLock()
                self._entity_locks[key] = entity_lock
            return entity_lock

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def add(self, kind: str, record) -> Any:
        with self._table_lock:
            table = self._tables[kind]
            if record.id in table:
                raise ConflictError(
                    NOT_FOUND_CODES[kind],
                    f"{kind[:-1]} {record.id} already exists"
                )
            table[record.id] = copy.deepcopy(record)
            self._record_change(kind, record.id, 'add', None)
        return copy.deepcopy(record)

    def get(self, kind: str, entity_id: Optional[str]):
        if entity_id is None:
            return None
        with self._table_lock:
            record = self._tables[kind].get(entity_id)
            return copy.deepcopy(record) if record is not None else None

    def require(self, kind: str, entity_id: Optional[str]):
        record = self.get(kind, entity_id)
        if record is None:
            raise NotFoundError(NOT_FOUND_CODES[kind])
        return record

    def find(self, kind: str, predicate: Optional[Callable[[Any], bool]] = None) -> List[Any]:
        with self._table_lock:
            records = list(self._tables[kind].values())
            return [copy.deepcopy(r) for r in records if predicate is None or predicate(r)]

    def count(self, kind: str) -> int:
        with self._table_lock:
            return len(self._tables[kind])

    def update(self, kind: str, record) -> Any:
        with self._table_lock:
            table = self._tables[kind]
            if record.id not in table:
                raise NotFoundError(NOT_FOUND_CODES[kind])
            previous = table[record.id]
            table[record.id] = copy.deepcopy(record)
            self._record_change(kind, record.id, 'update', previous)
        return record

    def delete(self, kind: str, entity_id: str):
        with self._table_lock:
            previous = self._tables[kind].pop(entity_id, None)
            if previous is None:
                raise NotFoundError(NOT_FOUND_CODES[kind])
            self._record_change(kind, entity_id, 'delete', previous)

    def compare_and_set(self, kind: str, entity_id: str, field_name: str,
                        expected: Any, changes: Dict[str, Any]):
        """
        Apply changes only if field_name still holds expected

        Returns:
            Updated copy of the record, or None when the condition failed
        """
        with self.lock(kind, entity_id):
            with self._table_lock:
                current = self._tables[kind].get(entity_id)
                if current is None:
                    raise NotFoundError(NOT_FOUND_CODES[kind])
                if getattr(current, field_name) != expected:
                    return None
                updated = copy.deepcopy(current)
                for name, value in changes.items():
                    setattr(updated, name, value)
                self._tables[kind][entity_id] = updated
                self._record_change(kind, entity_id, 'compare_and_set', current)
                return copy.deepcopy(updated)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """JSON-compatible copy of every collection"""
        with self._table_lock:
            return {
                kind: {rid: to_dict(record) for rid, record in table.items()}
                for kind, table in self._tables.items()
            }

    def restore(self) -> int:
        """
        Load collections from the snapshot file

        Returns:
            Number of records restored (0 if no snapshot exists)
        """
        if not self.snapshot_path or not os.path.exists(self.snapshot_path):
            return 0

        with open(self.snapshot_path) as f:
            data = json.load(f)

        restored = 0
        with self._table_lock:
            for kind, record_type in RECORD_TYPES.items():
                table = {}
                for rid, raw in (data.get(kind) or {}).items():
                    table[rid] = record_type.from_dict(raw)
                self._tables[kind] = table
                restored += len(table)

        logger.info(f"Restored {restored} records from {self.snapshot_path}")
        return restored

    def _record_change(self, kind: str, entity_id: str, action: str, previous):
        """
        Persist a change already applied to the table

        Called under the table lock. If the snapshot cannot be written the
        record is put back to previous (None removes it) and PersistenceError
        is raised, so memory never runs ahead of disk.
        """
        if self.persistence_enabled:
            try:
                self._persist_state()
            except OSError as e:
                if previous is None:
                    self._tables[kind].pop(entity_id, None)
                else:
                    self._tables[kind][entity_id] = previous
                logger.error(f"State persistence error on {action} {kind}/{entity_id}: {e}")
                raise PersistenceError(f"Could not persist {action} of {entity_id}: {e}") from e

        self.state_history.append({
            'timestamp': datetime.now(),
            'kind': kind,
            'id': entity_id,
            'action': action,
        })

    def _persist_state(self):
        tmp_path = f"{self.snapshot_path}.tmp"
        with open(tmp_path, 'w') as f:
            json.dump(self.snapshot(), f, default=str, indent=2)
        os.replace(tmp_path, self.snapshot_path)
