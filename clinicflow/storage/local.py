"""
Local durable store – single process, synchronous, one JSON list per slot.
"""

import json
import sys
from typing import Callable, Dict

from sqlalchemy.engine import Engine

from clinicflow.config import PATIENTS_SLOT, USERS_SLOT, VISITS_SLOT
from clinicflow.database import read_slot, write_slot
from clinicflow.models import ENTITY_TYPES
from clinicflow.storage.base import PATIENTS, USERS, VISITS, StoragePort, Subscription

SLOT_KEYS: Dict[str, str] = {
    PATIENTS: PATIENTS_SLOT,
    VISITS: VISITS_SLOT,
    USERS: USERS_SLOT,
}


class LocalDurableStore(StoragePort):
    """
    Storage port over SQLAlchemy key/value slots.

    There are no other writers, so ``subscribe`` hands over one snapshot and
    never fires again.
    """

    name = "local"

    def __init__(self, engine: Engine):
        super().__init__()
        self.engine = engine

    def _load_records(self, collection: str) -> list:
        key = SLOT_KEYS[collection]
        raw = read_slot(self.engine, key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError as e:
            print(f"[WARN] Slot {key} is corrupt, treating as empty: {e}", file=sys.stderr)
            return []
        if not isinstance(data, list):
            print(f"[WARN] Slot {key} does not hold a list, treating as empty", file=sys.stderr)
            return []
        return data

    def _read(self, collection: str) -> list:
        entity_cls = ENTITY_TYPES[collection]
        items = []
        for record in self._load_records(collection):
            try:
                items.append(entity_cls.from_dict(record))
            except (TypeError, ValueError, AttributeError) as e:
                print(f"[WARN] Skipping malformed {collection} record: {e}", file=sys.stderr)
        return items

    def _save_records(self, collection: str, records: list) -> None:
        write_slot(self.engine, SLOT_KEYS[collection], json.dumps(records, ensure_ascii=False))

    def _put(self, collection: str, entity) -> None:
        records = self._load_records(collection)
        records.append(entity.to_dict())
        self._save_records(collection, records)

    def _patch_status(self, visit_id: str, status: str) -> None:
        records = self._load_records(VISITS)
        for record in records:
            if isinstance(record, dict) and record.get("id") == visit_id:
                record["status"] = status
        self._save_records(VISITS, records)

    def _remove(self, collection: str, entity_id: str) -> None:
        records = [
            r for r in self._load_records(collection)
            if not (isinstance(r, dict) and r.get("id") == entity_id)
        ]
        self._save_records(collection, records)

    def subscribe(self, collection: str, callback: Callable[[list], None]) -> Subscription:
        callback(self._read(collection))
        return Subscription(collection)

    def close(self) -> None:
        self.engine.dispose()
