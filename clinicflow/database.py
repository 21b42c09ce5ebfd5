"""
Database engine initialisation, key/value slot table and backend selection.
"""

import os
import sys
from typing import Optional

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, select, text
from sqlalchemy.engine import Engine, make_url

from clinicflow.config import LOCAL_DB_URI, STORAGE_BACKEND, get_env

metadata = MetaData()

# One row per named slot; the payload is a JSON list of records.
kv_slots = Table(
    "kv_slots",
    metadata,
    Column("slot_key", String(128), primary_key=True),
    Column("payload", Text, nullable=False),
)


def init_engine(db_uri: Optional[str] = None) -> Engine:
    """Create a SQLAlchemy engine, make sure the slot table exists and verify the connection."""
    db_uri = db_uri or LOCAL_DB_URI
    url = make_url(db_uri)
    if url.drivername.startswith("sqlite") and url.database not in (None, "", ":memory:"):
        db_dir = os.path.dirname(url.database)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    engine = create_engine(db_uri, echo=False, future=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        metadata.create_all(engine)
    except Exception as e:
        print("ERROR: could not open local store:", e, file=sys.stderr)
        sys.exit(1)
    print("[init] Local store ready.")
    return engine


def read_slot(engine: Engine, key: str) -> Optional[str]:
    """Raw payload stored under *key*, or None when the slot is absent."""
    with engine.connect() as conn:
        return conn.execute(
            select(kv_slots.c.payload).where(kv_slots.c.slot_key == key)
        ).scalar_one_or_none()


def write_slot(engine: Engine, key: str, payload: str) -> None:
    """Replace the payload stored under *key*."""
    with engine.begin() as conn:
        updated = conn.execute(
            kv_slots.update().where(kv_slots.c.slot_key == key).values(payload=payload)
        ).rowcount
        if not updated:
            conn.execute(kv_slots.insert().values(slot_key=key, payload=payload))


def init_store(backend: Optional[str] = None):
    """Build the storage backend named by STORAGE_BACKEND ("local" or "replicated")."""
    backend = (backend or STORAGE_BACKEND).strip().lower()

    if backend == "local":
        from clinicflow.storage.local import LocalDurableStore

        return LocalDurableStore(init_engine())

    if backend == "replicated":
        from clinicflow.storage.replicated import ReplicatedStore

        base_url = get_env("FIREBASE_DB_URL")
        store = ReplicatedStore(base_url, auth_token=os.getenv("FIREBASE_AUTH_TOKEN"))
        print(f"[init] Replicated store at {base_url}")
        return store

    print(f"ERROR: unknown STORAGE_BACKEND '{backend}'", file=sys.stderr)
    sys.exit(1)
