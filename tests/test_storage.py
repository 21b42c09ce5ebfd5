"""
Storage port tests. The ``store`` fixture runs each shared test against the
local SQLAlchemy backend and the replicated backend (fake Firebase).
"""

import json
import threading

import pytest

from clinicflow.database import write_slot
from clinicflow.errors import BackendUnavailableError, ConflictError, NotFoundError, ValidationError
from clinicflow.models import AppUser
from clinicflow.storage.replicated import apply_event, iter_sse, to_entities

from conftest import BASE_URL, make_patient, make_tablet_line, make_visit


def staff(uid="u1", username="nadia", role="dispenser"):
    return AppUser(id=uid, name="Nadia Fawzy", username=username, password="pw", role=role)


# ── Tests: shared contract ───────────────────────────────────────────

def test_created_patient_is_listed_unchanged(store):
    patient = make_patient()
    store.create_patient(patient)
    assert store.list_patients() == [patient]


def test_duplicate_patient_id_is_rejected(store):
    store.create_patient(make_patient())
    with pytest.raises(ConflictError):
        store.create_patient(make_patient(name="Someone Else"))
    assert len(store.list_patients()) == 1


def test_visit_round_trip_keeps_medications_and_referral(store):
    store.create_patient(make_patient())
    visit = make_visit(medications=[make_tablet_line()], referral="Cardiology")
    store.create_visit(visit)
    assert store.list_visits() == [visit]


def test_visit_for_unknown_patient_is_rejected(store):
    with pytest.raises(NotFoundError):
        store.create_visit(make_visit(patient_id="ghost"))
    assert store.list_visits() == []


def test_visit_with_unknown_status_is_rejected(store):
    store.create_patient(make_patient())
    with pytest.raises(ValidationError):
        store.create_visit(make_visit(status="cancelled"))


def test_duplicate_visit_id_is_rejected(store):
    store.create_patient(make_patient())
    store.create_visit(make_visit())
    with pytest.raises(ConflictError):
        store.create_visit(make_visit())


def test_dispensing_changes_status_once(store):
    store.create_patient(make_patient())
    store.create_visit(make_visit())

    assert store.set_visit_status("v1", "dispensed") is True
    assert store.set_visit_status("v1", "dispensed") is False
    assert store.list_visits()[0].status == "dispensed"


def test_status_cannot_move_backwards(store):
    store.create_patient(make_patient())
    store.create_visit(make_visit(status="dispensed"))
    with pytest.raises(ValidationError):
        store.set_visit_status("v1", "prescribed")
    assert store.list_visits()[0].status == "dispensed"


def test_status_of_unknown_visit(store):
    with pytest.raises(NotFoundError):
        store.set_visit_status("nope", "dispensed")


def test_users_create_and_delete(store):
    store.create_user(staff())
    assert [u.username for u in store.list_users()] == ["nadia"]
    store.delete_user("u1")
    assert store.list_users() == []


def test_duplicate_username_is_rejected(store):
    store.create_user(staff())
    with pytest.raises(ConflictError):
        store.create_user(staff(uid="u2"))


def test_bootstrap_username_cannot_be_created(store):
    with pytest.raises(ConflictError):
        store.create_user(staff(uid="u9", username="admin"))


def test_bootstrap_account_cannot_be_deleted(store):
    with pytest.raises(ValidationError):
        store.delete_user("temp-admin")


def test_deleting_unknown_user(store):
    with pytest.raises(NotFoundError):
        store.delete_user("missing")


# ── Tests: local store ───────────────────────────────────────────────

def test_local_store_persists_across_instances(tmp_path):
    from clinicflow.database import init_engine
    from clinicflow.storage.local import LocalDurableStore

    uri = f"sqlite:///{tmp_path / 'clinic.db'}"
    first = LocalDurableStore(init_engine(uri))
    first.create_patient(make_patient())
    first.close()

    second = LocalDurableStore(init_engine(uri))
    assert second.list_patients() == [make_patient()]
    second.close()


def test_local_corrupt_slot_reads_as_empty(local_store):
    write_slot(local_store.engine, "minya_diabetes_patients", "{not json")
    assert local_store.list_patients() == []

    local_store.create_patient(make_patient())
    assert local_store.list_patients() == [make_patient()]


def test_local_skips_malformed_records(local_store):
    good = make_patient().to_dict()
    write_slot(local_store.engine, "minya_diabetes_patients", json.dumps([{"age": 3}, good]))
    assert local_store.list_patients() == [make_patient()]


def test_local_subscribe_delivers_one_snapshot(local_store):
    local_store.create_patient(make_patient())
    received = []
    sub = local_store.subscribe("patients", received.append)
    assert received == [[make_patient()]]

    sub.cancel()
    sub.cancel()
    assert sub.cancelled


# ── Tests: replicated store wire format ──────────────────────────────

def test_replicated_writes_hit_keyed_paths(replicated_store, firebase):
    replicated_store.create_patient(make_patient())
    replicated_store.create_visit(make_visit())
    replicated_store.set_visit_status("v1", "dispensed")

    writes = [(m, url) for m, url, _ in firebase.calls if m != "GET"]
    assert writes == [
        ("PUT", f"{BASE_URL}/patients/p1.json"),
        ("PUT", f"{BASE_URL}/visits/v1.json"),
        ("PATCH", f"{BASE_URL}/visits/v1.json"),
    ]
    assert firebase.tree["visits"]["v1"]["status"] == "dispensed"
    assert firebase.tree["patients"]["p1"]["nationalId"] == "29801011234567"


def test_replicated_delete_user(replicated_store, firebase):
    replicated_store.create_user(staff())
    replicated_store.delete_user("u1")
    assert ("DELETE", f"{BASE_URL}/users/u1.json", None) in firebase.calls
    assert firebase.tree["users"] == {}


def test_replicated_offline_raises_and_flags_disconnected(replicated_store, firebase):
    firebase.offline = True
    with pytest.raises(BackendUnavailableError):
        replicated_store.list_patients()
    assert replicated_store.connected is False

    firebase.offline = False
    replicated_store.list_patients()
    assert replicated_store.connected is True


def test_replicated_sends_auth_token(firebase):
    from clinicflow.storage.replicated import ReplicatedStore

    store = ReplicatedStore(BASE_URL, auth_token="secret", http=firebase)
    assert store._params() == {"auth": "secret"}


def test_to_entities_fills_id_from_key_and_accepts_arrays():
    data = make_patient().to_dict()
    del data["id"]
    assert to_entities("patients", {"p1": data}) == [make_patient()]
    assert [p.id for p in to_entities("patients", [None, make_patient(pid="1").to_dict()])] == ["1"]


def test_iter_sse_groups_events():
    lines = [
        "event: put",
        'data: {"path": "/", "data": {"a": 1}}',
        "",
        ": keep-alive comment",
        "event: keep-alive",
        "data: null",
        "",
    ]
    assert list(iter_sse(lines)) == [
        ("put", {"path": "/", "data": {"a": 1}}),
        ("keep-alive", None),
    ]


def test_apply_event_root_child_and_patch():
    mirror = {}
    apply_event(mirror, "put", {"path": "/", "data": {"v1": {"status": "prescribed"}}})
    apply_event(mirror, "put", {"path": "/v2", "data": {"status": "prescribed"}})
    apply_event(mirror, "patch", {"path": "/v1", "data": {"status": "dispensed"}})
    assert mirror == {"v1": {"status": "dispensed"}, "v2": {"status": "prescribed"}}

    apply_event(mirror, "put", {"path": "/v2", "data": None})
    assert mirror == {"v1": {"status": "dispensed"}}

    apply_event(mirror, "put", {"path": "/", "data": None})
    assert mirror == {}


def _event(kind, path, data):
    return [f"event: {kind}", "data: " + json.dumps({"path": path, "data": data}), ""]


def test_stream_delivers_snapshot_after_each_event(replicated_store, firebase):
    p1, p2 = make_patient().to_dict(), make_patient(pid="p2", name="Hany").to_dict()
    firebase.stream_lines = _event("put", "/", {"p1": p1}) + _event("put", "/p2", p2)

    snapshots = []
    done = replicated_store._consume(
        f"{BASE_URL}/patients.json", "patients", snapshots.append, threading.Event(), {"response": None}
    )

    assert done is False
    assert [[p.id for p in snap] for snap in snapshots] == [["p1"], ["p1", "p2"]]
    assert firebase.calls[-1][2] == {"Accept": "text/event-stream"}


def test_stream_stops_on_auth_revoked(replicated_store, firebase):
    firebase.stream_lines = ["event: auth_revoked", "data: null", ""] + _event("put", "/", {})
    snapshots = []
    done = replicated_store._consume(
        f"{BASE_URL}/patients.json", "patients", snapshots.append, threading.Event(), {"response": None}
    )
    assert done is True
    assert snapshots == []
    assert replicated_store.connected is False


def test_stream_ignores_events_after_cancel(replicated_store, firebase):
    stop = threading.Event()
    stop.set()
    firebase.stream_lines = _event("put", "/", {"p1": make_patient().to_dict()})
    snapshots = []
    assert replicated_store._consume(
        f"{BASE_URL}/patients.json", "patients", snapshots.append, stop, {"response": None}
    ) is True
    assert snapshots == []


# ── Tests: backend selection ─────────────────────────────────────────

def test_init_store_unknown_backend_exits(capsys):
    from clinicflow.database import init_store

    with pytest.raises(SystemExit) as e:
        init_store("paper")
    assert e.value.code == 1
    assert "unknown STORAGE_BACKEND 'paper'" in capsys.readouterr().err


def test_init_store_replicated_reads_env(monkeypatch):
    from clinicflow.database import init_store

    monkeypatch.setenv("FIREBASE_DB_URL", BASE_URL + "/")
    monkeypatch.setenv("FIREBASE_AUTH_TOKEN", "tok")
    store = init_store("replicated")
    assert store.name == "replicated"
    assert store.base_url == BASE_URL
    assert store.auth_token == "tok"
    store.close()


# ── Tests: concurrent writers and subscription bookkeeping ───────────

def test_concurrent_creates_keep_every_patient(local_store):
    errors = []

    def register(worker):
        try:
            for j in range(10):
                local_store.create_patient(make_patient(pid=f"p{worker}-{j}"))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=register, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len({p.id for p in local_store.list_patients()}) == 80


def test_visit_with_wrong_quantity_is_rejected(store):
    store.create_patient(make_patient())
    line = make_tablet_line()
    line.quantity = "10 tablets"
    with pytest.raises(ValidationError, match="does not match"):
        store.create_visit(make_visit(medications=[line]))
    assert store.list_visits() == []


def test_cancelled_subscriptions_are_forgotten(firebase):
    from clinicflow.storage.replicated import ReplicatedStore
    from clinicflow.workflow import ClinicWorkflow

    store = ReplicatedStore(BASE_URL, http=firebase, retry_seconds=60)
    wf = ClinicWorkflow(store)
    for _ in range(5):
        wf.login("admin", "admin")
        assert len(store._subscriptions) == 3
        wf.logout()

    assert store._subscriptions == []
    store.close()
