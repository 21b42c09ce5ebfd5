"""
Shared fixtures – both storage backends, with the replicated one talking to
an in-memory stand-in for the Firebase REST API.
"""

from urllib.parse import unquote

import pytest
import requests

from clinicflow.database import init_engine
from clinicflow.models import Patient, Visit, MedicationItem
from clinicflow.storage.local import LocalDurableStore
from clinicflow.storage.replicated import ReplicatedStore

BASE_URL = "https://clinic-test.firebaseio.com"


# ── Fakes ────────────────────────────────────────────────────────────

class FakeResponse:
    """Mimic the parts of requests.Response the store uses."""
    def __init__(self, status_code=200, payload=None, lines=None):
        self.status_code = status_code
        self._payload = payload
        self._lines = lines or []
        self.encoding = None
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._payload

    def iter_lines(self, decode_unicode=False):
        return iter(self._lines)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class FakeFirebase:
    """Keeps a JSON tree and answers REST calls against it like requests.Session."""
    def __init__(self, base_url=BASE_URL):
        self.base_url = base_url
        self.tree = {}
        self.calls = []
        self.offline = False
        self.stream_lines = []

    def _path(self, url):
        path = url[len(self.base_url) + 1:]
        assert path.endswith(".json")
        return [unquote(p) for p in path[:-len(".json")].split("/") if p]

    def request(self, method, url, params=None, timeout=None, json=None):
        self.calls.append((method, url, json))
        if self.offline:
            raise requests.ConnectionError("network is unreachable")

        keys = self._path(url)
        node = self.tree
        for k in keys[:-1]:
            node = node.setdefault(k, {})
        last = keys[-1]

        if method == "GET":
            return FakeResponse(payload=node.get(last))
        if method == "PUT":
            node[last] = json
            return FakeResponse(payload=json)
        if method == "PATCH":
            node.setdefault(last, {}).update(json)
            return FakeResponse(payload=json)
        if method == "DELETE":
            node.pop(last, None)
            return FakeResponse(payload=None)
        raise AssertionError(f"unexpected method {method}")

    def get(self, url, params=None, headers=None, stream=False, timeout=None):
        self.calls.append(("STREAM", url, headers))
        if self.offline:
            raise requests.ConnectionError("network is unreachable")
        return FakeResponse(lines=list(self.stream_lines))

    def close(self):
        pass


# ── Fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def local_store(tmp_path):
    store = LocalDurableStore(init_engine(f"sqlite:///{tmp_path / 'clinic.db'}"))
    yield store
    store.close()


@pytest.fixture
def firebase():
    return FakeFirebase()


@pytest.fixture
def replicated_store(firebase):
    return ReplicatedStore(BASE_URL, http=firebase, retry_seconds=0)


@pytest.fixture(params=["local", "replicated"])
def store(request):
    """Run a test once per backend; both must behave the same."""
    return request.getfixturevalue(f"{request.param}_store")


def make_patient(pid="p1", name="Mona Adel", national_id="29801011234567", age=52):
    return Patient(
        id=pid,
        name=name,
        national_id=national_id,
        age=age,
        gender="female",
        registration_date="2026-10-19T09:15:00",
    )


def make_visit(vid="v1", patient_id="p1", day="2026-10-19", medications=None, status="prescribed", referral=None):
    return Visit(
        id=vid,
        patient_id=patient_id,
        date=day,
        diagnosis="Type 2 Diabetes",
        medications=list(medications or []),
        referral=referral,
        doctor_name="Dr. Amr Al-Kadi",
        status=status,
    )


def make_tablet_line(name="Metformin 500mg"):
    return MedicationItem(
        name=name,
        type="tablet",
        dosage="Standard",
        units=0,
        frequency="3 times daily",
        duration="10 days",
        quantity="30 tablets",
    )
