"""
Storage port – one contract over patients, visits and staff users.

Concrete backends implement the raw ``_read``/``_put``/``_patch_status``/
``_remove`` primitives; the create/duplicate/mutate rules live here so every
backend behaves the same way.
"""

import threading
from abc import ABC, abstractmethod
from typing import Callable, List

from clinicflow.config import BOOTSTRAP_USER_ID, BOOTSTRAP_USERNAME
from clinicflow.dosage import quantity_matches
from clinicflow.errors import ConflictError, NotFoundError, ValidationError
from clinicflow.models import (
    DISPENSED,
    PRESCRIBED,
    VISIT_STATUSES,
    AppUser,
    Patient,
    Visit,
)

PATIENTS = "patients"
VISITS = "visits"
USERS = "users"
COLLECTIONS = (PATIENTS, VISITS, USERS)

# allowed status transitions; anything else is a backward or unknown move
_TRANSITIONS = {
    (PRESCRIBED, DISPENSED),
}


class Subscription:
    """Cancellation handle returned by ``StoragePort.subscribe``."""

    def __init__(self, collection: str, on_cancel: Callable[[], None] = None):
        self.collection = collection
        self._on_cancel = on_cancel
        self._lock = threading.Lock()
        self.cancelled = False

    def cancel(self) -> None:
        with self._lock:
            if self.cancelled:
                return
            self.cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()


class StoragePort(ABC):
    """Abstract CRUD + subscription contract shared by both backends."""

    name = "abstract"

    def __init__(self):
        self.connected = True
        # held from each guard check through its write
        self._write_lock = threading.RLock()

    # ── Raw primitives (backend specific) ────────────────────────────

    @abstractmethod
    def _read(self, collection: str) -> list:
        """Return the collection as an ordered list of entities."""

    @abstractmethod
    def _put(self, collection: str, entity) -> None:
        """Store a new entity under its id."""

    @abstractmethod
    def _patch_status(self, visit_id: str, status: str) -> None:
        """Overwrite the status field of an existing visit."""

    @abstractmethod
    def _remove(self, collection: str, entity_id: str) -> None:
        """Delete an entity by id."""

    @abstractmethod
    def subscribe(self, collection: str, callback: Callable[[list], None]) -> Subscription:
        """Deliver the full collection to *callback* on every change."""

    def close(self) -> None:
        """Release backend resources."""

    # ── Patients ─────────────────────────────────────────────────────

    def list_patients(self) -> List[Patient]:
        return self._read(PATIENTS)

    def create_patient(self, patient: Patient) -> None:
        with self._write_lock:
            if any(p.id == patient.id for p in self._read(PATIENTS)):
                raise ConflictError(f"Patient id '{patient.id}' already exists.")
            self._put(PATIENTS, patient)

    # ── Visits ───────────────────────────────────────────────────────

    def list_visits(self) -> List[Visit]:
        return self._read(VISITS)

    def create_visit(self, visit: Visit) -> None:
        if visit.status not in VISIT_STATUSES:
            raise ValidationError(f"Unknown visit status '{visit.status}'.")
        for med in visit.medications:
            if not quantity_matches(med):
                raise ValidationError(
                    f"Quantity '{med.quantity}' for {med.name} does not match its dosing."
                )
        with self._write_lock:
            if not any(p.id == visit.patient_id for p in self._read(PATIENTS)):
                raise NotFoundError(f"No patient with id '{visit.patient_id}'.")
            if any(v.id == visit.id for v in self._read(VISITS)):
                raise ConflictError(f"Visit id '{visit.id}' already exists.")
            self._put(VISITS, visit)

    def set_visit_status(self, visit_id: str, status: str) -> bool:
        """Apply a status transition. Returns False when the visit already had *status*."""
        with self._write_lock:
            visit = next((v for v in self._read(VISITS) if v.id == visit_id), None)
            if visit is None:
                raise NotFoundError(f"No visit with id '{visit_id}'.")
            if visit.status == status:
                return False
            if (visit.status, status) not in _TRANSITIONS:
                raise ValidationError(
                    f"Visit '{visit_id}' cannot move from {visit.status} to {status}."
                )
            self._patch_status(visit_id, status)
            return True

    # ── Users ────────────────────────────────────────────────────────

    def list_users(self) -> List[AppUser]:
        return self._read(USERS)

    def create_user(self, user: AppUser) -> None:
        with self._write_lock:
            users = self._read(USERS)
            if any(u.id == user.id for u in users):
                raise ConflictError(f"User id '{user.id}' already exists.")
            if user.username == BOOTSTRAP_USERNAME or any(u.username == user.username for u in users):
                raise ConflictError(f"Username '{user.username}' is already taken.")
            self._put(USERS, user)

    def delete_user(self, user_id: str) -> None:
        if user_id == BOOTSTRAP_USER_ID:
            raise ValidationError("The bootstrap admin account cannot be deleted.")
        with self._write_lock:
            user = next((u for u in self._read(USERS) if u.id == user_id), None)
            if user is None:
                raise NotFoundError(f"No user with id '{user_id}'.")
            if user.username == BOOTSTRAP_USERNAME:
                raise ValidationError("The bootstrap admin account cannot be deleted.")
            self._remove(USERS, user_id)
