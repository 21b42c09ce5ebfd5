"""
Clinic workflow – login, the per-role screens and the session carrying them.

A ``Session`` is built at login and torn down at logout. It owns the cached
copies of the storage collections (replaced only through ``pump()``, which
applies subscription events) and the role view, which owns the unsaved form.
"""

import math
import queue
import sys
import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Callable, Dict, List, Optional

from clinicflow.archive import archive_filename, export_archive_csv
from clinicflow.assistant import ClinicalAssistant
from clinicflow.config import (
    DEFAULT_DOCTOR_NAME,
    DEFAULT_DURATION_DAYS,
    DEFAULT_INSULIN_UNITS,
    PRINT_CARD_SECONDS,
    QR_CARD_SIZE,
)
from clinicflow.dosage import build_medication_item, infer_medication_type
from clinicflow.errors import AuthFailure, BackendUnavailableError, NotFoundError, ValidationError
from clinicflow.models import (
    DISPENSED,
    DISPENSER,
    GENDERS,
    INSULIN,
    MEDICATION_TYPES,
    PHYSICIAN,
    PRESCRIBED,
    REGISTRAR,
    ROLES,
    AppUser,
    DosingOrder,
    MedicationItem,
    Patient,
    Visit,
    generate_id,
)
from clinicflow.rbac import authenticate, build_policy, is_bootstrap, require
from clinicflow.storage.base import PATIENTS, USERS, VISITS, StoragePort

# ── States ───────────────────────────────────────────────────────────
UNAUTHENTICATED = "unauthenticated"
IDLE = "idle"
PRINTING_CARD = "printing_card"
MANAGING_STAFF = "managing_staff"
AWAITING_SELECTION = "awaiting_selection"
CHARTING = "charting"
LISTING = "listing"

NOT_CONNECTED = "Not connected to the clinic database."


def _today() -> str:
    return date.today().isoformat()


def _newest_first(visits: List[Visit]) -> List[Visit]:
    return sorted(visits, key=lambda v: (v.date, v.id), reverse=True)


def _to_int(value, label: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be a whole number.")


@dataclass
class CollectionReplaced:
    """Message posted by a subscription: *collection* now holds *items*."""
    collection: str
    items: list


@dataclass
class PatientDraft:
    name: str = ""
    national_id: str = ""
    age: Optional[int] = None
    gender: str = "male"


@dataclass
class ChartDraft:
    patient: Patient
    diagnosis: str = ""
    medications: List[MedicationItem] = field(default_factory=list)
    referral: Optional[str] = None


# ── Session ──────────────────────────────────────────────────────────

class Session:
    """Everything that belongs to one signed-in user."""

    def __init__(
        self,
        store: StoragePort,
        user: AppUser,
        policy,
        assistant: Optional[ClinicalAssistant] = None,
        today: Callable[[], str] = _today,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.user = user
        self.policy = policy
        self.today = today
        self.clock = clock
        self.cache: Dict[str, list] = {PATIENTS: [], VISITS: [], USERS: []}
        self.inbox: "queue.Queue[CollectionReplaced]" = queue.Queue()
        self.subscriptions = []
        self.assistant = (assistant or ClinicalAssistant(speaker=None)).open_session()
        self.notice = ""
        self.closed = False
        self.view = VIEWS[policy.role](self)

        for collection in self.view.collections:
            self._subscribe(collection)
        self.pump()

    # ── Subscriptions / cache ────────────────────────────────────────

    def _subscribe(self, collection: str) -> None:
        def deliver(items, collection=collection):
            self.inbox.put(CollectionReplaced(collection, list(items)))

        try:
            self.subscriptions.append(self.store.subscribe(collection, deliver))
        except BackendUnavailableError as e:
            print(f"[WARN] Could not subscribe to {collection}: {e}", file=sys.stderr)
            self.notice = NOT_CONNECTED

    def pump(self) -> int:
        """Apply pending subscription events to the cached collections."""
        applied = 0
        while True:
            try:
                event = self.inbox.get_nowait()
            except queue.Empty:
                break
            self.cache[event.collection] = event.items
            applied += 1
        return applied

    def reload(self) -> None:
        """Re-read the view's collections directly from the store."""
        readers = {
            PATIENTS: self.store.list_patients,
            VISITS: self.store.list_visits,
            USERS: self.store.list_users,
        }
        for collection in self.view.collections:
            try:
                self.cache[collection] = readers[collection]()
            except BackendUnavailableError as e:
                print(f"[WARN] Reload of {collection} failed: {e}", file=sys.stderr)
                self.notice = NOT_CONNECTED
                return

    def remember(self, collection: str, entity) -> None:
        items = [e for e in self.cache[collection] if e.id != entity.id]
        items.append(entity)
        self.cache[collection] = items

    def forget(self, collection: str, entity_id: str) -> None:
        self.cache[collection] = [e for e in self.cache[collection] if e.id != entity_id]

    def write(self, operation, *args):
        """Run a store write, flagging the connection indicator when it fails."""
        try:
            result = operation(*args)
        except BackendUnavailableError:
            self.notice = NOT_CONNECTED
            raise
        self.notice = ""
        return result

    # ── Read side ────────────────────────────────────────────────────

    @property
    def patients(self) -> List[Patient]:
        return self.cache[PATIENTS]

    @property
    def visits(self) -> List[Visit]:
        return self.cache[VISITS]

    @property
    def users(self) -> List[AppUser]:
        return self.cache[USERS]

    @property
    def connected(self) -> bool:
        return self.store.connected

    def find_patient(self, patient_id: str) -> Optional[Patient]:
        return next((p for p in self.patients if p.id == patient_id), None)

    def stats(self) -> Dict[str, int]:
        known = {p.id for p in self.patients}
        today = [v for v in self.visits if v.date == self.today() and v.patient_id in known]
        return {
            "today_patients": len({v.patient_id for v in today}),
            "pending_dispensing": sum(1 for v in today if v.status == PRESCRIBED),
        }

    def render(self) -> dict:
        self.pump()
        return {
            "user": self.user.public_dict(),
            "role": self.policy.role,
            "state": self.view.state,
            "connected": self.connected,
            "notice": self.notice,
            "stats": self.stats(),
            "view": self.view.render(),
        }

    # ── Teardown ─────────────────────────────────────────────────────

    def close(self) -> None:
        if self.closed:
            return
        for sub in self.subscriptions:
            sub.cancel()
        self.subscriptions = []
        self.assistant.release()
        self.inbox = queue.Queue()
        self.cache = {PATIENTS: [], VISITS: [], USERS: []}
        self.closed = True


# ── Registrar ────────────────────────────────────────────────────────

class RegistrarView:
    """Patient registration, card printing and staff management."""

    role = REGISTRAR
    collections = (PATIENTS, VISITS, USERS)

    def __init__(self, session: Session):
        self.session = session
        self.draft = PatientDraft()
        self.printing: Optional[Patient] = None
        self._print_started = 0.0
        self._staff_open = False

    @property
    def state(self) -> str:
        if self.printing is not None:
            if self.session.clock() - self._print_started < PRINT_CARD_SECONDS:
                return PRINTING_CARD
            self.clear_print()
        return MANAGING_STAFF if self._staff_open else IDLE

    # ── Patients ─────────────────────────────────────────────────────

    def register_patient(self, name=None, national_id=None, age=None, gender=None) -> Patient:
        require(self.session.policy, "register_patient")
        if name is not None:
            self.draft.name = str(name)
        if national_id is not None:
            self.draft.national_id = str(national_id)
        if age not in (None, ""):
            self.draft.age = _to_int(age, "Age")
        if gender:
            self.draft.gender = str(gender)

        name = self.draft.name.strip()
        national_id = self.draft.national_id.strip()
        if not name or not national_id:
            raise ValidationError("Patient name and national ID are required.")
        if self.draft.age is not None and self.draft.age < 0:
            raise ValidationError("Age cannot be negative.")
        if self.draft.gender not in GENDERS:
            raise ValidationError(f"Gender must be one of {', '.join(GENDERS)}.")

        taken = {p.id for p in self.session.patients}
        patient_id = generate_id()
        while patient_id in taken:
            patient_id = generate_id()

        patient = Patient(
            id=patient_id,
            name=name,
            national_id=national_id,
            age=self.draft.age or 0,
            gender=self.draft.gender,
            registration_date=datetime.now().isoformat(timespec="seconds"),
        )
        self.session.write(self.session.store.create_patient, patient)
        self.session.remember(PATIENTS, patient)
        self.draft = PatientDraft()
        self._start_print(patient)
        return patient

    def patients_listing(self) -> List[Patient]:
        return sorted(self.session.patients, key=lambda p: (p.registration_date, p.id), reverse=True)

    # ── Card printing ────────────────────────────────────────────────

    def _start_print(self, patient: Patient) -> None:
        self.printing = patient
        self._print_started = self.session.clock()

    def reprint(self, patient_id: str) -> Patient:
        require(self.session.policy, "print_card")
        patient = self.session.find_patient(patient_id)
        if patient is None:
            raise NotFoundError(f"No patient with id '{patient_id}'.")
        self._start_print(patient)
        return patient

    def clear_print(self) -> None:
        self.printing = None

    @property
    def card(self) -> Optional[dict]:
        """Payload for the card renderer; the QR code encodes the patient id."""
        if self.state != PRINTING_CARD:
            return None
        return {
            "patient_id": self.printing.id,
            "name": self.printing.name,
            "national_id": self.printing.national_id,
            "qr_value": self.printing.id,
            "size": QR_CARD_SIZE,
        }

    # ── Staff ────────────────────────────────────────────────────────

    def open_staff(self) -> None:
        require(self.session.policy, "manage_staff")
        self._staff_open = True

    def close_staff(self) -> None:
        self._staff_open = False

    def _require_staff_open(self) -> None:
        if not self._staff_open:
            raise ValidationError("Open staff management first.")

    def staff(self) -> List[AppUser]:
        return sorted(self.session.users, key=lambda u: u.username)

    def add_staff(self, name: str, username: str, password: str, role: str) -> AppUser:
        require(self.session.policy, "manage_staff")
        self._require_staff_open()
        name, username = (name or "").strip(), (username or "").strip()
        if not name or not username or not password:
            raise ValidationError("Name, username and password are required.")
        if role not in ROLES:
            raise ValidationError(f"Role must be one of {', '.join(ROLES)}.")

        user = AppUser(id=generate_id(), name=name, username=username, password=password, role=role)
        self.session.write(self.session.store.create_user, user)
        self.session.remember(USERS, user)
        return user

    def remove_staff(self, user_id: str) -> None:
        require(self.session.policy, "manage_staff")
        self._require_staff_open()
        user = next((u for u in self.session.users if u.id == user_id), None)
        if user is not None and is_bootstrap(user):
            raise ValidationError("The bootstrap admin account cannot be deleted.")
        self.session.write(self.session.store.delete_user, user_id)
        self.session.forget(USERS, user_id)

    # ── Archive ──────────────────────────────────────────────────────

    def export_archive(self):
        """Return (file name, CSV bytes) for the full visit archive."""
        require(self.session.policy, "export_archive")
        self.session.pump()
        data = export_archive_csv(self.session.patients, self.session.visits)
        return archive_filename(date.fromisoformat(self.session.today())), data

    def render(self) -> dict:
        view = {
            "card": self.card,
            "draft": vars(self.draft).copy(),
            "patients": [p.to_dict() for p in self.patients_listing()],
        }
        if self.state == MANAGING_STAFF:
            view["staff"] = [u.public_dict() for u in self.staff()]
        return view


# ── Physician ────────────────────────────────────────────────────────

class PhysicianView:
    """Patient selection by QR scan or manual pick, then charting and prescribing."""

    role = PHYSICIAN
    collections = (PATIENTS, VISITS)

    def __init__(self, session: Session):
        self.session = session
        self.chart: Optional[ChartDraft] = None

    @property
    def state(self) -> str:
        return CHARTING if self.chart is not None else AWAITING_SELECTION

    def _open_chart(self, patient_id: str, missing: str) -> Patient:
        require(self.session.policy, "select_patient")
        self.session.pump()
        patient = self.session.find_patient(patient_id)
        if patient is None:
            raise NotFoundError(missing)
        self.chart = ChartDraft(patient=patient)
        self.session.assistant.reset()
        return patient

    def scan(self, raw: str) -> Patient:
        """Open the chart of the patient whose card produced the decoded *raw* string."""
        value = (raw or "").strip()
        return self._open_chart(value, f"No patient matches the scanned code '{value}'.")

    def select(self, patient_id: str) -> Patient:
        return self._open_chart(patient_id, f"No patient with id '{patient_id}'.")

    def _require_chart(self) -> ChartDraft:
        if self.chart is None:
            raise ValidationError("No patient selected.")
        return self.chart

    def set_diagnosis(self, diagnosis: str) -> None:
        self._require_chart().diagnosis = (diagnosis or "").strip()

    def set_referral(self, referral: Optional[str]) -> None:
        self._require_chart().referral = (referral or "").strip() or None

    def add_medication(
        self,
        name: str,
        units=None,
        times_per_day=1,
        duration_days=DEFAULT_DURATION_DAYS,
        med_type: Optional[str] = None,
    ) -> MedicationItem:
        require(self.session.policy, "chart")
        chart = self._require_chart()
        name = (name or "").strip()
        if not name:
            raise ValidationError("Choose a medication first.")

        med_type = med_type or infer_medication_type(name)
        if med_type not in MEDICATION_TYPES:
            raise ValidationError(f"Medication type must be one of {', '.join(MEDICATION_TYPES)}.")

        times = _to_int(times_per_day, "Times per day")
        days = _to_int(duration_days, "Duration")
        if times <= 0 or days <= 0:
            raise ValidationError("Times per day and duration must be positive.")

        if units in (None, ""):
            units = DEFAULT_INSULIN_UNITS if med_type == INSULIN else 0
        try:
            units = float(units) if "." in str(units) else int(units)
        except (TypeError, ValueError):
            raise ValidationError("Units must be a number.")
        if not math.isfinite(units):
            raise ValidationError("Units must be a finite number.")
        if units < 0:
            raise ValidationError("Units cannot be negative.")

        if med_type == INSULIN and units == 0:
            self.session.notice = f"{name} was added with 0 units."

        item = build_medication_item(DosingOrder(
            name=name, type=med_type, units=units,
            times_per_day=times, duration_days=days,
        ))
        chart.medications.append(item)
        return item

    def remove_medication(self, index) -> MedicationItem:
        chart = self._require_chart()
        index = _to_int(index, "Position")
        if not 0 <= index < len(chart.medications):
            raise ValidationError(f"No medication at position {index}.")
        return chart.medications.pop(index)

    def close_chart(self) -> None:
        self.chart = None
        self.session.assistant.reset()

    def submit(self) -> Visit:
        """Save the chart as a prescribed visit dated today and go back to selection."""
        require(self.session.policy, "prescribe")
        chart = self._require_chart()
        if not chart.diagnosis:
            raise ValidationError("A diagnosis is required.")

        visit = Visit(
            id=generate_id(),
            patient_id=chart.patient.id,
            date=self.session.today(),
            diagnosis=chart.diagnosis,
            medications=list(chart.medications),
            referral=chart.referral,
            doctor_name=self.session.user.name or DEFAULT_DOCTOR_NAME,
            status=PRESCRIBED,
        )
        self.session.write(self.session.store.create_visit, visit)
        self.session.remember(VISITS, visit)
        self.close_chart()
        return visit

    def patient_history(self) -> List[Visit]:
        chart = self._require_chart()
        self.session.pump()
        return _newest_first([v for v in self.session.visits if v.patient_id == chart.patient.id])

    # ── Assistant (optional) ─────────────────────────────────────────

    def request_summary(self) -> Optional[str]:
        require(self.session.policy, "assistant")
        chart = self._require_chart()
        summary = self.session.assistant.summarize(chart.patient, chart.diagnosis, chart.medications)
        if summary is None:
            self.session.notice = "AI assistant unavailable."
        return summary

    def toggle_speech(self) -> Optional[str]:
        require(self.session.policy, "assistant")
        self._require_chart()
        return self.session.assistant.toggle_speech()

    def render(self) -> dict:
        if self.chart is None:
            return {"patients": [p.to_dict() for p in self.session.patients]}
        assistant = self.session.assistant
        return {
            "patient": self.chart.patient.to_dict(),
            "diagnosis": self.chart.diagnosis,
            "medications": [m.to_dict() for m in self.chart.medications],
            "referral": self.chart.referral,
            "history": [v.to_dict() for v in self.patient_history()],
            "assistant": {
                "summary": assistant.summary,
                "playing": assistant.playing,
                "audio_path": assistant.audio_path,
            },
        }


# ── Dispenser ────────────────────────────────────────────────────────

class DispenserView:
    """Today's prescriptions, newest first, each dispensable once."""

    role = DISPENSER
    collections = (PATIENTS, VISITS)

    def __init__(self, session: Session):
        self.session = session

    @property
    def state(self) -> str:
        return LISTING

    def todays_visits(self) -> List[Visit]:
        """Visits dated today (exact day-string match) whose patient is known."""
        require(self.session.policy, "list_today")
        self.session.pump()
        today = self.session.today()
        known = {p.id for p in self.session.patients}
        return _newest_first([
            v for v in self.session.visits
            if v.date == today and v.patient_id in known
        ])

    def dispense(self, visit_id: str) -> bool:
        """Mark a visit dispensed. Returns False if it already was."""
        require(self.session.policy, "dispense")
        self.session.pump()
        visit = next((v for v in self.session.visits if v.id == visit_id), None)
        if visit is None:
            raise NotFoundError(f"No visit with id '{visit_id}'.")
        if visit.status == DISPENSED:
            return False
        changed = self.session.write(self.session.store.set_visit_status, visit_id, DISPENSED)
        self.session.remember(VISITS, replace(visit, status=DISPENSED))
        return changed

    def render(self) -> dict:
        rows = []
        for visit in self.todays_visits():
            patient = self.session.find_patient(visit.patient_id)
            row = visit.to_dict()
            row["patientName"] = patient.name
            row["canDispense"] = visit.status == PRESCRIBED
            rows.append(row)
        return {"visits": rows}


VIEWS = {
    REGISTRAR: RegistrarView,
    PHYSICIAN: PhysicianView,
    DISPENSER: DispenserView,
}


# ── Workflow ─────────────────────────────────────────────────────────

class ClinicWorkflow:
    """Unauthenticated until ``login`` succeeds; ``logout`` goes back."""

    def __init__(
        self,
        store: StoragePort,
        assistant: Optional[ClinicalAssistant] = None,
        today: Callable[[], str] = _today,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.assistant = assistant
        self.today = today
        self.clock = clock
        self.session: Optional[Session] = None
        self.failure_reason = ""

    @property
    def state(self) -> str:
        return UNAUTHENTICATED if self.session is None else self.session.view.state

    def login(self, username: str, password: str) -> Session:
        try:
            user = authenticate(self.store, username, password)
        except AuthFailure as e:
            self.failure_reason = str(e)
            print(f"[auth] Login failed for '{username}': {e}")
            raise

        self.logout()
        self.session = Session(
            self.store, user, build_policy(user),
            assistant=self.assistant, today=self.today, clock=self.clock,
        )
        self.failure_reason = ""
        print(f"[auth] Logged in as: {user.name} (role={user.role})")
        return self.session

    def logout(self) -> None:
        if self.session is None:
            return
        self.session.close()
        self.session = None
