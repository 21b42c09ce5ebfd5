"""
Domain dataclasses used across the application.

Records travel to and from storage as plain dicts using the camelCase keys
of the clinic's existing data (``nationalId``, ``patientId`` ...).
"""

import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

Number = Union[int, float]

# ── Enumerations ─────────────────────────────────────────────────────
REGISTRAR = "registrar"
PHYSICIAN = "physician"
DISPENSER = "dispenser"
ROLES = (REGISTRAR, PHYSICIAN, DISPENSER)

TABLET = "tablet"
INSULIN = "insulin"
OTHER = "other"
MEDICATION_TYPES = (TABLET, INSULIN, OTHER)

PRESCRIBED = "prescribed"
DISPENSED = "dispensed"
VISIT_STATUSES = (PRESCRIBED, DISPENSED)

GENDERS = ("male", "female")


def generate_id() -> str:
    """Opaque id: hex millisecond timestamp + random suffix, so ids sort by creation."""
    return f"{time.time_ns() // 1_000_000:012x}{secrets.token_hex(5)}"


def _require(data: Dict[str, Any], key: str) -> Any:
    if key not in data or data[key] is None:
        raise ValueError(f"record is missing '{key}'")
    return data[key]


@dataclass
class Patient:
    """A registered patient. Never mutated after creation."""
    id: str
    name: str
    national_id: str          # clinic-assigned, printed on the card
    age: int
    gender: str               # "male" or "female"
    registration_date: str    # ISO timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "nationalId": self.national_id,
            "age": self.age,
            "gender": self.gender,
            "registrationDate": self.registration_date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Patient":
        return cls(
            id=str(_require(data, "id")),
            name=str(_require(data, "name")),
            national_id=str(data.get("nationalId", "")),
            age=int(data.get("age") or 0),
            gender=str(data.get("gender") or "male"),
            registration_date=str(data.get("registrationDate", "")),
        )


@dataclass
class MedicationItem:
    """One prescribed drug line; ``quantity`` is derived, see clinicflow.dosage."""
    name: str
    type: str                 # "tablet", "insulin" or "other"
    dosage: str
    units: Number             # only meaningful for insulin
    frequency: str            # e.g. "2 times daily"
    duration: str             # e.g. "30 days"
    quantity: str             # e.g. "4 pens (1200 units)"
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "type": self.type,
            "dosage": self.dosage,
            "units": self.units,
            "frequency": self.frequency,
            "duration": self.duration,
            "quantity": self.quantity,
        }
        if self.notes:
            data["notes"] = self.notes
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MedicationItem":
        return cls(
            name=str(_require(data, "name")),
            type=str(data.get("type") or TABLET),
            dosage=str(data.get("dosage", "")),
            units=data.get("units") or 0,
            frequency=str(data.get("frequency", "")),
            duration=str(data.get("duration", "")),
            quantity=str(data.get("quantity", "")),
            notes=data.get("notes"),
        )


@dataclass
class Visit:
    """One clinical encounter. Only ``status`` changes, prescribed -> dispensed."""
    id: str
    patient_id: str
    date: str                 # YYYY-MM-DD
    diagnosis: str
    medications: List[MedicationItem] = field(default_factory=list)
    referral: Optional[str] = None
    doctor_name: str = ""
    status: str = PRESCRIBED

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "patientId": self.patient_id,
            "date": self.date,
            "diagnosis": self.diagnosis,
            "medications": [m.to_dict() for m in self.medications],
            "doctorName": self.doctor_name,
            "status": self.status,
        }
        if self.referral:
            data["referral"] = self.referral
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Visit":
        meds = data.get("medications") or []
        # the replicated store hands back lists as index-keyed maps
        if isinstance(meds, dict):
            meds = [meds[k] for k in sorted(meds, key=lambda k: int(k))]
        return cls(
            id=str(_require(data, "id")),
            patient_id=str(_require(data, "patientId")),
            date=str(_require(data, "date")),
            diagnosis=str(data.get("diagnosis", "")),
            medications=[MedicationItem.from_dict(m) for m in meds if isinstance(m, dict)],
            referral=data.get("referral") or None,
            doctor_name=str(data.get("doctorName", "")),
            status=str(data.get("status") or PRESCRIBED),
        )


@dataclass
class AppUser:
    """A staff account. ``password`` is stored and compared in plaintext."""
    id: str
    name: str
    username: str
    password: str
    role: str                 # "registrar", "physician" or "dispenser"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "username": self.username,
            "password": self.password,
            "role": self.role,
        }

    def public_dict(self) -> Dict[str, Any]:
        data = self.to_dict()
        del data["password"]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppUser":
        return cls(
            id=str(_require(data, "id")),
            name=str(data.get("name", "")),
            username=str(_require(data, "username")),
            password=str(data.get("password", "")),
            role=str(data.get("role", "")),
        )


@dataclass
class DosingOrder:
    """Unsaved dosing input for one medication line."""
    name: str
    type: str
    units: Number
    times_per_day: int
    duration_days: int


ENTITY_TYPES = {
    "patients": Patient,
    "visits": Visit,
    "users": AppUser,
}
