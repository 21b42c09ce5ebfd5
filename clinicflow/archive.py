"""
Archive export – a flat Visit x Medication table of the whole clinic history.
"""

from datetime import date
from typing import Iterable, List, Optional

import pandas as pd

from clinicflow.config import APP_CONFIG
from clinicflow.models import TABLET, Patient, Visit

ARCHIVE_COLUMNS = [
    "VisitID", "Date", "PatientName", "NationalID", "Age", "Diagnosis",
    "Med_Name", "Med_Type", "Dosage_Units", "Frequency", "Duration",
    "Calculated_Qty", "Doctor", "Status", "Referral",
]

BOM = "\ufeff"


def build_archive_frame(patients: Iterable[Patient], visits: Iterable[Visit]) -> pd.DataFrame:
    """
    One row per (visit, medication), or a single placeholder row for a visit
    without medications. Visits whose patient is unknown are left out.
    """
    by_id = {p.id: p for p in patients}
    rows: List[list] = []

    for visit in visits:
        patient = by_id.get(visit.patient_id)
        if patient is None:
            continue

        head = [
            visit.id,
            visit.date,
            patient.name,
            f"'{patient.national_id}",   # keeps spreadsheets from reading it as a number
            patient.age,
            visit.diagnosis,
        ]
        tail = [visit.doctor_name, visit.status, visit.referral or "None"]

        if not visit.medications:
            rows.append(head + ["None", "-", "-", "-", "-", "-"] + tail)
            continue

        for med in visit.medications:
            rows.append(head + [
                med.name,
                med.type or TABLET,
                med.units or "-",
                med.frequency or "-",
                med.duration or "-",
                med.quantity or "-",
            ] + tail)

    return pd.DataFrame(rows, columns=ARCHIVE_COLUMNS)


def export_archive_csv(patients: Iterable[Patient], visits: Iterable[Visit]) -> bytes:
    """UTF-8 CSV with a byte-order mark so spreadsheet apps detect the encoding."""
    df = build_archive_frame(patients, visits)
    return (BOM + df.to_csv(index=False, lineterminator="\n")).encode("utf-8")


def archive_filename(day: Optional[date] = None) -> str:
    day = day or date.today()
    return f"{APP_CONFIG['site']}_Clinic_FULL_ARCHIVE_{day.isoformat()}.csv"
