"""
Unit tests for the archive exporter.
"""

import copy
import io
from datetime import date

import pandas as pd

from clinicflow.archive import ARCHIVE_COLUMNS, archive_filename, build_archive_frame, export_archive_csv
from clinicflow.models import MedicationItem

from conftest import make_patient, make_tablet_line, make_visit


def insulin_line():
    return MedicationItem(
        name="Insulin Lantus",
        type="insulin",
        dosage="20 units",
        units=20,
        frequency="2 times daily",
        duration="30 days",
        quantity="4 pens (1200 units)",
    )


def read_back(data: bytes) -> pd.DataFrame:
    return pd.read_csv(io.BytesIO(data), encoding="utf-8-sig", dtype=str, keep_default_na=False)


def test_header_order_and_bom():
    data = export_archive_csv([], [])
    assert data.startswith(b"\xef\xbb\xbf")
    header = data.decode("utf-8-sig").splitlines()[0]
    assert header.split(",") == ARCHIVE_COLUMNS


def test_one_row_per_medication():
    visit = make_visit(medications=[insulin_line(), make_tablet_line()], referral="Cardiology")
    df = read_back(export_archive_csv([make_patient()], [visit]))

    assert list(df["VisitID"]) == ["v1", "v1"]
    assert list(df["Med_Name"]) == ["Insulin Lantus", "Metformin 500mg"]
    assert list(df["Dosage_Units"]) == ["20", "-"]
    assert list(df["Calculated_Qty"]) == ["4 pens (1200 units)", "30 tablets"]
    assert set(df["Referral"]) == {"Cardiology"}
    assert set(df["NationalID"]) == {"'29801011234567"}


def test_visit_without_medications_gets_placeholder_row():
    df = build_archive_frame([make_patient()], [make_visit()])
    assert len(df) == 1
    row = df.iloc[0]
    assert row["Med_Name"] == "None"
    assert [row[c] for c in ("Med_Type", "Dosage_Units", "Frequency", "Duration", "Calculated_Qty")] == ["-"] * 5
    assert row["Referral"] == "None"
    assert row["Status"] == "prescribed"


def test_visits_of_unknown_patients_are_skipped():
    visits = [make_visit("v1"), make_visit("v2", patient_id="gone")]
    df = build_archive_frame([make_patient()], visits)
    assert list(df["VisitID"]) == ["v1"]


def test_export_does_not_mutate_inputs():
    patients = [make_patient()]
    visits = [make_visit(medications=[make_tablet_line()])]
    before = (copy.deepcopy(patients), copy.deepcopy(visits))
    export_archive_csv(patients, visits)
    assert (patients, visits) == before


def test_archive_filename():
    assert archive_filename(date(2026, 10, 19)) == "Minya_Clinic_FULL_ARCHIVE_2026-10-19.csv"
