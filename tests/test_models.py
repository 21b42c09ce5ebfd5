"""
Unit tests for entity wire conversion and id generation.
"""

import pytest

from clinicflow.models import AppUser, Patient, Visit, generate_id

from conftest import make_patient, make_tablet_line, make_visit


def test_patient_wire_keys_are_camel_case():
    data = make_patient().to_dict()
    assert data["nationalId"] == "29801011234567"
    assert data["registrationDate"] == "2026-10-19T09:15:00"
    assert Patient.from_dict(data) == make_patient()


def test_visit_without_referral_omits_the_key():
    data = make_visit().to_dict()
    assert "referral" not in data
    assert data["patientId"] == "p1"
    assert Visit.from_dict(data).referral is None


def test_visit_accepts_index_keyed_medication_map():
    data = make_visit(medications=[make_tablet_line("A"), make_tablet_line("B")]).to_dict()
    data["medications"] = {"1": data["medications"][1], "0": data["medications"][0]}
    visit = Visit.from_dict(data)
    assert [m.name for m in visit.medications] == ["A", "B"]


def test_visit_missing_patient_id_is_rejected():
    data = make_visit().to_dict()
    del data["patientId"]
    with pytest.raises(ValueError, match="patientId"):
        Visit.from_dict(data)


def test_public_user_dict_hides_password():
    user = AppUser(id="u1", name="Nadia", username="nadia", password="secret", role="dispenser")
    assert "password" not in user.public_dict()
    assert AppUser.from_dict(user.to_dict()) == user


def test_generated_ids_are_unique_and_sort_by_creation():
    ids = [generate_id() for _ in range(50)]
    assert len(set(ids)) == 50
    assert ids[0][:12] <= ids[-1][:12]
