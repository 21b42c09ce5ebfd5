"""
Centralised configuration constants and environment helpers.
"""

import os
import sys

from dotenv import load_dotenv

load_dotenv()

# ── Clinic ───────────────────────────────────────────────────────────
APP_CONFIG = {
    "branch_name": "Minya Insurance Branch",
    "site": "Minya",
    "supervisor": "Dr Amr Al-Kadi",
    "years": "2025-2026",
}
DEFAULT_DOCTOR_NAME = os.getenv("DEFAULT_DOCTOR_NAME", "Dr. Amr Al-Kadi")

# ── Catalogues offered by the charting form ──────────────────────────
DIAGNOSES = [
    "Type 1 Diabetes",
    "Type 2 Diabetes",
    "Gestational Diabetes",
    "Pre-diabetes",
    "Diabetic Foot",
    "Diabetic Neuropathy",
]

MEDICATIONS = [
    "Insulin Mixtard 30/70",
    "Insulin Lantus",
    "Insulin Apidra",
    "Metformin 500mg",
    "Metformin 850mg",
    "Metformin 1000mg (XR)",
    "Gliclazide 60mg",
    "Sitagliptin 50mg",
    "Empagliflozin 10mg",
    "Empagliflozin 25mg",
    "Atorvastatin 20mg",
    "Aspirin 75mg",
]

INSULIN_MEDS = {"Insulin Mixtard 30/70", "Insulin Lantus", "Insulin Apidra"}

SPECIALIST_CLINICS = [
    "Cardiology",
    "Vascular",
    "Neurology",
    "Endocrinology",
    "Nephrology",
]

# ── Dosage ───────────────────────────────────────────────────────────
PEN_CAPACITY_UNITS = 300
DEFAULT_INSULIN_UNITS = 20
DEFAULT_DURATION_DAYS = 30

# ── Storage ──────────────────────────────────────────────────────────
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local").strip().lower()
LOCAL_DB_URI = os.getenv("LOCAL_DB_URI", "sqlite:///data/clinic.db")

PATIENTS_SLOT = "minya_diabetes_patients"
VISITS_SLOT = "minya_diabetes_visits"
USERS_SLOT = "minya_diabetes_users"

REQUEST_TIMEOUT_SECONDS = 10
STREAM_RETRY_SECONDS = 3

# ── Login ────────────────────────────────────────────────────────────
# Plaintext failsafe identity, always accepted even with no user records.
BOOTSTRAP_USERNAME = "admin"
BOOTSTRAP_PASSWORD = "admin"
BOOTSTRAP_USER_ID = "temp-admin"
BOOTSTRAP_DISPLAY_NAME = "System Admin"

# ── Registration card ────────────────────────────────────────────────
PRINT_CARD_SECONDS = 0.5
QR_CARD_SIZE = 256

# ── Assistant (optional) ─────────────────────────────────────────────
MODEL_NAME = "gpt-4.1-mini"
TTS_VOICE = os.getenv("TTS_VOICE", "ar-EG-SalmaNeural")
TTS_CACHE_DIR = os.getenv("TTS_CACHE_DIR", os.path.join("data", "tts_cache"))

# ── API server ───────────────────────────────────────────────────────
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
TOKEN_EXPIRY_HOURS = 12


def get_env(name: str) -> str:
    """Return an environment variable or exit with an error message."""
    value = os.getenv(name)
    if not value:
        print(f"ERROR: env var {name} is not set", file=sys.stderr)
        sys.exit(1)
    return value
