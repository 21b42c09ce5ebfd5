#!/usr/bin/env python3
"""
Create the first staff accounts in the configured storage backend.
Each account gets a random password, printed once so it can be handed out.
"""

import secrets
import string
import sys

from clinicflow.database import init_store
from clinicflow.errors import ClinicError
from clinicflow.models import DISPENSER, PHYSICIAN, REGISTRAR, AppUser, generate_id

DEFAULT_STAFF = [
    ("Reception Desk", "reception", REGISTRAR),
    ("Dr. Amr Al-Kadi", "dr.amr", PHYSICIAN),
    ("Clinic Pharmacy", "pharmacy", DISPENSER),
]


def generate_password(length=12):
    """Generate a random alphanumeric password."""
    chars = string.ascii_letters + string.digits
    return "".join(secrets.choice(chars) for _ in range(length))


if __name__ == "__main__":
    print("=" * 70)
    print("Clinic Staff Seeder")
    print("=" * 70)
    print()

    store = init_store()
    failures = 0
    try:
        for name, username, role in DEFAULT_STAFF:
            password = generate_password()
            user = AppUser(id=generate_id(), name=name, username=username, password=password, role=role)
            try:
                store.create_user(user)
            except ClinicError as e:
                failures += 1
                print(f"  [skip] {username}: {e}")
                continue
            print(f"  {role:<10} {username:<12} {password}")
    finally:
        store.close()

    print()
    print("=" * 70)
    print("Note: the bootstrap login admin/admin stays available regardless.")
    print("=" * 70)
    sys.exit(1 if failures == len(DEFAULT_STAFF) else 0)
