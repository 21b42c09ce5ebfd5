"""
Role-Based Access Control – resolving a login and building the role policy.

Credentials are compared in plaintext against the staff collection. This is a
known weakness kept for parity with the clinic's existing records.
"""

import sys
from dataclasses import dataclass
from typing import FrozenSet

from clinicflow.config import (
    BOOTSTRAP_DISPLAY_NAME,
    BOOTSTRAP_PASSWORD,
    BOOTSTRAP_USER_ID,
    BOOTSTRAP_USERNAME,
)
from clinicflow.errors import AccessDenied, AuthFailure, BackendUnavailableError
from clinicflow.models import DISPENSER, PHYSICIAN, REGISTRAR, ROLES, AppUser


@dataclass
class Policy:
    """What a signed-in role may do."""
    role: str
    actions: FrozenSet[str]
    notes: str


BOOTSTRAP_USER = AppUser(
    id=BOOTSTRAP_USER_ID,
    name=BOOTSTRAP_DISPLAY_NAME,
    username=BOOTSTRAP_USERNAME,
    password=BOOTSTRAP_PASSWORD,
    role=REGISTRAR,
)


def is_bootstrap(user: AppUser) -> bool:
    return user.id == BOOTSTRAP_USER_ID or user.username == BOOTSTRAP_USERNAME


def authenticate(store, username: str, password: str) -> AppUser:
    """
    Resolve a login attempt.

    Looks for an exact (username, password) match in the staff collection and
    falls back to the bootstrap admin identity, which stays usable even when
    the backend cannot be reached.
    """
    try:
        users = store.list_users()
    except BackendUnavailableError as e:
        print(f"[WARN] User lookup unavailable, only the bootstrap login works: {e}", file=sys.stderr)
        users = []

    for user in users:
        if user.username == username and user.password == password:
            if user.role not in ROLES:
                raise AuthFailure(f"Unsupported role '{user.role}' for user '{username}'.")
            return user

    if username == BOOTSTRAP_USERNAME and password == BOOTSTRAP_PASSWORD:
        return BOOTSTRAP_USER

    raise AuthFailure("Invalid username or password.")


def build_policy(user: AppUser) -> Policy:
    """Derive the role Policy for a signed-in user."""

    if user.role == REGISTRAR:
        return Policy(
            role=REGISTRAR,
            actions=frozenset({"register_patient", "print_card", "export_archive", "manage_staff"}),
            notes="Registrar registers patients, prints cards, manages staff and exports the archive.",
        )

    if user.role == PHYSICIAN:
        return Policy(
            role=PHYSICIAN,
            actions=frozenset({"select_patient", "chart", "prescribe", "assistant"}),
            notes="Physician charts the selected patient and prescribes.",
        )

    if user.role == DISPENSER:
        return Policy(
            role=DISPENSER,
            actions=frozenset({"list_today", "dispense"}),
            notes="Dispenser sees today's prescriptions and marks them dispensed.",
        )

    raise AccessDenied(f"Unknown role: {user.role}")


def require(policy: Policy, action: str) -> None:
    """Raise AccessDenied unless *policy* allows *action*."""
    if action not in policy.actions:
        raise AccessDenied(f"Role '{policy.role}' may not {action.replace('_', ' ')}.")
