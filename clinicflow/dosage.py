"""
Dosage arithmetic – turns dosing parameters into a dispensable quantity.
"""

import math
import re

from clinicflow.config import INSULIN_MEDS, PEN_CAPACITY_UNITS
from clinicflow.models import INSULIN, TABLET, DosingOrder, MedicationItem, Number


def _fmt(value: Number) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def infer_medication_type(name: str) -> str:
    """Insulin products come from the insulin catalogue; everything else is a tablet."""
    return INSULIN if name in INSULIN_MEDS else TABLET


def compute_quantity(order: DosingOrder) -> str:
    """
    Total amount to dispense for one medication line.

    Counts must already be positive; the caller validates them.
    """
    if order.type == INSULIN:
        total_units = order.units * order.times_per_day * order.duration_days
        pens = math.ceil(total_units / PEN_CAPACITY_UNITS)
        return f"{pens} pens ({_fmt(total_units)} units)"

    total_doses = order.times_per_day * order.duration_days
    return f"{total_doses} tablets"


def build_medication_item(order: DosingOrder) -> MedicationItem:
    """Render the display strings for a dosing order and attach its quantity."""
    return MedicationItem(
        name=order.name,
        type=order.type,
        dosage=f"{_fmt(order.units)} units" if order.type == INSULIN else "Standard",
        units=order.units,
        frequency=f"{order.times_per_day} times daily",
        duration=f"{order.duration_days} days",
        quantity=compute_quantity(order),
    )


def _leading_int(text: str) -> int:
    m = re.match(r"\s*(\d+)", text or "")
    if not m:
        raise ValueError(f"no count in '{text}'")
    return int(m.group(1))


def dosing_from_item(item: MedicationItem) -> DosingOrder:
    """Recover the dosing order a stored medication line was built from."""
    return DosingOrder(
        name=item.name,
        type=item.type,
        units=item.units or 0,
        times_per_day=_leading_int(item.frequency),
        duration_days=_leading_int(item.duration),
    )


def quantity_matches(item: MedicationItem) -> bool:
    """True when ``item.quantity`` is what its inputs derive to."""
    try:
        return compute_quantity(dosing_from_item(item)) == item.quantity
    except ValueError:
        return False
