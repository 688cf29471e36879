"""Available stock for a material.

Stored quantities come from admin edits, CSV imports and records carried
over from the previous system, so they are not always numbers. Nothing
here lets an invalid value reach arithmetic or a template: a defect is
logged and replaced by the default for the material type.
"""

import logging
import math

DEFAULT_QUANTITY_BY_TYPE = {
    "rope": 1,
    "anchor": 10,
    "misc": 1,
}
FALLBACK_QUANTITY = 1


def parse_quantity(value):
    """Return ``value`` as a non-negative int, or None if it is not one."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if isinstance(value, int):
        return value if value >= 0 else None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value) or value < 0 or not value.is_integer():
        return None
    return int(value)


def default_quantity(material_type):
    return DEFAULT_QUANTITY_BY_TYPE.get(material_type, FALLBACK_QUANTITY)


def coerce_quantity(value, material_type=None, field="total_quantity", label=None):
    quantity = parse_quantity(value)
    if quantity is None:
        fallback = default_quantity(material_type)
        logging.warning(
            f"Invalid {field} {value!r} for material {label or '<unknown>'} "
            f"({material_type}), using default {fallback}"
        )
        return fallback
    return quantity


def loan_quantity(value, label=None):
    """Loaned units; a loan always holds at least one unit."""
    quantity = parse_quantity(value)
    if not quantity:
        logging.warning(
            f"Invalid loan quantity {value!r} for material {label or '<unknown>'}, counting 1"
        )
        return 1
    return quantity


def compute_available(total, active_loan_quantities, material_type=None, label=None):
    """max(0, total - loaned), always a non-negative int."""
    total = coerce_quantity(total, material_type, label=label)
    loaned = sum(loan_quantity(quantity, label=label) for quantity in active_loan_quantities)
    return max(0, total - loaned)
