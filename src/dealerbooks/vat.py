"""VAT type determination for vehicle purchases.

A vehicle bought from a private person counts as new (and is taxed with
25% moms on resale) only when it is both barely driven and recently
registered. Everything else is sold under the margin scheme (VMB).
"""

from datetime import date

PRIVATE_CHANNEL = "Privatperson"

VAT_MOMS = "Moms (25%)"
VAT_VMB = "Vinstmarginalbeskattning (VMB)"
VAT_VMB_SHORT = "VMB"

MAX_NEW_VEHICLE_MILEAGE = 6000
MAX_NEW_VEHICLE_MONTHS = 6


def months_between(start: date, end: date) -> int:
    """Calendar-month difference between two dates; the day of month is ignored."""
    return (end.year - start.year) * 12 + (end.month - start.month)


def determine_vat_type(
    mileage: int,
    first_registration_date: date,
    purchase_channel: str,
    purchase_date: date,
) -> str:
    if purchase_channel != PRIVATE_CHANNEL:
        return VAT_VMB_SHORT

    is_low_mileage = mileage <= MAX_NEW_VEHICLE_MILEAGE
    is_recent = months_between(first_registration_date, purchase_date) <= MAX_NEW_VEHICLE_MONTHS

    if is_low_mileage and is_recent:
        return VAT_MOMS
    return VAT_VMB
