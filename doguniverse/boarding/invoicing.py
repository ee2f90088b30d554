"""Invoice numbering, line item normalisation and booking-derived items."""

from __future__ import annotations

from typing import Iterable, Mapping

from . import pricing
from .errors import InvalidTransitionError, ValidationError
from .lifecycle import BOARDING, PET_TAXI

PENDING = "PENDING"
PAID = "PAID"
CANCELLED = "CANCELLED"
INVOICE_STATUSES = (PENDING, PAID, CANCELLED)

INVOICE_TRANSITIONS = {
    (PENDING, PAID),
    (PENDING, CANCELLED),
}


def format_number(prefix: str, year: int, sequence: int) -> str:
    return f"{prefix}-{year}-{sequence:04d}"


def _whole_number(value: object, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}", code="INVALID_ITEMS")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"{field} must be a whole amount", code="INVALID_ITEMS")
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}", code="INVALID_ITEMS") from None


def normalize_items(items: Iterable[Mapping] | None) -> list[dict]:
    """Validate raw item mappings and compute every line total.

    A supplied ``total`` is ignored: it is always ``quantity * unit_price``.
    """

    normalized = []
    for raw in items or ():
        description = str(raw.get("description") or "").strip()
        if not description:
            raise ValidationError("Invoice items need a description", code="INVALID_ITEMS")
        quantity = _whole_number(raw.get("quantity", 1), "quantity")
        unit_price = _whole_number(raw.get("unit_price"), "unit price")
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", code="INVALID_ITEMS")
        if unit_price < 0:
            raise ValidationError("Unit price cannot be negative", code="INVALID_ITEMS")
        normalized.append(
            {
                "description": description,
                "quantity": quantity,
                "unit_price": unit_price,
                "total": quantity * unit_price,
            }
        )
    if not normalized:
        raise ValidationError("An invoice needs at least one item", code="MISSING_ITEMS")
    return normalized


def check_transition(current: str, target: str) -> None:
    if target not in INVOICE_STATUSES:
        raise ValidationError(f"Invalid invoice status: {target}", code="INVALID_STATUS")
    if (current, target) not in INVOICE_TRANSITIONS:
        raise InvalidTransitionError(f"Cannot move an invoice from {current} to {target}")


def _booking_lines(booking: Mapping) -> list[pricing.LineItem]:
    lines: list[pricing.LineItem] = []
    if booking["service_type"] == BOARDING:
        detail = booking.get("boarding_detail")
        if not detail:
            raise ValidationError("Booking has no boarding detail", code="MISSING_DETAIL")
        nights = pricing.calculate_nights(booking["start_date"], booking["end_date"])
        roster = [
            pricing.PricedPet(pet["pet_id"], pet["name"], pet["species"])
            for pet in booking["pets"]
        ]
        # same-day stays carry no boarding charge
        if nights > 0:
            dogs = [pet for pet in roster if pet.species == pricing.DOG]
            cats = [pet for pet in roster if pet.species == pricing.CAT]
            lines.extend(pricing.boarding_line(dog, nights, detail["dog_rate"]) for dog in dogs)
            lines.extend(pricing.boarding_line(cat, nights, detail["cat_rate"]) for cat in cats)
        for dog, pet in zip(roster, booking["pets"]):
            if dog.species == pricing.DOG and pet["grooming_size"]:
                lines.append(pricing.grooming_line(dog, pet["grooming_size"], pet["grooming_price"]))
        lines.extend(
            pricing.taxi_leg_lines(
                bool(detail["taxi_go_enabled"]),
                bool(detail["taxi_return_enabled"]),
                detail["taxi_addon_price"],
            )
        )
    elif booking["service_type"] == PET_TAXI:
        detail = booking.get("taxi_detail")
        if not detail:
            raise ValidationError("Booking has no taxi detail", code="MISSING_DETAIL")
        label = pricing.compute_taxi_price(detail["taxi_type"]).items[0]
        lines.append(pricing.LineItem(label.description_fr, label.description_en, 1, detail["price"]))
    return lines


def booking_total(booking: Mapping) -> int:
    """Total of a stored booking at the rates frozen in its detail row."""

    return sum(line.total for line in _booking_lines(booking))


def items_from_booking(booking: Mapping, language: str = "fr") -> list[dict]:
    """Line items for a stored booking, using the rates frozen at creation.

    ``booking`` is the dict returned by ``BoardingSystem.get_booking``: it
    carries ``pets`` in roster order plus ``boarding_detail`` or
    ``taxi_detail``.
    """

    lines = _booking_lines(booking)
    if not lines:
        raise ValidationError("Booking has nothing to invoice", code="MISSING_ITEMS")
    return [line.as_dict(language) for line in lines]
