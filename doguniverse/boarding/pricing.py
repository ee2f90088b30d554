"""Boarding and pet-taxi pricing.

Everything in this module is a pure function of its arguments: the rate
table is passed in explicitly and no storage is touched. Amounts are whole
currency units (MAD).
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from .errors import ValidationError

DOG = "DOG"
CAT = "CAT"
SPECIES = (DOG, CAT)

SMALL = "SMALL"
LARGE = "LARGE"
GROOMING_SIZES = (SMALL, LARGE)

TAXI_STANDARD = "STANDARD"
TAXI_VET = "VET"
TAXI_AIRPORT = "AIRPORT"
TAXI_TYPES = (TAXI_STANDARD, TAXI_VET, TAXI_AIRPORT)

DEFAULT_SETTINGS: dict[str, int] = {
    "boarding_dog_per_night": 120,
    "boarding_cat_per_night": 70,
    "boarding_dog_long_stay": 100,
    "boarding_dog_multi": 100,
    "long_stay_threshold": 32,
    "grooming_small_dog": 100,
    "grooming_large_dog": 150,
    "taxi_standard": 150,
    "taxi_vet": 300,
    "taxi_airport": 300,
}

_TAXI_LABELS = {
    TAXI_STANDARD: ("Pet Taxi - Course standard", "Pet Taxi - Standard trip"),
    TAXI_VET: ("Pet Taxi - Transport vétérinaire", "Pet Taxi - Vet transport"),
    TAXI_AIRPORT: ("Pet Taxi - Navette aéroport", "Pet Taxi - Airport transfer"),
}


@dataclass(frozen=True)
class RateTable:
    """Snapshot of the configurable rates used for one pricing computation."""

    dog_single: int = DEFAULT_SETTINGS["boarding_dog_per_night"]
    dog_long_stay: int = DEFAULT_SETTINGS["boarding_dog_long_stay"]
    dog_multi: int = DEFAULT_SETTINGS["boarding_dog_multi"]
    cat: int = DEFAULT_SETTINGS["boarding_cat_per_night"]
    long_stay_threshold: int = DEFAULT_SETTINGS["long_stay_threshold"]
    grooming_small: int = DEFAULT_SETTINGS["grooming_small_dog"]
    grooming_large: int = DEFAULT_SETTINGS["grooming_large_dog"]
    taxi_standard: int = DEFAULT_SETTINGS["taxi_standard"]
    taxi_vet: int = DEFAULT_SETTINGS["taxi_vet"]
    taxi_airport: int = DEFAULT_SETTINGS["taxi_airport"]

    @classmethod
    def from_settings(cls, stored: Mapping[str, object] | None = None) -> "RateTable":
        """Build a table from stored key/value pairs merged over the defaults."""

        values = merge_settings(stored)
        return cls(
            dog_single=values["boarding_dog_per_night"],
            dog_long_stay=values["boarding_dog_long_stay"],
            dog_multi=values["boarding_dog_multi"],
            cat=values["boarding_cat_per_night"],
            long_stay_threshold=values["long_stay_threshold"],
            grooming_small=values["grooming_small_dog"],
            grooming_large=values["grooming_large_dog"],
            taxi_standard=values["taxi_standard"],
            taxi_vet=values["taxi_vet"],
            taxi_airport=values["taxi_airport"],
        )

    def as_settings(self) -> dict[str, int]:
        return {
            "boarding_dog_per_night": self.dog_single,
            "boarding_cat_per_night": self.cat,
            "boarding_dog_long_stay": self.dog_long_stay,
            "boarding_dog_multi": self.dog_multi,
            "long_stay_threshold": self.long_stay_threshold,
            "grooming_small_dog": self.grooming_small,
            "grooming_large_dog": self.grooming_large,
            "taxi_standard": self.taxi_standard,
            "taxi_vet": self.taxi_vet,
            "taxi_airport": self.taxi_airport,
        }

    def grooming_price(self, size: str) -> int:
        if size == SMALL:
            return self.grooming_small
        if size == LARGE:
            return self.grooming_large
        raise ValidationError(f"Unknown grooming size: {size}", code="INVALID_GROOMING_SIZE")

    def taxi_price(self, taxi_type: str) -> int:
        prices = {
            TAXI_STANDARD: self.taxi_standard,
            TAXI_VET: self.taxi_vet,
            TAXI_AIRPORT: self.taxi_airport,
        }
        if taxi_type not in prices:
            raise ValidationError(f"Unknown taxi type: {taxi_type}", code="INVALID_TAXI_TYPE")
        return prices[taxi_type]

    def dog_rate(self, dog_count: int, nights: int) -> int:
        """Per-night rate charged to each dog of a roster with ``dog_count`` dogs."""

        if dog_count > 1:
            return self.dog_multi
        if nights > self.long_stay_threshold:
            return self.dog_long_stay
        return self.dog_single


def coerce_rate(key: str, value: object) -> int:
    """Return ``value`` as a non-negative integer or raise ``ValidationError``."""

    if isinstance(value, bool):
        raise ValidationError(f"Invalid value for {key}", code="INVALID_SETTING")
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid value for {key}", code="INVALID_SETTING") from None
    if number < 0:
        raise ValidationError(f"{key} cannot be negative", code="INVALID_SETTING")
    return number


def merge_settings(stored: Mapping[str, object] | None) -> dict[str, int]:
    """Overlay known stored keys on ``DEFAULT_SETTINGS``; unknown keys are dropped."""

    values = dict(DEFAULT_SETTINGS)
    for key, value in (stored or {}).items():
        if key in values:
            values[key] = coerce_rate(key, value)
    return values


@dataclass(frozen=True)
class LineItem:
    description_fr: str
    description_en: str
    quantity: int
    unit_price: int
    total: int = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "total", self.quantity * self.unit_price)

    def describe(self, language: str = "fr") -> str:
        return self.description_en if language == "en" else self.description_fr

    def as_dict(self, language: str = "fr") -> dict:
        return {
            "description": self.describe(language),
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total": self.total,
        }


@dataclass(frozen=True)
class Breakdown:
    items: tuple[LineItem, ...]

    @property
    def total(self) -> int:
        return sum(item.total for item in self.items)

    def as_dict(self, language: str = "fr") -> dict:
        return {
            "items": [item.as_dict(language) for item in self.items],
            "total": self.total,
        }


@dataclass(frozen=True)
class PricedPet:
    """The slice of a pet that pricing cares about."""

    id: int
    name: str
    species: str


def calculate_nights(start_date: str | dt.date, end_date: str | dt.date) -> int:
    """Whole days between two dates; the day of departure is not charged."""

    start = dt.date.fromisoformat(start_date) if isinstance(start_date, str) else start_date
    end = dt.date.fromisoformat(end_date) if isinstance(end_date, str) else end_date
    return max(0, (end - start).days)


def boarding_line(pet: PricedPet, nights: int, rate: int) -> LineItem:
    if pet.species == DOG:
        return LineItem(f"Pension {pet.name} (chien)", f"Boarding {pet.name} (dog)", nights, rate)
    return LineItem(f"Pension {pet.name} (chat)", f"Boarding {pet.name} (cat)", nights, rate)


def grooming_line(pet: PricedPet, size: str, price: int) -> LineItem:
    label_fr, label_en = ("petit", "small") if size == SMALL else ("grand", "large")
    return LineItem(
        f"Toilettage {pet.name} ({label_fr})",
        f"Grooming {pet.name} ({label_en})",
        1,
        price,
    )


def taxi_leg_lines(taxi_go: bool, taxi_return: bool, price: int) -> list[LineItem]:
    lines = []
    if taxi_go:
        lines.append(LineItem("Pet Taxi - Aller", "Pet Taxi - Drop-off", 1, price))
    if taxi_return:
        lines.append(LineItem("Pet Taxi - Retour", "Pet Taxi - Pick-up", 1, price))
    return lines


def _as_priced_pets(pets: Iterable[PricedPet | Mapping]) -> list[PricedPet]:
    roster = []
    for pet in pets:
        if not isinstance(pet, PricedPet):
            pet = PricedPet(id=pet["id"], name=pet["name"], species=pet["species"])
        if pet.species not in SPECIES:
            raise ValidationError(f"Unknown species: {pet.species}", code="INVALID_SPECIES")
        roster.append(pet)
    return roster


def compute_boarding_breakdown(
    nights: int,
    pets: Sequence[PricedPet | Mapping],
    grooming: Mapping[int, str] | None = None,
    taxi_go: bool = False,
    taxi_return: bool = False,
    rates: RateTable | None = None,
) -> Breakdown:
    """Price a boarding stay.

    Lines come out as: dogs in roster order, cats in roster order, grooming
    for each selected dog, then the drop-off and pick-up taxi legs.
    """

    if nights < 0:
        raise ValidationError("Nights cannot be negative", code="INVALID_DATES")
    rates = rates or RateTable()
    roster = _as_priced_pets(pets)
    dogs = [pet for pet in roster if pet.species == DOG]
    cats = [pet for pet in roster if pet.species == CAT]
    grooming = dict(grooming or {})

    by_id = {pet.id: pet for pet in roster}
    for pet_id, size in grooming.items():
        pet = by_id.get(pet_id)
        if pet is None:
            raise ValidationError("Grooming selected for a pet outside the booking", code="INVALID_GROOMING")
        if pet.species != DOG:
            raise ValidationError("Grooming is only available for dogs", code="INVALID_GROOMING")
        if size not in GROOMING_SIZES:
            raise ValidationError(f"Unknown grooming size: {size}", code="INVALID_GROOMING_SIZE")

    items: list[LineItem] = []
    dog_rate = rates.dog_rate(len(dogs), nights)
    items.extend(boarding_line(dog, nights, dog_rate) for dog in dogs)
    items.extend(boarding_line(cat, nights, rates.cat) for cat in cats)
    for dog in dogs:
        size = grooming.get(dog.id)
        if size:
            items.append(grooming_line(dog, size, rates.grooming_price(size)))
    items.extend(taxi_leg_lines(taxi_go, taxi_return, rates.taxi_standard))
    return Breakdown(tuple(items))


def compute_taxi_price(taxi_type: str, rates: RateTable | None = None) -> Breakdown:
    rates = rates or RateTable()
    price = rates.taxi_price(taxi_type)
    label_fr, label_en = _TAXI_LABELS[taxi_type]
    return Breakdown((LineItem(label_fr, label_en, 1, price),))


__all__ = [
    "Breakdown",
    "DEFAULT_SETTINGS",
    "LineItem",
    "PricedPet",
    "RateTable",
    "calculate_nights",
    "compute_boarding_breakdown",
    "compute_taxi_price",
    "merge_settings",
]
