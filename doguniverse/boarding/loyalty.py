"""Loyalty tiers: suggestion rules, ordering and override handling."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

BRONZE = "BRONZE"
SILVER = "SILVER"
GOLD = "GOLD"
PLATINUM = "PLATINUM"
TIERS = (BRONZE, SILVER, GOLD, PLATINUM)

SILVER_MIN_STAYS = 4
GOLD_MIN_STAYS = 10
PLATINUM_MIN_STAYS = 20
# 5000 EUR expressed in MAD
PLATINUM_MIN_PAID = 55_000

TIER_LABELS = {
    BRONZE: {"fr": "Bronze", "en": "Bronze"},
    SILVER: {"fr": "Argent", "en": "Silver"},
    GOLD: {"fr": "Or", "en": "Gold"},
    PLATINUM: {"fr": "Platine", "en": "Platinum"},
}


def is_tier(value: object) -> bool:
    return value in TIERS


def tier_rank(tier: str) -> int:
    return TIERS.index(tier) + 1


def is_upgrade(old_tier: str, new_tier: str) -> bool:
    return tier_rank(new_tier) > tier_rank(old_tier)


def tier_label(tier: str, language: str = "fr") -> str:
    labels = TIER_LABELS.get(tier)
    if not labels:
        return tier
    return labels.get(language, labels["fr"])


def suggest_grade(total_completed_stays: int, total_paid_amount: int) -> str:
    """Map a client's history onto a tier. Never raises."""

    try:
        stays = max(int(total_completed_stays or 0), 0)
        paid = max(int(total_paid_amount or 0), 0)
    except (TypeError, ValueError):
        return BRONZE
    if stays >= PLATINUM_MIN_STAYS or paid >= PLATINUM_MIN_PAID:
        return PLATINUM
    if stays >= GOLD_MIN_STAYS:
        return GOLD
    if stays >= SILVER_MIN_STAYS:
        return SILVER
    return BRONZE


@dataclass(frozen=True)
class AutoGrade:
    tier: str

    is_override = False


@dataclass(frozen=True)
class OverriddenGrade:
    tier: str
    by: int | None
    at: str | None

    is_override = True


GradeState = Union[AutoGrade, OverriddenGrade]


def apply_suggestion(state: GradeState | None, suggested: str) -> GradeState:
    """Return the grade after an automatic recomputation.

    Overridden grades come back unchanged; only an explicit reset releases them.
    """

    if isinstance(state, OverriddenGrade):
        return state
    return AutoGrade(suggested)


def grade_from_row(row: dict | None) -> GradeState | None:
    if not row:
        return None
    if row["is_override"]:
        return OverriddenGrade(row["grade"], row["override_by"], row["override_at"])
    return AutoGrade(row["grade"])
