"""Booking status rules: legal transitions, who may request them, and what
each target status sets off."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import AuthorizationError, InvalidTransitionError, ValidationError

STAFF = "STAFF"
CLIENT = "CLIENT"
ROLES = (STAFF, CLIENT)

PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
IN_PROGRESS = "IN_PROGRESS"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"
REJECTED = "REJECTED"
STATUSES = (PENDING, CONFIRMED, IN_PROGRESS, COMPLETED, CANCELLED, REJECTED)
TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED, REJECTED})
CLIENT_CANCELLABLE = frozenset({PENDING, CONFIRMED})

BOARDING = "BOARDING"
PET_TAXI = "PET_TAXI"
SERVICE_TYPES = (BOARDING, PET_TAXI)

# (from, to) -> roles allowed to request it; ``None`` is creation.
TRANSITIONS: dict[tuple[str | None, str], frozenset[str]] = {
    (None, PENDING): frozenset({CLIENT}),
    (None, CONFIRMED): frozenset({STAFF}),
    (PENDING, CONFIRMED): frozenset({STAFF}),
    (PENDING, REJECTED): frozenset({STAFF}),
    (PENDING, CANCELLED): frozenset({CLIENT, STAFF}),
    (CONFIRMED, CANCELLED): frozenset({CLIENT, STAFF}),
    (CONFIRMED, IN_PROGRESS): frozenset({STAFF}),
    (IN_PROGRESS, COMPLETED): frozenset({STAFF}),
}


@dataclass(frozen=True)
class TransitionEffects:
    notification: str | None = None
    email_template: str | None = None
    log_action: str | None = None


_EFFECTS = {
    CONFIRMED: TransitionEffects("BOOKING_VALIDATION", "booking_validated", "BOOKING_CONFIRMED"),
    REJECTED: TransitionEffects("BOOKING_REFUSAL", "booking_refused", "BOOKING_REJECTED"),
    CANCELLED: TransitionEffects("BOOKING_REFUSAL", None, "BOOKING_CANCELLED"),
    IN_PROGRESS: TransitionEffects(log_action="BOOKING_STARTED"),
    COMPLETED: TransitionEffects(log_action="BOOKING_COMPLETED"),
    PENDING: TransitionEffects(log_action="BOOKING_REOPENED"),
}

CREATION_EFFECTS = {
    PENDING: TransitionEffects("BOOKING_CONFIRMATION", "booking_confirmation", "BOOKING_CREATED"),
    CONFIRMED: TransitionEffects(log_action="BOOKING_CREATED"),
}


def validate_status(value: object) -> str:
    if value not in STATUSES:
        raise ValidationError(f"Invalid status: {value}", code="INVALID_STATUS")
    return value


def initial_status(role: str) -> str:
    """Clients file requests; staff bookings start out confirmed."""

    return CONFIRMED if role == STAFF else PENDING


def is_allowed(role: str, current: str | None, target: str) -> bool:
    return role in TRANSITIONS.get((current, target), frozenset())


def authorize_transition(role: str, current: str, target: str, *, force: bool = False) -> None:
    """Raise unless ``role`` may move a booking from ``current`` to ``target``.

    ``force`` lets staff step outside the table (corrections, reopening);
    it has no effect for clients.
    """

    validate_status(target)
    if role == CLIENT:
        if target != CANCELLED:
            raise AuthorizationError("Clients can only cancel bookings")
        if current not in CLIENT_CANCELLABLE:
            raise InvalidTransitionError(f"Cannot cancel a booking that is {current}")
        return
    if role != STAFF:
        raise AuthorizationError("Unknown role")
    if force or current == target:
        return
    if not is_allowed(role, current, target):
        raise InvalidTransitionError(f"Cannot move a booking from {current} to {target}")


def effects_for(previous: str | None, target: str) -> TransitionEffects:
    """Side effects keyed off the target status; nothing fires on a no-op."""

    if previous is None:
        return CREATION_EFFECTS.get(target, TransitionEffects())
    if previous == target:
        return TransitionEffects()
    return _EFFECTS.get(target, TransitionEffects())
