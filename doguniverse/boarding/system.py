"""Core orchestration logic for the Dog Universe boarding service."""

from __future__ import annotations

import datetime as dt
import json
import logging
import secrets
import sqlite3
from typing import Any, Mapping, Sequence

from . import invoicing, lifecycle, loyalty, pricing
from .database import get_connection, initialize_database, next_sequence
from .errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .lifecycle import BOARDING, CLIENT, PET_TAXI, STAFF
from .notifications import Mailer, NotificationDispatcher

logger = logging.getLogger("doguniverse.boarding")

LANGUAGES = ("fr", "en")
GENDERS = ("MALE", "FEMALE")
NOTE_ENTITIES = ("CLIENT", "PET")
BOOKING_CHANGE_FIELDS = ("notes", "start_date", "end_date", "arrival_time", "total_price")
PENDING_RETENTION_DAYS = 30
REMINDER_LEAD_DAYS = 2
PURGE_OPERATIONS = {
    "delete_cancelled": lifecycle.CANCELLED,
    "delete_completed": lifecycle.COMPLETED,
    "delete_pending_old": lifecycle.PENDING,
}
SERVICE_LABELS = {
    BOARDING: {"fr": "Pension", "en": "Boarding"},
    PET_TAXI: {"fr": "Taxi animalier", "en": "Pet Taxi"},
}


def _now() -> str:
    return dt.datetime.now().isoformat(timespec="seconds")


def _parse_date(value: Any, field: str) -> dt.date:
    if isinstance(value, dt.date):
        return value
    try:
        return dt.date.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}", code="INVALID_DATES") from None


def _taxi_leg(value: Any, field: str) -> dict | None:
    """Normalise a taxi-leg selection: a mapping or ``True`` enables it."""

    if value is True:
        return {}
    if isinstance(value, Mapping):
        return dict(value)
    if not value:
        return None
    raise ValidationError(f"Invalid {field} selection", code="INVALID_ADDONS")


class BoardingSystem:
    """High level façade over bookings, pricing, invoices and loyalty.

    Callers identify themselves with an ``actor``: the client row (as
    returned by :meth:`get_client` or :meth:`authenticate`) of whoever is
    making the request.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        mailer: Mailer | None = None,
        reference_prefix: str = "DU",
        invoice_prefix: str = "DU",
    ) -> None:
        self.conn = get_connection(db_path)
        initialize_database(self.conn)
        self.notifier = NotificationDispatcher(self.conn, mailer)
        self.reference_prefix = reference_prefix
        self.invoice_prefix = invoice_prefix

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_staff(self, actor: Mapping) -> None:
        if not actor or actor.get("role") != STAFF:
            raise AuthorizationError("User does not have permission to perform this action")

    def _require_self_or_staff(self, actor: Mapping, client_id: int) -> None:
        if not actor:
            raise AuthorizationError("User does not have permission to perform this action")
        if actor.get("role") != STAFF and actor.get("id") != client_id:
            raise AuthorizationError("User does not have permission to perform this action")

    def _log_action(
        self,
        actor: Mapping | None,
        action: str,
        entity_type: str | None = None,
        entity_id: int | None = None,
        details: dict | None = None,
    ) -> None:
        try:
            with self.conn:
                self.conn.execute(
                    """
                    INSERT INTO action_logs(user_id, action, entity_type, entity_id, details)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        actor["id"] if actor else None,
                        action,
                        entity_type,
                        entity_id,
                        json.dumps(details) if details else None,
                    ),
                )
        except sqlite3.Error:
            logger.warning("Failed to write action log %s", action, exc_info=True)

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------
    def register_client(
        self,
        *,
        name: str,
        email: str,
        phone: str | None = None,
        language: str = "fr",
        role: str = CLIENT,
    ) -> dict:
        name = (name or "").strip()
        email = (email or "").strip().lower()
        if not name or not email:
            raise ValidationError("Name and email are required", code="MISSING_FIELDS")
        if role not in lifecycle.ROLES:
            raise ValidationError(f"Invalid role: {role}", code="INVALID_ROLE")
        if language not in LANGUAGES:
            raise ValidationError(f"Unsupported language: {language}", code="INVALID_LANGUAGE")
        try:
            with self.conn:
                cur = self.conn.execute(
                    """
                    INSERT INTO clients(name, email, phone, language, role, api_key)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (name, email, phone, language, role, secrets.token_hex(16)),
                )
                if role == CLIENT:
                    self.conn.execute(
                        "INSERT INTO loyalty_grades(client_id, grade) VALUES (?, ?)",
                        (cur.lastrowid, loyalty.BRONZE),
                    )
        except sqlite3.IntegrityError:
            raise ValidationError("Email already registered", code="EMAIL_TAKEN") from None
        client = self.get_client(cur.lastrowid)
        self._log_action(client, "USER_REGISTER", "Client", client["id"])
        return client

    def get_client(self, client_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM clients WHERE id = ?", (client_id,)).fetchone()
        if not row:
            raise NotFoundError("Client not found")
        return row

    def client_profile(self, actor: Mapping, client_id: int) -> dict:
        """Client row plus its loyalty grade, visible to the client and staff."""

        self._require_self_or_staff(actor, client_id)
        client = self.get_client(client_id)
        client["loyalty"] = self.get_loyalty_grade(client_id)
        if actor["id"] != client_id:
            client.pop("api_key", None)
        return client

    def authenticate(self, api_key: str | None) -> dict:
        row = None
        if api_key:
            row = self.conn.execute(
                "SELECT * FROM clients WHERE api_key = ?", (api_key,)
            ).fetchone()
        if not row:
            raise AuthorizationError("Invalid credentials", code="UNAUTHORIZED")
        return row

    def list_clients(self, actor: Mapping, *, grade: str | None = None) -> list[dict]:
        """Return clients with their loyalty grade, optionally filtered by tier."""

        self._require_staff(actor)
        params: list[Any] = [CLIENT]
        where = " WHERE clients.role = ?"
        if grade is not None:
            where += " AND loyalty_grades.grade = ?"
            params.append(grade)
        rows = self.conn.execute(
            """
            SELECT clients.*, loyalty_grades.grade AS loyalty_grade,
                   loyalty_grades.is_override AS loyalty_is_override
            FROM clients
            LEFT JOIN loyalty_grades ON loyalty_grades.client_id = clients.id
            """
            + where
            + " ORDER BY clients.name",
            params,
        ).fetchall()
        for row in rows:
            row.pop("api_key", None)
        return rows

    def update_client(
        self,
        actor: Mapping,
        client_id: int,
        *,
        name: str | None = None,
        phone: str | None = None,
        language: str | None = None,
    ) -> dict:
        self._require_self_or_staff(actor, client_id)
        client = self.get_client(client_id)
        if name is not None and not name.strip():
            raise ValidationError("Name cannot be empty", code="MISSING_FIELDS")
        if language is not None and language not in LANGUAGES:
            raise ValidationError(f"Unsupported language: {language}", code="INVALID_LANGUAGE")
        with self.conn:
            self.conn.execute(
                "UPDATE clients SET name = ?, phone = ?, language = ? WHERE id = ?",
                (
                    name.strip() if name is not None else client["name"],
                    phone if phone is not None else client["phone"],
                    language or client["language"],
                    client_id,
                ),
            )
        return self.client_profile(actor, client_id)

    def delete_client(self, actor: Mapping, client_id: int) -> None:
        """Remove a client and everything hanging off it in one transaction."""

        self._require_staff(actor)
        client = self.get_client(client_id)
        if client_id == actor["id"]:
            raise ValidationError("Staff cannot delete their own account", code="SELF_DELETE")
        bookings = "SELECT id FROM bookings WHERE client_id = ?"
        pets = "SELECT id FROM pets WHERE owner_id = ?"
        with self.conn:
            self.conn.execute(
                f"""
                DELETE FROM invoice_items WHERE invoice_id IN (
                    SELECT id FROM invoices WHERE client_id = ? OR booking_id IN ({bookings})
                )
                """,
                (client_id, client_id),
            )
            self.conn.execute(
                f"DELETE FROM invoices WHERE client_id = ? OR booking_id IN ({bookings})",
                (client_id, client_id),
            )
            self.conn.execute("DELETE FROM bookings WHERE client_id = ?", (client_id,))
            self.conn.execute(f"DELETE FROM booking_pets WHERE pet_id IN ({pets})", (client_id,))
            self.conn.execute(
                f"""
                DELETE FROM admin_notes
                WHERE (entity_type = 'CLIENT' AND entity_id = ?)
                   OR (entity_type = 'PET' AND entity_id IN ({pets}))
                """,
                (client_id, client_id),
            )
            self.conn.execute("DELETE FROM pets WHERE owner_id = ?", (client_id,))
            self.conn.execute("DELETE FROM notifications WHERE client_id = ?", (client_id,))
            self.conn.execute(
                "UPDATE action_logs SET user_id = NULL WHERE user_id = ?", (client_id,)
            )
            self.conn.execute("DELETE FROM loyalty_grades WHERE client_id = ?", (client_id,))
            self.conn.execute(
                "UPDATE bookings SET created_by = NULL WHERE created_by = ?", (client_id,)
            )
            self.conn.execute("DELETE FROM clients WHERE id = ?", (client_id,))
        logger.info("Deleted client %s with all dependent records", client_id)
        self._log_action(actor, "CLIENT_DELETED", "Client", client_id, {"email": client["email"]})

    # ------------------------------------------------------------------
    # Pets
    # ------------------------------------------------------------------
    def add_pet(
        self,
        actor: Mapping,
        *,
        name: str,
        species: str,
        client_id: int | None = None,
        breed: str | None = None,
        birth_date: str | None = None,
        gender: str | None = None,
        photo_url: str | None = None,
    ) -> dict:
        owner_id = client_id if client_id is not None else actor["id"]
        self._require_self_or_staff(actor, owner_id)
        self.get_client(owner_id)
        if not (name or "").strip():
            raise ValidationError("Pet name is required", code="MISSING_FIELDS")
        if species not in pricing.SPECIES:
            raise ValidationError(f"Invalid species: {species}", code="INVALID_SPECIES")
        if gender is not None and gender not in GENDERS:
            raise ValidationError(f"Invalid gender: {gender}", code="INVALID_GENDER")
        if birth_date is not None:
            _parse_date(birth_date, "birth date")
        with self.conn:
            cur = self.conn.execute(
                """
                INSERT INTO pets(owner_id, name, species, breed, birth_date, gender, photo_url)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (owner_id, name.strip(), species, breed, birth_date, gender, photo_url),
            )
        pet = self.get_pet(cur.lastrowid)
        self._log_action(actor, "PET_CREATED", "Pet", pet["id"], {"name": pet["name"]})
        return pet

    def get_pet(self, pet_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM pets WHERE id = ?", (pet_id,)).fetchone()
        if not row:
            raise NotFoundError("Pet not found")
        return row

    def list_pets(self, actor: Mapping, *, client_id: int | None = None) -> list[dict]:
        if actor.get("role") != STAFF:
            client_id = actor["id"]
        params: list[Any] = []
        where = ""
        if client_id is not None:
            where = " WHERE owner_id = ?"
            params.append(client_id)
        return self.conn.execute(
            "SELECT * FROM pets" + where + " ORDER BY name", params
        ).fetchall()

    def delete_pet(self, actor: Mapping, pet_id: int) -> None:
        """Delete a pet; bookings it was part of are kept."""

        pet = self.get_pet(pet_id)
        self._require_self_or_staff(actor, pet["owner_id"])
        with self.conn:
            self.conn.execute("DELETE FROM booking_pets WHERE pet_id = ?", (pet_id,))
            self.conn.execute(
                "DELETE FROM admin_notes WHERE entity_type = 'PET' AND entity_id = ?", (pet_id,)
            )
            self.conn.execute("DELETE FROM pets WHERE id = ?", (pet_id,))
        self._log_action(
            actor, "PET_DELETED", "Pet", pet_id, {"name": pet["name"], "species": pet["species"]}
        )

    # ------------------------------------------------------------------
    # Rate settings
    # ------------------------------------------------------------------
    def _stored_settings(self) -> dict[str, str]:
        rows = self.conn.execute("SELECT key, value FROM settings").fetchall()
        return {row["key"]: row["value"] for row in rows}

    def current_rates(self) -> pricing.RateTable:
        """Load the rate table fresh from storage."""

        return pricing.RateTable.from_settings(self._stored_settings())

    def get_settings(self, actor: Mapping) -> dict[str, int]:
        self._require_staff(actor)
        return pricing.merge_settings(self._stored_settings())

    def update_settings(self, actor: Mapping, values: Mapping[str, object]) -> dict[str, int]:
        """Store known rate keys; anything else in ``values`` is ignored."""

        self._require_staff(actor)
        updates = {
            key: pricing.coerce_rate(key, value)
            for key, value in (values or {}).items()
            if key in pricing.DEFAULT_SETTINGS
        }
        if updates:
            with self.conn:
                self.conn.executemany(
                    """
                    INSERT INTO settings(key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value
                    """,
                    [(key, str(value)) for key, value in updates.items()],
                )
            self._log_action(actor, "SETTINGS_UPDATED", "Settings", None, updates)
        return self.get_settings(actor)

    # ------------------------------------------------------------------
    # Booking lifecycle
    # ------------------------------------------------------------------
    def _resolve_booking_client(self, actor: Mapping, client_id: int | None) -> dict:
        if actor.get("role") == STAFF:
            if client_id is None:
                raise ValidationError("A client is required", code="MISSING_FIELDS")
            return self.get_client(client_id)
        if client_id is not None and client_id != actor["id"]:
            raise AuthorizationError("Clients can only book for themselves")
        return self.get_client(actor["id"])

    def _load_roster(self, client_id: int, pet_ids: Sequence[int] | None) -> list[dict]:
        if not pet_ids:
            raise ValidationError("At least one pet is required", code="MISSING_FIELDS")
        if len(set(pet_ids)) != len(pet_ids):
            raise ValidationError("A pet can only appear once per booking", code="INVALID_PETS")
        roster = []
        for pet_id in pet_ids:
            pet = self.get_pet(pet_id)
            if pet["owner_id"] != client_id:
                raise ValidationError("Pet does not belong to this client", code="INVALID_PETS")
            roster.append(pet)
        return roster

    def _price_request(
        self,
        *,
        service_type: str,
        roster: list[dict],
        start_date: str,
        end_date: str | None,
        grooming: Mapping[int, str] | None,
        taxi_go: bool,
        taxi_return: bool,
        taxi_type: str | None,
        rates: pricing.RateTable,
    ) -> tuple[pricing.Breakdown, int]:
        start = _parse_date(start_date, "start date")
        if service_type == BOARDING:
            if not end_date:
                raise ValidationError("Boarding needs an end date", code="MISSING_FIELDS")
            end = _parse_date(end_date, "end date")
            if end < start:
                raise ValidationError("End date must not be before start date", code="INVALID_DATES")
            nights = pricing.calculate_nights(start, end)
            breakdown = pricing.compute_boarding_breakdown(
                nights, roster, grooming, taxi_go, taxi_return, rates
            )
            return breakdown, nights
        if service_type == PET_TAXI:
            if end_date:
                raise ValidationError("Pet taxi bookings have no end date", code="INVALID_DATES")
            if grooming or taxi_go or taxi_return:
                raise ValidationError("Add-ons are only available for boarding", code="INVALID_ADDONS")
            return pricing.compute_taxi_price(taxi_type or pricing.TAXI_STANDARD, rates), 0
        raise ValidationError(f"Invalid service type: {service_type}", code="INVALID_SERVICE_TYPE")

    def preview_price(
        self,
        actor: Mapping,
        *,
        service_type: str,
        pet_ids: Sequence[int],
        start_date: str,
        end_date: str | None = None,
        client_id: int | None = None,
        grooming: Mapping[int, str] | None = None,
        taxi_go: Any = None,
        taxi_return: Any = None,
        taxi_type: str | None = None,
    ) -> dict:
        """Estimate a booking with the current rates without storing anything."""

        client = self._resolve_booking_client(actor, client_id)
        roster = self._load_roster(client["id"], pet_ids)
        breakdown, nights = self._price_request(
            service_type=service_type,
            roster=roster,
            start_date=start_date,
            end_date=end_date,
            grooming=grooming,
            taxi_go=_taxi_leg(taxi_go, "drop-off") is not None,
            taxi_return=_taxi_leg(taxi_return, "pick-up") is not None,
            taxi_type=taxi_type,
            rates=self.current_rates(),
        )
        preview = breakdown.as_dict(client["language"])
        preview["nights"] = nights
        return preview

    def create_booking(
        self,
        actor: Mapping,
        *,
        service_type: str,
        pet_ids: Sequence[int],
        start_date: str,
        end_date: str | None = None,
        client_id: int | None = None,
        arrival_time: str | None = None,
        notes: str | None = None,
        grooming: Mapping[int, str] | None = None,
        taxi_go: Mapping | None = None,
        taxi_return: Mapping | None = None,
        taxi_type: str | None = None,
        total_price: int | None = None,
    ) -> dict:
        """Create a booking priced from the current rate table.

        ``taxi_go``/``taxi_return`` hold the date, time and address of each
        taxi leg; a mapping or ``True`` enables that leg. ``total_price`` is the
        caller's own estimate and is replaced by the computed total.
        """

        client = self._resolve_booking_client(actor, client_id)
        roster = self._load_roster(client["id"], pet_ids)
        grooming = dict(grooming or {})
        go_leg = _taxi_leg(taxi_go, "drop-off")
        return_leg = _taxi_leg(taxi_return, "pick-up")
        rates = self.current_rates()
        breakdown, nights = self._price_request(
            service_type=service_type,
            roster=roster,
            start_date=start_date,
            end_date=end_date,
            grooming=grooming,
            taxi_go=go_leg is not None,
            taxi_return=return_leg is not None,
            taxi_type=taxi_type,
            rates=rates,
        )
        if total_price is not None and total_price != breakdown.total:
            logger.warning(
                "Client-supplied total %s for client %s replaced by computed total %s",
                total_price,
                client["id"],
                breakdown.total,
            )
        status = lifecycle.initial_status(actor["role"])
        year = dt.date.today().year

        with self.conn:
            sequence = next_sequence(self.conn, f"booking_{year}")
            reference = f"{self.reference_prefix}-{year}-{sequence:04d}"
            cur = self.conn.execute(
                """
                INSERT INTO bookings(
                    reference, client_id, service_type, status, start_date, end_date,
                    arrival_time, notes, total_price, created_by
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    reference,
                    client["id"],
                    service_type,
                    status,
                    start_date,
                    end_date,
                    arrival_time,
                    (notes or "").strip() or None,
                    breakdown.total,
                    actor["id"],
                ),
            )
            booking_id = cur.lastrowid
            for pet in roster:
                size = grooming.get(pet["id"])
                self.conn.execute(
                    """
                    INSERT INTO booking_pets(booking_id, pet_id, grooming_size, grooming_price)
                    VALUES (?, ?, ?, ?)
                    """,
                    (booking_id, pet["id"], size, rates.grooming_price(size) if size else 0),
                )
            if service_type == BOARDING:
                self._insert_boarding_detail(
                    booking_id, roster, nights, grooming, go_leg, return_leg, rates
                )
            else:
                self.conn.execute(
                    "INSERT INTO taxi_details(booking_id, taxi_type, price) VALUES (?, ?, ?)",
                    (booking_id, taxi_type or pricing.TAXI_STANDARD, breakdown.total),
                )

        booking = self.get_booking(booking_id)
        logger.info("Created booking %s (%s) for client %s", reference, status, client["id"])
        self._fire_effects(
            actor,
            booking,
            lifecycle.effects_for(None, status),
            details={"reference": reference, "service_type": service_type, "total_price": breakdown.total},
        )
        return booking

    def _insert_boarding_detail(
        self,
        booking_id: int,
        roster: list[dict],
        nights: int,
        grooming: Mapping[int, str],
        go_leg: dict | None,
        return_leg: dict | None,
        rates: pricing.RateTable,
    ) -> None:
        dog_count = sum(1 for pet in roster if pet["species"] == pricing.DOG)
        self.conn.execute(
            """
            INSERT INTO boarding_details(
                booking_id, dog_rate, cat_rate, include_grooming, grooming_price,
                taxi_go_enabled, taxi_go_date, taxi_go_time, taxi_go_address,
                taxi_return_enabled, taxi_return_date, taxi_return_time, taxi_return_address,
                taxi_addon_price
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                booking_id,
                rates.dog_rate(dog_count, nights),
                rates.cat,
                int(bool(grooming)),
                sum(rates.grooming_price(size) for size in grooming.values()),
                int(go_leg is not None),
                (go_leg or {}).get("date"),
                (go_leg or {}).get("time"),
                (go_leg or {}).get("address"),
                int(return_leg is not None),
                (return_leg or {}).get("date"),
                (return_leg or {}).get("time"),
                (return_leg or {}).get("address"),
                rates.taxi_standard if (go_leg is not None or return_leg is not None) else 0,
            ),
        )

    def _fire_effects(
        self,
        actor: Mapping,
        booking: dict,
        effects: lifecycle.TransitionEffects,
        *,
        reason: str | None = None,
        details: dict | None = None,
    ) -> None:
        """Notification, then email, then audit log; each one best-effort."""

        if effects.notification or effects.email_template:
            client = self.get_client(booking["client_id"])
            language = client["language"]
            context = {
                "reference": booking["reference"],
                "pets": ", ".join(pet["name"] for pet in booking["pets"]),
                "dates": booking["start_date"]
                + (f" - {booking['end_date']}" if booking["end_date"] else ""),
                "service": SERVICE_LABELS[booking["service_type"]][language],
                "reason_fr": f" Motif : {reason}" if reason else "",
                "reason_en": f" Reason: {reason}" if reason else "",
            }
            if effects.notification:
                self.notifier.notify(client["id"], effects.notification, **context)
            if effects.email_template:
                self.notifier.email(client, effects.email_template, **context)
        if effects.log_action:
            self._log_action(actor, effects.log_action, "Booking", booking["id"], details)

    def get_booking(self, booking_id: int, actor: Mapping | None = None) -> dict:
        row = self.conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            raise NotFoundError("Booking not found")
        if actor is not None and actor.get("role") != STAFF and row["client_id"] != actor["id"]:
            raise AuthorizationError("Booking belongs to another client")
        row["pets"] = self.conn.execute(
            """
            SELECT booking_pets.pet_id, booking_pets.grooming_size, booking_pets.grooming_price,
                   pets.name, pets.species
            FROM booking_pets
            JOIN pets ON pets.id = booking_pets.pet_id
            WHERE booking_pets.booking_id = ?
            ORDER BY booking_pets.id
            """,
            (booking_id,),
        ).fetchall()
        row["boarding_detail"] = self.conn.execute(
            "SELECT * FROM boarding_details WHERE booking_id = ?", (booking_id,)
        ).fetchone()
        row["taxi_detail"] = self.conn.execute(
            "SELECT * FROM taxi_details WHERE booking_id = ?", (booking_id,)
        ).fetchone()
        row["invoice"] = self.conn.execute(
            "SELECT id, invoice_number, status, amount FROM invoices WHERE booking_id = ?",
            (booking_id,),
        ).fetchone()
        row["photos"] = self.conn.execute(
            "SELECT * FROM stay_photos WHERE booking_id = ? ORDER BY id", (booking_id,)
        ).fetchall()
        row["nights"] = (
            pricing.calculate_nights(row["start_date"], row["end_date"]) if row["end_date"] else 0
        )
        return row

    def list_bookings(
        self,
        actor: Mapping,
        *,
        client_id: int | None = None,
        status: str | None = None,
        service_type: str | None = None,
    ) -> list[dict]:
        """Return bookings newest first; clients only ever see their own."""

        if actor.get("role") != STAFF:
            client_id = actor["id"]
        conditions: list[str] = []
        params: list[Any] = []
        if client_id is not None:
            conditions.append("client_id = ?")
            params.append(client_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(lifecycle.validate_status(status))
        if service_type is not None:
            if service_type not in lifecycle.SERVICE_TYPES:
                raise ValidationError(f"Invalid service type: {service_type}", code="INVALID_SERVICE_TYPE")
            conditions.append("service_type = ?")
            params.append(service_type)
        where = ""
        if conditions:
            where = " WHERE " + " AND ".join(conditions)
        rows = self.conn.execute(
            "SELECT id FROM bookings" + where + " ORDER BY start_date DESC, id DESC", params
        ).fetchall()
        return [self.get_booking(row["id"]) for row in rows]

    def update_booking_status(
        self,
        actor: Mapping,
        booking_id: int,
        status: str,
        *,
        reason: str | None = None,
        force: bool = False,
    ) -> dict:
        """Move a booking to ``status``.

        Clients may only cancel their own PENDING or CONFIRMED bookings.
        Staff follow the transition table unless ``force`` is set. Setting
        the status a booking already has changes nothing and sends nothing.
        """

        booking = self.get_booking(booking_id, actor)
        previous = booking["status"]
        lifecycle.authorize_transition(actor["role"], previous, status, force=force)
        if previous == status:
            return booking

        stores_reason = status in (lifecycle.CANCELLED, lifecycle.REJECTED)
        with self.conn:
            self.conn.execute(
                """
                UPDATE bookings
                SET status = ?, cancellation_reason = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    status,
                    reason if stores_reason else booking["cancellation_reason"],
                    _now(),
                    booking_id,
                ),
            )
        logger.info("Booking %s moved from %s to %s", booking["reference"], previous, status)
        updated = self.get_booking(booking_id)
        details: dict[str, Any] = {"from": previous, "to": status}
        if reason:
            details["reason"] = reason
        if force:
            details["forced"] = True
        self._fire_effects(
            actor, updated, lifecycle.effects_for(previous, status), reason=reason, details=details
        )
        return updated

    def update_booking(self, actor: Mapping, booking_id: int, changes: Mapping[str, Any]) -> dict:
        """Staff edit of notes, dates, arrival time or total price.

        New dates on a boarding stay re-freeze the dog rate (the long-stay
        rate depends on the length) and recompute the total from the stored
        detail, unless ``total_price`` is set explicitly in the same edit.
        """

        self._require_staff(actor)
        booking = self.get_booking(booking_id)
        values = {key: changes[key] for key in BOOKING_CHANGE_FIELDS if key in changes}
        if not values:
            return booking
        start = _parse_date(values.get("start_date", booking["start_date"]), "start date")
        end_value = values.get("end_date", booking["end_date"])
        if booking["service_type"] == PET_TAXI and end_value:
            raise ValidationError("Pet taxi bookings have no end date", code="INVALID_DATES")
        if booking["service_type"] == BOARDING and not end_value:
            raise ValidationError("Boarding needs an end date", code="MISSING_FIELDS")
        if end_value and _parse_date(end_value, "end date") < start:
            raise ValidationError("End date must not be before start date", code="INVALID_DATES")
        if "total_price" in values:
            values["total_price"] = pricing.coerce_rate("total_price", values["total_price"])
        reprice = booking["service_type"] == BOARDING and (
            "start_date" in values or "end_date" in values
        )
        assignments = ", ".join(f"{key} = ?" for key in values)
        with self.conn:
            self.conn.execute(
                f"UPDATE bookings SET {assignments}, updated_at = ? WHERE id = ?",
                [*values.values(), _now(), booking_id],
            )
            if reprice:
                nights = pricing.calculate_nights(start, _parse_date(end_value, "end date"))
                dog_count = sum(1 for pet in booking["pets"] if pet["species"] == pricing.DOG)
                self.conn.execute(
                    "UPDATE boarding_details SET dog_rate = ? WHERE booking_id = ?",
                    (self.current_rates().dog_rate(dog_count, nights), booking_id),
                )
                if "total_price" not in values:
                    values["total_price"] = invoicing.booking_total(self.get_booking(booking_id))
                    self.conn.execute(
                        "UPDATE bookings SET total_price = ? WHERE id = ?",
                        (values["total_price"], booking_id),
                    )
        self._log_action(actor, "BOOKING_UPDATED", "Booking", booking_id, dict(values))
        return self.get_booking(booking_id)

    def add_stay_photo(
        self, actor: Mapping, booking_id: int, *, url: str, caption: str | None = None
    ) -> dict:
        self._require_staff(actor)
        booking = self.get_booking(booking_id)
        if booking["service_type"] != BOARDING:
            raise ValidationError("Photos can only be attached to boarding stays", code="INVALID_SERVICE_TYPE")
        if not (url or "").strip():
            raise ValidationError("A photo URL is required", code="MISSING_FIELDS")
        with self.conn:
            cur = self.conn.execute(
                "INSERT INTO stay_photos(booking_id, url, caption) VALUES (?, ?, ?)",
                (booking_id, url.strip(), caption),
            )
        self.notifier.notify(
            booking["client_id"],
            "STAY_PHOTO",
            pets=", ".join(pet["name"] for pet in booking["pets"]),
            reference=booking["reference"],
        )
        return self.conn.execute(
            "SELECT * FROM stay_photos WHERE id = ?", (cur.lastrowid,)
        ).fetchone()

    def purge_bookings(self, actor: Mapping, operation: str, *, today: dt.date | None = None) -> int:
        """Bulk-delete bookings (and their invoices) in one transaction."""

        self._require_staff(actor)
        if operation not in PURGE_OPERATIONS:
            raise ValidationError(f"Invalid operation: {operation}", code="INVALID_OPERATION")
        params: list[Any] = [PURGE_OPERATIONS[operation]]
        where = "status = ?"
        if operation == "delete_pending_old":
            cutoff = (today or dt.date.today()) - dt.timedelta(days=PENDING_RETENTION_DAYS)
            where += " AND date(created_at) < ?"
            params.append(cutoff.isoformat())
        booking_ids = [
            row["id"]
            for row in self.conn.execute(f"SELECT id FROM bookings WHERE {where}", params).fetchall()
        ]
        if not booking_ids:
            return 0
        placeholders = ",".join("?" for _ in booking_ids)
        with self.conn:
            self.conn.execute(
                f"""
                DELETE FROM invoice_items WHERE invoice_id IN (
                    SELECT id FROM invoices WHERE booking_id IN ({placeholders})
                )
                """,
                booking_ids,
            )
            self.conn.execute(
                f"DELETE FROM invoices WHERE booking_id IN ({placeholders})", booking_ids
            )
            self.conn.execute(f"DELETE FROM bookings WHERE id IN ({placeholders})", booking_ids)
        logger.info("Purged %d bookings (%s)", len(booking_ids), operation)
        self._log_action(
            actor, "DANGER_ZONE", "Booking", None, {"operation": operation, "count": len(booking_ids)}
        )
        return len(booking_ids)

    def send_stay_reminders(
        self, actor: Mapping | None = None, *, today: dt.date | None = None
    ) -> int:
        """Email clients whose boarding stay starts in two days.

        Meant for a daily scheduled job; an ``actor``, when given, must be staff.
        """

        if actor is not None:
            self._require_staff(actor)
        target = (today or dt.date.today()) + dt.timedelta(days=REMINDER_LEAD_DAYS)
        rows = self.conn.execute(
            """
            SELECT id FROM bookings
            WHERE service_type = ? AND status IN (?, ?) AND start_date = ?
            """,
            (BOARDING, lifecycle.CONFIRMED, lifecycle.IN_PROGRESS, target.isoformat()),
        ).fetchall()
        sent = 0
        for row in rows:
            booking = self.get_booking(row["id"])
            client = self.get_client(booking["client_id"])
            if self.notifier.email(
                client,
                "booking_reminder",
                reference=booking["reference"],
                pets=", ".join(pet["name"] for pet in booking["pets"]),
                start_date=booking["start_date"],
            ):
                sent += 1
        return sent

    # ------------------------------------------------------------------
    # Billing
    # ------------------------------------------------------------------
    def create_invoice(
        self,
        actor: Mapping,
        *,
        client_id: int,
        items: Sequence[Mapping],
        booking_id: int | None = None,
        notes: str | None = None,
    ) -> dict:
        """Issue a PENDING invoice; the amount is always the sum of the items."""

        self._require_staff(actor)
        lines = invoicing.normalize_items(items)
        client = self.get_client(client_id)
        if booking_id is not None:
            booking = self.get_booking(booking_id)
            if booking["client_id"] != client_id:
                raise ValidationError("Booking belongs to another client", code="BOOKING_MISMATCH")
            if booking["invoice"]:
                raise ValidationError("Booking already has an invoice", code="ALREADY_INVOICED")
        amount = sum(line["total"] for line in lines)
        year = dt.date.today().year

        with self.conn:
            sequence = next_sequence(self.conn, f"invoice_{year}")
            invoice_number = invoicing.format_number(self.invoice_prefix, year, sequence)
            cur = self.conn.execute(
                """
                INSERT INTO invoices(invoice_number, client_id, booking_id, amount, status, notes, issued_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    invoice_number,
                    client_id,
                    booking_id,
                    amount,
                    invoicing.PENDING,
                    (notes or "").strip() or None,
                    _now(),
                ),
            )
            invoice_id = cur.lastrowid
            self.conn.executemany(
                """
                INSERT INTO invoice_items(invoice_id, description, quantity, unit_price, total)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (invoice_id, line["description"], line["quantity"], line["unit_price"], line["total"])
                    for line in lines
                ],
            )

        logger.info("Issued invoice %s for client %s (%s)", invoice_number, client_id, amount)
        self.notifier.notify(
            client_id, "INVOICE_AVAILABLE", invoice_number=invoice_number, amount=amount
        )
        self.notifier.email(
            client, "invoice_available", invoice_number=invoice_number, amount=amount
        )
        self._log_action(
            actor,
            "INVOICE_CREATED",
            "Invoice",
            invoice_id,
            {"invoice_number": invoice_number, "amount": amount, "client_id": client_id},
        )
        return self.get_invoice(invoice_id)

    def create_invoice_from_booking(
        self, actor: Mapping, booking_id: int, *, notes: str | None = None
    ) -> dict:
        """Invoice a booking at the rates that were frozen when it was made."""

        self._require_staff(actor)
        booking = self.get_booking(booking_id)
        client = self.get_client(booking["client_id"])
        items = invoicing.items_from_booking(booking, client["language"])
        return self.create_invoice(
            actor, client_id=client["id"], items=items, booking_id=booking_id, notes=notes
        )

    def get_invoice(self, invoice_id: int, actor: Mapping | None = None) -> dict:
        row = self.conn.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
        if not row:
            raise NotFoundError("Invoice not found")
        if actor is not None and actor.get("role") != STAFF and row["client_id"] != actor["id"]:
            raise AuthorizationError("Invoice belongs to another client")
        row["items"] = self.conn.execute(
            "SELECT * FROM invoice_items WHERE invoice_id = ? ORDER BY id", (invoice_id,)
        ).fetchall()
        return row

    def list_invoices(
        self,
        actor: Mapping,
        *,
        client_id: int | None = None,
        status: str | None = None,
    ) -> list[dict]:
        if actor.get("role") != STAFF:
            client_id = actor["id"]
        conditions: list[str] = []
        params: list[Any] = []
        if client_id is not None:
            conditions.append("client_id = ?")
            params.append(client_id)
        if status is not None:
            if status not in invoicing.INVOICE_STATUSES:
                raise ValidationError(f"Invalid invoice status: {status}", code="INVALID_STATUS")
            conditions.append("status = ?")
            params.append(status)
        where = ""
        if conditions:
            where = " WHERE " + " AND ".join(conditions)
        rows = self.conn.execute(
            "SELECT id FROM invoices" + where + " ORDER BY issued_at DESC, id DESC", params
        ).fetchall()
        return [self.get_invoice(row["id"]) for row in rows]

    def mark_invoice_paid(
        self, actor: Mapping, invoice_id: int, *, payment_method: str | None = None
    ) -> dict:
        """Settle an invoice and re-evaluate the client's loyalty grade."""

        self._require_staff(actor)
        invoice = self.get_invoice(invoice_id)
        invoicing.check_transition(invoice["status"], invoicing.PAID)
        with self.conn:
            self.conn.execute(
                "UPDATE invoices SET status = ?, paid_at = ?, payment_method = ? WHERE id = ?",
                (invoicing.PAID, _now(), payment_method, invoice_id),
            )
            grade_change = self._apply_auto_grade(invoice["client_id"])
        logger.info("Invoice %s marked paid", invoice["invoice_number"])
        self._log_action(
            actor, "INVOICE_PAID", "Invoice", invoice_id, {"invoice_number": invoice["invoice_number"]}
        )
        if grade_change:
            self._log_action(
                actor,
                "LOYALTY_GRADE_AUTO",
                "Client",
                invoice["client_id"],
                {"previous_grade": grade_change[0], "new_grade": grade_change[1]},
            )
        return self.get_invoice(invoice_id)

    def cancel_invoice(self, actor: Mapping, invoice_id: int) -> dict:
        self._require_staff(actor)
        invoice = self.get_invoice(invoice_id)
        invoicing.check_transition(invoice["status"], invoicing.CANCELLED)
        with self.conn:
            self.conn.execute(
                "UPDATE invoices SET status = ? WHERE id = ?", (invoicing.CANCELLED, invoice_id)
            )
        self._log_action(
            actor, "INVOICE_CANCELLED", "Invoice", invoice_id, {"invoice_number": invoice["invoice_number"]}
        )
        return self.get_invoice(invoice_id)

    # ------------------------------------------------------------------
    # Loyalty
    # ------------------------------------------------------------------
    def get_loyalty_grade(self, client_id: int, actor: Mapping | None = None) -> dict | None:
        if actor is not None:
            self._require_self_or_staff(actor, client_id)
        return self.conn.execute(
            "SELECT * FROM loyalty_grades WHERE client_id = ?", (client_id,)
        ).fetchone()

    def loyalty_history(self, client_id: int) -> tuple[int, int]:
        """Completed stays and total paid amount for ``client_id``."""

        stays = self.conn.execute(
            "SELECT COUNT(*) AS total FROM bookings WHERE client_id = ? AND status = ?",
            (client_id, lifecycle.COMPLETED),
        ).fetchone()["total"]
        paid = self.conn.execute(
            "SELECT COALESCE(SUM(amount), 0) AS total FROM invoices WHERE client_id = ? AND status = ?",
            (client_id, invoicing.PAID),
        ).fetchone()["total"]
        return stays, paid

    def _apply_auto_grade(self, client_id: int) -> tuple[str | None, str] | None:
        """Write the suggested grade unless it is overridden or unchanged.

        Runs inside the caller's transaction. Returns ``(old, new)`` when the
        stored grade changed.
        """

        row = self.get_loyalty_grade(client_id)
        state = loyalty.grade_from_row(row)
        suggested = loyalty.suggest_grade(*self.loyalty_history(client_id))
        new_state = loyalty.apply_suggestion(state, suggested)
        if new_state == state:
            return None
        self.conn.execute(
            """
            INSERT INTO loyalty_grades(client_id, grade, is_override, updated_at)
            VALUES (?, ?, 0, ?)
            ON CONFLICT(client_id) DO UPDATE SET grade = excluded.grade, updated_at = excluded.updated_at
            """,
            (client_id, new_state.tier, _now()),
        )
        return (row["grade"] if row else None, new_state.tier)

    def override_loyalty_grade(self, actor: Mapping, client_id: int, grade: str) -> dict:
        """Pin a client's grade; automatic recomputation leaves it alone."""

        self._require_staff(actor)
        if not loyalty.is_tier(grade):
            raise ValidationError(f"Invalid grade: {grade}", code="INVALID_GRADE")
        self.get_client(client_id)
        current = self.get_loyalty_grade(client_id)
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO loyalty_grades(client_id, grade, is_override, override_by, override_at, updated_at)
                VALUES (?, ?, 1, ?, ?, ?)
                ON CONFLICT(client_id) DO UPDATE SET
                    grade = excluded.grade,
                    is_override = 1,
                    override_by = excluded.override_by,
                    override_at = excluded.override_at,
                    updated_at = excluded.updated_at
                """,
                (client_id, grade, actor["id"], _now(), _now()),
            )
        if current is None or loyalty.is_upgrade(current["grade"], grade):
            self.notifier.notify(
                client_id,
                "LOYALTY_UPDATE",
                grade_fr=loyalty.tier_label(grade, "fr"),
                grade_en=loyalty.tier_label(grade, "en"),
            )
        self._log_action(
            actor,
            "LOYALTY_GRADE_OVERRIDE",
            "Client",
            client_id,
            {"previous_grade": current["grade"] if current else None, "new_grade": grade, "override": True},
        )
        return self.get_loyalty_grade(client_id)

    def reset_loyalty_override(self, actor: Mapping, client_id: int) -> dict:
        """Release an override and apply the current suggestion straight away."""

        self._require_staff(actor)
        self.get_client(client_id)
        with self.conn:
            self.conn.execute(
                """
                UPDATE loyalty_grades
                SET is_override = 0, override_by = NULL, override_at = NULL, updated_at = ?
                WHERE client_id = ?
                """,
                (_now(), client_id),
            )
            change = self._apply_auto_grade(client_id)
        grade = self.get_loyalty_grade(client_id)
        self._log_action(
            actor,
            "LOYALTY_GRADE_AUTO",
            "Client",
            client_id,
            {"previous_grade": change[0] if change else grade["grade"], "new_grade": grade["grade"]},
        )
        return grade

    # ------------------------------------------------------------------
    # Notifications, notes & audit trail
    # ------------------------------------------------------------------
    def list_notifications(self, actor: Mapping, *, unread_only: bool = False) -> list[dict]:
        where = "WHERE client_id = ?"
        if unread_only:
            where += " AND read = 0"
        return self.conn.execute(
            f"SELECT * FROM notifications {where} ORDER BY created_at DESC, id DESC",
            (actor["id"],),
        ).fetchall()

    def unread_notification_count(self, actor: Mapping) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) AS total FROM notifications WHERE client_id = ? AND read = 0",
            (actor["id"],),
        ).fetchone()["total"]

    def mark_notification_read(self, actor: Mapping, notification_id: int) -> dict:
        row = self.conn.execute(
            "SELECT * FROM notifications WHERE id = ?", (notification_id,)
        ).fetchone()
        if not row:
            raise NotFoundError("Notification not found")
        if row["client_id"] != actor["id"]:
            raise AuthorizationError("Notification belongs to another user")
        with self.conn:
            self.conn.execute("UPDATE notifications SET read = 1 WHERE id = ?", (notification_id,))
        row["read"] = 1
        return row

    def mark_all_notifications_read(self, actor: Mapping) -> int:
        with self.conn:
            cur = self.conn.execute(
                "UPDATE notifications SET read = 1 WHERE client_id = ? AND read = 0", (actor["id"],)
            )
        return cur.rowcount

    def add_admin_note(
        self, actor: Mapping, *, entity_type: str, entity_id: int, content: str
    ) -> dict:
        self._require_staff(actor)
        if entity_type not in NOTE_ENTITIES:
            raise ValidationError(f"Invalid note target: {entity_type}", code="INVALID_ENTITY")
        if not (content or "").strip():
            raise ValidationError("Note content is required", code="MISSING_FIELDS")
        if entity_type == "CLIENT":
            self.get_client(entity_id)
        else:
            self.get_pet(entity_id)
        with self.conn:
            cur = self.conn.execute(
                """
                INSERT INTO admin_notes(entity_type, entity_id, content, author_id)
                VALUES (?, ?, ?, ?)
                """,
                (entity_type, entity_id, content.strip(), actor["id"]),
            )
        self._log_action(actor, "ADMIN_NOTE_ADDED", entity_type.title(), entity_id)
        return self.conn.execute(
            "SELECT * FROM admin_notes WHERE id = ?", (cur.lastrowid,)
        ).fetchone()

    def list_admin_notes(self, actor: Mapping, *, entity_type: str, entity_id: int) -> list[dict]:
        self._require_staff(actor)
        return self.conn.execute(
            """
            SELECT admin_notes.*, clients.name AS author_name
            FROM admin_notes
            LEFT JOIN clients ON clients.id = admin_notes.author_id
            WHERE admin_notes.entity_type = ? AND admin_notes.entity_id = ?
            ORDER BY admin_notes.created_at DESC, admin_notes.id DESC
            """,
            (entity_type, entity_id),
        ).fetchall()

    def list_action_logs(self, actor: Mapping, *, limit: int = 100) -> list[dict]:
        self._require_staff(actor)
        rows = self.conn.execute(
            "SELECT * FROM action_logs ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        for row in rows:
            row["details"] = json.loads(row["details"]) if row["details"] else None
        return rows

    def close(self) -> None:
        self.conn.close()


__all__ = [
    "AuthorizationError",
    "BoardingSystem",
    "InvalidTransitionError",
    "NotFoundError",
    "ValidationError",
]
