"""Best-effort delivery of in-app notifications and email.

Nothing in here is allowed to fail the operation that triggered it: every
delivery error is logged and dropped.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Optional

logger = logging.getLogger("doguniverse.notifications")

Mailer = Callable[[str, str, str], None]

BRAND = "Dog Universe"

# type -> (title_fr, title_en, message_fr, message_en)
NOTIFICATION_TEMPLATES = {
    "BOOKING_CONFIRMATION": (
        "Demande de réservation envoyée",
        "Booking request sent",
        "Votre demande de réservation pour {pets} (réf. {reference}) a bien été reçue. "
        "Notre équipe vous confirmera sous 24h.",
        "Your booking request for {pets} (ref. {reference}) has been received. "
        "Our team will confirm within 24 hours.",
    ),
    "BOOKING_VALIDATION": (
        "Réservation confirmée !",
        "Booking confirmed!",
        "Votre réservation pour {pets} ({dates}) a été confirmée. Réf. : {reference}",
        "Your booking for {pets} ({dates}) has been confirmed. Ref: {reference}",
    ),
    "BOOKING_REFUSAL": (
        "Réservation non disponible",
        "Booking unavailable",
        "Votre réservation (réf. {reference}) ne peut pas être honorée.{reason_fr}",
        "Your booking (ref. {reference}) cannot be accommodated.{reason_en}",
    ),
    "INVOICE_AVAILABLE": (
        "Nouvelle facture disponible",
        "New invoice available",
        "Votre facture {invoice_number} d'un montant de {amount} MAD est disponible.",
        "Your invoice {invoice_number} for {amount} MAD is now available.",
    ),
    "LOYALTY_UPDATE": (
        "Grade de fidélité mis à jour",
        "Loyalty grade updated",
        "Félicitations ! Votre grade de fidélité a été mis à jour : {grade_fr}.",
        "Congratulations! Your loyalty grade has been updated: {grade_en}.",
    ),
    "STAY_PHOTO": (
        "Nouvelles photos de séjour",
        "New stay photos",
        "De nouvelles photos de {pets} ont été publiées pour votre réservation (réf. {reference}).",
        "New photos of {pets} have been posted for your booking (ref. {reference}).",
    ),
}

# template -> (subject_fr, subject_en, body_fr, body_en)
EMAIL_TEMPLATES = {
    "booking_confirmation": (
        f"Votre demande de réservation a bien été reçue - {BRAND}",
        f"Your booking request has been received - {BRAND}",
        "Bonjour {name},\n\nNous avons bien reçu votre demande ({service}) pour {pets}. "
        "Référence : {reference}.\nNotre équipe vous répondra sous 24h.",
        "Hello {name},\n\nWe have received your {service} request for {pets}. "
        "Reference: {reference}.\nOur team will get back to you within 24 hours.",
    ),
    "booking_validated": (
        f"Réservation confirmée - {BRAND}",
        f"Booking confirmed - {BRAND}",
        "Bonjour {name},\n\nVotre réservation ({service}) pour {pets} est confirmée : {dates}. "
        "Référence : {reference}.",
        "Hello {name},\n\nYour {service} booking for {pets} is confirmed: {dates}. "
        "Reference: {reference}.",
    ),
    "booking_refused": (
        f"Réservation non disponible - {BRAND}",
        f"Booking unavailable - {BRAND}",
        "Bonjour {name},\n\nNous ne pouvons malheureusement pas honorer la réservation "
        "{reference}.{reason_fr}",
        "Hello {name},\n\nUnfortunately we cannot accommodate booking {reference}.{reason_en}",
    ),
    "invoice_available": (
        f"Votre facture {{invoice_number}} est disponible - {BRAND}",
        f"Your invoice {{invoice_number}} is available - {BRAND}",
        "Bonjour {name},\n\nVotre facture {invoice_number} d'un montant de {amount} MAD est disponible.",
        "Hello {name},\n\nYour invoice {invoice_number} for {amount} MAD is now available.",
    ),
    "booking_reminder": (
        f"Rappel : votre séjour commence dans 2 jours - {BRAND}",
        f"Reminder: your stay starts in 2 days - {BRAND}",
        "Bonjour {name},\n\nLe séjour de {pets} commence le {start_date} (réf. {reference}).",
        "Hello {name},\n\n{pets}'s stay starts on {start_date} (ref. {reference}).",
    ),
}


class _Context(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render_notification(kind: str, **context: object) -> dict:
    title_fr, title_en, message_fr, message_en = NOTIFICATION_TEMPLATES[kind]
    values = _Context(context)
    return {
        "title_fr": title_fr,
        "title_en": title_en,
        "message_fr": message_fr.format_map(values),
        "message_en": message_en.format_map(values),
    }


def render_email(template: str, language: str = "fr", **context: object) -> tuple[str, str]:
    subject_fr, subject_en, body_fr, body_en = EMAIL_TEMPLATES[template]
    values = _Context(context)
    if language == "en":
        return subject_en.format_map(values), body_en.format_map(values)
    return subject_fr.format_map(values), body_fr.format_map(values)


class NotificationDispatcher:
    """Writes in-app notifications and hands email to a ``mailer`` callable."""

    def __init__(self, conn: sqlite3.Connection, mailer: Optional[Mailer] = None) -> None:
        self.conn = conn
        self.mailer = mailer

    def notify(self, client_id: int, kind: str, **context: object) -> dict | None:
        """Store an in-app notification; returns ``None`` if that failed."""

        try:
            content = render_notification(kind, **context)
            with self.conn:
                cur = self.conn.execute(
                    """
                    INSERT INTO notifications(client_id, type, title_fr, title_en, message_fr, message_en)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        client_id,
                        kind,
                        content["title_fr"],
                        content["title_en"],
                        content["message_fr"],
                        content["message_en"],
                    ),
                )
            return self.conn.execute(
                "SELECT * FROM notifications WHERE id = ?", (cur.lastrowid,)
            ).fetchone()
        except Exception:
            logger.warning("Failed to store %s notification for client %s", kind, client_id, exc_info=True)
            return None

    def email(self, client: dict, template: str, **context: object) -> bool:
        """Send a templated email to ``client``; returns whether it went out."""

        if self.mailer is None:
            logger.debug("No mail transport configured, skipping %s email", template)
            return False
        if not client.get("email"):
            return False
        try:
            subject, body = render_email(
                template, client.get("language") or "fr", name=client.get("name") or "", **context
            )
            self.mailer(client["email"], subject, body)
        except Exception:
            logger.warning("Failed to send %s email to client %s", template, client.get("id"), exc_info=True)
            return False
        logger.info("Sent %s email to client %s", template, client.get("id"))
        return True
