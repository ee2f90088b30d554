"""Flask application exposing the boarding system as a JSON API."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from flask import Flask, g, jsonify, request
from flask_mail import Mail, Message

from doguniverse.boarding.errors import (
    AuthorizationError,
    BoardingError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from doguniverse.boarding.system import BoardingSystem

logger = logging.getLogger("doguniverse.webapp")

STATUS_CODES = (
    (NotFoundError, 404),
    (InvalidTransitionError, 409),
    (AuthorizationError, 403),
    (ValidationError, 400),
)


def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object", code="INVALID_BODY")
    return data


def _grooming(raw: Mapping | None) -> dict[int, str]:
    """JSON object keys are strings; pet ids are integers."""

    try:
        return {int(pet_id): size for pet_id, size in (raw or {}).items()}
    except (TypeError, ValueError, AttributeError):
        raise ValidationError("Invalid grooming selection", code="INVALID_GROOMING") from None


def create_app(config: Mapping[str, Any] | None = None) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(__name__)
    app.config.from_mapping(
        DATABASE_PATH="doguniverse.db",
        SECRET_KEY="doguniverse-secret",
        REFERENCE_PREFIX="DU",
        INVOICE_PREFIX="DU",
        MAIL_DEFAULT_SENDER="Dog Universe <noreply@doguniverse.ma>",
        LOG_LEVEL="INFO",
    )
    app.config.from_prefixed_env("DOGUNIVERSE")
    if config:
        app.config.from_mapping(config)
    logging.getLogger("doguniverse").setLevel(app.config["LOG_LEVEL"])

    mail = Mail(app)

    def send_mail(to: str, subject: str, body: str) -> None:
        mail.send(Message(subject=subject, recipients=[to], body=body))

    system = BoardingSystem(
        app.config["DATABASE_PATH"],
        mailer=send_mail,
        reference_prefix=app.config["REFERENCE_PREFIX"],
        invoice_prefix=app.config["INVOICE_PREFIX"],
    )
    app.extensions["boarding_system"] = system
    logger.info("Boarding API using database %s", app.config["DATABASE_PATH"])

    @app.errorhandler(BoardingError)
    def handle_boarding_error(exc: BoardingError) -> Any:
        status = next((code for cls, code in STATUS_CODES if isinstance(exc, cls)), 400)
        if exc.code == "UNAUTHORIZED":
            status = 401
        return jsonify({"error": exc.code, "message": str(exc)}), status

    def current_actor() -> dict:
        if "actor" not in g:
            g.actor = system.authenticate(request.headers.get("X-API-Key"))
        return g.actor

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    @app.post("/api/register")
    def register() -> Any:
        data = _payload()
        client = system.register_client(
            name=data.get("name", ""),
            email=data.get("email", ""),
            phone=data.get("phone"),
            language=data.get("language", "fr"),
        )
        return jsonify(client), 201

    @app.get("/api/me")
    def me() -> Any:
        actor = current_actor()
        return jsonify(system.client_profile(actor, actor["id"]))

    @app.get("/api/clients")
    def clients() -> Any:
        return jsonify(system.list_clients(current_actor(), grade=request.args.get("grade")))

    @app.route("/api/clients/<int:client_id>", methods=["GET", "PATCH", "DELETE"])
    def client_detail(client_id: int) -> Any:
        actor = current_actor()
        if request.method == "DELETE":
            system.delete_client(actor, client_id)
            return "", 204
        if request.method == "PATCH":
            data = _payload()
            return jsonify(
                system.update_client(
                    actor,
                    client_id,
                    name=data.get("name"),
                    phone=data.get("phone"),
                    language=data.get("language"),
                )
            )
        return jsonify(system.client_profile(actor, client_id))

    @app.put("/api/clients/<int:client_id>/loyalty")
    def override_loyalty(client_id: int) -> Any:
        data = _payload()
        return jsonify(system.override_loyalty_grade(current_actor(), client_id, data.get("grade")))

    @app.delete("/api/clients/<int:client_id>/loyalty/override")
    def reset_loyalty(client_id: int) -> Any:
        return jsonify(system.reset_loyalty_override(current_actor(), client_id))

    # ------------------------------------------------------------------
    # Pets
    # ------------------------------------------------------------------
    @app.route("/api/pets", methods=["GET", "POST"])
    def pets() -> Any:
        actor = current_actor()
        if request.method == "POST":
            data = _payload()
            pet = system.add_pet(
                actor,
                client_id=data.get("client_id"),
                name=data.get("name", ""),
                species=data.get("species"),
                breed=data.get("breed"),
                birth_date=data.get("birth_date"),
                gender=data.get("gender"),
                photo_url=data.get("photo_url"),
            )
            return jsonify(pet), 201
        return jsonify(system.list_pets(actor, client_id=request.args.get("client_id", type=int)))

    @app.delete("/api/pets/<int:pet_id>")
    def delete_pet(pet_id: int) -> Any:
        system.delete_pet(current_actor(), pet_id)
        return "", 204

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------
    @app.route("/api/bookings", methods=["GET", "POST"])
    def bookings() -> Any:
        actor = current_actor()
        if request.method == "POST":
            data = _payload()
            booking = system.create_booking(
                actor,
                service_type=data.get("service_type"),
                pet_ids=data.get("pet_ids") or [],
                start_date=data.get("start_date"),
                end_date=data.get("end_date"),
                client_id=data.get("client_id"),
                arrival_time=data.get("arrival_time"),
                notes=data.get("notes"),
                grooming=_grooming(data.get("grooming")),
                taxi_go=data.get("taxi_go"),
                taxi_return=data.get("taxi_return"),
                taxi_type=data.get("taxi_type"),
                total_price=data.get("total_price"),
            )
            return jsonify(booking), 201
        return jsonify(
            system.list_bookings(
                actor,
                client_id=request.args.get("client_id", type=int),
                status=request.args.get("status"),
                service_type=request.args.get("service_type"),
            )
        )

    @app.post("/api/bookings/preview")
    def preview_booking() -> Any:
        data = _payload()
        return jsonify(
            system.preview_price(
                current_actor(),
                service_type=data.get("service_type"),
                pet_ids=data.get("pet_ids") or [],
                start_date=data.get("start_date"),
                end_date=data.get("end_date"),
                client_id=data.get("client_id"),
                grooming=_grooming(data.get("grooming")),
                taxi_go=data.get("taxi_go"),
                taxi_return=data.get("taxi_return"),
                taxi_type=data.get("taxi_type"),
            )
        )

    @app.route("/api/bookings/<int:booking_id>", methods=["GET", "PATCH"])
    def booking_detail(booking_id: int) -> Any:
        actor = current_actor()
        if request.method == "PATCH":
            return jsonify(system.update_booking(actor, booking_id, _payload()))
        return jsonify(system.get_booking(booking_id, actor))

    @app.post("/api/bookings/<int:booking_id>/status")
    def booking_status(booking_id: int) -> Any:
        data = _payload()
        return jsonify(
            system.update_booking_status(
                current_actor(),
                booking_id,
                data.get("status"),
                reason=data.get("reason"),
                force=bool(data.get("force")),
            )
        )

    @app.post("/api/bookings/<int:booking_id>/photos")
    def booking_photo(booking_id: int) -> Any:
        data = _payload()
        photo = system.add_stay_photo(
            current_actor(), booking_id, url=data.get("url", ""), caption=data.get("caption")
        )
        return jsonify(photo), 201

    @app.post("/api/bookings/<int:booking_id>/invoice")
    def booking_invoice(booking_id: int) -> Any:
        data = _payload()
        invoice = system.create_invoice_from_booking(
            current_actor(), booking_id, notes=data.get("notes")
        )
        return jsonify(invoice), 201

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------
    @app.route("/api/invoices", methods=["GET", "POST"])
    def invoices() -> Any:
        actor = current_actor()
        if request.method == "POST":
            data = _payload()
            invoice = system.create_invoice(
                actor,
                client_id=data.get("client_id"),
                items=data.get("items") or [],
                booking_id=data.get("booking_id"),
                notes=data.get("notes"),
            )
            return jsonify(invoice), 201
        return jsonify(
            system.list_invoices(
                actor,
                client_id=request.args.get("client_id", type=int),
                status=request.args.get("status"),
            )
        )

    @app.get("/api/invoices/<int:invoice_id>")
    def invoice_detail(invoice_id: int) -> Any:
        return jsonify(system.get_invoice(invoice_id, current_actor()))

    @app.post("/api/invoices/<int:invoice_id>/pay")
    def pay_invoice(invoice_id: int) -> Any:
        data = _payload()
        return jsonify(
            system.mark_invoice_paid(
                current_actor(), invoice_id, payment_method=data.get("payment_method")
            )
        )

    @app.post("/api/invoices/<int:invoice_id>/cancel")
    def cancel_invoice(invoice_id: int) -> Any:
        return jsonify(system.cancel_invoice(current_actor(), invoice_id))

    # ------------------------------------------------------------------
    # Settings, notifications & administration
    # ------------------------------------------------------------------
    @app.route("/api/settings", methods=["GET", "PUT"])
    def settings() -> Any:
        actor = current_actor()
        if request.method == "PUT":
            return jsonify(system.update_settings(actor, _payload()))
        return jsonify(system.get_settings(actor))

    @app.get("/api/notifications")
    def notifications() -> Any:
        actor = current_actor()
        unread_only = request.args.get("unread") in ("1", "true")
        return jsonify(
            {
                "notifications": system.list_notifications(actor, unread_only=unread_only),
                "unread": system.unread_notification_count(actor),
            }
        )

    @app.post("/api/notifications/<int:notification_id>/read")
    def read_notification(notification_id: int) -> Any:
        return jsonify(system.mark_notification_read(current_actor(), notification_id))

    @app.post("/api/notifications/read-all")
    def read_all_notifications() -> Any:
        return jsonify({"updated": system.mark_all_notifications_read(current_actor())})

    @app.route("/api/notes", methods=["GET", "POST"])
    def notes() -> Any:
        actor = current_actor()
        if request.method == "POST":
            data = _payload()
            note = system.add_admin_note(
                actor,
                entity_type=data.get("entity_type"),
                entity_id=data.get("entity_id"),
                content=data.get("content", ""),
            )
            return jsonify(note), 201
        return jsonify(
            system.list_admin_notes(
                actor,
                entity_type=request.args.get("entity_type"),
                entity_id=request.args.get("entity_id", type=int),
            )
        )

    @app.get("/api/admin/logs")
    def action_logs() -> Any:
        return jsonify(
            system.list_action_logs(current_actor(), limit=request.args.get("limit", 100, type=int))
        )

    @app.post("/api/admin/purge")
    def purge() -> Any:
        data = _payload()
        deleted = system.purge_bookings(current_actor(), data.get("operation"))
        return jsonify({"deleted": deleted})

    @app.post("/api/admin/reminders")
    def reminders() -> Any:
        return jsonify({"sent": system.send_stay_reminders(current_actor())})

    return app


__all__ = ["create_app"]
