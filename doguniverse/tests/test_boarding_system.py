import datetime as dt
import unittest

from doguniverse.boarding.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from doguniverse.boarding.system import BoardingSystem


class BoardingSystemTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.system = BoardingSystem(mailer=lambda to, subject, body: self.sent.append((to, subject, body)))
        self.today = dt.date.today()
        self.year = self.today.year
        self.staff = self.system.register_client(
            name="Salma Staff", email="staff@doguniverse.ma", role="STAFF"
        )
        self.client = self.system.register_client(
            name="Jordan River", email="jordan@example.com", phone="0600000000", language="en"
        )
        self.rex = self.system.add_pet(self.client, name="Rex", species="DOG", breed="Kelpie")
        self.molly = self.system.add_pet(self.client, name="Molly", species="DOG")
        self.tigre = self.system.add_pet(self.client, name="Tigre", species="CAT")

    def tearDown(self) -> None:
        self.system.close()

    def _dates(self, nights: int, offset: int = 10) -> tuple[str, str]:
        start = self.today + dt.timedelta(days=offset)
        return start.isoformat(), (start + dt.timedelta(days=nights)).isoformat()

    def _book(self, actor=None, *, pets=None, nights=5, **extra) -> dict:
        start, end = self._dates(nights)
        actor = actor or self.client
        if actor is self.staff:
            extra.setdefault("client_id", self.client["id"])
        return self.system.create_booking(
            actor,
            service_type="BOARDING",
            pet_ids=[pet["id"] for pet in (pets or [self.rex])],
            start_date=start,
            end_date=end,
            **extra,
        )

    def _complete(self, booking: dict) -> dict:
        for status in ("IN_PROGRESS", "COMPLETED"):
            booking = self.system.update_booking_status(self.staff, booking["id"], status)
        return booking

    def _notification_types(self) -> list[str]:
        return [row["type"] for row in self.system.list_notifications(self.client)]

    # ------------------------------------------------------------------
    # Booking lifecycle
    # ------------------------------------------------------------------
    def test_end_to_end_client_booking_flow(self) -> None:
        booking = self._book()
        self.assertEqual(booking["status"], "PENDING")
        self.assertEqual(booking["reference"], f"DU-{self.year}-0001")
        self.assertEqual(booking["total_price"], 600)
        self.assertEqual(booking["nights"], 5)
        self.assertEqual([pet["name"] for pet in booking["pets"]], ["Rex"])
        self.assertEqual(booking["boarding_detail"]["dog_rate"], 120)
        self.assertEqual(self._notification_types(), ["BOOKING_CONFIRMATION"])
        self.assertEqual(self.sent[-1][0], "jordan@example.com")
        self.assertIn("Your booking request has been received", self.sent[-1][1])

        booking = self.system.update_booking_status(self.staff, booking["id"], "CONFIRMED")
        self.assertEqual(booking["status"], "CONFIRMED")
        self.assertIn("BOOKING_VALIDATION", self._notification_types())
        self.assertIn("Booking confirmed", self.sent[-1][1])

        booking = self._complete(booking)
        self.assertEqual(booking["status"], "COMPLETED")

        invoice = self.system.create_invoice_from_booking(self.staff, booking["id"])
        self.assertEqual(invoice["invoice_number"], f"DU-{self.year}-0001")
        self.assertEqual(invoice["status"], "PENDING")
        self.assertEqual(invoice["amount"], 600)
        self.assertEqual(
            [(item["description"], item["quantity"], item["unit_price"]) for item in invoice["items"]],
            [("Boarding Rex (dog)", 5, 120)],
        )
        self.assertIn("INVOICE_AVAILABLE", self._notification_types())

        paid = self.system.mark_invoice_paid(self.staff, invoice["id"], payment_method="CASH")
        self.assertEqual(paid["status"], "PAID")
        self.assertIsNotNone(paid["paid_at"])
        self.assertEqual(paid["payment_method"], "CASH")
        self.assertEqual(self.system.get_loyalty_grade(self.client["id"])["grade"], "BRONZE")

        actions = [log["action"] for log in self.system.list_action_logs(self.staff)]
        for expected in ("BOOKING_CREATED", "BOOKING_CONFIRMED", "BOOKING_COMPLETED", "INVOICE_PAID"):
            self.assertIn(expected, actions)

    def test_client_supplied_total_is_replaced(self) -> None:
        with self.assertLogs("doguniverse.boarding", level="WARNING"):
            booking = self._book(pets=[self.rex, self.molly, self.tigre], nights=3, total_price=1)
        self.assertEqual(booking["total_price"], 810)
        self.assertEqual([pet["name"] for pet in booking["pets"]], ["Rex", "Molly", "Tigre"])

    def test_add_ons_are_priced_and_frozen(self) -> None:
        booking = self._book(
            pets=[self.rex, self.tigre],
            nights=2,
            grooming={self.rex["id"]: "LARGE"},
            taxi_go={"date": self._dates(0)[0], "time": "09:00", "address": "12 Rue Atlas"},
        )
        self.assertEqual(booking["total_price"], 2 * 120 + 2 * 70 + 150 + 150)
        detail = booking["boarding_detail"]
        self.assertEqual(detail["taxi_go_enabled"], 1)
        self.assertEqual(detail["taxi_return_enabled"], 0)
        self.assertEqual(detail["taxi_go_address"], "12 Rue Atlas")
        self.assertEqual(booking["pets"][0]["grooming_size"], "LARGE")

        self.system.update_settings(self.staff, {"boarding_dog_per_night": 200, "taxi_standard": 500})
        invoice = self.system.create_invoice_from_booking(self.staff, booking["id"])
        self.assertEqual(invoice["amount"], booking["total_price"])
        self.assertEqual(
            [item["description"] for item in invoice["items"]],
            [
                "Boarding Rex (dog)",
                "Boarding Tigre (cat)",
                "Grooming Rex (large)",
                "Pet Taxi - Drop-off",
            ],
        )

    def test_preview_uses_current_rates_and_stores_nothing(self) -> None:
        start, end = self._dates(4)
        self.system.update_settings(self.staff, {"boarding_cat_per_night": 90})
        preview = self.system.preview_price(
            self.client, service_type="BOARDING", pet_ids=[self.tigre["id"]], start_date=start, end_date=end
        )
        self.assertEqual(preview["total"], 360)
        self.assertEqual(preview["nights"], 4)
        self.assertEqual(self.system.list_bookings(self.client), [])

    def test_pet_taxi_booking(self) -> None:
        booking = self.system.create_booking(
            self.client,
            service_type="PET_TAXI",
            pet_ids=[self.rex["id"]],
            start_date=self._dates(0)[0],
            taxi_type="VET",
        )
        self.assertEqual(booking["total_price"], 300)
        self.assertEqual(booking["taxi_detail"]["taxi_type"], "VET")
        self.assertIsNone(booking["boarding_detail"])
        invoice = self.system.create_invoice_from_booking(self.staff, booking["id"])
        self.assertEqual(invoice["items"][0]["description"], "Pet Taxi - Vet transport")
        self.assertEqual(invoice["amount"], 300)

    def test_booking_validation(self) -> None:
        start, end = self._dates(3)
        with self.assertRaises(ValidationError):
            self.system.create_booking(
                self.client, service_type="BOARDING", pet_ids=[], start_date=start, end_date=end
            )
        with self.assertRaises(ValidationError):
            self.system.create_booking(
                self.client, service_type="BOARDING", pet_ids=[self.rex["id"]], start_date=end, end_date=start
            )
        with self.assertRaises(ValidationError):
            self.system.create_booking(
                self.client, service_type="PET_TAXI", pet_ids=[self.rex["id"]], start_date=start, end_date=end
            )
        other = self.system.register_client(name="Sam Other", email="sam@example.com")
        stranger = self.system.add_pet(other, name="Bruno", species="DOG")
        with self.assertRaises(ValidationError) as ctx:
            self.system.create_booking(
                self.client, service_type="BOARDING", pet_ids=[stranger["id"]], start_date=start, end_date=end
            )
        self.assertEqual(ctx.exception.code, "INVALID_PETS")
        self.assertEqual(self.system.list_bookings(self.staff), [])

    def test_staff_created_booking_is_confirmed_without_notification(self) -> None:
        booking = self._book(self.staff)
        self.assertEqual(booking["status"], "CONFIRMED")
        self.assertEqual(booking["created_by"], self.staff["id"])
        self.assertEqual(self._notification_types(), [])
        self.assertEqual(self.sent, [])
        actions = [log["action"] for log in self.system.list_action_logs(self.staff)]
        self.assertIn("BOOKING_CREATED", actions)

    def test_client_can_only_cancel(self) -> None:
        booking = self._book()
        with self.assertRaises(AuthorizationError):
            self.system.update_booking_status(self.client, booking["id"], "COMPLETED")
        self.assertEqual(self.system.get_booking(booking["id"])["status"], "PENDING")

        cancelled = self.system.update_booking_status(
            self.client, booking["id"], "CANCELLED", reason="Change of plans"
        )
        self.assertEqual(cancelled["status"], "CANCELLED")
        self.assertEqual(cancelled["cancellation_reason"], "Change of plans")
        self.assertIn("BOOKING_REFUSAL", self._notification_types())
        with self.assertRaises(InvalidTransitionError):
            self.system.update_booking_status(self.client, booking["id"], "CANCELLED")

    def test_client_cannot_touch_other_bookings(self) -> None:
        booking = self._book()
        other = self.system.register_client(name="Sam Other", email="sam@example.com")
        with self.assertRaises(AuthorizationError):
            self.system.get_booking(booking["id"], other)
        with self.assertRaises(AuthorizationError):
            self.system.update_booking_status(other, booking["id"], "CANCELLED")
        self.assertEqual(self.system.list_bookings(other), [])
        with self.assertRaises(NotFoundError):
            self.system.update_booking_status(self.staff, 999, "CONFIRMED")

    def test_staff_must_follow_table_unless_forced(self) -> None:
        booking = self._complete(self._book(self.staff))
        with self.assertRaises(InvalidTransitionError):
            self.system.update_booking_status(self.staff, booking["id"], "PENDING")
        reopened = self.system.update_booking_status(self.staff, booking["id"], "PENDING", force=True)
        self.assertEqual(reopened["status"], "PENDING")
        log = self.system.list_action_logs(self.staff)[0]
        self.assertEqual(log["action"], "BOOKING_REOPENED")
        self.assertTrue(log["details"]["forced"])

    def test_repeated_status_sends_nothing(self) -> None:
        booking = self._book()
        self.system.update_booking_status(self.staff, booking["id"], "CONFIRMED")
        notifications = len(self._notification_types())
        emails = len(self.sent)
        self.system.update_booking_status(self.staff, booking["id"], "CONFIRMED")
        self.assertEqual(len(self._notification_types()), notifications)
        self.assertEqual(len(self.sent), emails)

    def test_mail_failure_does_not_fail_booking(self) -> None:
        def broken_mailer(to: str, subject: str, body: str) -> None:
            raise ConnectionError("SMTP down")

        self.system.notifier.mailer = broken_mailer
        with self.assertLogs("doguniverse.notifications", level="WARNING"):
            booking = self._book()
            confirmed = self.system.update_booking_status(self.staff, booking["id"], "CONFIRMED")
        self.assertEqual(confirmed["status"], "CONFIRMED")
        self.assertEqual(self._notification_types()[0], "BOOKING_VALIDATION")

    def test_references_are_sequential(self) -> None:
        first = self._book()
        second = self._book(pets=[self.tigre])
        self.assertEqual(first["reference"], f"DU-{self.year}-0001")
        self.assertEqual(second["reference"], f"DU-{self.year}-0002")

    def test_update_booking(self) -> None:
        booking = self._book()
        with self.assertRaises(AuthorizationError):
            self.system.update_booking(self.client, booking["id"], {"notes": "x"})
        updated = self.system.update_booking(
            self.staff, booking["id"], {"notes": "Needs medication", "total_price": 550, "status": "COMPLETED"}
        )
        self.assertEqual(updated["notes"], "Needs medication")
        self.assertEqual(updated["total_price"], 550)
        self.assertEqual(updated["status"], "PENDING")
        with self.assertRaises(ValidationError):
            self.system.update_booking(self.staff, booking["id"], {"end_date": "2000-01-01"})

    def test_stay_photo_notifies_client(self) -> None:
        booking = self._book(self.staff)
        photo = self.system.add_stay_photo(
            self.staff, booking["id"], url="https://cdn.doguniverse.ma/rex.jpg", caption="Playtime"
        )
        self.assertEqual(photo["booking_id"], booking["id"])
        self.assertEqual(len(self.system.get_booking(booking["id"])["photos"]), 1)
        self.assertEqual(self._notification_types(), ["STAY_PHOTO"])

    def test_purge_bookings(self) -> None:
        keep = self._book()
        drop = self._book(pets=[self.tigre])
        self.system.update_booking_status(self.staff, drop["id"], "CANCELLED")
        self.system.create_invoice_from_booking(self.staff, drop["id"])
        self.assertEqual(self.system.purge_bookings(self.staff, "delete_cancelled"), 1)
        self.assertEqual([b["id"] for b in self.system.list_bookings(self.staff)], [keep["id"]])
        self.assertEqual(self.system.list_invoices(self.staff), [])
        with self.assertRaises(ValidationError):
            self.system.purge_bookings(self.staff, "delete_everything")
        with self.assertRaises(AuthorizationError):
            self.system.purge_bookings(self.client, "delete_completed")

    def test_stay_reminders(self) -> None:
        start = (self.today + dt.timedelta(days=2)).isoformat()
        end = (self.today + dt.timedelta(days=5)).isoformat()
        self.system.create_booking(
            self.staff,
            client_id=self.client["id"],
            service_type="BOARDING",
            pet_ids=[self.rex["id"]],
            start_date=start,
            end_date=end,
        )
        self._book(self.staff)
        self.assertEqual(self.system.send_stay_reminders(), 1)
        self.assertIn("Reminder", self.sent[-1][1])
        self.assertIn(start, self.sent[-1][2])

    # ------------------------------------------------------------------
    # Invoices & loyalty
    # ------------------------------------------------------------------
    def test_invoice_amount_is_sum_of_items(self) -> None:
        invoice = self.system.create_invoice(
            self.staff,
            client_id=self.client["id"],
            items=[
                {"description": "Grooming", "quantity": 2, "unit_price": 150, "total": 9999},
                {"description": "Vet taxi", "unit_price": 300},
            ],
            notes="Walk-in",
        )
        self.assertEqual([item["total"] for item in invoice["items"]], [300, 300])
        self.assertEqual(invoice["amount"], sum(item["total"] for item in invoice["items"]))
        for item in invoice["items"]:
            self.assertEqual(item["total"], item["quantity"] * item["unit_price"])

    def test_invalid_invoice_leaves_nothing_behind(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.create_invoice(self.staff, client_id=self.client["id"], items=[])
        with self.assertRaises(ValidationError):
            self.system.create_invoice(
                self.staff, client_id=self.client["id"], items=[{"description": "X", "unit_price": -1}]
            )
        with self.assertRaises(NotFoundError):
            self.system.create_invoice(
                self.staff, client_id=999, items=[{"description": "X", "unit_price": 10}]
            )
        with self.assertRaises(AuthorizationError):
            self.system.create_invoice(
                self.client, client_id=self.client["id"], items=[{"description": "X", "unit_price": 10}]
            )
        self.assertEqual(self.system.list_invoices(self.staff), [])
        invoice = self.system.create_invoice(
            self.staff, client_id=self.client["id"], items=[{"description": "X", "unit_price": 10}]
        )
        self.assertEqual(invoice["invoice_number"], f"DU-{self.year}-0001")

    def test_invoice_state_machine(self) -> None:
        items = [{"description": "Boarding", "quantity": 1, "unit_price": 120}]
        first = self.system.create_invoice(self.staff, client_id=self.client["id"], items=items)
        second = self.system.create_invoice(self.staff, client_id=self.client["id"], items=items)
        self.assertEqual(second["invoice_number"], f"DU-{self.year}-0002")
        self.system.mark_invoice_paid(self.staff, first["id"])
        with self.assertRaises(InvalidTransitionError):
            self.system.cancel_invoice(self.staff, first["id"])
        cancelled = self.system.cancel_invoice(self.staff, second["id"])
        self.assertEqual(cancelled["status"], "CANCELLED")
        with self.assertRaises(InvalidTransitionError):
            self.system.mark_invoice_paid(self.staff, second["id"])

    def test_booking_is_invoiced_once(self) -> None:
        booking = self._book(self.staff)
        self.system.create_invoice_from_booking(self.staff, booking["id"])
        with self.assertRaises(ValidationError) as ctx:
            self.system.create_invoice_from_booking(self.staff, booking["id"])
        self.assertEqual(ctx.exception.code, "ALREADY_INVOICED")

    def test_clients_only_see_their_invoices(self) -> None:
        invoice = self.system.create_invoice(
            self.staff, client_id=self.client["id"], items=[{"description": "X", "unit_price": 10}]
        )
        other = self.system.register_client(name="Sam Other", email="sam@example.com")
        self.assertEqual(self.system.list_invoices(other), [])
        self.assertEqual(len(self.system.list_invoices(self.client)), 1)
        with self.assertRaises(AuthorizationError):
            self.system.get_invoice(invoice["id"], other)

    def test_payment_recomputes_loyalty(self) -> None:
        for _ in range(4):
            self._complete(self._book(self.staff))
        invoice = self.system.create_invoice(
            self.staff, client_id=self.client["id"], items=[{"description": "Stays", "unit_price": 1000}]
        )
        self.system.mark_invoice_paid(self.staff, invoice["id"])
        grade = self.system.get_loyalty_grade(self.client["id"])
        self.assertEqual(grade["grade"], "SILVER")
        self.assertEqual(grade["is_override"], 0)

    def test_override_survives_payment_until_reset(self) -> None:
        self.system.override_loyalty_grade(self.staff, self.client["id"], "SILVER")
        invoice = self.system.create_invoice(
            self.staff, client_id=self.client["id"], items=[{"description": "Season pass", "unit_price": 60_000}]
        )
        self.system.mark_invoice_paid(self.staff, invoice["id"])
        grade = self.system.get_loyalty_grade(self.client["id"])
        self.assertEqual(grade["grade"], "SILVER")
        self.assertEqual(grade["is_override"], 1)
        self.assertEqual(grade["override_by"], self.staff["id"])

        grade = self.system.reset_loyalty_override(self.staff, self.client["id"])
        self.assertEqual(grade["grade"], "PLATINUM")
        self.assertEqual(grade["is_override"], 0)

    def test_override_notifies_only_on_upgrade(self) -> None:
        self.system.override_loyalty_grade(self.staff, self.client["id"], "GOLD")
        self.assertEqual(self._notification_types(), ["LOYALTY_UPDATE"])
        self.system.override_loyalty_grade(self.staff, self.client["id"], "SILVER")
        self.system.override_loyalty_grade(self.staff, self.client["id"], "SILVER")
        self.assertEqual(self._notification_types(), ["LOYALTY_UPDATE"])
        self.assertIn("Gold", self.system.list_notifications(self.client)[0]["message_en"])

    def test_override_validation(self) -> None:
        with self.assertRaises(AuthorizationError):
            self.system.override_loyalty_grade(self.client, self.client["id"], "PLATINUM")
        with self.assertRaises(ValidationError):
            self.system.override_loyalty_grade(self.staff, self.client["id"], "DIAMOND")
        with self.assertRaises(NotFoundError):
            self.system.override_loyalty_grade(self.staff, 999, "GOLD")

    # ------------------------------------------------------------------
    # Clients, pets, settings
    # ------------------------------------------------------------------
    def test_registration(self) -> None:
        self.assertEqual(self.system.get_loyalty_grade(self.client["id"])["grade"], "BRONZE")
        self.assertIsNone(self.system.get_loyalty_grade(self.staff["id"]))
        self.assertEqual(self.system.authenticate(self.client["api_key"])["id"], self.client["id"])
        with self.assertRaises(AuthorizationError):
            self.system.authenticate("not-a-key")
        with self.assertRaises(ValidationError) as ctx:
            self.system.register_client(name="Jordan Again", email="JORDAN@example.com")
        self.assertEqual(ctx.exception.code, "EMAIL_TAKEN")

    def test_list_and_update_clients(self) -> None:
        clients = self.system.list_clients(self.staff)
        self.assertEqual([client["id"] for client in clients], [self.client["id"]])
        self.assertEqual(clients[0]["loyalty_grade"], "BRONZE")
        with self.assertRaises(AuthorizationError):
            self.system.list_clients(self.client)
        updated = self.system.update_client(self.client, self.client["id"], language="fr")
        self.assertEqual(updated["language"], "fr")
        self.assertEqual(updated["phone"], "0600000000")

    def test_settings(self) -> None:
        settings = self.system.update_settings(
            self.staff, {"taxi_vet": "350", "unknown_key": 12}
        )
        self.assertEqual(settings["taxi_vet"], 350)
        self.assertNotIn("unknown_key", settings)
        self.assertEqual(settings["taxi_airport"], 300)
        self.assertEqual(self.system.current_rates().taxi_vet, 350)
        with self.assertRaises(ValidationError):
            self.system.update_settings(self.staff, {"taxi_vet": -10})
        with self.assertRaises(AuthorizationError):
            self.system.get_settings(self.client)

    def test_delete_pet_keeps_bookings(self) -> None:
        booking = self._book(pets=[self.rex, self.tigre])
        self.system.add_admin_note(self.staff, entity_type="PET", entity_id=self.rex["id"], content="Shy")
        self.system.delete_pet(self.client, self.rex["id"])
        with self.assertRaises(NotFoundError):
            self.system.get_pet(self.rex["id"])
        remaining = self.system.get_booking(booking["id"])
        self.assertEqual([pet["name"] for pet in remaining["pets"]], ["Tigre"])
        self.assertEqual(
            self.system.list_admin_notes(self.staff, entity_type="PET", entity_id=self.rex["id"]), []
        )

    def test_delete_client_cascades(self) -> None:
        booking = self._book()
        self.system.create_invoice_from_booking(self.staff, booking["id"])
        self.system.add_admin_note(
            self.staff, entity_type="CLIENT", entity_id=self.client["id"], content="VIP"
        )
        with self.assertRaises(AuthorizationError):
            self.system.delete_client(self.client, self.client["id"])
        self.system.delete_client(self.staff, self.client["id"])
        with self.assertRaises(NotFoundError):
            self.system.get_client(self.client["id"])
        for table in (
            "bookings",
            "booking_pets",
            "boarding_details",
            "invoices",
            "invoice_items",
            "pets",
            "admin_notes",
            "notifications",
            "loyalty_grades",
        ):
            count = self.system.conn.execute(f"SELECT COUNT(*) AS total FROM {table}").fetchone()["total"]
            self.assertEqual(count, 0, table)

    def test_notifications_read_state(self) -> None:
        self._book()
        self._book(pets=[self.tigre])
        self.assertEqual(self.system.unread_notification_count(self.client), 2)
        first = self.system.list_notifications(self.client)[0]
        with self.assertRaises(AuthorizationError):
            self.system.mark_notification_read(self.staff, first["id"])
        self.system.mark_notification_read(self.client, first["id"])
        self.assertEqual(self.system.unread_notification_count(self.client), 1)
        self.assertEqual(self.system.mark_all_notifications_read(self.client), 1)
        self.assertEqual(self.system.list_notifications(self.client, unread_only=True), [])

    # ------------------------------------------------------------------
    # Booking price stays in step with its invoice
    # ------------------------------------------------------------------
    def test_same_day_stay_invoices_its_add_ons(self) -> None:
        booking = self._book(self.staff, nights=0, taxi_go={"address": "12 Rue Atlas"})
        self.assertEqual(booking["nights"], 0)
        self.assertEqual(booking["total_price"], 150)
        invoice = self.system.create_invoice_from_booking(self.staff, booking["id"])
        self.assertEqual(
            [(item["description"], item["quantity"], item["unit_price"]) for item in invoice["items"]],
            [("Pet Taxi - Drop-off", 1, 150)],
        )
        self.assertEqual(invoice["amount"], booking["total_price"])

    def test_same_day_stay_without_add_ons_has_nothing_to_invoice(self) -> None:
        booking = self._book(self.staff, nights=0)
        self.assertEqual(booking["total_price"], 0)
        with self.assertRaises(ValidationError) as ctx:
            self.system.create_invoice_from_booking(self.staff, booking["id"])
        self.assertEqual(ctx.exception.code, "MISSING_ITEMS")
        self.assertEqual(self.system.list_invoices(self.staff), [])

    def test_taxi_leg_flag_is_frozen_with_the_price(self) -> None:
        booking = self._book(self.staff, nights=3, taxi_go=True, taxi_return=None)
        self.assertEqual(booking["total_price"], 3 * 120 + 150)
        detail = booking["boarding_detail"]
        self.assertEqual((detail["taxi_go_enabled"], detail["taxi_return_enabled"]), (1, 0))
        self.assertEqual(detail["taxi_addon_price"], 150)
        invoice = self.system.create_invoice_from_booking(self.staff, booking["id"])
        self.assertEqual(invoice["amount"], booking["total_price"])

        booking = self._book(self.staff, nights=3, taxi_go=0, taxi_return="")
        self.assertEqual(booking["total_price"], 360)
        self.assertEqual(booking["boarding_detail"]["taxi_go_enabled"], 0)
        invoice = self.system.create_invoice_from_booking(self.staff, booking["id"])
        self.assertEqual(invoice["amount"], 360)

    def test_unrecognised_taxi_leg_values_are_rejected(self) -> None:
        start, end = self._dates(3)
        for value in (1, "yes", ["09:00"]):
            with self.subTest(value=value):
                with self.assertRaises(ValidationError) as ctx:
                    self._book(nights=3, taxi_go=value)
                self.assertEqual(ctx.exception.code, "INVALID_ADDONS")
                with self.assertRaises(ValidationError):
                    self.system.preview_price(
                        self.client,
                        service_type="BOARDING",
                        pet_ids=[self.rex["id"]],
                        start_date=start,
                        end_date=end,
                        taxi_return=value,
                    )
        self.assertEqual(self.system.list_bookings(self.staff), [])

    def test_new_dates_reprice_boarding_stay(self) -> None:
        booking = self._book(self.staff, nights=5)
        self.assertEqual(booking["total_price"], 600)
        start = dt.date.fromisoformat(booking["start_date"])
        updated = self.system.update_booking(
            self.staff, booking["id"], {"end_date": (start + dt.timedelta(days=40)).isoformat()}
        )
        self.assertEqual(updated["boarding_detail"]["dog_rate"], 100)
        self.assertEqual(updated["total_price"], 4000)
        invoice = self.system.create_invoice_from_booking(self.staff, booking["id"])
        self.assertEqual(invoice["amount"], updated["total_price"])

    def test_explicit_total_wins_over_repricing(self) -> None:
        booking = self._book(self.staff, nights=5)
        start = dt.date.fromisoformat(booking["start_date"])
        updated = self.system.update_booking(
            self.staff,
            booking["id"],
            {"end_date": (start + dt.timedelta(days=6)).isoformat(), "total_price": 650},
        )
        self.assertEqual(updated["total_price"], 650)
        self.assertEqual(updated["nights"], 6)

    def test_deleting_staff_keeps_their_audit_trail(self) -> None:
        colleague = self.system.register_client(
            name="Karim Staff", email="karim@doguniverse.ma", role="STAFF"
        )
        self.system.override_loyalty_grade(colleague, self.client["id"], "GOLD")
        self.system.delete_client(self.staff, colleague["id"])
        overrides = [
            log for log in self.system.list_action_logs(self.staff)
            if log["action"] == "LOYALTY_GRADE_OVERRIDE"
        ]
        self.assertEqual(len(overrides), 1)
        self.assertIsNone(overrides[0]["user_id"])
        self.assertEqual(overrides[0]["entity_id"], self.client["id"])

    def test_invoice_status_filter(self) -> None:
        items = [{"description": "Boarding", "unit_price": 120}]
        paid = self.system.create_invoice(self.staff, client_id=self.client["id"], items=items)
        self.system.create_invoice(self.staff, client_id=self.client["id"], items=items)
        self.system.mark_invoice_paid(self.staff, paid["id"])
        self.assertEqual(
            [row["id"] for row in self.system.list_invoices(self.staff, status="PAID")], [paid["id"]]
        )
        with self.assertRaises(ValidationError) as ctx:
            self.system.list_invoices(self.staff, status="OVERDUE")
        self.assertEqual(ctx.exception.code, "INVALID_STATUS")


if __name__ == "__main__":
    unittest.main()
