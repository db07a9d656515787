import unittest
from datetime import date

from yoman.booking.availability import RejectionReason
from yoman.booking.errors import (
    AppointmentNotFoundError,
    BookingConflictError,
    BookingValidationError,
    StaleAvailabilityError,
)
from yoman.booking.processor import BookingCommandProcessor, configure_booking_processor
from yoman.config.comments import COMMENTS
from yoman.datamodel import FunctionCall
from yoman.functions.base import auto_execute_tool, get_all_tools
from yoman.functions.booking_func import describe_booking_error
from yoman.utils import combine
import yoman.functions.reminder_func  # noqa: F401
import yoman.storage.db_config as db_config
import yoman.storage.service_category as category_storage
import yoman.storage.user as user_storage

DAY = date(2026, 11, 10)


class TestDescribeBookingError(unittest.TestCase):
    def test_stale_availability_has_its_own_reply(self):
        self.assertEqual(
            describe_booking_error(StaleAvailabilityError(RejectionReason.SLOT_TAKEN, "10:00")),
            COMMENTS["slotTakenNow"],
        )

    def test_conflict_reasons(self):
        self.assertEqual(
            describe_booking_error(BookingConflictError(RejectionReason.CATEGORY_FULL)),
            COMMENTS["categoryFull"],
        )
        self.assertEqual(
            describe_booking_error(BookingConflictError(RejectionReason.OUTSIDE_BUSINESS_HOURS)),
            COMMENTS["outsideBusinessHours"],
        )

    def test_validation_codes(self):
        self.assertEqual(describe_booking_error(BookingValidationError("past_date")), COMMENTS["pastDate"])
        self.assertEqual(describe_booking_error(BookingValidationError("something_new", "x")), "something_new: x")

    def test_not_found(self):
        self.assertEqual(describe_booking_error(AppointmentNotFoundError("apt_1")), COMMENTS["appointmentNotFound"])


class TestBookingTools(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        await db_config.init_db(":memory:")
        await category_storage.save_category({"id": "cat_hair", "name": "Haircut", "duration_minutes": 60})
        await category_storage.save_category({
            "id": "cat_nails",
            "name": "Nails",
            "treatments": [{"id": "trt_gel", "name": "Gel", "duration_minutes": 45}],
        })
        await user_storage.create_user_if_not_exists("100", "Dana")
        configure_booking_processor(BookingCommandProcessor(clock=lambda: combine(DAY, 8, 0)))

    async def asyncTearDown(self):
        await db_config.close_db()

    async def _call(self, name, **arguments):
        return await auto_execute_tool(FunctionCall(name=name, arguments=arguments))

    async def test_all_tools_are_registered(self):
        self.assertTrue({
            "query_categories", "query_treatments", "query_availability", "book_appointment",
            "cancel_appointment", "list_appointments", "abort_booking", "create_reminder",
        } <= set(get_all_tools()))

    async def test_unknown_tool_and_missing_user(self):
        self.assertIn("not registered", await self._call("launch_rocket", user_id="100"))
        self.assertIn("Cannot identify", await self._call("query_categories"))

    async def test_booking_conversation(self):
        self.assertEqual(await self._call("query_categories", user_id="100"), "1. Haircut\n2. Nails")
        self.assertEqual(await self._call("query_treatments", user_id="100", category_number=2), "1. Gel (45 min)")

        reply = await self._call(
            "query_availability", user_id="100", date="2026-11-10", category_number=1, preferred_time="10:00",
        )
        self.assertEqual(reply, "10:00 is available. Shall I book it?")

        reply = await self._call("book_appointment", user_id="100", date="2026-11-10", time="10:00", category_number=1)
        self.assertEqual(reply, "Your appointment for Haircut on 10/11 at 10:00 is booked. See you then!")

        reply = await self._call("list_appointments", user_id="100")
        self.assertEqual(reply, "1. 10/11 at 10:00 - Appointment - Dana - Haircut")

        self.assertEqual(await self._call("cancel_appointment", user_id="100", number=1), COMMENTS["cancelSuccess"])
        self.assertEqual(await self._call("list_appointments", user_id="100"), COMMENTS["noFutureAppointments"])

    async def test_taken_preferred_time_lists_alternatives(self):
        await self._call("book_appointment", user_id="100", date="2026-11-10", time="09:00", category_id="cat_hair")
        reply = await self._call(
            "query_availability", user_id="200", date="2026-11-10", category_id="cat_hair", preferred_time="09:00",
        )
        lines = reply.split("\n")
        self.assertEqual(lines[0], "09:00 is not available. These times are free:")
        self.assertEqual(lines[1], "10:00")

    async def test_conflicts_become_replies(self):
        await self._call("query_availability", user_id="200", date="2026-11-10", category_id="cat_hair")
        await self._call("book_appointment", user_id="100", date="2026-11-10", time="10:00", category_id="cat_hair")

        stale = await self._call("book_appointment", user_id="200", date="2026-11-10", time="10:00", category_id="cat_hair")
        self.assertEqual(stale, COMMENTS["slotTakenNow"])
        taken = await self._call("book_appointment", user_id="300", date="2026-11-10", time="10:00", category_id="cat_hair")
        self.assertEqual(taken, COMMENTS["slotTaken"])

    async def test_empty_and_unknown_arguments_are_dropped(self):
        reply = await self._call(
            "query_availability", user_id="100", date="2026-11-10", category_id="cat_hair",
            preferred_time="", treatment_number=None, mood="happy",
        )
        self.assertTrue(reply.startswith("09:00\n"))

    async def test_validation_errors_become_replies(self):
        self.assertEqual(await self._call("query_availability", user_id="100", category_id="cat_hair"),
                         COMMENTS["noDateProvided"])
        self.assertEqual(await self._call("book_appointment", user_id="100", date="2026-11-10", time="10:00"),
                         COMMENTS["noServiceSelected"])
        self.assertEqual(await self._call("cancel_appointment", user_id="100"), COMMENTS["cancelNoSelection"])

    async def test_abort_booking(self):
        self.assertEqual(await self._call("abort_booking", user_id="100"), COMMENTS["abortBooking"])

    async def test_create_reminder_tool(self):
        reply = await self._call("create_reminder", user_id="100", title="Water plants", time="07:30", day="sunday")
        self.assertTrue(reply.startswith("Reminder saved with ID: rem_"))

        reply = await self._call("create_reminder", user_id="100", title="Oops", time="7 am", date="2026-11-10")
        self.assertTrue(reply.startswith("Invalid reminder:"))
