"""预约相关工具

工具只负责参数转换与回复文本, 预约逻辑全部在 BookingCommandProcessor 中。
处理器抛出的预约异常在这里转换成面向预约人的简短回复。
"""

from yoman.booking.availability import RejectionReason
from yoman.booking.errors import (
    AppointmentNotFoundError,
    BookingConflictError,
    BookingError,
    BookingValidationError,
    StaleAvailabilityError,
)
from yoman.booking.processor import require_booking_processor
from yoman.config.comments import comment
from yoman.functions.base import BaseFunction, register_tool
from yoman.logger import logger
from yoman.utils import parse_date

_REJECTION_COMMENTS = {
    RejectionReason.SLOT_TAKEN: "slotTaken",
    RejectionReason.CATEGORY_FULL: "categoryFull",
    RejectionReason.CUSTOMER_HOUR_TAKEN: "customerHourTaken",
    RejectionReason.OUTSIDE_BUSINESS_HOURS: "outsideBusinessHours",
    RejectionReason.NOT_A_SLOT: "notASlot",
    RejectionReason.IN_THE_PAST: "inThePast",
}

_VALIDATION_COMMENTS = {
    "no_date_provided": "noDateProvided",
    "no_service_selected": "noServiceSelected",
    "service_not_found": "serviceNotFound",
    "treatment_not_found": "treatmentNotFound",
    "invalid_date": "invalidDate",
    "invalid_time": "invalidTime",
    "past_date": "pastDate",
    "cancel_no_selection": "cancelNoSelection",
}


def describe_booking_error(error: BookingError) -> str:
    if isinstance(error, StaleAvailabilityError):
        return comment("slotTakenNow")
    if isinstance(error, BookingConflictError):
        return comment(_REJECTION_COMMENTS[error.reason])
    if isinstance(error, BookingValidationError):
        key = _VALIDATION_COMMENTS.get(error.code)
        if key is None:
            logger.warning(f"未配置回复文本的预约错误码: {error.code}")
            return str(error)
        return comment(key)
    if isinstance(error, AppointmentNotFoundError):
        return comment("appointmentNotFound")
    return str(error)


def _short_date(date_str: str) -> str:
    day = parse_date(date_str)
    return day.strftime("%d/%m") if day else date_str


_CATEGORY_SELECTOR = {
    "category_id": {
        "type": "string",
        "description": "The service category ID. Use either category_id or category_number."
    },
    "category_number": {
        "type": "integer",
        "description": "The 1-based number of the category in the last category list shown to the customer."
    },
}

_TREATMENT_SELECTOR = {
    "treatment_number": {
        "type": "integer",
        "description": "Optional. The 1-based number of the treatment in the last treatment list shown to the customer."
    },
}


class QueryCategories(BaseFunction):
    @property
    def tool_schema(self) -> dict:
        return {
            "type": "function",
            "name": "query_categories",
            "description": "List the bookable service categories. The customer can then pick one by its number.",
            "parameters": {"type": "object", "properties": {}, "required": []}
        }

    async def execute(self, user_id: str) -> str:
        categories = await require_booking_processor().query_categories(str(user_id))
        if not categories:
            return comment("noCategories")
        return "\n".join(f"{i}. {c.name}" for i, c in enumerate(categories, start=1))


class QueryTreatments(BaseFunction):
    @property
    def tool_schema(self) -> dict:
        return {
            "type": "function",
            "name": "query_treatments",
            "description": "List the treatments of one service category, with their durations.",
            "parameters": {
                "type": "object",
                "properties": dict(_CATEGORY_SELECTOR),
                "required": []
            }
        }

    async def execute(self, user_id: str, category_id: str | None = None, category_number: int | None = None) -> str:
        try:
            _, treatments = await require_booking_processor().query_treatments(
                str(user_id), category_id=category_id, category_number=category_number,
            )
        except BookingError as e:
            return describe_booking_error(e)
        if not treatments:
            return comment("noTreatments")
        return "\n".join(f"{i}. {t.name} ({t.duration_minutes} min)" for i, t in enumerate(treatments, start=1))


class QueryAvailability(BaseFunction):
    @property
    def tool_schema(self) -> dict:
        return {
            "type": "function",
            "name": "query_availability",
            "description": "List the free time slots of a service on a date. Always call this before booking.",
            "parameters": {
                "type": "object",
                "properties": {
                    "date": {
                        "type": "string",
                        "description": "The date in 'YYYY-MM-DD' format"
                    },
                    **_CATEGORY_SELECTOR,
                    **_TREATMENT_SELECTOR,
                    "preferred_time": {
                        "type": "string",
                        "description": "Optional. The time the customer asked for, in 'HH:MM' format."
                    },
                },
                "required": ["date"]
            }
        }

    async def execute(
        self,
        user_id: str,
        date: str | None = None,
        category_id: str | None = None,
        category_number: int | None = None,
        treatment_number: int | None = None,
        preferred_time: str | None = None,
    ) -> str:
        try:
            result = await require_booking_processor().list_free_slots(
                str(user_id),
                date,
                category_id=category_id,
                category_number=category_number,
                treatment_number=treatment_number,
                preferred_time=preferred_time,
            )
        except BookingError as e:
            return describe_booking_error(e)

        if not result.slots:
            return comment("noSlotsThatDate")
        if result.preferred_available is True:
            return comment("preferredTimeAvailable", time=result.preferred_time)
        if result.preferred_available is False:
            return comment("preferredTimeTaken", time=result.preferred_time) + "\n" + "\n".join(result.slots)
        return "\n".join(result.slots)


class BookAppointment(BaseFunction):
    @property
    def tool_schema(self) -> dict:
        return {
            "type": "function",
            "name": "book_appointment",
            "description": "Book an appointment for the customer. Only book a time returned by query_availability.",
            "parameters": {
                "type": "object",
                "properties": {
                    "date": {
                        "type": "string",
                        "description": "The date in 'YYYY-MM-DD' format"
                    },
                    "time": {
                        "type": "string",
                        "description": "The start time in 'HH:MM' format"
                    },
                    **_CATEGORY_SELECTOR,
                    **_TREATMENT_SELECTOR,
                },
                "required": ["date", "time"]
            }
        }

    async def execute(
        self,
        user_id: str,
        date: str | None = None,
        time: str | None = None,
        category_id: str | None = None,
        category_number: int | None = None,
        treatment_number: int | None = None,
    ) -> str:
        processor = require_booking_processor()
        try:
            result = await processor.book(
                str(user_id),
                date,
                time,
                category_id=category_id,
                category_number=category_number,
                treatment_number=treatment_number,
            )
        except BookingError as e:
            return describe_booking_error(e)

        appointment = result.appointment
        return comment(
            "bookSuccess", service=result.service_label, date=_short_date(appointment.date), time=appointment.time,
        )


class CancelAppointment(BaseFunction):
    @property
    def tool_schema(self) -> dict:
        return {
            "type": "function",
            "name": "cancel_appointment",
            "description": "Cancel one of the customer's appointments.",
            "parameters": {
                "type": "object",
                "properties": {
                    "appointment_id": {
                        "type": "string",
                        "description": "The appointment ID, if known."
                    },
                    "number": {
                        "type": "integer",
                        "description": "The 1-based number of the appointment in the last list_appointments result."
                    },
                },
                "required": []
            }
        }

    async def execute(self, user_id: str, appointment_id: str | None = None, number: int | None = None) -> str:
        try:
            await require_booking_processor().cancel(str(user_id), appointment_id=appointment_id, number=number)
        except BookingError as e:
            return describe_booking_error(e)
        return comment("cancelSuccess")


class ListAppointments(BaseFunction):
    @property
    def tool_schema(self) -> dict:
        return {
            "type": "function",
            "name": "list_appointments",
            "description": "List the customer's upcoming appointments, numbered for cancel_appointment.",
            "parameters": {"type": "object", "properties": {}, "required": []}
        }

    async def execute(self, user_id: str) -> str:
        appointments = await require_booking_processor().list_appointments(str(user_id))
        if not appointments:
            return comment("noFutureAppointments")
        lines = []
        for i, a in enumerate(appointments, start=1):
            line = f"{i}. {_short_date(a.date)} at {a.time or '--:--'}"
            if a.title:
                line += f" - {a.title}"
            lines.append(line)
        return "\n".join(lines)


class AbortBooking(BaseFunction):
    @property
    def tool_schema(self) -> dict:
        return {
            "type": "function",
            "name": "abort_booking",
            "description": "The customer gave up on the current booking. Clears the remembered lists.",
            "parameters": {"type": "object", "properties": {}, "required": []}
        }

    async def execute(self, user_id: str) -> str:
        require_booking_processor().abort(str(user_id))
        return comment("abortBooking")


register_tool(QueryCategories())
register_tool(QueryTreatments())
register_tool(QueryAvailability())
register_tool(BookAppointment())
register_tool(CancelAppointment())
register_tool(ListAppointments())
register_tool(AbortBooking())

__all__ = [
    "describe_booking_error",
    "QueryCategories", "QueryTreatments", "QueryAvailability",
    "BookAppointment", "CancelAppointment", "ListAppointments", "AbortBooking",
]
