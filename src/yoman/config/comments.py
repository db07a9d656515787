"""面向预约人的固定回复文本与提醒模板

提醒模板占位符: {name} 预约人名称, {day} 星期与日期, {time} 时间, {date} 发送当天日期
"""

__all__ = ["REMINDER_TEMPLATE", "PRE_NOTIFICATION_LEADS", "COMMENTS", "comment", "render_template"]

REMINDER_TEMPLATE = (
    "Hi {name}, this is a reminder of your appointment on {day} at {time}.\n"
    "If you need to cancel or reschedule, just reply to this message."
)

PRE_NOTIFICATION_LEADS = {
    "main": "Your appointment is starting now.",
    "30m": "Your appointment starts in 30 minutes.",
    "1h": "Your appointment starts in one hour.",
    "1d": "Your appointment is tomorrow.",
    "3d": "Your appointment is in 3 days.",
    "1w": "Your appointment is in one week.",
}

COMMENTS = {
    "noCategories": "No services are available for booking right now.",
    "noTreatments": "This service has no treatment options, you can book it directly.",
    "noDateProvided": "Which date would you like to book?",
    "noServiceSelected": "Which service would you like to book?",
    "serviceNotFound": "I couldn't find that service. Let's start over: which service would you like?",
    "treatmentNotFound": "I couldn't find that treatment, please choose one from the list.",
    "invalidDate": "That date doesn't look right, please use YYYY-MM-DD.",
    "invalidTime": "That time doesn't look right, please use HH:MM.",
    "pastDate": "That date has already passed, please choose a future date.",
    "noSlotsThatDate": "There are no free slots on that date. Would you like to try another day?",
    "preferredTimeAvailable": "{time} is available. Shall I book it?",
    "preferredTimeTaken": "{time} is not available. These times are free:",
    "slotTaken": "That time is already taken, please choose another slot.",
    "categoryFull": "There is no more room in that hour, please choose another time.",
    "customerHourTaken": "You already have an appointment in that hour.",
    "outsideBusinessHours": "That time is outside our business hours.",
    "notASlot": "That time is not one of the available slots, please pick a time from the list.",
    "inThePast": "That time has already passed.",
    "slotTakenNow": "Sorry, that slot was just taken by someone else. Let me check again for free times.",
    "bookSuccess": "Your appointment for {service} on {date} at {time} is booked. See you then!",
    "cancelNoSelection": "Which appointment would you like to cancel?",
    "appointmentNotFound": "I couldn't find that appointment, it may already be cancelled.",
    "cancelSuccess": "Your appointment has been cancelled.",
    "noFutureAppointments": "You have no upcoming appointments.",
    "abortBooking": "OK, the booking has been cancelled. Let me know if you need anything else.",
    "reminderCreated": "Reminder saved with ID: {reminder_id}",
}


def render_template(template: str, **values: object) -> str:
    """逐个替换已知占位符, 模板中的其他花括号原样保留"""
    text = template
    for key, value in values.items():
        text = text.replace("{" + key + "}", str(value))
    return text


def comment(key: str, **values: object) -> str:
    return render_template(COMMENTS[key], **values)
