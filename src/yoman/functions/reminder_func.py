from yoman.config.comments import comment
from yoman.datamodel import VALID_PRE_NOTIFICATIONS
from yoman.functions.base import BaseFunction, register_tool
from yoman.logger import logger
import yoman.storage.reminder as reminder_storage
from yoman.utils import WEEKDAY_NAMES


class CreateReminder(BaseFunction):
    @property
    def tool_schema(self) -> dict:
        return {
            "type": "function",
            "name": "create_reminder",
            "description": "Create a reminder for the customer. Use 'date' for a one-time reminder, or 'day' for a weekly one.",
            "parameters": {
                "type": "object",
                "properties": {
                    "title": {
                        "type": "string",
                        "description": "The title of the reminder"
                    },
                    "time": {
                        "type": "string",
                        "description": "The time of the reminder in 'HH:MM' format"
                    },
                    "date": {
                        "type": "string",
                        "description": "The date of a one-time reminder in 'YYYY-MM-DD' format"
                    },
                    "day": {
                        "type": "string",
                        "enum": WEEKDAY_NAMES,
                        "description": "The weekday of a weekly reminder"
                    },
                    "pre_notifications": {
                        "type": "array",
                        "items": {"type": "string", "enum": list(VALID_PRE_NOTIFICATIONS)},
                        "description": "Optional. How long before the reminder to send advance notices."
                    },
                },
                "required": ["title", "time"]
            }
        }

    async def execute(
        self,
        user_id: str,
        title: str,
        time: str,
        date: str | None = None,
        day: str | None = None,
        pre_notifications: list[str] | None = None,
    ) -> str:
        try:
            reminder = await reminder_storage.create_reminder(
                owner=str(user_id),
                time=time,
                day=day,
                date=date,
                kind="recurring" if day and not date else "one-time",
                title=title,
                pre_notifications=pre_notifications,
            )
        except reminder_storage.ReminderValidationError as e:
            logger.info(f"创建提醒参数无效: user_id={user_id}, errors={e.errors}")
            return f"Invalid reminder: {e}"
        return comment("reminderCreated", reminder_id=reminder.id)


register_tool(CreateReminder())

__all__ = ["CreateReminder"]
