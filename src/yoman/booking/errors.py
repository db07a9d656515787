"""预约流程中的异常

冲突类异常携带 RejectionReason, 输入类异常携带一个简短的错误码,
调用方 (工具函数 / 管理 API) 负责把它们转换成回复文本或 HTTP 状态码。
"""

from __future__ import annotations

from yoman.booking.availability import RejectionReason

__all__ = [
    "BookingError", "BookingConflictError", "StaleAvailabilityError",
    "BookingValidationError", "AppointmentNotFoundError",
]


class BookingError(Exception):
    pass


class BookingConflictError(BookingError):
    """时段无法预约"""

    def __init__(self, reason: RejectionReason, slot: str | None = None) -> None:
        super().__init__(f"{reason.value}: {slot}" if slot else reason.value)
        self.reason = reason
        self.slot = slot


class StaleAvailabilityError(BookingConflictError):
    """预约人上次看到的空闲时段在提交时已被占用"""


class BookingValidationError(BookingError):
    """输入无法解析或无法对应到已有的类别 / 疗程 / 列表序号"""

    def __init__(self, code: str, detail: str | None = None) -> None:
        super().__init__(f"{code}: {detail}" if detail else code)
        self.code = code
        self.detail = detail


class AppointmentNotFoundError(BookingError):
    def __init__(self, appointment_id: str | None = None) -> None:
        super().__init__(f"appointment not found: {appointment_id}")
        self.appointment_id = appointment_id
