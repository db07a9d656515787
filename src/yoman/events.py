"""事件总线模块，定义了事件总线类 Bus 及事件名集合 E
通道层、Agent 与提醒调度器之间只通过事件通信，彼此不直接引用。
"""

from __future__ import annotations
from pyee.asyncio import AsyncIOEventEmitter
from typing import Awaitable, Callable

from yoman.logger import logger

AsyncHandler = Callable[..., Awaitable[None]]

# 事件名集中定义
class E:
    IO_MESSAGE_RECEIVED = "io.message_received"
    IO_SEND_MESSAGE = "io.send_message"
    REMINDER_CREATED = "reminder.created"
    REMINDER_SENT = "reminder.sent"
    REMINDER_FAILED = "reminder.failed"
    REMINDER_DELETED = "reminder.deleted"
    BOOKING_CREATED = "booking.created"
    BOOKING_CANCELLED = "booking.cancelled"


class Bus(AsyncIOEventEmitter):
    def on(self, event: str) -> Callable[[AsyncHandler], AsyncHandler]:
        """注册事件处理器装饰器"""
        def decorator(handler: AsyncHandler) -> AsyncHandler:
            logger.debug(f"注册事件处理器: {event} -> {handler.__name__}")
            super(Bus, self).on(event, handler)
            return handler

        return decorator


bus = Bus()

__all__ = ["bus", "E", "Bus"]
