"""提醒集合

整份文档结构: {owner: [reminder_dict, ...]}, 预约记录与普通提醒存放在同一集合中
(预约记录带 category_id)。
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List

from ulid import ULID

from yoman.datamodel import (
    DEFAULT_DURATION_MINUTES,
    DEFAULT_PRE_NOTIFICATIONS,
    Reminder,
    ReminderKind,
    validate_reminder,
)
from yoman.events import bus, E
from yoman.logger import logger
from yoman.storage.store import get_document, update_document
from yoman.utils import combine, now_local, parse_date, parse_time, to_iso

__all__ = [
    "REMINDERS_KEY", "ReminderValidationError",
    "new_reminder_id", "iter_records",
    "get_raw_reminders", "get_all_reminders", "get_reminders_for_owner", "get_reminders_for_date",
    "get_future_reminders", "find_reminder",
    "create_reminder", "update_reminder", "update_reminders", "delete_reminder",
]

REMINDERS_KEY = "reminders"

RemindersDoc = Dict[str, List[Dict[str, Any]]]


class ReminderValidationError(ValueError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


def new_reminder_id(prefix: str = "rem") -> str:
    return f"{prefix}_{str(ULID()).lower()}"


def iter_records(doc: RemindersDoc) -> List[tuple[str, Dict[str, Any]]]:
    """展开为 (owner, 原始记录) 列表, 跳过格式异常的条目"""
    records: List[tuple[str, Dict[str, Any]]] = []
    for owner, items in (doc or {}).items():
        if not isinstance(items, list):
            logger.warning(f"提醒集合中 owner={owner} 的内容不是列表, 已忽略")
            continue
        for item in items:
            if isinstance(item, dict):
                records.append((owner, item))
    return records


async def get_raw_reminders() -> RemindersDoc:
    doc = await get_document(REMINDERS_KEY, default={})
    return doc.body or {}


async def get_all_reminders() -> List[Reminder]:
    doc = await get_raw_reminders()
    return [Reminder.from_dict(item, owner=owner) for owner, item in iter_records(doc)]


async def get_reminders_for_owner(owner: str) -> List[Reminder]:
    doc = await get_raw_reminders()
    return [Reminder.from_dict(item, owner=owner) for item in doc.get(owner, []) if isinstance(item, dict)]


async def get_reminders_for_date(date_str: str) -> List[Reminder]:
    return [r for r in await get_all_reminders() if r.date == date_str]


def _start_of(reminder: Reminder) -> datetime | None:
    day = parse_date(reminder.date)
    hm = parse_time(reminder.time)
    if day is None or hm is None:
        return None
    return combine(day, hm[0], hm[1])


async def get_future_reminders(owner: str | None = None, now: datetime | None = None) -> List[Reminder]:
    """开始时间不早于 now 的日期型提醒 (预约), 按日期、时间排序"""
    now = now or now_local()
    reminders = await (get_reminders_for_owner(owner) if owner is not None else get_all_reminders())
    future: List[tuple[datetime, Reminder]] = []
    for reminder in reminders:
        start = _start_of(reminder)
        if start is not None and start >= now:
            future.append((start, reminder))
    # "9:30" 与 "09:30" 都是合法时间, 不能按字符串排序
    future.sort(key=lambda pair: pair[0])
    return [reminder for _, reminder in future]


async def find_reminder(reminder_id: str) -> Reminder | None:
    for reminder in await get_all_reminders():
        if reminder.id == reminder_id:
            return reminder
    return None


async def create_reminder(
    owner: str,
    time: str,
    day: str | None = None,
    date: str | None = None,
    kind: ReminderKind = "one-time",
    title: str | None = None,
    duration: int = DEFAULT_DURATION_MINUTES,
    pre_notifications: list[str] | None = None,
    notes: str = "",
) -> Reminder:
    """创建普通提醒, 状态留待调度器初始化"""
    reminder = Reminder(
        id=new_reminder_id(),
        owner=str(owner),
        time=time,
        day=day,
        date=date,
        kind=kind,
        duration=duration,
        pre_notifications=list(pre_notifications) if pre_notifications else list(DEFAULT_PRE_NOTIFICATIONS),
        title=title,
        notes=notes,
        created_at=to_iso(now_local()),
    )
    errors = validate_reminder(reminder.to_dict())
    if errors:
        raise ReminderValidationError(errors)

    def _append(doc: RemindersDoc) -> None:
        doc.setdefault(reminder.owner, []).append(reminder.to_dict())

    await update_document(REMINDERS_KEY, _append, default={})
    bus.emit(E.REMINDER_CREATED, reminder)
    logger.info(f"创建提醒: id={reminder.id}, owner={owner}, day={day}, date={date}, time={time}")
    return reminder


async def update_reminders(mutate: Callable[[RemindersDoc], Any]) -> Any:
    """对整份提醒集合做一次读-改-写"""
    return await update_document(REMINDERS_KEY, mutate, default={})


async def update_reminder(
    reminder_id: str,
    transform: Callable[[Reminder], Reminder | None],
) -> Reminder | None:
    """基于最新记录更新单条提醒

    transform 接收最新读取的 Reminder, 返回更新后的 Reminder; 返回 None 表示无需写入。
    记录已不存在时返回 None。
    """
    def _mutate(doc: RemindersDoc) -> Reminder | None:
        for owner, items in doc.items():
            if not isinstance(items, list):
                continue
            for idx, item in enumerate(items):
                if isinstance(item, dict) and item.get("id") == reminder_id:
                    updated = transform(Reminder.from_dict(item, owner=owner))
                    if updated is None:
                        return None
                    items[idx] = updated.to_dict()
                    return updated
        return None

    return await update_reminders(_mutate)


async def delete_reminder(reminder_id: str) -> Reminder | None:
    """删除提醒, 返回被删除的记录"""
    def _mutate(doc: RemindersDoc) -> Reminder | None:
        for owner, items in doc.items():
            if not isinstance(items, list):
                continue
            for idx, item in enumerate(items):
                if isinstance(item, dict) and item.get("id") == reminder_id:
                    del items[idx]
                    return Reminder.from_dict(item, owner=owner)
        return None

    removed = await update_reminders(_mutate)
    if removed is not None:
        bus.emit(E.REMINDER_DELETED, removed)
        logger.info(f"删除提醒: id={reminder_id}, owner={removed.owner}")
    return removed
