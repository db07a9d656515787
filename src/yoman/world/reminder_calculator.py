"""提醒状态计算 (纯函数)

每次轮询都从提醒的声明式时间表 (星期/日期 + 时间) 重新推算出具体时间点,
持久化的只有每个 (提醒, 通知类型) 的状态记录。所有函数都不修改入参, 返回新的 Reminder。

通知类型: "main" 表示主提醒, 其余为预提醒偏移量 ("30m" / "1h" / "1d" / "3d" / "1w")。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict

from yoman.datamodel import MAIN, NotificationStatus, Reminder
from yoman.logger import logger
from yoman.utils import (
    combine,
    day_index,
    format_date,
    is_past,
    is_within_window,
    next_occurrence,
    parse_date,
    parse_iso,
    parse_offset,
    parse_time,
    subtract_interval,
    to_iso,
    week_start,
)

__all__ = [
    "SEND_WINDOW_SECONDS", "INIT_TOLERANCE_SECONDS", "MAX_RETRIES", "RETRY_BACKOFF_SECONDS",
    "RETRY_STALE_SECONDS", "DELETE_AFTER_SECONDS", "ROLLOVER_MARGIN_SECONDS",
    "ScheduledTimes",
    "compute_schedule", "needs_initialization", "initialize_status", "refresh_status",
    "find_closest_due_pre_notification", "should_send", "needs_retry", "should_retry",
    "mark_sent", "mark_failed", "should_delete",
]

SEND_WINDOW_SECONDS = 30
INIT_TOLERANCE_SECONDS = 5 * 60
MAX_RETRIES = 5
RETRY_BACKOFF_SECONDS = 60
# 到期时间过去多久之后不再重试
RETRY_STALE_SECONDS = SEND_WINDOW_SECONDS + MAX_RETRIES * RETRY_BACKOFF_SECONDS
DELETE_AFTER_SECONDS = 3 * 60
ROLLOVER_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class ScheduledTimes:
    main: datetime
    pre: Dict[str, datetime] = field(default_factory=dict)

    def due_time(self, notification_type: str) -> datetime | None:
        if notification_type == MAIN:
            return self.main
        return self.pre.get(notification_type)

    @classmethod
    def from_status(cls, reminder: Reminder) -> "ScheduledTimes | None":
        """按已持久化的状态记录还原时间点; 主提醒时间缺失时返回 None"""
        if reminder.main_status is None:
            return None
        main = parse_iso(reminder.main_status.scheduled_for)
        if main is None:
            return None
        pre = {}
        for offset, status in reminder.pre_status.items():
            due = parse_iso(status.scheduled_for)
            if due is not None:
                pre[offset] = due
        return cls(main=main, pre=pre)


def _resolve_main(reminder: Reminder, now: datetime) -> datetime | None:
    hm = parse_time(reminder.time)
    if hm is None:
        return None
    hour, minute = hm
    tz = now.tzinfo

    if reminder.date:
        day = parse_date(reminder.date)
        if day is None:
            return None
        return combine(day, hour, minute, tz)

    if reminder.day:
        target = day_index(reminder.day)
        if target is None:
            return None
        day = next_occurrence(now.date(), target)
        main = combine(day, hour, minute, tz)
        if (now - main).total_seconds() > ROLLOVER_MARGIN_SECONDS:
            day = day + timedelta(days=7)
            main = combine(day, hour, minute, tz)

        # 周期提醒本周已发送过: 强制推到下周
        if reminder.kind == "recurring" and reminder.recurring_status.last_sent_week:
            last_week = parse_date(reminder.recurring_status.last_sent_week)
            current_week = week_start(now)
            if last_week is not None and last_week == current_week and week_start(day) == current_week:
                main = combine(day + timedelta(days=7), hour, minute, tz)
        return main

    return None


def compute_schedule(reminder: Reminder, now: datetime) -> ScheduledTimes | None:
    """推算主提醒与各预提醒的具体时间; 星期/日期/时间无法解析时返回 None"""
    main = _resolve_main(reminder, now)
    if main is None:
        return None

    pre: Dict[str, datetime] = {}
    for offset in reminder.pre_notifications:
        parsed = parse_offset(offset)
        if parsed is None:
            logger.warning(f"提醒 {reminder.id} 的预提醒偏移量非法, 已忽略: {offset}")
            continue
        pre[offset] = subtract_interval(main, parsed[0], parsed[1])
    return ScheduledTimes(main=main, pre=pre)


def needs_initialization(reminder: Reminder, schedule: ScheduledTimes, now: datetime) -> bool:
    """状态缺失或与重新推算的时间不一致时需要 (重新) 初始化

    一次性提醒的主时间一旦过去就不再重算, 等待清理。
    """
    if reminder.main_status is None:
        return True
    stored_main = parse_iso(reminder.main_status.scheduled_for)
    if stored_main is None:
        return True
    if reminder.kind == "one-time" and stored_main < now:
        return False
    if reminder.main_status.scheduled_for != to_iso(schedule.main):
        return True
    if set(reminder.pre_status) != set(schedule.pre):
        return True
    return any(
        reminder.pre_status[offset].scheduled_for != to_iso(due)
        for offset, due in schedule.pre.items()
    )


def _fresh_status(due: datetime, previous: NotificationStatus | None, now: datetime) -> NotificationStatus:
    iso = to_iso(due)
    if previous is not None and previous.scheduled_for == iso:
        return NotificationStatus(**previous.to_dict())
    return NotificationStatus(
        scheduled_for=iso,
        skipped=is_past(due, INIT_TOLERANCE_SECONDS, now),
    )


def initialize_status(reminder: Reminder, now: datetime, schedule: ScheduledTimes | None = None) -> Reminder:
    """建立或修复状态记录

    - 已过去超过 5 分钟的预提醒标记 skipped, 不做补发
    - 主提醒过去超过 5 分钟同样 skipped; 只晚了一点 (< 5 分钟) 的仍会尝试一次
    - 时间点未变的状态记录原样保留, 因此对同一 now 重复调用结果不变
    - 无法推算时间时原样返回
    """
    schedule = schedule or compute_schedule(reminder, now)
    updated = reminder.copy()
    if schedule is None:
        return updated

    updated.main_status = _fresh_status(schedule.main, reminder.main_status, now)
    updated.pre_status = {
        offset: _fresh_status(due, reminder.pre_status.get(offset), now)
        for offset, due in schedule.pre.items()
    }
    return updated


def refresh_status(reminder: Reminder, now: datetime) -> Reminder | None:
    """需要初始化/修复时返回更新后的提醒, 否则返回 None"""
    schedule = compute_schedule(reminder, now)
    if schedule is None:
        return None
    if not needs_initialization(reminder, schedule, now):
        return None
    return initialize_status(reminder, now, schedule)


def find_closest_due_pre_notification(
    reminder: Reminder,
    schedule: ScheduledTimes,
    now: datetime,
) -> str | None:
    """在发送窗口内、早于主提醒、未发送且未跳过的预提醒中, 取最接近主提醒的一个"""
    if schedule.main <= now:
        return None

    closest: str | None = None
    closest_due: datetime | None = None
    for offset, due in schedule.pre.items():
        status = reminder.pre_status.get(offset)
        if status is not None and (status.sent or status.skipped):
            continue
        if status is not None and _backing_off(reminder, offset, status, now):
            continue
        if not is_within_window(due, SEND_WINDOW_SECONDS, now) or due >= schedule.main:
            continue
        if closest_due is None or due > closest_due:
            closest, closest_due = offset, due
    return closest


def _backing_off(reminder: Reminder, notification_type: str, status: NotificationStatus, now: datetime) -> bool:
    """失败后 60 秒内 (或已达重试上限) 不允许再次投递"""
    if status.retries >= MAX_RETRIES:
        return True
    return status.failed and not needs_retry(reminder, notification_type, now)


def should_send(reminder: Reminder, due: datetime | None, notification_type: str, now: datetime) -> bool:
    if due is None or reminder.main_status is None:
        return False

    main = parse_iso(reminder.main_status.scheduled_for)
    if main is None or main < now:
        return False

    status = reminder.status_for(notification_type) or NotificationStatus()
    if status.sent:
        return False
    # 主提醒还没到时, 被跳过的预提醒仍可在其自身窗口内发送
    if status.skipped and notification_type == MAIN:
        return False
    if _backing_off(reminder, notification_type, status, now):
        return False
    return is_within_window(due, SEND_WINDOW_SECONDS, now)


def needs_retry(reminder: Reminder, notification_type: str, now: datetime) -> bool:
    status = reminder.status_for(notification_type)
    if status is None or not status.failed or status.retries >= MAX_RETRIES:
        return False
    last_attempt = parse_iso(status.last_attempt)
    if last_attempt is None:
        return True
    return (now - last_attempt).total_seconds() >= RETRY_BACKOFF_SECONDS


def should_retry(reminder: Reminder, due: datetime | None, notification_type: str, now: datetime) -> bool:
    """重试循环的判断, 不要求处于 ±30 秒发送窗口内

    - 退避时间已满足 (needs_retry)
    - 到期时间过去不超过 RETRY_STALE_SECONDS
    - 预提醒只在主提醒之前重试
    """
    if due is None or reminder.main_status is None:
        return False
    if not needs_retry(reminder, notification_type, now):
        return False
    status = reminder.status_for(notification_type)
    if status is None or status.sent:
        return False
    if (now - due).total_seconds() > RETRY_STALE_SECONDS:
        return False
    if notification_type != MAIN:
        main = parse_iso(reminder.main_status.scheduled_for)
        if main is None or main < now:
            return False
    return True


def _replace_status(reminder: Reminder, notification_type: str, status: NotificationStatus) -> Reminder:
    updated = reminder.copy()
    if notification_type == MAIN:
        updated.main_status = status
    else:
        updated.pre_status[notification_type] = status
    return updated


def mark_sent(reminder: Reminder, notification_type: str, now: datetime) -> Reminder:
    previous = reminder.status_for(notification_type) or NotificationStatus()
    status = NotificationStatus(**previous.to_dict())
    status.sent = True
    status.failed = False
    status.sent_at = to_iso(now)
    status.last_attempt = to_iso(now)
    updated = _replace_status(reminder, notification_type, status)
    if notification_type == MAIN and reminder.kind == "recurring":
        updated.recurring_status.last_sent_week = format_date(week_start(now))
    return updated


def mark_failed(reminder: Reminder, notification_type: str, error: str | None, now: datetime) -> Reminder:
    """重试次数 +1; 达到上限后 failed 成为终态, 不再重试"""
    previous = reminder.status_for(notification_type) or NotificationStatus()
    status = NotificationStatus(**previous.to_dict())
    status.sent = False
    status.failed = True
    status.retries = previous.retries + 1
    status.last_attempt = to_iso(now)
    status.last_error = error or "unknown error"
    if status.retries >= MAX_RETRIES:
        logger.warning(f"提醒 {reminder.id} 的 {notification_type} 通知重试次数已达上限, 放弃发送")
    return _replace_status(reminder, notification_type, status)


def should_delete(reminder: Reminder, now: datetime) -> bool:
    """一次性提醒在主时间过去至少 3 分钟后删除; 周期提醒永不自动删除"""
    if reminder.kind != "one-time" or reminder.main_status is None:
        return False
    main = parse_iso(reminder.main_status.scheduled_for)
    if main is None:
        return False
    return (now - main).total_seconds() >= DELETE_AFTER_SECONDS
