from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from yoman.utils import day_index, parse_date, parse_time

__all__ = [
    "MAIN", "ReminderKind", "VALID_PRE_NOTIFICATIONS", "DEFAULT_PRE_NOTIFICATIONS", "DEFAULT_DURATION_MINUTES",
    "NotificationStatus", "RecurringStatus", "Reminder",
    "validate_reminder", "normalize_duration",
    "TimeRange", "Treatment", "ServiceCategory",
    "ChannelType", "IncomingMessage", "OutgoingMessage",
    "FunctionCall",
    "UserInfo",
]

# ----------------- Reminder 数据模型 ----------------
MAIN = "main"  # 主提醒的通知类型, 预提醒直接用偏移量 ("1h" 等) 作为类型

ReminderKind = Literal["one-time", "recurring"]

VALID_PRE_NOTIFICATIONS = ("30m", "1h", "1d", "3d", "1w")
DEFAULT_PRE_NOTIFICATIONS = ["1h", "1d", "3d", "1w"]
DEFAULT_DURATION_MINUTES = 45


@dataclass
class NotificationStatus:
    sent: bool = False
    failed: bool = False
    skipped: bool = False
    retries: int = 0
    scheduled_for: Optional[str] = None  # ISO 8601, 带时区
    last_attempt: Optional[str] = None
    sent_at: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "NotificationStatus":
        data = data or {}
        return cls(
            sent=bool(data.get("sent", False)),
            failed=bool(data.get("failed", False)),
            skipped=bool(data.get("skipped", False)),
            retries=int(data.get("retries", 0) or 0),
            scheduled_for=data.get("scheduled_for"),
            last_attempt=data.get("last_attempt"),
            sent_at=data.get("sent_at"),
            last_error=data.get("last_error"),
        )


@dataclass
class RecurringStatus:
    last_sent_week: Optional[str] = None  # 最近一次主提醒发送所在周的周日, "YYYY-MM-DD"


@dataclass
class Reminder:
    id: str
    owner: str  # 预约人 / 提醒接收人 (Telegram chat id)
    time: str  # "HH:MM"
    day: Optional[str] = None  # 星期名, 与 date 二选一
    date: Optional[str] = None  # "YYYY-MM-DD"
    kind: ReminderKind = "one-time"
    duration: int = DEFAULT_DURATION_MINUTES
    buffer_minutes: Optional[int] = None
    pre_notifications: List[str] = field(default_factory=lambda: list(DEFAULT_PRE_NOTIFICATIONS))
    category_id: Optional[str] = None
    treatment_id: Optional[str] = None
    title: Optional[str] = None
    notes: str = ""
    main_status: Optional[NotificationStatus] = None  # None 表示尚未初始化
    pre_status: Dict[str, NotificationStatus] = field(default_factory=dict)
    recurring_status: RecurringStatus = field(default_factory=RecurringStatus)
    created_at: Optional[str] = None

    @property
    def is_appointment(self) -> bool:
        return self.category_id is not None

    def status_for(self, notification_type: str) -> NotificationStatus | None:
        if notification_type == MAIN:
            return self.main_status
        return self.pre_status.get(notification_type)

    def copy(self) -> "Reminder":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "time": self.time,
            "day": self.day,
            "date": self.date,
            "kind": self.kind,
            "duration": self.duration,
            "buffer_minutes": self.buffer_minutes,
            "pre_notifications": list(self.pre_notifications),
            "category_id": self.category_id,
            "treatment_id": self.treatment_id,
            "title": self.title,
            "notes": self.notes,
            "main_status": self.main_status.to_dict() if self.main_status is not None else None,
            "pre_status": {k: v.to_dict() for k, v in self.pre_status.items()},
            "recurring_status": {"last_sent_week": self.recurring_status.last_sent_week},
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], owner: str | None = None) -> "Reminder":
        pre = data.get("pre_notifications")
        main_status = data.get("main_status")
        return cls(
            id=str(data.get("id", "")),
            owner=str(owner if owner is not None else data.get("owner", "")),
            time=data.get("time") or "",
            day=data.get("day") or None,
            date=data.get("date") or None,
            kind=data.get("kind") or "one-time",
            duration=normalize_duration(data.get("duration", DEFAULT_DURATION_MINUTES)),
            buffer_minutes=data.get("buffer_minutes"),
            pre_notifications=list(pre) if isinstance(pre, list) and pre else list(DEFAULT_PRE_NOTIFICATIONS),
            category_id=data.get("category_id"),
            treatment_id=data.get("treatment_id"),
            title=data.get("title"),
            notes=data.get("notes") or "",
            main_status=NotificationStatus.from_dict(main_status) if main_status else None,
            pre_status={
                k: NotificationStatus.from_dict(v) for k, v in (data.get("pre_status") or {}).items()
            },
            recurring_status=RecurringStatus(
                last_sent_week=(data.get("recurring_status") or {}).get("last_sent_week"),
            ),
            created_at=data.get("created_at"),
        )


def normalize_duration(minutes: Any) -> int:
    """时长取 >=1 的整数分钟, 非法值回退为 1"""
    try:
        value = round(float(minutes))
    except (TypeError, ValueError):
        return 1
    return max(1, value)


def validate_reminder(data: Dict[str, Any]) -> List[str]:
    """校验原始提醒记录, 返回错误列表 (为空表示合法)"""
    if not isinstance(data, dict):
        return ["reminder must be an object"]

    errors: List[str] = []
    has_day = isinstance(data.get("day"), str) and data["day"].strip() != ""
    has_date = isinstance(data.get("date"), str) and data["date"].strip() != ""
    if has_day and has_date:
        errors.append("day and date are mutually exclusive")
    elif not has_day and not has_date:
        errors.append("either day or date is required")
    elif has_day and day_index(data["day"]) is None:
        errors.append(f"invalid day: {data['day']}")
    elif has_date and parse_date(data["date"]) is None:
        errors.append(f"invalid date: {data['date']}, must be YYYY-MM-DD")

    if parse_time(data.get("time")) is None:
        errors.append(f"invalid time: {data.get('time')}, must be HH:MM")

    duration = data.get("duration")
    if duration is not None and (
        isinstance(duration, bool) or not isinstance(duration, int) or duration < 1
    ):
        errors.append("duration must be an integer >= 1 (minutes)")

    kind = data.get("kind")
    if kind is not None and kind not in ("one-time", "recurring"):
        errors.append(f"invalid kind: {kind}")

    pre = data.get("pre_notifications")
    if pre is not None:
        if not isinstance(pre, list):
            errors.append("pre_notifications must be a list")
        else:
            invalid = [p for p in pre if p not in VALID_PRE_NOTIFICATIONS]
            if invalid:
                errors.append(f"invalid pre_notifications: {', '.join(map(str, invalid))}")
            if len(set(map(str, pre))) != len(pre):
                errors.append("pre_notifications contains duplicate values")

    return errors


# ----------------- 预约服务数据模型 ----------------
@dataclass
class TimeRange:
    start: str  # "HH:MM"
    end: str


def _clamp_int(raw: Any, default: int, low: int, high: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        value = default
    if value == 0 and default != 0:
        value = default
    return max(low, min(high, value))


@dataclass
class Treatment:
    id: str
    name: str
    duration_minutes: int
    buffer_minutes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "duration_minutes": self.duration_minutes,
            "buffer_minutes": self.buffer_minutes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Treatment":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name") or "").strip() or "treatment",
            duration_minutes=_clamp_int(data.get("duration_minutes"), 30, 5, 480),
            buffer_minutes=_clamp_int(data.get("buffer_minutes"), 0, 0, 60),
        )


@dataclass
class ServiceCategory:
    id: str
    name: str
    duration_minutes: int = 30
    buffer_minutes: int = 0
    max_per_hour: int = 1
    treatments: List[Treatment] = field(default_factory=list)

    @property
    def slot_interval(self) -> int:
        return self.duration_minutes + self.buffer_minutes

    def find_treatment(self, treatment_id: str) -> Treatment | None:
        for treatment in self.treatments:
            if treatment.id == treatment_id:
                return treatment
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "duration_minutes": self.duration_minutes,
            "buffer_minutes": self.buffer_minutes,
            "max_per_hour": self.max_per_hour,
            "treatments": [t.to_dict() for t in self.treatments],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceCategory":
        """读取时做范围归一: 时长 5..480, 间隔 0..60, 每小时上限 1..10"""
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name") or "").strip() or "service",
            duration_minutes=_clamp_int(data.get("duration_minutes"), 30, 5, 480),
            buffer_minutes=_clamp_int(data.get("buffer_minutes"), 0, 0, 60),
            max_per_hour=_clamp_int(data.get("max_per_hour"), 1, 1, 10),
            treatments=[Treatment.from_dict(t) for t in data.get("treatments") or [] if isinstance(t, dict)],
        )


# ----------------- Channel 数据模型 ----------------
class ChannelType(str, Enum):
    TELEGRAM_BOT_POLLING = "telegram_bot_polling"


@dataclass
class IncomingMessage:
    channel_type: ChannelType
    user_id: str  # 预约人 ID, 与 Reminder.owner 一致
    content: str
    channel_context: Any = None  # 平台上下文对象
    metadata: Optional[Dict[str, Any]] = None  # 平台特定元数据
    timestamp: Optional[datetime] = None


@dataclass
class OutgoingMessage:
    channel_type: ChannelType
    user_id: str
    content: str
    channel_context: Any = None
    metadata: Optional[Dict[str, Any]] = None


# ----------------- Function 数据模型 ----------------
@dataclass
class FunctionCall:
    name: str
    arguments: Dict[str, Any]  # 要求附加 user_id 参数


# ----------------- User 数据模型 ----------------
@dataclass
class UserInfo:
    user_id: str
    display_name: Optional[str] = None
    telegram_chat_id: Optional[int] = None
    created_at_utc: Optional[str] = None
