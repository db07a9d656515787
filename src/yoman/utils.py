"""时间工具 (纯函数, 不做 I/O)

约定:
- 星期索引 0=Sunday ... 6=Saturday, 一周从周日开始
- 时间字符串 "HH:MM", 日期字符串 "YYYY-MM-DD"
- 所有 "现在" 都可以通过 now 参数注入, 默认取营业时区的当前时间
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Literal
from zoneinfo import ZoneInfo

from yoman.config.settings import BUSINESS_TIMEZONE

__all__ = [
    "WEEKDAY_NAMES", "IntervalUnit",
    "business_tz", "now_utc", "now_local",
    "day_index", "day_name", "weekday_index",
    "parse_time", "format_hhmm", "to_minutes", "from_minutes",
    "parse_date", "format_date", "combine",
    "next_occurrence", "parse_offset", "offset_to_timedelta", "subtract_interval",
    "is_past", "is_within_window",
    "week_start",
    "to_iso", "parse_iso", "utc_str_to_local_min",
]

WEEKDAY_NAMES = ["sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday"]

IntervalUnit = Literal["minute", "hour", "day"]

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_OFFSET_RE = re.compile(r"^(\d+)([mhdw])$")
_OFFSET_UNITS: dict[str, IntervalUnit] = {"m": "minute", "h": "hour", "d": "day", "w": "day"}


def business_tz() -> ZoneInfo:
    return ZoneInfo(BUSINESS_TIMEZONE)


def now_utc() -> datetime:
    """获取当前 UTC 时间"""
    return datetime.now(timezone.utc)


def now_local() -> datetime:
    """获取营业时区的当前时间"""
    return datetime.now(business_tz())


def day_index(name: str | None) -> int | None:
    """星期名 -> 0..6, 大小写不敏感, 支持三字母缩写; 无法识别返回 None"""
    if not isinstance(name, str):
        return None
    key = name.strip().lower()
    if key in WEEKDAY_NAMES:
        return WEEKDAY_NAMES.index(key)
    for idx, full in enumerate(WEEKDAY_NAMES):
        if len(key) == 3 and full.startswith(key):
            return idx
    return None


def day_name(index: int) -> str | None:
    if not isinstance(index, int) or not 0 <= index <= 6:
        return None
    return WEEKDAY_NAMES[index]


def weekday_index(value: date | datetime) -> int:
    """Python 的 weekday() 以周一为 0, 这里转换成以周日为 0"""
    return (value.weekday() + 1) % 7


def parse_time(value: str | None) -> tuple[int, int] | None:
    if not isinstance(value, str):
        return None
    match = _TIME_RE.match(value.strip())
    if match is None:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return hour, minute


def format_hhmm(hour: int, minute: int) -> str:
    return f"{hour:02d}:{minute:02d}"


def to_minutes(value: str | None) -> int | None:
    parsed = parse_time(value)
    if parsed is None:
        return None
    return parsed[0] * 60 + parsed[1]


def from_minutes(total: int) -> str:
    return format_hhmm(total // 60, total % 60)


def parse_date(value: str | None) -> date | None:
    if not isinstance(value, str) or not _DATE_RE.match(value.strip()):
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


def format_date(value: date | datetime) -> str:
    return value.strftime("%Y-%m-%d")


def combine(day: date, hour: int, minute: int, tz=None) -> datetime:
    """日期 + 时分 -> 带时区的 datetime"""
    return datetime.combine(day, time(hour, minute), tzinfo=tz or business_tz())


def next_occurrence(from_date: date, target_index: int) -> date:
    """from_date 当天若已是目标星期则直接返回当天, 否则返回之后最近的那一天"""
    days_ahead = (target_index - weekday_index(from_date)) % 7
    return from_date + timedelta(days=days_ahead)


def parse_offset(offset: str | None) -> tuple[int, IntervalUnit] | None:
    """"30m" / "1h" / "1d" / "1w" -> (数量, 单位); 一周按 7 天计算"""
    if not isinstance(offset, str):
        return None
    match = _OFFSET_RE.match(offset.strip())
    if match is None:
        return None
    amount = int(match.group(1))
    if amount <= 0:
        return None
    suffix = match.group(2)
    if suffix == "w":
        amount *= 7
    return amount, _OFFSET_UNITS[suffix]


def offset_to_timedelta(amount: int, unit: IntervalUnit) -> timedelta:
    if unit == "minute":
        return timedelta(minutes=amount)
    if unit == "hour":
        return timedelta(hours=amount)
    if unit == "day":
        return timedelta(days=amount)
    raise ValueError(f"未知的时间单位: {unit}")


def subtract_interval(value: datetime, amount: int, unit: IntervalUnit) -> datetime:
    """计算 "N 分钟/小时/天之前" 的时间点"""
    return value - offset_to_timedelta(amount, unit)


def is_past(value: datetime, margin_seconds: float = 30, now: datetime | None = None) -> bool:
    """value 早于 now 超过 margin_seconds 才算已过去"""
    now = now or now_local()
    return (now - value).total_seconds() > margin_seconds


def is_within_window(value: datetime, window_seconds: float = 30, now: datetime | None = None) -> bool:
    """value 落在 now 前后 window_seconds 之内"""
    now = now or now_local()
    return abs((value - now).total_seconds()) <= window_seconds


def week_start(value: date | datetime) -> date:
    """所在周的周日"""
    day = value.date() if isinstance(value, datetime) else value
    return day - timedelta(days=weekday_index(day))


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="seconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=business_tz())
    return parsed


def utc_str_to_local_min(value: str | None) -> str:
    """数据库中的 UTC 时间 ("YYYY-MM-DD HH:MM:SS") -> 营业时区 "YYYY-MM-DD HH:MM"; 无法解析时原样返回"""
    if not value:
        return ""
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return value
    return parsed.replace(tzinfo=timezone.utc).astimezone(business_tz()).strftime("%Y-%m-%d %H:%M")
