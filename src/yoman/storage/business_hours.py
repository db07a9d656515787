"""营业时间

文档结构: {"sunday": [{"start": "09:00", "end": "13:00"}, ...], ...}
未配置的星期默认为 09:00-18:00 单段。
"""

from __future__ import annotations

from typing import Any, Dict, List

from yoman.datamodel import TimeRange
from yoman.logger import logger
from yoman.storage.store import get_document, update_document
from yoman.utils import WEEKDAY_NAMES, day_name, to_minutes

__all__ = [
    "BUSINESS_HOURS_KEY", "DEFAULT_RANGE", "BusinessHoursError",
    "normalize_ranges", "hours_for_day", "get_business_hours", "get_hours_for_day", "set_business_hours",
]

BUSINESS_HOURS_KEY = "business_hours"
DEFAULT_RANGE = TimeRange(start="09:00", end="18:00")


class BusinessHoursError(ValueError):
    pass


def normalize_ranges(raw: Any) -> List[TimeRange]:
    """过滤非法时间段并按开始时间排序; 重叠的时间段合并为一段"""
    if not isinstance(raw, list):
        return []
    parsed: list[tuple[int, int]] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        start, end = to_minutes(item.get("start")), to_minutes(item.get("end"))
        if start is None or end is None or end <= start:
            logger.warning(f"忽略非法营业时间段: {item}")
            continue
        parsed.append((start, end))

    parsed.sort()
    merged: list[list[int]] = []
    for start, end in parsed:
        if merged and start < merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])
    return [TimeRange(start=f"{s // 60:02d}:{s % 60:02d}", end=f"{e // 60:02d}:{e % 60:02d}") for s, e in merged]


def hours_for_day(doc: Dict[str, Any] | None, weekday: int) -> List[TimeRange]:
    """从文档中取出某个星期的营业时间段; 未配置时返回默认时间段

    显式配置为空列表表示当天休息。
    """
    name = day_name(weekday)
    if name is None or not doc or name not in doc:
        return [DEFAULT_RANGE]
    return normalize_ranges(doc.get(name))


async def get_business_hours() -> Dict[str, List[TimeRange]]:
    doc = await get_document(BUSINESS_HOURS_KEY, default={})
    return {name: hours_for_day(doc.body, idx) for idx, name in enumerate(WEEKDAY_NAMES)}


async def get_hours_for_day(weekday: int) -> List[TimeRange]:
    doc = await get_document(BUSINESS_HOURS_KEY, default={})
    return hours_for_day(doc.body, weekday)


async def set_business_hours(hours: Dict[str, Any]) -> Dict[str, List[TimeRange]]:
    """整体替换营业时间, 未出现在 hours 中的星期保持原值"""
    unknown = [k for k in hours if k not in WEEKDAY_NAMES]
    if unknown:
        raise BusinessHoursError(f"未知的星期: {', '.join(unknown)}")

    def _mutate(doc: Dict[str, Any]) -> None:
        for name, ranges in hours.items():
            doc[name] = [{"start": r.start, "end": r.end} for r in normalize_ranges(ranges)]

    await update_document(BUSINESS_HOURS_KEY, _mutate, default={})
    logger.info(f"营业时间已更新: days={list(hours)}")
    return await get_business_hours()
