"""可预约时段计算 (纯函数)

时间统一换算成当天的分钟数处理, 对外的时段用 "HH:MM" 字符串表示。
列出空闲时段与提交预约前的复核共用 check_slot, 保证两者判断一致。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from yoman.datamodel import ServiceCategory, TimeRange
from yoman.utils import combine, format_date, from_minutes, to_minutes

__all__ = [
    "SLOT_STEP_MINUTES", "DEFAULT_BOOKING_DURATION",
    "Appointment", "RejectionReason",
    "generate_candidate_slots", "generate_category_slots",
    "is_slot_free", "hour_capacity_ok", "customer_hour_free", "fits_business_hours", "is_future_slot",
    "check_slot", "list_free_slots",
    "bookings_for_date", "customer_bookings_for_date",
]

SLOT_STEP_MINUTES = 15
DEFAULT_BOOKING_DURATION = 30


@dataclass(frozen=True)
class Appointment:
    """某天已占用的一段时间"""
    start: int  # 当天分钟数
    end: int
    category_id: Optional[str] = None
    buffer_minutes: int = 0
    owner: Optional[str] = None
    reminder_id: Optional[str] = None


class RejectionReason(str, Enum):
    SLOT_TAKEN = "slot_taken"
    CATEGORY_FULL = "category_full"
    CUSTOMER_HOUR_TAKEN = "customer_hour_taken"
    OUTSIDE_BUSINESS_HOURS = "outside_business_hours"
    NOT_A_SLOT = "not_a_slot"
    IN_THE_PAST = "in_the_past"


def _range_minutes(ranges: Sequence[TimeRange]) -> List[tuple[int, int]]:
    result = []
    for r in ranges:
        start, end = to_minutes(r.start), to_minutes(r.end)
        if start is None or end is None:
            continue
        result.append((start, end))
    return result


def _walk(ranges: Sequence[TimeRange], duration: int, step: int) -> List[str]:
    step = max(1, step)
    seen: set[int] = set()
    for start, end in _range_minutes(ranges):
        minute = start
        while minute + duration <= end:
            seen.add(minute)
            minute += step
    return [from_minutes(m) for m in sorted(seen)]


def generate_candidate_slots(ranges: Sequence[TimeRange], duration: int, step: int = SLOT_STEP_MINUTES) -> List[str]:
    """细粒度模式: 每 step 分钟一个起点, 只保留整段时长都落在营业时间内的起点"""
    return _walk(ranges, duration, step)


def generate_category_slots(ranges: Sequence[TimeRange], category: ServiceCategory) -> List[str]:
    """固定网格模式: 起点间隔为 时长 + 间隔时间"""
    return _walk(ranges, category.duration_minutes, category.slot_interval)


def is_slot_free(
    slot: str,
    duration: int,
    category_id: str | None,
    bookings: Iterable[Appointment],
    category: ServiceCategory | None = None,
) -> bool:
    """同类别的已有预约 [start, end + buffer) 与 [slot, slot + duration) 重叠即视为占用"""
    start = to_minutes(slot)
    if start is None:
        return False
    default_buffer = category.buffer_minutes if category is not None else 0
    end = start + duration
    for other in bookings:
        if other.category_id != category_id:
            continue
        other_buffer = other.buffer_minutes if other.buffer_minutes is not None else default_buffer
        if start < other.end + other_buffer and end > other.start:
            return False
    return True


def hour_capacity_ok(slot: str, category_id: str | None, bookings: Iterable[Appointment], max_per_hour: int) -> bool:
    start = to_minutes(slot)
    if start is None:
        return False
    hour = start // 60
    count = sum(1 for b in bookings if b.category_id == category_id and b.start // 60 == hour)
    return count < max_per_hour


def customer_hour_free(slot: str, customer_bookings: Iterable[Appointment]) -> bool:
    start = to_minutes(slot)
    if start is None:
        return False
    hour = start // 60
    return all(b.start // 60 != hour for b in customer_bookings)


def fits_business_hours(slot: str, duration: int, ranges: Sequence[TimeRange]) -> bool:
    start = to_minutes(slot)
    if start is None:
        return False
    return any(start >= r_start and start + duration <= r_end for r_start, r_end in _range_minutes(ranges))


def is_future_slot(day: date, slot: str, now: datetime) -> bool:
    start = to_minutes(slot)
    if start is None:
        return False
    return combine(day, start // 60, start % 60, now.tzinfo) > now


def check_slot(
    day: date,
    slot: str,
    duration: int,
    category: ServiceCategory,
    bookings: Sequence[Appointment],
    customer_bookings: Sequence[Appointment],
    ranges: Sequence[TimeRange],
    valid_slots: Sequence[str] | None,
    now: datetime,
) -> RejectionReason | None:
    """对单个时段逐项检查, 返回第一条拒绝原因; 可预约时返回 None

    valid_slots 为 None 时不检查时段是否在网格上。
    """
    if not is_future_slot(day, slot, now):
        return RejectionReason.IN_THE_PAST
    if not is_slot_free(slot, duration, category.id, bookings, category):
        return RejectionReason.SLOT_TAKEN
    if not hour_capacity_ok(slot, category.id, bookings, category.max_per_hour):
        return RejectionReason.CATEGORY_FULL
    if not customer_hour_free(slot, customer_bookings):
        return RejectionReason.CUSTOMER_HOUR_TAKEN
    if not fits_business_hours(slot, duration, ranges):
        return RejectionReason.OUTSIDE_BUSINESS_HOURS
    if valid_slots is not None and slot not in valid_slots:
        return RejectionReason.NOT_A_SLOT
    return None


def list_free_slots(
    day: date,
    category: ServiceCategory,
    bookings: Sequence[Appointment],
    customer_bookings: Sequence[Appointment],
    ranges: Sequence[TimeRange],
    now: datetime,
    duration: int | None = None,
    fine_grid: bool = False,
) -> List[str]:
    """返回排好序的空闲时段; 没有空闲时段时返回空列表

    fine_grid=True (选择了具体疗程时) 按 15 分钟步长生成候选, 否则使用类别的固定网格。
    """
    duration = duration or category.duration_minutes
    candidates = (
        generate_candidate_slots(ranges, duration)
        if fine_grid
        else generate_category_slots(ranges, category)
    )
    return [
        slot for slot in candidates
        if check_slot(day, slot, duration, category, bookings, customer_bookings, ranges, None, now) is None
    ]


def _to_appointment(owner: str, item: Dict[str, Any], category_buffers: Dict[str, int]) -> Appointment | None:
    start = to_minutes(item.get("time"))
    if start is None:
        return None
    duration = item.get("duration")
    if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
        duration = DEFAULT_BOOKING_DURATION
    category_id = item.get("category_id")
    buffer = item.get("buffer_minutes")
    if buffer is None:
        buffer = category_buffers.get(category_id, 0) if category_id else 0
    return Appointment(
        start=start,
        end=start + duration,
        category_id=category_id,
        buffer_minutes=buffer,
        owner=owner,
        reminder_id=item.get("id"),
    )


def bookings_for_date(
    records: Iterable[tuple[str, Dict[str, Any]]],
    day: date,
    category_buffers: Dict[str, int] | None = None,
) -> List[Appointment]:
    """所有预约人在某天的占用时段; 记录未写 buffer 时取所属类别的默认值"""
    date_str = format_date(day)
    result = []
    for owner, item in records:
        if item.get("date") != date_str:
            continue
        appointment = _to_appointment(owner, item, category_buffers or {})
        if appointment is not None:
            result.append(appointment)
    return result


def customer_bookings_for_date(
    records: Iterable[tuple[str, Dict[str, Any]]],
    owner: str,
    day: date,
) -> List[Appointment]:
    return [b for b in bookings_for_date(records, day) if b.owner == owner]
