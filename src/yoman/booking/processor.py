"""预约命令处理

对话模型以工具调用的形式发来结构化命令, 这里负责:
- 查询: 类别、疗程、某天的空闲时段 (只作参考, 展示过的列表按预约人缓存, 供序号选择)
- 提交: 在对提醒集合的一次乐观读-改-写中重新校验时段并追加预约记录
- 取消 / 列出 / 放弃本次预约

查询与提交共用 availability.check_slot, 因此列出的时段在数据不变时一定可以预约。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date as Date, datetime
from typing import Any, Callable, Dict, List, Optional

from yoman.booking.availability import (
    bookings_for_date,
    check_slot,
    customer_bookings_for_date,
    generate_candidate_slots,
    generate_category_slots,
    list_free_slots as compute_free_slots,
)
from yoman.booking.errors import (
    AppointmentNotFoundError,
    BookingConflictError,
    BookingValidationError,
    StaleAvailabilityError,
)
from yoman.booking.selection_cache import SelectionCache, SlotListing
from yoman.config.settings import SELECTION_CACHE_MAX_ENTRIES, SELECTION_CACHE_TTL_SECONDS
from yoman.datamodel import DEFAULT_PRE_NOTIFICATIONS, Reminder, ServiceCategory, TimeRange, Treatment
from yoman.events import bus, E
from yoman.logger import logger
from yoman.metrics import runtime_metrics
import yoman.storage.business_hours as business_hours_storage
import yoman.storage.reminder as reminder_storage
import yoman.storage.service_category as category_storage
import yoman.storage.user as user_storage
from yoman.utils import format_date, format_hhmm, now_local, parse_date, parse_time, to_iso, weekday_index

__all__ = [
    "AvailabilityResult", "BookingResult", "BookingCommandProcessor", "normalize_slot_time",
    "configure_booking_processor", "require_booking_processor",
]


@dataclass
class AvailabilityResult:
    date: str
    category: ServiceCategory
    treatment: Optional[Treatment]
    slots: List[str]
    preferred_time: Optional[str] = None

    @property
    def preferred_available(self) -> bool | None:
        if self.preferred_time is None:
            return None
        return self.preferred_time in self.slots


@dataclass
class BookingResult:
    appointment: Reminder
    service_label: str  # "类别" 或 "类别 - 疗程"


def normalize_slot_time(value: Any) -> str | None:
    """"9:30" / "09:30" / "14" -> "HH:MM"; 无法识别返回 None"""
    if value is None:
        return None
    text = str(value).strip()
    if text.isdigit() and len(text) <= 2:
        hour = int(text)
        return format_hhmm(hour, 0) if hour <= 23 else None
    parsed = parse_time(text)
    if parsed is None:
        return None
    return format_hhmm(*parsed)


def _parse_number(value: Any) -> int | None:
    """列表序号从 1 开始; 非正整数视为未提供"""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(str(value).strip())
    except ValueError:
        return None
    return number if number >= 1 else None


class BookingCommandProcessor:
    def __init__(
        self,
        cache: SelectionCache | None = None,
        clock: Callable[[], datetime] = now_local,
    ) -> None:
        self._cache = cache if cache is not None else SelectionCache(SELECTION_CACHE_TTL_SECONDS, SELECTION_CACHE_MAX_ENTRIES)
        self._clock = clock

    @property
    def cache(self) -> SelectionCache:
        return self._cache

    async def main_loop(self, shutdown_event: asyncio.Event, interval: float = 300) -> None:
        """定期清理过期的选择缓存, 直到收到关闭信号"""
        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                self._cache.cleanup_expired()
        logger.debug("选择缓存清理循环已退出")

    # ----------------- 查询 ----------------
    async def query_categories(self, requester: str) -> List[ServiceCategory]:
        categories = await category_storage.get_categories()
        self._cache.remember_categories(requester, categories)
        logger.debug(f"查询服务类别: requester={requester}, count={len(categories)}")
        return categories

    async def query_treatments(
        self,
        requester: str,
        category_id: str | None = None,
        category_number: Any = None,
    ) -> tuple[ServiceCategory, List[Treatment]]:
        category = await self._resolve_category(requester, category_id, category_number)
        self._cache.remember_treatments(requester, category.id, category.treatments)
        return category, list(category.treatments)

    async def list_free_slots(
        self,
        requester: str,
        date: str | None,
        category_id: str | None = None,
        category_number: Any = None,
        treatment_id: str | None = None,
        treatment_number: Any = None,
        preferred_time: str | None = None,
    ) -> AvailabilityResult:
        """列出某天某类别 (或疗程) 的空闲时段, 并记住这份列表"""
        now = self._clock()
        if not date:
            raise BookingValidationError("no_date_provided")
        category = await self._resolve_category(requester, category_id, category_number)
        treatment = self._resolve_treatment(requester, category, treatment_id, treatment_number)
        day = self._resolve_date(date, now)

        preferred = None
        if preferred_time:
            preferred = normalize_slot_time(preferred_time)
            if preferred is None:
                raise BookingValidationError("invalid_time", str(preferred_time))

        duration = treatment.duration_minutes if treatment else category.duration_minutes
        ranges, buffers = await self._load_day(day)
        records = reminder_storage.iter_records(await reminder_storage.get_raw_reminders())
        slots = compute_free_slots(
            day,
            category,
            bookings_for_date(records, day, buffers),
            customer_bookings_for_date(records, requester, day),
            ranges,
            now,
            duration=duration,
            fine_grid=treatment is not None,
        )

        date_str = format_date(day)
        self._cache.remember_slots(
            requester,
            SlotListing(
                date=date_str,
                category_id=category.id,
                treatment_id=treatment.id if treatment else None,
                slots=tuple(slots),
            ),
        )
        logger.debug(
            f"查询空闲时段: requester={requester}, date={date_str}, category={category.id}, "
            f"treatment={treatment.id if treatment else None}, free={len(slots)}"
        )
        return AvailabilityResult(
            date=date_str, category=category, treatment=treatment, slots=slots, preferred_time=preferred,
        )

    # ----------------- 提交 ----------------
    async def book(
        self,
        requester: str,
        date: str | None,
        time: str | None,
        category_id: str | None = None,
        category_number: Any = None,
        treatment_id: str | None = None,
        treatment_number: Any = None,
    ) -> BookingResult:
        """提交预约, 成功时返回新建的预约记录及服务名称

        时段不可用时抛出 BookingConflictError; 若该时段出现在预约人最近一次看到的列表中,
        则抛出 StaleAvailabilityError。
        """
        now = self._clock()
        if not date:
            raise BookingValidationError("no_date_provided")
        category = await self._resolve_category(requester, category_id, category_number)
        treatment = self._resolve_treatment(requester, category, treatment_id, treatment_number)
        day = self._resolve_date(date, now)
        slot = normalize_slot_time(time)
        if slot is None:
            raise BookingValidationError("invalid_time", str(time))

        if treatment is not None:
            duration, buffer = treatment.duration_minutes, treatment.buffer_minutes
        else:
            duration, buffer = category.duration_minutes, category.buffer_minutes

        ranges, buffers = await self._load_day(day)
        valid_slots = (
            generate_candidate_slots(ranges, duration)
            if treatment is not None
            else generate_category_slots(ranges, category)
        )

        display_name = await user_storage.get_display_name(requester)
        service_label = f"{category.name} - {treatment.name}" if treatment else category.name
        date_str = format_date(day)
        appointment = Reminder(
            id=reminder_storage.new_reminder_id("apt"),
            owner=str(requester),
            time=slot,
            date=date_str,
            kind="one-time",
            duration=duration,
            buffer_minutes=buffer,
            pre_notifications=list(DEFAULT_PRE_NOTIFICATIONS),
            category_id=category.id,
            treatment_id=treatment.id if treatment else None,
            title=f"Appointment - {display_name} - {service_label}",
            created_at=to_iso(now),
        )
        was_listed = self._was_listed(requester, date_str, category.id, slot)

        def _commit(doc: Dict[str, List[Dict[str, Any]]]) -> None:
            records = reminder_storage.iter_records(doc)
            reason = check_slot(
                day,
                slot,
                duration,
                category,
                bookings_for_date(records, day, buffers),
                customer_bookings_for_date(records, requester, day),
                ranges,
                valid_slots,
                now,
            )
            if reason is not None:
                error_cls = StaleAvailabilityError if was_listed else BookingConflictError
                raise error_cls(reason, slot)
            doc.setdefault(appointment.owner, []).append(appointment.to_dict())

        try:
            await reminder_storage.update_reminders(_commit)
        except BookingConflictError as e:
            runtime_metrics.record_booking(created=False)
            logger.info(
                f"预约被拒绝: requester={requester}, date={date_str}, time={slot}, "
                f"reason={e.reason.value}, stale={isinstance(e, StaleAvailabilityError)}"
            )
            raise

        runtime_metrics.record_booking(created=True)
        self._cache.forget_booking(requester)
        bus.emit(E.BOOKING_CREATED, appointment)
        logger.info(f"预约成功: id={appointment.id}, requester={requester}, {date_str} {slot} ({service_label})")
        return BookingResult(appointment=appointment, service_label=service_label)

    async def cancel(self, requester: str, appointment_id: str | None = None, number: Any = None) -> Reminder:
        """按 ID 或最近一次列表中的序号取消预约"""
        if not appointment_id:
            index = _parse_number(number)
            if index is None:
                raise BookingValidationError("cancel_no_selection")
            selection = self._cache.get(requester)
            if selection is None or index > len(selection.appointments):
                raise AppointmentNotFoundError(f"#{index}")
            appointment_id = selection.appointments[index - 1].id

        removed = await reminder_storage.delete_reminder(appointment_id)
        if removed is None:
            raise AppointmentNotFoundError(appointment_id)

        runtime_metrics.record_booking_cancelled()
        bus.emit(E.BOOKING_CANCELLED, removed)
        logger.info(f"取消预约: id={appointment_id}, requester={requester}")
        return removed

    async def list_appointments(self, requester: str) -> List[Reminder]:
        appointments = await reminder_storage.get_future_reminders(owner=requester, now=self._clock())
        self._cache.remember_appointments(requester, appointments)
        return appointments

    def abort(self, requester: str) -> None:
        self._cache.forget_booking(requester)
        logger.info(f"放弃本次预约, 已清除选择缓存: requester={requester}")

    # ----------------- 内部 ----------------
    async def _resolve_category(
        self,
        requester: str,
        category_id: str | None,
        category_number: Any,
    ) -> ServiceCategory:
        if category_id:
            category = await category_storage.get_category(category_id)
            if category is None:
                raise BookingValidationError("service_not_found", category_id)
            return category

        index = _parse_number(category_number)
        if index is None:
            raise BookingValidationError("no_service_selected")
        selection = self._cache.get(requester)
        listed = selection.categories if selection and selection.categories else None
        if listed is None:
            # 预约人还没看过类别列表时按当前顺序解析
            listed = await category_storage.get_categories()
        if index > len(listed):
            raise BookingValidationError("service_not_found", f"#{index}")
        category = await category_storage.get_category(listed[index - 1].id)
        if category is None:
            raise BookingValidationError("service_not_found", listed[index - 1].id)
        return category

    def _resolve_treatment(
        self,
        requester: str,
        category: ServiceCategory,
        treatment_id: str | None,
        treatment_number: Any,
    ) -> Treatment | None:
        if treatment_id:
            treatment = category.find_treatment(treatment_id)
            if treatment is None:
                raise BookingValidationError("treatment_not_found", treatment_id)
            return treatment

        index = _parse_number(treatment_number)
        if index is None:
            return None
        selection = self._cache.get(requester)
        if selection and selection.treatments_category_id == category.id and selection.treatments:
            listed = selection.treatments
        else:
            listed = category.treatments
        if index > len(listed):
            raise BookingValidationError("treatment_not_found", f"#{index}")
        return category.find_treatment(listed[index - 1].id) or listed[index - 1]

    @staticmethod
    def _resolve_date(value: str, now: datetime) -> Date:
        day = parse_date(value)
        if day is None:
            raise BookingValidationError("invalid_date", value)
        if day < now.date():
            raise BookingValidationError("past_date", value)
        return day

    @staticmethod
    async def _load_day(day: Date) -> tuple[List[TimeRange], Dict[str, int]]:
        ranges = await business_hours_storage.get_hours_for_day(weekday_index(day))
        buffers = await category_storage.get_category_buffers()
        return ranges, buffers

    def _was_listed(self, requester: str, date_str: str, category_id: str, slot: str) -> bool:
        selection = self._cache.get(requester)
        if selection is None or selection.slots is None:
            return False
        listing = selection.slots
        return listing.date == date_str and listing.category_id == category_id and slot in listing.slots


_processor: BookingCommandProcessor | None = None


def configure_booking_processor(processor: BookingCommandProcessor) -> None:
    global _processor
    _processor = processor


def require_booking_processor() -> BookingCommandProcessor:
    """未显式配置时使用默认实例"""
    global _processor
    if _processor is None:
        _processor = BookingCommandProcessor()
    return _processor
