"""提醒调度器

三个相互独立的循环作用于整个提醒集合:
- 发送循环 (默认 15 秒): 推算时间, 修复状态, 发送到期的预提醒/主提醒
- 重试循环 (默认 60 秒): 对发送失败且尚未过期的通知重新投递
- 清理循环 (默认 5 分钟): 删除主时间已过去 3 分钟以上的一次性提醒

每一轮执行完才会进入等待; 同一轮内的所有投递并发执行并整体等待,
单条失败只会转为 mark_failed, 不会中断整轮。
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List

from yoman.channels.base import Notifier
from yoman.config.comments import PRE_NOTIFICATION_LEADS, render_template
from yoman.config.settings import (
    REMINDER_CLEANUP_INTERVAL_SECONDS,
    REMINDER_RETRY_INTERVAL_SECONDS,
    REMINDER_SEND_INTERVAL_SECONDS,
)
from yoman.datamodel import MAIN, Reminder, validate_reminder
from yoman.events import bus, E
from yoman.logger import logger
from yoman.metrics import runtime_metrics
from yoman.utils import day_name, now_local, weekday_index
from yoman.world.reminder_calculator import (
    ScheduledTimes,
    compute_schedule,
    find_closest_due_pre_notification,
    initialize_status,
    mark_failed,
    mark_sent,
    needs_initialization,
    needs_retry,
    refresh_status,
    should_delete,
    should_retry,
    should_send,
)
from yoman.storage.store import VersionConflictError
import yoman.storage.app_settings as app_settings_storage
import yoman.storage.reminder as reminder_storage
import yoman.storage.user as user_storage

__all__ = ["ReminderScheduler", "configure_scheduler", "require_scheduler", "get_status"]

Clock = Callable[[], datetime]
SendCheck = Callable[[Reminder, str, datetime | None, datetime], bool]


def _send_check(reminder: Reminder, notification_type: str, due: datetime | None, now: datetime) -> bool:
    return should_send(reminder, due, notification_type, now)


def _retry_check(reminder: Reminder, notification_type: str, due: datetime | None, now: datetime) -> bool:
    return should_retry(reminder, due, notification_type, now)


class ReminderScheduler:
    def __init__(
        self,
        notifier: Notifier,
        clock: Clock = now_local,
        send_interval: float = REMINDER_SEND_INTERVAL_SECONDS,
        retry_interval: float = REMINDER_RETRY_INTERVAL_SECONDS,
        cleanup_interval: float = REMINDER_CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self.notifier = notifier
        self.clock = clock
        self.send_interval = send_interval
        self.retry_interval = retry_interval
        self.cleanup_interval = cleanup_interval

        self._shutdown_event: asyncio.Event | None = None
        self._last_pass_at: Dict[str, float | None] = {"send": None, "retry": None, "cleanup": None}

    def get_status(self) -> dict[str, object]:
        running = self._shutdown_event is not None and not self._shutdown_event.is_set()
        return {
            "running": running,
            "last_send_pass_at_epoch": self._last_pass_at["send"],
            "last_retry_pass_at_epoch": self._last_pass_at["retry"],
            "last_cleanup_pass_at_epoch": self._last_pass_at["cleanup"],
        }

    # ----------------- 生命周期 -----------------
    async def main_loop(self, shutdown_event: asyncio.Event) -> None:
        self._shutdown_event = shutdown_event
        logger.info("Reminder 调度器已启动")
        try:
            await self.initialize_statuses()
        except Exception as e:
            logger.error(f"提醒状态初始化失败: {e}", exc_info=e)

        await asyncio.gather(
            self._loop("send", self.send_interval, self.run_send_pass, shutdown_event),
            self._loop("retry", self.retry_interval, self.run_retry_pass, shutdown_event),
            self._loop("cleanup", self.cleanup_interval, self.run_cleanup_pass, shutdown_event),
        )
        logger.info("Reminder 调度器已关闭")

    async def _loop(
        self,
        name: str,
        interval: float,
        run_pass: Callable[[], Awaitable[Any]],
        shutdown_event: asyncio.Event,
    ) -> None:
        logger.debug(f"Reminder {name} 循环已启动, interval={interval}s")
        while not shutdown_event.is_set():
            self._last_pass_at[name] = time.time()
            try:
                await run_pass()
            except Exception as e:
                logger.error(f"Reminder {name} 循环本轮执行失败: {e}", exc_info=e)

            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.debug(f"Reminder {name} 循环已退出")

    # ----------------- 各轮逻辑 -----------------
    async def initialize_statuses(self) -> int:
        """启动时为缺少状态记录的提醒补建状态"""
        now = self.clock()
        count = 0
        for reminder in await reminder_storage.get_all_reminders():
            if reminder.main_status is not None:
                continue
            if compute_schedule(reminder, now) is None:
                logger.warning(f"无法推算提醒时间, 跳过初始化: id={reminder.id}, day={reminder.day}, date={reminder.date}, time={reminder.time}")
                continue
            updated = await reminder_storage.update_reminder(
                reminder.id,
                lambda latest: initialize_status(latest, now) if latest.main_status is None else latest,
            )
            if updated is not None:
                count += 1
        if count:
            logger.info(f"已初始化 {count} 条提醒的状态")
        return count

    async def _prepare(self, owner: str, record: Dict[str, Any], now: datetime) -> Reminder | None:
        """校验并按需修复状态, 返回可用于本轮判断的最新提醒"""
        errors = validate_reminder(record)
        if errors and not all(e.startswith("duration") for e in errors):
            logger.warning(f"跳过非法提醒: id={record.get('id')}, owner={owner}, errors={errors}")
            return None

        reminder = Reminder.from_dict(record, owner=owner)
        schedule = compute_schedule(reminder, now)
        if schedule is None:
            logger.warning(f"无法推算提醒时间, 本轮跳过: id={reminder.id}")
            return None

        if needs_initialization(reminder, schedule, now):
            logger.debug(f"修复提醒状态: id={reminder.id}, scheduled_for={schedule.main.isoformat()}")
            return await reminder_storage.update_reminder(
                reminder.id,
                lambda latest: refresh_status(latest, now) or latest,
            )
        return reminder

    def _due_notifications(self, reminder: Reminder, schedule: ScheduledTimes, now: datetime) -> List[str]:
        due_types: List[str] = []
        closest = find_closest_due_pre_notification(reminder, schedule, now)
        if closest is not None:
            due_types.append(closest)
        else:
            for offset, due in schedule.pre.items():
                if should_send(reminder, due, offset, now):
                    due_types.append(offset)
        if should_send(reminder, schedule.main, MAIN, now):
            due_types.append(MAIN)
        return due_types

    async def run_send_pass(self) -> int:
        """返回本轮成功投递的通知数"""
        now = self.clock()
        raw = await reminder_storage.get_raw_reminders()

        jobs: List[tuple[str, str]] = []
        for owner, record in reminder_storage.iter_records(raw):
            reminder = await self._prepare(owner, record, now)
            if reminder is None:
                continue
            schedule = ScheduledTimes.from_status(reminder)
            if schedule is None or schedule.main < now:
                continue
            for notification_type in self._due_notifications(reminder, schedule, now):
                jobs.append((reminder.id, notification_type))

        return await self._dispatch_all(jobs, _send_check)

    async def run_retry_pass(self) -> int:
        now = self.clock()
        jobs: List[tuple[str, str]] = []
        for reminder in await reminder_storage.get_all_reminders():
            schedule = ScheduledTimes.from_status(reminder)
            if schedule is None:
                continue
            for notification_type in [*reminder.pre_status, MAIN]:
                if not needs_retry(reminder, notification_type, now):
                    continue
                if _retry_check(reminder, notification_type, schedule.due_time(notification_type), now):
                    jobs.append((reminder.id, notification_type))
                else:
                    logger.debug(f"重试时间已过期, 放弃: id={reminder.id}, type={notification_type}")

        if jobs:
            logger.info(f"本轮重试 {len(jobs)} 条通知")
        return await self._dispatch_all(jobs, _retry_check)

    async def run_cleanup_pass(self) -> List[Reminder]:
        now = self.clock()

        def _mutate(doc: Dict[str, Any]) -> List[Reminder]:
            removed: List[Reminder] = []
            for owner in list(doc):
                items = doc[owner]
                if not isinstance(items, list):
                    continue
                keep = []
                for item in items:
                    if isinstance(item, dict) and should_delete(Reminder.from_dict(item, owner=owner), now):
                        removed.append(Reminder.from_dict(item, owner=owner))
                    else:
                        keep.append(item)
                if keep:
                    doc[owner] = keep
                else:
                    del doc[owner]
            return removed

        removed = await reminder_storage.update_reminders(_mutate)
        for reminder in removed:
            bus.emit(E.REMINDER_DELETED, reminder)
            logger.info(f"清理已过期提醒: id={reminder.id}, owner={reminder.owner}, scheduled_for={reminder.main_status.scheduled_for}")
        runtime_metrics.record_reminders_deleted(len(removed))
        return removed

    # ----------------- 投递 -----------------
    async def _dispatch_all(self, jobs: List[tuple[str, str]], check: SendCheck) -> int:
        if not jobs:
            return 0
        results = await asyncio.gather(
            *(self._dispatch(reminder_id, notification_type, check) for reminder_id, notification_type in jobs),
            return_exceptions=True,
        )
        sent = 0
        for (reminder_id, notification_type), result in zip(jobs, results):
            if isinstance(result, Exception):
                logger.error(
                    f"提醒投递流程异常: id={reminder_id}, type={notification_type}, error={result}",
                    exc_info=result,
                )
            elif result:
                sent += 1
        return sent

    async def _dispatch(self, reminder_id: str, notification_type: str, check: SendCheck) -> bool:
        latest = await reminder_storage.find_reminder(reminder_id)
        if latest is None:
            return False
        schedule = ScheduledTimes.from_status(latest)
        due = schedule.due_time(notification_type) if schedule is not None else None
        if not check(latest, notification_type, due, self.clock()):
            logger.trace(f"发送前复核未通过, 跳过: id={reminder_id}, type={notification_type}")
            return False

        text = await self.render_text(latest, notification_type, schedule)
        try:
            await self.notifier.send(latest.owner, text)
        except Exception as e:
            logger.warning(f"提醒投递失败: id={reminder_id}, type={notification_type}, owner={latest.owner}, error={e}")
            error = str(e) or e.__class__.__name__
            failed_at = self.clock()
            await reminder_storage.update_reminder(
                reminder_id,
                lambda r: mark_failed(r, notification_type, error, failed_at),
            )
            runtime_metrics.record_reminder_failed()
            bus.emit(E.REMINDER_FAILED, latest, notification_type, error)
            return False

        sent_at = self.clock()
        try:
            await reminder_storage.update_reminder(
                reminder_id,
                lambda r: mark_sent(r, notification_type, sent_at),
            )
        except VersionConflictError as e:
            # 通知已经发出, 状态没有写入时下一轮可能重复发送
            logger.error(
                f"提醒已发送但 sent 状态写入失败, 可能重复发送: id={reminder_id}, type={notification_type}, owner={latest.owner}",
                exc_info=e,
            )
        runtime_metrics.record_reminder_sent()
        bus.emit(E.REMINDER_SENT, latest, notification_type)
        logger.info(f"提醒已发送: id={reminder_id}, type={notification_type}, owner={latest.owner}")
        return True

    async def render_text(
        self,
        reminder: Reminder,
        notification_type: str,
        schedule: ScheduledTimes | None = None,
    ) -> str:
        template = await app_settings_storage.get_reminder_template()
        name = await user_storage.get_display_name(reminder.owner)
        main = schedule.main if schedule is not None else None
        if main is not None:
            day_display = f"{day_name(weekday_index(main)).capitalize()}, {main:%d/%m}"
        else:
            day_display = reminder.date or (reminder.day or "").capitalize()

        body = render_template(
            template,
            name=name,
            day=day_display,
            time=reminder.time,
            date=self.clock().strftime("%d/%m/%Y"),
        )
        lines = [PRE_NOTIFICATION_LEADS.get(notification_type, PRE_NOTIFICATION_LEADS[MAIN])]
        if reminder.title:
            lines.append(reminder.title)
        lines.append(body)
        return "\n".join(lines)

    async def send_now(self, reminder_id: str) -> Reminder | None:
        """立即发送主提醒 (管理端手动触发)

        发送成功后所有预提醒标记为已发送, 主提醒状态不变, 到点仍会正常发送。
        投递异常直接抛给调用方。
        """
        reminder = await reminder_storage.find_reminder(reminder_id)
        if reminder is None:
            return None

        now = self.clock()
        schedule = compute_schedule(reminder, now)
        text = await self.render_text(reminder, MAIN, schedule)
        await self.notifier.send(reminder.owner, text)

        def _mark_pre_sent(latest: Reminder) -> Reminder:
            if latest.main_status is None:
                latest = initialize_status(latest, now)
            for offset in list(latest.pre_status):
                latest = mark_sent(latest, offset, now)
            return latest

        updated = await reminder_storage.update_reminder(reminder_id, _mark_pre_sent)
        runtime_metrics.record_reminder_sent()
        logger.info(f"手动发送提醒: id={reminder_id}, owner={reminder.owner}")
        return updated


_scheduler: ReminderScheduler | None = None


def configure_scheduler(scheduler: ReminderScheduler) -> None:
    global _scheduler
    _scheduler = scheduler


def require_scheduler() -> ReminderScheduler:
    if _scheduler is None:
        raise RuntimeError("ReminderScheduler 尚未配置，请先调用 configure_scheduler()")
    return _scheduler


def get_status() -> dict[str, object]:
    if _scheduler is None:
        return {"running": False, "configured": False}
    return {"configured": True, **_scheduler.get_status()}
