import unittest
from datetime import date, timedelta
from unittest.mock import AsyncMock, patch

from yoman.channels.base import NotifierError
from yoman.datamodel import MAIN
from yoman.logger import logger
from yoman.storage.store import VersionConflictError
from yoman.utils import combine
from yoman.world.reminder_scheduler import ReminderScheduler
import yoman.storage.app_settings as app_settings_storage
import yoman.storage.db_config as db_config
import yoman.storage.reminder as reminder_storage

TUESDAY = date(2026, 11, 10)


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.failing = False
        self.attempts = 0

    async def send(self, destination: str, text: str) -> None:
        self.attempts += 1
        if self.failing:
            raise NotifierError("channel down")
        self.sent.append((destination, text))


class FakeClock:
    def __init__(self, now) -> None:
        self.now = now

    def __call__(self):
        return self.now


class TestReminderScheduler(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        await db_config.init_db(":memory:")
        self.notifier = FakeNotifier()
        self.clock = FakeClock(combine(TUESDAY, 10, 0))
        self.scheduler = ReminderScheduler(self.notifier, clock=self.clock)

    async def asyncTearDown(self):
        await db_config.close_db()

    async def _create(self, time="11:00", **kwargs):
        return await reminder_storage.create_reminder(
            owner="42",
            time=time,
            date=kwargs.pop("date", TUESDAY.isoformat()),
            title="Appointment - Dana - Haircut",
            **kwargs,
        )

    async def test_only_the_one_hour_notice_fires_an_hour_before(self):
        created = await self._create()

        self.assertEqual(await self.scheduler.run_send_pass(), 1)
        self.assertEqual(len(self.notifier.sent), 1)
        destination, text = self.notifier.sent[0]
        self.assertEqual(destination, "42")
        self.assertIn("one hour", text)
        self.assertIn("Appointment - Dana - Haircut", text)

        stored = await reminder_storage.find_reminder(created.id)
        self.assertTrue(stored.pre_status["1h"].sent)
        for offset in ("1d", "3d", "1w"):
            self.assertTrue(stored.pre_status[offset].skipped, offset)
            self.assertFalse(stored.pre_status[offset].sent, offset)
        self.assertFalse(stored.main_status.sent)

    async def test_main_notification_is_sent_once(self):
        created = await self._create()
        await self.scheduler.run_send_pass()

        self.clock.now = combine(TUESDAY, 10, 59) + timedelta(seconds=50)
        self.assertEqual(await self.scheduler.run_send_pass(), 1)
        self.clock.now += timedelta(seconds=5)
        self.assertEqual(await self.scheduler.run_send_pass(), 0)

        self.assertEqual(len(self.notifier.sent), 2)
        self.assertIn("starting now", self.notifier.sent[-1][1])
        stored = await reminder_storage.find_reminder(created.id)
        self.assertTrue(stored.main_status.sent)

    async def test_failed_send_is_retried_after_backoff(self):
        created = await self._create()
        self.clock.now = combine(TUESDAY, 9, 59) + timedelta(seconds=30)
        self.notifier.failing = True

        self.assertEqual(await self.scheduler.run_send_pass(), 0)
        stored = await reminder_storage.find_reminder(created.id)
        self.assertTrue(stored.pre_status["1h"].failed)
        self.assertEqual(stored.pre_status["1h"].retries, 1)
        self.assertEqual(stored.pre_status["1h"].last_error, "channel down")

        self.notifier.failing = False
        self.clock.now = combine(TUESDAY, 10, 0)
        self.assertEqual(await self.scheduler.run_retry_pass(), 0)

        self.clock.now = combine(TUESDAY, 10, 0) + timedelta(seconds=30)
        self.assertEqual(await self.scheduler.run_retry_pass(), 1)
        stored = await reminder_storage.find_reminder(created.id)
        self.assertTrue(stored.pre_status["1h"].sent)
        self.assertFalse(stored.pre_status["1h"].failed)

    async def test_failure_inside_window_is_not_resent_before_backoff(self):
        created = await self._create()
        failed_at = combine(TUESDAY, 9, 59) + timedelta(seconds=35)
        self.clock.now = failed_at
        self.notifier.failing = True
        self.assertEqual(await self.scheduler.run_send_pass(), 0)

        self.clock.now = failed_at + timedelta(seconds=15)
        self.assertEqual(await self.scheduler.run_send_pass(), 0)
        self.assertEqual(self.notifier.attempts, 1)

        self.notifier.failing = False
        self.clock.now = failed_at + timedelta(seconds=30)
        self.assertEqual(await self.scheduler.run_retry_pass(), 0)

        # 发送窗口已经关闭, 只有重试循环会再次投递
        self.clock.now = failed_at + timedelta(seconds=60)
        self.assertEqual(await self.scheduler.run_send_pass(), 0)
        self.assertEqual(await self.scheduler.run_retry_pass(), 1)
        self.assertEqual(self.notifier.attempts, 2)
        stored = await reminder_storage.find_reminder(created.id)
        self.assertTrue(stored.pre_status["1h"].sent)
        self.assertEqual(stored.pre_status["1h"].retries, 1)

    async def test_main_fifty_minutes_away_sends_no_pre_notification(self):
        created = await self._create(pre_notifications=["3d", "1d", "1h"])
        self.clock.now = combine(TUESDAY, 10, 10)
        for _ in range(8):
            self.assertEqual(await self.scheduler.run_send_pass(), 0)
            self.clock.now += timedelta(seconds=15)

        stored = await reminder_storage.find_reminder(created.id)
        self.assertTrue(all(s.skipped and not s.sent for s in stored.pre_status.values()))

        self.clock.now = combine(TUESDAY, 10, 59) + timedelta(seconds=50)
        self.assertEqual(await self.scheduler.run_send_pass(), 1)
        self.assertEqual(len(self.notifier.sent), 1)
        self.assertIn("starting now", self.notifier.sent[0][1])

    async def test_unsaved_sent_status_is_logged(self):
        created = await self._create()
        await self.scheduler.initialize_statuses()
        errors = []
        handler_id = logger.add(errors.append, level="ERROR", format="{message}")
        try:
            with patch(
                "yoman.storage.reminder.update_reminder",
                new=AsyncMock(side_effect=VersionConflictError("reminders", 3)),
            ):
                self.assertEqual(await self.scheduler.run_send_pass(), 1)
        finally:
            logger.remove(handler_id)

        self.assertEqual(len(self.notifier.sent), 1)
        self.assertTrue(any(created.id in str(m) and "sent" in str(m) for m in errors))

    async def test_one_failure_does_not_block_other_reminders(self):
        await self._create()
        other = await reminder_storage.create_reminder(owner="43", time="11:00", date=TUESDAY.isoformat())

        class PickyNotifier(FakeNotifier):
            async def send(self, destination, text):
                if destination == "42":
                    raise NotifierError("blocked")
                await super().send(destination, text)

        notifier = PickyNotifier()
        scheduler = ReminderScheduler(notifier, clock=self.clock)
        self.assertEqual(await scheduler.run_send_pass(), 1)
        self.assertEqual([d for d, _ in notifier.sent], ["43"])
        stored = await reminder_storage.find_reminder(other.id)
        self.assertTrue(stored.pre_status["1h"].sent)

    async def test_cleanup_removes_past_one_time_reminders_only(self):
        past = await self._create(time="10:00")
        weekly = await reminder_storage.create_reminder(owner="42", time="10:00", day="tuesday", kind="recurring")
        self.clock.now = combine(TUESDAY, 9, 0)
        self.assertEqual(await self.scheduler.initialize_statuses(), 2)

        self.clock.now = combine(TUESDAY, 10, 2)
        self.assertEqual(await self.scheduler.run_cleanup_pass(), [])

        self.clock.now = combine(TUESDAY, 10, 4)
        removed = await self.scheduler.run_cleanup_pass()
        self.assertEqual([r.id for r in removed], [past.id])
        remaining = [r.id for r in await reminder_storage.get_all_reminders()]
        self.assertEqual(remaining, [weekly.id])

    async def test_unparsable_reminder_is_skipped_not_deleted(self):
        def _insert(doc):
            doc.setdefault("42", []).append({"id": "rem_bad", "time": "10:00", "day": "someday"})

        await reminder_storage.update_reminders(_insert)
        self.assertEqual(await self.scheduler.run_send_pass(), 0)
        self.assertEqual(await self.scheduler.initialize_statuses(), 0)
        self.assertIsNotNone(await reminder_storage.find_reminder("rem_bad"))

    async def test_send_now_marks_pre_notifications_sent(self):
        created = await self._create()
        updated = await self.scheduler.send_now(created.id)

        self.assertEqual(len(self.notifier.sent), 1)
        self.assertTrue(all(s.sent for s in updated.pre_status.values()))
        self.assertFalse(updated.main_status.sent)
        self.assertIsNone(await self.scheduler.send_now("rem_missing"))

    async def test_custom_template_is_used(self):
        await app_settings_storage.set_reminder_template("See you {day} at {time}, {name}!")
        reminder = await self._create()
        text = await self.scheduler.render_text(reminder, MAIN)
        self.assertIn("at 11:00, 42!", text)
