import unittest
from datetime import date
from unittest.mock import patch

from yoman.storage.store import (
    VersionConflictError,
    get_document,
    set_document,
    update_document,
)
from yoman.utils import combine
import yoman.storage.business_hours as business_hours_storage
import yoman.storage.db_config as db_config
import yoman.storage.reminder as reminder_storage


class TestVersionedDocuments(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        await db_config.init_db(":memory:")

    async def asyncTearDown(self):
        await db_config.close_db()

    async def test_missing_document_returns_default_copy(self):
        default = {"items": []}
        doc = await get_document("things", default=default)
        self.assertEqual(doc.version, 0)
        doc.body["items"].append(1)
        self.assertEqual(default, {"items": []})

    async def test_write_requires_current_version(self):
        self.assertEqual(await set_document("things", {"a": 1}, 0), 1)
        self.assertEqual(await set_document("things", {"a": 2}, 1), 2)

        with self.assertRaises(VersionConflictError):
            await set_document("things", {"a": 3}, 1)
        with self.assertRaises(VersionConflictError):
            await set_document("things", {"a": 3}, 0)

        doc = await get_document("things")
        self.assertEqual((doc.version, doc.body), (2, {"a": 2}))

    async def test_update_rereads_after_concurrent_write(self):
        await set_document("counter", {"n": 0}, 0)
        seen = []
        interfered = False

        async def _read_then_interfere(key, default=None):
            nonlocal interfered
            doc = await get_document(key, default)
            if not interfered:
                # 读取之后另一个写入者抢先提交
                interfered = True
                await set_document(key, {"n": 10}, doc.version)
            return doc

        def _increment(body):
            seen.append(body["n"])
            body["n"] += 1
            return body["n"]

        with patch("yoman.storage.store.get_document", side_effect=_read_then_interfere):
            result = await update_document("counter", _increment)

        self.assertEqual(result, 11)
        self.assertEqual(seen, [0, 10])
        doc = await get_document("counter")
        self.assertEqual((doc.version, doc.body), (3, {"n": 11}))

    async def test_update_gives_up_after_max_attempts(self):
        await set_document("counter", {"n": 0}, 0)

        async def _always_stale(key, default=None):
            doc = await get_document(key, default)
            await set_document(key, {"n": -1}, doc.version)
            return doc

        with patch("yoman.storage.store.get_document", side_effect=_always_stale):
            with self.assertRaises(VersionConflictError):
                await update_document("counter", lambda body: None, max_attempts=2)

    async def test_mutate_error_writes_nothing(self):
        await set_document("things", {"a": 1}, 0)

        def _broken(body):
            body["a"] = 99
            raise ValueError("bad input")

        with self.assertRaises(ValueError):
            await update_document("things", _broken)
        doc = await get_document("things")
        self.assertEqual((doc.version, doc.body), (1, {"a": 1}))

    async def test_business_hours_default_and_closed_day(self):
        self.assertEqual(
            [(r.start, r.end) for r in await business_hours_storage.get_hours_for_day(1)],
            [("09:00", "18:00")],
        )
        await business_hours_storage.set_business_hours({
            "monday": [{"start": "14:00", "end": "18:00"}, {"start": "09:00", "end": "12:00"},
                       {"start": "11:00", "end": "13:00"}, {"start": "20:00", "end": "19:00"}],
            "saturday": [],
        })
        monday = await business_hours_storage.get_hours_for_day(1)
        self.assertEqual([(r.start, r.end) for r in monday], [("09:00", "13:00"), ("14:00", "18:00")])
        self.assertEqual(await business_hours_storage.get_hours_for_day(6), [])

        with self.assertRaises(business_hours_storage.BusinessHoursError):
            await business_hours_storage.set_business_hours({"someday": []})


class TestReminderStorage(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        await db_config.init_db(":memory:")

    async def asyncTearDown(self):
        await db_config.close_db()

    async def test_future_reminders_sort_by_start_time(self):
        later = await reminder_storage.create_reminder(owner="100", time="10:00", date="2026-11-10")
        earlier = await reminder_storage.create_reminder(owner="100", time="9:30", date="2026-11-10")
        next_day = await reminder_storage.create_reminder(owner="100", time="8:00", date="2026-11-11")

        future = await reminder_storage.get_future_reminders(owner="100", now=combine(date(2026, 11, 10), 8, 0))
        self.assertEqual([r.id for r in future], [earlier.id, later.id, next_day.id])
