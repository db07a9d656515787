import asyncio
import unittest

from yoman.booking.processor import BookingCommandProcessor
from yoman.booking.selection_cache import SelectionCache, SlotListing
from yoman.datamodel import ServiceCategory


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class TestSelectionCache(unittest.TestCase):
    def setUp(self):
        self.clock = FakeMonotonic()
        self.cache = SelectionCache(ttl_seconds=60, max_entries=2, clock=self.clock)
        self.categories = [ServiceCategory(id="cat_a", name="A"), ServiceCategory(id="cat_b", name="B")]

    def test_entries_are_kept_per_requester(self):
        self.cache.remember_categories("1", self.categories)
        self.assertEqual([c.id for c in self.cache.get("1").categories], ["cat_a", "cat_b"])
        self.assertIsNone(self.cache.get("2"))

    def test_entry_expires_without_access(self):
        self.cache.remember_categories("1", self.categories)
        self.clock.value += 61
        self.assertIsNone(self.cache.get("1"))
        self.assertEqual(len(self.cache), 0)

    def test_access_extends_lifetime(self):
        self.cache.remember_categories("1", self.categories)
        self.clock.value += 50
        self.assertIsNotNone(self.cache.get("1"))
        self.clock.value += 50
        self.assertIsNotNone(self.cache.get("1"))

    def test_least_recently_used_is_evicted(self):
        self.cache.remember_categories("1", self.categories)
        self.cache.remember_categories("2", self.categories)
        self.cache.get("1")
        self.cache.remember_categories("3", self.categories)

        self.assertEqual(len(self.cache), 2)
        self.assertIsNone(self.cache.get("2"))
        self.assertIsNotNone(self.cache.get("1"))
        self.assertIsNotNone(self.cache.get("3"))

    def test_forget_booking_keeps_appointments(self):
        self.cache.remember_categories("1", self.categories)
        self.cache.remember_treatments("1", "cat_a", [])
        self.cache.remember_slots("1", SlotListing("2026-11-10", "cat_a", None, ("09:00",)))
        self.cache.remember_appointments("1", ["apt"])
        self.cache.forget_booking("1")

        selection = self.cache.get("1")
        self.assertEqual(selection.categories, [])
        self.assertIsNone(selection.treatments_category_id)
        self.assertIsNone(selection.slots)
        self.assertEqual(selection.appointments, ["apt"])

    def test_cleanup_expired(self):
        self.cache.remember_categories("1", self.categories)
        self.clock.value += 30
        self.cache.remember_categories("2", self.categories)
        self.clock.value += 40

        self.assertEqual(self.cache.cleanup_expired(), 1)
        self.assertIsNone(self.cache.get("1"))
        self.assertIsNotNone(self.cache.get("2"))


class TestSelectionCleanupLoop(unittest.IsolatedAsyncioTestCase):
    async def test_loop_drops_expired_selections_until_shutdown(self):
        clock = FakeMonotonic()
        cache = SelectionCache(ttl_seconds=60, clock=clock)
        cache.remember_categories("1", [ServiceCategory(id="cat_a", name="A")])
        clock.value += 61

        shutdown_event = asyncio.Event()
        task = asyncio.create_task(BookingCommandProcessor(cache=cache).main_loop(shutdown_event, interval=0.01))
        for _ in range(100):
            if len(cache) == 0:
                break
            await asyncio.sleep(0.01)
        shutdown_event.set()
        await asyncio.wait_for(task, timeout=1)

        self.assertEqual(len(cache), 0)
