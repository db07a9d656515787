import unittest
from datetime import date

from yoman.booking.availability import (
    Appointment,
    RejectionReason,
    bookings_for_date,
    check_slot,
    customer_bookings_for_date,
    fits_business_hours,
    generate_candidate_slots,
    generate_category_slots,
    hour_capacity_ok,
    is_slot_free,
    list_free_slots,
)
from yoman.datamodel import ServiceCategory, TimeRange
from yoman.utils import combine

DAY = date(2026, 11, 10)
LUNCH_BREAK = [TimeRange("09:00", "13:00"), TimeRange("14:00", "18:00")]


def _category(duration=60, buffer=0, max_per_hour=1) -> ServiceCategory:
    return ServiceCategory(
        id="cat_hair",
        name="Haircut",
        duration_minutes=duration,
        buffer_minutes=buffer,
        max_per_hour=max_per_hour,
    )


def _at(hhmm: str, duration: int = 60, category_id="cat_hair", buffer=0, owner="7") -> Appointment:
    hour, minute = map(int, hhmm.split(":"))
    start = hour * 60 + minute
    return Appointment(start=start, end=start + duration, category_id=category_id, buffer_minutes=buffer, owner=owner)


class TestSlotGeneration(unittest.TestCase):
    """时段只在每段营业时间内生成"""

    def test_lunch_break_is_never_offered(self):
        slots = generate_category_slots(LUNCH_BREAK, _category())
        self.assertEqual(slots, ["09:00", "10:00", "11:00", "12:00", "14:00", "15:00", "16:00", "17:00"])

    def test_category_grid_steps_by_duration_plus_buffer(self):
        slots = generate_category_slots([TimeRange("09:00", "11:00")], _category(duration=30, buffer=15))
        self.assertEqual(slots, ["09:00", "09:45", "10:30"])

    def test_fine_grid_steps_by_fifteen_minutes(self):
        slots = generate_candidate_slots([TimeRange("09:00", "10:00")], 30)
        self.assertEqual(slots, ["09:00", "09:15", "09:30"])

    def test_closed_day_has_no_slots(self):
        self.assertEqual(generate_category_slots([], _category()), [])
        self.assertEqual(generate_candidate_slots([TimeRange("09:00", "09:20")], 30), [])

    def test_fits_business_hours(self):
        self.assertTrue(fits_business_hours("12:00", 60, LUNCH_BREAK))
        self.assertFalse(fits_business_hours("12:30", 60, LUNCH_BREAK))
        self.assertFalse(fits_business_hours("08:30", 30, LUNCH_BREAK))


class TestSlotChecks(unittest.TestCase):
    def test_overlap_respects_buffer_of_existing_booking(self):
        existing = [_at("10:00", duration=30, buffer=15)]
        self.assertFalse(is_slot_free("10:30", 30, "cat_hair", existing))
        self.assertTrue(is_slot_free("10:45", 30, "cat_hair", existing))
        self.assertFalse(is_slot_free("09:45", 30, "cat_hair", existing))
        self.assertTrue(is_slot_free("09:30", 30, "cat_hair", existing))

    def test_other_categories_do_not_block(self):
        existing = [_at("10:00", category_id="cat_nails")]
        self.assertTrue(is_slot_free("10:00", 60, "cat_hair", existing))

    def test_hour_capacity(self):
        existing = [_at("10:00", duration=15), _at("10:15", duration=15)]
        self.assertFalse(hour_capacity_ok("10:30", "cat_hair", existing, 2))
        self.assertTrue(hour_capacity_ok("10:30", "cat_hair", existing, 3))
        self.assertTrue(hour_capacity_ok("11:00", "cat_hair", existing, 1))

    def test_rejection_reasons_in_order(self):
        category = _category(duration=30, max_per_hour=1)
        now = combine(DAY, 8, 0)
        bookings = [_at("10:00", duration=30, owner="7")]
        valid = generate_category_slots(LUNCH_BREAK, category)

        def check(slot, customer=()):
            return check_slot(DAY, slot, 30, category, bookings, list(customer), LUNCH_BREAK, valid, now)

        self.assertEqual(check("10:00"), RejectionReason.SLOT_TAKEN)
        self.assertEqual(check("10:30"), RejectionReason.CATEGORY_FULL)
        self.assertEqual(check("11:30", customer=[_at("11:00", category_id="cat_nails", owner="8")]),
                         RejectionReason.CUSTOMER_HOUR_TAKEN)
        self.assertEqual(check("13:00"), RejectionReason.OUTSIDE_BUSINESS_HOURS)
        self.assertEqual(check("11:10"), RejectionReason.NOT_A_SLOT)
        self.assertIsNone(check("11:00"))

        late = combine(DAY, 11, 0)
        self.assertEqual(
            check_slot(DAY, "11:00", 30, category, [], [], LUNCH_BREAK, valid, late),
            RejectionReason.IN_THE_PAST,
        )


class TestListFreeSlots(unittest.TestCase):
    def setUp(self):
        self.now = combine(DAY, 8, 0)

    def test_booked_and_past_slots_are_removed(self):
        category = _category()
        bookings = [_at("10:00"), _at("15:00")]
        slots = list_free_slots(DAY, category, bookings, [], LUNCH_BREAK, combine(DAY, 9, 30))
        self.assertEqual(slots, ["11:00", "12:00", "14:00", "16:00", "17:00"])

    def test_max_per_hour_allows_parallel_bookings(self):
        category = _category(duration=30, max_per_hour=2)
        bookings = [_at("10:00", duration=30, owner="1")]
        slots = list_free_slots(DAY, category, bookings, [], [TimeRange("10:00", "11:00")], self.now)
        # 10:00 已被占用, 10:30 所在小时仍有名额
        self.assertEqual(slots, ["10:30"])

    def test_customer_cannot_book_twice_in_one_hour(self):
        category = _category(duration=30)
        mine = [_at("14:00", duration=30, category_id="cat_nails", owner="9")]
        slots = list_free_slots(DAY, category, [], mine, [TimeRange("14:00", "16:00")], self.now)
        self.assertEqual(slots, ["15:00", "15:30"])

    def test_fine_grid_uses_requested_duration(self):
        category = _category(duration=60)
        slots = list_free_slots(
            DAY, category, [], [], [TimeRange("09:00", "10:00")], self.now, duration=30, fine_grid=True,
        )
        self.assertEqual(slots, ["09:00", "09:15", "09:30"])

    def test_every_listed_slot_passes_check_slot(self):
        category = _category(duration=45, buffer=15, max_per_hour=2)
        bookings = [_at("09:00", duration=45, buffer=15), _at("14:00", duration=45, buffer=15)]
        valid = generate_category_slots(LUNCH_BREAK, category)
        slots = list_free_slots(DAY, category, bookings, [], LUNCH_BREAK, self.now)

        self.assertTrue(slots)
        for slot in slots:
            self.assertIsNone(check_slot(DAY, slot, 45, category, bookings, [], LUNCH_BREAK, valid, self.now), slot)
        for slot in set(valid) - set(slots):
            self.assertIsNotNone(check_slot(DAY, slot, 45, category, bookings, [], LUNCH_BREAK, valid, self.now), slot)


class TestRecordReaders(unittest.TestCase):
    def test_bookings_for_date_reads_stored_records(self):
        records = [
            ("7", {"id": "apt_1", "date": "2026-11-10", "time": "10:00", "duration": 45, "category_id": "cat_hair"}),
            ("8", {"id": "apt_2", "date": "2026-11-10", "time": "11:00", "duration": "x", "buffer_minutes": 5}),
            ("8", {"id": "apt_3", "date": "2026-11-11", "time": "11:00"}),
            ("9", {"id": "rem_1", "day": "tuesday", "time": "12:00"}),
        ]
        bookings = bookings_for_date(records, DAY, {"cat_hair": 10})

        self.assertEqual([b.reminder_id for b in bookings], ["apt_1", "apt_2"])
        self.assertEqual((bookings[0].start, bookings[0].end, bookings[0].buffer_minutes), (600, 645, 10))
        self.assertEqual((bookings[1].end - bookings[1].start, bookings[1].buffer_minutes), (30, 5))
        self.assertEqual([b.reminder_id for b in customer_bookings_for_date(records, "8", DAY)], ["apt_2"])
