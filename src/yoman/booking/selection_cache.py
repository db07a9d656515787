"""按预约人缓存最近一次展示的列表

预约人用序号 ("第 2 个类别", "取消第 1 个预约") 选择时, 序号对应的是
该预约人自己最近看到的那份列表。条目在 ttl_seconds 内未被访问即过期,
总数超过 max_entries 时淘汰最久未访问的条目。
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from yoman.datamodel import Reminder, ServiceCategory, Treatment
from yoman.logger import logger

__all__ = ["SlotListing", "Selection", "SelectionCache"]


@dataclass(frozen=True)
class SlotListing:
    date: str
    category_id: str
    treatment_id: Optional[str]
    slots: tuple[str, ...]


@dataclass
class Selection:
    categories: List[ServiceCategory] = field(default_factory=list)
    treatments_category_id: Optional[str] = None
    treatments: List[Treatment] = field(default_factory=list)
    slots: Optional[SlotListing] = None
    appointments: List[Reminder] = field(default_factory=list)


class SelectionCache:
    def __init__(
        self,
        ttl_seconds: float = 1800,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = float(ttl_seconds)
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        # requester -> (last_access, selection)
        self._entries: "OrderedDict[str, tuple[float, Selection]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, requester: str) -> Selection | None:
        """取出未过期的条目并刷新访问时间"""
        entry = self._entries.get(requester)
        if entry is None:
            return None
        now = self._clock()
        touched_at, selection = entry
        if now - touched_at > self._ttl_seconds:
            del self._entries[requester]
            logger.trace(f"选择缓存已过期: requester={requester}")
            return None
        self._entries[requester] = (now, selection)
        self._entries.move_to_end(requester)
        return selection

    def _get_or_create(self, requester: str) -> Selection:
        selection = self.get(requester)
        if selection is None:
            selection = Selection()
        self._entries[requester] = (self._clock(), selection)
        self._entries.move_to_end(requester)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.trace(f"选择缓存已满, 淘汰: requester={evicted}")
        return selection

    def remember_categories(self, requester: str, categories: List[ServiceCategory]) -> None:
        self._get_or_create(requester).categories = list(categories)

    def remember_treatments(self, requester: str, category_id: str, treatments: List[Treatment]) -> None:
        selection = self._get_or_create(requester)
        selection.treatments_category_id = category_id
        selection.treatments = list(treatments)

    def remember_slots(self, requester: str, listing: SlotListing) -> None:
        self._get_or_create(requester).slots = listing

    def remember_appointments(self, requester: str, appointments: List[Reminder]) -> None:
        self._get_or_create(requester).appointments = list(appointments)

    def forget_booking(self, requester: str) -> None:
        """清除类别、疗程与空闲时段, 保留预约列表"""
        selection = self.get(requester)
        if selection is None:
            return
        selection.categories = []
        selection.treatments_category_id = None
        selection.treatments = []
        selection.slots = None

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (touched_at, _) in self._entries.items() if now - touched_at > self._ttl_seconds]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"清理过期选择缓存: {len(expired)} 条")
        return len(expired)
