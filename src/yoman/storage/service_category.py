"""服务类别

文档结构: {"categories": [category_dict, ...]}, 列表顺序即展示顺序 (序号选择依赖它)。
"""

from __future__ import annotations

from typing import Any, Dict, List

from ulid import ULID

from yoman.datamodel import ServiceCategory
from yoman.logger import logger
from yoman.storage.store import get_document, update_document

__all__ = [
    "CATEGORIES_KEY",
    "get_categories", "get_category", "get_category_buffers",
    "save_category", "delete_category",
]

CATEGORIES_KEY = "service_categories"


def _new_id(prefix: str) -> str:
    return f"{prefix}_{str(ULID()).lower()}"


async def get_categories() -> List[ServiceCategory]:
    doc = await get_document(CATEGORIES_KEY, default={"categories": []})
    items = (doc.body or {}).get("categories") or []
    return [ServiceCategory.from_dict(item) for item in items if isinstance(item, dict)]


async def get_category(category_id: str) -> ServiceCategory | None:
    for category in await get_categories():
        if category.id == category_id:
            return category
    return None


async def get_category_buffers() -> Dict[str, int]:
    return {c.id: c.buffer_minutes for c in await get_categories()}


async def save_category(data: Dict[str, Any]) -> ServiceCategory:
    """新增或更新 (按 id) 一个类别, 写入前做范围归一"""
    data = dict(data)
    if not data.get("id"):
        data["id"] = _new_id("cat")
    treatments = []
    for t in data.get("treatments") or []:
        t = dict(t)
        if not t.get("id"):
            t["id"] = _new_id("trt")
        treatments.append(t)
    data["treatments"] = treatments
    category = ServiceCategory.from_dict(data)

    def _mutate(doc: Dict[str, Any]) -> None:
        items = doc.setdefault("categories", [])
        for idx, item in enumerate(items):
            if isinstance(item, dict) and item.get("id") == category.id:
                items[idx] = category.to_dict()
                return
        items.append(category.to_dict())

    await update_document(CATEGORIES_KEY, _mutate, default={"categories": []})
    logger.info(f"保存服务类别: id={category.id}, name={category.name}")
    return category


async def delete_category(category_id: str) -> bool:
    def _mutate(doc: Dict[str, Any]) -> bool:
        items = doc.setdefault("categories", [])
        remaining = [i for i in items if not (isinstance(i, dict) and i.get("id") == category_id)]
        removed = len(remaining) != len(items)
        doc["categories"] = remaining
        return removed

    removed = await update_document(CATEGORIES_KEY, _mutate, default={"categories": []})
    if removed:
        logger.info(f"删除服务类别: id={category_id}")
    return removed
