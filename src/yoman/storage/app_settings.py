from typing import Any, Dict

from yoman.config.comments import REMINDER_TEMPLATE
from yoman.logger import logger
from yoman.storage.store import get_document, update_document

__all__ = ["APP_SETTINGS_KEY", "get_reminder_template", "set_reminder_template"]

APP_SETTINGS_KEY = "app_settings"


async def get_reminder_template() -> str:
    """自定义模板优先, 未设置时使用默认模板"""
    doc = await get_document(APP_SETTINGS_KEY, default={})
    template = (doc.body or {}).get("reminder_template")
    return template if isinstance(template, str) and template.strip() else REMINDER_TEMPLATE


async def set_reminder_template(template: str) -> str:
    def _mutate(doc: Dict[str, Any]) -> None:
        doc["reminder_template"] = template

    await update_document(APP_SETTINGS_KEY, _mutate, default={})
    logger.info("提醒模板已更新")
    return template
