import os
from dotenv import load_dotenv
from yoman.logger import logger
load_dotenv()

__all__ = [
    "ENABLE_TELEGRAM_BOT_POLLING", "TELEGRAM_BOT_TOKEN", "ADMIN_TELEGRAM_USER_ID", "ALLOWED_TELEGRAM_USER_IDS",
    "LLM_PROVIDER", "OPENAI_PRIMARY_API_KEY", "OPENAI_PRIMARY_BASE_URL", "GEMINI_API_KEY", "GEMINI_BASE_URL",
    "LLM_MAIN_MODEL", "LLM_FAST_MODEL",
    "BUSINESS_NAME", "BUSINESS_TIMEZONE",
    "DATA_DB_PATH", "LOG_FILE",
    "REMINDER_SEND_INTERVAL_SECONDS", "REMINDER_RETRY_INTERVAL_SECONDS", "REMINDER_CLEANUP_INTERVAL_SECONDS",
    "SELECTION_CACHE_TTL_SECONDS", "SELECTION_CACHE_MAX_ENTRIES",
    "ADMIN_HTTP_HOST", "ADMIN_HTTP_PORT", "ADMIN_AUTH_TOKEN",
    "validate_settings",
]


def _parse_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on", "y")


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name} 非法: {raw}, 已回退到 {default}")
        return default


def _parse_id_list(name: str) -> list[int]:
    ids: list[int] = []
    for part in os.getenv(name, "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            logger.warning(f"{name} 中包含非法 ID: {part}, 已忽略")
    return ids


# 动态加载的环境变量
# 商家信息, 营业时间与预约时段均按该时区解释
BUSINESS_NAME = os.getenv("BUSINESS_NAME", "Yoman")
BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "Asia/Jerusalem")

# 存储
DATA_DB_PATH = os.getenv("DATA_DB_PATH", "data/yoman.db")
LOG_FILE = os.getenv("LOG_FILE", "logs/yoman.log")

# Telegram Bot
ENABLE_TELEGRAM_BOT_POLLING = _parse_bool("ENABLE_TELEGRAM_BOT_POLLING", True)
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
ADMIN_TELEGRAM_USER_ID = _parse_int("ADMIN_TELEGRAM_USER_ID", 0)
ALLOWED_TELEGRAM_USER_IDS = _parse_id_list("ALLOWED_TELEGRAM_USER_IDS")  # 为空表示不限制

# 提醒调度
REMINDER_SEND_INTERVAL_SECONDS = _parse_int("REMINDER_SEND_INTERVAL_SECONDS", 15)
REMINDER_RETRY_INTERVAL_SECONDS = _parse_int("REMINDER_RETRY_INTERVAL_SECONDS", 60)
REMINDER_CLEANUP_INTERVAL_SECONDS = _parse_int("REMINDER_CLEANUP_INTERVAL_SECONDS", 300)

# 预约序号缓存 (用户说 "第2个" 时按最近一次展示的列表解析)
SELECTION_CACHE_TTL_SECONDS = _parse_int("SELECTION_CACHE_TTL_SECONDS", 1800)
SELECTION_CACHE_MAX_ENTRIES = _parse_int("SELECTION_CACHE_MAX_ENTRIES", 1000)

# LLM 设置
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai").strip().lower()
OPENAI_PRIMARY_API_KEY = os.getenv("OPENAI_PRIMARY_API_KEY")
OPENAI_PRIMARY_BASE_URL = os.getenv("OPENAI_PRIMARY_BASE_URL", "https://api.openai.com/v1")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL")

LLM_MAIN_MODEL = os.getenv("LLM_MAIN_MODEL", "gpt-5.2")
LLM_FAST_MODEL = os.getenv("LLM_FAST_MODEL", "gpt-5-nano")

# Admin API
ADMIN_HTTP_HOST = os.getenv("ADMIN_HTTP_HOST", "127.0.0.1")
ADMIN_HTTP_PORT = _parse_int("ADMIN_HTTP_PORT", 18080)
ADMIN_AUTH_TOKEN = os.getenv("ADMIN_AUTH_TOKEN", "")


def validate_settings() -> bool:
    """进程启动时检查关键配置, 返回 False 表示无法启动"""
    ok = True
    if ENABLE_TELEGRAM_BOT_POLLING and TELEGRAM_BOT_TOKEN == "":
        logger.critical("已启用 Telegram Bot Polling, 但 TELEGRAM_BOT_TOKEN 未设置")
        ok = False

    if LLM_PROVIDER not in ("openai", "gemini"):
        logger.critical(f"LLM_PROVIDER 非法: {LLM_PROVIDER}, 仅支持 openai 或 gemini")
        ok = False
    elif LLM_PROVIDER == "openai" and OPENAI_PRIMARY_API_KEY is None:
        logger.critical("当前 LLM_PROVIDER=openai, 但 OPENAI_PRIMARY_API_KEY 未设置")
        ok = False
    elif LLM_PROVIDER == "gemini" and GEMINI_API_KEY is None:
        logger.critical("当前 LLM_PROVIDER=gemini, 但 GEMINI_API_KEY 未设置")
        ok = False

    if ADMIN_TELEGRAM_USER_ID == 0:
        logger.warning("未设置 ADMIN_TELEGRAM_USER_ID, Bot 错误将不会通知管理员")

    return ok
