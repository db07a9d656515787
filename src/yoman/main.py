from yoman.logger import setup_logging, logger
from yoman.config.settings import *
setup_logging(
    log_level="TRACE",
    log_file=LOG_FILE,
    console_level="INFO",
)

import asyncio
import os
import signal
import sys

from yoman.admin.http_server import main_loop as admin_http_main
from yoman.booking.processor import BookingCommandProcessor, configure_booking_processor
from yoman.channels.telegram_polling import TelegramNotifier, main as telegram_main
from yoman.config.prompts import BOOKING_SYSTEM_PROMPT
from yoman.core.agent import AgentManager, configure_agent_manager
import yoman.core.orchestrator as orchestrator
from yoman.llm.base import LLMClient
import yoman.storage.db_config as db_config
from yoman.world.reminder_scheduler import ReminderScheduler, configure_scheduler

shutdown_event = asyncio.Event()
restart_event = asyncio.Event()


def signal_handler(sig, frame):
    """处理 SIGINT (Ctrl+C) / SIGTERM 信号"""
    logger.info("收到中断信号,正在依次关闭组件...")
    shutdown_event.set()


def _create_llm_client() -> LLMClient:
    """根据配置创建 LLM 客户端实例"""
    if LLM_PROVIDER == "openai":
        from yoman.llm.openai_client import OpenAIClient

        return OpenAIClient(model=LLM_MAIN_MODEL, inst=BOOKING_SYSTEM_PROMPT)

    if LLM_PROVIDER == "gemini":
        from yoman.llm.gemini_client import GeminiClient

        return GeminiClient(model=LLM_MAIN_MODEL, inst=BOOKING_SYSTEM_PROMPT)

    raise ValueError(f"不支持的 LLM_PROVIDER: {LLM_PROVIDER}")


async def main() -> None:
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    configure_agent_manager(AgentManager(_create_llm_client()))
    processor = BookingCommandProcessor()
    configure_booking_processor(processor)
    scheduler = ReminderScheduler(notifier=TelegramNotifier())
    configure_scheduler(scheduler)

    await db_config.init_db(DATA_DB_PATH)

    try:
        tasks = [
            scheduler.main_loop(shutdown_event),
            processor.main_loop(shutdown_event),
            orchestrator.main_loop(shutdown_event),
            admin_http_main(shutdown_event, restart_event),
        ]

        if ENABLE_TELEGRAM_BOT_POLLING:
            tasks.append(telegram_main(shutdown_event))
        else:
            logger.warning("Telegram Bot Polling 已禁用, 提醒将无法投递")

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"组件异常退出: {result}", exc_info=result)
    finally:
        logger.info("关闭 Yoman...")

        logger.info("关闭数据库连接...")
        await db_config.close_db()
        if restart_event.is_set():
            logger.warning("检测到重启信号，正在重新拉起进程...")
            try:
                os.execv(sys.executable, [sys.executable, *sys.argv])
            except OSError as e:
                logger.error(f"重启失败: {e}", exc_info=e)
        logger.info("Yoman 已关闭")


def run() -> None:
    if not validate_settings():
        logger.critical("配置检查未通过, 退出")
        sys.exit(1)
    logger.info("启动 Yoman...")
    asyncio.run(main())


if __name__ == "__main__":
    run()
