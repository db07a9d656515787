"""Telegram Bot 长轮询通道

- 收到的文本消息转成 IncomingMessage 发到事件总线
- 监听 IO_SEND_MESSAGE 把 Agent 的回复发回给预约人
- TelegramNotifier 供提醒调度器投递提醒, 失败时抛出异常由调度器记录重试
"""

import asyncio
import datetime
from functools import wraps

import telegram
from telegram.ext import ApplicationBuilder, CommandHandler, ContextTypes, MessageHandler, filters

from yoman.channels.base import NotifierError
from yoman.config.settings import (
    ADMIN_TELEGRAM_USER_ID,
    ALLOWED_TELEGRAM_USER_IDS,
    BUSINESS_NAME,
    TELEGRAM_BOT_TOKEN,
)
from yoman.datamodel import ChannelType, IncomingMessage, OutgoingMessage
from yoman.events import bus, E
from yoman.logger import logger
import yoman.storage.user as user_storage

__all__ = ["TelegramNotifier", "main"]


def requires_auth(func):
    @wraps(func)
    async def decorated(update: telegram.Update, *args, **kwargs):
        if ALLOWED_TELEGRAM_USER_IDS and update.effective_user.id not in ALLOWED_TELEGRAM_USER_IDS:
            logger.warning(f"Telegram 用户 {update.effective_user.id} 未经允许访问 Bot")
            await update.message.reply_text("Sorry, this bot is not available for your account.")
            return None
        return await func(update, *args, **kwargs)
    return decorated


_bot_instance: telegram.Bot | None = None


async def _resolve_chat_id(user_id: str) -> int:
    user = await user_storage.get_user_by_id(user_id)
    if user is not None and user.telegram_chat_id is not None:
        return int(user.telegram_chat_id)
    if user_id.lstrip("-").isdigit():
        # 私聊中 chat id 与用户 id 相同
        return int(user_id)
    raise NotifierError(f"找不到 user_id={user_id} 对应的 Telegram chat")


class TelegramNotifier:
    """提醒投递通道, destination 为预约人 ID"""

    async def send(self, destination: str, text: str) -> None:
        if _bot_instance is None:
            raise NotifierError("Telegram Bot 尚未启动")
        chat_id = await _resolve_chat_id(destination)
        await _bot_instance.send_message(chat_id=chat_id, text=text)
        logger.debug(f"已通过 Telegram 投递提醒: user_id={destination}, chat_id={chat_id}")


@requires_auth
async def cmd_start(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.info(f"收到 /start 命令来自 Telegram ID: {update.effective_user.id}")
    await user_storage.create_user_if_not_exists(
        str(update.effective_user.id),
        display_name=update.effective_user.full_name,
        telegram_chat_id=update.effective_chat.id,
    )
    await update.message.reply_text(f"Hi! This is {BUSINESS_NAME}. How can I help you book today?")


@requires_auth
async def process_message(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not update.message.text:
        return

    user_id = str(update.effective_user.id)
    # 未发送 /start 的预约人也直接登记
    await user_storage.create_user_if_not_exists(
        user_id,
        display_name=update.effective_user.full_name,
        telegram_chat_id=update.effective_chat.id,
    )
    logger.info(f"User ID: {user_id} 消息内容: {update.message.text}")

    bus.emit(E.IO_MESSAGE_RECEIVED, IncomingMessage(
        channel_type=ChannelType.TELEGRAM_BOT_POLLING,
        user_id=user_id,
        content=update.message.text,
        channel_context=context,
        timestamp=update.message.date,
        metadata={"channel_chat_id": update.effective_chat.id},
    ))


@bus.on(E.IO_SEND_MESSAGE)
async def send_outgoing_message(msg: OutgoingMessage) -> None:
    if msg.channel_type != ChannelType.TELEGRAM_BOT_POLLING:
        return
    logger.info(f"发送消息给预约人 {msg.user_id}: {msg.content}")
    bot = _bot_instance or (msg.channel_context.bot if msg.channel_context is not None else None)
    if bot is None:
        logger.error(f"Telegram Bot 尚未启动, 无法回复预约人 {msg.user_id}")
        return
    chat_id = (msg.metadata or {}).get("channel_chat_id") or await _resolve_chat_id(msg.user_id)
    try:
        await bot.send_message(chat_id=chat_id, text=msg.content)
    except telegram.error.TelegramError as e:
        logger.error(f"向 Telegram chat {chat_id} 发送消息失败: {e}, 即将重试", exc_info=e)
        await asyncio.sleep(5)
        await bot.send_message(chat_id=chat_id, text=msg.content)


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """处理 telegram 库中发生的错误"""
    logger.error(f"Telegram 错误: {context.error}", exc_info=context.error)
    if ADMIN_TELEGRAM_USER_ID != 0:
        who = update.effective_user.id if isinstance(update, telegram.Update) and update.effective_user else "unknown"
        try:
            await context.bot.send_message(
                chat_id=ADMIN_TELEGRAM_USER_ID,
                text=f"Warning! Error in conversation with {who}: {context.error}",
            )
        except telegram.error.TelegramError as e:
            logger.error(f"向管理员发送错误消息失败: {e}", exc_info=e)


def bot_error_callback(error: telegram.error.TelegramError) -> None:
    if isinstance(error, telegram.error.NetworkError):
        logger.warning(f"Telegram Bot 网络错误: {error}")
    else:
        logger.error(f"Telegram Bot 发生预期外的错误: {error}", exc_info=error)


async def main(shutdown_event: asyncio.Event) -> None:
    global _bot_instance
    app = ApplicationBuilder().token(TELEGRAM_BOT_TOKEN).build()

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, process_message))
    app.add_error_handler(error_handler)

    try:
        await app.initialize()
        _bot_instance = app.bot
        await app.updater.start_polling(
            poll_interval=0.5,
            timeout=datetime.timedelta(seconds=15),
            bootstrap_retries=-1,
            drop_pending_updates=False,  # 保留下线期间的消息
            error_callback=bot_error_callback,
        )
        await app.start()
        logger.info("Telegram Bot Polling 已启动")

        await shutdown_event.wait()
    finally:
        logger.info("关闭 Telegram Bot Polling...")
        _bot_instance = None
        await app.updater.stop()
        await app.stop()
        await app.shutdown()
