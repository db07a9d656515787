"""事件编排: 把通道层的消息交给 Agent, 并记录双向的对话历史"""

import asyncio

from yoman.core.agent import require_agent_manager
from yoman.datamodel import IncomingMessage, OutgoingMessage
from yoman.events import bus, E
from yoman.logger import logger
from yoman.metrics import runtime_metrics
import yoman.storage.message as message_storage

__all__ = ["save_message", "handle_incoming_message", "main_loop"]


def _channel_name(channel_type) -> str:
    return getattr(channel_type, "value", str(channel_type))


@bus.on(E.IO_SEND_MESSAGE)
async def save_message(msg: OutgoingMessage) -> None:
    runtime_metrics.record_msg_out()
    await message_storage.create_message(msg.user_id, _channel_name(msg.channel_type), "assistant", msg.content)


@bus.on(E.IO_MESSAGE_RECEIVED)
async def handle_incoming_message(msg: IncomingMessage) -> None:
    logger.info(f"收到来自预约人 {msg.user_id} 的消息，准备入队")
    runtime_metrics.record_msg_in()
    await message_storage.create_message(msg.user_id, _channel_name(msg.channel_type), "user", msg.content)
    require_agent_manager().enqueue_incoming(msg)


async def main_loop(shutdown_event: asyncio.Event) -> None:
    """保持运行直到收到关闭信号, 退出时关闭所有 worker"""
    manager = require_agent_manager()
    logger.info("Orchestrator 主循环已启动")
    await shutdown_event.wait()
    await manager.shutdown()
    logger.info("Orchestrator 已关闭")
