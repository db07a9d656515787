"""预约对话 Agent

每个预约人一个 BookingAgent, 内部是一个消息队列和一个 worker 任务,
同一预约人的消息按顺序处理, 不同预约人之间互不阻塞。
"""

import asyncio
import time
from typing import List

from yoman.config.settings import BUSINESS_NAME
from yoman.datamodel import IncomingMessage, OutgoingMessage
from yoman.events import bus, E
from yoman.llm.base import LLMClient, LLMContextItem
from yoman.logger import logger
from yoman.metrics import runtime_metrics
import yoman.storage.message as message_storage
import yoman.storage.reminder as reminder_storage
import yoman.storage.user as user_storage
from yoman.utils import now_local, utc_str_to_local_min

# 注册工具函数
import yoman.functions.booking_func  # noqa: F401
import yoman.functions.reminder_func  # noqa: F401

__all__ = ["BookingAgent", "AgentManager", "configure_agent_manager", "require_agent_manager", "get_status"]

HISTORY_LIMIT = 30
MAX_ATTEMPTS = 3


class BookingAgent:
    """单个预约人的对话 worker"""

    def __init__(self, user_id: str, llm_client: LLMClient) -> None:
        self.user_id = user_id
        self.llm_client = llm_client
        self.unread_queue: asyncio.Queue[IncomingMessage] = asyncio.Queue()

    async def run_loop(self) -> None:
        logger.info(f"预约人 {self.user_id} 的 worker 已启动")
        try:
            while True:
                msg = await self.unread_queue.get()
                try:
                    await self._process_with_retry(msg)
                finally:
                    self.unread_queue.task_done()
        except asyncio.CancelledError:
            logger.info(f"预约人 {self.user_id} 的 worker 已停止")
            raise

    def enqueue(self, msg: IncomingMessage) -> None:
        self.unread_queue.put_nowait(msg)
        logger.trace(f"预约人 {self.user_id} 消息入队: queue_size={self.unread_queue.qsize()}")

    async def _process_with_retry(self, msg: IncomingMessage) -> None:
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                await self._handle_incoming_message(msg)
                return
            except Exception as e:
                if attempt >= MAX_ATTEMPTS:
                    logger.error(f"预约人 {self.user_id} 的消息处理失败且超过重试次数", exc_info=e)
                    return

                delay_seconds = 2 ** (attempt - 1)
                logger.warning(
                    f"预约人 {self.user_id} 的消息处理失败，准备重试: "
                    f"attempt={attempt}/{MAX_ATTEMPTS}, sleep={delay_seconds}s, error={e}"
                )
                await asyncio.sleep(delay_seconds)

    async def build_context(self) -> List[LLMContextItem]:
        """世界信息 + 最近对话; 当前时间固定放在倒数第二条"""
        display_name = await user_storage.get_display_name(self.user_id)
        upcoming = await reminder_storage.get_future_reminders(owner=self.user_id)

        world_info = f"Business: {BUSINESS_NAME}\nCustomer: {display_name}"
        if upcoming:
            world_info += "\n\n[Upcoming appointments]\n"
            for r in upcoming:
                world_info += f"- {r.date} {r.time} {r.title or ''}\n"

        context: List[LLMContextItem] = [{"role": "world", "content": world_info}]

        history = await message_storage.get_recent_messages_by_user_id(self.user_id, limit=HISTORY_LIMIT)
        context += [
            {
                "role": m["role"],
                "content": f"[{utc_str_to_local_min(m['created_at_utc'])}] {m['content']}",
            }
            for m in reversed(history)
            if m["role"] in ("user", "assistant")
        ]

        now = now_local()
        context.insert(-1, {
            "role": "world",
            "content": f"Current time: {now.strftime('%A %Y-%m-%d %H:%M')}",
        })
        return context

    async def _handle_incoming_message(self, msg: IncomingMessage) -> None:
        logger.info(f"处理预约人 {self.user_id} 的消息")
        context = await self.build_context()

        start_time = time.perf_counter()
        llm_call_error = False
        try:
            reply = await self.llm_client.generate_response(self.user_id, context)
        except Exception:
            llm_call_error = True
            raise
        finally:
            latency_seconds = time.perf_counter() - start_time
            runtime_metrics.record_llm_call(latency_ms=latency_seconds * 1000, error=llm_call_error)
            logger.debug(f"LLM 响应时间: {latency_seconds:.2f} 秒")

        if not reply.strip():
            logger.warning(f"LLM 对预约人 {self.user_id} 返回空回复, 不发送")
            return

        bus.emit(
            E.IO_SEND_MESSAGE,
            OutgoingMessage(
                channel_type=msg.channel_type,
                user_id=self.user_id,
                content=reply,
                channel_context=msg.channel_context,
                metadata=msg.metadata,
            ),
        )


class AgentManager:
    def __init__(self, llm_client: LLMClient) -> None:
        self.llm_client = llm_client
        self._instances: dict[str, BookingAgent] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}

    def get_status(self) -> dict[str, object]:
        return {
            "agents": len(self._instances),
            "running_workers": sum(1 for t in self._workers.values() if not t.done()),
            "queued_messages": sum(a.unread_queue.qsize() for a in self._instances.values()),
        }

    def get_or_create(self, user_id: str) -> BookingAgent:
        agent = self._instances.get(user_id)
        if agent is None:
            agent = BookingAgent(user_id=user_id, llm_client=self.llm_client)
            self._instances[user_id] = agent
            logger.info(f"创建预约人 Agent 实例: user_id={user_id}")
        return agent

    def start_worker_if_needed(self, user_id: str) -> None:
        worker = self._workers.get(user_id)
        if worker is not None and not worker.done():
            return

        agent = self.get_or_create(user_id)
        self._workers[user_id] = asyncio.create_task(agent.run_loop(), name=f"agent-user-{user_id}")
        logger.info(f"已启动预约人 worker: user_id={user_id}")

    def enqueue_incoming(self, msg: IncomingMessage) -> None:
        agent = self.get_or_create(msg.user_id)
        self.start_worker_if_needed(msg.user_id)
        agent.enqueue(msg)

    async def shutdown(self) -> None:
        if not self._workers:
            return

        logger.info("正在关闭 AgentManager...")
        workers = list(self._workers.items())
        for _, task in workers:
            task.cancel()

        results = await asyncio.gather(*(task for _, task in workers), return_exceptions=True)
        for (user_id, _), result in zip(workers, results):
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                logger.error(f"关闭预约人 worker 时发生异常: user_id={user_id}, error={result}")

        self._workers.clear()
        self._instances.clear()
        logger.info("AgentManager 已关闭")


_agent_manager: AgentManager | None = None


def configure_agent_manager(manager: AgentManager) -> None:
    global _agent_manager
    _agent_manager = manager


def require_agent_manager() -> AgentManager:
    if _agent_manager is None:
        raise RuntimeError("AgentManager 尚未配置，请先调用 configure_agent_manager()")
    return _agent_manager


def get_status() -> dict[str, object]:
    if _agent_manager is None:
        return {"configured": False}
    return {"configured": True, **_agent_manager.get_status()}
