import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from yoman.core.agent import AgentManager, BookingAgent, configure_agent_manager
from yoman.core.orchestrator import handle_incoming_message
from yoman.datamodel import ChannelType, IncomingMessage
from yoman.events import bus, E
from yoman.llm.base import LLMClient
import yoman.storage.db_config as db_config
import yoman.storage.message as message_storage
import yoman.storage.user as user_storage


class ScriptedLLM(LLMClient):
    def __init__(self, replies):
        self.replies = list(replies)
        self.contexts = []

    async def generate_response(self, user_id, context, append_inst=None, allow_tools=True):
        self.contexts.append(context)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def _incoming(text, user_id="100"):
    return IncomingMessage(channel_type=ChannelType.TELEGRAM_BOT_POLLING, user_id=user_id, content=text)


class TestBookingAgent(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        await db_config.init_db(":memory:")
        await user_storage.create_user_if_not_exists("100", "Dana")
        self.outgoing = []
        self._listener = self.outgoing.append
        bus.add_listener(E.IO_SEND_MESSAGE, self._listener)

    async def asyncTearDown(self):
        bus.remove_listener(E.IO_SEND_MESSAGE, self._listener)
        # 等待 save_message 写完回复再关闭数据库
        await asyncio.sleep(0.05)
        await db_config.close_db()

    async def test_context_puts_current_time_before_latest_message(self):
        await message_storage.create_message("100", "telegram_bot_polling", "user", "hi")
        await asyncio.sleep(0.002)
        await message_storage.create_message("100", "telegram_bot_polling", "assistant", "hello!")
        await asyncio.sleep(0.002)
        await message_storage.create_message("100", "telegram_bot_polling", "user", "book me in")

        context = await BookingAgent("100", ScriptedLLM([])).build_context()

        self.assertEqual(context[0]["role"], "world")
        self.assertIn("Customer: Dana", context[0]["content"])
        self.assertEqual([c["role"] for c in context[1:]], ["user", "assistant", "world", "user"])
        self.assertTrue(context[-2]["content"].startswith("Current time: "))
        self.assertTrue(context[-1]["content"].endswith("book me in"))

    async def test_reply_is_emitted(self):
        agent = BookingAgent("100", ScriptedLLM(["Which service?"]))
        await agent._process_with_retry(_incoming("hi"))

        self.assertEqual(len(self.outgoing), 1)
        self.assertEqual(self.outgoing[0].content, "Which service?")
        self.assertEqual(self.outgoing[0].user_id, "100")

    async def test_failed_llm_call_is_retried(self):
        llm = ScriptedLLM([RuntimeError("timeout"), "Hello again"])
        with patch("yoman.core.agent.asyncio.sleep", new=AsyncMock()) as sleep:
            await BookingAgent("100", llm)._process_with_retry(_incoming("hi"))

        sleep.assert_awaited_once_with(1)
        self.assertEqual(len(llm.contexts), 2)
        self.assertEqual([m.content for m in self.outgoing], ["Hello again"])

    async def test_gives_up_after_max_attempts(self):
        llm = ScriptedLLM([RuntimeError("a"), RuntimeError("b"), RuntimeError("c")])
        with patch("yoman.core.agent.asyncio.sleep", new=AsyncMock()):
            await BookingAgent("100", llm)._process_with_retry(_incoming("hi"))
        self.assertEqual(len(llm.contexts), 3)
        self.assertEqual(self.outgoing, [])

    async def test_empty_reply_is_not_sent(self):
        await BookingAgent("100", ScriptedLLM(["   "]))._process_with_retry(_incoming("hi"))
        self.assertEqual(self.outgoing, [])


class TestOrchestrator(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        await db_config.init_db(":memory:")
        self.manager = AgentManager(ScriptedLLM(["See you soon"]))
        configure_agent_manager(self.manager)

    async def asyncTearDown(self):
        await self.manager.shutdown()
        await db_config.close_db()

    async def test_incoming_message_is_stored_answered_and_recorded(self):
        await handle_incoming_message(_incoming("hello"))
        self.assertEqual(self.manager.get_status()["agents"], 1)

        for _ in range(100):
            history = await message_storage.get_recent_messages_by_user_id("100")
            if len(history) == 2:
                break
            await asyncio.sleep(0.01)

        self.assertCountEqual(
            [(m["role"], m["content"]) for m in history],
            [("user", "hello"), ("assistant", "See you soon")],
        )
        self.assertEqual(history[0]["channel"], "telegram_bot_polling")
