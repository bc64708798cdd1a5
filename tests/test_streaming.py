import asyncio
import os
import sys
import tempfile
import unittest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from knowledge_chat.attachments import AttachmentStore
from knowledge_chat.chat_service import ChatService
from knowledge_chat.config import ChatSettings
from knowledge_chat.errors import NotFoundError
from knowledge_chat.models import RagDocument, RagResult, SendMessageRequest
from knowledge_chat.models_db import ChatMessage, ChatSession
from knowledge_chat.streaming import StreamCoordinator, Turn, TurnState
from support import FakeCompleter, make_session_factory

THINKING_FRAGMENTS = ["<think>", "reasoning", "</think>", "answer"]


async def collect(events):
    return [event async for event in events]


async def wait_idle(coordinator, timeout=2.0):
    async with asyncio.timeout(timeout):
        while coordinator.active_turns:
            await asyncio.sleep(0.01)


class TestStreamCoordinator(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.saved = []

    def persist(self, message_id, content, reasoning):
        self.saved.append((message_id, content, reasoning))

    def turn(self, rag_result=None):
        return Turn(session_id=1, user_message_id=10, assistant_message_id=11, prompt="p", rag_result=rag_result)

    async def test_completed_turn(self):
        coordinator = StreamCoordinator(FakeCompleter(fragments=THINKING_FRAGMENTS), self.persist)
        rag = RagResult(documents=[RagDocument(id=1, chunk_id=2, name="Doc", score=0.5)])
        turn = self.turn(rag)

        events = await collect(coordinator.start(turn))

        self.assertEqual([e["type"] for e in events], ["init", "chunk", "chunk", "chunk", "chunk", "done"])
        self.assertEqual(events[0]["user_message_id"], 10)
        self.assertEqual(events[0]["assistant_message_id"], 11)
        self.assertEqual(events[0]["rag_documents"][0]["name"], "Doc")
        self.assertEqual([e["content"] for e in events[1:5]], THINKING_FRAGMENTS)
        self.assertEqual((events[-1]["reasoning"], events[-1]["content"]), ("reasoning", "answer"))
        self.assertEqual(self.saved, [(11, "answer", "reasoning")])
        self.assertEqual(turn.state, TurnState.COMPLETED)

    async def test_failed_turn_keeps_partial_content(self):
        completer = FakeCompleter(fragments=["partial ", "text", "never"], fail_after=2,
                                  error=RuntimeError("connection reset"))
        coordinator = StreamCoordinator(completer, self.persist)
        turn = self.turn()

        events = await collect(coordinator.start(turn))

        self.assertEqual([e["type"] for e in events], ["init", "chunk", "chunk", "error"])
        self.assertEqual(events[-1]["message"], "connection reset")
        self.assertNotIn("rag_documents", events[0])
        self.assertEqual(self.saved, [(11, "partial text", None)])
        self.assertEqual(turn.state, TurnState.FAILED)

    async def test_persistence_failure_is_reported(self):
        def broken_persist(*args):
            raise RuntimeError("disk full")

        coordinator = StreamCoordinator(FakeCompleter(fragments=["a"]), broken_persist)
        events = await collect(coordinator.start(self.turn()))

        self.assertEqual([e["type"] for e in events], ["init", "chunk", "error"])

    async def test_timeout_closes_stream_without_terminal_event(self):
        completer = FakeCompleter(fragments=["slow", "er"], delay=0.5)
        coordinator = StreamCoordinator(completer, self.persist, turn_timeout=0.1)
        turn = self.turn()

        events = await collect(coordinator.start(turn))

        self.assertEqual([e["type"] for e in events], ["init"])
        self.assertEqual(turn.state, TurnState.TIMED_OUT)
        self.assertEqual(self.saved, [])

    async def test_timeout_keeps_text_produced_so_far(self):
        class StallingCompleter(FakeCompleter):
            async def complete_stream(self, prompt):
                yield "a"
                yield "b"
                await asyncio.sleep(10)
                yield "never"

        coordinator = StreamCoordinator(StallingCompleter(), self.persist, turn_timeout=0.1)
        turn = self.turn()

        events = await collect(coordinator.start(turn))

        self.assertEqual([e["type"] for e in events], ["init", "chunk", "chunk"])
        self.assertEqual(turn.state, TurnState.TIMED_OUT)
        self.assertEqual(self.saved, [(11, "ab", None)])

    async def test_disconnect_stops_forwarding_but_generation_is_saved(self):
        completer = FakeCompleter(fragments=["one ", "two ", "three"], delay=0.02)
        coordinator = StreamCoordinator(completer, self.persist)

        events = coordinator.start(self.turn())
        first = await events.__anext__()
        await events.aclose()
        await wait_idle(coordinator)

        self.assertEqual(first["type"], "init")
        self.assertEqual(self.saved, [(11, "one two three", None)])

    async def test_failure_after_disconnect_saves_partial_and_logs_undelivered_error(self):
        completer = FakeCompleter(fragments=["one ", "two ", "three"], fail_after=2, delay=0.02,
                                  error=RuntimeError("connection reset"))
        coordinator = StreamCoordinator(completer, self.persist)
        turn = self.turn()

        events = coordinator.start(turn)
        first = await events.__anext__()
        with self.assertLogs("knowledge_chat.streaming", level="WARNING") as logs:
            await events.aclose()
            await wait_idle(coordinator)

        self.assertEqual(first["type"], "init")
        self.assertEqual(turn.state, TurnState.FAILED)
        self.assertEqual(self.saved, [(11, "one two", None)])
        self.assertTrue(any("Could not deliver error event" in line for line in logs.output))
        self.assertEqual(coordinator.active_turns, 0)

    async def test_concurrency_is_bounded(self):
        running = []
        peak = []

        class CountingCompleter(FakeCompleter):
            async def complete_stream(self, prompt):
                running.append(prompt)
                peak.append(len(running))
                await asyncio.sleep(0.02)
                yield prompt
                running.remove(prompt)

        coordinator = StreamCoordinator(CountingCompleter(), self.persist, max_concurrent=2)
        turns = [Turn(session_id=1, user_message_id=i, assistant_message_id=100 + i, prompt=f"p{i}")
                 for i in range(5)]

        results = await asyncio.gather(*(collect(coordinator.start(t)) for t in turns))

        self.assertLessEqual(max(peak), 2)
        self.assertTrue(all(r[-1]["type"] == "done" for r in results))
        self.assertEqual(len(self.saved), 5)

    async def test_shutdown_cancels_in_flight_turns(self):
        completer = FakeCompleter(fragments=["x"] * 100, delay=0.05)
        coordinator = StreamCoordinator(completer, self.persist)

        events = coordinator.start(self.turn())
        await events.__anext__()
        await coordinator.shutdown()

        remaining = await collect(events)
        self.assertTrue(all(e["type"] == "chunk" for e in remaining))
        self.assertEqual(coordinator.active_turns, 0)


class TestSendMessageStream(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.engine, self.Session = make_session_factory(self.tmp.name)
        self.db = self.Session()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()
        self.tmp.cleanup()

    def build_service(self, completer):
        store = AttachmentStore(os.path.join(self.tmp.name, "uploads"), ["txt"])
        return ChatService(self.Session, None, completer, store, ChatSettings())

    async def test_streamed_turn_end_to_end(self):
        service = self.build_service(FakeCompleter(fragments=THINKING_FRAGMENTS))
        session = service.create_session(self.db)

        events = await service.send_message_stream(
            self.db, session.id, SendMessageRequest(message="hello", enable_rag=False))
        received = await collect(events)

        self.assertEqual([e["type"] for e in received].count("init"), 1)
        self.assertEqual([e["type"] for e in received].count("chunk"), 4)
        self.assertEqual(received[-1]["type"], "done")
        self.assertEqual((received[-1]["reasoning"], received[-1]["content"]), ("reasoning", "answer"))

        self.db.expire_all()
        assistant = self.db.get(ChatMessage, received[0]["assistant_message_id"])
        self.assertEqual(assistant.content, "answer")
        self.assertEqual(assistant.reasoning, "reasoning")
        stored = self.db.get(ChatSession, session.id)
        self.assertEqual(stored.message_count, 2)
        self.assertEqual(stored.title, "hello")

    async def test_messages_exist_before_streaming_starts(self):
        service = self.build_service(FakeCompleter(fragments=["late"], delay=0.05))
        session = service.create_session(self.db)

        events = await service.send_message_stream(
            self.db, session.id, SendMessageRequest(message="hi", enable_rag=False))

        rows = self.db.query(ChatMessage).filter(ChatMessage.session_id == session.id).order_by(ChatMessage.id).all()
        self.assertEqual([(m.role, m.content) for m in rows], [("user", "hi"), ("assistant", "")])
        await collect(events)

    async def test_generation_runs_even_if_events_are_never_read(self):
        service = self.build_service(FakeCompleter(fragments=["<think>r</think>", "final"], delay=0.01))
        session = service.create_session(self.db)

        events = await service.send_message_stream(
            self.db, session.id, SendMessageRequest(message="hi", enable_rag=False))
        self.assertEqual(service.coordinator.active_turns, 1)
        del events
        await wait_idle(service.coordinator)

        self.db.expire_all()
        rows = self.db.query(ChatMessage).filter(ChatMessage.session_id == session.id).order_by(ChatMessage.id).all()
        self.assertEqual([(m.role, m.content, m.reasoning) for m in rows],
                         [("user", "hi", None), ("assistant", "final", "r")])

    async def test_unknown_session_raises_before_streaming(self):
        service = self.build_service(FakeCompleter(fragments=["x"]))
        with self.assertRaises(NotFoundError):
            await service.send_message_stream(self.db, 404, SendMessageRequest(message="hi"))


if __name__ == "__main__":
    unittest.main()
