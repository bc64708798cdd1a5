"""
Streaming Generation Coordinator.

A turn moves Initiated -> Streaming -> Completed | Failed | TimedOut. Each
turn runs in its own asyncio task and feeds events to the subscriber through
a per-turn queue:

    init   -> message ids and retrieval result, before any text
    chunk  -> one fragment as produced by the model
    done   -> final content and reasoning, after the assistant row is saved
    error  -> upstream or persistence failure

``done``/``error`` is always the last event. A timed out turn ends without a
terminal event. If the subscriber goes away, forwarding stops but the
generation runs on and its result is still saved.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

from knowledge_chat.errors import PersistenceFailureError
from knowledge_chat.models import RagResult
from knowledge_chat.providers import CompletionProvider
from knowledge_chat.stream_utils import split_reasoning

logger = logging.getLogger(__name__)

# (assistant_message_id, content, reasoning) -> None
PersistFn = Callable[[int, str, Optional[str]], None]


class TurnState(str, enum.Enum):
    INITIATED = "initiated"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class Turn:
    session_id: int
    user_message_id: int
    assistant_message_id: int
    prompt: str
    rag_result: Optional[RagResult] = None
    state: TurnState = TurnState.INITIATED
    fragments: List[str] = field(default_factory=list)

    def init_event(self) -> Dict[str, Any]:
        event = {
            "type": "init",
            "user_message_id": self.user_message_id,
            "assistant_message_id": self.assistant_message_id,
        }
        if self.rag_result is not None:
            event["rag_documents"] = [d.model_dump() for d in self.rag_result.documents]
            event["rag_nodes"] = [n.model_dump() for n in self.rag_result.nodes]
        return event


class _Subscriber:
    """Queue-backed event sink. Sends after close are dropped."""

    _END = object()

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def send(self, event: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        self.queue.put_nowait(event)
        return True

    def finish(self) -> None:
        if not self.closed:
            self.queue.put_nowait(self._END)

    def close(self) -> None:
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            event = await self.queue.get()
            if event is self._END:
                return
            yield event


class StreamCoordinator:
    def __init__(
        self,
        completer: CompletionProvider,
        persist: PersistFn,
        turn_timeout: float = 300.0,
        max_concurrent: int = 16,
    ):
        self.completer = completer
        self.persist = persist
        self.turn_timeout = turn_timeout
        self._slots = asyncio.Semaphore(max_concurrent)
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_turns(self) -> int:
        return len(self._tasks)

    def start(self, turn: Turn) -> AsyncIterator[Dict[str, Any]]:
        """Schedule the turn now and return an iterator over its events.

        Generation does not wait for the iterator to be consumed.
        """
        subscriber = _Subscriber()
        task = asyncio.create_task(self._run(turn, subscriber), name=f"turn-{turn.assistant_message_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return self._forward(turn, task, subscriber)

    async def _forward(
        self, turn: Turn, task: asyncio.Task, subscriber: _Subscriber
    ) -> AsyncIterator[Dict[str, Any]]:
        try:
            async for event in subscriber.events():
                yield event
        finally:
            if not task.done():
                logger.info("Subscriber left turn %s early; generation continues", turn.assistant_message_id)
            subscriber.close()

    async def _run(self, turn: Turn, subscriber: _Subscriber) -> None:
        try:
            subscriber.send(turn.init_event())
            async with asyncio.timeout(self.turn_timeout):
                async with self._slots:
                    turn.state = TurnState.STREAMING
                    async for fragment in self.completer.complete_stream(turn.prompt):
                        turn.fragments.append(fragment)
                        subscriber.send({"type": "chunk", "content": fragment})

                    reasoning, content = split_reasoning("".join(turn.fragments))
                    await asyncio.to_thread(self.persist, turn.assistant_message_id, content, reasoning)
                    turn.state = TurnState.COMPLETED
                    subscriber.send({
                        "type": "done",
                        "assistant_message_id": turn.assistant_message_id,
                        "reasoning": reasoning,
                        "content": content,
                    })
            logger.info("Stream completed, session_id=%s, assistant_message_id=%s",
                        turn.session_id, turn.assistant_message_id)
        except asyncio.TimeoutError:
            turn.state = TurnState.TIMED_OUT
            logger.warning("Stream timed out after %ss, session_id=%s, assistant_message_id=%s",
                           self.turn_timeout, turn.session_id, turn.assistant_message_id)
            await self._save_partial(turn)
        except Exception as e:
            turn.state = TurnState.FAILED
            logger.error("Stream failed, session_id=%s, assistant_message_id=%s",
                         turn.session_id, turn.assistant_message_id, exc_info=True)
            if not isinstance(e, PersistenceFailureError):
                await self._save_partial(turn)
            if not subscriber.send({"type": "error", "message": str(e) or e.__class__.__name__}):
                logger.warning("Could not deliver error event for turn %s: subscriber gone",
                               turn.assistant_message_id)
        finally:
            subscriber.finish()

    async def _save_partial(self, turn: Turn) -> None:
        # Whatever was produced so far stays on the assistant row.
        if not turn.fragments:
            return
        reasoning, content = split_reasoning("".join(turn.fragments))
        try:
            await asyncio.to_thread(self.persist, turn.assistant_message_id, content, reasoning)
        except Exception:
            logger.error("Failed to save partial content for message %s",
                         turn.assistant_message_id, exc_info=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Cancelled %d in-flight turns", len(tasks))
