"""
Conversation State Manager.

Owns sessions, messages and attachments, and assembles each turn:

1. resolve the session and any attachments
2. retrieve grounding context (optional)
3. build the prompt: history window, retrieval context, graph facts, attachments
4. persist user message, assistant placeholder, count and title in one
   transaction, serialised per session
5. generate, synchronously or through the stream coordinator
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from knowledge_chat.attachments import AttachmentStore
from knowledge_chat.config import ChatSettings
from knowledge_chat.errors import (
    InvalidInputError,
    NotFoundError,
    PersistenceFailureError,
    UpstreamUnavailableError,
)
from knowledge_chat.models import (
    AttachmentOut,
    MessageOut,
    RagDocument,
    RagNode,
    RagResult,
    SendMessageRequest,
    SendMessageResponse,
)
from knowledge_chat.models_db import (
    ChatAttachment,
    ChatMessage,
    ChatSession,
    MessageRole,
)
from knowledge_chat.providers import CompletionProvider
from knowledge_chat.rag_engine import RetrievalOrchestrator, render_graph_context
from knowledge_chat.stream_utils import split_reasoning, truncate_text
from knowledge_chat.streaming import StreamCoordinator, Turn

logger = logging.getLogger(__name__)

HISTORY_HEADER = "【历史对话】"
ATTACHMENT_HEADER = "【附件内容】"
SERVICE_UNAVAILABLE = "服务暂时不可用，请稍后重试"
ROLE_LABELS = {MessageRole.USER.value: "用户", MessageRole.ASSISTANT.value: "助手"}


@dataclass
class _Draft:
    """Everything a turn needs before anything is written."""

    session: ChatSession
    message: str
    prompt: str
    attachments: List[ChatAttachment]
    rag_result: Optional[RagResult]


class ChatService:
    def __init__(
        self,
        session_factory: Callable[[], DBSession],
        retriever: Optional[RetrievalOrchestrator],
        completer: CompletionProvider,
        attachment_store: AttachmentStore,
        settings: Optional[ChatSettings] = None,
    ):
        self.session_factory = session_factory
        self.retriever = retriever
        self.completer = completer
        self.attachment_store = attachment_store
        self.settings = settings or ChatSettings()
        self.coordinator = StreamCoordinator(
            completer,
            persist=self.finalize_assistant_message,
            turn_timeout=self.settings.stream_timeout_seconds,
            max_concurrent=self.settings.max_concurrent_streams,
        )
        self._session_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    # Sessions

    def create_session(self, db: DBSession) -> ChatSession:
        session = ChatSession(message_count=0)
        db.add(session)
        self._commit(db, "create session")
        logger.info("Created chat session, session_id=%s", session.id)
        return session

    def list_sessions(self, db: DBSession) -> List[ChatSession]:
        activity = func.coalesce(ChatSession.last_message_at, ChatSession.created_at)
        return (
            db.query(ChatSession)
            .filter(ChatSession.deleted.is_(False))
            .order_by(activity.desc(), ChatSession.id.desc())
            .all()
        )

    def get_session(self, db: DBSession, session_id: int) -> ChatSession:
        session = db.get(ChatSession, session_id)
        if session is None or session.deleted:
            raise NotFoundError("Session not found.", {"session_id": session_id})
        return session

    def rename_session(self, db: DBSession, session_id: int, title: str) -> ChatSession:
        title = (title or "").strip()
        if not title:
            raise InvalidInputError("Title must not be empty.", {"session_id": session_id})
        session = self.get_session(db, session_id)
        session.title = title[:255]
        self._commit(db, "rename session")
        return session

    def delete_session(self, db: DBSession, session_id: int) -> bool:
        session = self.get_session(db, session_id)
        session.deleted = True
        (
            db.query(ChatMessage)
            .filter(ChatMessage.session_id == session_id)
            .update({ChatMessage.deleted: True}, synchronize_session=False)
        )
        self._commit(db, "delete session")
        logger.info("Deleted chat session, session_id=%s", session_id)
        return True

    # Messages

    def get_messages(self, db: DBSession, session_id: int) -> List[MessageOut]:
        self.get_session(db, session_id)
        messages = (
            db.query(ChatMessage)
            .filter(ChatMessage.session_id == session_id, ChatMessage.deleted.is_(False))
            .order_by(ChatMessage.created_at, ChatMessage.id)
            .all()
        )
        return [self._message_out(db, m) for m in messages]

    def recent_history(self, db: DBSession, session_id: int) -> List[ChatMessage]:
        """The last N messages of a session, oldest first."""
        window = self.settings.history_window
        if window <= 0:
            return []
        recent = (
            db.query(ChatMessage)
            .filter(ChatMessage.session_id == session_id, ChatMessage.deleted.is_(False))
            .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
            .limit(window)
            .all()
        )
        return list(reversed(recent))

    def build_history_context(self, history: Sequence[ChatMessage]) -> str:
        if not history:
            return ""
        lines = [HISTORY_HEADER]
        for msg in history:
            content = truncate_text(msg.content or "", limit=self.settings.history_max_chars)
            role = msg.role.value if isinstance(msg.role, MessageRole) else msg.role
            lines.append(f"{ROLE_LABELS.get(role, role)}: {content}")
        return "\n".join(lines) + "\n"

    # Attachments

    def upload_attachment(self, db: DBSession, filename: str, data: bytes) -> ChatAttachment:
        store = self.attachment_store
        ext = store.validate(filename, data)
        file_path = store.save(data, ext)
        attachment = ChatAttachment(
            file_name=filename,
            file_path=file_path,
            file_type=ext,
            file_size=len(data),
            parsed_content=store.parse(file_path, ext),
        )
        db.add(attachment)
        try:
            self._commit(db, "save attachment")
        except PersistenceFailureError:
            logger.error("Attachment file %s written but its record was not saved", file_path)
            raise
        logger.info("Uploaded chat attachment, attachment_id=%s, file_name=%s", attachment.id, filename)
        return attachment

    def get_attachment(self, db: DBSession, attachment_id: int) -> ChatAttachment:
        attachment = db.get(ChatAttachment, attachment_id)
        if attachment is None:
            raise NotFoundError("Attachment not found.", {"attachment_id": attachment_id})
        return attachment

    def resolve_attachments(self, db: DBSession, attachment_ids: Sequence[int]) -> List[ChatAttachment]:
        if not attachment_ids:
            return []
        ids = list(dict.fromkeys(attachment_ids))
        found = {a.id: a for a in db.query(ChatAttachment).filter(ChatAttachment.id.in_(ids)).all()}
        missing = [i for i in ids if i not in found]
        if missing:
            raise NotFoundError("Attachment not found.", {"attachment_ids": missing})
        return [found[i] for i in ids]

    @staticmethod
    def build_attachment_context(attachments: Sequence[ChatAttachment]) -> str:
        blocks = [
            f"文件「{a.file_name}」内容:\n{a.parsed_content}\n"
            for a in attachments
            if a.parsed_content and a.parsed_content.strip()
        ]
        return "\n".join(blocks)

    # Turns

    async def send_message(self, db: DBSession, session_id: int, request: SendMessageRequest) -> SendMessageResponse:
        draft = await self._draft_turn(db, session_id, request)
        user_msg, assistant_msg = await self._persist_turn(db, draft)

        try:
            answer = await self.completer.complete(draft.prompt)
        except Exception as e:
            logger.error("Completion failed, session_id=%s", session_id, exc_info=True)
            raise UpstreamUnavailableError(SERVICE_UNAVAILABLE, {"session_id": session_id}) from e

        reasoning, content = split_reasoning(answer)
        assistant_msg = self._apply_answer(db, assistant_msg.id, content, reasoning)
        logger.info("Message sent, session_id=%s, user_message_id=%s, assistant_message_id=%s",
                    session_id, user_msg.id, assistant_msg.id)

        rag = draft.rag_result
        return SendMessageResponse(
            user_message=self._message_out(db, user_msg, draft.attachments),
            assistant_message=self._message_out(db, assistant_msg),
            rag_documents=rag.documents if rag else None,
            rag_nodes=rag.nodes if rag else None,
        )

    async def send_message_stream(
        self, db: DBSession, session_id: int, request: SendMessageRequest
    ) -> AsyncIterator[Dict[str, Any]]:
        """Persist the turn, then hand generation to the coordinator.

        Validation errors are raised here, before any event is produced.
        """
        draft = await self._draft_turn(db, session_id, request)
        user_msg, assistant_msg = await self._persist_turn(db, draft)
        turn = Turn(
            session_id=session_id,
            user_message_id=user_msg.id,
            assistant_message_id=assistant_msg.id,
            prompt=draft.prompt,
            rag_result=draft.rag_result,
        )
        return self.coordinator.start(turn)

    async def _draft_turn(self, db: DBSession, session_id: int, request: SendMessageRequest) -> _Draft:
        session = self.get_session(db, session_id)
        message = request.message
        attachments = self.resolve_attachments(db, request.attachment_ids)

        rag_result = None
        prompt = message
        if request.enable_rag and self.retriever is not None:
            rag_result = await self.retriever.search(db, message, self.settings.rag_top_k)
            if rag_result.context_prompt.strip():
                prompt = rag_result.context_prompt
            graph_context = render_graph_context(rag_result.nodes)
            if graph_context:
                prompt = f"{prompt}\n\n{graph_context}"

        attachment_context = self.build_attachment_context(attachments)
        if attachment_context:
            prompt = f"{prompt}\n\n{ATTACHMENT_HEADER}\n{attachment_context}"

        history_context = self.build_history_context(self.recent_history(db, session_id))
        if history_context:
            prompt = f"{history_context}\n\n{prompt}"

        return _Draft(session=session, message=message, prompt=prompt,
                      attachments=attachments, rag_result=rag_result)

    def _session_lock(self, session_id: int) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock

    async def _persist_turn(self, db: DBSession, draft: _Draft):
        async with self._session_lock(draft.session.id):
            try:
                return await asyncio.to_thread(self._write_turn, db, draft)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Failed to save turn, session_id=%s", draft.session.id, exc_info=True)
                raise PersistenceFailureError("Failed to save turn.", {"session_id": draft.session.id}) from e

    def _write_turn(self, db: DBSession, draft: _Draft):
        session = draft.session
        db.refresh(session)
        count_before = session.message_count or 0
        now = datetime.utcnow()

        user_msg = ChatMessage(session_id=session.id, role=MessageRole.USER, content=draft.message)
        if draft.attachments:
            user_msg.attachments = [{"id": a.id, "fileName": a.file_name} for a in draft.attachments]
        db.add(user_msg)
        db.flush()

        assistant_msg = ChatMessage(session_id=session.id, role=MessageRole.ASSISTANT, content="")
        if draft.rag_result is not None:
            assistant_msg.rag_context = {
                "documents": [d.model_dump() for d in draft.rag_result.documents],
                "nodes": [n.model_dump() for n in draft.rag_result.nodes],
            }
        db.add(assistant_msg)
        db.flush()

        session.message_count = count_before + 2
        session.last_message_at = now
        if count_before == 0:
            session.title = truncate_text(draft.message, limit=self.settings.title_max_chars)
        self._commit(db, "save turn")
        return user_msg, assistant_msg

    def _apply_answer(self, db: DBSession, message_id: int, content: str, reasoning: Optional[str]) -> ChatMessage:
        message = db.get(ChatMessage, message_id)
        if message is None:
            raise NotFoundError("Message not found.", {"message_id": message_id})
        message.content = content
        message.reasoning = reasoning
        self._commit(db, "save assistant message")
        return message

    def finalize_assistant_message(self, message_id: int, content: str, reasoning: Optional[str]) -> None:
        """Write the final answer of a streamed turn in a session of its own."""
        db = self.session_factory()
        try:
            self._apply_answer(db, message_id, content, reasoning)
        finally:
            db.close()

    # Helpers

    @staticmethod
    def _commit(db: DBSession, action: str) -> None:
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to %s", action, exc_info=True)
            raise PersistenceFailureError(f"Failed to {action}.") from e

    def _message_out(
        self, db: DBSession, message: ChatMessage, attachments: Optional[List[ChatAttachment]] = None
    ) -> MessageOut:
        out = MessageOut(
            id=message.id,
            session_id=message.session_id,
            role=message.role,
            content=message.content or "",
            reasoning=message.reasoning,
            created_at=message.created_at,
        )

        if attachments is None and message.attachments:
            try:
                ids = [int(ref["id"]) for ref in message.attachments]
                attachments = db.query(ChatAttachment).filter(ChatAttachment.id.in_(ids)).all()
            except (KeyError, TypeError, ValueError):
                logger.warning("Malformed attachment references on message %s", message.id)
        if attachments:
            out.attachments = [attachment_out(a) for a in attachments]

        if message.rag_context:
            try:
                out.rag_documents = [RagDocument(**d) for d in message.rag_context.get("documents") or []]
                out.rag_nodes = [RagNode(**n) for n in message.rag_context.get("nodes") or []]
            except (AttributeError, TypeError, ValueError):
                logger.warning("Malformed retrieval context on message %s", message.id)
        return out


def attachment_out(attachment: ChatAttachment) -> AttachmentOut:
    return AttachmentOut(
        id=attachment.id,
        file_name=attachment.file_name,
        file_type=attachment.file_type,
        file_size=attachment.file_size,
        has_content=bool(attachment.parsed_content),
        created_at=attachment.created_at,
    )
