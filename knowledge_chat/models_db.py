import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship, validates

from knowledge_chat.database import Base
from knowledge_chat.errors import InvalidInputError

DEFAULT_SESSION_TITLE = "新对话"


class MessageRole(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ChatSession(Base):
    __tablename__ = "chat_sessions"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), default=DEFAULT_SESSION_TITLE, nullable=False)
    message_count = Column(Integer, default=0, nullable=False)
    last_message_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted = Column(Boolean, default=False, nullable=False)

    messages = relationship(
        "ChatMessage",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="ChatMessage.id",
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("chat_sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    role = Column(String(20), nullable=False)
    content = Column(Text, default="", nullable=False)
    reasoning = Column(Text, nullable=True)
    attachments = Column(JSON, nullable=True)  # [{"id": ..., "fileName": ...}]
    rag_context = Column(JSON, nullable=True)  # {"documents": [...], "nodes": [...]}
    created_at = Column(DateTime, default=datetime.utcnow)
    deleted = Column(Boolean, default=False, nullable=False)

    session = relationship("ChatSession", back_populates="messages")

    @validates("role")
    def validate_role(self, key, value):
        if isinstance(value, MessageRole):
            return value.value
        try:
            return MessageRole(value).value
        except ValueError:
            raise InvalidInputError(f"Invalid message role: {value!r}", {"role": value})


class ChatAttachment(Base):
    __tablename__ = "chat_attachments"

    id = Column(Integer, primary_key=True, index=True)
    file_name = Column(String(255), nullable=False)
    file_path = Column(String(1024), nullable=False)
    file_type = Column(String(20), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    parsed_content = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


# Populated by the ingestion pipeline; read-only here.

class Document(Base):
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    file_type = Column(String(20))
    summary = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    chunks = relationship("DocumentChunk", back_populates="document")


class DocumentChunk(Base):
    __tablename__ = "document_chunks"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(Integer, ForeignKey("documents.id"), index=True, nullable=False)
    chunk_index = Column(Integer, default=0)
    page_num = Column(Integer, nullable=True)
    content = Column(Text, nullable=False)

    document = relationship("Document", back_populates="chunks")


class KnowledgeNode(Base):
    __tablename__ = "knowledge_nodes"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    node_type = Column(String(50))
    description = Column(Text, nullable=True)
    properties = Column(Text, nullable=True)  # JSON object as text
    created_at = Column(DateTime, default=datetime.utcnow)


class KnowledgeRelation(Base):
    __tablename__ = "knowledge_relations"

    id = Column(Integer, primary_key=True, index=True)
    source_node_id = Column(Integer, ForeignKey("knowledge_nodes.id"), index=True, nullable=False)
    target_node_id = Column(Integer, ForeignKey("knowledge_nodes.id"), index=True, nullable=False)
    relation_type = Column(String(50))
    name = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow)
