from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

RecordType = Literal["chunk", "node"]


class RetrievalHit(BaseModel):
    business_id: int
    record_type: RecordType
    score: float


class RagDocument(BaseModel):
    id: int
    chunk_id: int
    name: str
    file_type: Optional[str] = None
    page_num: Optional[int] = None
    summary: Optional[str] = None
    score: float
    matched_content: Optional[str] = None


class RagRelation(BaseModel):
    name: Optional[str] = None
    relation_type: Optional[str] = None
    target_node_id: int
    target_node_name: str


class RagNode(BaseModel):
    id: int
    name: str
    node_type: Optional[str] = None
    description: Optional[str] = None
    score: float
    properties: Optional[Dict[str, Any]] = None
    relations: List[RagRelation] = Field(default_factory=list)


class RagResult(BaseModel):
    documents: List[RagDocument] = Field(default_factory=list)
    nodes: List[RagNode] = Field(default_factory=list)
    context_prompt: str = ""


# API models

class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    message_count: int
    last_message_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class RenameSessionRequest(BaseModel):
    title: str


class AttachmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    file_name: str
    file_type: str
    file_size: int
    has_content: bool = False
    created_at: Optional[datetime] = None


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    session_id: int
    role: str
    content: str
    reasoning: Optional[str] = None
    attachments: Optional[List[AttachmentOut]] = None
    rag_documents: Optional[List[RagDocument]] = None
    rag_nodes: Optional[List[RagNode]] = None
    created_at: Optional[datetime] = None


class SendMessageRequest(BaseModel):
    message: str = Field(min_length=1)
    enable_rag: bool = True
    attachment_ids: List[int] = Field(default_factory=list)


class SendMessageResponse(BaseModel):
    user_message: MessageOut
    assistant_message: MessageOut
    rag_documents: Optional[List[RagDocument]] = None
    rag_nodes: Optional[List[RagNode]] = None


class SearchRequest(BaseModel):
    query: str
    k: int = 5
