import logging
import os
import time
from contextlib import asynccontextmanager
from typing import List

from dotenv import load_dotenv

# Load env vars before importing app modules that use them
load_dotenv()

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session as DBSession

from knowledge_chat.attachments import AttachmentStore
from knowledge_chat.chat_service import ChatService, attachment_out
from knowledge_chat.config import ChatSettings, LLMSettings, StorageSettings
from knowledge_chat.database import Base, SessionLocal, engine, get_db
from knowledge_chat.errors import KnowledgeChatError
from knowledge_chat.logging_config import configure_logging
from knowledge_chat.models import (
    AttachmentOut,
    MessageOut,
    RagResult,
    RenameSessionRequest,
    SearchRequest,
    SendMessageRequest,
    SendMessageResponse,
    SessionOut,
)
from knowledge_chat.providers import (
    CompletionProvider,
    EmbeddingProvider,
    build_chat_model,
    build_embeddings,
)
from knowledge_chat.rag_engine import RetrievalOrchestrator
from knowledge_chat.sse import sse_frames
from knowledge_chat.vector_index import VectorIndexGateway

configure_logging()
logger = logging.getLogger(__name__)

storage_settings = StorageSettings.from_env(os.environ)
chat_settings = ChatSettings.from_env(os.environ)

vector_index = VectorIndexGateway.persistent(
    storage_settings.chroma_path,
    storage_settings.collection_name,
    storage_settings.vector_dimension,
)
retriever = RetrievalOrchestrator(EmbeddingProvider(build_embeddings(os.environ)), vector_index)
chat_service = ChatService(
    session_factory=SessionLocal,
    retriever=retriever,
    completer=CompletionProvider(build_chat_model(LLMSettings.from_env(os.environ))),
    attachment_store=AttachmentStore(
        storage_settings.upload_dir,
        storage_settings.allowed_file_types,
        chat_settings.attachment_max_chars,
    ),
    settings=chat_settings,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    vector_index.initialize()
    yield
    await chat_service.coordinator.shutdown()


app = FastAPI(title="Knowledge Chat", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(KnowledgeChatError)
async def handle_app_error(request: Request, exc: KnowledgeChatError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.__class__.__name__, "context": exc.details},
    )


@app.post("/sessions", response_model=SessionOut)
async def create_session(db: DBSession = Depends(get_db)):
    return chat_service.create_session(db)


@app.get("/sessions", response_model=List[SessionOut])
async def list_sessions(db: DBSession = Depends(get_db)):
    return chat_service.list_sessions(db)


@app.put("/sessions/{session_id}/title", response_model=SessionOut)
async def rename_session(session_id: int, request: RenameSessionRequest, db: DBSession = Depends(get_db)):
    return chat_service.rename_session(db, session_id, request.title)


@app.delete("/sessions/{session_id}")
async def delete_session(session_id: int, db: DBSession = Depends(get_db)):
    return {"deleted": chat_service.delete_session(db, session_id)}


@app.get("/sessions/{session_id}/messages", response_model=List[MessageOut])
async def get_messages(session_id: int, db: DBSession = Depends(get_db)):
    return chat_service.get_messages(db, session_id)


@app.post("/sessions/{session_id}/messages", response_model=SendMessageResponse)
async def send_message(session_id: int, request: SendMessageRequest, db: DBSession = Depends(get_db)):
    return await chat_service.send_message(db, session_id, request)


@app.post("/sessions/{session_id}/messages/stream")
async def send_message_stream(session_id: int, request: SendMessageRequest, db: DBSession = Depends(get_db)):
    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    events = await chat_service.send_message_stream(db, session_id, request)
    return StreamingResponse(sse_frames(events), media_type="text/event-stream", headers=headers)


@app.post("/attachments", response_model=AttachmentOut)
async def upload_attachment(file: UploadFile = File(...), db: DBSession = Depends(get_db)):
    data = await file.read()
    attachment = chat_service.upload_attachment(db, file.filename or "", data)
    return attachment_out(attachment)


@app.post("/search", response_model=RagResult)
async def search_knowledge(request: SearchRequest, db: DBSession = Depends(get_db)):
    """Test retrieval against the indexed chunks and nodes."""
    start_time = time.time()
    k = max(1, min(request.k, 20))  # Clamp between 1 and 20
    result = await retriever.search(db, request.query, k)
    logger.info("Search took %.2f ms", (time.time() - start_time) * 1000)
    return result


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
