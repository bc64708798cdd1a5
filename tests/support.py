import asyncio
import os
import sys
from typing import Dict, List, Optional

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sqlalchemy.orm import sessionmaker

from knowledge_chat import models_db  # noqa: F401
from knowledge_chat.database import Base, build_engine
from knowledge_chat.errors import UpstreamUnavailableError
from knowledge_chat.models import RetrievalHit


def make_session_factory(directory: str):
    engine = build_engine(f"sqlite:///{os.path.join(directory, 'test.db')}")
    Base.metadata.create_all(bind=engine)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class FakeCompleter:
    """Completion provider with scripted output."""

    def __init__(self, answer: str = "", fragments: Optional[List[str]] = None,
                 error: Optional[Exception] = None, fail_after: Optional[int] = None,
                 delay: float = 0.0):
        self.answer = answer
        self.fragments = fragments or []
        self.error = error
        self.fail_after = fail_after
        self.delay = delay
        self.prompts: List[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.answer

    async def complete_stream(self, prompt: str):
        self.prompts.append(prompt)
        for i, fragment in enumerate(self.fragments):
            if self.fail_after is not None and i == self.fail_after:
                raise self.error or RuntimeError("upstream closed")
            if self.delay:
                await asyncio.sleep(self.delay)
            yield fragment
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise self.error or RuntimeError("upstream closed")


class FakeVectorIndex:
    def __init__(self, hits: Optional[Dict[str, List[RetrievalHit]]] = None, failing=()):
        self.hits = hits or {}
        self.failing = set(failing)
        self.calls = []

    def search(self, vector, top_k, record_type):
        self.calls.append((len(vector), top_k, record_type))
        if record_type in self.failing:
            raise RuntimeError("index offline")
        return list(self.hits.get(record_type, []))[:max(top_k, 0)]


class FailingEmbedder:
    async def embed(self, text: str):
        raise UpstreamUnavailableError("Embedding model not configured.")


def hit(business_id: int, record_type: str, score: float) -> RetrievalHit:
    return RetrievalHit(business_id=business_id, record_type=record_type, score=score)
