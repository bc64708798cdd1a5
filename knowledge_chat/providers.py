import logging
from typing import Any, AsyncIterator, List, Mapping, Optional, cast

from langchain_core.embeddings import Embeddings
from langchain_core.language_models import BaseChatModel
from langchain_google_genai import GoogleGenerativeAIEmbeddings
from langchain_openai import ChatOpenAI, OpenAIEmbeddings
from langsmith import traceable

from knowledge_chat.config import (
    LLMSettings,
    resolve_embedding_dimensions,
    resolve_embedding_model,
    resolve_embedding_provider,
)
from knowledge_chat.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)


def build_embeddings(env: Mapping[str, str]) -> Optional[Embeddings]:
    provider = resolve_embedding_provider(env)
    model_name = resolve_embedding_model(env)
    dimensions = resolve_embedding_dimensions(env)
    logger.info("Embedding provider: %s, model: %s, dimensions: %s", provider, model_name, dimensions)

    if provider == "openai" and env.get("OPENAI_API_KEY"):
        kwargs = {"model": model_name}
        if dimensions:
            kwargs["dimensions"] = dimensions
        return OpenAIEmbeddings(**kwargs)
    if provider == "google" and env.get("GOOGLE_API_KEY"):
        return GoogleGenerativeAIEmbeddings(model=model_name, output_dimensionality=dimensions)

    logger.warning("No embedding provider configured (provider=%s); retrieval will be empty", provider)
    return None


def build_chat_model(settings: LLMSettings) -> Optional[BaseChatModel]:
    if not settings.api_key:
        logger.warning("DEEPSEEK_API_KEY is not set; completions are unavailable")
        return None
    return ChatOpenAI(
        model=settings.model,
        api_key=cast(Any, settings.api_key),
        base_url=settings.base_url,
        temperature=settings.temperature,
    )


class EmbeddingProvider:
    """Turns a query into one fixed-length vector."""

    def __init__(self, embeddings: Optional[Embeddings]):
        self.embeddings = embeddings

    async def embed(self, text: str) -> List[float]:
        if self.embeddings is None:
            raise UpstreamUnavailableError("Embedding model not configured.")
        try:
            return list(await self.embeddings.aembed_query(text))
        except Exception as e:
            raise UpstreamUnavailableError(f"Embedding request failed: {e}") from e


class CompletionProvider:
    """Synchronous and streaming completions over a langchain chat model."""

    def __init__(self, llm: Optional[BaseChatModel]):
        self.llm = llm

    def _require_llm(self) -> BaseChatModel:
        if self.llm is None:
            raise UpstreamUnavailableError("LLM not configured. Please set DEEPSEEK_API_KEY.")
        return self.llm

    @traceable(name="Chat Completion", run_type="llm")
    async def complete(self, prompt: str) -> str:
        result = await self._require_llm().ainvoke(prompt)
        return _text_of(result)

    async def complete_stream(self, prompt: str) -> AsyncIterator[str]:
        llm = self._require_llm()
        async for chunk in llm.astream(prompt):
            text = _text_of(chunk)
            if text:
                yield text


def _text_of(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    # Some providers return a list of content blocks.
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
        return "".join(parts)
    return str(content) if content is not None else ""
