from dataclasses import dataclass, field
from typing import List, Literal, Mapping, Optional

EmbeddingProvider = Literal["google", "openai"]

DEFAULT_ALLOWED_FILE_TYPES = ["txt", "md", "pdf", "docx", "png", "jpg", "jpeg"]


def _clean(env: Mapping[str, str], key: str) -> str:
    return (env.get(key) or "").strip()


def resolve_int(env: Mapping[str, str], key: str, default: int, minimum: int = 0) -> int:
    """Read a non-negative integer, falling back on blank or malformed values."""
    raw_value = _clean(env, key)
    if not raw_value:
        return default
    try:
        value = int(raw_value)
    except ValueError:
        return default
    return value if value >= minimum else default


def resolve_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw_value = _clean(env, key)
    if not raw_value:
        return default
    try:
        value = float(raw_value)
    except ValueError:
        return default
    return value if value >= 0 else default


def resolve_embedding_provider(env: Mapping[str, str]) -> EmbeddingProvider:
    """Determine which embedding provider to use based on env vars."""
    if _clean(env, "EMBEDDING_PROVIDER").lower() == "openai":
        return "openai"
    return "google"


def resolve_embedding_model(env: Mapping[str, str]) -> str:
    """Resolve the embedding model name based on provider."""
    if resolve_embedding_provider(env) == "openai":
        return _clean(env, "OPENAI_EMBEDDING_MODEL") or "text-embedding-3-small"

    raw_value = _clean(env, "GOOGLE_EMBEDDING_MODEL")
    if not raw_value:
        return "models/gemini-embedding-001"
    if raw_value.startswith("models/"):
        return raw_value
    return f"models/{raw_value}"


def resolve_embedding_dimensions(env: Mapping[str, str]) -> Optional[int]:
    """Requested output dimensionality for the embedding model, if any."""
    if resolve_embedding_provider(env) == "openai":
        key = "OPENAI_EMBEDDING_DIMENSIONS"
    else:
        key = "GOOGLE_EMBEDDING_DIMENSIONS"
    value = resolve_int(env, key, default=0, minimum=1)
    return value or None


def resolve_allowed_file_types(env: Mapping[str, str]) -> List[str]:
    raw_value = _clean(env, "ALLOWED_FILE_TYPES")
    if not raw_value:
        return list(DEFAULT_ALLOWED_FILE_TYPES)
    types = [part.strip().lower().lstrip(".") for part in raw_value.split(",")]
    return [t for t in types if t] or list(DEFAULT_ALLOWED_FILE_TYPES)


@dataclass
class LLMSettings:
    api_key: Optional[str] = None
    model: str = "deepseek-chat"
    base_url: str = "https://api.deepseek.com"
    temperature: float = 0.0

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "LLMSettings":
        return cls(
            api_key=_clean(env, "DEEPSEEK_API_KEY") or None,
            model=_clean(env, "LLM_MODEL") or cls.model,
            base_url=_clean(env, "LLM_BASE_URL") or cls.base_url,
            temperature=resolve_float(env, "LLM_TEMPERATURE", cls.temperature),
        )


@dataclass
class StorageSettings:
    database_url: str = "sqlite:///./knowledge_chat.db"
    chroma_path: str = "chroma_data"
    collection_name: str = "knowledge_vectors"
    vector_dimension: int = 1024
    upload_dir: str = "uploads"
    allowed_file_types: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_FILE_TYPES))

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "StorageSettings":
        return cls(
            database_url=_clean(env, "DATABASE_URL") or cls.database_url,
            chroma_path=_clean(env, "CHROMA_PATH") or cls.chroma_path,
            collection_name=_clean(env, "VECTOR_COLLECTION") or cls.collection_name,
            vector_dimension=resolve_int(env, "VECTOR_DIMENSION", cls.vector_dimension, minimum=1),
            upload_dir=_clean(env, "UPLOAD_DIR") or cls.upload_dir,
            allowed_file_types=resolve_allowed_file_types(env),
        )


@dataclass
class ChatSettings:
    rag_top_k: int = 5
    history_window: int = 10
    history_max_chars: int = 500
    attachment_max_chars: int = 10000
    title_max_chars: int = 30
    stream_timeout_seconds: float = 300.0
    max_concurrent_streams: int = 16

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "ChatSettings":
        return cls(
            rag_top_k=resolve_int(env, "RAG_TOP_K", cls.rag_top_k),
            history_window=resolve_int(env, "HISTORY_WINDOW", cls.history_window),
            history_max_chars=resolve_int(env, "HISTORY_MAX_CHARS", cls.history_max_chars, minimum=1),
            attachment_max_chars=resolve_int(env, "ATTACHMENT_MAX_CHARS", cls.attachment_max_chars, minimum=1),
            title_max_chars=resolve_int(env, "TITLE_MAX_CHARS", cls.title_max_chars, minimum=1),
            stream_timeout_seconds=resolve_float(env, "STREAM_TIMEOUT_SECONDS", cls.stream_timeout_seconds),
            max_concurrent_streams=resolve_int(env, "MAX_CONCURRENT_STREAMS", cls.max_concurrent_streams, minimum=1),
        )
