import logging
import os
import uuid
from datetime import date
from typing import List, Optional

from langchain_community.document_loaders import Docx2txtLoader, PyMuPDFLoader, TextLoader
from langchain_core.documents import Document

from knowledge_chat.errors import InvalidInputError, PersistenceFailureError
from knowledge_chat.stream_utils import truncate_text

logger = logging.getLogger(__name__)

PARSEABLE_TYPES = {"txt", "md", "pdf", "docx"}
TRUNCATION_MARKER = "...(内容已截断)"


def file_extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lstrip(".").lower()


class AttachmentStore:
    """Writes uploaded chat files to disk and extracts their text."""

    def __init__(self, upload_dir: str, allowed_types: List[str], max_chars: int = 10000):
        self.upload_dir = upload_dir
        self.allowed_types = {t.lower() for t in allowed_types}
        self.max_chars = max_chars

    def validate(self, filename: str, data: bytes) -> str:
        if not data:
            raise InvalidInputError("File must not be empty.", {"file_name": filename})
        ext = file_extension(filename)
        if ext not in self.allowed_types:
            raise InvalidInputError(f"Unsupported file type: {ext or '(none)'}",
                                    {"file_name": filename, "allowed": sorted(self.allowed_types)})
        return ext

    def save(self, data: bytes, ext: str) -> str:
        # uploads/chat/2024/01/<uuid>.<ext>
        target_dir = os.path.join(os.path.abspath(self.upload_dir), "chat", date.today().strftime("%Y/%m"))
        file_path = os.path.join(target_dir, f"{uuid.uuid4().hex}.{ext}")
        try:
            os.makedirs(target_dir, exist_ok=True)
            with open(file_path, "wb") as buffer:
                buffer.write(data)
        except OSError as e:
            raise PersistenceFailureError("Failed to save uploaded file.", {"path": file_path}) from e
        return file_path

    def parse(self, file_path: str, ext: str) -> Optional[str]:
        """Extract text for text-like types; None for anything else or on failure."""
        if ext not in PARSEABLE_TYPES:
            return None
        try:
            docs = self._load_file(file_path, ext)
        except Exception:
            logger.warning("Failed to parse attachment %s", file_path, exc_info=True)
            return None
        text = "\n".join(d.page_content for d in docs if d.page_content).strip()
        if not text:
            return None
        return truncate_text(text, limit=self.max_chars, marker=TRUNCATION_MARKER)

    def _load_file(self, path: str, ext: str) -> List[Document]:
        if ext == "pdf":
            loader = PyMuPDFLoader(path)
        elif ext == "docx":
            loader = Docx2txtLoader(path)
        else:
            loader = TextLoader(path, encoding="utf-8", autodetect_encoding=True)
        return loader.load()
