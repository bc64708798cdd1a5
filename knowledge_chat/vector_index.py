"""
Vector Index Gateway.

Chunk and node embeddings share one Chroma collection. Every record carries
its business id and a ``type`` metadata field, and every search is filtered
on that field so the two record kinds never mix.
"""

import logging
import uuid
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import chromadb

from knowledge_chat.errors import InvalidInputError, UpstreamUnavailableError
from knowledge_chat.models import RetrievalHit

logger = logging.getLogger(__name__)

RECORD_TYPES = ("chunk", "node")

FIELD_BUSINESS_ID = "business_id"
FIELD_TYPE = "type"


class VectorIndexGateway:
    def __init__(self, client: Any, collection_name: str, dimension: int, path: Optional[str] = None):
        self.client = client
        self.path = path
        self.collection_name = collection_name
        self.dimension = dimension
        self._collection = None

    @classmethod
    def persistent(cls, path: str, collection_name: str, dimension: int) -> "VectorIndexGateway":
        return cls(None, collection_name, dimension, path=path)

    @property
    def ready(self) -> bool:
        return self._collection is not None

    def initialize(self) -> bool:
        """Get or create the collection. Failure leaves the gateway degraded."""
        try:
            if self.client is None:
                self.client = chromadb.PersistentClient(path=self.path)
            self._collection = self.client.get_or_create_collection(
                name=self.collection_name,
                metadata={"hnsw:space": "cosine", "description": "knowledge graph vectors"},
            )
        except Exception:
            logger.warning("Vector collection %s could not be initialized; retrieval is degraded",
                           self.collection_name, exc_info=True)
            self._collection = None
            return False
        logger.info("Vector collection %s ready (%d records)", self.collection_name, self._collection.count())
        return True

    def _require_collection(self):
        if self._collection is None:
            raise UpstreamUnavailableError("Vector index is not available.",
                                           {"collection": self.collection_name})
        return self._collection

    def _check(self, vector: Sequence[float], record_type: str) -> None:
        if record_type not in RECORD_TYPES:
            raise InvalidInputError(f"Unknown record type: {record_type!r}", {"type": record_type})
        if len(vector) != self.dimension:
            raise InvalidInputError(
                "Vector dimension mismatch",
                {"expected": self.dimension, "actual": len(vector)},
            )

    def upsert(self, business_id: int, record_type: str, vector: Sequence[float]) -> str:
        return self.upsert_many([(business_id, record_type, vector)])[0]

    def upsert_many(self, records: Iterable[Tuple[int, str, Sequence[float]]]) -> List[str]:
        records = list(records)
        if not records:
            return []
        for _, record_type, vector in records:
            self._check(vector, record_type)

        ids = [uuid.uuid4().hex for _ in records]
        self._require_collection().upsert(
            ids=ids,
            embeddings=[[float(v) for v in vector] for _, _, vector in records],
            metadatas=[{FIELD_BUSINESS_ID: int(bid), FIELD_TYPE: rtype} for bid, rtype, _ in records],
        )
        return ids

    def delete(self, vector_id: str) -> bool:
        try:
            collection = self._require_collection()
            existing = collection.get(ids=[vector_id])
            if not existing["ids"]:
                return False
            collection.delete(ids=[vector_id])
            return True
        except Exception:
            logger.error("Failed to delete vector %s", vector_id, exc_info=True)
            return False

    def search(self, vector: Sequence[float], top_k: int, record_type: str) -> List[RetrievalHit]:
        """Top-K hits of one record type, most similar first."""
        self._check(vector, record_type)
        if top_k <= 0:
            return []

        result = self._require_collection().query(
            query_embeddings=[[float(v) for v in vector]],
            n_results=top_k,
            where={FIELD_TYPE: record_type},
            include=["metadatas", "distances"],
        )
        metadatas = _first(result.get("metadatas"))
        distances = _first(result.get("distances"))

        hits = []
        for metadata, distance in zip(metadatas, distances):
            if not metadata or metadata.get(FIELD_BUSINESS_ID) is None:
                continue
            hits.append(RetrievalHit(
                business_id=int(metadata[FIELD_BUSINESS_ID]),
                record_type=metadata.get(FIELD_TYPE, record_type),
                score=1.0 - float(distance),
            ))
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:top_k]


def _first(nested: Optional[List[List[Any]]]) -> List[Any]:
    if not nested:
        return []
    return nested[0] or []
