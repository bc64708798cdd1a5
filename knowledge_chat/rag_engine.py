import asyncio
import json
import logging
from typing import List, Optional, Sequence

from langsmith import traceable
from sqlalchemy.orm import Session as DBSession

from knowledge_chat.graph import GraphRelationExpander
from knowledge_chat.models import RagDocument, RagNode, RagResult, RetrievalHit
from knowledge_chat.models_db import Document, DocumentChunk, KnowledgeNode
from knowledge_chat.providers import EmbeddingProvider
from knowledge_chat.vector_index import VectorIndexGateway

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = """你是一个精准的文档问答助手。你的任务是根据提供的参考内容回答用户问题。

【重要规则】
1. 只能使用下方"参考内容"中的信息来回答问题
2. 如果参考内容中没有相关信息，必须明确回答："根据已上传的文档，未找到与此问题相关的信息。"
3. 回答时在末尾标注信息来源，格式：[来源：文档名, 第X页]
4. 禁止编造、推测或使用参考内容之外的知识
5. 保持回答简洁准确，直接回答问题

【参考内容】
{references}

请根据以上参考内容回答用户的问题。"""

DOCUMENTS_HEADER = "【相关文档】"
QUESTION_HEADER = "【用户问题】"
GRAPH_HEADER = "【知识图谱】"


class RetrievalOrchestrator:
    def __init__(
        self,
        embedder: EmbeddingProvider,
        vector_index: VectorIndexGateway,
        expander: Optional[GraphRelationExpander] = None,
    ):
        self.embedder = embedder
        self.vector_index = vector_index
        self.expander = expander or GraphRelationExpander()

    @traceable(name="RAG Retrieval", run_type="retriever")
    async def search(self, db: DBSession, query: str, top_k: int) -> RagResult:
        """Retrieve chunks and nodes for a query. Never raises; failures degrade to empty results."""
        chunk_hits: List[RetrievalHit] = []
        node_hits: List[RetrievalHit] = []

        vector = None
        try:
            vector = await self.embedder.embed(query)
        except Exception:
            logger.error("Query embedding failed; returning empty retrieval", exc_info=True)

        if vector is not None:
            chunk_hits, node_hits = await asyncio.gather(
                self._safe_search(vector, top_k, "chunk"),
                self._safe_search(vector, top_k, "node"),
            )

        documents = self.hydrate_documents(db, chunk_hits)
        nodes = self.hydrate_nodes(db, node_hits)
        logger.info("Retrieved %d documents and %d nodes for query (top_k=%d)", len(documents), len(nodes), top_k)
        return RagResult(
            documents=documents,
            nodes=nodes,
            context_prompt=build_context_prompt(documents, query),
        )

    async def _safe_search(self, vector: List[float], top_k: int, record_type: str) -> List[RetrievalHit]:
        try:
            return await asyncio.to_thread(self.vector_index.search, vector, top_k, record_type)
        except Exception:
            logger.error("Vector search failed for type=%s", record_type, exc_info=True)
            return []

    def hydrate_documents(self, db: DBSession, hits: Sequence[RetrievalHit]) -> List[RagDocument]:
        results = []
        for hit in hits:
            try:
                chunk = db.get(DocumentChunk, hit.business_id)
                if chunk is None:
                    logger.debug("Stale chunk hit %s", hit.business_id)
                    continue
                document = db.get(Document, chunk.document_id)
                if document is None:
                    logger.debug("Chunk %s points at missing document %s", chunk.id, chunk.document_id)
                    continue
                results.append(RagDocument(
                    id=document.id,
                    chunk_id=chunk.id,
                    name=document.name,
                    file_type=document.file_type,
                    page_num=chunk.page_num,
                    summary=document.summary,
                    score=hit.score,
                    matched_content=chunk.content,
                ))
            except Exception:
                logger.warning("Failed to load chunk details, chunk_id=%s", hit.business_id, exc_info=True)
        return results

    def hydrate_nodes(self, db: DBSession, hits: Sequence[RetrievalHit]) -> List[RagNode]:
        results = []
        for hit in hits:
            try:
                node = db.get(KnowledgeNode, hit.business_id)
                if node is None:
                    logger.debug("Stale node hit %s", hit.business_id)
                    continue
                results.append(RagNode(
                    id=node.id,
                    name=node.name,
                    node_type=node.node_type,
                    description=node.description,
                    score=hit.score,
                    properties=_parse_properties(node),
                    relations=self._relations(db, node.id),
                ))
            except Exception:
                logger.warning("Failed to load node details, id=%s", hit.business_id, exc_info=True)
        return results

    def _relations(self, db: DBSession, node_id: int):
        try:
            return self.expander.relations_for(db, node_id)
        except Exception:
            logger.warning("Failed to load relations for node %s", node_id, exc_info=True)
            return []


def _parse_properties(node: KnowledgeNode):
    if not node.properties or not node.properties.strip():
        return None
    try:
        parsed = json.loads(node.properties)
    except ValueError:
        logger.warning("Node %s has malformed properties", node.id)
        return None
    return parsed if isinstance(parsed, dict) else None


def build_context_prompt(documents: Sequence[RagDocument], query: str) -> str:
    lines = []
    for i, doc in enumerate(documents, start=1):
        line = f"- 文档{i}「{doc.name}」"
        if doc.page_num is not None and doc.page_num > 0:
            line += f"（第{doc.page_num}页）"
        line += ": "
        if doc.matched_content and doc.matched_content.strip():
            line += doc.matched_content
        elif doc.summary and doc.summary.strip():
            line += doc.summary
        lines.append(line)

    references = ""
    if lines:
        references = DOCUMENTS_HEADER + "\n" + "\n".join(lines) + "\n\n"
    return PROMPT_TEMPLATE.format(references=references) + f"\n\n{QUESTION_HEADER}\n{query}"


def render_graph_context(nodes: Sequence[RagNode]) -> str:
    """Knowledge graph facts as one line per node plus its outgoing edges."""
    if not nodes:
        return ""
    lines = [GRAPH_HEADER]
    for node in nodes:
        line = f"- {node.name}"
        if node.node_type:
            line += f"（{node.node_type}）"
        if node.description:
            line += f": {node.description}"
        lines.append(line)
        for rel in node.relations:
            label = rel.name or rel.relation_type or "related"
            lines.append(f"  {node.name} --[{label}]--> {rel.target_node_name}")
    return "\n".join(lines)
