import logging
from typing import List

from sqlalchemy.orm import Session as DBSession

from knowledge_chat.models import RagRelation
from knowledge_chat.models_db import KnowledgeNode, KnowledgeRelation

logger = logging.getLogger(__name__)


class GraphRelationExpander:
    """Resolves a node's outgoing relations together with the target node names."""

    def relations_for(self, db: DBSession, node_id: int) -> List[RagRelation]:
        rows = (
            db.query(KnowledgeRelation, KnowledgeNode)
            .outerjoin(KnowledgeNode, KnowledgeNode.id == KnowledgeRelation.target_node_id)
            .filter(KnowledgeRelation.source_node_id == node_id)
            .order_by(KnowledgeRelation.id)
            .all()
        )
        relations = []
        for relation, target in rows:
            if target is None:
                logger.debug("Dropping relation %s: target node %s is missing",
                             relation.id, relation.target_node_id)
                continue
            relations.append(RagRelation(
                name=relation.name,
                relation_type=relation.relation_type,
                target_node_id=target.id,
                target_node_name=target.name,
            ))
        return relations
