"""
Write-time near-duplicate gate.

Before a memory is persisted, a bounded similarity search over records
already flagged unique in the same room/agent/table decides the new record's
``unique`` flag. The judgment is point-in-time: later writes never revise it,
and a missed near-duplicate (the candidate set is bounded) is acceptable.
"""

import logging

from ..config import MEMORIES_COLLECTION, SearchSettings
from ..models.memory import SearchableRecord, SearchQuery
from .orchestrator import SearchOrchestrator

logger = logging.getLogger(__name__)


class DedupGate:
    def __init__(
        self,
        orchestrator: SearchOrchestrator,
        config: SearchSettings | None = None,
        collection_name: str = MEMORIES_COLLECTION,
    ):
        self.orchestrator = orchestrator
        self.config = config or orchestrator.config
        self.collection_name = collection_name

    @staticmethod
    def scope_filter(record: SearchableRecord) -> dict:
        """Structural filter matching the record's table, room and agent among unique records."""
        scope: dict = {"type": record.type, "roomId": record.room_id, "unique": True}
        if record.agent_id:
            scope["agentId"] = record.agent_id
        return scope

    async def should_mark_unique(self, record: SearchableRecord) -> bool:
        """
        Decide the ``unique`` flag for a record about to be written.

        Records without an embedding are unique without a check.

        Raises:
            SearchError: If the similarity search cannot be served
        """
        if not record.embedding:
            return True

        matches = await self.orchestrator.search(
            self.collection_name,
            SearchQuery(
                embedding=record.embedding,
                filters=self.scope_filter(record),
                match_threshold=self.config.dedup_threshold,
                match_count=1,
            ),
        )
        if matches:
            logger.debug(
                f"Memory {record.id} near-duplicates {matches[0].record.id} "
                f"(score={matches[0].vector_score:.4f}); marking non-unique"
            )
            return False
        return True
