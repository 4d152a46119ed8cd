from __future__ import annotations

from typing import Any, Dict, List, Optional

from ethosync.logging import get_logger
from ethosync.service.embeddings import OllamaEmbeddings
from ethosync.service.errors import NotFoundError, ServiceError, ValidationError
from ethosync.service.gating import GatingClient, GatingOutcome, counter_increments, outcome_metadata
from ethosync.service.tenant_setup import TenantHandle
from ethosync.storage.errors import TenantStoreError
from ethosync.storage.models import MemoryEmbedding, User, utcnow

logger = get_logger(__name__)

SEARCH_LIMIT = 20
LIST_LIMIT = 100


def memory_payload(record: MemoryEmbedding) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": record.id,
        "content": record.content,
        "metadata": record.metadata or {},
        "created_at": record.created_at,
        "updated_at": record.updated_at,
        "user_id": record.user_id,
    }
    if record.score is not None:
        payload["score"] = record.score
    return payload


class MemoryService:
    """Classified memory ingestion and semantic search over a tenant database."""

    def __init__(self, *, store, gating: GatingClient, embeddings: OllamaEmbeddings) -> None:
        self.store = store
        self.gating = gating
        self.embeddings = embeddings

    async def _store_embedding(
        self, tenant: TenantHandle, user_id: str, text: str, metadata: Dict[str, Any]
    ) -> Optional[MemoryEmbedding]:
        """Embed and store ``text``; failures are logged and skipped."""
        if not self.embeddings.is_configured:
            logger.info("memory_embedding_skipped", user_id=user_id, reason="not_configured")
            return None
        try:
            vector = await self.embeddings.embed(text)
            return tenant.store.add_memory_embedding(user_id, text, vector, metadata=metadata)
        except ServiceError as exc:
            logger.warning("memory_embedding_failed", user_id=user_id, error=exc.message)
        except TenantStoreError as exc:
            logger.warning("memory_embedding_failed", user_id=user_id, error=str(exc))
        return None

    def _apply_counters(self, user_id: str, outcome: GatingOutcome) -> None:
        deltas = counter_increments(outcome)
        if deltas["good"] or deltas["bad"]:
            self.store.increment_channel_counters(user_id, good=deltas["good"], bad=deltas["bad"])

    async def add(
        self, user: User, tenant: TenantHandle, content: str, metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        text = (content or "").strip()
        if not text:
            raise ValidationError("Content is required")
        metadata = dict(metadata or {})

        outcome = await self.gating.classify(user.id, text, tenant.connection_string, metadata)
        await self._store_embedding(
            tenant,
            user.id,
            text,
            {**metadata, **outcome_metadata(outcome), "gating_timestamp": utcnow().isoformat()},
        )
        self._apply_counters(user.id, outcome)
        logger.info("memory_added", user_id=user.id, routing=outcome.routing, status=outcome.status)
        return {
            "success": True,
            "routing": outcome.routing,
            "valence": outcome.valence,
            "safe_counterfactual": outcome.safe_counterfactual,
            "scores": outcome.scores,
            "message": "Content flagged and safe alternative provided"
            if outcome.routing == "bad"
            else "Memory added successfully",
        }

    async def search(self, user: User, tenant: TenantHandle, query: Optional[str]) -> Dict[str, Any]:
        if query:
            vector = await self.embeddings.embed(query)
            records = tenant.store.search_memory_embeddings(user.id, vector, limit=SEARCH_LIMIT)
        else:
            records = tenant.store.list_memory_embeddings(user.id, limit=LIST_LIMIT)
        memories: List[Dict[str, Any]] = [memory_payload(r) for r in records]
        return {"success": True, "memories": memories, "count": len(memories)}

    def delete(self, user: User, tenant: TenantHandle, memory_id: str) -> Dict[str, Any]:
        if not memory_id:
            raise ValidationError("Memory ID required")
        if not tenant.store.delete_memory_embedding(memory_id, user.id):
            logger.info("memory_delete_denied", user_id=user.id, memory_id=memory_id)
            raise NotFoundError("Memory not found or access denied")
        logger.info("memory_deleted", user_id=user.id, memory_id=memory_id)
        return {"success": True, "message": "Memory deleted successfully"}

    async def ingest_conversation(
        self,
        user: User,
        tenant: TenantHandle,
        message: str,
        *,
        conversation_id: Optional[str] = None,
        session_id: Optional[str] = None,
        timestamp: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Route a workflow-engine conversation message through gating and store it."""
        gating_metadata = {
            "source": "n8n_conversation",
            "conversation_id": conversation_id,
            **(metadata or {}),
        }
        outcome = await self.gating.classify(
            user.id, message, tenant.connection_string, gating_metadata, session_id=session_id
        )
        self._apply_counters(user.id, outcome)
        await self._store_embedding(
            tenant,
            user.id,
            message,
            {
                "source": "n8n_conversation",
                "conversation_id": conversation_id,
                **outcome_metadata(outcome),
                "timestamp": timestamp or utcnow().isoformat(),
            },
        )
        logger.info(
            "conversation_ingested",
            user_id=user.id,
            routing=outcome.routing,
            status=outcome.status,
            session_id=session_id,
        )
        return {
            "success": True,
            "routing": outcome.routing,
            "valence": outcome.valence,
            "safe_counterfactual": outcome.safe_counterfactual,
            "message": "Conversation logged successfully",
            "stored_in_channel": outcome.routing,
        }

    def sync_counts(self, user: User, tenant: TenantHandle) -> Dict[str, Any]:
        counts = tenant.store.channel_counts(user.id)
        self.store.update_user(
            user.id,
            good_channel_count=counts["good"],
            bad_channel_count=counts["bad"],
            mcl_chain_count=counts["mcl"],
        )
        result = {
            "good": counts["good"],
            "bad": counts["bad"],
            "mcl": counts["mcl"],
            "review": counts["review"],
            "embeddings": counts.get("embeddings", 0),
        }
        result["total"] = result["good"] + result["bad"] + result["mcl"] + result["review"]
        logger.info("channel_counts_synced", user_id=user.id, **result)
        return {"success": True, "counts": result}
