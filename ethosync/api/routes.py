from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Response

from ethosync.api.schemas import (
    ConversationResult,
    ConversationWebhook,
    MemoryCreate,
    MemoryResult,
    MigrationResult,
)
from ethosync.logging import get_logger, sanitize_error_message
from ethosync.service.errors import (
    DependencyUnavailableError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ServiceError,
    ValidationError,
)
from ethosync.service.runtime import check_rate_limit, get_runtime
from ethosync.service.tenant_setup import TenantHandle
from ethosync.storage.errors import TenantStoreError
from ethosync.storage.models import User, utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

RATE_LIMIT_WINDOW_SECONDS = 60


async def _enforce_rate_limit(
    runtime, key: str, limit: int, *, response: Optional[Response] = None
) -> None:
    """Raise 429 once ``key`` has spent its per-minute budget."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, RATE_LIMIT_WINDOW_SECONDS, return_remaining=True
    )
    if response is not None and limit > 0:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        logger.warning("rate_limited", key=key, retry_after=reset_seconds)
        raise RateLimitedError("Too many requests", extra={"retry_after": reset_seconds})


async def get_user(authorization: Optional[str] = Header(None)) -> User:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


async def _tenant(user: User) -> TenantHandle:
    return await get_runtime().connector.connect(user)


# ---------------------------------------------------------------------------
# Provisioning


@router.post("/provisioning")
async def start_provisioning(response: Response, user: User = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"provision:{user.id}",
        runtime.settings.provision_rate_limit_per_minute,
        response=response,
    )
    return await runtime.provisioning.start(user)


@router.get("/provisioning/status")
async def provisioning_status(user: User = Depends(get_user)):
    return get_runtime().provisioning.status(user)


# ---------------------------------------------------------------------------
# Vector memory


@router.post("/memories/setup")
async def setup_memories(user: User = Depends(get_user)):
    return await get_runtime().tenant_setup.setup(user)


@router.get("/memories")
async def list_memories(
    query: Optional[str] = Query(None, max_length=2000),
    user: User = Depends(get_user),
):
    tenant = await _tenant(user)
    return await get_runtime().memories.search(user, tenant, query)


@router.post("/memories", response_model=MemoryResult)
async def add_memory(body: MemoryCreate, user: User = Depends(get_user)):
    tenant = await _tenant(user)
    return await get_runtime().memories.add(user, tenant, body.content or "", body.metadata)


@router.delete("/memories/{memory_id}")
async def delete_memory(
    memory_id: str = Path(..., min_length=1, max_length=128),
    user: User = Depends(get_user),
):
    tenant = await _tenant(user)
    return get_runtime().memories.delete(user, tenant, memory_id)


# ---------------------------------------------------------------------------
# Ethical profile


@router.get("/profile/ethical")
async def get_ethical_profile(user: User = Depends(get_user)):
    tenant = await _tenant(user)
    return get_runtime().profiles.describe(tenant.store, user.id)


@router.post("/profile/ethical/recalculate")
async def recalculate_ethical_profile(user: User = Depends(get_user)):
    tenant = await _tenant(user)
    return get_runtime().profiles.recalculate(tenant.store, user.id)


# ---------------------------------------------------------------------------
# Training


@router.post("/training")
async def start_training(user: User = Depends(get_user)):
    runtime = get_runtime()
    runtime.training.check_can_start(user)
    tenant = await _tenant(user)
    return await runtime.training.start(user, tenant)


@router.get("/training")
async def training_status(user: User = Depends(get_user)):
    runtime = get_runtime()
    tenant: Optional[TenantHandle] = None
    if user.project_id and user.postgres_schema_initialized:
        try:
            tenant = await runtime.connector.connect(user)
        except DependencyUnavailableError as exc:
            logger.warning("training_status_tenant_unavailable", user_id=user.id, error=exc.message)
    return runtime.training.status(user, tenant)


@router.delete("/training")
async def cancel_training(user: User = Depends(get_user)):
    return get_runtime().training.cancel(user)


@router.post("/training/sync-counts")
async def sync_training_counts(user: User = Depends(get_user)):
    tenant = await _tenant(user)
    return get_runtime().memories.sync_counts(user, tenant)


# ---------------------------------------------------------------------------
# Legacy migration


@router.post("/migrations/legacy", response_model=MigrationResult)
async def migrate_legacy(user: User = Depends(get_user)):
    tenant = await _tenant(user)
    return get_runtime().migration.migrate(tenant.store, user.id)


@router.get("/migrations/legacy")
async def legacy_migration_status(user: User = Depends(get_user)):
    tenant = await _tenant(user)
    return get_runtime().migration.status(tenant.store, user.id)


# ---------------------------------------------------------------------------
# Workflow engine webhook


@router.post("/webhooks/conversation", response_model=ConversationResult)
async def conversation_webhook(
    body: ConversationWebhook,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    runtime.auth.verify_webhook(authorization)
    if not body.user_id or not body.message:
        raise ValidationError("Missing required fields: user_id, message")
    await _enforce_rate_limit(
        runtime,
        f"webhook:{body.user_id}",
        runtime.settings.webhook_rate_limit_per_minute,
        response=response,
    )

    user = runtime.store.get_user(body.user_id)
    if user is None:
        logger.warning("webhook_user_not_found", user_id=body.user_id)
        raise NotFoundError("User not found")
    if not user.project_id or not user.postgres_schema_initialized:
        raise ValidationError("User database not initialized")

    try:
        tenant = await runtime.connector.connect(user)
        return await runtime.memories.ingest_conversation(
            user,
            tenant,
            body.message,
            conversation_id=body.conversation_id,
            session_id=body.session_id,
            timestamp=body.timestamp,
            metadata=body.metadata,
        )
    except ServiceError as exc:
        logger.error("webhook_ingest_failed", user_id=user.id, error=exc.message)
        raise ServerError(
            "Internal server error", details=sanitize_error_message(exc.details or exc.message)
        ) from exc
    except TenantStoreError as exc:
        logger.error("webhook_ingest_failed", user_id=user.id, error=str(exc))
        raise ServerError(
            "Internal server error", details=sanitize_error_message(str(exc))
        ) from exc


@router.get("/webhooks/conversation")
async def conversation_webhook_health() -> Dict[str, Any]:
    return {
        "status": "healthy",
        "endpoint": "n8n-conversation-webhook",
        "timestamp": utcnow().isoformat(),
    }
