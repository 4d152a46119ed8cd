from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Any, Awaitable, Dict, Optional, Set, Tuple, Union

from ethosync.config import get_settings, reset_settings_cache
from ethosync.logging import get_logger, mask_dsn
from ethosync.service.auth import AuthService
from ethosync.service.embeddings import OllamaEmbeddings
from ethosync.service.gating import GatingClient
from ethosync.service.memories import MemoryService
from ethosync.service.migration import LegacyMigrationService
from ethosync.service.platform import CloudPlatformClient
from ethosync.service.profile import ProfileService
from ethosync.service.provisioning import ProvisioningService
from ethosync.service.tenant_setup import TenantConnector, TenantSetupService
from ethosync.service.training import TrainingService
from ethosync.service.workflow_engine import WorkflowEngineClient
from ethosync.storage.memory import MemoryStore, MemoryTenantStore
from ethosync.storage.postgres import PostgresStore, PostgresTenantStore
from ethosync.storage.models import utcnow
from ethosync.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        secret_key = self.settings.secret_key or self.settings.jwt_secret or ""

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root, secret_key=secret_key)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, secret_key=secret_key)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=mask_dsn(self.settings.redis_url or ""),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; rate limits are in-memory only.",
                mode=fallback_mode,
            )

        self.platform = CloudPlatformClient(
            self.settings.platform_api_token,
            base_url=self.settings.platform_api_base,
            template_id=self.settings.platform_template_id,
            timeout_seconds=self.settings.platform_timeout_seconds,
            external_access_wait_seconds=self.settings.addon_external_access_wait_seconds,
            resume_wait_seconds=self.settings.addon_resume_wait_seconds,
        )
        self.workflow = WorkflowEngineClient(
            initial_delay_seconds=self.settings.workflow_api_key_initial_delay_seconds,
            max_retries=self.settings.workflow_api_key_max_retries,
            retry_base_seconds=self.settings.workflow_api_key_retry_base_seconds,
        )
        self.gating = GatingClient(
            self.settings.gating_service_url,
            timeout_seconds=self.settings.gating_timeout_seconds,
        )
        self.embeddings = OllamaEmbeddings(
            self.settings.ollama_url,
            model=self.settings.embedding_model,
            dimensions=self.settings.embedding_dimensions,
            timeout_seconds=self.settings.embedding_timeout_seconds,
        )

        self._tenant_stores: Dict[str, Any] = {}
        self._tenant_stores_lock = threading.Lock()
        self._background_tasks: Set[asyncio.Task] = set()
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()
        self._build_services()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            platform_configured=self.platform.is_configured,
            embeddings_configured=self.embeddings.is_configured,
        )

    def _build_services(self) -> None:
        self.auth = AuthService(self.store, self.settings)
        self.connector = TenantConnector(self.platform, self.tenant_store)
        self.profiles = ProfileService()
        self.migration = LegacyMigrationService(self.profiles)
        self.memories = MemoryService(
            store=self.store, gating=self.gating, embeddings=self.embeddings
        )
        self.provisioning = ProvisioningService(
            store=self.store,
            platform=self.platform,
            workflow=self.workflow,
            tenant_stores=self.tenant_store,
            settings=self.settings,
            spawn=self.spawn,
        )
        self.tenant_setup = TenantSetupService(
            store=self.store,
            platform=self.platform,
            workflow=self.workflow,
            tenant_stores=self.tenant_store,
            password_prefix=self.settings.workflow_password_prefix,
        )
        self.training = TrainingService(
            store=self.store,
            platform=self.platform,
            settings=self.settings,
            spawn=self.spawn,
        )

    def use_clients(
        self,
        *,
        platform: Optional[CloudPlatformClient] = None,
        workflow: Optional[WorkflowEngineClient] = None,
        gating: Optional[GatingClient] = None,
        embeddings: Optional[OllamaEmbeddings] = None,
    ) -> None:
        """Swap outbound clients (tests point these at fakes) and rewire the services."""
        self.platform = platform or self.platform
        self.workflow = workflow or self.workflow
        self.gating = gating or self.gating
        self.embeddings = embeddings or self.embeddings
        self._build_services()

    def tenant_store(self, connection_string: str):
        """One store per tenant connection string, shared across requests."""
        with self._tenant_stores_lock:
            store = self._tenant_stores.get(connection_string)
            if store is None:
                if self.settings.use_memory_store:
                    store = MemoryTenantStore(connection_string)
                else:
                    store = PostgresTenantStore(
                        connection_string,
                        max_size=self.settings.tenant_pool_max_size,
                        idle_seconds=self.settings.tenant_pool_idle_seconds,
                        connect_timeout=self.settings.tenant_connect_timeout_seconds,
                        statement_timeout_ms=self.settings.tenant_statement_timeout_ms,
                        wait_timeout=self.settings.tenant_pool_wait_seconds,
                    )
                self._tenant_stores[connection_string] = store
                logger.info("tenant_store_opened", connection=mask_dsn(connection_string))
            return store

    def spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        """Run ``coro`` detached from the request; tracked until it finishes."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "background_task_failed",
                task=task.get_name(),
                error_type=type(exc).__name__,
                error=str(exc),
            )

    @property
    def background_tasks(self) -> Set[asyncio.Task]:
        return set(self._background_tasks)

    async def shutdown(self) -> None:
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for client in (self.platform, self.gating, self.embeddings):
            await client.close()
        with self._tenant_stores_lock:
            stores = list(self._tenant_stores.values())
            self._tenant_stores.clear()
        for store in stores:
            store.close()
        self.store.close()
        if self.cache is not None:
            await self.cache.close()
        logger.info("runtime_shutdown", cancelled_tasks=len(tasks))


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.store.close()
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit, in Redis or in-process when Redis is absent."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60

    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )

    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed

