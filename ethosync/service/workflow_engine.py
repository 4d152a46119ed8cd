from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ethosync.logging import get_logger
from ethosync.service.errors import DependencyUnavailableError, ServerError
from ethosync.storage.common import PostgresConfig

logger = get_logger(__name__)


class WorkflowEngineError(ServerError):
    """The tenant's workflow engine rejected a request."""


def workflow_password(prefix: str, encryption_key: str) -> str:
    return f"{prefix}{encryption_key}"


class WorkflowEngineClient:
    """Talks to a tenant's own workflow engine instance.

    Each call is given the engine's base URL and owner credentials, since
    every tenant runs a separate engine.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        initial_delay_seconds: float = 30.0,
        max_retries: int = 5,
        retry_base_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self._transport = transport
        self._sleep = sleep

    def _client(self, base_url: str, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
            transport=self._transport,
            **kwargs,
        )

    async def create_api_key(
        self, base_url: str, email: str, password: str, *, fallback: Optional[str] = None
    ) -> Optional[str]:
        """Generate an API key on a freshly started engine.

        Waits for the engine to come up, then retries with a linearly growing
        pause. Returns ``fallback`` when every attempt fails.
        """
        await self._sleep(self.initial_delay_seconds)
        async with self._client(base_url, auth=(email, password)) as client:
            for attempt in range(1, self.max_retries + 1):
                try:
                    health = await client.get("/healthz")
                    if not health.is_success:
                        logger.info(
                            "workflow_engine_not_ready",
                            attempt=attempt,
                            status_code=health.status_code,
                        )
                        if attempt < self.max_retries:
                            await self._sleep(self.retry_base_seconds * attempt)
                        continue
                    response = await client.post(
                        "/rest/api-key",
                        json={"name": f"auto-generated-{int(time.time() * 1000)}", "expiresAt": None},
                    )
                    response.raise_for_status()
                    body = response.json()
                    data = body.get("data") or {}
                    api_key = data.get("apiKey") or data.get("key") or body.get("apiKey")
                    if api_key:
                        logger.info("workflow_api_key_created", attempt=attempt)
                        return api_key
                    logger.warning("workflow_api_key_missing_in_response", attempt=attempt)
                except httpx.HTTPStatusError as exc:
                    logger.warning(
                        "workflow_api_key_failed",
                        attempt=attempt,
                        status_code=exc.response.status_code,
                    )
                except (httpx.HTTPError, ValueError) as exc:
                    logger.warning("workflow_api_key_failed", attempt=attempt, error=str(exc))
                if attempt < self.max_retries:
                    await self._sleep(self.retry_base_seconds * attempt)
        logger.warning("workflow_api_key_fallback", has_fallback=bool(fallback))
        return fallback

    async def create_postgres_credential(
        self,
        base_url: str,
        email: str,
        password: str,
        config: PostgresConfig,
        *,
        name: str = "Tenant Postgres",
    ) -> str:
        """Register the tenant database as a credential and return its id."""
        async with self._client(base_url) as client:
            try:
                login = await client.post(
                    "/rest/login", json={"emailOrLdapLoginId": email, "email": email, "password": password}
                )
                login.raise_for_status()
                response = await client.post(
                    "/rest/credentials",
                    json={
                        "name": name,
                        "type": "postgres",
                        "data": {
                            "host": config.host,
                            "port": config.port,
                            "database": config.database,
                            "user": config.user,
                            "password": config.password,
                            "ssl": "allow",
                        },
                    },
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                logger.error(
                    "workflow_credential_failed",
                    path=exc.request.url.path,
                    status_code=exc.response.status_code,
                )
                raise WorkflowEngineError(
                    "Failed to create workflow credential",
                    details=f"{exc.request.url.path} returned {exc.response.status_code}",
                ) from exc
            except httpx.HTTPError as exc:
                logger.error("workflow_engine_unreachable", error=str(exc))
                raise DependencyUnavailableError("Workflow engine unreachable", details=str(exc)) from exc

        body: Dict[str, Any] = response.json()
        credential_id = (body.get("data") or {}).get("id") or body.get("id")
        if not credential_id:
            raise WorkflowEngineError("Workflow engine returned no credential id")
        logger.info("workflow_credential_created", credential_id=credential_id)
        return str(credential_id)
