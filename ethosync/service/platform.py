from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ethosync.logging import get_logger
from ethosync.service.errors import (
    DependencyTimeoutError,
    DependencyUnavailableError,
    ServerError,
)
from ethosync.storage.common import PostgresConfig, parse_postgres_url

logger = get_logger(__name__)

WORKFLOW_SECRET_GROUP = "n8n-secrets"
WORKFLOW_HOST_KEY = "N8N_HOST"
UNRESOLVED_REF_MARKER = "${refs."


class PlatformError(ServerError):
    """The cloud platform answered with a non-2xx status."""

    def __init__(self, message: str, *, status: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message, details=str(body) if body else None)
        self.status = status
        self.body = body

    @property
    def recoverable(self) -> bool:
        """Whether polling again might succeed (auth and validation errors never will)."""
        if self.status is None:
            return True
        return self.status >= 500 or self.status in (404, 408, 409, 429)


@dataclass
class WorkflowHost:
    url: str
    secrets: Dict[str, Any] = field(default_factory=dict)


def resolve_project_id(run: Optional[Dict[str, Any]]) -> Optional[str]:
    """Find the created project's id in a template run payload.

    Checks the Project step response, then ``output.project_id``, then the
    results list.
    """
    if not run:
        return None
    spec = run.get("spec") or {}
    for step in spec.get("steps") or []:
        if step.get("kind") == "Project":
            project_id = ((step.get("response") or {}).get("data") or {}).get("id")
            if project_id:
                return project_id
    output = run.get("output") or {}
    if output.get("project_id"):
        return output["project_id"]
    results = run.get("results")
    if isinstance(results, list):
        for result in results:
            if result.get("kind") == "Project" and (result.get("data") or {}).get("id"):
                return result["data"]["id"]
    return None


def _addon_list(payload: Any) -> List[Dict[str, Any]]:
    data = payload.get("data") if isinstance(payload, dict) else payload
    if isinstance(data, dict):
        data = data.get("addons")
    return data if isinstance(data, list) else []


class CloudPlatformClient:
    """HTTP client for the cloud platform that hosts tenant backends."""

    def __init__(
        self,
        api_token: Optional[str],
        *,
        base_url: str = "https://api.northflank.com",
        template_id: str = "sunday",
        timeout_seconds: float = 30.0,
        external_access_wait_seconds: float = 15.0,
        resume_wait_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.template_id = template_id
        self.timeout_seconds = timeout_seconds
        self.external_access_wait_seconds = external_access_wait_seconds
        self.resume_wait_seconds = resume_wait_seconds
        self._client = client
        self._sleep = sleep

    @property
    def is_configured(self) -> bool:
        return bool(self.api_token)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                headers={
                    "Authorization": f"Bearer {self.api_token}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        allow_missing: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Send a request and return the decoded body.

        With ``allow_missing`` a 404 returns ``None`` instead of raising, for
        lookups where "not there yet" is a normal outcome.
        """
        if not self.is_configured:
            raise DependencyUnavailableError("Cloud platform API token not configured")
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            logger.error("platform_timeout", method=method, path=path)
            raise DependencyTimeoutError("Cloud platform request timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("platform_unreachable", method=method, path=path, error=str(exc))
            raise DependencyUnavailableError("Cloud platform unreachable", details=str(exc)) from exc

        if not response.is_success:
            body: Any
            try:
                body = response.json()
            except ValueError:
                body = response.text
            if allow_missing and response.status_code == 404:
                logger.info(
                    "platform_lookup_miss", method=method, path=path, status_code=response.status_code
                )
                return None
            logger.warning(
                "platform_api_error", method=method, path=path, status_code=response.status_code
            )
            message = body.get("message") if isinstance(body, dict) else None
            raise PlatformError(
                f"Cloud platform error: {message or response.reason_phrase}",
                status=response.status_code,
                body=body,
            )
        if not response.content:
            return {}
        return response.json()

    # -- templates and projects ------------------------------------------------

    async def start_template_run(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        payload = await self._request(
            "POST",
            f"/v1/templates/{self.template_id}/runs",
            json={"arguments": arguments},
        )
        return (payload or {}).get("data") or {}

    async def get_template_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        payload = await self._request(
            "GET", f"/v1/templates/{self.template_id}/runs/{run_id}", allow_missing=True
        )
        return (payload or {}).get("data") if payload is not None else None

    async def create_project(self, name: str, description: str, region: str) -> Dict[str, Any]:
        payload = await self._request(
            "POST",
            "/v1/projects",
            json={"name": name, "description": description, "region": region},
        )
        return (payload or {}).get("data") or {}

    async def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        payload = await self._request("GET", f"/v1/projects/{project_id}", allow_missing=True)
        return (payload or {}).get("data") if payload is not None else None

    async def find_workflow_host(self, project_id: str) -> Optional[WorkflowHost]:
        """Return the workflow engine URL once the template has resolved its host."""
        groups = await self._request(
            "GET", f"/v1/projects/{project_id}/secret-groups", allow_missing=True
        )
        if not groups:
            return None
        group = next(
            (g for g in groups.get("data") or [] if g.get("name") == WORKFLOW_SECRET_GROUP),
            None,
        )
        if not group:
            return None
        details = await self._request(
            "GET", f"/v1/projects/{project_id}/secret-groups/{group['id']}", allow_missing=True
        )
        secrets = ((details or {}).get("data") or {}).get("data") or {}
        host = secrets.get(WORKFLOW_HOST_KEY)
        if not host or UNRESOLVED_REF_MARKER in host:
            return None
        return WorkflowHost(url=f"https://{host}", secrets=secrets)

    # -- networking and services -------------------------------------------------

    async def add_ingress_project(self, target_project_id: str, project_id: str) -> bool:
        """Allow ``project_id`` to reach services inside ``target_project_id``."""
        settings = await self._request(
            "GET", f"/v1/projects/{target_project_id}/settings", allow_missing=True
        )
        if settings is None:
            return False
        networking = ((settings.get("data") or {}).get("networking") or {})
        existing = list((networking.get("ingress") or {}).get("projects") or [])
        if project_id in existing:
            return True
        await self._request(
            "PATCH",
            f"/v1/projects/{target_project_id}/settings",
            json={"networking": {"ingress": {"projects": existing + [project_id]}}},
        )
        return True

    async def set_workflow_service_env(self, project_id: str, env: Dict[str, str]) -> bool:
        services = await self._request(
            "GET", f"/v1/projects/{project_id}/services", allow_missing=True
        )
        if not services:
            return False
        service = next(
            (
                s
                for s in services.get("data") or []
                if "n8n" in (s.get("name") or "")
                or "n8nio" in ((s.get("spec") or {}).get("image") or "")
            ),
            None,
        )
        if not service:
            logger.info("platform_workflow_service_missing", project_id=project_id)
            return False
        await self._request(
            "PATCH",
            f"/v1/projects/{project_id}/services/{service['id']}/env",
            json={"env": env},
        )
        return True

    # -- postgres addon ------------------------------------------------------------

    async def _find_postgres_addon(self, project_id: str) -> Optional[Dict[str, Any]]:
        payload = await self._request("GET", f"/v1/projects/{project_id}/addons", allow_missing=True)
        if payload is None:
            return None
        return next(
            (a for a in _addon_list(payload) if (a.get("spec") or {}).get("type") == "postgresql"),
            None,
        )

    async def _addon_credentials(self, project_id: str, addon_id: str) -> Optional[PostgresConfig]:
        payload = await self._request(
            "GET", f"/v1/projects/{project_id}/addons/{addon_id}/credentials", allow_missing=True
        )
        envs = ((payload or {}).get("data") or {}).get("envs") or {}
        connection_string = envs.get("EXTERNAL_POSTGRES_URI") or envs.get("POSTGRES_URI")
        if not connection_string:
            return None
        config = parse_postgres_url(connection_string)
        if not config:
            logger.warning("platform_postgres_uri_unparseable", project_id=project_id)
            return None
        config.admin_connection_string = (
            envs.get("EXTERNAL_POSTGRES_URI_ADMIN")
            or envs.get("POSTGRES_URI_ADMIN")
            or connection_string
        )
        return config

    async def get_postgres_connection(self, project_id: str) -> Optional[PostgresConfig]:
        """Make the tenant's Postgres addon reachable and return its credentials.

        Enables external access and resumes a paused addon, waiting after
        each change. Returns ``None`` while the addon is missing or not running.
        """
        addon = await self._find_postgres_addon(project_id)
        if not addon:
            logger.info("platform_postgres_addon_missing", project_id=project_id)
            return None
        addon_id = addon["id"]
        status = addon.get("status")
        if not (addon.get("spec") or {}).get("externalAccessEnabled"):
            await self._request(
                "PATCH",
                f"/v1/projects/{project_id}/addons/{addon_id}",
                json={"spec": {"externalAccessEnabled": True}},
            )
            await self._sleep(self.external_access_wait_seconds)
        if status == "paused":
            await self._request("POST", f"/v1/projects/{project_id}/addons/{addon_id}/resume")
            await self._sleep(self.resume_wait_seconds)
            refreshed = await self._find_postgres_addon(project_id)
            status = (refreshed or {}).get("status")
        if status != "running":
            logger.info("platform_postgres_not_running", project_id=project_id, status=status)
            return None
        return await self._addon_credentials(project_id, addon_id)

    async def get_connection_string(self, project_id: str) -> Optional[PostgresConfig]:
        """Look up existing credentials without changing the addon."""
        addon = await self._find_postgres_addon(project_id)
        if not addon:
            return None
        return await self._addon_credentials(project_id, addon["id"])

    # -- jobs ----------------------------------------------------------------------

    async def trigger_job_run(
        self, project_id: str, job_id: str, runtime_environment: Dict[str, str]
    ) -> Dict[str, Any]:
        payload = await self._request(
            "POST",
            f"/v1/projects/{project_id}/jobs/{job_id}/runs",
            json={"runtimeEnvironment": runtime_environment},
        )
        return (payload or {}).get("data") or {}

    async def get_job_run(self, project_id: str, job_id: str, run_id: str) -> Optional[Dict[str, Any]]:
        payload = await self._request(
            "GET", f"/v1/projects/{project_id}/jobs/{job_id}/runs/{run_id}", allow_missing=True
        )
        return (payload or {}).get("data") if payload is not None else None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
