from __future__ import annotations

import asyncio
import math
import secrets
import string
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ethosync.logging import get_logger, sanitize_error_message
from ethosync.service.errors import ServerError, ServiceError
from ethosync.service.platform import (
    CloudPlatformClient,
    PlatformError,
    WorkflowHost,
    resolve_project_id,
)
from ethosync.service.workflow_engine import WorkflowEngineClient, workflow_password
from ethosync.storage.errors import TenantStoreError
from ethosync.storage.models import User, as_utc, utcnow

logger = get_logger(__name__)

TIMEOUT_MESSAGE = "N8N_HOST not available within time limit"
IN_PROGRESS_MESSAGE = "Provisioning already in progress for this user"


class ProvisioningLockLost(Exception):
    """The provisioning lock expired and was taken by another owner."""


class ProvisioningStatus(str, Enum):
    INITIATED = "initiated"
    DEPLOYING = "deploying"
    READY = "ready"
    MANUAL = "manual"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def terminal(self) -> bool:
        return self in (ProvisioningStatus.READY, ProvisioningStatus.FAILED, ProvisioningStatus.TIMEOUT)

    @property
    def monitored(self) -> bool:
        return self in (ProvisioningStatus.INITIATED, ProvisioningStatus.DEPLOYING)


class Action(str, Enum):
    ATTACH_PROJECT = "attach_project"
    FINALIZE = "finalize"


@dataclass(frozen=True)
class PollResult:
    """What one poll of the platform (or one finalize run) observed."""

    project_id: Optional[str] = None
    host: Optional[WorkflowHost] = None
    setup_ok: Optional[bool] = None
    setup_error: Optional[str] = None
    error: Optional[str] = None
    recoverable: bool = True


@dataclass(frozen=True)
class Transition:
    status: ProvisioningStatus
    action: Optional[Action] = None
    error: Optional[str] = None


def transition(
    status: ProvisioningStatus, observed: PollResult, *, deadline_reached: bool = False
) -> Transition:
    """Next provisioning state for ``status`` given ``observed``.

    Pure: performs no I/O. The caller executes ``action`` and persists the
    returned state.
    """
    if status.terminal or status is ProvisioningStatus.MANUAL:
        return Transition(status)
    if observed.error and not observed.recoverable:
        return Transition(ProvisioningStatus.FAILED, error=observed.error)
    if status is ProvisioningStatus.DEPLOYING and observed.setup_ok is not None:
        if observed.setup_ok:
            return Transition(ProvisioningStatus.READY)
        return Transition(ProvisioningStatus.FAILED, error=observed.setup_error or "Setup failed")
    if status is ProvisioningStatus.INITIATED and observed.project_id:
        return Transition(ProvisioningStatus.DEPLOYING, action=Action.ATTACH_PROJECT)
    if status is ProvisioningStatus.DEPLOYING and observed.host:
        return Transition(ProvisioningStatus.DEPLOYING, action=Action.FINALIZE)
    if deadline_reached:
        return Transition(ProvisioningStatus.TIMEOUT, error=TIMEOUT_MESSAGE)
    return Transition(status)


def generate_encryption_key() -> str:
    return secrets.token_hex(16)


def generate_fallback_api_key() -> str:
    alphabet = string.ascii_letters + string.digits
    return "n8n_" + "".join(secrets.choice(alphabet) for _ in range(32))


@dataclass
class MonitorConfig:
    poll_interval_seconds: float = 30.0
    max_wait_seconds: float = 900.0
    password_prefix: str = "7On"
    ollama_project_id: Optional[str] = None
    internal_ollama_url: str = "http://ollama.internal:11434"
    lock_ttl_seconds: float = 1200.0

    @classmethod
    def from_settings(cls, settings) -> "MonitorConfig":
        return cls(
            poll_interval_seconds=settings.provision_poll_interval_seconds,
            max_wait_seconds=settings.provision_max_wait_seconds,
            password_prefix=settings.workflow_password_prefix,
            ollama_project_id=settings.ollama_project_id,
            internal_ollama_url=settings.internal_ollama_url,
            lock_ttl_seconds=settings.provision_lock_ttl_seconds,
        )


class ProvisioningMonitor:
    """Polls a template run until the tenant backend is ready.

    Polling uses a fixed interval without jitter. The attempt count is
    bounded by ``ceil(budget / interval)`` and the last sleep is clipped so
    total polling never exceeds the budget. State is written to the store
    after every transition, and ``run`` always leaves a terminal status
    unless the task itself is cancelled. The lock is renewed on every poll
    and before finalizing; a monitor that finds it taken stops without
    writing.
    """

    def __init__(
        self,
        *,
        store,
        platform: CloudPlatformClient,
        workflow: WorkflowEngineClient,
        tenant_stores: Callable[[str], Any],
        config: MonitorConfig,
        user_id: str,
        template_run_id: str,
        lock_owner: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.platform = platform
        self.workflow = workflow
        self.tenant_stores = tenant_stores
        self.config = config
        self.user_id = user_id
        self.template_run_id = template_run_id
        self.lock_owner = lock_owner
        self._clock = clock
        self._sleep = sleep
        self.status = ProvisioningStatus.INITIATED
        self.project_id: Optional[str] = None
        self.attempts = 0

    def _budget_seconds(self, user: User) -> float:
        # A resumed monitor only gets what is left of the original budget.
        started_at = as_utc(user.provisioning_started_at)
        if started_at is None:
            return self.config.max_wait_seconds
        elapsed = (utcnow() - started_at).total_seconds()
        return max(0.0, self.config.max_wait_seconds - max(0.0, elapsed))

    async def run(self) -> ProvisioningStatus:
        try:
            user = self.store.get_user(self.user_id)
            if user is None:
                logger.warning("provision_monitor_user_missing", user_id=self.user_id)
                return ProvisioningStatus.FAILED
            self.status = ProvisioningStatus(
                user.project_status or ProvisioningStatus.INITIATED.value
            )
            self.project_id = user.project_id
            budget = self._budget_seconds(user)
            interval = self.config.poll_interval_seconds
            max_attempts = max(1, math.ceil(budget / interval)) if interval > 0 else 1
            deadline = self._clock() + budget
            logger.info(
                "provision_monitor_started",
                user_id=self.user_id,
                template_run_id=self.template_run_id,
                status=self.status.value,
                budget_seconds=budget,
                max_attempts=max_attempts,
            )
            while not self.status.terminal:
                self.attempts += 1
                self._renew_lock()
                await self._advance()
                if self.status.terminal:
                    break
                remaining = deadline - self._clock()
                if self.attempts >= max_attempts or remaining <= 0:
                    self._apply(transition(self.status, PollResult(), deadline_reached=True))
                    break
                await self._sleep(min(interval, remaining))
        except ProvisioningLockLost:
            logger.warning(
                "provision_monitor_lock_lost", user_id=self.user_id, status=self.status.value
            )
            return self.status
        except Exception as exc:
            logger.exception("provision_monitor_crashed", user_id=self.user_id, error=str(exc))
            self._apply(
                Transition(ProvisioningStatus.FAILED, error=sanitize_error_message(str(exc)))
            )
        finally:
            self._release_lock()
        logger.info(
            "provision_monitor_finished",
            user_id=self.user_id,
            status=self.status.value,
            attempts=self.attempts,
        )
        return self.status

    def _renew_lock(self) -> None:
        """Extend the lock by a full TTL; raises when another owner holds it."""
        if not self.lock_owner:
            return
        if not self.store.acquire_provisioning_lock(
            self.user_id, self.lock_owner, self.config.lock_ttl_seconds
        ):
            raise ProvisioningLockLost(self.user_id)

    def _release_lock(self) -> None:
        if self.lock_owner:
            self.store.release_provisioning_lock(self.user_id, self.lock_owner)

    async def _poll(self) -> PollResult:
        try:
            if self.status is ProvisioningStatus.INITIATED:
                run = await self.platform.get_template_run(self.template_run_id)
                return PollResult(project_id=resolve_project_id(run))
            if self.status is ProvisioningStatus.DEPLOYING and self.project_id:
                return PollResult(host=await self.platform.find_workflow_host(self.project_id))
        except PlatformError as exc:
            logger.warning(
                "provision_poll_failed",
                user_id=self.user_id,
                status_code=exc.status,
                recoverable=exc.recoverable,
            )
            return PollResult(error=exc.message, recoverable=exc.recoverable)
        except ServiceError as exc:
            logger.warning("provision_poll_failed", user_id=self.user_id, error=exc.message)
            return PollResult(error=exc.message)
        return PollResult()

    async def _advance(self) -> None:
        # At most: attach project, then finalize, within one poll.
        for _ in range(2):
            observed = await self._poll()
            step = transition(self.status, observed)
            if step.action is Action.ATTACH_PROJECT:
                await self._attach(observed.project_id)
                self._apply(step)
                continue
            if step.action is Action.FINALIZE:
                self._renew_lock()
                outcome = await self._finalize(observed.host)
                self._apply(transition(self.status, outcome))
                return
            self._apply(step)
            return

    def _apply(self, step: Transition) -> None:
        if step.status is self.status and step.error is None and step.action is None:
            return
        fields: Dict[str, Any] = {"project_status": step.status.value}
        if step.action is Action.ATTACH_PROJECT:
            fields["project_id"] = self.project_id
        if step.error:
            fields["setup_error"] = step.error
        self.store.update_user(self.user_id, **fields)
        logger.info(
            "provision_transition",
            user_id=self.user_id,
            from_status=self.status.value,
            to_status=step.status.value,
            action=step.action.value if step.action else None,
            error=step.error,
        )
        self.status = step.status

    async def _attach(self, project_id: str) -> None:
        self.project_id = project_id
        if not self.config.ollama_project_id:
            return
        try:
            await self.platform.add_ingress_project(self.config.ollama_project_id, project_id)
        except ServiceError as exc:
            logger.warning("provision_ingress_failed", user_id=self.user_id, error=exc.message)

    async def _finalize(self, host: WorkflowHost) -> PollResult:
        """Chain the post-deploy setup steps, persisting every value reached."""
        user = self.store.get_user(self.user_id)
        email = user.workflow_user_email or user.email
        password = workflow_password(self.config.password_prefix, user.workflow_encryption_key or "")
        reached: Dict[str, Any] = {
            "workflow_url": host.url,
            "workflow_user_email": email,
            "platform_secret_data": host.secrets,
            "template_completed_at": utcnow(),
        }

        project_name = "Unknown"
        try:
            project = await self.platform.get_project(self.project_id)
            if project and project.get("name"):
                project_name = project["name"]
        except ServiceError as exc:
            logger.warning("provision_project_name_failed", user_id=self.user_id, error=exc.message)
        reached["project_name"] = project_name

        try:
            await self.platform.set_workflow_service_env(
                self.project_id, {"OLLAMA_URL": self.config.internal_ollama_url}
            )
        except ServiceError as exc:
            logger.warning("provision_service_env_failed", user_id=self.user_id, error=exc.message)

        reached["workflow_api_key"] = await self.workflow.create_api_key(
            host.url, email, password, fallback=user.workflow_api_key
        )

        setup_error: Optional[str] = None
        try:
            config = await self.platform.get_postgres_connection(self.project_id)
            if config is None:
                raise ServerError("Failed to get Postgres connection")
            tenant_store = self.tenant_stores(config.connection_string)
            await asyncio.to_thread(tenant_store.initialize_schema, config.admin_connection_string)
            reached["postgres_schema_initialized"] = True
            reached["postgres_setup_at"] = utcnow()
            reached["workflow_postgres_credential_id"] = await self.workflow.create_postgres_credential(
                host.url, email, password, config
            )
        except (ServiceError, TenantStoreError) as exc:
            setup_error = exc.message if isinstance(exc, ServiceError) else str(exc)
            setup_error = sanitize_error_message(setup_error)
            logger.error("provision_postgres_setup_failed", user_id=self.user_id, error=setup_error)
        reached["postgres_setup_error"] = setup_error

        self.store.update_user(self.user_id, **reached)
        return PollResult(setup_ok=setup_error is None, setup_error=setup_error)


class ProvisioningService:
    """Starts, deduplicates and resumes tenant provisioning."""

    def __init__(
        self,
        *,
        store,
        platform: CloudPlatformClient,
        workflow: WorkflowEngineClient,
        tenant_stores: Callable[[str], Any],
        settings,
        spawn: Callable[[Awaitable[Any], str], Any],
    ) -> None:
        self.store = store
        self.platform = platform
        self.workflow = workflow
        self.tenant_stores = tenant_stores
        self.settings = settings
        self.spawn = spawn
        self.monitor_config = MonitorConfig.from_settings(settings)

    def _monitor(self, user_id: str, template_run_id: str, lock_owner: str) -> ProvisioningMonitor:
        return ProvisioningMonitor(
            store=self.store,
            platform=self.platform,
            workflow=self.workflow,
            tenant_stores=self.tenant_stores,
            config=self.monitor_config,
            user_id=user_id,
            template_run_id=template_run_id,
            lock_owner=lock_owner,
        )

    async def start(self, user: User) -> Dict[str, Any]:
        owner = uuid.uuid4().hex
        if not self.store.acquire_provisioning_lock(
            user.id, owner, self.settings.provision_lock_ttl_seconds
        ):
            logger.info("provision_already_in_progress", user_id=user.id)
            return {"success": True, "status": "in_progress", "message": IN_PROGRESS_MESSAGE}

        handed_off = False
        try:
            user = self.store.get_user(user.id) or user
            status = ProvisioningStatus(user.project_status) if user.project_status else None

            if status is not None and status.monitored and user.template_run_id:
                self.spawn(
                    self._monitor(user.id, user.template_run_id, owner).run(),
                    f"provision-monitor-{user.id}",
                )
                handed_off = True
                logger.info("provision_monitor_resumed", user_id=user.id, status=status.value)
                return {
                    "success": True,
                    "status": "monitoring_resumed",
                    "templateRun": {"id": user.template_run_id, "status": status.value},
                    "message": "Resumed monitoring of an interrupted deployment",
                }

            if user.project_id:
                existing = await self._existing(user)
                if existing is not None:
                    return existing

            try:
                response = await self._start_template(user)
            except ServiceError as template_error:
                logger.warning(
                    "provision_template_failed", user_id=user.id, error=template_error.message
                )
                return await self._start_manual(user)
            self.spawn(
                self._monitor(user.id, response["templateRun"]["id"], owner).run(),
                f"provision-monitor-{user.id}",
            )
            handed_off = True
            return response
        finally:
            if not handed_off:
                self.store.release_provisioning_lock(user.id, owner)

    async def _existing(self, user: User) -> Optional[Dict[str, Any]]:
        project = await self.platform.get_project(user.project_id)
        if project is None:
            logger.info("provision_existing_project_missing", user_id=user.id, project_id=user.project_id)
            return None

        workflow_url = user.workflow_url
        if not workflow_url:
            host = await self.platform.find_workflow_host(user.project_id)
            if host:
                workflow_url = host.url
                self.store.update_user(
                    user.id, workflow_url=host.url, platform_secret_data=host.secrets
                )
                if not user.workflow_api_key and user.workflow_encryption_key:
                    self.spawn(self._backfill_api_key(user, host.url), f"api-key-backfill-{user.id}")

        return {
            "success": True,
            "project": {"id": project.get("id"), "name": project.get("name"), "status": "existing"},
            "workflow_url": workflow_url,
            "apiKey": "[STORED]" if user.workflow_api_key else "[NOT SET]",
            "message": "User already has an existing project",
        }

    async def _backfill_api_key(self, user: User, workflow_url: str) -> None:
        email = user.workflow_user_email or user.email
        password = workflow_password(
            self.monitor_config.password_prefix, user.workflow_encryption_key or ""
        )
        api_key = await self.workflow.create_api_key(
            workflow_url, email, password, fallback=generate_fallback_api_key()
        )
        if api_key:
            self.store.update_user(user.id, workflow_api_key=api_key)

    def _template_arguments(self, user: User, encryption_key: str) -> Dict[str, Any]:
        missing = self.settings.missing_template_env()
        if missing:
            raise ServerError(f"Missing required environment variables: {', '.join(missing)}")
        return {
            "id": user.id[:8],
            "clerk_user_id": user.identity_id,
            "user_id": user.id,
            "user_email": user.email,
            "user_name": user.first_name,
            "webhook_url": self.settings.webhook_url,
            "webhook_token": self.settings.webhook_auth_token,
            "N8N_ENCRYPTION_KEY": encryption_key,
            "neon_database_url": self.settings.template_database_url,
            "google_oauth_client_id": self.settings.google_oauth_client_id,
            "google_oauth_client_secret": self.settings.google_oauth_client_secret,
        }

    async def _start_template(self, user: User) -> Dict[str, Any]:
        encryption_key = generate_encryption_key()
        arguments = self._template_arguments(user, encryption_key)
        run = await self.platform.start_template_run(arguments)
        run_id = run.get("id")
        if not run_id:
            raise PlatformError("Template run returned no id")
        self.store.update_user(
            user.id,
            template_run_id=run_id,
            workflow_user_email=user.email,
            workflow_encryption_key=encryption_key,
            workflow_api_key=generate_fallback_api_key(),
            project_status=ProvisioningStatus.INITIATED.value,
            provisioning_started_at=utcnow(),
            setup_error=None,
        )
        logger.info("provision_template_started", user_id=user.id, template_run_id=run_id)
        return {
            "success": True,
            "method": "template",
            "templateRun": {"id": run_id, "status": ProvisioningStatus.INITIATED.value},
            "message": "Template deployment initiated",
            "estimatedTime": "5-10 minutes",
            "userCredentials": {"email": user.email, "encryptionKey": encryption_key},
        }

    async def _start_manual(self, user: User) -> Dict[str, Any]:
        encryption_key = generate_encryption_key()
        suffix = str(int(time.time() * 1000))[-6:]
        name = f"{self.settings.platform_template_id}-{user.id[:8]}-{suffix}".lower()
        try:
            project = await self.platform.create_project(
                name,
                f"Workflow project for user {user.name or user.email}",
                self.settings.platform_region,
            )
            if not project.get("id"):
                raise PlatformError("Project creation returned no id")
        except ServiceError as exc:
            error = sanitize_error_message(exc.message)
            self.store.update_user(
                user.id, project_status=ProvisioningStatus.FAILED.value, setup_error=error
            )
            logger.error("provision_failed", user_id=user.id, error=error)
            raise ServerError(error) from exc

        self.store.update_user(
            user.id,
            project_id=project["id"],
            project_name=project.get("name"),
            project_status=ProvisioningStatus.MANUAL.value,
            workflow_user_email=user.email,
            workflow_encryption_key=encryption_key,
            provisioning_started_at=utcnow(),
            setup_error=None,
        )
        logger.info("provision_manual_project_created", user_id=user.id, project_id=project["id"])
        return {
            "success": True,
            "method": "manual",
            "project": {"id": project["id"], "name": project.get("name"), "status": "created"},
            "message": "Basic project created successfully.",
            "userCredentials": {"email": user.email, "encryptionKey": encryption_key},
        }

    def resume_pending(self) -> int:
        """Restart monitors for tenants left mid-provisioning by a previous process."""
        resumed = 0
        statuses = [s.value for s in ProvisioningStatus if s.monitored]
        for user in self.store.list_users_by_project_status(statuses):
            if not user.template_run_id:
                continue
            owner = uuid.uuid4().hex
            if not self.store.acquire_provisioning_lock(
                user.id, owner, self.settings.provision_lock_ttl_seconds
            ):
                logger.info("provision_resume_skipped_locked", user_id=user.id)
                continue
            self.spawn(
                self._monitor(user.id, user.template_run_id, owner).run(),
                f"provision-monitor-{user.id}",
            )
            resumed += 1
        if resumed:
            logger.info("provision_monitors_resumed", count=resumed)
        return resumed

    def status(self, user: User) -> Dict[str, Any]:
        return {
            "workflow_ready": user.project_status == ProvisioningStatus.READY.value
            and bool(user.workflow_url),
            "project_id": user.project_id,
            "project_name": user.project_name,
            "project_status": user.project_status,
            "workflow_url": user.workflow_url,
            "template_completed_at": user.template_completed_at,
            "setup_error": user.setup_error,
            "postgres_schema_initialized": user.postgres_schema_initialized,
            "workflow_postgres_credential_id": user.workflow_postgres_credential_id,
            "postgres_setup_error": user.postgres_setup_error,
            "postgres_setup_at": user.postgres_setup_at,
        }
