"""Adapter fine-tuning runs on the cloud platform.

The service checks that a tenant has enough approved interaction memories,
records a ``training_jobs`` row in the tenant database, triggers the
platform job and hands the run to a detached :class:`TrainingMonitor`.
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from ethosync.logging import get_logger, sanitize_error_message
from ethosync.service.errors import ConflictError, ServiceError, ValidationError
from ethosync.service.platform import CloudPlatformClient, PlatformError
from ethosync.service.tenant_setup import TenantHandle
from ethosync.storage.errors import TenantStoreError
from ethosync.storage.models import CLASSIFICATIONS, User, utcnow

logger = get_logger(__name__)

TRAINING = "training"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

SUPERSEDED_MESSAGE = "Superseded by a newer training run"

_RUN_SUCCEEDED = {"success", "succeeded", "completed"}
_RUN_FAILED = {"failed", "failure", "aborted", "error", "cancelled"}

DEFAULT_STATS = {cls: 0 for cls in CLASSIFICATIONS if cls != "neutral_interaction"}
DEFAULT_STATS["total"] = 0


def run_outcome(run: Optional[Dict[str, Any]]) -> Optional[str]:
    """Map a platform job run to ``completed``/``failed``, or None while it runs."""
    if not run:
        return None
    status = str(run.get("status") or "").lower()
    if status in _RUN_SUCCEEDED:
        return COMPLETED
    if status in _RUN_FAILED:
        return FAILED
    return None


def training_stats(tenant_store, user_id: str) -> Dict[str, Any]:
    counts = tenant_store.training_counts(user_id)
    profile = tenant_store.get_profile(user_id)
    snapshot = None
    if profile is not None:
        snapshot = {"growth_stage": profile.growth_stage, **profile.dimensions()}
    return {"approved": counts["approved"], "pending": counts["pending"], "profile": snapshot}


class TrainingMonitor:
    """Polls one platform job run until it finishes, the tenant cancels, or the budget runs out."""

    def __init__(
        self,
        *,
        store,
        platform: CloudPlatformClient,
        tenant_store,
        user_id: str,
        project_id: str,
        job_id: str,
        run_id: str,
        training_id: str,
        adapter_version: str,
        poll_interval: float = 60.0,
        max_wait: float = 7200.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.platform = platform
        self.tenant_store = tenant_store
        self.user_id = user_id
        self.project_id = project_id
        self.job_id = job_id
        self.run_id = run_id
        self.training_id = training_id
        self.adapter_version = adapter_version
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self._clock = clock
        self._sleep = sleep

    def _stop_reason(self) -> Optional[str]:
        """Why this run no longer owns the tenant's training state, or None while it does.

        A cancel followed by a new start puts the tenant back in ``training``
        under a different adapter version; the old run must not report into it.
        """
        user = self.store.get_user(self.user_id)
        if user is None or user.training_status != TRAINING:
            return "Cancelled by user"
        if user.adapter_version != self.adapter_version:
            return SUPERSEDED_MESSAGE
        return None

    def _stop(self, reason: str) -> str:
        self._finish_job(CANCELLED, reason)
        logger.info(
            "training_monitor_stopped", user_id=self.user_id, training_id=self.training_id, reason=reason
        )
        return CANCELLED

    async def run(self) -> str:
        max_attempts = max(1, math.ceil(self.max_wait / self.poll_interval)) if self.poll_interval > 0 else 1
        deadline = self._clock() + self.max_wait
        attempt = 0
        while True:
            attempt += 1
            reason = self._stop_reason()
            if reason:
                return self._stop(reason)
            try:
                outcome = run_outcome(
                    await self.platform.get_job_run(self.project_id, self.job_id, self.run_id)
                )
            except ServiceError as exc:
                logger.warning("training_monitor_poll_failed", user_id=self.user_id, error=exc.message)
                outcome = None
            if outcome is not None:
                # The tenant may have cancelled or restarted while the poll was in flight.
                reason = self._stop_reason()
                if reason:
                    return self._stop(reason)
            if outcome == COMPLETED:
                self.store.update_user(
                    self.user_id,
                    training_status=COMPLETED,
                    adapter_version=self.adapter_version,
                    last_trained_at=utcnow(),
                    training_error=None,
                )
                self._finish_job(COMPLETED)
                logger.info("training_completed", user_id=self.user_id, adapter_version=self.adapter_version)
                return COMPLETED
            if outcome == FAILED:
                return self._fail("Training run failed")
            remaining = deadline - self._clock()
            if attempt >= max_attempts or remaining <= 0:
                return self._fail("Training did not finish within time limit")
            await self._sleep(min(self.poll_interval, remaining))

    def _fail(self, message: str) -> str:
        self.store.update_user(self.user_id, training_status=FAILED, training_error=message)
        self._finish_job(FAILED, message)
        logger.warning("training_failed", user_id=self.user_id, training_id=self.training_id, error=message)
        return FAILED

    def _finish_job(self, status: str, error: Optional[str] = None) -> None:
        try:
            self.tenant_store.update_training_job(
                self.training_id,
                status=status,
                error_message=error,
                completed_at=utcnow(),
            )
        except TenantStoreError as exc:
            logger.warning("training_job_update_failed", training_id=self.training_id, error=str(exc))


class TrainingService:
    def __init__(
        self,
        *,
        store,
        platform: CloudPlatformClient,
        settings,
        spawn: Callable[[Awaitable[Any], str], Any],
    ) -> None:
        self.store = store
        self.platform = platform
        self.settings = settings
        self.spawn = spawn

    def check_can_start(self, user: User) -> None:
        if not user.project_id:
            raise ValidationError("Project not found")
        if not user.postgres_schema_initialized:
            raise ValidationError("Database not initialized")
        if user.training_status == TRAINING:
            raise ConflictError("Training already in progress", extra={"status": TRAINING})

    async def start(self, user: User, tenant: TenantHandle) -> Dict[str, Any]:
        self.check_can_start(user)
        minimum = self.settings.training_min_samples
        stats = training_stats(tenant.store, user.id)
        if stats["approved"]["total"] < minimum:
            raise ValidationError(
                f"Not enough approved training data (need at least {minimum} samples)",
                extra={"current": stats["approved"]["total"], "stats": stats},
            )
        if stats["pending"]["total"] > 0:
            approved = tenant.store.auto_approve(user.id, exclude=("needs_support",))
            logger.info("training_auto_approved", user_id=user.id, approved=approved)
            stats = training_stats(tenant.store, user.id)
            if stats["approved"]["total"] < minimum:
                raise ValidationError(
                    "Still not enough data after auto-approval",
                    extra={"current": stats["approved"]["total"], "stats": stats},
                )

        adapter_version = f"v{int(time.time() * 1000)}"
        training_id = f"train-{user.id[:8]}-{adapter_version}"
        job_name = self.settings.training_job_id

        self.store.update_user(
            user.id, training_status=TRAINING, adapter_version=adapter_version, training_error=None
        )
        tenant.store.create_training_job(
            user.id,
            training_id,
            adapter_version,
            job_name=job_name,
            status="running",
            total_samples=stats["approved"]["total"],
            dataset_composition=stats["approved"],
            ethical_profile_snapshot=stats["profile"],
            growth_stage_at_training=(stats["profile"] or {}).get("growth_stage"),
            metadata={"ethical_profile": stats["profile"], "training_mode": "ethical_growth"},
            started_at=utcnow(),
        )

        try:
            run = await self.platform.trigger_job_run(
                user.project_id,
                job_name,
                {
                    "POSTGRES_URI": tenant.connection_string,
                    "USER_ID": user.id,
                    "MODEL_NAME": self.settings.training_base_model,
                    "ADAPTER_VERSION": adapter_version,
                    "OUTPUT_PATH": self.settings.training_output_path,
                    "TRAINING_MODE": "ethical_growth",
                },
            )
            if not (run or {}).get("id"):
                raise PlatformError("Job run returned no id")
        except ServiceError as exc:
            reason = exc.message
            if isinstance(exc, PlatformError) and isinstance(exc.body, dict):
                reason = exc.body.get("message") or reason
            message = f"Failed to start training: {sanitize_error_message(reason)}"
            self.store.update_user(user.id, training_status=FAILED, training_error=message)
            tenant.store.update_training_job(
                training_id, status=FAILED, error_message=message, completed_at=utcnow()
            )
            logger.error("training_trigger_failed", user_id=user.id, training_id=training_id, error=message)
            raise

        run_id = run["id"]
        monitor = TrainingMonitor(
            store=self.store,
            platform=self.platform,
            tenant_store=tenant.store,
            user_id=user.id,
            project_id=user.project_id,
            job_id=job_name,
            run_id=run_id,
            training_id=training_id,
            adapter_version=adapter_version,
            poll_interval=self.settings.training_poll_interval_seconds,
            max_wait=self.settings.training_max_wait_seconds,
        )
        self.spawn(monitor.run(), f"training-monitor-{user.id}")
        logger.info(
            "training_started",
            user_id=user.id,
            training_id=training_id,
            run_id=run_id,
            samples=stats["approved"]["total"],
        )
        return {
            "success": True,
            "status": TRAINING,
            "trainingId": training_id,
            "adapterVersion": adapter_version,
            "runId": run_id,
            "message": "Ethical growth training started successfully",
            "estimatedTime": "10-30 minutes",
            "stats": stats["approved"],
            "profile": stats["profile"],
        }

    def status(self, user: User, tenant: Optional[TenantHandle]) -> Dict[str, Any]:
        stats = None
        profile = None
        if tenant is not None:
            current = training_stats(tenant.store, user.id)
            stats = current["approved"]
            profile = current["profile"]
        return {
            "status": user.training_status or "idle",
            "currentVersion": user.adapter_version,
            "lastTrainedAt": user.last_trained_at,
            "error": user.training_error,
            "stats": stats or dict(DEFAULT_STATS),
            "profile": profile,
        }

    def cancel(self, user: User) -> Dict[str, Any]:
        if user.training_status != TRAINING:
            raise ValidationError("No training in progress")
        self.store.update_user(user.id, training_status=CANCELLED, training_error="Cancelled by user")
        logger.info("training_cancelled", user_id=user.id)
        return {"success": True, "message": "Training cancelled"}
