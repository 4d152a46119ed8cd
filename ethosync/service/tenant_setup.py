from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict

from ethosync.logging import get_logger, sanitize_error_message
from ethosync.service.errors import (
    DependencyUnavailableError,
    ServerError,
    ServiceError,
    ValidationError,
)
from ethosync.service.platform import CloudPlatformClient
from ethosync.service.provisioning import ProvisioningStatus
from ethosync.service.workflow_engine import WorkflowEngineClient, workflow_password
from ethosync.storage.errors import TenantStoreError
from ethosync.storage.models import User, utcnow

logger = get_logger(__name__)


@dataclass
class TenantHandle:
    """A tenant's data store together with the connection string it was opened with."""

    store: Any
    connection_string: str


class TenantConnector:
    """Opens the tenant database behind a user's cloud project."""

    def __init__(self, platform: CloudPlatformClient, tenant_stores: Callable[[str], Any]) -> None:
        self.platform = platform
        self.tenant_stores = tenant_stores

    async def connect(self, user: User, *, require_initialized: bool = True) -> TenantHandle:
        if require_initialized and not (user.postgres_schema_initialized and user.project_id):
            raise ValidationError("Database not initialized")
        if not user.project_id:
            raise ValidationError("Project not found")
        try:
            config = await self.platform.get_connection_string(user.project_id)
        except ServiceError as exc:
            logger.warning("tenant_connection_lookup_failed", user_id=user.id, error=exc.message)
            raise DependencyUnavailableError(
                "Database connection failed", details=sanitize_error_message(exc.message)
            ) from exc
        if config is None:
            logger.warning("tenant_connection_missing", user_id=user.id, project_id=user.project_id)
            raise DependencyUnavailableError("Database connection failed")
        return TenantHandle(
            store=self.tenant_stores(config.connection_string),
            connection_string=config.connection_string,
        )


class TenantSetupService:
    """Bootstraps a tenant database and registers it with the workflow engine.

    Used for tenants whose provisioning finished without a working database,
    so a failed bootstrap can be retried.
    """

    def __init__(
        self,
        *,
        store,
        platform: CloudPlatformClient,
        workflow: WorkflowEngineClient,
        tenant_stores: Callable[[str], Any],
        password_prefix: str = "7On",
    ) -> None:
        self.store = store
        self.platform = platform
        self.workflow = workflow
        self.tenant_stores = tenant_stores
        self.password_prefix = password_prefix

    async def setup(self, user: User) -> Dict[str, Any]:
        if user.postgres_schema_initialized and user.workflow_postgres_credential_id:
            return {
                "success": True,
                "message": "Database already initialized",
                "credentialId": user.workflow_postgres_credential_id,
            }
        if not user.project_id:
            raise ValidationError(
                "No project found. Please wait for deployment to complete."
            )
        if user.project_status not in (ProvisioningStatus.READY.value, ProvisioningStatus.FAILED.value):
            raise ValidationError(
                f"Project not ready yet. Current status: {user.project_status}",
                extra={"status": user.project_status},
            )
        if not user.workflow_url or not user.workflow_encryption_key:
            raise ValidationError("Workflow engine configuration missing. Please contact support.")

        config = await self.platform.get_postgres_connection(user.project_id)
        if config is None:
            raise ServerError("Failed to connect to database. Please try again.")

        try:
            tenant_store = self.tenant_stores(config.connection_string)
            await asyncio.to_thread(tenant_store.initialize_schema, config.admin_connection_string)
        except TenantStoreError as exc:
            message = sanitize_error_message(str(exc))
            self.store.update_user(user.id, postgres_setup_error=f"Schema error: {message}")
            logger.error("tenant_schema_failed", user_id=user.id, error=message)
            raise ServerError("Failed to initialize database schema", details=message) from exc

        email = user.workflow_user_email or user.email
        try:
            credential_id = await self.workflow.create_postgres_credential(
                user.workflow_url,
                email,
                workflow_password(self.password_prefix, user.workflow_encryption_key),
                config,
            )
        except ServiceError as exc:
            message = sanitize_error_message(exc.details or exc.message)
            self.store.update_user(
                user.id,
                postgres_schema_initialized=True,
                postgres_setup_error=f"Credential error: {message}",
            )
            logger.error("tenant_credential_failed", user_id=user.id, error=message)
            raise ServerError("Failed to create workflow credential", details=message) from exc

        fields: Dict[str, Any] = {
            "postgres_schema_initialized": True,
            "workflow_postgres_credential_id": credential_id,
            "postgres_setup_error": None,
            "postgres_setup_at": utcnow(),
        }
        if user.project_status == ProvisioningStatus.FAILED.value:
            fields["project_status"] = ProvisioningStatus.READY.value
            fields["setup_error"] = None
        self.store.update_user(user.id, **fields)
        logger.info("tenant_setup_completed", user_id=user.id, credential_id=credential_id)
        return {
            "success": True,
            "message": "Database setup completed successfully",
            "credentialId": credential_id,
        }
