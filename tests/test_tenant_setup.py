"""Tests for tenant database bootstrap and connection lookup."""

from __future__ import annotations

import pytest

from ethosync.service.errors import DependencyUnavailableError, ServerError, ValidationError
from ethosync.service.workflow_engine import WorkflowEngineError
from ethosync.storage.common import parse_postgres_url

DSN = "postgresql://tenant:pw@db-setup.example:5432/tenantdb"


@pytest.fixture
def deployed_user(runtime, fakes, make_user):
    def _make(**fields):
        fakes.platform.postgres["proj-setup"] = parse_postgres_url(DSN)
        values = {
            "project_id": "proj-setup",
            "project_status": "ready",
            "workflow_url": "https://n8n-setup.example",
            "workflow_encryption_key": "k3y",
        }
        values.update(fields)
        user, _ = make_user(**values)
        return user

    return _make


class TestTenantSetup:
    async def test_setup_initializes_schema_and_credential(self, runtime, fakes, deployed_user):
        user = deployed_user()

        result = await runtime.tenant_setup.setup(user)

        assert result == {
            "success": True,
            "message": "Database setup completed successfully",
            "credentialId": "cred-1",
        }
        assert fakes.workflow.credential_calls == ["https://n8n-setup.example"]
        stored = runtime.store.get_user(user.id)
        assert stored.postgres_schema_initialized is True
        assert stored.workflow_postgres_credential_id == "cred-1"
        assert stored.postgres_setup_at is not None
        assert runtime.tenant_store(DSN).schema_initialized is True

    async def test_already_initialized_is_a_no_op(self, runtime, fakes, deployed_user):
        user = deployed_user(postgres_schema_initialized=True, workflow_postgres_credential_id="cred-0")

        result = await runtime.tenant_setup.setup(user)

        assert result["message"] == "Database already initialized"
        assert result["credentialId"] == "cred-0"
        assert fakes.workflow.credential_calls == []

    async def test_project_not_ready(self, runtime, fakes, deployed_user):
        user = deployed_user(project_status="deploying")

        with pytest.raises(ValidationError) as excinfo:
            await runtime.tenant_setup.setup(user)

        assert excinfo.value.message == "Project not ready yet. Current status: deploying"
        assert excinfo.value.extra == {"status": "deploying"}

    async def test_failed_project_can_be_retried(self, runtime, fakes, deployed_user):
        user = deployed_user(project_status="failed", setup_error="Credential error: boom")

        await runtime.tenant_setup.setup(user)

        stored = runtime.store.get_user(user.id)
        assert stored.project_status == "ready"
        assert stored.setup_error is None

    async def test_credential_failure_keeps_schema_flag(self, runtime, fakes, deployed_user):
        user = deployed_user()
        fakes.workflow.credential_error = WorkflowEngineError(
            "Workflow engine error", details="/rest/credentials returned 500"
        )

        with pytest.raises(ServerError) as excinfo:
            await runtime.tenant_setup.setup(user)

        assert excinfo.value.message == "Failed to create workflow credential"
        stored = runtime.store.get_user(user.id)
        assert stored.postgres_schema_initialized is True
        assert stored.postgres_setup_error == "Credential error: /rest/credentials returned 500"

    async def test_missing_workflow_configuration(self, runtime, fakes, deployed_user):
        user = deployed_user(workflow_url=None)

        with pytest.raises(ValidationError, match="Workflow engine configuration missing"):
            await runtime.tenant_setup.setup(user)


class TestTenantConnector:
    async def test_requires_initialized_schema(self, runtime, fakes, deployed_user):
        user = deployed_user()

        with pytest.raises(ValidationError) as excinfo:
            await runtime.connector.connect(user)

        assert excinfo.value.message == "Database not initialized"

    async def test_unreachable_database_is_503(self, runtime, fakes, deployed_user):
        user = deployed_user(postgres_schema_initialized=True)
        del fakes.platform.postgres["proj-setup"]

        with pytest.raises(DependencyUnavailableError) as excinfo:
            await runtime.connector.connect(user)

        assert excinfo.value.status_code == 503
        assert excinfo.value.message == "Database connection failed"

    async def test_connect_returns_cached_store(self, runtime, fakes, deployed_user):
        user = deployed_user(postgres_schema_initialized=True)

        first = await runtime.connector.connect(user)
        second = await runtime.connector.connect(user)

        assert first.connection_string == DSN
        assert first.store is second.store
