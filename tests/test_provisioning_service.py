"""Tests for starting, deduplicating and resuming tenant provisioning."""

from __future__ import annotations

import asyncio
import uuid

import pytest

from ethosync.service.errors import ServerError
from ethosync.service.platform import PlatformError, WorkflowHost
from ethosync.service.provisioning import IN_PROGRESS_MESSAGE, ProvisioningService


@pytest.fixture
def template_service(runtime, fakes, spawn_recorder):
    """A provisioning service with every template argument configured."""
    settings = runtime.settings.model_copy(
        update={
            "template_database_url": "postgresql://tpl:pw@template.example:5432/shared",
            "google_oauth_client_id": "client-id",
            "google_oauth_client_secret": "client-secret",
            "webhook_url": "https://hooks.example/v1/webhooks/conversation",
            "webhook_auth_token": "hook-token",
        }
    )
    return ProvisioningService(
        store=runtime.store,
        platform=fakes.platform,
        workflow=fakes.workflow,
        tenant_stores=runtime.tenant_store,
        settings=settings,
        spawn=spawn_recorder,
    )


class TestTemplateProvisioning:
    async def test_concurrent_starts_run_one_workflow(
        self, runtime, fakes, make_user, template_service, spawn_recorder
    ):
        user, _ = make_user()

        results = await asyncio.gather(template_service.start(user), template_service.start(user))

        assert len(fakes.platform.template_calls) == 1
        in_progress = [r for r in results if r.get("status") == "in_progress"]
        started = [r for r in results if r.get("method") == "template"]
        assert len(in_progress) == 1
        assert len(started) == 1
        assert in_progress[0]["message"] == IN_PROGRESS_MESSAGE
        assert spawn_recorder.names == [f"provision-monitor-{user.id}"]

    async def test_start_records_template_run(self, runtime, fakes, make_user, template_service):
        user, _ = make_user()

        result = await template_service.start(user)

        assert result["success"] is True
        assert result["templateRun"]["status"] == "initiated"
        stored = runtime.store.get_user(user.id)
        assert stored.project_status == "initiated"
        assert stored.template_run_id == result["templateRun"]["id"]
        assert stored.workflow_encryption_key == result["userCredentials"]["encryptionKey"]
        assert stored.provisioning_started_at is not None
        arguments = fakes.platform.template_calls[0]
        assert arguments["user_id"] == user.id
        assert arguments["id"] == user.id[:8]
        assert arguments["N8N_ENCRYPTION_KEY"] == stored.workflow_encryption_key
        assert arguments["user_name"] == "Test"

    async def test_lock_held_by_monitor_blocks_second_request(
        self, fakes, make_user, template_service
    ):
        user, _ = make_user()
        await template_service.start(user)

        again = await template_service.start(user)

        assert again["status"] == "in_progress"
        assert len(fakes.platform.template_calls) == 1

    async def test_expired_lock_can_be_taken_over(self, runtime, fakes, make_user, template_service):
        user, _ = make_user()
        assert runtime.store.acquire_provisioning_lock(user.id, "crashed-worker", -1)

        result = await template_service.start(user)

        assert result["method"] == "template"

    async def test_interrupted_deployment_is_resumed(
        self, runtime, fakes, make_user, template_service, spawn_recorder
    ):
        user, _ = make_user(project_status="deploying", template_run_id="run-7", project_id="proj-7")

        result = await template_service.start(user)

        assert result["status"] == "monitoring_resumed"
        assert result["templateRun"] == {"id": "run-7", "status": "deploying"}
        assert fakes.platform.template_calls == []
        assert spawn_recorder.names == [f"provision-monitor-{user.id}"]


class TestManualProvisioning:
    async def test_missing_template_env_falls_back_to_manual_project(self, runtime, fakes, make_user):
        user, _ = make_user()

        result = await runtime.provisioning.start(user)

        assert result["method"] == "manual"
        assert fakes.platform.template_calls == []
        stored = runtime.store.get_user(user.id)
        assert stored.project_status == "manual"
        assert stored.project_id == result["project"]["id"]
        assert runtime.store.get_provisioning_lock(user.id) is None

    async def test_manual_failure_marks_failed_and_releases_lock(self, runtime, fakes, make_user):
        fakes.platform.project_error = PlatformError("Cloud platform error: quota exceeded", status=400)
        user, _ = make_user()

        with pytest.raises(ServerError) as excinfo:
            await runtime.provisioning.start(user)

        assert excinfo.value.message == "Cloud platform error: quota exceeded"
        stored = runtime.store.get_user(user.id)
        assert stored.project_status == "failed"
        assert stored.setup_error == "Cloud platform error: quota exceeded"
        assert runtime.store.acquire_provisioning_lock(user.id, "next", 60)


class TestExistingProject:
    async def test_existing_project_reports_host_and_backfills_key(self, runtime, fakes, make_user):
        host = WorkflowHost(url="https://n8n-existing.example", secrets={"N8N_HOST": "n8n-existing.example"})
        fakes.platform.projects["proj-old"] = {"id": "proj-old", "name": "sunday-old"}
        fakes.platform.hosts["proj-old"] = host
        user, _ = make_user(project_id="proj-old", workflow_encryption_key="k3y")

        result = await runtime.provisioning.start(user)

        assert result["project"] == {"id": "proj-old", "name": "sunday-old", "status": "existing"}
        assert result["workflow_url"] == host.url
        assert result["apiKey"] == "[NOT SET]"
        assert runtime.store.get_user(user.id).workflow_url == host.url
        assert fakes.spawn.names == [f"api-key-backfill-{user.id}"]

    async def test_vanished_project_provisions_again(self, runtime, fakes, make_user):
        user, _ = make_user(project_id="proj-gone")

        result = await runtime.provisioning.start(user)

        assert result["method"] == "manual"
        assert len(fakes.platform.project_calls) == 1


class TestResumeAndStatus:
    def test_resume_pending_skips_live_locks(self, runtime, fakes):
        free = runtime.store.create_user(f"idp_{uuid.uuid4().hex}", "free@example.com")
        runtime.store.update_user(free.id, project_status="deploying", template_run_id="run-a")
        locked = runtime.store.create_user(f"idp_{uuid.uuid4().hex}", "locked@example.com")
        runtime.store.update_user(locked.id, project_status="initiated", template_run_id="run-b")
        assert runtime.store.acquire_provisioning_lock(locked.id, "other-worker", 600)

        resumed = runtime.provisioning.resume_pending()

        assert resumed >= 1
        assert f"provision-monitor-{free.id}" in fakes.spawn.names
        assert f"provision-monitor-{locked.id}" not in fakes.spawn.names

    def test_status_reports_workflow_ready(self, runtime, make_user):
        user, _ = make_user(
            project_id="proj-s",
            project_status="ready",
            workflow_url="https://n8n-s.example",
            postgres_schema_initialized=True,
        )

        status = runtime.provisioning.status(user)

        assert status["workflow_ready"] is True
        assert status["project_id"] == "proj-s"
        assert status["postgres_schema_initialized"] is True

    def test_status_not_ready_without_url(self, runtime, make_user):
        user, _ = make_user(project_status="ready")
        assert runtime.provisioning.status(user)["workflow_ready"] is False
