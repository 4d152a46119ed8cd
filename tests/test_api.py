"""HTTP-level tests for the orchestration API and its error envelope."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from ethosync import app as app_module
from ethosync.config import reset_settings_cache
from ethosync.storage.models import ETHICAL_DIMENSIONS


@pytest.fixture
def client():
    return TestClient(app_module.app, raise_server_exceptions=False)


def _seed_interactions(store, user_id, count=3):
    for i in range(count):
        store.add_interaction_memory(
            user_id, f"moment {i}", "growth_memory", {dim: 0.6 for dim in ETHICAL_DIMENSIONS}
        )


class TestEnvelopeAndMiddleware:
    def test_missing_bearer_is_401_envelope(self, client):
        response = client.get("/v1/provisioning/status")

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_invalid_body_is_400_envelope(self, client, fakes, ready_tenant):
        info = ready_tenant()
        deep = current = {}
        for _ in range(25):
            current["child"] = {}
            current = current["child"]

        response = client.post(
            "/v1/memories", json={"content": "x", "metadata": deep}, headers=info.headers
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Invalid request"
        assert "nesting depth" in body["details"]

    def test_request_id_echo_and_security_headers(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-abc-123"})

        assert response.headers["X-Request-ID"] == "req-abc-123"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"].startswith("no-store")

    def test_allowed_origins_default(self, monkeypatch):
        monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
        reset_settings_cache()
        assert "http://localhost:3000" in app_module._allowed_origins()

    def test_allowed_origins_override(self, monkeypatch):
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://app.example, https://demo.local")
        reset_settings_cache()
        assert app_module._allowed_origins() == ["https://app.example", "https://demo.local"]


class TestHealth:
    def test_healthz_without_optional_services(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert body["checks"]["embeddings"] == {"status": "not_configured"}
        assert body["version"] == app_module.__version__

    def test_healthz_reports_embeddings(self, client, fakes):
        body = client.get("/healthz").json()
        assert body["checks"]["embeddings"] == {"status": "healthy"}


class TestProvisioningRoutes:
    def test_start_and_status(self, client, runtime, fakes, make_user):
        user, headers = make_user()

        response = client.post("/v1/provisioning", headers=headers)

        assert response.status_code == 200
        assert response.json()["method"] == "manual"
        assert response.headers["X-RateLimit-Limit"] == "5"
        status = client.get("/v1/provisioning/status", headers=headers).json()
        assert status["project_status"] == "manual"
        assert status["workflow_ready"] is False

    def test_rate_limited(self, client, runtime, fakes, make_user):
        runtime.settings.provision_rate_limit_per_minute = 1
        _, headers = make_user()

        first = client.post("/v1/provisioning", headers=headers)
        second = client.post("/v1/provisioning", headers=headers)

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.json()["error"] == "Too many requests"
        assert second.json()["retry_after"] >= 0
        assert len(fakes.platform.project_calls) == 1


class TestMemoryRoutes:
    def test_requires_initialized_database(self, client, fakes, make_user):
        _, headers = make_user(project_id="proj-pending")

        response = client.get("/v1/memories", headers=headers)

        assert response.status_code == 400
        assert response.json() == {"error": "Database not initialized"}

    def test_add_list_delete(self, client, fakes, ready_tenant):
        info = ready_tenant()

        added = client.post("/v1/memories", json={"content": "I listened first"}, headers=info.headers)
        assert added.status_code == 200
        assert added.json()["routing"] == "good"

        listed = client.get("/v1/memories", headers=info.headers).json()
        assert listed["count"] == 1
        memory_id = listed["memories"][0]["id"]

        searched = client.get("/v1/memories", params={"query": "listened"}, headers=info.headers).json()
        assert searched["memories"][0]["id"] == memory_id

        deleted = client.delete(f"/v1/memories/{memory_id}", headers=info.headers)
        assert deleted.json() == {"success": True, "message": "Memory deleted successfully"}
        assert client.get("/v1/memories", headers=info.headers).json()["count"] == 0

    def test_cannot_delete_another_users_memory(self, client, fakes, ready_tenant):
        owner = ready_tenant()
        intruder = ready_tenant(project_id=owner.user.project_id)
        record = owner.store.add_memory_embedding(owner.user.id, "mine", [1.0] * 8)

        response = client.delete(f"/v1/memories/{record.id}", headers=intruder.headers)

        assert response.status_code == 404
        assert response.json() == {"error": "Memory not found or access denied"}
        assert len(owner.store.list_memory_embeddings(owner.user.id)) == 1

    def test_unreachable_tenant_database(self, client, fakes, ready_tenant):
        info = ready_tenant()
        fakes.platform.postgres.pop(info.user.project_id)

        response = client.get("/v1/memories", headers=info.headers)

        assert response.status_code == 503
        assert response.json()["error"] == "Database connection failed"

    def test_setup_route(self, client, fakes, ready_tenant):
        info = ready_tenant(postgres_schema_initialized=False)

        response = client.post("/v1/memories/setup", headers=info.headers)

        assert response.status_code == 200
        assert response.json()["credentialId"] == "cred-1"


class TestProfileRoutes:
    def test_profile_missing_then_recalculated(self, client, fakes, ready_tenant):
        info = ready_tenant()

        missing = client.get("/v1/profile/ethical", headers=info.headers)
        assert missing.status_code == 404
        assert missing.json() == {"error": "Profile not found"}

        _seed_interactions(info.store, info.user.id)
        recalculated = client.post("/v1/profile/ethical/recalculate", headers=info.headers).json()
        assert recalculated["success"] is True
        assert recalculated["updated_stage"] == 3

        profile = client.get("/v1/profile/ethical", headers=info.headers).json()
        assert profile["profile"]["growth_stage"] == 3
        assert profile["statistics"]["growth_memory"]["total"] == 3


class TestTrainingRoutes:
    def test_status_defaults_for_new_tenant(self, client, make_user):
        _, headers = make_user()

        body = client.get("/v1/training", headers=headers).json()

        assert body["status"] == "idle"
        assert body["stats"]["total"] == 0
        assert body["currentVersion"] is None

    def test_status_survives_unreachable_tenant(self, client, fakes, ready_tenant):
        info = ready_tenant()
        fakes.platform.postgres.pop(info.user.project_id)

        response = client.get("/v1/training", headers=info.headers)

        assert response.status_code == 200
        assert response.json()["stats"]["total"] == 0

    def test_start_requires_project(self, client, make_user):
        _, headers = make_user()

        response = client.post("/v1/training", headers=headers)

        assert response.status_code == 400
        assert response.json() == {"error": "Project not found"}

    def test_start_reports_current_sample_count(self, client, fakes, ready_tenant):
        info = ready_tenant()

        response = client.post("/v1/training", headers=info.headers)

        assert response.status_code == 400
        assert response.json()["current"] == 0

    def test_cancel_without_training(self, client, make_user):
        _, headers = make_user()

        response = client.delete("/v1/training", headers=headers)

        assert response.status_code == 400
        assert response.json() == {"error": "No training in progress"}

    def test_sync_counts(self, client, fakes, ready_tenant):
        info = ready_tenant()
        info.store.add_legacy_row("bad", info.user.id, {"text": "oops"})

        body = client.post("/v1/training/sync-counts", headers=info.headers).json()

        assert body["counts"]["bad"] == 1
        assert body["counts"]["total"] == 1


class TestMigrationRoutes:
    def test_migrate_and_status(self, client, fakes, ready_tenant):
        info = ready_tenant()
        info.store.add_legacy_row("good", info.user.id, {"text": "helped out"})

        before = client.get("/v1/migrations/legacy", headers=info.headers).json()
        migrated = client.post("/v1/migrations/legacy", headers=info.headers).json()
        after = client.get("/v1/migrations/legacy", headers=info.headers).json()

        assert before["needs_migration"] is True
        assert migrated["migrated"]["good"] == 1
        assert migrated["migrated"]["total"] == 1
        assert after["needs_migration"] is False


class TestConversationWebhook:
    def test_missing_fields(self, client):
        response = client.post("/v1/webhooks/conversation", json={"message": "hello"})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields: user_id, message"}

    def test_unknown_user(self, client, fakes):
        response = client.post(
            "/v1/webhooks/conversation",
            json={"user_id": "00000000-0000-0000-0000-000000000000", "message": "hello"},
        )

        assert response.status_code == 404
        assert response.json() == {"error": "User not found"}

    def test_uninitialized_user(self, client, fakes, make_user):
        user, _ = make_user()

        response = client.post("/v1/webhooks/conversation", json={"user_id": user.id, "message": "hi"})

        assert response.status_code == 400
        assert response.json() == {"error": "User database not initialized"}

    def test_conversation_is_ingested(self, client, runtime, fakes, ready_tenant):
        info = ready_tenant()

        response = client.post(
            "/v1/webhooks/conversation",
            json={
                "user_id": info.user.id,
                "message": "I apologised to my friend",
                "conversation_id": "conv-9",
                "session_id": "sess-9",
            },
        )

        assert response.status_code == 200
        assert response.json()["stored_in_channel"] == "good"
        assert fakes.gating.calls[0]["metadata"]["source"] == "n8n_conversation"
        assert runtime.store.get_user(info.user.id).good_channel_count == 1

    def test_shared_token_enforced(self, client, runtime, fakes, ready_tenant):
        runtime.settings.webhook_auth_token = "hook-secret"
        info = ready_tenant()
        payload = {"user_id": info.user.id, "message": "hello"}

        denied = client.post("/v1/webhooks/conversation", json=payload)
        allowed = client.post(
            "/v1/webhooks/conversation",
            json=payload,
            headers={"Authorization": "Bearer hook-secret"},
        )

        assert denied.status_code == 401
        assert allowed.status_code == 200

    def test_health(self, client):
        body = client.get("/v1/webhooks/conversation").json()

        assert body["status"] == "healthy"
        assert body["endpoint"] == "n8n-conversation-webhook"
