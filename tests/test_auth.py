"""Tests for bearer token verification and webhook authentication."""

from __future__ import annotations

import pytest

from ethosync.service.errors import AuthenticationError


class TestAuthenticate:
    def test_first_request_creates_tenant_account(self, runtime):
        token = runtime.auth.issue_access_token(
            "idp_new_person", email="new@example.com", name="New Person"
        )

        user = runtime.auth.authenticate(f"Bearer {token}")
        again = runtime.auth.authenticate(f"bearer {token}")

        assert user.id == again.id
        assert user.identity_id == "idp_new_person"
        assert user.email == "new@example.com"
        assert user.name == "New Person"

    def test_missing_email_claim_gets_placeholder(self, runtime):
        token = runtime.auth.issue_access_token("idp_no_email")

        user = runtime.auth.authenticate(f"Bearer {token}")

        assert user.email == "idp_no_email@users.invalid"

    def test_expired_token_rejected(self, runtime):
        token = runtime.auth.issue_access_token("idp_expired", ttl_seconds=-120)

        with pytest.raises(AuthenticationError):
            runtime.auth.authenticate(f"Bearer {token}")

    def test_tampered_signature_rejected(self, runtime):
        token = runtime.auth.issue_access_token("idp_tampered")
        header, payload, signature = token.split(".")
        forged = f"{header}.{payload}.{signature[:-2]}xx"

        with pytest.raises(AuthenticationError):
            runtime.auth.authenticate(f"Bearer {forged}")

    @pytest.mark.parametrize(
        "header",
        [None, "", "Bearer", "Bearer   ", "Basic abc", "Token abc.def.ghi", "Bearer not-a-jwt"],
    )
    def test_malformed_headers_rejected(self, runtime, header):
        with pytest.raises(AuthenticationError) as excinfo:
            runtime.auth.authenticate(header)
        assert excinfo.value.message == "Unauthorized"
        assert excinfo.value.status_code == 401


class TestWebhookAuth:
    def test_open_when_no_token_configured(self, runtime):
        runtime.auth.settings = runtime.settings.model_copy(update={"webhook_auth_token": None})
        runtime.auth.verify_webhook(None)

    def test_shared_token_required(self, runtime):
        runtime.auth.settings = runtime.settings.model_copy(update={"webhook_auth_token": "hook-secret"})

        runtime.auth.verify_webhook("Bearer hook-secret")
        with pytest.raises(AuthenticationError):
            runtime.auth.verify_webhook("Bearer wrong")
        with pytest.raises(AuthenticationError):
            runtime.auth.verify_webhook(None)


class TestIssueTokenScript:
    def test_issued_token_is_accepted(self, runtime):
        from scripts.issue_token import issue_token

        result = issue_token("idp_script", "script@example.com", None, 600, register=True)

        user = runtime.auth.authenticate(f"Bearer {result['access_token']}")
        assert user.id == result["user_id"]
        assert user.email == "script@example.com"
