"""Tests for the gating client and its fallback routing."""

from __future__ import annotations

import json

import httpx

from ethosync.service.gating import (
    Classified,
    GatingClient,
    Unavailable,
    counter_increments,
    outcome_metadata,
)


def _client(handler) -> GatingClient:
    transport = httpx.MockTransport(handler)
    return GatingClient(
        "http://gating.test/",
        timeout_seconds=1.0,
        client=httpx.AsyncClient(transport=transport),
    )


class TestGatingClient:
    async def test_classified_response(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "routing": "bad",
                    "valence": "negative",
                    "scores": {"toxicity": 0.8},
                    "safe_counterfactual": "Try a kinder phrasing.",
                },
            )

        client = _client(handler)
        outcome = await client.classify(
            "user-1", "some text", "postgresql://db", {"source": "test"}, session_id="s-1"
        )
        await client.close()

        assert isinstance(outcome, Classified)
        assert outcome.routing == "bad"
        assert outcome.safe_counterfactual == "Try a kinder phrasing."
        assert seen["url"] == "http://gating.test/gating/route"
        assert seen["body"] == {
            "user_id": "user-1",
            "text": "some text",
            "database_url": "postgresql://db",
            "metadata": {"source": "test"},
            "session_id": "s-1",
        }

    async def test_server_error_falls_back_to_review(self):
        client = _client(lambda request: httpx.Response(502, json={"detail": "down"}))

        outcome = await client.classify("user-1", "text", "postgresql://db")

        assert isinstance(outcome, Unavailable)
        assert outcome.routing == "review"
        assert outcome.valence == "neutral"
        assert outcome.scores == {"alignment": 0.5}
        assert outcome.safe_counterfactual is None
        assert "502" in outcome.reason

    async def test_timeout_falls_back(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        outcome = await _client(handler).classify("user-1", "text", "postgresql://db")

        assert isinstance(outcome, Unavailable)
        assert outcome.reason == "timeout"

    async def test_connection_error_falls_back(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        outcome = await _client(handler).classify("user-1", "text", "postgresql://db")

        assert outcome.status == "fallback"
        assert outcome.routing == "review"

    async def test_malformed_body_falls_back(self):
        client = _client(lambda request: httpx.Response(200, json={"valence": "positive"}))

        outcome = await client.classify("user-1", "text", "postgresql://db")

        assert isinstance(outcome, Unavailable)

    async def test_non_json_body_falls_back(self):
        client = _client(lambda request: httpx.Response(200, text="<html>oops</html>"))

        outcome = await client.classify("user-1", "text", "postgresql://db")

        assert isinstance(outcome, Unavailable)

    async def test_unconfigured_client_falls_back_without_request(self):
        outcome = await GatingClient(None).classify("user-1", "text", "postgresql://db")
        assert isinstance(outcome, Unavailable)


class TestOutcomeHelpers:
    def test_counter_increments(self):
        assert counter_increments(Classified(routing="good")) == {"good": 1, "bad": 0}
        assert counter_increments(Classified(routing="bad")) == {"good": 0, "bad": 1}
        assert counter_increments(Classified(routing="review")) == {"good": 0, "bad": 0}
        assert counter_increments(Unavailable(reason="timeout")) == {"good": 0, "bad": 0}

    def test_outcome_metadata_marks_fallback(self):
        meta = outcome_metadata(Unavailable(reason="timeout"))
        assert meta["gating_routing"] == "review"
        assert meta["gating_status"] == "fallback"
