from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import httpx

from ethosync.logging import get_logger

logger = get_logger(__name__)

FALLBACK_ROUTING = "review"
FALLBACK_VALENCE = "neutral"


@dataclass(frozen=True)
class Classified:
    """A routing decision returned by the gating service."""

    routing: str
    valence: Optional[str] = None
    scores: Dict[str, Any] = field(default_factory=dict)
    safe_counterfactual: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    status: str = "ok"


@dataclass(frozen=True)
class Unavailable:
    """The gating service could not be used; carries the safe default routing."""

    reason: str
    routing: str = FALLBACK_ROUTING
    valence: str = FALLBACK_VALENCE
    scores: Dict[str, Any] = field(default_factory=lambda: {"alignment": 0.5})
    safe_counterfactual: Optional[str] = None
    status: str = "fallback"


GatingOutcome = Union[Classified, Unavailable]


def counter_increments(outcome: GatingOutcome) -> Dict[str, int]:
    """Channel counter deltas for a routing outcome."""
    if outcome.routing == "good":
        return {"good": 1, "bad": 0}
    if outcome.routing == "bad":
        return {"good": 0, "bad": 1}
    return {"good": 0, "bad": 0}


def outcome_metadata(outcome: GatingOutcome) -> Dict[str, Any]:
    return {
        "gating_routing": outcome.routing,
        "gating_valence": outcome.valence,
        "gating_scores": outcome.scores,
        "gating_status": outcome.status,
    }


class GatingClient:
    """Client for the external content-classification service.

    The service scores the text and files it into the tenant's channel
    tables itself, so it is handed the tenant's database URL. ``classify``
    never raises: any failure becomes an ``Unavailable`` outcome.
    """

    def __init__(
        self,
        base_url: Optional[str],
        *,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=5.0),
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def classify(
        self,
        user_id: str,
        text: str,
        database_url: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        session_id: Optional[str] = None,
    ) -> GatingOutcome:
        if not self.base_url:
            return Unavailable(reason="gating service not configured")
        payload: Dict[str, Any] = {
            "user_id": user_id,
            "text": text,
            "database_url": database_url,
            "metadata": metadata or {},
        }
        if session_id:
            payload["session_id"] = session_id

        client = await self._get_client()
        try:
            response = await client.post(f"{self.base_url}/gating/route", json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException:
            logger.warning("gating_timeout", user_id=user_id)
            return Unavailable(reason="timeout")
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "gating_http_error", user_id=user_id, status_code=exc.response.status_code
            )
            return Unavailable(reason=f"Gating service error: {exc.response.status_code}")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("gating_unreachable", user_id=user_id, error=str(exc))
            return Unavailable(reason=str(exc) or exc.__class__.__name__)

        if not isinstance(body, dict) or not body.get("routing"):
            logger.warning("gating_malformed_response", user_id=user_id)
            return Unavailable(reason="malformed gating response")

        logger.info(
            "gating_classified",
            user_id=user_id,
            routing=body.get("routing"),
            valence=body.get("valence"),
        )
        return Classified(
            routing=str(body["routing"]),
            valence=body.get("valence"),
            scores=body.get("scores") or {},
            safe_counterfactual=body.get("safe_counterfactual"),
            raw=body,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
