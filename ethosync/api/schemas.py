from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Maximum nested JSON depth accepted in free-form metadata
MAX_JSON_DEPTH = 20
# Maximum array items accepted in free-form metadata
MAX_ARRAY_ITEMS = 1000
# Upper bound for message and memory bodies
MAX_CONTENT_LENGTH = 65536


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject metadata nested deeper than ``max_depth`` or with oversized arrays."""
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _validate_metadata(value: Optional[dict]) -> Optional[dict]:
    if value is None:
        return None
    _validate_json_depth(value)
    return value


class ErrorBody(BaseModel):
    """Error envelope returned by every failing endpoint."""

    model_config = ConfigDict(extra="allow")

    error: str
    details: Optional[str] = None


class MemoryCreate(BaseModel):
    content: Optional[str] = Field(default=None, max_length=MAX_CONTENT_LENGTH)
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("metadata")
    @classmethod
    def _check_metadata(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_metadata(value)


class ConversationWebhook(BaseModel):
    """Conversation message forwarded by a tenant's workflow engine.

    ``user_id`` and ``message`` are checked by the route so a missing field
    reports the same message as an empty one.
    """

    model_config = ConfigDict(extra="ignore")

    user_id: Optional[str] = None
    message: Optional[str] = Field(default=None, max_length=MAX_CONTENT_LENGTH)
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("metadata")
    @classmethod
    def _check_metadata(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_metadata(value)


class MemoryResult(BaseModel):
    success: bool
    routing: str
    valence: str
    safe_counterfactual: Optional[str] = None
    scores: Dict[str, Any] = Field(default_factory=dict)
    message: str


class ConversationResult(BaseModel):
    success: bool
    routing: str
    valence: str
    safe_counterfactual: Optional[str] = None
    message: str
    stored_in_channel: str


class MigrationCounts(BaseModel):
    good: int = 0
    bad: int = 0
    review: int = 0
    mcl: int = 0
    total: int = 0


class MigrationResult(BaseModel):
    success: bool
    migrated: MigrationCounts
    errors: list[str] = Field(default_factory=list)
