from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

# Closed set of memory classifications written by the gating router and
# the legacy migration.
CLASSIFICATIONS = (
    "growth_memory",
    "challenge_memory",
    "wisdom_moment",
    "needs_support",
    "neutral_interaction",
)

ETHICAL_DIMENSIONS = (
    "self_awareness",
    "emotional_regulation",
    "compassion",
    "integrity",
    "growth_mindset",
    "wisdom",
    "transcendence",
)

# Column defaults of the ethical_profiles table.
DIMENSION_DEFAULTS: Dict[str, float] = {
    "self_awareness": 0.3,
    "emotional_regulation": 0.4,
    "compassion": 0.4,
    "integrity": 0.5,
    "growth_mindset": 0.4,
    "wisdom": 0.3,
    "transcendence": 0.2,
}

TRAINING_JOB_STATUSES = ("pending", "running", "completed", "failed", "cancelled")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass
class User:
    """Tenant account held in the control-plane store."""

    id: str
    identity_id: str
    email: str
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    # Provisioning
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    project_status: Optional[str] = None
    template_run_id: Optional[str] = None
    provisioning_started_at: Optional[datetime] = None
    template_completed_at: Optional[datetime] = None
    setup_error: Optional[str] = None
    platform_secret_data: Optional[dict] = None
    # Workflow engine
    workflow_url: Optional[str] = None
    workflow_user_email: Optional[str] = None
    workflow_encryption_key: Optional[str] = None
    workflow_api_key: Optional[str] = None
    # Tenant database bootstrap
    postgres_schema_initialized: bool = False
    workflow_postgres_credential_id: Optional[str] = None
    postgres_setup_error: Optional[str] = None
    postgres_setup_at: Optional[datetime] = None
    # Cached channel counters
    good_channel_count: int = 0
    bad_channel_count: int = 0
    mcl_chain_count: int = 0
    # Adapter training
    training_status: Optional[str] = None
    adapter_version: Optional[str] = None
    last_trained_at: Optional[datetime] = None
    training_error: Optional[str] = None

    @classmethod
    def new(cls, identity_id: str, email: str, name: Optional[str] = None) -> "User":
        return cls(id=str(uuid.uuid4()), identity_id=identity_id, email=email, name=name)

    @property
    def first_name(self) -> str:
        if self.name:
            return self.name.split()[0]
        return self.email.split("@")[0]


# Columns the control-plane store accepts through ``update_user``.
USER_MUTABLE_FIELDS = frozenset(
    name
    for name in User.__dataclass_fields__
    if name not in {"id", "identity_id", "created_at"}
)

# Columns encrypted at rest.
USER_SECRET_FIELDS = frozenset({"workflow_encryption_key", "workflow_api_key"})


@dataclass
class ProvisioningLock:
    user_id: str
    owner: str
    acquired_at: datetime
    expires_at: datetime


@dataclass
class EthicalProfile:
    user_id: str
    self_awareness: float = DIMENSION_DEFAULTS["self_awareness"]
    emotional_regulation: float = DIMENSION_DEFAULTS["emotional_regulation"]
    compassion: float = DIMENSION_DEFAULTS["compassion"]
    integrity: float = DIMENSION_DEFAULTS["integrity"]
    growth_mindset: float = DIMENSION_DEFAULTS["growth_mindset"]
    wisdom: float = DIMENSION_DEFAULTS["wisdom"]
    transcendence: float = DIMENSION_DEFAULTS["transcendence"]
    growth_stage: int = 2
    total_interactions: int = 0
    breakthrough_moments: int = 0
    crisis_interventions: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_calculated_at: Optional[datetime] = None

    def dimensions(self) -> Dict[str, float]:
        return {name: float(getattr(self, name)) for name in ETHICAL_DIMENSIONS}


@dataclass
class ProfileAggregate:
    """Averages over a tenant's interaction memories."""

    total: int
    averages: Dict[str, Optional[float]]
    wisdom_moments: int = 0


@dataclass
class InteractionMemory:
    id: int
    user_id: str
    text: str
    classification: str
    ethical_scores: Dict[str, float]
    embedding: Optional[List[float]] = None
    moments: Optional[list] = None
    reflection_prompt: Optional[str] = None
    gentle_guidance: Optional[str] = None
    approved_for_training: bool = False
    training_weight: float = 1.0
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class MemoryEmbedding:
    id: str
    user_id: str
    content: str
    embedding: List[float]
    interaction_memory_id: Optional[int] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    score: Optional[float] = None


@dataclass
class GrowthMilestone:
    id: int
    user_id: str
    milestone_type: str
    previous_state: Dict | None = None
    new_state: Dict | None = None
    trigger_interaction_id: Optional[int] = None
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TrainingJob:
    id: int
    user_id: str
    job_id: str
    adapter_version: str
    job_name: Optional[str] = None
    status: str = "pending"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    dataset_composition: Dict | None = None
    total_samples: int = 0
    ethical_profile_snapshot: Dict | None = None
    growth_stage_at_training: Optional[int] = None
    training_loss: Optional[float] = None
    final_metrics: Dict | None = None
    error_message: Optional[str] = None
    retry_count: int = 0
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class LegacyRow:
    """A row of one of the legacy channel tables (stm_good, stm_bad, stm_review, mcl_chains)."""

    id: int
    channel: str
    user_id: str
    fields: Dict
    migrated: bool = False
    created_at: datetime = field(default_factory=utcnow)
