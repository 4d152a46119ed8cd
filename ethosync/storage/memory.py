from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ethosync.logging import get_logger
from ethosync.service.embeddings import cosine_similarity
from ethosync.storage.common import (
    LEGACY_CHANNELS,
    SecretCipher,
    legacy_to_interaction,
)
from ethosync.storage.errors import ConstraintViolation, TenantStoreError
from ethosync.storage.models import (
    CLASSIFICATIONS,
    ETHICAL_DIMENSIONS,
    USER_MUTABLE_FIELDS,
    USER_SECRET_FIELDS,
    EthicalProfile,
    GrowthMilestone,
    InteractionMemory,
    LegacyRow,
    MemoryEmbedding,
    ProfileAggregate,
    ProvisioningLock,
    TrainingJob,
    User,
    as_utc,
    utcnow,
)

_DATETIME_FIELDS = {
    "created_at",
    "updated_at",
    "provisioning_started_at",
    "template_completed_at",
    "postgres_setup_at",
    "last_trained_at",
}


class MemoryStore:
    """In-memory control-plane store, persisted as JSON under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/ethosync", *, secret_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.provisioning_locks: Dict[str, ProvisioningLock] = {}
        # RLock so nested store calls from the same thread do not deadlock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(secret_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "control_plane.json"

    # -- users -------------------------------------------------------------

    def create_user(self, identity_id: str, email: str, name: Optional[str] = None) -> User:
        with self._data_lock:
            if any(u.identity_id == identity_id for u in self.users.values()):
                raise ConstraintViolation("identity already registered", {"field": "identity_id"})
            user = User.new(identity_id, email, name)
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_identity(self, identity_id: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.identity_id == identity_id), None)
            return replace(user) if user else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def increment_channel_counters(self, user_id: str, *, good: int = 0, bad: int = 0) -> None:
        if not good and not bad:
            return
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.good_channel_count += good
            user.bad_channel_count += bad
            user.updated_at = utcnow()
            self._persist_state()

    def list_users_by_project_status(self, statuses: Iterable[str]) -> List[User]:
        wanted = set(statuses)
        with self._data_lock:
            return [replace(u) for u in self.users.values() if u.project_status in wanted]

    # -- provisioning lock ---------------------------------------------------

    def acquire_provisioning_lock(self, user_id: str, owner: str, ttl_seconds: float) -> bool:
        now = utcnow()
        with self._data_lock:
            existing = self.provisioning_locks.get(user_id)
            if existing and existing.expires_at > now and existing.owner != owner:
                return False
            self.provisioning_locks[user_id] = ProvisioningLock(
                user_id=user_id,
                owner=owner,
                acquired_at=now,
                expires_at=now + timedelta(seconds=ttl_seconds),
            )
            self._persist_state()
            return True

    def release_provisioning_lock(self, user_id: str, owner: str) -> None:
        with self._data_lock:
            existing = self.provisioning_locks.get(user_id)
            if existing and existing.owner == owner:
                del self.provisioning_locks[user_id]
                self._persist_state()

    def get_provisioning_lock(self, user_id: str) -> Optional[ProvisioningLock]:
        with self._data_lock:
            return self.provisioning_locks.get(user_id)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # -- persistence ---------------------------------------------------------

    def _serialize_user(self, user: User) -> dict:
        data = asdict(user)
        for key in _DATETIME_FIELDS:
            if data.get(key) is not None:
                data[key] = data[key].isoformat()
        for key in USER_SECRET_FIELDS:
            data[key] = self._cipher.encrypt(data.get(key))
        return data

    def _deserialize_user(self, data: dict) -> User:
        for key in _DATETIME_FIELDS:
            if data.get(key):
                data[key] = as_utc(datetime.fromisoformat(data[key]))
        for key in USER_SECRET_FIELDS:
            data[key] = self._cipher.decrypt(data.get(key))
        known = {k: v for k, v in data.items() if k in User.__dataclass_fields__}
        return User(**known)

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "provisioning_locks": [
                {
                    "user_id": lock.user_id,
                    "owner": lock.owner,
                    "acquired_at": lock.acquired_at.isoformat(),
                    "expires_at": lock.expires_at.isoformat(),
                }
                for lock in self.provisioning_locks.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except ValueError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        for raw in data.get("users", []):
            user = self._deserialize_user(raw)
            self.users[user.id] = user
        for raw in data.get("provisioning_locks", []):
            lock = ProvisioningLock(
                user_id=raw["user_id"],
                owner=raw["owner"],
                acquired_at=as_utc(datetime.fromisoformat(raw["acquired_at"])),
                expires_at=as_utc(datetime.fromisoformat(raw["expires_at"])),
            )
            self.provisioning_locks[lock.user_id] = lock
        return True


class MemoryTenantStore:
    """In-memory stand-in for one tenant database."""

    def __init__(self, connection_string: str) -> None:
        self.connection_string = connection_string
        self.logger = get_logger(__name__)
        self._data_lock = threading.RLock()
        self.schema_initialized = False
        self.profiles: Dict[str, EthicalProfile] = {}
        self.interactions: Dict[int, InteractionMemory] = {}
        self.embeddings: Dict[str, MemoryEmbedding] = {}
        self.milestones: List[GrowthMilestone] = []
        self.training_jobs: Dict[str, TrainingJob] = {}
        self.legacy: Dict[str, List[LegacyRow]] = {name: [] for name in LEGACY_CHANNELS}
        self._seq = 0

    def _next_id(self) -> int:
        self._seq += 1
        return self._seq

    def _require_schema(self) -> None:
        if not self.schema_initialized:
            raise TenantStoreError('relation "user_data_schema.interaction_memories" does not exist')

    def initialize_schema(self, admin_connection_string: Optional[str] = None) -> None:
        with self._data_lock:
            self.schema_initialized = True
        self.logger.info("tenant_schema_initialized", backend="memory")

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # -- profiles ------------------------------------------------------------

    def get_profile(self, user_id: str) -> Optional[EthicalProfile]:
        with self._data_lock:
            self._require_schema()
            profile = self.profiles.get(user_id)
            return replace(profile) if profile else None

    def ensure_profile(self, user_id: str) -> EthicalProfile:
        with self._data_lock:
            self._require_schema()
            if user_id not in self.profiles:
                self.profiles[user_id] = EthicalProfile(user_id=user_id)
            return replace(self.profiles[user_id])

    def save_profile(self, profile: EthicalProfile) -> EthicalProfile:
        with self._data_lock:
            self._require_schema()
            profile.updated_at = utcnow()
            self.profiles[profile.user_id] = replace(profile)
            return replace(profile)

    def aggregate_scores(self, user_id: str) -> ProfileAggregate:
        with self._data_lock:
            self._require_schema()
            rows = [m for m in self.interactions.values() if m.user_id == user_id]
        averages: Dict[str, Optional[float]] = {}
        for dim in ETHICAL_DIMENSIONS:
            values = [
                float(m.ethical_scores[dim])
                for m in rows
                if m.ethical_scores.get(dim) is not None
            ]
            averages[dim] = sum(values) / len(values) if values else None
        wisdom = sum(1 for m in rows if m.classification == "wisdom_moment")
        return ProfileAggregate(total=len(rows), averages=averages, wisdom_moments=wisdom)

    # -- interaction memories --------------------------------------------------

    def add_interaction_memory(
        self,
        user_id: str,
        text: str,
        classification: str,
        ethical_scores: Dict[str, float],
        *,
        embedding: Optional[List[float]] = None,
        gentle_guidance: Optional[str] = None,
        approved_for_training: bool = False,
        training_weight: float = 1.0,
        metadata: Optional[Dict] = None,
        created_at: Optional[datetime] = None,
    ) -> InteractionMemory:
        if classification not in CLASSIFICATIONS:
            raise ConstraintViolation("unknown classification", {"classification": classification})
        with self._data_lock:
            self._require_schema()
            memory = InteractionMemory(
                id=self._next_id(),
                user_id=user_id,
                text=text,
                classification=classification,
                ethical_scores=dict(ethical_scores),
                embedding=embedding,
                gentle_guidance=gentle_guidance,
                approved_for_training=approved_for_training,
                training_weight=training_weight,
                metadata=metadata or {},
                created_at=created_at or utcnow(),
            )
            self.interactions[memory.id] = memory
            return replace(memory)

    def _user_interactions(self, user_id: str) -> List[InteractionMemory]:
        return [m for m in self.interactions.values() if m.user_id == user_id]

    def list_interaction_memories(self, user_id: str) -> List[InteractionMemory]:
        with self._data_lock:
            self._require_schema()
            return [replace(m) for m in self._user_interactions(user_id)]

    def classification_stats(self, user_id: str) -> Dict[str, Dict[str, float]]:
        with self._data_lock:
            self._require_schema()
            rows = self._user_interactions(user_id)
        stats: Dict[str, Dict[str, float]] = {}
        for m in rows:
            entry = stats.setdefault(
                m.classification, {"total": 0, "approved": 0, "weight_sum": 0.0}
            )
            entry["total"] += 1
            entry["approved"] += 1 if m.approved_for_training else 0
            entry["weight_sum"] += m.training_weight
        return {
            cls: {
                "total": int(e["total"]),
                "approved": int(e["approved"]),
                "avg_weight": e["weight_sum"] / e["total"],
            }
            for cls, e in stats.items()
        }

    def training_counts(self, user_id: str) -> Dict[str, Dict[str, int]]:
        with self._data_lock:
            self._require_schema()
            rows = self._user_interactions(user_id)
        approved = {cls: 0 for cls in CLASSIFICATIONS}
        pending = {cls: 0 for cls in CLASSIFICATIONS}
        for m in rows:
            bucket = approved if m.approved_for_training else pending
            bucket[m.classification] = bucket.get(m.classification, 0) + 1
        approved["total"] = sum(approved.values())
        pending["total"] = sum(pending.values())
        return {"approved": approved, "pending": pending}

    def auto_approve(self, user_id: str, *, exclude: Sequence[str] = ("needs_support",)) -> int:
        changed = 0
        with self._data_lock:
            self._require_schema()
            for m in self._user_interactions(user_id):
                if not m.approved_for_training and m.classification not in exclude:
                    m.approved_for_training = True
                    m.updated_at = utcnow()
                    changed += 1
        return changed

    def interaction_totals(self, user_id: str) -> Dict[str, int]:
        with self._data_lock:
            self._require_schema()
            rows = self._user_interactions(user_id)
        return {
            "total": len(rows),
            "approved": sum(1 for m in rows if m.approved_for_training),
        }

    # -- milestones ------------------------------------------------------------

    def add_milestone(
        self,
        user_id: str,
        milestone_type: str,
        *,
        previous_state: Optional[Dict] = None,
        new_state: Optional[Dict] = None,
        description: Optional[str] = None,
        trigger_interaction_id: Optional[int] = None,
    ) -> GrowthMilestone:
        with self._data_lock:
            self._require_schema()
            milestone = GrowthMilestone(
                id=self._next_id(),
                user_id=user_id,
                milestone_type=milestone_type,
                previous_state=previous_state,
                new_state=new_state,
                description=description,
                trigger_interaction_id=trigger_interaction_id,
            )
            self.milestones.append(milestone)
            return replace(milestone)

    def list_milestones(self, user_id: str, limit: int = 10) -> List[GrowthMilestone]:
        with self._data_lock:
            self._require_schema()
            rows = [m for m in self.milestones if m.user_id == user_id]
        rows.sort(key=lambda m: (m.created_at, m.id), reverse=True)
        return [replace(m) for m in rows[:limit]]

    # -- training jobs -----------------------------------------------------------

    def create_training_job(
        self,
        user_id: str,
        job_id: str,
        adapter_version: str,
        *,
        job_name: Optional[str] = None,
        status: str = "pending",
        total_samples: int = 0,
        dataset_composition: Optional[Dict] = None,
        ethical_profile_snapshot: Optional[Dict] = None,
        growth_stage_at_training: Optional[int] = None,
        metadata: Optional[Dict] = None,
        started_at: Optional[datetime] = None,
    ) -> TrainingJob:
        with self._data_lock:
            self._require_schema()
            job = TrainingJob(
                id=self._next_id(),
                user_id=user_id,
                job_id=job_id,
                job_name=job_name or job_id,
                adapter_version=adapter_version,
                status=status,
                total_samples=total_samples,
                dataset_composition=dataset_composition or {},
                ethical_profile_snapshot=ethical_profile_snapshot or {},
                growth_stage_at_training=growth_stage_at_training,
                metadata=metadata or {},
                started_at=started_at,
            )
            self.training_jobs[job_id] = job
            return replace(job)

    def get_training_job(self, job_id: str) -> Optional[TrainingJob]:
        with self._data_lock:
            job = self.training_jobs.get(job_id)
            return replace(job) if job else None

    def update_training_job(
        self,
        job_id: str,
        *,
        status: Optional[str] = None,
        error_message: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        final_metrics: Optional[Dict] = None,
        metadata: Optional[Dict] = None,
    ) -> Optional[TrainingJob]:
        with self._data_lock:
            job = self.training_jobs.get(job_id)
            if not job:
                return None
            if status:
                job.status = status
            if error_message is not None:
                job.error_message = error_message
            if completed_at is not None:
                job.completed_at = completed_at
            if final_metrics is not None:
                job.final_metrics = final_metrics
            if metadata is not None:
                job.metadata = {**(job.metadata or {}), **metadata}
            job.updated_at = utcnow()
            return replace(job)

    # -- memory embeddings -------------------------------------------------------

    def add_memory_embedding(
        self,
        user_id: str,
        content: str,
        embedding: List[float],
        *,
        metadata: Optional[Dict] = None,
        interaction_memory_id: Optional[int] = None,
    ) -> MemoryEmbedding:
        with self._data_lock:
            self._require_schema()
            record = MemoryEmbedding(
                id=str(uuid.uuid4()),
                user_id=user_id,
                content=content,
                embedding=list(embedding),
                interaction_memory_id=interaction_memory_id,
                metadata=metadata or {},
            )
            self.embeddings[record.id] = record
            return replace(record)

    def search_memory_embeddings(
        self, user_id: str, query_embedding: List[float], limit: int = 20
    ) -> List[MemoryEmbedding]:
        with self._data_lock:
            self._require_schema()
            rows = [e for e in self.embeddings.values() if e.user_id == user_id]
        scored = [
            replace(e, score=cosine_similarity(query_embedding, e.embedding)) for e in rows
        ]
        scored.sort(key=lambda e: e.score, reverse=True)
        return scored[:limit]

    def list_memory_embeddings(self, user_id: str, limit: int = 100) -> List[MemoryEmbedding]:
        with self._data_lock:
            self._require_schema()
            rows = [replace(e) for e in self.embeddings.values() if e.user_id == user_id]
        rows.sort(key=lambda e: e.created_at, reverse=True)
        return rows[:limit]

    def delete_memory_embedding(self, memory_id: str, user_id: str) -> bool:
        with self._data_lock:
            self._require_schema()
            record = self.embeddings.get(memory_id)
            if not record or record.user_id != user_id:
                return False
            del self.embeddings[memory_id]
            return True

    # -- legacy channels -----------------------------------------------------------

    def add_legacy_row(self, channel: str, user_id: str, fields: Dict) -> LegacyRow:
        if channel not in LEGACY_CHANNELS:
            raise ValueError(f"unknown legacy channel: {channel}")
        with self._data_lock:
            self._require_schema()
            row = LegacyRow(id=self._next_id(), channel=channel, user_id=user_id, fields=dict(fields))
            self.legacy[channel].append(row)
            return row

    def channel_counts(self, user_id: str) -> Dict[str, int]:
        with self._data_lock:
            self._require_schema()
            counts = {
                name: sum(1 for r in rows if r.user_id == user_id)
                for name, rows in self.legacy.items()
            }
            counts["embeddings"] = sum(1 for e in self.embeddings.values() if e.user_id == user_id)
            return counts

    def legacy_pending_counts(self, user_id: str) -> Dict[str, int]:
        with self._data_lock:
            self._require_schema()
            return {
                name: sum(1 for r in rows if r.user_id == user_id and not r.migrated)
                for name, rows in self.legacy.items()
            }

    def migrate_legacy_channel(self, channel: str, user_id: str) -> int:
        spec = LEGACY_CHANNELS[channel]
        moved = 0
        with self._data_lock:
            self._require_schema()
            for row in self.legacy[channel]:
                if row.user_id != user_id or row.migrated:
                    continue
                values = legacy_to_interaction(spec, row.id, row.fields)
                self.add_interaction_memory(user_id, created_at=row.created_at, **values)
                row.migrated = True
                moved += 1
        return moved
