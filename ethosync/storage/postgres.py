from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from ethosync.logging import get_logger
from ethosync.storage.common import (
    LEGACY_CHANNELS,
    SecretCipher,
    parse_json_meta,
    parse_postgres_url,
)
from ethosync.storage.errors import (
    ConstraintViolation,
    TenantStoreError,
    TenantUnavailable,
)
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
    utcnow,
)
from ethosync.storage.schema import CONTROL_PLANE_DDL, tenant_schema_statements

_JSON_USER_FIELDS = {"platform_secret_data"}


def _format_vector(embedding: Sequence[float]) -> str:
    return "[" + ",".join(f"{float(val):.6f}" for val in embedding) + "]"


class PostgresStore:
    """Control-plane store holding one row per tenant account."""

    def __init__(self, dsn: str, *, secret_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._cipher = SecretCipher(secret_key)
        self._ensure_tables()

    def _connect(self):
        return self.pool.connection()

    def _ensure_tables(self) -> None:
        with self._connect() as conn:
            for statement in CONTROL_PLANE_DDL:
                conn.execute(statement)

    def _row_to_user(self, row: Dict[str, Any]) -> User:
        values = {k: row.get(k) for k in User.__dataclass_fields__ if k in row}
        for key in USER_SECRET_FIELDS:
            values[key] = self._cipher.decrypt(values.get(key))
        values["platform_secret_data"] = parse_json_meta(values.get("platform_secret_data"))
        return User(**values)

    def create_user(self, identity_id: str, email: str, name: Optional[str] = None) -> User:
        user = User.new(identity_id, email, name)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO tenant_account (id, identity_id, email, name)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user.id, identity_id, email, name),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("identity already registered", {"field": "identity_id"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant_account WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_identity(self, identity_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant_account WHERE identity_id = %s", (identity_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        fields.pop("updated_at", None)
        assignments = [sql.SQL("updated_at = NOW()")]
        params: List[Any] = []
        for key, value in fields.items():
            if key in USER_SECRET_FIELDS:
                value = self._cipher.encrypt(value)
            elif key in _JSON_USER_FIELDS and value is not None:
                value = Jsonb(value)
            assignments.append(sql.SQL("{} = %s").format(sql.Identifier(key)))
            params.append(value)
        query = sql.SQL("UPDATE tenant_account SET {} WHERE id = %s RETURNING *").format(
            sql.SQL(", ").join(assignments)
        )
        with self._connect() as conn:
            row = conn.execute(query, (*params, user_id)).fetchone()
        return self._row_to_user(row) if row else None

    def increment_channel_counters(self, user_id: str, *, good: int = 0, bad: int = 0) -> None:
        if not good and not bad:
            return
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE tenant_account
                SET good_channel_count = good_channel_count + %s,
                    bad_channel_count = bad_channel_count + %s,
                    updated_at = NOW()
                WHERE id = %s
                """,
                (good, bad, user_id),
            )

    def list_users_by_project_status(self, statuses: Iterable[str]) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tenant_account WHERE project_status = ANY(%s)",
                (list(statuses),),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def acquire_provisioning_lock(self, user_id: str, owner: str, ttl_seconds: float) -> bool:
        """Take the per-tenant lock unless another owner holds an unexpired one."""

        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO provisioning_lock (user_id, owner, acquired_at, expires_at)
                VALUES (%s, %s, NOW(), NOW() + make_interval(secs => %s))
                ON CONFLICT (user_id) DO UPDATE
                SET owner = EXCLUDED.owner,
                    acquired_at = EXCLUDED.acquired_at,
                    expires_at = EXCLUDED.expires_at
                WHERE provisioning_lock.expires_at <= NOW()
                   OR provisioning_lock.owner = EXCLUDED.owner
                RETURNING owner
                """,
                (user_id, owner, float(ttl_seconds)),
            ).fetchone()
        return row is not None

    def release_provisioning_lock(self, user_id: str, owner: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM provisioning_lock WHERE user_id = %s AND owner = %s",
                (user_id, owner),
            )

    def get_provisioning_lock(self, user_id: str) -> Optional[ProvisioningLock]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM provisioning_lock WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return ProvisioningLock(
            user_id=row["user_id"],
            owner=row["owner"],
            acquired_at=row["acquired_at"],
            expires_at=row["expires_at"],
        )

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()


# Legacy channel -> interaction memory copies. The UPDATE ... RETURNING and
# the INSERT run as one statement so a row is flagged exactly when copied.
_MIGRATION_SQL = {
    "good": """
        WITH moved AS (
            UPDATE user_data_schema.stm_good
            SET migrated_to_interaction_memory = TRUE
            WHERE user_id = %s AND migrated_to_interaction_memory = FALSE
            RETURNING *
        ), inserted AS (
            INSERT INTO user_data_schema.interaction_memories
                (user_id, text, embedding, classification, ethical_scores,
                 approved_for_training, training_weight, metadata, created_at)
            SELECT
                user_id,
                text,
                embedding,
                'growth_memory',
                jsonb_build_object(
                    'self_awareness', COALESCE(alignment_score, 0.6),
                    'emotional_regulation', 0.6,
                    'compassion', 0.6,
                    'integrity', 0.7,
                    'growth_mindset', 0.7,
                    'wisdom', 0.6,
                    'transcendence', 0.4
                ),
                COALESCE(approved_for_consolidation, FALSE),
                1.5,
                jsonb_build_object(
                    'legacy_channel', 'good',
                    'legacy_id', id,
                    'alignment_score', alignment_score,
                    'quality_score', quality_score,
                    'original_metadata', metadata
                ),
                created_at
            FROM moved
            RETURNING id
        )
        SELECT COUNT(*) AS count FROM inserted
    """,
    "bad": """
        WITH moved AS (
            UPDATE user_data_schema.stm_bad
            SET migrated_to_interaction_memory = TRUE
            WHERE user_id = %s AND migrated_to_interaction_memory = FALSE
            RETURNING *
        ), inserted AS (
            INSERT INTO user_data_schema.interaction_memories
                (user_id, text, embedding, classification, ethical_scores,
                 gentle_guidance, approved_for_training, training_weight, metadata, created_at)
            SELECT
                user_id,
                text,
                embedding,
                'challenge_memory',
                jsonb_build_object(
                    'self_awareness', GREATEST(0.3, 1.0 - COALESCE(severity_score, 0.5)),
                    'emotional_regulation', GREATEST(0.2, 1.0 - COALESCE(toxicity_score, 0.5)),
                    'compassion', 0.4,
                    'integrity', 0.4,
                    'growth_mindset', 0.5,
                    'wisdom', 0.4,
                    'transcendence', 0.2
                ),
                safe_counterfactual,
                COALESCE(approved_for_shadow_learning, FALSE),
                2.0,
                jsonb_build_object(
                    'legacy_channel', 'bad',
                    'legacy_id', id,
                    'shadow_tag', shadow_tag,
                    'severity_score', severity_score,
                    'toxicity_score', toxicity_score,
                    'original_metadata', metadata
                ),
                created_at
            FROM moved
            RETURNING id
        )
        SELECT COUNT(*) AS count FROM inserted
    """,
    "review": """
        WITH moved AS (
            UPDATE user_data_schema.stm_review
            SET migrated_to_interaction_memory = TRUE
            WHERE user_id = %s AND migrated_to_interaction_memory = FALSE
            RETURNING *
        ), inserted AS (
            INSERT INTO user_data_schema.interaction_memories
                (user_id, text, embedding, classification, ethical_scores,
                 approved_for_training, training_weight, metadata, created_at)
            SELECT
                user_id,
                text,
                embedding,
                'neutral_interaction',
                jsonb_build_object(
                    'self_awareness', 0.5,
                    'emotional_regulation', 0.5,
                    'compassion', 0.5,
                    'integrity', 0.5,
                    'growth_mindset', 0.5,
                    'wisdom', 0.5,
                    'transcendence', 0.3
                ),
                FALSE,
                0.5,
                jsonb_build_object(
                    'legacy_channel', 'review',
                    'legacy_id', id,
                    'gating_reason', gating_reason,
                    'human_reviewed', human_reviewed,
                    'original_metadata', metadata
                ),
                created_at
            FROM moved
            RETURNING id
        )
        SELECT COUNT(*) AS count FROM inserted
    """,
    "mcl": """
        WITH moved AS (
            UPDATE user_data_schema.mcl_chains
            SET migrated_to_interaction_memory = TRUE
            WHERE user_id = %s AND migrated_to_interaction_memory = FALSE
            RETURNING *
        ), inserted AS (
            INSERT INTO user_data_schema.interaction_memories
                (user_id, text, embedding, classification, ethical_scores,
                 approved_for_training, training_weight, metadata, created_at)
            SELECT
                user_id,
                COALESCE(summary, 'Complex moral reasoning chain'),
                embedding,
                'wisdom_moment',
                jsonb_build_object(
                    'self_awareness', COALESCE(intention_score, 0.6),
                    'emotional_regulation', 0.6,
                    'compassion', COALESCE(benefit_score, 0.6),
                    'integrity', 0.7,
                    'growth_mindset', 0.7,
                    'wisdom', GREATEST(0.6, COALESCE(necessity_score, 0.6)),
                    'transcendence', 0.5
                ),
                COALESCE(approved_for_training, FALSE),
                2.5,
                jsonb_build_object(
                    'legacy_channel', 'mcl',
                    'legacy_id', id,
                    'event_chain', event_chain,
                    'moral_classification', moral_classification,
                    'intention_score', intention_score,
                    'necessity_score', necessity_score,
                    'harm_score', harm_score,
                    'benefit_score', benefit_score
                ),
                created_at
            FROM moved
            RETURNING id
        )
        SELECT COUNT(*) AS count FROM inserted
    """,
}


class PostgresTenantStore:
    """Pooled access to one tenant's ``user_data_schema``."""

    def __init__(
        self,
        connection_string: str,
        *,
        max_size: int = 10,
        idle_seconds: float = 30.0,
        connect_timeout: int = 10,
        statement_timeout_ms: int = 10000,
        wait_timeout: float = 15.0,
    ) -> None:
        self.connection_string = connection_string
        self.connect_timeout = connect_timeout
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            connection_string,
            min_size=1,
            max_size=max_size,
            max_idle=idle_seconds,
            timeout=wait_timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": connect_timeout,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=True,
        )

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            raise TenantUnavailable("Timed out waiting for a tenant database connection") from exc
        except psycopg.OperationalError as exc:
            raise TenantUnavailable(str(exc)) from exc
        except psycopg.Error as exc:
            raise TenantStoreError(str(exc)) from exc

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    def initialize_schema(self, admin_connection_string: Optional[str] = None) -> None:
        """Create extensions, tables, indexes, triggers and views.

        The bootstrap runs over its own connection so it can use the admin
        role when one is available; the regular role then receives grants.
        """
        target = admin_connection_string or self.connection_string
        grant_role = None
        if admin_connection_string and admin_connection_string != self.connection_string:
            regular = parse_postgres_url(self.connection_string)
            grant_role = regular.user if regular else None
        try:
            with psycopg.connect(target, connect_timeout=self.connect_timeout) as conn:
                with conn.transaction():
                    for statement in tenant_schema_statements(grant_role):
                        conn.execute(statement)
        except psycopg.OperationalError as exc:
            raise TenantUnavailable(str(exc)) from exc
        except psycopg.Error as exc:
            raise TenantStoreError(str(exc)) from exc
        self.logger.info("tenant_schema_initialized", backend="postgres", granted_role=grant_role)

    # -- profiles ------------------------------------------------------------

    @staticmethod
    def _row_to_profile(row: Dict[str, Any]) -> EthicalProfile:
        values = {k: row[k] for k in EthicalProfile.__dataclass_fields__ if k in row}
        for dim in ETHICAL_DIMENSIONS:
            if values.get(dim) is not None:
                values[dim] = float(values[dim])
        return EthicalProfile(**values)

    def get_profile(self, user_id: str) -> Optional[EthicalProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_data_schema.ethical_profiles WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        return self._row_to_profile(row) if row else None

    def ensure_profile(self, user_id: str) -> EthicalProfile:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_data_schema.ethical_profiles (user_id)
                VALUES (%s) ON CONFLICT (user_id) DO NOTHING
                """,
                (user_id,),
            )
            row = conn.execute(
                "SELECT * FROM user_data_schema.ethical_profiles WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        return self._row_to_profile(row)

    def save_profile(self, profile: EthicalProfile) -> EthicalProfile:
        columns = list(ETHICAL_DIMENSIONS) + [
            "growth_stage",
            "total_interactions",
            "breakthrough_moments",
            "crisis_interventions",
            "last_calculated_at",
        ]
        values = [getattr(profile, c) for c in columns]
        query = sql.SQL(
            """
            INSERT INTO user_data_schema.ethical_profiles (user_id, {cols})
            VALUES (%s, {placeholders})
            ON CONFLICT (user_id) DO UPDATE SET {updates}, updated_at = NOW()
            RETURNING *
            """
        ).format(
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            placeholders=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            updates=sql.SQL(", ").join(
                sql.SQL("{} = EXCLUDED.{}").format(sql.Identifier(c), sql.Identifier(c))
                for c in columns
            ),
        )
        with self._connect() as conn:
            row = conn.execute(query, (profile.user_id, *values)).fetchone()
        return self._row_to_profile(row)

    def aggregate_scores(self, user_id: str) -> ProfileAggregate:
        averages = sql.SQL(", ").join(
            sql.SQL("AVG((ethical_scores->>{})::float) AS {}").format(
                sql.Literal(dim), sql.Identifier(dim)
            )
            for dim in ETHICAL_DIMENSIONS
        )
        query = sql.SQL(
            """
            SELECT {averages},
                   COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE classification = 'wisdom_moment') AS wisdom_moments
            FROM user_data_schema.interaction_memories
            WHERE user_id = %s
            """
        ).format(averages=averages)
        with self._connect() as conn:
            row = conn.execute(query, (user_id,)).fetchone()
        return ProfileAggregate(
            total=int(row["total"] or 0),
            averages={
                dim: float(row[dim]) if row[dim] is not None else None
                for dim in ETHICAL_DIMENSIONS
            },
            wisdom_moments=int(row["wisdom_moments"] or 0),
        )

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_data_schema.interaction_memories
                    (user_id, text, embedding, classification, ethical_scores, gentle_guidance,
                     approved_for_training, training_weight, metadata, created_at)
                VALUES (%s, %s, %s::vector, %s, %s, %s, %s, %s, %s, COALESCE(%s, NOW()))
                RETURNING id, created_at, updated_at
                """,
                (
                    user_id,
                    text,
                    _format_vector(embedding) if embedding else None,
                    classification,
                    Jsonb(ethical_scores),
                    gentle_guidance,
                    approved_for_training,
                    training_weight,
                    Jsonb(metadata or {}),
                    created_at,
                ),
            ).fetchone()
        return InteractionMemory(
            id=int(row["id"]),
            user_id=user_id,
            text=text,
            classification=classification,
            ethical_scores=dict(ethical_scores),
            embedding=embedding,
            gentle_guidance=gentle_guidance,
            approved_for_training=approved_for_training,
            training_weight=training_weight,
            metadata=metadata or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def classification_stats(self, user_id: str) -> Dict[str, Dict[str, float]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT classification,
                       COUNT(*) AS total,
                       COUNT(*) FILTER (WHERE approved_for_training) AS approved,
                       AVG(training_weight) AS avg_weight
                FROM user_data_schema.interaction_memories
                WHERE user_id = %s
                GROUP BY classification
                """,
                (user_id,),
            ).fetchall()
        return {
            row["classification"]: {
                "total": int(row["total"]),
                "approved": int(row["approved"]),
                "avg_weight": float(row["avg_weight"] or 0.0),
            }
            for row in rows
        }

    def training_counts(self, user_id: str) -> Dict[str, Dict[str, int]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT classification, approved_for_training, COUNT(*) AS count
                FROM user_data_schema.interaction_memories
                WHERE user_id = %s
                GROUP BY classification, approved_for_training
                """,
                (user_id,),
            ).fetchall()
        approved = {cls: 0 for cls in CLASSIFICATIONS}
        pending = {cls: 0 for cls in CLASSIFICATIONS}
        for row in rows:
            bucket = approved if row["approved_for_training"] else pending
            bucket[row["classification"]] = bucket.get(row["classification"], 0) + int(row["count"])
        approved["total"] = sum(approved.values())
        pending["total"] = sum(pending.values())
        return {"approved": approved, "pending": pending}

    def auto_approve(self, user_id: str, *, exclude: Sequence[str] = ("needs_support",)) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_data_schema.interaction_memories
                SET approved_for_training = TRUE
                WHERE user_id = %s
                  AND approved_for_training = FALSE
                  AND NOT (classification = ANY(%s))
                """,
                (user_id, list(exclude)),
            )
            return cur.rowcount

    def interaction_totals(self, user_id: str) -> Dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COUNT(*) FILTER (WHERE approved_for_training) AS approved
                FROM user_data_schema.interaction_memories
                WHERE user_id = %s
                """,
                (user_id,),
            ).fetchone()
        return {"total": int(row["total"] or 0), "approved": int(row["approved"] or 0)}

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_data_schema.growth_milestones
                    (user_id, milestone_type, previous_state, new_state, trigger_interaction_id, description)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    user_id,
                    milestone_type,
                    Jsonb(previous_state) if previous_state is not None else None,
                    Jsonb(new_state) if new_state is not None else None,
                    trigger_interaction_id,
                    description,
                ),
            ).fetchone()
        return self._row_to_milestone(row)

    @staticmethod
    def _row_to_milestone(row: Dict[str, Any]) -> GrowthMilestone:
        return GrowthMilestone(
            id=int(row["id"]),
            user_id=row["user_id"],
            milestone_type=row["milestone_type"],
            previous_state=parse_json_meta(row.get("previous_state")),
            new_state=parse_json_meta(row.get("new_state")),
            trigger_interaction_id=row.get("trigger_interaction_id"),
            description=row.get("description"),
            created_at=row.get("created_at", utcnow()),
        )

    def list_milestones(self, user_id: str, limit: int = 10) -> List[GrowthMilestone]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_data_schema.growth_milestones
                WHERE user_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [self._row_to_milestone(row) for row in rows]

    # -- training jobs -----------------------------------------------------------

    @staticmethod
    def _row_to_job(row: Dict[str, Any]) -> TrainingJob:
        values = {k: row[k] for k in TrainingJob.__dataclass_fields__ if k in row}
        for key in ("dataset_composition", "ethical_profile_snapshot", "final_metrics", "metadata"):
            values[key] = parse_json_meta(values.get(key))
        return TrainingJob(**values)

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_data_schema.training_jobs
                    (user_id, job_id, job_name, adapter_version, status, total_samples,
                     dataset_composition, ethical_profile_snapshot, growth_stage_at_training,
                     metadata, started_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    user_id,
                    job_id,
                    job_name or job_id,
                    adapter_version,
                    status,
                    total_samples,
                    Jsonb(dataset_composition or {}),
                    Jsonb(ethical_profile_snapshot or {}),
                    growth_stage_at_training,
                    Jsonb(metadata or {}),
                    started_at,
                ),
            ).fetchone()
        return self._row_to_job(row)

    def get_training_job(self, job_id: str) -> Optional[TrainingJob]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_data_schema.training_jobs WHERE job_id = %s ORDER BY id DESC LIMIT 1",
                (job_id,),
            ).fetchone()
        return self._row_to_job(row) if row else None

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
        assignments: List[sql.Composable] = []
        params: List[Any] = []
        if status:
            assignments.append(sql.SQL("status = %s"))
            params.append(status)
        if error_message is not None:
            assignments.append(sql.SQL("error_message = %s"))
            params.append(error_message)
        if completed_at is not None:
            assignments.append(sql.SQL("completed_at = %s"))
            params.append(completed_at)
        if final_metrics is not None:
            assignments.append(sql.SQL("final_metrics = %s"))
            params.append(Jsonb(final_metrics))
        if metadata is not None:
            assignments.append(sql.SQL("metadata = COALESCE(metadata, '{}'::jsonb) || %s"))
            params.append(Jsonb(metadata))
        if not assignments:
            return self.get_training_job(job_id)
        query = sql.SQL(
            "UPDATE user_data_schema.training_jobs SET {} WHERE job_id = %s RETURNING *"
        ).format(sql.SQL(", ").join(assignments))
        with self._connect() as conn:
            row = conn.execute(query, (*params, job_id)).fetchone()
        return self._row_to_job(row) if row else None

    # -- memory embeddings -------------------------------------------------------

    @staticmethod
    def _row_to_embedding(row: Dict[str, Any]) -> MemoryEmbedding:
        score = row.get("score")
        return MemoryEmbedding(
            id=str(row["id"]),
            user_id=row["user_id"],
            content=row["content"],
            embedding=[],
            interaction_memory_id=row.get("interaction_memory_id"),
            metadata=parse_json_meta(row.get("metadata")) or {},
            created_at=row.get("created_at", utcnow()),
            updated_at=row.get("updated_at", utcnow()),
            score=float(score) if score is not None else None,
        )

    def add_memory_embedding(
        self,
        user_id: str,
        content: str,
        embedding: List[float],
        *,
        metadata: Optional[Dict] = None,
        interaction_memory_id: Optional[int] = None,
    ) -> MemoryEmbedding:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_data_schema.memory_embeddings
                    (user_id, content, embedding, interaction_memory_id, metadata)
                VALUES (%s, %s, %s::vector, %s, %s)
                RETURNING id, user_id, content, interaction_memory_id, metadata, created_at, updated_at
                """,
                (
                    user_id,
                    content,
                    _format_vector(embedding),
                    interaction_memory_id,
                    Jsonb(metadata or {}),
                ),
            ).fetchone()
        return self._row_to_embedding(row)

    def search_memory_embeddings(
        self, user_id: str, query_embedding: List[float], limit: int = 20
    ) -> List[MemoryEmbedding]:
        vector = _format_vector(query_embedding)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, content, interaction_memory_id, metadata, created_at, updated_at,
                       1 - (embedding <=> %s::vector) AS score
                FROM user_data_schema.memory_embeddings
                WHERE user_id = %s
                ORDER BY embedding <=> %s::vector
                LIMIT %s
                """,
                (vector, user_id, vector, limit),
            ).fetchall()
        return [self._row_to_embedding(row) for row in rows]

    def list_memory_embeddings(self, user_id: str, limit: int = 100) -> List[MemoryEmbedding]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, content, interaction_memory_id, metadata, created_at, updated_at
                FROM user_data_schema.memory_embeddings
                WHERE user_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [self._row_to_embedding(row) for row in rows]

    def delete_memory_embedding(self, memory_id: str, user_id: str) -> bool:
        try:
            uuid.UUID(str(memory_id))
        except ValueError:
            return False
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_data_schema.memory_embeddings WHERE id = %s AND user_id = %s",
                (memory_id, user_id),
            )
            return cur.rowcount > 0

    # -- legacy channels -----------------------------------------------------------

    def add_legacy_row(self, channel: str, user_id: str, fields: Dict) -> LegacyRow:
        spec = LEGACY_CHANNELS[channel]
        columns = ["user_id"] + list(fields)
        values = [user_id] + [
            Jsonb(v) if isinstance(v, (dict, list)) and k != "embedding" else v
            for k, v in fields.items()
        ]
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING id, created_at").format(
            sql.Identifier("user_data_schema", spec.table),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        with self._connect() as conn:
            row = conn.execute(query, values).fetchone()
        return LegacyRow(
            id=int(row["id"]),
            channel=channel,
            user_id=user_id,
            fields=dict(fields),
            created_at=row["created_at"],
        )

    def _count_per_channel(self, user_id: str, *, pending_only: bool) -> Dict[str, int]:
        condition = sql.SQL(" AND migrated_to_interaction_memory = FALSE") if pending_only else sql.SQL("")
        selects = sql.SQL(", ").join(
            sql.SQL("(SELECT COUNT(*) FROM {} WHERE user_id = %(uid)s{}) AS {}").format(
                sql.Identifier("user_data_schema", spec.table),
                condition,
                sql.Identifier(name),
            )
            for name, spec in LEGACY_CHANNELS.items()
        )
        with self._connect() as conn:
            row = conn.execute(sql.SQL("SELECT {}").format(selects), {"uid": user_id}).fetchone()
        return {name: int(row[name] or 0) for name in LEGACY_CHANNELS}

    def channel_counts(self, user_id: str) -> Dict[str, int]:
        counts = self._count_per_channel(user_id, pending_only=False)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM user_data_schema.memory_embeddings WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        counts["embeddings"] = int(row["count"] or 0)
        return counts

    def legacy_pending_counts(self, user_id: str) -> Dict[str, int]:
        return self._count_per_channel(user_id, pending_only=True)

    def migrate_legacy_channel(self, channel: str, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(_MIGRATION_SQL[channel], (user_id,)).fetchone()
        return int(row["count"] or 0)
