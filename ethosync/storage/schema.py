"""DDL for the control-plane database and the per-tenant ``user_data_schema``."""

from __future__ import annotations

from typing import List, Optional

from psycopg import sql

TENANT_SCHEMA = "user_data_schema"

CONTROL_PLANE_DDL = [
    """
    CREATE TABLE IF NOT EXISTS tenant_account (
        id TEXT PRIMARY KEY,
        identity_id TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL,
        name TEXT,
        project_id TEXT,
        project_name TEXT,
        project_status TEXT,
        template_run_id TEXT,
        provisioning_started_at TIMESTAMPTZ,
        template_completed_at TIMESTAMPTZ,
        setup_error TEXT,
        platform_secret_data JSONB,
        workflow_url TEXT,
        workflow_user_email TEXT,
        workflow_encryption_key TEXT,
        workflow_api_key TEXT,
        postgres_schema_initialized BOOLEAN NOT NULL DEFAULT FALSE,
        workflow_postgres_credential_id TEXT,
        postgres_setup_error TEXT,
        postgres_setup_at TIMESTAMPTZ,
        good_channel_count INT NOT NULL DEFAULT 0,
        bad_channel_count INT NOT NULL DEFAULT 0,
        mcl_chain_count INT NOT NULL DEFAULT 0,
        training_status TEXT,
        adapter_version TEXT,
        last_trained_at TIMESTAMPTZ,
        training_error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tenant_account_project_status ON tenant_account(project_status)",
    """
    CREATE TABLE IF NOT EXISTS provisioning_lock (
        user_id TEXT PRIMARY KEY REFERENCES tenant_account(id) ON DELETE CASCADE,
        owner TEXT NOT NULL,
        acquired_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
]

_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS user_data_schema.ethical_profiles (
        user_id TEXT PRIMARY KEY,
        self_awareness FLOAT DEFAULT 0.3,
        emotional_regulation FLOAT DEFAULT 0.4,
        compassion FLOAT DEFAULT 0.4,
        integrity FLOAT DEFAULT 0.5,
        growth_mindset FLOAT DEFAULT 0.4,
        wisdom FLOAT DEFAULT 0.3,
        transcendence FLOAT DEFAULT 0.2,
        growth_stage INT DEFAULT 2,
        total_interactions INT DEFAULT 0,
        breakthrough_moments INT DEFAULT 0,
        crisis_interventions INT DEFAULT 0,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW(),
        last_calculated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_data_schema.interaction_memories (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        text TEXT NOT NULL,
        embedding vector(768),
        classification TEXT NOT NULL,
        ethical_scores JSONB NOT NULL DEFAULT '{}',
        moments JSONB DEFAULT '[]',
        reflection_prompt TEXT,
        gentle_guidance TEXT,
        approved_for_training BOOLEAN DEFAULT FALSE,
        training_weight FLOAT DEFAULT 1.0,
        metadata JSONB DEFAULT '{}',
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_data_schema.memory_embeddings (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        content TEXT NOT NULL,
        embedding vector(768),
        interaction_memory_id BIGINT,
        metadata JSONB DEFAULT '{}',
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_data_schema.growth_milestones (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        milestone_type TEXT NOT NULL,
        previous_state JSONB,
        new_state JSONB,
        trigger_interaction_id BIGINT,
        description TEXT,
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_data_schema.training_jobs (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        job_id TEXT NOT NULL,
        job_name TEXT NOT NULL,
        adapter_version TEXT NOT NULL,
        status TEXT DEFAULT 'pending',
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        dataset_composition JSONB DEFAULT '{}',
        total_samples INT DEFAULT 0,
        ethical_profile_snapshot JSONB DEFAULT '{}',
        growth_stage_at_training INT,
        training_loss FLOAT,
        final_metrics JSONB DEFAULT '{}',
        error_message TEXT,
        retry_count INT DEFAULT 0,
        metadata JSONB DEFAULT '{}',
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_data_schema.gating_logs (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        input_text TEXT NOT NULL,
        classification TEXT,
        ethical_scores JSONB,
        growth_stage INT,
        moments JSONB DEFAULT '[]',
        reflection_prompt TEXT,
        gentle_guidance TEXT,
        processing_time_ms INT,
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_data_schema.stm_good (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        text TEXT NOT NULL,
        embedding vector(768),
        metadata JSONB DEFAULT '{}',
        valence TEXT DEFAULT 'positive',
        alignment_score FLOAT,
        quality_score FLOAT,
        approved_for_consolidation BOOLEAN DEFAULT FALSE,
        migrated_to_interaction_memory BOOLEAN DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_data_schema.stm_bad (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        text TEXT NOT NULL,
        embedding vector(768),
        metadata JSONB DEFAULT '{}',
        valence TEXT DEFAULT 'negative',
        severity_score FLOAT,
        toxicity_score FLOAT,
        shadow_tag TEXT,
        safe_counterfactual TEXT,
        approved_for_shadow_learning BOOLEAN DEFAULT FALSE,
        migrated_to_interaction_memory BOOLEAN DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_data_schema.stm_review (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        text TEXT NOT NULL,
        embedding vector(768),
        metadata JSONB DEFAULT '{}',
        gating_reason TEXT,
        human_reviewed BOOLEAN DEFAULT FALSE,
        migrated_to_interaction_memory BOOLEAN DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_data_schema.mcl_chains (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        event_chain JSONB NOT NULL,
        intention_score FLOAT,
        necessity_score FLOAT,
        harm_score FLOAT,
        benefit_score FLOAT,
        moral_classification TEXT,
        summary TEXT,
        embedding vector(768),
        approved_for_training BOOLEAN DEFAULT FALSE,
        migrated_to_interaction_memory BOOLEAN DEFAULT FALSE
    )
    """,
    # Older tenants were created before quality_score existed.
    "ALTER TABLE user_data_schema.stm_good ADD COLUMN IF NOT EXISTS quality_score FLOAT",
]

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_ethical_profiles_stage ON user_data_schema.ethical_profiles(growth_stage)",
    "CREATE INDEX IF NOT EXISTS idx_ethical_profiles_updated ON user_data_schema.ethical_profiles(updated_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_interaction_user ON user_data_schema.interaction_memories(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_interaction_classification ON user_data_schema.interaction_memories(classification)",
    "CREATE INDEX IF NOT EXISTS idx_interaction_approved ON user_data_schema.interaction_memories(approved_for_training)",
    "CREATE INDEX IF NOT EXISTS idx_interaction_created ON user_data_schema.interaction_memories(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_interaction_embedding ON user_data_schema.interaction_memories USING hnsw (embedding vector_cosine_ops)",
    "CREATE INDEX IF NOT EXISTS idx_memory_embeddings_user ON user_data_schema.memory_embeddings(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_memory_embeddings_vector ON user_data_schema.memory_embeddings USING hnsw (embedding vector_cosine_ops)",
    "CREATE INDEX IF NOT EXISTS idx_memory_embeddings_interaction ON user_data_schema.memory_embeddings(interaction_memory_id)",
    "CREATE INDEX IF NOT EXISTS idx_milestones_user ON user_data_schema.growth_milestones(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_milestones_type ON user_data_schema.growth_milestones(milestone_type)",
    "CREATE INDEX IF NOT EXISTS idx_milestones_created ON user_data_schema.growth_milestones(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_training_jobs_user ON user_data_schema.training_jobs(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_training_jobs_status ON user_data_schema.training_jobs(status)",
    "CREATE INDEX IF NOT EXISTS idx_training_jobs_created ON user_data_schema.training_jobs(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_gating_logs_user ON user_data_schema.gating_logs(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_gating_logs_classification ON user_data_schema.gating_logs(classification)",
    "CREATE INDEX IF NOT EXISTS idx_gating_logs_created ON user_data_schema.gating_logs(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_stm_good_user ON user_data_schema.stm_good(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_stm_good_migrated ON user_data_schema.stm_good(migrated_to_interaction_memory)",
    "CREATE INDEX IF NOT EXISTS idx_stm_bad_user ON user_data_schema.stm_bad(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_stm_bad_migrated ON user_data_schema.stm_bad(migrated_to_interaction_memory)",
    "CREATE INDEX IF NOT EXISTS idx_stm_review_user ON user_data_schema.stm_review(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_stm_review_migrated ON user_data_schema.stm_review(migrated_to_interaction_memory)",
    "CREATE INDEX IF NOT EXISTS idx_mcl_user ON user_data_schema.mcl_chains(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_mcl_migrated ON user_data_schema.mcl_chains(migrated_to_interaction_memory)",
]

_TRIGGER_FUNCTION = """
    CREATE OR REPLACE FUNCTION user_data_schema.update_updated_at()
    RETURNS TRIGGER AS $$
    BEGIN
        NEW.updated_at = NOW();
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
"""

_TRIGGER_TABLES = ("ethical_profiles", "interaction_memories", "memory_embeddings", "training_jobs")

_VIEWS = [
    """
    CREATE OR REPLACE VIEW user_data_schema.v_training_ready AS
    SELECT
        user_id,
        classification,
        COUNT(*) AS count,
        AVG((ethical_scores->>'self_awareness')::float) AS avg_self_awareness,
        AVG((ethical_scores->>'compassion')::float) AS avg_compassion,
        AVG(training_weight) AS avg_weight
    FROM user_data_schema.interaction_memories
    WHERE approved_for_training = TRUE
    GROUP BY user_id, classification
    """,
    """
    CREATE OR REPLACE VIEW user_data_schema.v_growth_summary AS
    SELECT
        ep.user_id,
        ep.growth_stage,
        ep.total_interactions,
        ep.breakthrough_moments,
        ep.crisis_interventions,
        COUNT(DISTINCT im.classification) AS unique_classifications,
        COUNT(im.id) AS total_memories,
        COUNT(CASE WHEN im.approved_for_training THEN 1 END) AS approved_memories
    FROM user_data_schema.ethical_profiles ep
    LEFT JOIN user_data_schema.interaction_memories im ON ep.user_id = im.user_id
    GROUP BY ep.user_id, ep.growth_stage, ep.total_interactions,
             ep.breakthrough_moments, ep.crisis_interventions
    """,
]


def tenant_schema_statements(grant_role: Optional[str] = None) -> List[sql.Composable]:
    """Ordered, idempotent statements that bootstrap a tenant database.

    ``grant_role`` is the non-admin role that should be able to use the
    schema when the bootstrap runs as an admin user.
    """
    statements: List[sql.Composable] = [
        sql.SQL("CREATE EXTENSION IF NOT EXISTS vector"),
        sql.SQL("CREATE EXTENSION IF NOT EXISTS pgcrypto"),
        sql.SQL("CREATE SCHEMA IF NOT EXISTS user_data_schema"),
    ]
    statements.extend(sql.SQL(stmt) for stmt in _TABLES)
    statements.extend(sql.SQL(stmt) for stmt in _INDEXES)
    statements.append(sql.SQL(_TRIGGER_FUNCTION))
    for table in _TRIGGER_TABLES:
        trigger = sql.Identifier(f"update_{table}_updated_at")
        target = sql.Identifier(TENANT_SCHEMA, table)
        statements.append(
            sql.SQL("DROP TRIGGER IF EXISTS {} ON {}").format(trigger, target)
        )
        statements.append(
            sql.SQL(
                "CREATE TRIGGER {} BEFORE UPDATE ON {} "
                "FOR EACH ROW EXECUTE FUNCTION user_data_schema.update_updated_at()"
            ).format(trigger, target)
        )
    statements.extend(sql.SQL(stmt) for stmt in _VIEWS)
    if grant_role:
        role = sql.Identifier(grant_role)
        statements.extend(
            [
                sql.SQL("GRANT USAGE ON SCHEMA user_data_schema TO {}").format(role),
                sql.SQL("GRANT ALL PRIVILEGES ON ALL TABLES IN SCHEMA user_data_schema TO {}").format(role),
                sql.SQL("GRANT ALL PRIVILEGES ON ALL SEQUENCES IN SCHEMA user_data_schema TO {}").format(role),
                sql.SQL("ALTER DEFAULT PRIVILEGES IN SCHEMA user_data_schema GRANT ALL ON TABLES TO {}").format(role),
                sql.SQL("ALTER DEFAULT PRIVILEGES IN SCHEMA user_data_schema GRANT ALL ON SEQUENCES TO {}").format(role),
            ]
        )
    return statements
