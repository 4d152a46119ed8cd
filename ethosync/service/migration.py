from __future__ import annotations

from typing import Any, Dict

from ethosync.logging import get_logger, sanitize_error_message
from ethosync.service.profile import ProfileService
from ethosync.storage.common import LEGACY_CHANNELS
from ethosync.storage.errors import TenantStoreError, TenantUnavailable

logger = get_logger(__name__)

# Order and labels used when reporting per-channel failures.
CHANNEL_LABELS = {
    "good": "Good channel",
    "bad": "Bad channel",
    "review": "Review queue",
    "mcl": "MCL chains",
}


class LegacyMigrationService:
    """Moves a tenant's legacy channel rows into interaction memories.

    Each channel migrates in one atomic store call that flips the
    ``migrated`` flag and copies the row together, so a re-run only picks up
    rows that were never copied.
    """

    def __init__(self, profiles: ProfileService) -> None:
        self.profiles = profiles

    def migrate(self, tenant_store, user_id: str) -> Dict[str, Any]:
        migrated = {name: 0 for name in CHANNEL_LABELS}
        errors = []
        tenant_store.ensure_profile(user_id)
        for name, label in CHANNEL_LABELS.items():
            try:
                migrated[name] = tenant_store.migrate_legacy_channel(name, user_id)
            except TenantUnavailable:
                raise
            except TenantStoreError as exc:
                logger.error("legacy_migration_channel_failed", user_id=user_id, channel=name, error=str(exc))
                errors.append(f"{label}: {sanitize_error_message(str(exc))}")
            else:
                logger.info(
                    "legacy_migration_channel_done",
                    user_id=user_id,
                    channel=name,
                    table=LEGACY_CHANNELS[name].table,
                    migrated=migrated[name],
                )
        migrated["total"] = sum(migrated[name] for name in CHANNEL_LABELS)

        self.profiles.recalculate(tenant_store, user_id)
        logger.info("legacy_migration_completed", user_id=user_id, total=migrated["total"], errors=len(errors))
        return {"success": not errors, "migrated": migrated, "errors": errors}

    def status(self, tenant_store, user_id: str) -> Dict[str, Any]:
        pending = tenant_store.legacy_pending_counts(user_id)
        legacy = {name: int(pending.get(name, 0)) for name in CHANNEL_LABELS}
        return {
            "needs_migration": any(count > 0 for count in legacy.values()),
            "legacy": legacy,
            "ethical": tenant_store.interaction_totals(user_id),
        }
