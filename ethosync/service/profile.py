from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Optional

from ethosync.logging import get_logger
from ethosync.service.errors import NotFoundError
from ethosync.storage.models import (
    DIMENSION_DEFAULTS,
    ETHICAL_DIMENSIONS,
    EthicalProfile,
    ProfileAggregate,
    utcnow,
)

logger = get_logger(__name__)

STAGE_DESCRIPTIONS = {
    1: "Pre-conventional: Learning to understand consequences",
    2: "Conventional: Following social norms and expectations",
    3: "Post-conventional: Guided by universal principles",
    4: "Integrated: Ethics naturally embodied in daily life",
    5: "Transcendent: Wisdom and compassion beyond self",
}

# Upper bounds (exclusive) of the mean dimension score for stages 1-4.
_STAGE_THRESHOLDS = ((0.3, 1), (0.5, 2), (0.7, 3), (0.85, 4))


def stage_for_score(score: float) -> int:
    for bound, stage in _STAGE_THRESHOLDS:
        if score < bound:
            return stage
    return 5


def stage_description(stage: int) -> str:
    return STAGE_DESCRIPTIONS.get(stage, "Unknown")


def overall_score(dimensions: Dict[str, float]) -> float:
    return sum(dimensions[d] for d in ETHICAL_DIMENSIONS) / len(ETHICAL_DIMENSIONS)


def compute_profile(
    user_id: str,
    aggregate: ProfileAggregate,
    previous: Optional[EthicalProfile] = None,
    *,
    now: Optional[datetime] = None,
) -> EthicalProfile:
    """Build a profile from the full aggregate of a tenant's memories.

    Output depends only on ``aggregate``; ``previous`` contributes identity
    fields (creation time, crisis counter) but no scores.
    """
    dimensions = {
        dim: float(aggregate.averages.get(dim))
        if aggregate.averages.get(dim) is not None
        else DIMENSION_DEFAULTS[dim]
        for dim in ETHICAL_DIMENSIONS
    }
    base = previous or EthicalProfile(user_id=user_id)
    return replace(
        base,
        user_id=user_id,
        **dimensions,
        growth_stage=stage_for_score(overall_score(dimensions)),
        total_interactions=aggregate.total,
        breakthrough_moments=aggregate.wisdom_moments,
        last_calculated_at=now or utcnow(),
    )


def profile_payload(profile: EthicalProfile) -> Dict[str, Any]:
    dims = profile.dimensions()
    return {
        "user_id": profile.user_id,
        **dims,
        "growth_stage": profile.growth_stage,
        "total_interactions": profile.total_interactions,
        "breakthrough_moments": profile.breakthrough_moments,
        "crisis_interventions": profile.crisis_interventions,
        "created_at": profile.created_at,
        "updated_at": profile.updated_at,
        "overall_score": overall_score(dims),
    }


class ProfileService:
    """Reads and recomputes a tenant's ethical growth profile."""

    def describe(self, tenant_store, user_id: str) -> Dict[str, Any]:
        profile = tenant_store.get_profile(user_id)
        if profile is None:
            raise NotFoundError("Profile not found")
        milestones = tenant_store.list_milestones(user_id, limit=10)
        return {
            "profile": profile_payload(profile),
            "statistics": tenant_store.classification_stats(user_id),
            "milestones": [
                {
                    "milestone_type": m.milestone_type,
                    "description": m.description,
                    "created_at": m.created_at,
                }
                for m in milestones
            ],
            "stage_description": stage_description(profile.growth_stage),
        }

    def recalculate(self, tenant_store, user_id: str) -> Dict[str, Any]:
        aggregate = tenant_store.aggregate_scores(user_id)
        if aggregate.total <= 0:
            return {"success": False, "message": "No interactions found"}

        previous = tenant_store.ensure_profile(user_id)
        updated = compute_profile(user_id, aggregate, previous)
        tenant_store.save_profile(updated)
        if updated.growth_stage > previous.growth_stage:
            tenant_store.add_milestone(
                user_id,
                "stage_advancement",
                previous_state={"growth_stage": previous.growth_stage},
                new_state={"growth_stage": updated.growth_stage},
                description=(
                    f"Advanced to stage {updated.growth_stage}: "
                    f"{stage_description(updated.growth_stage)}"
                ),
            )
            logger.info(
                "profile_stage_advanced",
                user_id=user_id,
                previous_stage=previous.growth_stage,
                new_stage=updated.growth_stage,
            )
        logger.info(
            "profile_recalculated",
            user_id=user_id,
            stage=updated.growth_stage,
            total_interactions=aggregate.total,
        )
        return {
            "success": True,
            "message": "Profile recalculated",
            "updated_stage": updated.growth_stage,
        }
