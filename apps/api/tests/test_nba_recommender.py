from __future__ import annotations

import uuid

import pytest

from gigaid.nba.recommender import RECOMMENDATIONS, recommend
from gigaid.nba.schemas import ActionType, EntityType, StallCandidate, StallType


def _candidate(entity_type: EntityType, stall_type: StallType) -> StallCandidate:
    return StallCandidate(
        entity_type=entity_type,
        entity_id=uuid.uuid4(),
        user_id=uuid.uuid4(),
        stall_type=stall_type,
        money_at_risk=0,
        confidence=0.7,
    )


@pytest.mark.parametrize(
    ("entity_type", "stall_type", "action", "auto_executable"),
    [
        (EntityType.INVOICE, StallType.DRAFT_AGING, ActionType.SEND_INVOICE_REMINDER, False),
        (EntityType.INVOICE, StallType.IDLE, ActionType.SEND_INVOICE_REMINDER, True),
        (EntityType.INVOICE, StallType.VIEWED_UNPAID, ActionType.AUTO_SEND_GENTLE_NUDGE, True),
        (EntityType.JOB, StallType.OVERDUE, ActionType.SUGGEST_STATUS_UPDATE, False),
        (EntityType.LEAD, StallType.NO_RESPONSE, ActionType.SEND_FOLLOW_UP_TEXT, False),
    ],
)
def test_recommendation_table(
    entity_type: EntityType,
    stall_type: StallType,
    action: ActionType,
    auto_executable: bool,
) -> None:
    recommendation = recommend(_candidate(entity_type, stall_type))
    assert recommendation is not None
    assert recommendation.recommended_action == action
    assert recommendation.auto_executable is auto_executable
    assert recommendation.reason


def test_unmapped_pairs_produce_no_action() -> None:
    assert recommend(_candidate(EntityType.JOB, StallType.DRAFT_AGING)) is None
    assert recommend(_candidate(EntityType.LEAD, StallType.IDLE)) is None
    assert recommend(_candidate(EntityType.INVOICE, StallType.NO_RESPONSE)) is None


def test_reasons_fit_in_a_banner() -> None:
    assert all(len(item.reason) <= 120 for item in RECOMMENDATIONS.values())


def test_only_client_facing_invoice_nudges_are_autonomous() -> None:
    autonomous = {key for key, item in RECOMMENDATIONS.items() if item.auto_executable}
    assert autonomous == {
        (EntityType.INVOICE, StallType.IDLE),
        (EntityType.INVOICE, StallType.VIEWED_UNPAID),
    }
