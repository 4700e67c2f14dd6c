from __future__ import annotations

from gigaid.nba.schemas import ActionType, EntityType, Recommendation, StallCandidate, StallType


# Only reminders on invoices the client already received may fire without a tap.
RECOMMENDATIONS: dict[tuple[EntityType, StallType], Recommendation] = {
    (EntityType.INVOICE, StallType.DRAFT_AGING): Recommendation(
        recommended_action=ActionType.SEND_INVOICE_REMINDER,
        reason="Draft invoice over 24h old. Ready to send?",
        auto_executable=False,
    ),
    (EntityType.INVOICE, StallType.IDLE): Recommendation(
        recommended_action=ActionType.SEND_INVOICE_REMINDER,
        reason="Invoice unpaid for 3+ days. Send reminder?",
        auto_executable=True,
    ),
    (EntityType.INVOICE, StallType.VIEWED_UNPAID): Recommendation(
        recommended_action=ActionType.AUTO_SEND_GENTLE_NUDGE,
        reason="Invoice viewed but unpaid. Gentle nudge?",
        auto_executable=True,
    ),
    (EntityType.JOB, StallType.OVERDUE): Recommendation(
        recommended_action=ActionType.SUGGEST_STATUS_UPDATE,
        reason="Job started? Update status to track progress.",
        auto_executable=False,
    ),
    (EntityType.LEAD, StallType.NO_RESPONSE): Recommendation(
        recommended_action=ActionType.SEND_FOLLOW_UP_TEXT,
        reason="Lead idle 24h+. Follow up to close?",
        auto_executable=False,
    ),
}


def recommend(candidate: StallCandidate) -> Recommendation | None:
    return RECOMMENDATIONS.get((candidate.entity_type, candidate.stall_type))
