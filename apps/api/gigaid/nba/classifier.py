"""Stall classification for leads, jobs and invoices.

Each entity type has a status table covering every member of its status enum.
A status maps either to a rule or to ``None`` (never stalls). Adding a status
without deciding its rule raises ``KeyError`` on the first scan that sees it.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from datetime import date, datetime, time, tzinfo
from uuid import UUID
from zoneinfo import ZoneInfo

from gigaid.nba.schemas import (
    EntitySnapshot,
    EntityType,
    InvoiceSnapshot,
    InvoiceStatus,
    JobSnapshot,
    JobStatus,
    LeadSnapshot,
    LeadStatus,
    StallCandidate,
    StallType,
)


logger = logging.getLogger("gigaid.nba.engine")

SECONDS_PER_HOUR = 3600.0

LEAD_NO_RESPONSE_HOURS = 24.0
JOB_OVERDUE_HOURS = 2.0
INVOICE_DRAFT_AGING_HOURS = 24.0
INVOICE_SENT_UNPAID_HOURS = 72.0

_TIME_RE = re.compile(r"(\d{1,2}):(\d{2})\s*(AM|PM)?", re.IGNORECASE)


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / SECONDS_PER_HOUR


def _capped(ceiling: float, base: float, hours: float, horizon: float, slope: float) -> float:
    return min(ceiling, base + (hours / horizon) * slope)


def lead_no_response_confidence(hours: float) -> float:
    return _capped(0.9, 0.5, hours, 48.0, 0.4)


def job_overdue_confidence(hours: float) -> float:
    return _capped(0.95, 0.6, hours, 24.0, 0.35)


def invoice_draft_aging_confidence(hours: float) -> float:
    return _capped(0.85, 0.5, hours, 72.0, 0.35)


def invoice_idle_confidence(hours: float) -> float:
    return _capped(0.9, 0.6, hours, 168.0, 0.3)


def parse_scheduled_datetime(date_value: str, time_value: str, tz: tzinfo) -> datetime | None:
    if not date_value or not time_value:
        return None

    raw_date = date_value.strip()
    try:
        scheduled_day = date.fromisoformat(raw_date[:10])
    except ValueError:
        return None

    match = _TIME_RE.search(time_value)
    if match is None:
        return None

    hours = int(match.group(1))
    minutes = int(match.group(2))
    meridiem = (match.group(3) or "").upper()
    if meridiem:
        if not 1 <= hours <= 12:
            return None
        if meridiem == "PM" and hours != 12:
            hours += 12
        if meridiem == "AM" and hours == 12:
            hours = 0
    if hours > 23 or minutes > 59:
        return None

    return datetime.combine(scheduled_day, time(hours, minutes), tzinfo=tz)


def _lead_no_response(lead: LeadSnapshot, now: datetime) -> StallCandidate | None:
    last_action = max(
        value for value in (lead.last_contacted_at, lead.response_copied_at, lead.created_at) if value is not None
    )
    hours = hours_between(last_action, now)
    if hours < LEAD_NO_RESPONSE_HOURS:
        return None
    return StallCandidate(
        entity_type=EntityType.LEAD,
        entity_id=lead.id,
        user_id=lead.user_id,
        stall_type=StallType.NO_RESPONSE,
        money_at_risk=0,
        confidence=lead_no_response_confidence(hours),
    )


_LEAD_RULES: dict[LeadStatus, Callable[[LeadSnapshot, datetime], StallCandidate | None] | None] = {
    LeadStatus.NEW: _lead_no_response,
    LeadStatus.RESPONSE_SENT: _lead_no_response,
    LeadStatus.CONTACTED: None,
    LeadStatus.CONVERTED: None,
    LeadStatus.COLD: None,
    LeadStatus.LOST: None,
}


def classify_lead(lead: LeadSnapshot, now: datetime) -> StallCandidate | None:
    rule = _LEAD_RULES[lead.status]
    if rule is None or lead.converted_at is not None:
        return None
    return rule(lead, now)


def _job_overdue(job: JobSnapshot, now: datetime, tz: tzinfo) -> StallCandidate | None:
    scheduled_at = parse_scheduled_datetime(job.scheduled_date, job.scheduled_time, tz)
    if scheduled_at is None:
        logger.debug(
            "nba.classifier.unparsable_schedule",
            extra={"entity_type": EntityType.JOB.value, "entity_id": str(job.id)},
        )
        return None

    hours = hours_between(scheduled_at, now)
    if hours < JOB_OVERDUE_HOURS:
        return None
    return StallCandidate(
        entity_type=EntityType.JOB,
        entity_id=job.id,
        user_id=job.user_id,
        stall_type=StallType.OVERDUE,
        money_at_risk=job.price or 0,
        confidence=job_overdue_confidence(hours),
    )


_JOB_RULES: dict[JobStatus, Callable[[JobSnapshot, datetime, tzinfo], StallCandidate | None] | None] = {
    JobStatus.SCHEDULED: _job_overdue,
    JobStatus.IN_PROGRESS: None,
    JobStatus.COMPLETED: None,
    JobStatus.CANCELLED: None,
}


def classify_job(job: JobSnapshot, now: datetime, tz: tzinfo | None = None) -> StallCandidate | None:
    rule = _JOB_RULES[job.status]
    if rule is None:
        return None
    return rule(job, now, tz or ZoneInfo("UTC"))


def _invoice_draft_aging(invoice: InvoiceSnapshot, now: datetime) -> StallCandidate | None:
    hours = hours_between(invoice.created_at, now)
    if hours < INVOICE_DRAFT_AGING_HOURS:
        return None
    return StallCandidate(
        entity_type=EntityType.INVOICE,
        entity_id=invoice.id,
        user_id=invoice.user_id,
        stall_type=StallType.DRAFT_AGING,
        money_at_risk=invoice.amount or 0,
        confidence=invoice_draft_aging_confidence(hours),
    )


def _invoice_idle(invoice: InvoiceSnapshot, now: datetime) -> StallCandidate | None:
    if invoice.sent_at is None:
        return None
    hours = hours_between(invoice.sent_at, now)
    if hours < INVOICE_SENT_UNPAID_HOURS:
        return None
    return StallCandidate(
        entity_type=EntityType.INVOICE,
        entity_id=invoice.id,
        user_id=invoice.user_id,
        stall_type=StallType.IDLE,
        money_at_risk=invoice.amount or 0,
        confidence=invoice_idle_confidence(hours),
    )


_INVOICE_RULES: dict[InvoiceStatus, Callable[[InvoiceSnapshot, datetime], StallCandidate | None] | None] = {
    InvoiceStatus.DRAFT: _invoice_draft_aging,
    InvoiceStatus.SENT: _invoice_idle,
    InvoiceStatus.PAID: None,
}


def classify_invoice(invoice: InvoiceSnapshot, now: datetime) -> StallCandidate | None:
    rule = _INVOICE_RULES[invoice.status]
    if rule is None:
        return None
    return rule(invoice, now)


def classify(entity: EntitySnapshot, now: datetime, tz: tzinfo | None = None) -> StallCandidate | None:
    if isinstance(entity, LeadSnapshot):
        return classify_lead(entity, now)
    if isinstance(entity, JobSnapshot):
        return classify_job(entity, now, tz)
    if isinstance(entity, InvoiceSnapshot):
        return classify_invoice(entity, now)
    raise TypeError(f"unsupported entity snapshot: {type(entity).__name__}")


def select_strongest(candidates: Iterable[StallCandidate]) -> list[StallCandidate]:
    strongest: dict[tuple[EntityType, UUID], StallCandidate] = {}
    for candidate in candidates:
        current = strongest.get(candidate.entity_key)
        if current is None or candidate.confidence > current.confidence:
            strongest[candidate.entity_key] = candidate
    return list(strongest.values())
