"""
Workflow transition rules.

Pure functions, no DB dependency. The state pointer only moves forward;
action items resolve on keyword match, never from a confirmation that
predates the request or from the message that raised them.
"""

import re
import uuid
from datetime import date, datetime, timezone

from app.resolution_config.loader import ActionCreationRule


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def should_advance(current_order: int | None, target_order: int) -> bool:
    return target_order > (current_order or 0)


def add_state_reached(states_reached: list[str] | None, state: str) -> list[str]:
    reached = list(states_reached or [])
    if state not in reached:
        reached.append(state)
    return reached


def keyword_match(description: str, keywords: list[str]) -> str | None:
    """First keyword found in the description as a whole word or phrase."""
    for keyword in keywords:
        if re.search(rf"\b{re.escape(keyword)}\b", description, re.IGNORECASE):
            return keyword
    return None


def resolves_action(
    *,
    description: str,
    raised_at: datetime,
    source_message_id: uuid.UUID | None,
    completed_at: datetime | None,
    keywords: list[str],
    message_id: uuid.UUID,
    received_at: datetime,
) -> tuple[bool, str]:
    """Whether a message satisfies an open action item.

    Returns (resolves, reason).
    """
    if completed_at is not None:
        return False, "Already completed"
    if source_message_id == message_id:
        return False, "Message raised this action"
    keyword = keyword_match(description, keywords)
    if keyword is None:
        return False, "No resolution keyword in description"
    if as_utc(received_at) < as_utc(raised_at):
        return False, f"Confirmation at {received_at.isoformat()} predates request at {raised_at.isoformat()}"
    return True, f"Matched '{keyword}'"


def deadline_for(rule: ActionCreationRule, shipment) -> date | None:
    if rule.deadline_field is None:
        return None
    return getattr(shipment, rule.deadline_field.value, None)
