from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Protocol, Tuple

from chains.intent_models import EscalationReason, IntentCategory
from common.logger import get_logger
from lifecycle.source_models import utcnow
from tools.base_tool import BaseTool, ToolDefinition, ToolParams, ToolResult

log = get_logger(__name__)


class EscalationTeam(str, Enum):
    SUPPORT_STAFF = "SUPPORT_STAFF"
    COUNSELOR = "COUNSELOR"
    ADMIN = "ADMIN"


# reason -> (team, priority); priority 1 is the most urgent
ESCALATION_ROUTES: Dict[EscalationReason, Tuple[EscalationTeam, int]] = {
    EscalationReason.LOW_CONFIDENCE: (EscalationTeam.SUPPORT_STAFF, 3),
    EscalationReason.USER_REQUEST: (EscalationTeam.SUPPORT_STAFF, 3),
    EscalationReason.TECHNICAL_ERROR: (EscalationTeam.SUPPORT_STAFF, 3),
    EscalationReason.COMPLAINT: (EscalationTeam.SUPPORT_STAFF, 2),
    EscalationReason.SENSITIVE_TOPIC: (EscalationTeam.COUNSELOR, 2),
    EscalationReason.STUDENT_SAFETY: (EscalationTeam.ADMIN, 1),
    EscalationReason.EMERGENCY: (EscalationTeam.ADMIN, 1),
}

CATEGORY_REASONS = {
    IntentCategory.EMERGENCY: EscalationReason.EMERGENCY,
    IntentCategory.HUMAN_AGENT_REQUEST: EscalationReason.USER_REQUEST,
    IntentCategory.COMPLAINT: EscalationReason.COMPLAINT,
}


@dataclass
class EscalationTicket:
    district_id: str
    user_id: str
    reason: EscalationReason
    team: EscalationTeam
    priority: int
    query: str
    summary: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)


class EscalationQueue(Protocol):
    async def create(self, ticket: EscalationTicket) -> str: ...


class InMemoryEscalationQueue:
    def __init__(self):
        self.tickets: List[EscalationTicket] = []

    async def create(self, ticket: EscalationTicket) -> str:
        self.tickets.append(ticket)
        return ticket.id


def resolve_reason(params: ToolParams) -> EscalationReason:
    explicit: Optional[EscalationReason] = params.extra.get("reason") or params.intent.escalation_reason
    if explicit is not None:
        return EscalationReason(explicit)
    return CATEGORY_REASONS.get(params.intent.category, EscalationReason.LOW_CONFIDENCE)


class EscalationTool(BaseTool):
    definition = ToolDefinition(
        name="escalation",
        description="Hands the conversation to district staff and opens a support ticket",
        handles_intents=frozenset(
            {
                IntentCategory.EMERGENCY,
                IntentCategory.COMPLAINT,
                IntentCategory.HUMAN_AGENT_REQUEST,
            }
        ),
        timeout_ms=5000,
    )

    def __init__(self, queue: EscalationQueue):
        self.queue = queue

    async def _execute(self, params: ToolParams) -> ToolResult:
        reason = resolve_reason(params)
        team, priority = ESCALATION_ROUTES[reason]
        ticket = EscalationTicket(
            district_id=params.context.district_id,
            user_id=params.context.user_id,
            reason=reason,
            team=team,
            priority=priority,
            query=params.query,
            summary=params.intent.reasoning,
        )
        ticket_id = await self.queue.create(ticket)
        log.info(
            "Escalated to %s (priority %d, reason %s) ticket=%s",
            team.value,
            priority,
            reason.value,
            ticket_id,
        )
        if reason == EscalationReason.EMERGENCY:
            message = (
                "If anyone is in immediate danger, call 911 now. "
                "District administrators have been alerted and will contact you."
            )
        else:
            message = "I've passed your request to a member of our staff, who will follow up with you."
        return self.success(
            message,
            1.0,
            data={
                "ticket_id": ticket_id,
                "team": team.value,
                "priority": priority,
                "reason": reason.value,
            },
            requires_follow_up=True,
        )
