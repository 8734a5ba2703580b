from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field

from common.roles import ROLE_PERMISSIONS, Permission, UserRole


class IntentCategory(str, Enum):
    CALENDAR_QUERY = "CALENDAR_QUERY"
    POLICY_QUESTION = "POLICY_QUESTION"
    STUDENT_SPECIFIC = "STUDENT_SPECIFIC"
    EMERGENCY = "EMERGENCY"
    HUMAN_AGENT_REQUEST = "HUMAN_AGENT_REQUEST"
    GENERAL = "GENERAL"
    ASSIGNMENT_HELP = "ASSIGNMENT_HELP"
    OPERATIONAL = "OPERATIONAL"
    COMPLAINT = "COMPLAINT"
    ADMINISTRATIVE = "ADMINISTRATIVE"
    COMMUNICATION = "COMMUNICATION"
    TECHNICAL_SUPPORT = "TECHNICAL_SUPPORT"
    UNKNOWN = "UNKNOWN"


class UrgencyLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class EscalationReason(str, Enum):
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    EMERGENCY = "EMERGENCY"
    COMPLAINT = "COMPLAINT"
    SENSITIVE_TOPIC = "SENSITIVE_TOPIC"
    STUDENT_SAFETY = "STUDENT_SAFETY"
    USER_REQUEST = "USER_REQUEST"
    TECHNICAL_ERROR = "TECHNICAL_ERROR"


@dataclass
class UserContext:
    user_id: str
    district_id: str
    role: UserRole
    child_ids: List[str] = field(default_factory=list)
    school_ids: List[str] = field(default_factory=list)
    permissions: Optional[FrozenSet[Permission]] = None  # None = role defaults

    @property
    def effective_permissions(self) -> FrozenSet[Permission]:
        if self.permissions is not None:
            return self.permissions
        return ROLE_PERMISSIONS.get(self.role, frozenset())


@dataclass(frozen=True)
class ChatMessage:
    role: str  # "user" | "assistant"
    content: str


@dataclass(frozen=True)
class ClassifiedIntent:
    category: IntentCategory
    confidence: float
    urgency: UrgencyLevel = UrgencyLevel.LOW
    entities: Dict[str, Any] = field(default_factory=dict)
    should_escalate: bool = False
    escalation_reason: Optional[EscalationReason] = None
    secondary_category: Optional[IntentCategory] = None
    requires_student_context: bool = False
    reasoning: str = ""
    original_query: str = ""


class ClassificationResponse(BaseModel):
    """JSON contract the classifier LLM must satisfy."""

    intent: IntentCategory
    secondary_intent: Optional[IntentCategory] = None
    confidence: float = Field(ge=0.0, le=1.0)
    entities: Dict[str, Any] = Field(default_factory=dict)
    requires_student_context: bool = False
    urgency: UrgencyLevel = UrgencyLevel.LOW
    should_escalate: bool = False
    reasoning: str = ""


class ToolSelection(BaseModel):
    """JSON contract for the router's disambiguation call."""

    tools: List[str]
    reasoning: str = ""
