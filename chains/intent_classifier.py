from __future__ import annotations

import asyncio
import re
from typing import List, Optional, Sequence, Tuple

from common.config import ClassifierConfig, yaml_config
from common.logger import get_logger
from chains.intent_models import (
    ChatMessage,
    ClassificationResponse,
    ClassifiedIntent,
    EscalationReason,
    IntentCategory,
    UrgencyLevel,
    UserContext,
)
from chains.prompts import CLASSIFICATION_PROMPT
from models.llm import StructuredLLM

log = get_logger(__name__)

SAFETY_PATTERN = re.compile(
    r"bully|harm|threat|abuse|suicide|danger|hurt|scared|afraid|weapon", re.IGNORECASE
)


def fail_open(message: str) -> ClassifiedIntent:
    """Fallback when the classifier backend fails: general intent, handed to a human."""
    return ClassifiedIntent(
        category=IntentCategory.GENERAL,
        confidence=0.0,
        urgency=UrgencyLevel.MEDIUM,
        should_escalate=True,
        escalation_reason=EscalationReason.TECHNICAL_ERROR,
        reasoning="Classification failed",
        original_query=message,
    )


class IntentClassifier:
    def __init__(self, llm: StructuredLLM, config: Optional[ClassifierConfig] = None):
        self.llm = llm
        self.config = config or yaml_config.classifier

    def build_prompt(
        self, message: str, context: UserContext, history: Sequence[ChatMessage] = ()
    ) -> str:
        recent = list(history)[-self.config.history_messages :] if history else []
        lines = [
            f"{m.role}: {m.content[: self.config.history_chars]}" for m in recent
        ]
        return CLASSIFICATION_PROMPT.format(
            role=context.role.value if hasattr(context.role, "value") else context.role,
            child_count=len(context.child_ids),
            history="\n".join(lines) or "(none)",
            message=message,
        )

    def escalation_for(
        self, response: ClassificationResponse
    ) -> Optional[EscalationReason]:
        """
        Escalation rules, first match wins:
          EMERGENCY intent, explicit human request, safety language,
          high-urgency complaint, low confidence, model flag.
        """
        if response.intent == IntentCategory.EMERGENCY:
            return EscalationReason.EMERGENCY
        if response.intent == IntentCategory.HUMAN_AGENT_REQUEST:
            return EscalationReason.USER_REQUEST
        signals = " ".join([response.reasoning, *map(str, response.entities.values())])
        if SAFETY_PATTERN.search(signals):
            return EscalationReason.STUDENT_SAFETY
        if response.intent == IntentCategory.COMPLAINT and response.urgency in (
            UrgencyLevel.HIGH,
            UrgencyLevel.CRITICAL,
        ):
            return EscalationReason.COMPLAINT
        if response.confidence < self.config.escalation_confidence:
            return EscalationReason.LOW_CONFIDENCE
        if response.should_escalate:
            return EscalationReason.SENSITIVE_TOPIC
        return None

    async def classify(
        self,
        message: str,
        context: UserContext,
        history: Sequence[ChatMessage] = (),
    ) -> ClassifiedIntent:
        prompt = self.build_prompt(message, context, history)
        try:
            response = await self.llm.complete(prompt, ClassificationResponse)
        except Exception as e:
            log.warning("Intent classification failed, failing open: %s", e)
            return fail_open(message)

        reason = self.escalation_for(response)
        intent = ClassifiedIntent(
            category=response.intent,
            confidence=response.confidence,
            urgency=response.urgency,
            entities=dict(response.entities),
            should_escalate=reason is not None,
            escalation_reason=reason,
            secondary_category=response.secondary_intent,
            requires_student_context=response.requires_student_context,
            reasoning=response.reasoning,
            original_query=message,
        )
        log.info(
            "Classified message as %s (confidence=%.2f, urgency=%s, escalate=%s)",
            intent.category.value,
            intent.confidence,
            intent.urgency.value,
            intent.should_escalate,
        )
        return intent

    async def batch_classify(
        self, items: Sequence[Tuple[str, UserContext]]
    ) -> List[ClassifiedIntent]:
        semaphore = asyncio.Semaphore(max(1, self.config.batch_concurrency))

        async def one(message: str, context: UserContext) -> ClassifiedIntent:
            async with semaphore:
                return await self.classify(message, context)

        return list(await asyncio.gather(*(one(m, c) for m, c in items)))
