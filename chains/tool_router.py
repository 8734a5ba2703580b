"""
Two-stage tool routing for classified intents.

Stage one is declarative: mandatory escalations short-circuit, then tools are
filtered by the intent categories they handle and the caller's permissions.
Stage two is a single optional LLM call that only runs when more than one
candidate survives the filter. A request therefore costs at most one
classification plus one disambiguation call.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from common.config import RoutingConfig, yaml_config
from common.logger import get_logger
from chains.intent_models import (
    ClassifiedIntent,
    EscalationReason,
    IntentCategory,
    ToolSelection,
    UrgencyLevel,
    UserContext,
)
from chains.prompts import TOOL_SELECTION_PROMPT
from models.llm import StructuredLLM
from tools.base_tool import BaseTool, ToolParams, ToolRegistry, ToolResult, failed_result

log = get_logger(__name__)


@dataclass
class RouterResult:
    intent: ClassifiedIntent
    tool_results: List[ToolResult] = field(default_factory=list)
    selected_tools: List[str] = field(default_factory=list)
    escalated: bool = False
    escalation_reason: Optional[EscalationReason] = None
    combined_confidence: float = 0.0
    requires_follow_up: bool = False
    llm_calls: int = 0
    total_time_ms: float = 0.0

    @property
    def all_successful(self) -> bool:
        return all(r.success for r in self.tool_results)


def mandatory_escalation(
    intent: ClassifiedIntent, confidence_threshold: float
) -> Optional[EscalationReason]:
    if intent.category == IntentCategory.EMERGENCY:
        return EscalationReason.EMERGENCY
    if intent.category == IntentCategory.HUMAN_AGENT_REQUEST:
        return EscalationReason.USER_REQUEST
    if intent.confidence < confidence_threshold:
        return EscalationReason.LOW_CONFIDENCE
    if intent.should_escalate and intent.urgency in (UrgencyLevel.HIGH, UrgencyLevel.CRITICAL):
        return EscalationReason.STUDENT_SAFETY
    return None


def combined_confidence(results: Sequence[ToolResult]) -> float:
    ok = [r.confidence for r in results if r.success]
    return sum(ok) / len(ok) if ok else 0.0


class ToolRouter:
    def __init__(
        self,
        registry: ToolRegistry,
        llm: Optional[StructuredLLM] = None,
        config: Optional[RoutingConfig] = None,
    ):
        self.registry = registry
        self.llm = llm
        self.config = config or yaml_config.routing

    def candidates(self, intent: ClassifiedIntent, context: UserContext) -> List[BaseTool]:
        return [
            t
            for t in self.registry.get_tools_for_intent(intent.category)
            if t.can_execute(context)
        ]

    async def select(
        self, query: str, intent: ClassifiedIntent, tools: List[BaseTool]
    ) -> List[str]:
        """Ask the LLM to rank candidates; any failure falls back to registration order."""
        limit = self.config.max_tools_per_request
        fallback = [t.name for t in tools][:limit]
        if self.llm is None:
            return fallback
        prompt = TOOL_SELECTION_PROMPT.format(
            query=query,
            intent=intent.category.value,
            confidence=intent.confidence,
            tools="\n".join(f"- {t.name}: {t.definition.description}" for t in tools),
            max_tools=limit,
        )
        try:
            selection = await self.llm.complete(prompt, ToolSelection)
        except Exception as e:
            log.warning("Tool selection failed, using declared order: %s", e)
            return fallback

        allowed = {t.name for t in tools}
        picked: List[str] = []
        for name in selection.tools:
            if name in allowed and name not in picked:
                picked.append(name)
        return picked[:limit] or fallback

    async def _run_one(self, name: str, params: ToolParams) -> ToolResult:
        tool = self.registry.get(name)
        if tool is None:
            return failed_result(name, f"Tool '{name}' not found")
        timeout_ms = tool.definition.timeout_ms or self.config.default_tool_timeout_ms
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(tool.execute(params), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            log.warning("Tool %s timed out after %dms", name, timeout_ms)
            return failed_result(
                name,
                f"TIMEOUT: Tool '{name}' exceeded {timeout_ms}ms",
                (time.perf_counter() - started) * 1000,
            )

    async def execute_tools(self, names: Sequence[str], params: ToolParams) -> List[ToolResult]:
        """Run tools concurrently; one failure never aborts its siblings."""
        return list(await asyncio.gather(*(self._run_one(n, params) for n in names)))

    async def route(
        self,
        query: str,
        intent: ClassifiedIntent,
        context: UserContext,
        extra: Optional[Dict[str, Any]] = None,
    ) -> RouterResult:
        started = time.perf_counter()
        result = RouterResult(intent=intent)

        reason = mandatory_escalation(intent, self.config.confidence_threshold)
        if reason is None:
            tools = self.candidates(intent, context)
            if not tools:
                reason = EscalationReason.TECHNICAL_ERROR
                log.info("No accessible tool handles %s", intent.category.value)
            elif len(tools) == 1:
                result.selected_tools = [tools[0].name]
            else:
                result.selected_tools = await self.select(query, intent, tools)
                result.llm_calls = 1 if self.llm is not None else 0

        if reason is not None:
            result.escalated = True
            result.escalation_reason = reason
            log.info("Escalating %s: %s", intent.category.value, reason.value)
        else:
            params = ToolParams(query=query, intent=intent, context=context, extra=dict(extra or {}))
            result.tool_results = await self.execute_tools(result.selected_tools, params)

        result.combined_confidence = combined_confidence(result.tool_results)
        result.requires_follow_up = result.escalated or any(
            r.requires_follow_up for r in result.tool_results
        )
        result.total_time_ms = (time.perf_counter() - started) * 1000
        return result
