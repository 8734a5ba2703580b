import asyncio

import pytest

from chains.intent_models import (
    ClassifiedIntent,
    EscalationReason,
    IntentCategory,
    UrgencyLevel,
    UserContext,
)
from chains.tool_router import RouterResult, ToolRouter, combined_confidence
from common.config import RoutingConfig
from common.roles import Permission, UserRole
from tools.base_tool import BaseTool, ToolDefinition, ToolParams, ToolRegistry, ToolResult

from conftest import DISTRICT, FakeStructuredLLM

PARENT = UserContext(user_id="p1", district_id=DISTRICT, role=UserRole.PARENT, child_ids=["s1"])


class StubTool(BaseTool):
    def __init__(self, name, intents, confidence=0.8, delay=0.0, timeout_ms=1000,
                 permissions=frozenset(), follow_up=False, fail=False):
        self.definition = ToolDefinition(
            name=name,
            description=f"{name} stub",
            handles_intents=frozenset(intents),
            required_permissions=frozenset(permissions),
            timeout_ms=timeout_ms,
        )
        self.confidence = confidence
        self.delay = delay
        self.follow_up = follow_up
        self.fail = fail
        self.calls = 0

    async def _execute(self, params: ToolParams) -> ToolResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("backend down")
        return self.success(f"{self.name} answer", self.confidence, requires_follow_up=self.follow_up)


def _intent(category, confidence=0.9, **kw):
    return ClassifiedIntent(category=category, confidence=confidence, **kw)


def _router(*tools, llm=None, **config):
    return ToolRouter(ToolRegistry(list(tools)), llm=llm, config=RoutingConfig(**config))


@pytest.mark.parametrize(
    "intent,reason",
    [
        (_intent(IntentCategory.EMERGENCY, 0.1), EscalationReason.EMERGENCY),
        (_intent(IntentCategory.HUMAN_AGENT_REQUEST), EscalationReason.USER_REQUEST),
        (_intent(IntentCategory.POLICY_QUESTION, 0.2), EscalationReason.LOW_CONFIDENCE),
        (
            _intent(IntentCategory.GENERAL, 0.8, urgency=UrgencyLevel.HIGH, should_escalate=True),
            EscalationReason.STUDENT_SAFETY,
        ),
    ],
)
async def test_mandatory_escalation_skips_tools(intent, reason):
    handles_all = StubTool("everything", list(IntentCategory))
    llm = FakeStructuredLLM()
    result = await _router(handles_all, llm=llm).route("help", intent, PARENT)

    assert result.escalated
    assert result.escalation_reason == reason
    assert result.requires_follow_up
    assert result.tool_results == []
    assert result.combined_confidence == 0.0
    assert result.llm_calls == 0
    assert handles_all.calls == 0
    assert llm.prompts == []


async def test_should_escalate_without_high_urgency_routes_normally():
    tool = StubTool("policy", [IntentCategory.POLICY_QUESTION])
    result = await _router(tool).route(
        "q", _intent(IntentCategory.POLICY_QUESTION, should_escalate=True, urgency=UrgencyLevel.MEDIUM), PARENT
    )
    assert not result.escalated
    assert tool.calls == 1


async def test_no_accessible_tool_escalates_as_technical_error():
    locked = StubTool("grades", [IntentCategory.STUDENT_SPECIFIC], permissions={Permission.READ_ALL_STUDENTS})
    result = await _router(locked).route("grades?", _intent(IntentCategory.STUDENT_SPECIFIC), PARENT)
    assert result.escalated
    assert result.escalation_reason == EscalationReason.TECHNICAL_ERROR
    assert locked.calls == 0


async def test_single_candidate_needs_no_llm():
    llm = FakeStructuredLLM()
    tool = StubTool("policy", [IntentCategory.POLICY_QUESTION], confidence=0.9)
    other = StubTool("calendar", [IntentCategory.CALENDAR_QUERY])

    result = await _router(tool, other, llm=llm).route("q", _intent(IntentCategory.POLICY_QUESTION), PARENT)

    assert result.selected_tools == ["policy"]
    assert result.llm_calls == 0
    assert llm.prompts == []
    assert result.combined_confidence == pytest.approx(0.9)
    assert result.all_successful
    assert not result.requires_follow_up


async def test_multiple_candidates_use_one_llm_call():
    knowledge = StubTool("knowledge", [IntentCategory.CALENDAR_QUERY])
    calendar = StubTool("calendar", [IntentCategory.CALENDAR_QUERY])
    llm = FakeStructuredLLM({"tools": ["calendar"], "reasoning": "dates"})

    result = await _router(knowledge, calendar, llm=llm).route(
        "when is spring break", _intent(IntentCategory.CALENDAR_QUERY), PARENT
    )

    assert result.selected_tools == ["calendar"]
    assert result.llm_calls == 1
    assert len(llm.prompts) == 1
    assert "when is spring break" in llm.prompts[0]
    assert "- knowledge: knowledge stub" in llm.prompts[0]
    assert (knowledge.calls, calendar.calls) == (0, 1)


@pytest.mark.parametrize(
    "response",
    [RuntimeError("llm offline"), {"tools": ["made_up"]}, {"tools": []}],
)
async def test_selection_falls_back_to_registration_order(response):
    tools = [StubTool(f"t{i}", [IntentCategory.OPERATIONAL]) for i in range(4)]
    result = await _router(*tools, llm=FakeStructuredLLM(response), max_tools_per_request=2).route(
        "q", _intent(IntentCategory.OPERATIONAL), PARENT
    )
    assert result.selected_tools == ["t0", "t1"]
    assert [t.calls for t in tools] == [1, 1, 0, 0]


async def test_selection_dedupes_and_caps():
    tools = [StubTool(f"t{i}", [IntentCategory.OPERATIONAL]) for i in range(4)]
    llm = FakeStructuredLLM({"tools": ["t3", "t3", "bogus", "t1", "t0"]})
    result = await _router(*tools, llm=llm, max_tools_per_request=2).route(
        "q", _intent(IntentCategory.OPERATIONAL), PARENT
    )
    assert result.selected_tools == ["t3", "t1"]


async def test_timeout_does_not_affect_siblings():
    slow = StubTool("slow", [IntentCategory.OPERATIONAL], delay=1.0, timeout_ms=20)
    fast = StubTool("fast", [IntentCategory.OPERATIONAL], confidence=0.6)
    broken = StubTool("broken", [IntentCategory.OPERATIONAL], fail=True)

    result = await _router(slow, fast, broken).route("q", _intent(IntentCategory.OPERATIONAL), PARENT)
    by_name = {r.tool_name: r for r in result.tool_results}

    assert by_name["slow"].error.startswith("TIMEOUT:")
    assert by_name["broken"].error == "EXECUTION_ERROR: backend down"
    assert by_name["fast"].success
    assert not result.all_successful
    assert result.combined_confidence == pytest.approx(0.6)


async def test_unknown_tool_name():
    router = _router()
    params = ToolParams(query="q", intent=_intent(IntentCategory.GENERAL), context=PARENT)
    [result] = await router.execute_tools(["ghost"], params)
    assert not result.success
    assert result.error == "Tool 'ghost' not found"


async def test_follow_up_propagates_from_tools():
    tool = StubTool("complaints", [IntentCategory.COMPLAINT], follow_up=True)
    result = await _router(tool).route("this is unacceptable", _intent(IntentCategory.COMPLAINT), PARENT)
    assert not result.escalated
    assert result.requires_follow_up


def test_combined_confidence_ignores_failures():
    results = [
        ToolResult("a", True, confidence=0.9),
        ToolResult("b", True, confidence=0.5),
        ToolResult("c", False, confidence=1.0, error="x"),
    ]
    assert combined_confidence(results) == pytest.approx(0.7)
    assert combined_confidence([]) == 0.0
    assert RouterResult(intent=_intent(IntentCategory.GENERAL)).all_successful
