import pytest
from langchain_core.language_models.fake import FakeListLLM

from chains.intent_classifier import IntentClassifier, fail_open
from chains.intent_models import (
    ChatMessage,
    ClassificationResponse,
    EscalationReason,
    IntentCategory,
    UrgencyLevel,
    UserContext,
)
from chains.prompts import RERANK_PROMPT
from common.config import ClassifierConfig
from common.errors import LLMResponseError
from common.roles import UserRole
from models.llm import LangChainStructuredLLM, parse_structured
from retrieval.reranker import LLMReranker

from conftest import DISTRICT, FakeStructuredLLM

PARENT = UserContext(user_id="p1", district_id=DISTRICT, role=UserRole.PARENT, child_ids=["s1"])


def _reply(intent, confidence=0.9, **kwargs):
    return {"intent": intent, "confidence": confidence, **kwargs}


def _classifier(*responses):
    return IntentClassifier(FakeStructuredLLM(*responses), ClassifierConfig())


@pytest.mark.parametrize("confidence", [0.0, 0.2, 0.59, 0.99])
async def test_emergency_always_escalates(confidence):
    intent = await _classifier(_reply("EMERGENCY", confidence)).classify("there is a fire", PARENT)
    assert intent.category == IntentCategory.EMERGENCY
    assert intent.should_escalate
    assert intent.escalation_reason == EscalationReason.EMERGENCY


@pytest.mark.parametrize(
    "reply,reason",
    [
        (_reply("HUMAN_AGENT_REQUEST"), EscalationReason.USER_REQUEST),
        (_reply("GENERAL", reasoning="Parent reports a bully on the playground"), EscalationReason.STUDENT_SAFETY),
        (_reply("GENERAL", entities={"concern": "threat on bus"}), EscalationReason.STUDENT_SAFETY),
        (_reply("COMPLAINT", urgency="HIGH"), EscalationReason.COMPLAINT),
        (_reply("POLICY_QUESTION", 0.5), EscalationReason.LOW_CONFIDENCE),
        (_reply("POLICY_QUESTION", should_escalate=True), EscalationReason.SENSITIVE_TOPIC),
    ],
)
async def test_escalation_rules(reply, reason):
    intent = await _classifier(reply).classify("message", PARENT)
    assert intent.should_escalate
    assert intent.escalation_reason == reason


async def test_confident_routine_question_does_not_escalate():
    intent = await _classifier(
        _reply("CALENDAR_QUERY", 0.92, entities={"time_reference": "next week"}, urgency="LOW")
    ).classify("when is the next early release?", PARENT)
    assert not intent.should_escalate
    assert intent.escalation_reason is None
    assert intent.entities == {"time_reference": "next week"}
    assert intent.original_query == "when is the next early release?"


async def test_low_urgency_complaint_is_not_escalated():
    intent = await _classifier(_reply("COMPLAINT", 0.9, urgency="LOW")).classify("lunch was cold", PARENT)
    assert not intent.should_escalate


@pytest.mark.parametrize(
    "response",
    [
        RuntimeError("provider timeout"),
        _reply("NOT_A_CATEGORY"),
        _reply("GENERAL", 1.7),
    ],
)
async def test_backend_failures_fail_open(response):
    intent = await _classifier(response).classify("hello?", PARENT)
    assert intent == fail_open("hello?")
    assert intent.category == IntentCategory.GENERAL
    assert intent.confidence < 0.5
    assert intent.should_escalate
    assert intent.escalation_reason == EscalationReason.TECHNICAL_ERROR
    assert intent.urgency == UrgencyLevel.MEDIUM


async def test_prompt_includes_recent_history_only():
    llm = FakeStructuredLLM(_reply("GENERAL"))
    history = [ChatMessage("user", f"message {i} " + "x" * 300) for i in range(5)]
    await IntentClassifier(llm, ClassifierConfig()).classify("and now?", PARENT, history)

    prompt = llm.prompts[0]
    assert "message 0" not in prompt and "message 1" not in prompt
    assert "message 2" in prompt and "message 4" in prompt
    assert "x" * 201 not in prompt
    assert "PARENT" in prompt
    assert "and now?" in prompt


async def test_batch_classify_preserves_order():
    classifier = _classifier(_reply("GENERAL"), _reply("EMERGENCY"), RuntimeError("down"))
    intents = await classifier.batch_classify([("a", PARENT), ("b", PARENT), ("c", PARENT)])
    assert len(intents) == 3
    assert {i.original_query for i in intents} == {"a", "b", "c"}


def test_parse_structured_tolerates_prose_around_json():
    raw = 'Sure! Here you go:\n{"intent": "GENERAL", "confidence": 0.8}\nThanks.'
    parsed = parse_structured(raw, ClassificationResponse)
    assert parsed.intent == IntentCategory.GENERAL
    with pytest.raises(LLMResponseError):
        parse_structured("no json here", ClassificationResponse)
    with pytest.raises(LLMResponseError):
        parse_structured('{"intent": "GENERAL"}', ClassificationResponse)


async def test_langchain_backend_drives_the_classifier():
    llm = LangChainStructuredLLM(
        FakeListLLM(responses=['{"intent": "POLICY_QUESTION", "confidence": 0.9, "urgency": "LOW"}'])
    )
    intent = await IntentClassifier(llm, ClassifierConfig()).classify("what is the dress code?", PARENT)
    assert intent.category == IntentCategory.POLICY_QUESTION
    assert not intent.should_escalate


async def test_llm_reranker_scales_scores():
    reranker = LLMReranker(FakeStructuredLLM({"scores": [10, 4, -3, 12]}), content_chars=50)
    assert await reranker.rerank("q", ["a", "b", "c", "d"]) == [1.0, 0.4, 0.0, 1.0]

    short = LLMReranker(FakeStructuredLLM({"scores": [5]}), content_chars=50)
    with pytest.raises(LLMResponseError):
        await short.rerank("q", ["a", "b"])


async def test_llm_reranker_prompt_caps_document_text():
    llm = FakeStructuredLLM({"scores": [3]})
    await LLMReranker(llm, content_chars=10).rerank("late buses", ["x" * 40])
    prompt = llm.prompts[0]
    assert prompt.startswith(RERANK_PROMPT.split("\n", 1)[0])
    assert "late buses" in prompt
    assert "x" * 10 in prompt and "x" * 11 not in prompt
