import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest

from whatsflow.services import pipeline_service
from whatsflow.services.action_service import ExecutionResult
from whatsflow.services.batch_service import BatchPayload
from whatsflow.services.context_service import AssembledContext
from whatsflow.services.intent_service import Intent, IntentResult
from whatsflow.services.pipeline_service import (
    DEFAULT_NO_KNOWLEDGE_MESSAGE,
    OUTCOME_ACTION,
    OUTCOME_ANSWERED,
    OUTCOME_AWAITING_ACTION,
    OUTCOME_ESCALATED,
    OUTCOME_ESCALATED_HOLD,
    OUTCOME_GENERATION_FAILED,
    OUTCOME_NO_KNOWLEDGE,
    OUTCOME_QUOTA_EXCEEDED,
    OUTCOME_SKIPPED,
    escalation_reason,
    process_batch,
)
from whatsflow.services.response_service import GenerationError
from whatsflow.services.result import Result
from whatsflow.services.usage_service import QuotaExceededError

GOOD_RESULTS = [
    {"score": 0.9, "text": "Our downtown store opens at 9am Monday to Saturday and 11am on Sundays. " * 2},
    {"score": 0.75, "text": "Parking is free for customers."},
]


def _instance(**overrides):
    values = {
        "id": uuid.uuid4(),
        "tenant_id": uuid.uuid4(),
        "instance_name": "shop-main",
        "escalation_enabled": False,
        "keyword_escalation_enabled": True,
        "smart_escalation_enabled": True,
        "escalation_keywords": [],
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _ai_config(**overrides):
    values = {
        "industry": None,
        "business_terms": [],
        "no_knowledge_message": None,
        "quota_exceeded_message": "You have reached this month's limit.",
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _conversation(escalated=False):
    return SimpleNamespace(
        id=uuid.uuid4(),
        user_phone="15551234567",
        conversation_data={"escalated": True} if escalated else {},
    )


def _payload(conversation, instance, texts=("When does the downtown store open on Sunday?",)):
    now = datetime.now(timezone.utc)
    messages = [
        {
            "id": uuid.uuid4(),
            "message_id": f"wamid-{i}",
            "content": text,
            "type": "text",
            "media_url": None,
            "received_at": now,
        }
        for i, text in enumerate(texts)
    ]
    return BatchPayload(
        batch_id=uuid.uuid4(),
        conversation_id=conversation.id,
        instance_id=instance.id,
        user_phone=conversation.user_phone,
        message_content="\n\n".join(texts),
        message_type="text" if len(texts) == 1 else "batched_text",
        media_url=None,
        messages=messages,
    )


@pytest.fixture
def deps(monkeypatch):
    mocks = SimpleNamespace(
        send=AsyncMock(return_value=Result.success(200)),
        search=AsyncMock(return_value=GOOD_RESULTS),
        count_files=Mock(return_value=3),
        detect_intent=Mock(return_value=IntentResult(confidence=0.6)),
        generate=AsyncMock(return_value=SimpleNamespace(reply="We open at 11am on Sundays.", model="m", total_tokens=50)),
        escalate=AsyncMock(return_value=True),
        escalated_reply=AsyncMock(return_value=True),
        execute_action=AsyncMock(),
        mark_processed=Mock(return_value=1),
        save_message=Mock(),
        assemble=Mock(
            return_value=AssembledContext(context="ctx", conversation_tokens=1, rag_tokens=2, total_tokens=3)
        ),
    )
    monkeypatch.setattr(pipeline_service, "send_whatsapp_message", mocks.send)
    monkeypatch.setattr(pipeline_service, "search_knowledge", mocks.search)
    monkeypatch.setattr(pipeline_service, "count_knowledge_files", mocks.count_files)
    monkeypatch.setattr(pipeline_service, "detect_intent", mocks.detect_intent)
    monkeypatch.setattr(pipeline_service, "generate_response", mocks.generate)
    monkeypatch.setattr(pipeline_service, "escalate_conversation", mocks.escalate)
    monkeypatch.setattr(pipeline_service, "reply_to_escalated_conversation", mocks.escalated_reply)
    monkeypatch.setattr(pipeline_service, "execute_external_action", mocks.execute_action)
    monkeypatch.setattr(pipeline_service, "mark_messages_processed", mocks.mark_processed)
    monkeypatch.setattr(pipeline_service, "save_message", mocks.save_message)
    monkeypatch.setattr(pipeline_service, "assemble_context", mocks.assemble)
    return mocks


def _load(monkeypatch, instance, conversation, ai_config):
    monkeypatch.setattr(
        pipeline_service,
        "_load_batch_entities",
        lambda db, payload: (instance, conversation, ai_config),
    )


class TestEscalationReason:
    def test_disabled_escalation(self):
        intent = IntentResult(intent=Intent.HUMAN_REQUEST.value)
        assert escalation_reason(_instance(escalation_enabled=False), "agent please", intent) is None

    def test_keyword(self):
        instance = _instance(escalation_enabled=True, escalation_keywords=["complaint"])
        assert escalation_reason(instance, "I have a complaint", IntentResult()) == "keyword"

    def test_keyword_escalation_switched_off(self):
        instance = _instance(
            escalation_enabled=True, keyword_escalation_enabled=False, escalation_keywords=["complaint"]
        )
        assert escalation_reason(instance, "I have a complaint", IntentResult()) is None

    def test_human_request(self):
        intent = IntentResult(intent=Intent.HUMAN_REQUEST.value)
        assert escalation_reason(_instance(escalation_enabled=True), "agent please", intent) == "ai_detected_intent"


class TestProcessBatch:
    @pytest.mark.asyncio
    async def test_answers_and_marks_batch_processed(self, deps, monkeypatch):
        instance, conversation, ai_config = _instance(), _conversation(), _ai_config()
        _load(monkeypatch, instance, conversation, ai_config)
        db = MagicMock()
        payload = _payload(conversation, instance, texts=("Hi", "I need", "help with billing"))

        outcome = await process_batch(db, payload)

        assert outcome.outcome == OUTCOME_ANSWERED
        deps.generate.assert_awaited_once()
        assert deps.generate.call_args.kwargs["query"] == "Hi\n\nI need\n\nhelp with billing"
        assert deps.assemble.call_args.kwargs["exclude_message_ids"] == ["wamid-0", "wamid-1", "wamid-2"]
        deps.send.assert_awaited_once_with("shop-main", "15551234567", "We open at 11am on Sundays.")
        deps.mark_processed.assert_called_once_with(db, conversation.id, ["wamid-0", "wamid-1", "wamid-2"])

    @pytest.mark.asyncio
    async def test_escalated_conversation_gets_holding_reply(self, deps, monkeypatch):
        instance, conversation = _instance(), _conversation(escalated=True)
        _load(monkeypatch, instance, conversation, _ai_config())

        outcome = await process_batch(MagicMock(), _payload(conversation, instance))

        assert outcome.outcome == OUTCOME_ESCALATED_HOLD
        deps.escalated_reply.assert_awaited_once()
        deps.detect_intent.assert_not_called()
        deps.generate.assert_not_awaited()
        deps.mark_processed.assert_called_once()

    @pytest.mark.asyncio
    async def test_confirmed_action_replies_with_confirmation(self, deps, monkeypatch):
        instance, conversation = _instance(), _conversation()
        _load(monkeypatch, instance, conversation, _ai_config())
        action = SimpleNamespace(
            action_name="book",
            response_type="custom_message",
            confirmation_message="Booked for {{day}}",
        )
        deps.detect_intent.return_value = IntentResult(
            intent=Intent.EXTERNAL_ACTION.value,
            confidence=1.0,
            action=action,
            extracted_variables={"day": "Friday"},
        )
        deps.execute_action.return_value = ExecutionResult(execution_id=uuid.uuid4(), success=True, http_status_code=200)

        outcome = await process_batch(MagicMock(), _payload(conversation, instance, texts=("book friday",)))

        assert outcome.outcome == OUTCOME_ACTION
        assert outcome.reply == "Booked for Friday"
        assert deps.execute_action.call_args.kwargs["provider_message_id"] == "wamid-0"
        deps.send.assert_awaited_once_with("shop-main", "15551234567", "Booked for Friday")
        deps.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wait_for_webhook_action_stays_silent(self, deps, monkeypatch):
        instance, conversation = _instance(), _conversation()
        _load(monkeypatch, instance, conversation, _ai_config())
        action = SimpleNamespace(action_name="quote", response_type="wait_for_webhook", confirmation_message=None)
        deps.detect_intent.return_value = IntentResult(intent=Intent.EXTERNAL_ACTION.value, confidence=1.0, action=action)
        deps.execute_action.return_value = ExecutionResult(
            execution_id=uuid.uuid4(), success=True, http_status_code=202, awaiting_response=True
        )

        outcome = await process_batch(MagicMock(), _payload(conversation, instance, texts=("get me a quote",)))

        assert outcome.outcome == OUTCOME_AWAITING_ACTION
        deps.send.assert_not_awaited()
        deps.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_action_falls_back_to_answering(self, deps, monkeypatch):
        instance, conversation = _instance(), _conversation()
        _load(monkeypatch, instance, conversation, _ai_config())
        action = SimpleNamespace(action_name="book", response_type="simple_confirmation", confirmation_message=None)
        deps.detect_intent.return_value = IntentResult(intent=Intent.EXTERNAL_ACTION.value, confidence=1.0, action=action)
        deps.execute_action.return_value = ExecutionResult(execution_id=uuid.uuid4(), success=False, http_status_code=500)

        outcome = await process_batch(MagicMock(), _payload(conversation, instance))

        assert outcome.outcome == OUTCOME_ANSWERED

    @pytest.mark.asyncio
    async def test_keyword_escalation(self, deps, monkeypatch):
        instance = _instance(escalation_enabled=True, escalation_keywords=["refund"])
        conversation = _conversation()
        _load(monkeypatch, instance, conversation, _ai_config())

        outcome = await process_batch(MagicMock(), _payload(conversation, instance, texts=("I want a refund",)))

        assert outcome.outcome == OUTCOME_ESCALATED
        assert deps.escalate.call_args.args[3] == "keyword"
        deps.search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_knowledge_files_sends_fallback(self, deps, monkeypatch):
        instance, conversation = _instance(), _conversation()
        _load(monkeypatch, instance, conversation, _ai_config())
        deps.count_files.return_value = 0

        outcome = await process_batch(MagicMock(), _payload(conversation, instance))

        assert outcome.outcome == OUTCOME_NO_KNOWLEDGE
        deps.send.assert_awaited_once_with("shop-main", "15551234567", DEFAULT_NO_KNOWLEDGE_MESSAGE)
        deps.search.assert_not_awaited()
        deps.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_low_quality_escalates(self, deps, monkeypatch):
        instance = _instance(escalation_enabled=True)
        conversation = _conversation()
        _load(monkeypatch, instance, conversation, _ai_config())
        deps.search.return_value = []
        deps.detect_intent.return_value = IntentResult(confidence=0.3)

        outcome = await process_batch(MagicMock(), _payload(conversation, instance, texts=("what",)))

        assert outcome.outcome == OUTCOME_ESCALATED
        assert deps.escalate.call_args.args[3] == "low_quality"
        assert deps.escalate.call_args.kwargs["quality_score"] < 0.4
        deps.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_low_quality_without_escalation_still_answers(self, deps, monkeypatch):
        instance, conversation = _instance(escalation_enabled=False), _conversation()
        _load(monkeypatch, instance, conversation, _ai_config())
        deps.search.return_value = []

        outcome = await process_batch(MagicMock(), _payload(conversation, instance, texts=("what",)))

        assert outcome.outcome == OUTCOME_ANSWERED
        assert "quality" not in deps.generate.call_args.kwargs["quality_metadata"]
        assert "response_quality" in deps.generate.call_args.kwargs["quality_metadata"]

    @pytest.mark.asyncio
    async def test_search_failure_answers_without_passages(self, deps, monkeypatch):
        instance, conversation = _instance(), _conversation()
        _load(monkeypatch, instance, conversation, _ai_config())
        deps.search.side_effect = RuntimeError("vector store down")

        outcome = await process_batch(MagicMock(), _payload(conversation, instance))

        assert outcome.outcome == OUTCOME_ANSWERED
        assert deps.assemble.call_args.args[3] == []

    @pytest.mark.asyncio
    async def test_quota_exceeded_sends_configured_message(self, deps, monkeypatch):
        instance, conversation = _instance(), _conversation()
        _load(monkeypatch, instance, conversation, _ai_config())
        deps.generate.side_effect = QuotaExceededError(100, 100, None)

        outcome = await process_batch(MagicMock(), _payload(conversation, instance))

        assert outcome.outcome == OUTCOME_QUOTA_EXCEEDED
        deps.send.assert_awaited_once_with("shop-main", "15551234567", "You have reached this month's limit.")
        deps.save_message.assert_not_called()
        deps.mark_processed.assert_called_once()

    @pytest.mark.asyncio
    async def test_quota_exceeded_without_message_is_silent(self, deps, monkeypatch):
        instance, conversation = _instance(), _conversation()
        _load(monkeypatch, instance, conversation, _ai_config(quota_exceeded_message=None))
        deps.generate.side_effect = QuotaExceededError(100, 100, None)

        outcome = await process_batch(MagicMock(), _payload(conversation, instance))

        assert outcome.outcome == OUTCOME_QUOTA_EXCEEDED
        deps.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_generation_failure_is_silent(self, deps, monkeypatch):
        instance, conversation = _instance(), _conversation()
        _load(monkeypatch, instance, conversation, _ai_config())
        deps.generate.side_effect = GenerationError("model timeout")

        outcome = await process_batch(MagicMock(), _payload(conversation, instance))

        assert outcome.outcome == OUTCOME_GENERATION_FAILED
        deps.send.assert_not_awaited()
        deps.mark_processed.assert_called_once()

    @pytest.mark.asyncio
    async def test_unexpected_error_still_marks_processed(self, deps, monkeypatch):
        instance, conversation = _instance(), _conversation()
        _load(monkeypatch, instance, conversation, _ai_config())
        deps.generate.side_effect = RuntimeError("bug")
        db = MagicMock()

        with pytest.raises(RuntimeError):
            await process_batch(db, _payload(conversation, instance))

        db.rollback.assert_called_once()
        deps.mark_processed.assert_called_once()

    @pytest.mark.asyncio
    async def test_missing_config_skips(self, deps, monkeypatch):
        instance, conversation = _instance(), _conversation()
        _load(monkeypatch, instance, conversation, None)

        outcome = await process_batch(MagicMock(), _payload(conversation, instance))

        assert outcome.outcome == OUTCOME_SKIPPED
        deps.mark_processed.assert_not_called()
