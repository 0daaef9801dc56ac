import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest

from whatsflow.services import escalation_service
from whatsflow.services.escalation_service import (
    DEFAULT_ESCALATED_CONVERSATION_MESSAGE,
    DEFAULT_ESCALATION_MESSAGE,
    escalate_conversation,
    format_escalation_notification,
    reply_to_escalated_conversation,
)
from whatsflow.services.result import Result


def _instance(**overrides):
    values = {
        "id": uuid.uuid4(),
        "instance_name": "shop-main",
        "escalation_number": "15559990000",
        "escalation_message": None,
        "escalated_conversation_message": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _conversation():
    return SimpleNamespace(id=uuid.uuid4(), user_phone="15551234567", conversation_data={})


def _message(role, content, minutes_ago=0):
    return SimpleNamespace(
        role=role,
        content=content,
        timestamp=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )


@pytest.fixture
def deps(monkeypatch):
    mocks = SimpleNamespace(
        send=AsyncMock(return_value=Result.success(200)),
        save_message=Mock(),
        recent=Mock(return_value=[]),
    )
    monkeypatch.setattr(escalation_service, "send_whatsapp_message", mocks.send)
    monkeypatch.setattr(escalation_service, "save_message", mocks.save_message)
    monkeypatch.setattr(escalation_service, "get_recent_messages", mocks.recent)
    return mocks


class TestFormatNotification:
    def test_includes_reason_label_score_and_history(self):
        recent = [_message("assistant", "Could you share more details?"), _message("user", "I was charged twice")]

        text = format_escalation_notification("15551234567", "low_quality", "refund now", recent, 0.21)

        assert "Customer: +15551234567" in text
        assert "Reason: Low answer confidence" in text
        assert "Quality score: 0.21" in text
        assert text.index("Customer: I was charged twice") < text.index("Assistant: Could you share more details?")

    def test_unknown_reason_is_shown_verbatim(self):
        text = format_escalation_notification("+15551234567", "manual", "hi", [])
        assert "Reason: manual" in text
        assert "Customer: +15551234567" in text
        assert "Recent conversation" not in text


class TestEscalateConversation:
    @pytest.mark.asyncio
    async def test_flags_conversation_and_notifies_both_sides(self, deps):
        db = MagicMock()
        instance, conversation = _instance(), _conversation()

        delivered = await escalate_conversation(db, instance, conversation, "keyword", "I want a refund")

        assert delivered is True
        assert conversation.conversation_data["escalated"] is True
        assert conversation.conversation_data["escalation_reason"] == "keyword"
        record = db.add.call_args.args[0]
        assert record.reason == "keyword"
        assert record.user_phone == "15551234567"
        assert deps.send.await_args_list[0].args == ("shop-main", "15551234567", DEFAULT_ESCALATION_MESSAGE)
        assert deps.send.await_args_list[1].args[1] == "15559990000"
        db.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_custom_message_and_no_escalation_number(self, deps):
        instance = _instance(escalation_number=None, escalation_message="A colleague will call you.")

        delivered = await escalate_conversation(MagicMock(), instance, _conversation(), "ai_detected_intent", "agent")

        assert delivered is True
        deps.send.assert_awaited_once()
        assert deps.send.await_args.args[2] == "A colleague will call you."

    @pytest.mark.asyncio
    async def test_storage_failure_returns_false(self, deps):
        db = MagicMock()
        db.flush.side_effect = RuntimeError("db down")

        delivered = await escalate_conversation(db, _instance(), _conversation(), "keyword", "refund")

        assert delivered is False
        db.rollback.assert_called_once()
        deps.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_raise(self, deps):
        deps.recent.side_effect = RuntimeError("query failed")

        delivered = await escalate_conversation(MagicMock(), _instance(), _conversation(), "keyword", "refund")

        assert delivered is True
        deps.send.assert_awaited_once()


class TestReplyToEscalatedConversation:
    @pytest.mark.asyncio
    async def test_sends_holding_message(self, deps):
        delivered = await reply_to_escalated_conversation(MagicMock(), _instance(), _conversation())

        assert delivered is True
        deps.send.assert_awaited_once_with("shop-main", "15551234567", DEFAULT_ESCALATED_CONVERSATION_MESSAGE)
        assert deps.save_message.call_args.kwargs["message_metadata"] == {"source": "escalated_conversation"}

    @pytest.mark.asyncio
    async def test_suppressed_within_cooldown(self, deps):
        deps.recent.return_value = [_message("assistant", DEFAULT_ESCALATED_CONVERSATION_MESSAGE, minutes_ago=2)]

        delivered = await reply_to_escalated_conversation(MagicMock(), _instance(), _conversation())

        assert delivered is False
        deps.send.assert_not_awaited()
        deps.save_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_sent_again_after_cooldown(self, deps):
        deps.recent.return_value = [_message("assistant", DEFAULT_ESCALATED_CONVERSATION_MESSAGE, minutes_ago=6)]

        delivered = await reply_to_escalated_conversation(MagicMock(), _instance(), _conversation())

        assert delivered is True
