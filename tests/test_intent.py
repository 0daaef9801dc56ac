import uuid
from types import SimpleNamespace
from unittest.mock import patch

from whatsflow.services.intent_service import (
    Intent,
    detect_intent,
    extract_variables,
    is_human_request_message,
    match_external_action,
    matches_escalation_keywords,
    normalize_for_matching,
    score_trigger_phrases,
)


def _action(name="track_order", phrases=("track my order", "where is my order"), threshold=0.7, patterns=None):
    return SimpleNamespace(
        action_name=name,
        trigger_phrases=list(phrases),
        confidence_threshold=threshold,
        variable_patterns=patterns or {},
    )


class TestNormalizeForMatching:
    def test_casefold_and_trim_punctuation(self):
        assert normalize_for_matching("  Where IS   my order?! ") == "where is my order"


class TestHumanRequest:
    def test_english(self):
        assert is_human_request_message("Can I talk to a real person please?")
        assert is_human_request_message("I want a human")

    def test_arabic(self):
        assert is_human_request_message("أريد التحدث مع موظف")

    def test_regular_question(self):
        assert not is_human_request_message("What are your opening hours?")


class TestEscalationKeywords:
    def test_matches_configured_keyword(self):
        assert matches_escalation_keywords("This is URGENT, refund now", ["refund", "lawyer"]) == "refund"

    def test_no_keywords(self):
        assert matches_escalation_keywords("refund", None) is None


class TestTriggerScoring:
    def test_verbatim_phrase(self):
        assert score_trigger_phrases("Hi, where is my order?", ["where is my order"]) == 1.0

    def test_partial_coverage(self):
        assert score_trigger_phrases("order status", ["track my order"]) == 1 / 3

    def test_no_overlap(self):
        assert score_trigger_phrases("hello", ["track my order"]) == 0.0


class TestExtractVariables:
    def test_first_group_is_used(self):
        patterns = {"order_id": r"order\s*#?(\d+)", "email": r"[\w.]+@[\w.]+"}
        variables = extract_variables("Track order #4521 for sam@acme.test", patterns)

        assert variables == {"order_id": "4521", "email": "sam@acme.test"}

    def test_invalid_pattern_is_skipped(self):
        assert extract_variables("order 1", {"bad": "(unclosed", "n": r"(\d)"}) == {"n": "1"}


class TestMatchExternalAction:
    def test_best_action_above_threshold(self):
        track = _action(patterns={"order_id": r"(\d+)"})
        cancel = _action(name="cancel_order", phrases=("cancel my order",))

        match = match_external_action([track, cancel], "track my order 88")

        assert match.action is track
        assert match.intent == Intent.EXTERNAL_ACTION.value
        assert match.confidence == 1.0
        assert match.extracted_variables == {"order_id": "88"}

    def test_below_threshold_is_ignored(self):
        assert match_external_action([_action(threshold=0.9)], "my order") is None


class TestDetectIntent:
    def test_human_request_wins(self, db_session):
        result = detect_intent(db_session, uuid.uuid4(), "let me speak to an agent")

        assert result.intent == Intent.HUMAN_REQUEST.value
        assert result.needs_human_support is True

    def test_action_match(self, db_session):
        with patch("whatsflow.services.intent_service.get_active_actions", return_value=[_action()]):
            result = detect_intent(db_session, uuid.uuid4(), "where is my order")

        assert result.intent == Intent.EXTERNAL_ACTION.value

    def test_general_question(self, db_session):
        with patch("whatsflow.services.intent_service.get_active_actions", return_value=[]):
            result = detect_intent(db_session, uuid.uuid4(), "do you deliver on sundays")

        assert result.intent == Intent.GENERAL_QUESTION.value
        assert result.confidence == 0.5
