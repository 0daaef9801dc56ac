"""Answer one claimed batch of customer messages.

Order per batch: escalated-conversation hold, intent and external actions,
keyword or human-request escalation, knowledge search, quality gate, then
context assembly and generation. Every branch ends with the batch's inbound
messages marked processed.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from whatsflow.config import settings
from whatsflow.logging_config import bind_logger
from whatsflow.models import AIConfig, Conversation, WhatsAppInstance
from whatsflow.services.action_service import (
    RESPONSE_NONE,
    RESPONSE_WAIT_FOR_WEBHOOK,
    ActionConfigError,
    confirmation_text,
    execute_external_action,
)
from whatsflow.services.analysis_service import detect_business_context, detect_language
from whatsflow.services.batch_service import BatchPayload
from whatsflow.services.context_service import assemble_context
from whatsflow.services.conversation_service import is_escalated, mark_messages_processed, save_message
from whatsflow.services.escalation_service import escalate_conversation, reply_to_escalated_conversation
from whatsflow.services.intent_service import Intent, IntentResult, detect_intent, matches_escalation_keywords
from whatsflow.services.knowledge_service import count_knowledge_files, search_knowledge
from whatsflow.services.llm import LLMProvider
from whatsflow.services.quality_service import assess_response_quality
from whatsflow.services.response_service import GenerationError, generate_response
from whatsflow.services.usage_service import QuotaExceededError
from whatsflow.services.whatsapp_service import send_whatsapp_message

DEFAULT_NO_KNOWLEDGE_MESSAGE = (
    "Sorry, I don't have enough information to help with that yet. Our team will be happy to assist you."
)

OUTCOME_SKIPPED = "skipped"
OUTCOME_ESCALATED_HOLD = "escalated_hold"
OUTCOME_ACTION = "action_executed"
OUTCOME_AWAITING_ACTION = "awaiting_action_response"
OUTCOME_ESCALATED = "escalated"
OUTCOME_NO_KNOWLEDGE = "no_knowledge"
OUTCOME_QUOTA_EXCEEDED = "quota_exceeded"
OUTCOME_GENERATION_FAILED = "generation_failed"
OUTCOME_ANSWERED = "answered"


@dataclass
class PipelineOutcome:
    outcome: str
    reply: Optional[str] = None
    delivered: bool = False
    details: dict = field(default_factory=dict)


def _load_batch_entities(db: Session, payload: BatchPayload):
    instance = db.query(WhatsAppInstance).filter(WhatsAppInstance.id == payload.instance_id).first()
    conversation = db.query(Conversation).filter(Conversation.id == payload.conversation_id).first()
    ai_config = (
        db.query(AIConfig)
        .filter(AIConfig.whatsapp_instance_id == payload.instance_id, AIConfig.is_active.is_(True))
        .first()
    )
    return instance, conversation, ai_config


def escalation_reason(instance: WhatsAppInstance, message: str, intent: IntentResult) -> Optional[str]:
    """Reason code when the message itself calls for a human, else None."""
    if not instance.escalation_enabled:
        return None
    if instance.keyword_escalation_enabled and matches_escalation_keywords(message, instance.escalation_keywords):
        return "keyword"
    if instance.smart_escalation_enabled and intent.intent == Intent.HUMAN_REQUEST.value:
        return "ai_detected_intent"
    return None


async def _reply(
    db: Session,
    instance: WhatsAppInstance,
    conversation: Conversation,
    text: str,
    source: str,
) -> bool:
    save_message(db, conversation, role="assistant", content=text, message_metadata={"source": source}, processed=True)
    db.commit()
    sent = await send_whatsapp_message(instance.instance_name, conversation.user_phone, text)
    return sent.ok


async def _run_external_action(
    db: Session,
    instance: WhatsAppInstance,
    conversation: Conversation,
    payload: BatchPayload,
    intent: IntentResult,
) -> Optional[PipelineOutcome]:
    """Execute the matched action. None means answering continues normally."""
    action = intent.action
    provider_message_id = payload.message_ids[-1] if payload.message_ids else None
    try:
        result = await execute_external_action(
            db,
            action,
            intent.extracted_variables,
            conversation=conversation,
            instance_name=instance.instance_name,
            provider_message_id=provider_message_id,
            intent_confidence=intent.confidence,
        )
    except ActionConfigError:
        return None

    details = result.as_dict()
    if not result.success or action.response_type == RESPONSE_NONE:
        return None
    if action.response_type == RESPONSE_WAIT_FOR_WEBHOOK:
        return PipelineOutcome(OUTCOME_AWAITING_ACTION, details=details)

    text = confirmation_text(action, intent.extracted_variables)
    if not text:
        return None
    delivered = await _reply(db, instance, conversation, text, source="external_action")
    return PipelineOutcome(OUTCOME_ACTION, reply=text, delivered=delivered, details=details)


async def _search(query: str, instance_id, log) -> List[dict]:
    try:
        return await search_knowledge(query, instance_id)
    except Exception as exc:
        log.warning("Knowledge search failed, answering without passages", context={"error": str(exc)})
        return []


async def _answer(
    db: Session,
    instance: WhatsAppInstance,
    conversation: Conversation,
    ai_config: AIConfig,
    payload: BatchPayload,
    provider: Optional[LLMProvider],
    log,
) -> PipelineOutcome:
    query = payload.message_content or ""

    if conversation is not None and is_escalated(conversation):
        delivered = await reply_to_escalated_conversation(db, instance, conversation)
        return PipelineOutcome(OUTCOME_ESCALATED_HOLD, delivered=delivered)

    intent = detect_intent(db, instance.id, query)
    if intent.intent == Intent.EXTERNAL_ACTION.value:
        action_outcome = await _run_external_action(db, instance, conversation, payload, intent)
        if action_outcome is not None:
            return action_outcome

    reason = escalation_reason(instance, query, intent)
    if reason:
        delivered = await escalate_conversation(db, instance, conversation, reason, query)
        return PipelineOutcome(OUTCOME_ESCALATED, delivered=delivered, details={"reason": reason})

    file_count = count_knowledge_files(db, instance.id)
    if file_count == 0:
        text = ai_config.no_knowledge_message or DEFAULT_NO_KNOWLEDGE_MESSAGE
        delivered = await _reply(db, instance, conversation, text, source="no_knowledge")
        return PipelineOutcome(OUTCOME_NO_KNOWLEDGE, reply=text, delivered=delivered)

    search_results = await _search(query, instance.id, log)

    language = detect_language(query)
    business = detect_business_context(query, ai_config.industry, ai_config.business_terms)
    quality = assess_response_quality(query, intent, business, search_results, language, file_count)
    log.info("Quality assessed", context=quality.as_metadata())

    if quality.should_escalate and instance.escalation_enabled and instance.smart_escalation_enabled:
        delivered = await escalate_conversation(
            db, instance, conversation, "low_quality", query, quality_score=quality.response_quality
        )
        return PipelineOutcome(
            OUTCOME_ESCALATED,
            delivered=delivered,
            details={"reason": "low_quality", "quality": quality.response_quality},
        )

    assembled = assemble_context(
        db,
        conversation.id,
        query,
        search_results,
        max_context_tokens=settings.max_context_tokens,
        exclude_message_ids=payload.message_ids,
    )

    try:
        generated = await generate_response(
            db,
            instance=instance,
            ai_config=ai_config,
            conversation=conversation,
            query=query,
            assembled=assembled,
            image_url=payload.media_url if payload.message_type == "image" else None,
            quality_metadata={**quality.as_metadata(), "language": language.primary_language},
            provider=provider,
        )
    except QuotaExceededError as exc:
        log.warning("Quota exceeded, reply suppressed", context=exc.to_dict())
        delivered = False
        if ai_config.quota_exceeded_message:
            sent = await send_whatsapp_message(
                instance.instance_name, conversation.user_phone, ai_config.quota_exceeded_message
            )
            delivered = sent.ok
        return PipelineOutcome(
            OUTCOME_QUOTA_EXCEEDED,
            reply=ai_config.quota_exceeded_message,
            delivered=delivered,
            details=exc.to_dict(),
        )
    except GenerationError as exc:
        log.error("Reply generation failed", context={"error": str(exc)})
        return PipelineOutcome(OUTCOME_GENERATION_FAILED, details={"error": str(exc)})

    sent = await send_whatsapp_message(instance.instance_name, conversation.user_phone, generated.reply)
    return PipelineOutcome(
        OUTCOME_ANSWERED,
        reply=generated.reply,
        delivered=sent.ok,
        details={"model": generated.model, "total_tokens": generated.total_tokens, **assembled.token_counts()},
    )


async def process_batch(db: Session, payload: BatchPayload, provider: Optional[LLMProvider] = None) -> PipelineOutcome:
    """Run the full auto-reply pipeline for one batch."""
    log = bind_logger(
        "pipeline_service",
        batch_id=str(payload.batch_id),
        conversation_id=str(payload.conversation_id),
    )
    instance, conversation, ai_config = _load_batch_entities(db, payload)
    if instance is None or conversation is None or ai_config is None:
        log.warning(
            "Batch skipped: instance, conversation or AI config missing",
            context={"has_instance": instance is not None, "has_conversation": conversation is not None},
        )
        return PipelineOutcome(OUTCOME_SKIPPED)

    try:
        outcome = await _answer(db, instance, conversation, ai_config, payload, provider, log)
    except Exception:
        db.rollback()
        raise
    finally:
        mark_messages_processed(db, conversation.id, payload.message_ids)
        db.commit()

    log.info(
        "Batch answered",
        context={"outcome": outcome.outcome, "delivered": outcome.delivered, "messages": len(payload.messages)},
    )
    return outcome
