import json
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from whatsflow.config import settings
from whatsflow.logging_config import get_logger
from whatsflow.models import AIConfig, AIInteraction, Conversation, Message, WhatsAppInstance
from whatsflow.services.context_service import AssembledContext
from whatsflow.services.conversation_service import save_message
from whatsflow.services.llm import LLMError, LLMProvider, LLMResponse, OpenAIProvider
from whatsflow.services.usage_service import QuotaExceededError, UsageStatus, check_usage, consume_usage

logger = get_logger("response_service")

DEFAULT_SYSTEM_PROMPT = """You are a helpful WhatsApp AI assistant that answers questions based on the provided context.
If the information to answer the question is not in the context, say "I don't have enough information to answer that question."
If the question is not related to the context, still try to be helpful but make it clear that you're providing general knowledge.
Always be concise, professional, and accurate. Don't make things up."""

FORMATTING_MARKER = "Don't use markdown"
FORMATTING_INSTRUCTIONS = """IMPORTANT: Don't use markdown formatting in your responses. Format your text as plain text for WhatsApp.
- Don't use headings with # symbols
- Don't format links as [text](url) - instead write the text followed by the URL on a new line if needed
- Use *text* for emphasis instead of **text**"""

EMPTY_CONTEXT_ADDITION = """
The user's message doesn't appear to match any specific content in our knowledge base.
If this is a greeting or general question, please respond appropriately.
For greetings, acknowledge the greeting and ask how you can help.
For general questions, provide a helpful response if you can, or politely explain that you need more specific information."""

IMAGE_CONTEXT_ADDITION = """
The user has sent an image. Please analyze the image and respond appropriately.
If there is text in the image, please mention that you can see it.
If there is a question about the image, respond based on what you can see in it.
Be descriptive but concise in your analysis of the image content."""

DATA_COLLECTION_ADDITION = """
DATA COLLECTION:
This business collects the following customer details during the conversation:
{fields}
When one of these details is still missing and it fits the conversation, politely ask for it.
Always answer with a single JSON object and nothing else, in this exact shape:
{{"response": "<message for the customer>", "needsDataCollection": <true|false>, "requestedFields": ["<field name>", ...]}}"""

IMAGE_DEFAULT_QUESTION = "Please describe this image"

_EMBEDDED_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_HEADING = re.compile(r"^#{1,6}\s+(.+)$", re.MULTILINE)
_LINK = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_BOLD = re.compile(r"\*\*(.*?)\*\*")
_INLINE_CODE = re.compile(r"`([^`]+)`")


class GenerationError(Exception):
    """Reply could not be produced; nothing was stored or metered."""


@dataclass
class DataCollectionReply:
    response: str
    needs_data_collection: bool = False
    requested_fields: List[str] = field(default_factory=list)
    parsed: str = "json"  # json, embedded, raw


@dataclass
class GenerationResult:
    reply: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    needs_data_collection: bool
    requested_fields: List[str]
    usage: UsageStatus
    message: Message
    interaction: AIInteraction


def get_llm_provider() -> LLMProvider:
    return OpenAIProvider(
        api_key=settings.openai_api_key,
        default_model=settings.openai_model,
        base_url=settings.openai_base_url,
        default_timeout=settings.llm_timeout_seconds,
    )


def _field_label(item: Any) -> str:
    if isinstance(item, dict):
        name = item.get("name") or item.get("field_name") or ""
        label = item.get("label") or item.get("field_label") or name
        required = " (required)" if item.get("required") or item.get("is_required") else ""
        return f"- {name}: {label}{required}" if label != name else f"- {name}{required}"
    return f"- {item}"


def build_system_prompt(
    base_prompt: Optional[str],
    *,
    has_context: bool,
    has_image: bool = False,
    data_collection_fields: Optional[List[Any]] = None,
) -> str:
    prompt = base_prompt.strip() if base_prompt and base_prompt.strip() else DEFAULT_SYSTEM_PROMPT
    if FORMATTING_MARKER not in prompt:
        prompt += f"\n\n{FORMATTING_INSTRUCTIONS}"

    if has_image:
        prompt += IMAGE_CONTEXT_ADDITION
    elif not has_context:
        prompt += EMPTY_CONTEXT_ADDITION

    if data_collection_fields:
        fields = "\n".join(_field_label(item) for item in data_collection_fields)
        prompt += DATA_COLLECTION_ADDITION.format(fields=fields)
    return prompt


def build_user_message(context: str, query: str, image_url: Optional[str] = None) -> dict:
    question = query or IMAGE_DEFAULT_QUESTION
    text = f"Context:\n{context}\n\nQuestion: {question}" if context else f"Question: {question}"
    if image_url:
        return {
            "role": "user",
            "content": [
                {"type": "text", "text": text},
                {"type": "image_url", "image_url": {"url": image_url}},
            ],
        }
    return {"role": "user", "content": text}


def format_for_whatsapp(text: str) -> str:
    """Rewrite markdown into WhatsApp plain-text conventions."""
    if not text:
        return text
    formatted = _HEADING.sub(r"*\1*", text)
    formatted = _LINK.sub(lambda m: f"{m.group(1)}: {m.group(2)}", formatted)
    formatted = _BOLD.sub(r"*\1*", formatted)
    formatted = _INLINE_CODE.sub(r'"\1"', formatted)
    return formatted


def _reply_from_object(data: Any, parsed: str) -> Optional[DataCollectionReply]:
    if not isinstance(data, dict) or not isinstance(data.get("response"), str):
        return None
    fields = data.get("requestedFields") or []
    if not isinstance(fields, list):
        fields = [fields]
    return DataCollectionReply(
        response=data["response"],
        needs_data_collection=bool(data.get("needsDataCollection")),
        requested_fields=[str(f) for f in fields],
        parsed=parsed,
    )


def parse_data_collection_response(raw: str) -> DataCollectionReply:
    """Split the JSON reply contract; fall back to an embedded object, then raw text."""
    content = (raw or "").strip()
    try:
        reply = _reply_from_object(json.loads(content), "json")
        if reply:
            return reply
    except ValueError:
        pass

    match = _EMBEDDED_OBJECT.search(content)
    if match:
        try:
            reply = _reply_from_object(json.loads(match.group(0)), "embedded")
            if reply:
                return reply
        except ValueError:
            pass

    return DataCollectionReply(response=content, parsed="raw")


def _resolve_temperature(ai_config: Optional[AIConfig]) -> float:
    if ai_config is not None and ai_config.temperature is not None:
        return float(ai_config.temperature)
    return settings.llm_temperature


async def generate_response(
    db: Session,
    *,
    instance: WhatsAppInstance,
    ai_config: Optional[AIConfig],
    conversation: Conversation,
    query: str,
    assembled: AssembledContext,
    image_url: Optional[str] = None,
    quality_metadata: Optional[dict] = None,
    provider: Optional[LLMProvider] = None,
) -> GenerationResult:
    """Generate, meter and persist one assistant reply.

    Raises QuotaExceededError when the tenant is out of replies and
    GenerationError when the model call fails. Neither leaves rows behind.
    """
    usage_check = check_usage(db, instance.tenant_id)
    if not usage_check.ok:
        status = usage_check.details.get("status")
        if usage_check.error_code == "quota_exceeded" and status is not None:
            raise QuotaExceededError(status.used, status.limit, status.resets_on)
        raise GenerationError(usage_check.error or "Usage check failed")

    fields = list(ai_config.data_collection_fields or []) if ai_config is not None else []
    system_prompt = build_system_prompt(
        ai_config.system_prompt if ai_config is not None else None,
        has_context=bool(assembled.context and assembled.context.strip()),
        has_image=bool(image_url),
        data_collection_fields=fields,
    )
    messages = [
        {"role": "system", "content": system_prompt},
        build_user_message(assembled.context, query, image_url),
    ]

    provider = provider or get_llm_provider()
    model = (ai_config.model if ai_config is not None and ai_config.model else None) or settings.openai_model
    try:
        llm_response: LLMResponse = await provider.generate(
            messages,
            model=model,
            temperature=_resolve_temperature(ai_config),
            max_tokens=settings.llm_max_tokens,
            timeout_seconds=settings.llm_timeout_seconds,
        )
    except LLMError as exc:
        logger.error(
            "Language model call failed",
            extra={"context": {"conversation_id": str(conversation.id), "error": str(exc)}},
        )
        raise GenerationError(str(exc)) from exc

    if fields:
        collected = parse_data_collection_response(llm_response.content)
    else:
        collected = DataCollectionReply(response=llm_response.content, parsed="raw")

    reply = format_for_whatsapp(collected.response).strip()
    if not reply:
        raise GenerationError("Language model returned an empty reply")

    try:
        usage_status = consume_usage(db, instance.tenant_id)

        message = save_message(
            db,
            conversation,
            role="assistant",
            content=reply,
            message_metadata={"source": "ai", "model": llm_response.model},
            processed=True,
        )
        interaction = AIInteraction(
            whatsapp_instance_id=instance.id,
            conversation_id=conversation.id,
            user_phone=conversation.user_phone,
            user_message=query,
            ai_response=reply,
            prompt_tokens=llm_response.prompt_tokens,
            completion_tokens=llm_response.completion_tokens,
            total_tokens=llm_response.total_tokens,
            context_token_count=assembled.total_tokens,
            search_result_count=assembled.search_result_count,
            response_model=llm_response.model,
            interaction_metadata={
                "token_counts": assembled.token_counts(),
                "needs_data_collection": collected.needs_data_collection,
                "requested_fields": collected.requested_fields,
                "reply_parse": collected.parsed,
                "quality": quality_metadata or {},
            },
        )
        db.add(interaction)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Reply generated",
        extra={
            "context": {
                "conversation_id": str(conversation.id),
                "model": llm_response.model,
                "total_tokens": llm_response.total_tokens,
                "quota_used": usage_status.used,
                "quota_limit": usage_status.limit,
            }
        },
    )

    return GenerationResult(
        reply=reply,
        model=llm_response.model,
        prompt_tokens=llm_response.prompt_tokens,
        completion_tokens=llm_response.completion_tokens,
        total_tokens=llm_response.total_tokens,
        needs_data_collection=collected.needs_data_collection,
        requested_fields=collected.requested_fields,
        usage=usage_status,
        message=message,
        interaction=interaction,
    )
