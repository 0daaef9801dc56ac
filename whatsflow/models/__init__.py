from whatsflow.models.ai_interaction import AIInteraction
from whatsflow.models.buffered_message import BufferedMessage
from whatsflow.models.conversation import Conversation
from whatsflow.models.debug_log import WebhookDebugLog
from whatsflow.models.escalation import EscalatedConversation
from whatsflow.models.external_action import ExternalAction, ExternalActionLog, ExternalActionResponse
from whatsflow.models.instance import AIConfig, KnowledgeFile, WhatsAppInstance
from whatsflow.models.message import Message
from whatsflow.models.usage_counter import UsageCounter

__all__ = [
    "WhatsAppInstance",
    "AIConfig",
    "KnowledgeFile",
    "Conversation",
    "Message",
    "BufferedMessage",
    "AIInteraction",
    "UsageCounter",
    "ExternalAction",
    "ExternalActionLog",
    "ExternalActionResponse",
    "EscalatedConversation",
    "WebhookDebugLog",
]
