"""ORM models export."""
from .chat import ChatMessage, ChatSession, MessageRole, SessionStatus
from .lead import ContactLead, LeadStatus

__all__ = [
    "ChatMessage",
    "ChatSession",
    "ContactLead",
    "LeadStatus",
    "MessageRole",
    "SessionStatus",
]
