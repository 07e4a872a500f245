"""
Conversation stores.
"""

from .base import ConversationStore, InMemoryConversationStore, turn_from_dict, turn_to_dict
from .sql import SQLConversationStore, create_store

__all__ = [
    "ConversationStore",
    "InMemoryConversationStore",
    "SQLConversationStore",
    "create_store",
    "turn_from_dict",
    "turn_to_dict",
]
