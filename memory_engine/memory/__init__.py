"""Conversation and document memory: storage, search, assembly, persistence."""

from .assembler import ContextAssembler
from .manager import MemoryManager
from .models import (
    AssembledContext,
    ChatMessage,
    ContextRequest,
    ConversationMemory,
    DocumentMemory,
    FinishedTurn,
    SessionState,
    UserPreferences,
)
from .scorer import ImportanceScorer
from .search import SimilaritySearch
from .writer import MemoryWriter

__all__ = [
    "AssembledContext",
    "ChatMessage",
    "ContextAssembler",
    "ContextRequest",
    "ConversationMemory",
    "DocumentMemory",
    "FinishedTurn",
    "ImportanceScorer",
    "MemoryManager",
    "MemoryWriter",
    "SessionState",
    "SimilaritySearch",
    "UserPreferences",
]
