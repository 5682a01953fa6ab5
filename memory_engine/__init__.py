"""Conversational memory and context retrieval engine."""

from .memory.manager import MemoryManager

__all__ = ["MemoryManager"]
