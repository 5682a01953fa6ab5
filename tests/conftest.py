"""Shared test fixtures for the memory engine."""

import asyncio
import re
import tempfile
from pathlib import Path
from typing import List, Optional

import pytest

from memory_engine.config.settings import Settings
from memory_engine.exceptions import EmbeddingUnavailable
from memory_engine.storage.database import DatabaseManager

TEST_DIM = 8

# Each topic owns one axis; texts with no topic word land on the last axis
TOPIC_WORDS = {
    0: {"algebra", "equation", "equations", "quadratic", "polynomial", "factoring", "math"},
    1: {"biology", "cell", "cells", "mitochondria", "photosynthesis", "organism"},
    2: {"history", "war", "empire", "revolution"},
    3: {"chemistry", "molecule", "atom", "reaction"},
}

_WORD = re.compile(r"[a-z]+")


def topic_vector(text: str) -> List[float]:
    """Deterministic vector counting topic words per axis."""
    vector = [0.0] * TEST_DIM
    for word in _WORD.findall(text.lower()):
        for axis, words in TOPIC_WORDS.items():
            if word in words:
                vector[axis] += 1.0
    if not any(vector):
        vector[TEST_DIM - 1] = 1.0
    return vector


class TopicEmbedder:
    """Fake embedding client with switchable failure and latency."""

    dimensions = TEST_DIM

    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.calls: List[str] = []

    async def embed(self, text: str, timeout: Optional[float] = None) -> List[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise EmbeddingUnavailable("embedding provider down")
        return topic_vector(text)


class StrictEmbedder(TopicEmbedder):
    """Rejects blank text and any text containing a refused word."""

    def __init__(self, refuse: Optional[str] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.refuse = refuse

    async def embed(self, text: str, timeout: Optional[float] = None) -> List[float]:
        if not text.strip():
            self.calls.append(text)
            raise EmbeddingUnavailable("Cannot embed empty text")
        if self.refuse and self.refuse in text:
            self.calls.append(text)
            raise EmbeddingUnavailable("Input rejected by provider")
        return await super().embed(text, timeout)


@pytest.fixture
def embedder():
    """Working topic embedder."""
    return TopicEmbedder()


@pytest.fixture
async def db_manager():
    """Create test database manager with migrations applied."""
    with tempfile.TemporaryDirectory() as temp_dir:
        db_path = Path(temp_dir) / "test.db"
        manager = DatabaseManager(db_path)
        await manager.initialize()
        yield manager
        # Let fire-and-forget tasks finish before the directory is removed
        pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await manager.close()


@pytest.fixture
def settings(tmp_path):
    """Settings sized for the topic embedder, without retry delays."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'memory.db'}",
        openai_api_key=None,
        embedding_dim=TEST_DIM,
        retry_base_delay=0.0,
        read_timeout=2.0,
        pending_sweep_interval=3600,
    )
