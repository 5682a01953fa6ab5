"""Importance scoring for finished conversations."""

from dataclasses import dataclass

from .models import ConversationMemory


def _saturate(count: int, knee: int) -> float:
    """Linear up to ``knee``, flat at 1.0 after it."""
    if count <= 0:
        return 0.0
    return min(count / knee, 1.0)


@dataclass(frozen=True)
class ImportanceWeights:
    messages: float = 0.3
    documents: float = 0.2
    artifacts: float = 0.2
    key_points: float = 0.3

    def total(self) -> float:
        return self.messages + self.documents + self.artifacts + self.key_points


class ImportanceScorer:
    """Pure, deterministic importance in [0, 1]."""

    def __init__(
        self,
        weights: ImportanceWeights = ImportanceWeights(),
        message_saturation: int = 20,
        key_point_saturation: int = 5,
    ) -> None:
        if min(weights.messages, weights.documents, weights.artifacts, weights.key_points) < 0:
            raise ValueError("Importance weights must be non-negative")
        if weights.total() > 1.0 + 1e-9:
            raise ValueError(f"Importance weights sum to {weights.total():.3f} > 1.0")
        if message_saturation <= 0 or key_point_saturation <= 0:
            raise ValueError("Saturation constants must be positive")
        self.weights = weights
        self.message_saturation = message_saturation
        self.key_point_saturation = key_point_saturation

    def score(
        self,
        message_count: int,
        has_documents: bool,
        has_artifacts: bool,
        key_point_count: int,
    ) -> float:
        w = self.weights
        raw = (
            w.messages * _saturate(message_count, self.message_saturation)
            + w.documents * float(has_documents)
            + w.artifacts * float(has_artifacts)
            + w.key_points * _saturate(key_point_count, self.key_point_saturation)
        )
        return max(0.0, min(1.0, raw))

    def score_memory(self, memory: ConversationMemory) -> float:
        return self.score(
            message_count=memory.message_count,
            has_documents=bool(memory.document_ids),
            has_artifacts=bool(memory.artifacts),
            key_point_count=len(memory.key_points),
        )
