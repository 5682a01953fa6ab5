"""Turn summarization and preference extraction.

Key points and decisions come from deterministic sentence heuristics. The
summary prefers the completion model and falls back to a heuristic digest
when the model is missing, slow, or failing.
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import structlog

from ..exceptions import CompletionUnavailable
from .models import ChatMessage, UserPreferences, utcnow

logger = structlog.get_logger()

SUMMARIZE_SYSTEM = """\
Summarize this conversation in 2-3 sentences.
Focus on: decisions made, artifacts produced, key topics discussed.
If a previous summary is given, fold it in so the result covers the whole conversation."""

MAX_KEY_POINTS = 10
MAX_DECISIONS = 10
MAX_POINT_CHARS = 200
MAX_SUMMARY_CHARS = 800

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")

_KEY_POINT_CUES = re.compile(
    r"\b(important|key|note that|remember|summary|in short|main point|focus on)\b",
    re.I,
)

_DECISION_CUES = re.compile(
    r"\b(let'?s|let us|we will|we'll|i will|i'll|decided|decide to|going with"
    r"|agreed|the plan is|will use|chose|choose to|settled on)\b",
    re.I,
)

QUESTION_TYPE_PATTERNS: Dict[str, re.Pattern[str]] = {
    "multiple_choice": re.compile(r"multiple[- ]choice|\bmcqs?\b", re.I),
    "true_false": re.compile(r"\btrue\s*(?:/|or|-)?\s*false\b", re.I),
    "fill_in_the_blank": re.compile(r"fill[- ]in[- ]the[- ]blanks?", re.I),
    "short_answer": re.compile(r"short[- ]answer|identification", re.I),
    "essay": re.compile(r"\bessays?\b", re.I),
}

_EASY = re.compile(r"\b(easy|easier|simple|basic|beginner|introductory)\b", re.I)
_HARD = re.compile(r"\b(hard|harder|difficult|challenging|advanced|tricky)\b", re.I)

_LANGUAGE = re.compile(
    r"\b(?:in|answer in|respond in|reply in|write in)\s+"
    r"(english|filipino|tagalog|spanish|french|german|portuguese|italian"
    r"|japanese|chinese|korean|indonesian)\b",
    re.I,
)

_STYLES: List[tuple[str, re.Pattern[str]]] = [
    ("concise", re.compile(r"\b(concise|brief|short answers?|keep it short|tl;?dr)\b", re.I)),
    ("detailed", re.compile(r"\b(in detail|detailed|step[- ]by[- ]step|thorough)\b", re.I)),
    ("simple", re.compile(r"\b(simple terms|eli5|like i'?m five|plain language)\b", re.I)),
]

# Weight of a new difficulty signal against the running bias
DIFFICULTY_LEARNING_RATE = 0.2


def _sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text.strip()) if s.strip()]


def _clip(text: str, limit: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3].rstrip() + "..."


def _unique(items: Sequence[str], limit: int) -> List[str]:
    out: List[str] = []
    seen: set[str] = set()
    for item in items:
        key = item.strip()
        if not key or key.lower() in seen:
            continue
        seen.add(key.lower())
        out.append(key)
        if len(out) >= limit:
            break
    return out


def merge_unique(existing: Sequence[str], new: Sequence[str], limit: int) -> List[str]:
    """Order-preserving union; newest entries win once ``limit`` is hit."""
    merged = _unique([*existing, *new], limit=len(existing) + len(new))
    return merged[-limit:]


@dataclass
class TurnSummary:
    summary: str
    key_points: List[str] = field(default_factory=list)
    decisions: List[str] = field(default_factory=list)


class TurnSummarizer:
    """Builds the summary, key points and decisions of a finished turn."""

    def __init__(self, chat_provider: Any = None, timeout: float = 15.0) -> None:
        self._provider = chat_provider
        self._timeout = timeout

    def extract_key_points(self, messages: Sequence[ChatMessage]) -> List[str]:
        """Opening sentence of each user message plus cued assistant sentences."""
        points: List[str] = []
        for msg in messages:
            sentences = _sentences(msg.content)
            if not sentences:
                continue
            if msg.role == "user":
                points.append(_clip(sentences[0], MAX_POINT_CHARS))
            else:
                points.extend(
                    _clip(s, MAX_POINT_CHARS) for s in sentences if _KEY_POINT_CUES.search(s)
                )
        return _unique(points, MAX_KEY_POINTS)

    def extract_decisions(self, messages: Sequence[ChatMessage]) -> List[str]:
        """Sentences that commit to a course of action."""
        decisions = [
            _clip(s, MAX_POINT_CHARS)
            for msg in messages
            for s in _sentences(msg.content)
            if _DECISION_CUES.search(s)
        ]
        return _unique(decisions, MAX_DECISIONS)

    def heuristic_summary(
        self,
        key_points: Sequence[str],
        decisions: Sequence[str],
        previous_summary: Optional[str] = None,
    ) -> str:
        parts: List[str] = []
        if previous_summary:
            parts.append(previous_summary.rstrip("."))
        if key_points:
            parts.append("Discussed: " + "; ".join(p.rstrip(".?!") for p in key_points[:3]))
        if decisions:
            parts.append("Decided: " + "; ".join(d.rstrip(".?!") for d in decisions[:2]))
        summary = ". ".join(parts)
        if summary and not summary.endswith("."):
            summary += "."
        return _clip(summary, MAX_SUMMARY_CHARS)

    async def summarize(
        self,
        messages: Sequence[ChatMessage],
        previous_summary: Optional[str] = None,
    ) -> TurnSummary:
        """Summarize a turn, folding in the previous summary if any."""
        key_points = self.extract_key_points(messages)
        decisions = self.extract_decisions(messages)

        summary = await self._model_summary(messages, previous_summary)
        if not summary:
            summary = self.heuristic_summary(key_points, decisions, previous_summary)
        if not summary:
            summary = _clip(" ".join(m.content for m in messages), MAX_SUMMARY_CHARS)

        return TurnSummary(summary=summary, key_points=key_points, decisions=decisions)

    async def _model_summary(
        self,
        messages: Sequence[ChatMessage],
        previous_summary: Optional[str],
    ) -> Optional[str]:
        if not self._provider or not messages:
            return None

        # Condensed transcript
        lines = [f"{m.role}: {m.content[:200]}" for m in messages[-20:]]
        if previous_summary:
            lines.insert(0, f"Previous summary: {previous_summary}")
        transcript = "\n".join(lines)

        try:
            response = await asyncio.wait_for(
                self._provider.chat(
                    messages=[
                        {"role": "system", "content": SUMMARIZE_SYSTEM},
                        {"role": "user", "content": transcript},
                    ],
                    max_tokens=200,
                    temperature=0.3,
                ),
                timeout=self._timeout,
            )
            content = response.content.strip()
            return _clip(content, MAX_SUMMARY_CHARS) if content else None
        except asyncio.TimeoutError:
            logger.warning("Turn summarization timed out", timeout=self._timeout)
            return None
        except CompletionUnavailable as exc:
            logger.warning("Turn summarization failed", error=str(exc))
            return None


class PreferenceExtractor:
    """Updates user preferences from what the user asked for in a turn."""

    def detect(self, messages: Sequence[ChatMessage]) -> Dict[str, Any]:
        """Raw signals found in the user's messages."""
        text = "\n".join(m.content for m in messages if m.role == "user")
        signals: Dict[str, Any] = {"question_types": [], "difficulty": 0}
        if not text:
            return signals

        signals["question_types"] = [
            name for name, pattern in QUESTION_TYPE_PATTERNS.items() if pattern.search(text)
        ]
        signals["difficulty"] = len(_HARD.findall(text)) - len(_EASY.findall(text))

        language = _LANGUAGE.search(text)
        if language:
            signals["language"] = language.group(1).lower()

        for style, pattern in _STYLES:
            if pattern.search(text):
                signals["communication_style"] = style
                break
        return signals

    def apply(
        self,
        user_id: str,
        current: Optional[UserPreferences],
        messages: Sequence[ChatMessage],
    ) -> Optional[UserPreferences]:
        """Return updated preferences, or None if the turn carried no signal."""
        signals = self.detect(messages)
        difficulty = signals["difficulty"]
        if not (
            signals["question_types"]
            or difficulty
            or "language" in signals
            or "communication_style" in signals
        ):
            return None

        prefs = (
            current.model_copy(deep=True)
            if current
            else UserPreferences(user_id=user_id)
        )
        for name in signals["question_types"]:
            prefs.question_type_counts[name] = prefs.question_type_counts.get(name, 0) + 1

        if difficulty:
            direction = 1.0 if difficulty > 0 else -1.0
            bias = (
                prefs.difficulty_bias * (1 - DIFFICULTY_LEARNING_RATE)
                + direction * DIFFICULTY_LEARNING_RATE
            )
            prefs.difficulty_bias = max(-1.0, min(1.0, bias))

        prefs.language = signals.get("language", prefs.language)
        prefs.communication_style = signals.get(
            "communication_style", prefs.communication_style
        )
        prefs.updated_at = utcnow()
        return prefs
