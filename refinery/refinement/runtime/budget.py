"""
Token budget management for refinement sessions.

Strategies:
1. Context truncation, structure-aware where file/section boundaries exist
2. Conversation summarization of older turns
3. Per-stage allocation so each persona only sees what it needs
4. Chunked generation signal for large documents
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field

from ...pricing import DEFAULT_TOKEN_LIMIT, max_tokens_for_model
from ..types import ConversationTurn

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
RESPONSE_RESERVE_RATIO = 0.25
STAGE_CONTEXT_RATIOS: dict[str, float] = {
    "analyst": 0.4,
    "critic": 0.3,
    "refiner": 0.5,
}
CHUNK_THRESHOLD_RATIO = 0.8
TAIL_RESERVE_RATIO = 0.3

SECTION_SEPARATOR = "\n---\n"
SECTION_SPLIT_RE = re.compile(r"\n---\n|\n(?=(?://|#{1,2}) [\w./-]+\.\w+)")
HEAD_TAIL_MARKER = "\n\n... [CONTENT TRUNCATED FOR TOKEN EFFICIENCY] ...\n\n"
OMISSION_MARKER = "\n\n... [MIDDLE SECTIONS OMITTED FOR TOKEN EFFICIENCY] ...\n"
PARTIAL_MARKER = "\n... [truncated]"

ANALYST_QUESTION_RE = re.compile(r"\d+\.\s*[^?\n]+\?")
CRITIC_SCORE_RE = re.compile(r"confidence[_ ]?score[\"']?\s*[:=]\s*(\d+)", re.IGNORECASE)

COMMON_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "shall", "can", "need", "dare",
        "to", "of", "in", "for", "on", "with", "at", "by", "from", "as",
        "into", "through", "during", "before", "after", "above", "below",
        "and", "but", "or", "nor", "so", "yet", "both", "either", "neither",
        "not", "only", "own", "same", "than", "too", "very", "just",
        "i", "me", "my", "we", "our", "you", "your", "it", "its", "this", "that",
        "want", "make", "create", "add", "implement", "build", "feature",
    }
)


def estimate_tokens(text: str | None) -> int:
    # ~4 characters per token for English prose and code.
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass
class BudgetInfo:
    max_tokens: int
    used_tokens: int
    available_tokens: int
    response_reserve: int
    utilization_percent: int


@dataclass
class TruncationResult:
    content: str
    original_tokens: int
    truncated_tokens: int
    was_truncated: bool


@dataclass
class StageUsage:
    calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0


@dataclass
class TokenBudgetManager:
    max_tokens: int = DEFAULT_TOKEN_LIMIT
    conversation_tokens: int = 0
    system_prompt_tokens: int = 0
    stage_usage: dict[str, StageUsage] = field(default_factory=dict)

    @classmethod
    def for_model(cls, model_id: str | None) -> "TokenBudgetManager":
        return cls(max_tokens=max_tokens_for_model(model_id))

    @property
    def response_reserve(self) -> int:
        return int(self.max_tokens * RESPONSE_RESERVE_RATIO)

    # -- accounting -------------------------------------------------------

    def available_tokens_for_stage(self, stage: str) -> int:
        ratio = STAGE_CONTEXT_RATIOS[stage]
        base = self.max_tokens - self.response_reserve - self.system_prompt_tokens - self.conversation_tokens
        return max(0, math.floor(base * ratio))

    def set_system_prompt_tokens(self, tokens: int) -> None:
        self.system_prompt_tokens = max(0, int(tokens))

    def add_conversation_tokens(self, tokens: int) -> None:
        self.conversation_tokens += max(0, int(tokens))

    def record_usage(self, stage: str, prompt_tokens: int, completion_tokens: int, cost_usd: float = 0.0) -> None:
        """Charge one model call to ``stage`` and to the running conversation total."""
        usage = self.stage_usage.setdefault(stage, StageUsage())
        usage.calls += 1
        usage.prompt_tokens += max(0, int(prompt_tokens))
        usage.completion_tokens += max(0, int(completion_tokens))
        usage.cost_usd += max(0.0, cost_usd)
        self.add_conversation_tokens(prompt_tokens + completion_tokens)

    @property
    def total_cost_usd(self) -> float:
        return sum(usage.cost_usd for usage in self.stage_usage.values())

    def reduce_conversation_tokens(self, tokens: int) -> None:
        """Lower the running estimate after summarization; never raises it."""
        self.conversation_tokens = min(self.conversation_tokens, max(0, int(tokens)))

    def budget_info(self) -> BudgetInfo:
        used = self.system_prompt_tokens + self.conversation_tokens
        available = max(0, self.max_tokens - used - self.response_reserve)
        utilization = round(used / self.max_tokens * 100) if self.max_tokens > 0 else 100
        return BudgetInfo(
            max_tokens=self.max_tokens,
            used_tokens=used,
            available_tokens=available,
            response_reserve=self.response_reserve,
            utilization_percent=utilization,
        )

    def needs_chunked_generation(self, context_tokens: int, estimated_output_tokens: int) -> bool:
        available = self.max_tokens - self.response_reserve - self.system_prompt_tokens
        return (context_tokens + estimated_output_tokens) > available * CHUNK_THRESHOLD_RATIO

    # -- truncation -------------------------------------------------------

    def truncate_context(self, content: str, max_tokens: int) -> TruncationResult:
        original_tokens = estimate_tokens(content)
        if original_tokens <= max_tokens:
            return TruncationResult(
                content=content,
                original_tokens=original_tokens,
                truncated_tokens=original_tokens,
                was_truncated=False,
            )

        max_chars = max(0, max_tokens) * CHARS_PER_TOKEN
        truncated = _smart_truncate(content, max_chars)
        logger.debug(
            "Truncated context from %d to %d tokens (limit %d)",
            original_tokens,
            estimate_tokens(truncated),
            max_tokens,
        )
        return TruncationResult(
            content=truncated,
            original_tokens=original_tokens,
            truncated_tokens=estimate_tokens(truncated),
            was_truncated=True,
        )

    # -- summarization ----------------------------------------------------

    def summarize_conversation(
        self,
        turns: list[ConversationTurn],
        keep_recent_turns: int = 3,
    ) -> list[ConversationTurn]:
        if len(turns) <= keep_recent_turns + 1:
            return list(turns)

        keep = max(0, keep_recent_turns)
        older = turns[: len(turns) - keep]
        recent = turns[len(turns) - keep:]

        summary_parts: list[str] = []
        for turn in older:
            summary = _summarize_turn(turn)
            if summary:
                summary_parts.append(f"[{turn.role.upper()}]: {summary}")

        result: list[ConversationTurn] = []
        if summary_parts:
            result.append(
                ConversationTurn(
                    role="system",
                    content="[CONVERSATION SUMMARY]\n" + "\n".join(summary_parts) + "\n[END SUMMARY]",
                    metadata={"summary": True, "summarized_turns": len(older)},
                )
            )
        result.extend(recent)
        return result

    # -- skeleton optimisation --------------------------------------------

    @staticmethod
    def prioritize_skeleton_sections(
        sections: list[str],
        keywords: list[str],
        max_sections: int = 10,
    ) -> list[str]:
        scored: list[tuple[int, int, str]] = []
        for index, section in enumerate(sections):
            lower = section.lower()
            score = sum(10 for keyword in keywords if keyword.lower() in lower)
            if "service" in lower or "manager" in lower:
                score += 5
            if "types" in lower or "interface" in lower:
                score += 3
            scored.append((score, index, section))
        # Stable: equal scores keep document order.
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [section for _score, _index, section in scored[:max_sections]]

    @staticmethod
    def extract_keywords(prompt: str) -> list[str]:
        words = re.sub(r"[^a-z0-9\s]", " ", prompt.lower()).split()
        seen: list[str] = []
        for word in words:
            if len(word) > 2 and word not in COMMON_WORDS and word not in seen:
                seen.append(word)
        return seen


def token_aware_skeleton(full_skeleton: str, max_tokens: int, keywords: list[str] | None = None) -> str:
    """Fit a raw skeleton dump into ``max_tokens``, most relevant sections first."""
    manager = TokenBudgetManager()
    if estimate_tokens(full_skeleton) <= max_tokens:
        return full_skeleton
    sections = [section for section in SECTION_SPLIT_RE.split(full_skeleton) if section.strip()]
    prioritized = manager.prioritize_skeleton_sections(sections, keywords or [], max_sections=15)
    combined = "\n\n---\n\n".join(prioritized)
    return manager.truncate_context(combined, max_tokens).content


def _head_tail(content: str, max_chars: int) -> str:
    half = max_chars // 2 - 50
    if half <= 0:
        return content[:max_chars]
    return content[:half] + HEAD_TAIL_MARKER + content[-half:]


def _smart_truncate(content: str, max_chars: int) -> str:
    if len(content) <= max_chars:
        return content

    sections = [section for section in SECTION_SPLIT_RE.split(content) if section]
    if len(sections) <= 1:
        return _head_tail(content, max_chars)

    reserve_for_end = int(max_chars * TAIL_RESERVE_RATIO)
    head_limit = max_chars - reserve_for_end
    kept: list[str] = []
    length = 0
    for section in sections[:-1]:
        if length + len(section) + len(SECTION_SEPARATOR) < head_limit:
            kept.append(section)
            length += len(section) + len(SECTION_SEPARATOR)
            continue
        remaining = head_limit - length - 100
        if remaining > 200:
            kept.append(section[:remaining] + PARTIAL_MARKER)
        break

    kept.append(OMISSION_MARKER)

    last = sections[-1]
    if len(last) < reserve_for_end:
        kept.append(last)
    elif reserve_for_end > 50:
        kept.append("... [truncated]\n" + last[-(reserve_for_end - 50):])

    result = SECTION_SEPARATOR.join(kept)
    if len(result) > max_chars:
        return _head_tail(content, max_chars)
    return result


def _summarize_turn(turn: ConversationTurn) -> str:
    content = turn.content
    if turn.role == "user":
        return content if len(content) <= 200 else content[:200] + "..."
    if turn.role == "analyst":
        questions = ANALYST_QUESTION_RE.findall(content)
        if questions:
            return f"Asked {len(questions)} questions: " + "; ".join(q.strip() for q in questions[:3])
        return content[:150] + ("..." if len(content) > 150 else "")
    if turn.role == "critic":
        match = CRITIC_SCORE_RE.search(content)
        if match:
            return f"Critique with confidence {match.group(1)}%"
        return "Provided critique feedback"
    return content[:100] + ("..." if len(content) > 100 else "")
