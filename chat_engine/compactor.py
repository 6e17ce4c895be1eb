"""Fit a conversation history into a token budget, summarising the overflow."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from .protocols import Summarizer

logger = logging.getLogger(__name__)

ROLE_OVERHEAD_TOKENS = 4
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token estimate (4 chars ~ 1 token)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def message_tokens(message: Mapping[str, str]) -> int:
    return estimate_tokens(message.get("content", "")) + ROLE_OVERHEAD_TOKENS


def messages_as_text(messages: Sequence[Mapping[str, str]]) -> str:
    parts = []
    for msg in messages:
        role = msg.get("role", "user")
        content = msg.get("content", "")
        parts.append(f"{role}: {content}")
    return "\n".join(parts)


@dataclass
class CompactionResult:
    messages: List[Dict[str, str]]
    usage_percent: int
    dropped: int = 0
    summary: Optional[str] = None
    retained_tokens: int = 0


@dataclass
class CompactionCache:
    """Single-slot cache: the synopsis for the last dropped-prefix size.

    ``summary`` is ``None`` when the last attempt for ``dropped_count`` failed.
    """

    dropped_count: int = 0
    summary: Optional[str] = None
    filled: bool = field(default=False)

    def matches(self, dropped_count: int) -> bool:
        return self.filled and self.dropped_count == dropped_count

    def store(self, dropped_count: int, summary: Optional[str]) -> None:
        self.dropped_count = dropped_count
        self.summary = summary
        self.filled = True

    def invalidate(self) -> None:
        self.dropped_count = 0
        self.summary = None
        self.filled = False


class ContextCompactor:
    """Retain the newest turns that fit and stand a synopsis in for the rest.

    One compactor is kept per conversation so the cache follows that
    conversation's history only.
    """

    def __init__(
        self,
        summarizer: Optional[Summarizer],
        *,
        summary_prefix: str = "Summary of earlier conversation:\n",
    ) -> None:
        self.summarizer = summarizer
        self.summary_prefix = summary_prefix
        self.cache = CompactionCache()

    async def compact_and_fit(
        self, turns: Sequence[Mapping[str, str]], budget_tokens: int
    ) -> CompactionResult:
        if not turns:
            return CompactionResult(messages=[], usage_percent=0)

        retained: List[Dict[str, str]] = []
        total = 0
        for message in reversed(turns):
            cost = message_tokens(message)
            if total + cost > budget_tokens:
                break
            retained.insert(0, dict(message))
            total += cost

        if not retained:
            # The newest turn alone exceeds the budget; it is still sent.
            newest = turns[-1]
            retained = [dict(newest)]
            total = message_tokens(newest)

        dropped = len(turns) - len(retained)
        summary = await self._synopsis(turns[:dropped]) if dropped else None
        if not dropped and self.cache.filled:
            self.cache.invalidate()

        messages = list(retained)
        if summary:
            messages.insert(0, {"role": "system", "content": f"{self.summary_prefix}{summary}"})

        logger.debug(
            "Compacted %d turn(s): kept %d, dropped %d, %d/%d tokens",
            len(turns),
            len(retained),
            dropped,
            total,
            budget_tokens,
        )
        return CompactionResult(
            messages=messages,
            usage_percent=self._usage(total, budget_tokens),
            dropped=dropped,
            summary=summary,
            retained_tokens=total,
        )

    async def _synopsis(self, prefix: Sequence[Mapping[str, str]]) -> Optional[str]:
        dropped = len(prefix)
        if self.cache.matches(dropped):
            return self.cache.summary

        self.cache.invalidate()
        summary: Optional[str] = None
        if self.summarizer is None:
            logger.debug("No summarizer configured; dropping %d turn(s) without synopsis", dropped)
        else:
            try:
                payload = await self.summarizer.summarize([dict(m) for m in prefix])
                summary = ((payload or {}).get("summary") or "").strip() or None
            except Exception:
                logger.warning(
                    "Summarisation of %d dropped turn(s) failed; sending truncated context",
                    dropped,
                    exc_info=True,
                )
            else:
                if summary is None:
                    logger.warning("Summarizer returned no synopsis for %d dropped turn(s)", dropped)
        self.cache.store(dropped, summary)
        return summary

    @staticmethod
    def _usage(total: int, budget_tokens: int) -> int:
        if budget_tokens <= 0:
            return 100
        return max(0, min(100, round(total / budget_tokens * 100)))
