"""Animated reveal of streamed text at a bounded rate."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class TypewriterRenderer:
    """Decouple how fast text arrives from how fast it is shown.

    ``push`` extends the confirmed text; a single reveal task advances the
    revealed cursor by ``chars_per_tick`` every ``interval`` seconds and stops
    itself once it catches up. ``finalize`` jumps straight to the end.
    """

    def __init__(
        self,
        on_reveal: Optional[Callable[[str], None]] = None,
        *,
        interval: float = 0.02,
        chars_per_tick: int = 1,
    ) -> None:
        if chars_per_tick <= 0:
            raise ValueError("chars_per_tick must be > 0")
        self.on_reveal = on_reveal
        self.interval = interval
        self.chars_per_tick = chars_per_tick
        self._text = ""
        self._revealed = 0
        self._timer: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def confirmed_text(self) -> str:
        return self._text

    @property
    def confirmed_length(self) -> int:
        return len(self._text)

    @property
    def revealed_length(self) -> int:
        return self._revealed

    @property
    def visible_text(self) -> str:
        return self._text[: self._revealed]

    @property
    def is_animating(self) -> bool:
        return self._timer is not None

    def push(self, increment: str) -> None:
        if self._closed:
            logger.debug("Ignoring increment pushed to a closed typewriter")
            return
        if not increment:
            return
        self._text += increment
        if self._timer is None:
            self._timer = asyncio.get_running_loop().create_task(self._reveal())

    def finalize(self, full_text: Optional[str] = None) -> str:
        """Show everything now and tear the reveal task down."""
        self._cancel_timer()
        if full_text is not None:
            self._text = full_text
        self._revealed = len(self._text)
        self._emit()
        return self._text

    def close(self) -> None:
        self._cancel_timer()
        self._closed = True

    async def _reveal(self) -> None:
        try:
            while self._revealed < len(self._text):
                await asyncio.sleep(self.interval)
                self._revealed = min(self._revealed + self.chars_per_tick, len(self._text))
                self._emit()
        finally:
            if self._timer is asyncio.current_task():
                self._timer = None

    def _emit(self) -> None:
        if self.on_reveal is not None:
            self.on_reveal(self.visible_text)

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()
