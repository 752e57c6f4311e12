"""Deciding when an outbound phone call should hang itself up.

The assistant's own goodbye is not proof the callee is done talking, so a
closing phrase only *arms* a delayed hangup. A genuine caller reply cancels
it; an answering machine or IVR prompt does not.
"""

import asyncio
import os
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from utils import logger

END_CALL_DELAY_SEC = float(os.getenv("END_CALL_DELAY_SEC", "15"))

# Substring markers, matched verbatim against Korean transcripts.
CLOSING_MARKERS = ("안녕히 계세요", "좋은 하루", "감사합니다", "예약 완료")
ARS_MARKERS = ("없는 번호", "연결이 되지", "전화를 받지", "삐")
MIN_MEANINGFUL_LENGTH = 3


def is_closing_phrase(text: Optional[str], markers: Sequence[str] = CLOSING_MARKERS) -> bool:
    if not text:
        return False
    return any(marker in text for marker in markers)


def is_automated_system_utterance(
    text: Optional[str],
    markers: Sequence[str] = ARS_MARKERS,
    min_length: int = MIN_MEANINGFUL_LENGTH,
) -> bool:
    """True for IVR/voicemail prompts and for transcripts too short to be a reply."""
    text = (text or "").strip()
    if len(text) < min_length:
        return True
    return any(marker in text for marker in markers)


@dataclass(frozen=True)
class TerminationPolicy:
    closing_markers: Sequence[str] = CLOSING_MARKERS
    ars_markers: Sequence[str] = ARS_MARKERS
    min_length: int = MIN_MEANINGFUL_LENGTH
    delay_sec: float = END_CALL_DELAY_SEC

    def is_closing_phrase(self, text: Optional[str]) -> bool:
        return is_closing_phrase(text, self.closing_markers)

    def is_automated_system_utterance(self, text: Optional[str]) -> bool:
        return is_automated_system_utterance(text, self.ars_markers, self.min_length)


DEFAULT_POLICY = TerminationPolicy()


class EndCallTimer:
    """At most one pending delayed callback; re-arming replaces, never stacks."""

    def __init__(self, label: str, delay_sec: float = END_CALL_DELAY_SEC):
        self.label = label
        self.delay_sec = delay_sec
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self, callback: Callable[[], Awaitable[None]]) -> None:
        self.cancel()
        logger.info(f"⏱️ [HANGUP] End-call timer armed for {self.label} ({self.delay_sec:.0f}s)")
        self._task = asyncio.create_task(self._run(callback))

    async def _run(self, callback: Callable[[], Awaitable[None]]) -> None:
        try:
            await asyncio.sleep(self.delay_sec)
        except asyncio.CancelledError:
            logger.debug(f"[HANGUP] End-call timer cancelled for {self.label}")
            raise
        # Past the sleep the timer has fired; detach so a cancel() issued from
        # inside the callback does not cancel the callback itself.
        self._task = None
        logger.info(f"📞 [HANGUP] End-call timer fired for {self.label}")
        try:
            await callback()
        except Exception as e:
            logger.error(f"❌ [HANGUP] End-call callback failed for {self.label}: {e}")

    def cancel(self) -> bool:
        """Cancel the pending callback. Returns True if one was pending."""
        task, self._task = self._task, None
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            return False
        task.cancel()
        return True
