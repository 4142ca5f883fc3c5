"""
Ephemeral typing signals.

Nothing here is persisted. The sender side debounces keystrokes into
true/false edges, the receiver side expires indicators that were never
cleared.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from app.core.config import settings
from app.services.realtime import RealtimeHub, hub as default_hub, typing_topic

logger = logging.getLogger(__name__)


class TypingSignaler:
    """Fire-and-forget publisher for typing edges."""

    def __init__(self, hub: Optional[RealtimeHub] = None):
        self._hub = hub

    async def send_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        try:
            await (self._hub or default_hub).publish(
                typing_topic(conversation_id),
                "typing",
                {"conversation_id": conversation_id, "user_id": user_id, "is_typing": is_typing},
            )
        except Exception as e:
            logger.debug(f"Typing signal dropped for {conversation_id}: {e}")


class TypingDebouncer:
    """
    Client-side contract for emitting typing edges.

    `keystroke()` emits True only on the first keystroke after idle. False is
    emitted once input has been idle for `idle_seconds`, or immediately on
    `sent()`. When an event loop is running the idle check is scheduled
    automatically; otherwise call `tick()`.
    """

    def __init__(
        self,
        emit: Callable[[bool], Any],
        idle_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._emit = emit
        self.idle_seconds = idle_seconds if idle_seconds is not None else settings.TYPING_IDLE_SECONDS
        self._clock = clock
        self._typing = False
        self._last_keystroke = 0.0
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def is_typing(self) -> bool:
        return self._typing

    def keystroke(self) -> None:
        self._last_keystroke = self._clock()
        if not self._typing:
            self._typing = True
            self._emit(True)
        self._schedule_idle_check()

    def tick(self) -> None:
        if not self._typing:
            return
        remaining = self.idle_seconds - (self._clock() - self._last_keystroke)
        if remaining <= 0:
            self._stop()
        else:
            self._schedule_idle_check(remaining)

    def sent(self) -> None:
        if self._typing:
            self._stop()

    def _stop(self) -> None:
        self._typing = False
        self._cancel_idle_check()
        self._emit(False)

    def _schedule_idle_check(self, delay: Optional[float] = None) -> None:
        self._cancel_idle_check()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._handle = loop.call_later(self.idle_seconds if delay is None else delay, self.tick)

    def _cancel_idle_check(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class TypingIndicators:
    """Receiver-side map of who is typing, with a TTL per indicator."""

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.TYPING_TTL_SECONDS
        self._clock = clock
        # user_id -> time the last True was received
        self._active: Dict[str, float] = {}

    def apply(self, user_id: str, is_typing: bool) -> None:
        if is_typing:
            self._active[user_id] = self._clock()
        else:
            self._active.pop(user_id, None)

    def apply_event(self, event: Dict[str, Any]) -> None:
        data = event.get("data", event)
        self.apply(data["user_id"], bool(data["is_typing"]))

    def active(self) -> List[str]:
        now = self._clock()
        expired = [user_id for user_id, at in self._active.items() if now - at > self.ttl_seconds]
        for user_id in expired:
            del self._active[user_id]
        return sorted(self._active)

    def is_typing(self, user_id: str) -> bool:
        return user_id in self.active()
