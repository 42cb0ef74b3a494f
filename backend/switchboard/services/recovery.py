"""
recovery.py – bounded, concurrency-guarded recovery from resource loss.

handle_loss() runs the host's recovery callback at most MAX_ATTEMPTS times
before refusing and asking for a manual reset. Redundant calls that arrive
while an attempt is running are dropped without touching the counter.

reset_application() is the terminal action: wipe local state and start over.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3

RecoveryCallback = Callable[[], Awaitable[Optional[bool]]]


@dataclass(frozen=True)
class RecoveryStatus:
    attempts: int
    max_attempts: int
    can_attempt: bool
    in_progress: bool
    manual_reset_required: bool = False
    exhausted_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "can_attempt": self.can_attempt,
            "in_progress": self.in_progress,
            "manual_reset_required": self.manual_reset_required,
            "exhausted_reason": self.exhausted_reason,
        }


class RecoverySupervisor:
    def __init__(
        self,
        on_recover: RecoveryCallback,
        on_exhausted: Optional[Callable[[str], None]] = None,
        on_reset: Optional[Callable[[], Awaitable[None]]] = None,
        settle_delay: float = 0.0,
        state_dirs: Iterable[str | Path] = (),
    ) -> None:
        self._on_recover = on_recover
        self._on_exhausted = on_exhausted
        self._on_reset = on_reset
        self.settle_delay = settle_delay
        self.state_dirs = [Path(d).expanduser() for d in state_dirs]
        self.max_attempts = MAX_ATTEMPTS
        self._attempts = 0
        self._in_progress = False
        self._exhausted_reason: Optional[str] = None

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def get_status(self) -> RecoveryStatus:
        return RecoveryStatus(
            attempts=self._attempts,
            max_attempts=self.max_attempts,
            can_attempt=self._attempts < self.max_attempts,
            in_progress=self._in_progress,
            manual_reset_required=self._exhausted_reason is not None,
            exhausted_reason=self._exhausted_reason,
        )

    async def handle_loss(self, reason: str) -> bool:
        """Attempt one recovery for *reason*.

        Returns True only when the callback ran and reported success; False when
        the call was skipped (attempt already running), refused (budget spent)
        or the callback failed.
        """
        # No await between the check and the set: on the event loop this pair
        # is atomic. A thread-based caller would need a real lock here.
        if self._in_progress:
            logger.debug("Recovery already in progress; ignoring %s", reason)
            return False
        if self._attempts >= self.max_attempts:
            logger.error(
                "Recovery budget exhausted (%d/%d) for %s: manual reset required",
                self._attempts, self.max_attempts, reason,
            )
            self._exhausted_reason = reason
            if self._on_exhausted is not None:
                try:
                    self._on_exhausted(reason)
                except Exception as exc:
                    logger.warning("on_exhausted hook failed: %s", exc)
            return False
        self._in_progress = True
        self._attempts += 1

        try:
            logger.info(
                "Recovering from %s (attempt %d/%d)", reason, self._attempts, self.max_attempts
            )
            if self.settle_delay > 0:
                await asyncio.sleep(self.settle_delay)
            result = await self._on_recover()
            succeeded = result is not False
        except Exception as exc:
            logger.warning("Recovery attempt %d failed: %s", self._attempts, exc)
            succeeded = False
        finally:
            self._in_progress = False

        if succeeded:
            logger.info("Recovery attempt %d succeeded", self._attempts)
        return succeeded

    def reset_counter(self) -> None:
        if self._attempts:
            logger.info("Recovery counter reset (was %d)", self._attempts)
        self._attempts = 0
        self._exhausted_reason = None

    async def reset_application(self) -> list[str]:
        """Clear local state and run the reset hook. Returns the steps that failed."""
        logger.warning("Resetting application state")
        failed: list[str] = []
        for directory in self.state_dirs:
            if not directory.exists():
                continue
            try:
                await asyncio.to_thread(shutil.rmtree, directory)
                logger.info("Removed %s", directory)
            except OSError as exc:
                logger.warning("Could not remove %s: %s", directory, exc)
                failed.append(str(directory))

        if self._on_reset is not None:
            try:
                await self._on_reset()
            except Exception as exc:
                logger.warning("Reset hook failed: %s", exc)
                failed.append("on_reset")

        self._attempts = 0
        self._exhausted_reason = None
        return failed
