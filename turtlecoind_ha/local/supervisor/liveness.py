import asyncio
import logging
from typing import Callable, Optional

from .state import LivenessState

log = logging.getLogger(__name__)


class LivenessDebouncer:
    """
    Turns a run of failed health cycles into a single, delayed "down" decision.

    The first failure after at least one success arms a timer of `window`
    seconds. Any success before it fires cancels it. Failures before the
    first success never arm it, so a slow bootstrap is not declared down.
    """

    def __init__(self, state: LivenessState, window: float, on_down: Callable[[], None]) -> None:
        """
        :param state: The LivenessState record owned by the supervisor.
        :param window: Seconds a failure run must last before `on_down` is called.
        :param on_down: Called once when the window elapses without a success.
        """
        self.state = state
        self.window = window
        self.on_down = on_down

    @property
    def armed(self) -> bool:
        return self.state.pending_down_timer is not None

    def record_success(self) -> None:
        if self.state.consecutive_failures:
            log.info(f"Daemon recovered after {self.state.consecutive_failures} failed health check(s).")
        self._cancel_timer()
        self.state.consecutive_failures = 0
        self.state.has_seen_first_success = True
        self.state.down_declared = False

    def record_failure(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.state.consecutive_failures += 1

        if not self.state.has_seen_first_success:
            log.debug("Health check failed before the first success. Not arming the down timer.")
            return
        if self.armed or self.state.down_declared:
            return

        loop = loop or asyncio.get_running_loop()
        log.warning(f"Health check failing. Declaring the daemon down in {self.window:.1f}s unless it recovers.")
        self.state.pending_down_timer = loop.call_later(self.window, self._fire)

    def _fire(self) -> None:
        self.state.pending_down_timer = None
        self.state.down_declared = True
        log.error(f"Daemon failed health checks for {self.window:.1f}s "
                  f"({self.state.consecutive_failures} consecutive failures).")
        self.on_down()

    def _cancel_timer(self) -> None:
        if self.state.pending_down_timer is not None:
            self.state.pending_down_timer.cancel()
            self.state.pending_down_timer = None

    def cancel(self) -> None:
        """Drops any pending down decision without touching the counters."""
        self._cancel_timer()

    def reset(self) -> None:
        """Returns to the pristine state of a freshly started daemon."""
        self._cancel_timer()
        self.state.consecutive_failures = 0
        self.state.has_seen_first_success = False
        self.state.down_declared = False
