"""Error log backoff for the reconciliation loops."""

import time
from typing import Callable


class ErrorBackoff:
    """
    Suppresses repeated logging of the same error per key.

    A loop that retries every second would otherwise log an identical failure
    every tick. The first occurrence of an error is always logged; repeats of
    the same message are logged only after a window that doubles each time,
    from `min_period` up to `max_period`. A different message, or a success,
    resets the window.
    """

    def __init__(
        self,
        min_period: float = 1.0,
        max_period: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize error backoff.

        Args:
            min_period: Initial suppression window in seconds
            max_period: Upper bound for the suppression window in seconds
            clock: Monotonic time source
        """
        self.min_period = min_period
        self.max_period = max_period
        self._clock = clock
        # Store: {key: (message, last_logged_at, period)}
        self._state: dict[str, tuple[str, float, float]] = {}

    def on_error(self, key: str, error: BaseException, log: Callable[[], None]) -> bool:
        """
        Report an error for `key`, calling `log` if it should be logged.

        Returns:
            True if `log` was called
        """
        message = str(error)
        now = self._clock()
        state = self._state.get(key)

        if state is None or state[0] != message:
            self._state[key] = (message, now, self.min_period)
            should_log = True
        else:
            _, last_logged_at, period = state
            should_log = now - last_logged_at >= period
            if should_log:
                self._state[key] = (message, now, min(period * 2, self.max_period))

        if should_log:
            log()
        return should_log

    def on_success(self, key: str) -> None:
        """Forget error state for `key`."""
        self._state.pop(key, None)
