import time
from typing import Callable, Optional


class Debouncer:
    """
    Throttle for search boxes that are re-evaluated on every page run.

    A query is only sent once it has been stable for `delay` seconds.
    At most one query is pending: typing something new replaces it.
    Until the pending query is sent the previous results are returned.
    """

    def __init__(self, delay: float, search: Callable[[str], list],
                 clock: Callable[[], float] = time.monotonic):
        self.delay = delay
        self.search = search
        self.clock = clock
        self._pending = ""
        self._pending_since = 0.0
        self._sent: Optional[str] = None
        self._results: list = []

    def query(self, text: str) -> list:
        text = text.strip()
        now = self.clock()
        if text != self._pending:
            self._pending = text
            self._pending_since = now

        if text == self._sent:
            return self._results
        if not text:
            self._sent, self._results = text, []
            return self._results
        if now - self._pending_since >= self.delay:
            self._results = self.search(text)
            self._sent = text
        return self._results

    @property
    def settled(self) -> bool:
        """True once the results belong to the latest typed query."""
        return self._pending == self._sent

    def reset(self):
        self._pending = ""
        self._sent = None
        self._results = []
