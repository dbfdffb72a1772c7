"""Counter metrics for handler outcomes and failures.

Counter names follow a dotted scheme:
- <surface>.<action> for successful operations (slack.assigned)
- errors.<surface>.<action> for failures (errors.search.index)
"""

import logging
from collections import Counter

logger = logging.getLogger(__name__)


class Metrics:
    """In-process counter registry, passed explicitly to every component."""

    def __init__(self, prefix: str = "slacker"):
        self._prefix = prefix
        self._counters: Counter[str] = Counter()

    def increment(self, name: str, value: int = 1) -> None:
        self._counters[name] += value
        logger.debug(f"[METRIC] {self._prefix}.{name} += {value}")

    def get(self, name: str) -> int:
        return self._counters[name]

    def snapshot(self) -> dict[str, int]:
        """Copy of every counter recorded so far."""
        return dict(self._counters)
