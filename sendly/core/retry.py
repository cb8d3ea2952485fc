import random
from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay schedule shared by ledger retries and queue job retries."""

    kind: str = "exponential"
    base_delay_ms: int = 2000
    max_delay_ms: int = 15 * 60 * 1000
    jitter: bool = False

    def delay_ms(self, attempt: int) -> int:
        """Delay before retry number `attempt` (1-based)."""
        if attempt < 1:
            attempt = 1
        if self.kind == "fixed":
            delay = float(self.base_delay_ms)
        else:
            delay = self.base_delay_ms * (2 ** (attempt - 1))
        delay = min(delay, self.max_delay_ms)
        if self.jitter:
            # Spread retries so competing writers do not collide again.
            delay *= 0.5 + random.random() * 0.5
        return int(delay)

    def delay_seconds(self, attempt: int) -> float:
        return self.delay_ms(attempt) / 1000.0
