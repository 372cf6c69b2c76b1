"""
Retry policy configuration for task execution.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates retry behavior, allowing different backoff strategies
without modifying the engine loop that consults it.

Design Rationale:
- Safe default: no automatic retries
- Simple retry: max_attempts=3 with standard exponential backoff
- Advanced control: custom RetryPolicy with a fixed, linear or exponential strategy
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, cast


class BackoffStrategy(Enum):
    """How the delay between attempts grows."""

    FIXED = "fixed"
    """Every retry waits initial_delay_ms."""

    LINEAR = "linear"
    """Retry n waits initial_delay_ms * n."""

    EXPONENTIAL = "exponential"
    """Retry n waits initial_delay_ms * backoff_multiplier^(n-1)."""

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for task retry behavior.

    Controls how many times a task handler is attempted after a fault and
    the backoff between attempts. A retried task stays PENDING: it is put
    back on the queue with its attempt counter incremented and a
    ``scheduled_for`` timestamp in the future.

    Examples:
        # Simple: just specify max attempts (uses standard delays)
        policy = RetryPolicy.with_max_attempts(3)

        # Named policy: predefined sensible defaults
        policy = RetryPolicy.STANDARD

        # Custom policy: full control
        policy = RetryPolicy(
            max_attempts=5,
            initial_delay_ms=200,
            max_delay_ms=5000,
            strategy=BackoffStrategy.LINEAR,
        )
    """

    max_attempts: int = 1
    """Maximum number of attempts (including the first try).

    For example, max_attempts = 3 means:
    - Attempt 1: immediate (first try)
    - Attempt 2: after delay_for_attempt(1)
    - Attempt 3: after delay_for_attempt(2)

    Default: 1 (no retries)
    """

    initial_delay_ms: int = 1000
    """Base delay before the first retry in milliseconds.

    Default: 1000 (1 second)
    """

    max_delay_ms: int = 30000
    """Maximum delay between retries in milliseconds (caps every strategy).

    Default: 30000 (30 seconds)
    """

    backoff_multiplier: float = 2.0
    """Multiplier for exponential backoff.

    Only used by BackoffStrategy.EXPONENTIAL.

    Default: 2.0 (doubles each time)
    """

    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    """Backoff strategy. Default: exponential."""

    # =========================================================================
    # Predefined Policies
    # =========================================================================

    if TYPE_CHECKING:
        NONE: RetryPolicy
        STANDARD: RetryPolicy
        AGGRESSIVE: RetryPolicy
    else:
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)
        AGGRESSIVE = cast("RetryPolicy", None)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must not be negative")

    @classmethod
    def with_max_attempts(cls, max_attempts: int) -> RetryPolicy:
        """
        Create a policy with custom max_attempts (uses standard delays).

        Args:
            max_attempts: Maximum number of attempts

        Returns:
            RetryPolicy with standard exponential delays

        Example:
            policy = RetryPolicy.with_max_attempts(5)
        """
        return cls(
            max_attempts=max_attempts,
            initial_delay_ms=1000,
            max_delay_ms=30000,
            backoff_multiplier=2.0,
        )

    @classmethod
    def from_dict(cls, data: dict) -> RetryPolicy:
        """Build a policy from a plain mapping (workflow definition files)."""
        strategy = data.get("backoff", data.get("strategy", BackoffStrategy.EXPONENTIAL.value))
        return cls(
            max_attempts=int(data.get("max_attempts", 1)),
            initial_delay_ms=int(data.get("initial_delay_ms", 1000)),
            max_delay_ms=int(data.get("max_delay_ms", 30000)),
            backoff_multiplier=float(data.get("backoff_multiplier", 2.0)),
            strategy=BackoffStrategy(strategy),
        )

    def to_dict(self) -> dict:
        return {
            "max_attempts": self.max_attempts,
            "initial_delay_ms": self.initial_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "backoff_multiplier": self.backoff_multiplier,
            "backoff": self.strategy.value,
        }

    def delay_for_attempt(self, attempt: int) -> int | None:
        """
        Calculate the delay before the next retry attempt.

        Args:
            attempt: The attempt that just failed (1-indexed)

        Returns:
            Delay in milliseconds before the next retry, or None if no more retries.

        Example:
            policy = RetryPolicy.STANDARD
            delay1 = policy.delay_for_attempt(1)  # Returns 1000 (1s)
            delay2 = policy.delay_for_attempt(2)  # Returns 2000 (2s)
            delay3 = policy.delay_for_attempt(3)  # Returns None (max attempts)
        """
        if attempt >= self.max_attempts:
            return None

        if self.strategy is BackoffStrategy.FIXED:
            delay_ms = float(self.initial_delay_ms)
        elif self.strategy is BackoffStrategy.LINEAR:
            delay_ms = float(self.initial_delay_ms * attempt)
        else:
            # attempt=1 (first retry): multiplier^0 = 1 → initial_delay
            delay_ms = self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1)

        return int(min(delay_ms, self.max_delay_ms))

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"initial_delay_ms={self.initial_delay_ms}, "
            f"max_delay_ms={self.max_delay_ms}, "
            f"backoff_multiplier={self.backoff_multiplier}, "
            f"strategy={self.strategy})"
        )


RetryPolicy.NONE = RetryPolicy(
    max_attempts=1, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0
)

RetryPolicy.STANDARD = RetryPolicy(
    max_attempts=3,
    initial_delay_ms=1000,  # 1 second
    max_delay_ms=30000,  # 30 seconds
    backoff_multiplier=2.0,
)

RetryPolicy.AGGRESSIVE = RetryPolicy(
    max_attempts=10,
    initial_delay_ms=100,  # 100 milliseconds
    max_delay_ms=10000,  # 10 seconds
    backoff_multiplier=1.5,
)


# =============================================================================
# RetryableError - Fine-grained error retry control
# =============================================================================


class RetryableError(Exception):
    """
    Base class for handler errors that can say whether they should be retried.

    Example:
        class PaymentError(RetryableError):
            def __init__(self, message: str, is_retryable: bool = True):
                super().__init__(message)
                self._retryable = is_retryable

            def is_retryable(self) -> bool:
                return self._retryable

        # Transient error - consumes a retry attempt
        raise PaymentError("Network timeout", is_retryable=True)

        # Permanent error - fails the run immediately
        raise PaymentError("Insufficient funds", is_retryable=False)
    """

    def is_retryable(self) -> bool:
        """
        Returns True if this error is transient and the task should be retried.

        Returns:
            True if retryable, False if permanent
        """
        return True
