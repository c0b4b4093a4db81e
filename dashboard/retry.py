"""
Declarative retry policies for queries and mutations.

A policy is plain data: which statuses are non-retryable, which are carved
out of that range, how many attempts, and the backoff curve. Policies can
be logged, compared and serialized; tenacity runs the actual loop.
"""
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from dashboard.errors import RequestError

logger = logging.getLogger("retry")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Immutable retry configuration for one call-site category.

    Attempt numbers passed to delay_for_attempt are zero-based: the delay
    before the first retry is delay_for_attempt(0).
    """
    name: str
    max_attempts: int
    non_retryable_status_ranges: Tuple[Tuple[int, int], ...] = ((400, 499),)
    retryable_status_exceptions: FrozenSet[int] = frozenset({408, 429})
    base_delay_ms: int = 1000
    exponential_base: float = 2.0
    max_delay_ms: int = 30000

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"Policy {self.name}: max_attempts must be at least 1")

    def is_retryable(self, error: BaseException) -> bool:
        """
        Classify an error.

        HTTP errors inside a non-retryable range are final unless carved out
        (408 Request Timeout, 429 Too Many Requests). Network, timeout and
        decode failures and 5xx responses are retryable.
        """
        if not isinstance(error, RequestError):
            return False
        status = error.status
        if status is None:
            return True
        if status in self.retryable_status_exceptions:
            return True
        for low, high in self.non_retryable_status_ranges:
            if low <= status <= high:
                return False
        return True

    def delay_for_attempt(self, attempt: int) -> float:
        """Backoff in seconds: min(base * 2^attempt, max)."""
        delay_ms = min(self.base_delay_ms * (self.exponential_base ** attempt), self.max_delay_ms)
        return delay_ms / 1000.0

    def wait_strategy(self) -> wait_exponential:
        """The same backoff curve as a tenacity wait."""
        return wait_exponential(
            multiplier=self.base_delay_ms / 1000.0,
            exp_base=self.exponential_base,
            max=self.max_delay_ms / 1000.0,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["non_retryable_status_ranges"] = [list(r) for r in self.non_retryable_status_ranges]
        data["retryable_status_exceptions"] = sorted(self.retryable_status_exceptions)
        return data


# Three retries after the first failure
QUERY_RETRY_POLICY = RetryPolicy(name="query", max_attempts=4)

# One retry: a state-changing call may already have been applied
MUTATION_RETRY_POLICY = RetryPolicy(name="mutation", max_attempts=2)


def run_with_retry(
    fn: Callable[[], Any],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    label: Optional[str] = None,
    on_attempt: Optional[Callable[[int], None]] = None,
) -> Any:
    """
    Call fn until it succeeds, fails with a non-retryable error, or the
    policy's attempt budget runs out. The last error is re-raised as-is.

    Args:
        fn: Zero-argument callable doing the actual work
        policy: Retry policy to apply
        sleep: Injected for tests
        label: Name used in log messages
        on_attempt: Called with the 1-based attempt number before each try
    """
    label = label or policy.name

    def before(retry_state: RetryCallState) -> None:
        if on_attempt is not None:
            on_attempt(retry_state.attempt_number)

    def before_sleep(retry_state: RetryCallState) -> None:
        logger.info(
            f"{label}: attempt {retry_state.attempt_number}/{policy.max_attempts} failed "
            f"({retry_state.outcome.exception()}), retrying in {retry_state.next_action.sleep:.1f}s"
        )

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait_strategy(),
        retry=retry_if_exception(policy.is_retryable),
        sleep=sleep,
        before=before,
        before_sleep=before_sleep,
        reraise=True,
    )
    return retrying(fn)
