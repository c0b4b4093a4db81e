"""
Mutation Executor: state-changing calls with a conservative retry budget.

Mutations get at most one retry because a repeated call may repeat a side
effect. Terminal failures are reported to an observability sink and then
re-raised; they are never swallowed.
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Sequence

from dashboard.cache.query import KeyLike, QueryCacheCoordinator
from dashboard.retry import MUTATION_RETRY_POLICY, RetryPolicy, run_with_retry

logger = logging.getLogger("mutation")


class ErrorSink(Protocol):
    """Where terminal mutation failures are reported."""

    def report(self, error: BaseException, context: Dict[str, Any]) -> None:
        ...


class LoggingErrorSink:
    """Default sink: one ERROR record per failed mutation."""

    def __init__(self, logger_name: str = "mutation.errors"):
        self._logger = logging.getLogger(logger_name)

    def report(self, error: BaseException, context: Dict[str, Any]) -> None:
        details = getattr(error, "to_dict", None)
        payload = details() if details else {"message": str(error)}
        self._logger.error(f"Mutation error: {context.get('name', 'mutation')} {payload} {context}")


class MutationExecutor:
    """
    Runs mutation callables with the mutation retry policy and applies
    the declared query invalidations once, after success.

    Usage:
        executor = MutationExecutor(coordinator)
        executor.mutate(
            lambda: gateway.send("/labor/7/clock-in", "POST"),
            invalidates=[("labor",)],
            name="clock-in",
        )
    """

    def __init__(
        self,
        coordinator: Optional[QueryCacheCoordinator] = None,
        sink: Optional[ErrorSink] = None,
        retry_policy: RetryPolicy = MUTATION_RETRY_POLICY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._coordinator = coordinator
        self._sink = sink or LoggingErrorSink()
        self.retry_policy = retry_policy
        self._sleep = sleep
        self._lock = threading.Lock()
        self._stats = {
            "succeeded": 0,
            "failed": 0,
            "retried": 0,
        }

    def mutate(
        self,
        fn: Callable[[], Any],
        invalidates: Sequence[KeyLike] = (),
        name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Run fn with at most one retry.

        Args:
            fn: Zero-argument callable performing the mutation
            invalidates: Query key prefixes to mark stale after success
            name: Label for logs and error reports
            context: Extra fields attached to an error report

        Returns:
            fn's result from the successful attempt

        Raises:
            Exception: The last error, after it has been reported
        """
        label = name or getattr(fn, "__name__", "mutation")
        attempts = []

        try:
            result = run_with_retry(
                fn,
                self.retry_policy,
                sleep=self._sleep,
                label=f"mutation {label}",
                on_attempt=attempts.append,
            )
        except Exception as e:
            with self._lock:
                self._stats["failed"] += 1
                if len(attempts) > 1:
                    self._stats["retried"] += 1
            report_context = {"name": label, "attempts": len(attempts)}
            if context:
                report_context.update(context)
            self._report(e, report_context)
            raise

        with self._lock:
            self._stats["succeeded"] += 1
            if len(attempts) > 1:
                self._stats["retried"] += 1

        if self._coordinator is not None:
            for prefix in invalidates:
                self._coordinator.invalidate(prefix)

        logger.info(f"Mutation {label} succeeded after {len(attempts)} attempt(s)")
        return result

    def _report(self, error: BaseException, context: Dict[str, Any]) -> None:
        try:
            self._sink.report(error, context)
        except Exception as sink_error:
            # The original error still propagates
            logger.error(f"Error sink failed while reporting {context.get('name')}: {sink_error}")

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {**self._stats, "policy": self.retry_policy.to_dict()}
