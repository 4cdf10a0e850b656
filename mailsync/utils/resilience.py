"""
Resilience Module
Retry policies that separate transient network faults from fatal errors

PATTERN RECOGNITION: This is an exponential-backoff retry wrapper, the same
idea as a rate-limit decorator, except that the decision to retry is made by
a predicate over a normalized FaultKind instead of by exception type. The
protocol layer translates library exceptions into MailFault at its boundary,
so nothing here depends on imaplib or ssl.

MAINTENANCE WISDOM: Policies are built once (fail-fast validation of the
logger and operation name) and then reused for every call.
"""

import asyncio
import concurrent.futures
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, FrozenSet, Optional, TypeVar

from .cancellation import CancellationToken
from .errors import FaultKind, MailFault, OperationCancelledError


T = TypeVar("T")

# (kind, token) -> should we try again?
FaultClassifier = Callable[[FaultKind, Optional[CancellationToken]], bool]
# attempt number (1-based) -> seconds to wait
BackoffStrategy = Callable[[int], float]
# (attempt, fault) -> None, called before each retry wait
RetryListener = Callable[[int, BaseException], None]


def classify_fault(exc: BaseException) -> FaultKind:
    """
    Translate an exception into a FaultKind.

    Args:
        exc: Exception raised by an operation

    Returns:
        The normalized fault category
    """
    if isinstance(exc, MailFault):
        return exc.kind
    if isinstance(exc, (OperationCancelledError, concurrent.futures.CancelledError)):
        return FaultKind.CANCELLED
    # TimeoutError must be checked before OSError (it is a subclass)
    if isinstance(exc, TimeoutError):
        return FaultKind.TIMEOUT
    if isinstance(exc, OSError):
        return FaultKind.TRANSIENT_IO
    return FaultKind.FATAL


def exponential_backoff(base_delay: float) -> BackoffStrategy:
    """Delay of base_delay * 2**attempt seconds"""
    return lambda attempt: base_delay * (2 ** attempt)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Executable retry policy

    Attributes:
        operation_name: Name used in log messages
        max_retries: Retries after the first attempt (0 = try once)
        should_retry: Classifier deciding which faults are retried
        backoff: Wait between attempts
        logger: Logger receiving retry warnings and exhaustion errors
        on_retry: Optional listener notified before each retry
    """
    operation_name: str
    max_retries: int
    should_retry: FaultClassifier
    backoff: BackoffStrategy
    logger: logging.Logger
    on_retry: Optional[RetryListener] = None

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        token: Optional[CancellationToken] = None,
    ) -> T:
        """
        Run operation, retrying classified-transient faults

        Args:
            operation: Zero-argument callable returning an awaitable
            token: Optional cancellation token; once cancelled no new
                attempt is started

        Returns:
            Result of the first successful attempt

        Raises:
            The last fault when retries are exhausted, or any fault the
            classifier rejects (immediately, without retrying)
            OperationCancelledError: If the token is cancelled before or
                during a backoff wait (the fault is chained as __cause__)
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                kind = classify_fault(exc)
                if not self.should_retry(kind, token):
                    raise

                if attempt >= self.max_retries:
                    self.logger.error(
                        "%s failed after %d attempt(s): %s",
                        self.operation_name,
                        attempt + 1,
                        exc,
                    )
                    raise

                attempt += 1
                delay = self.backoff(attempt)
                self.logger.warning(
                    "Retry %d/%d for %s after %.2f seconds (%s: %s)",
                    attempt,
                    self.max_retries,
                    self.operation_name,
                    delay,
                    kind.value,
                    exc,
                )
                if self.on_retry is not None:
                    self.on_retry(attempt, exc)
                try:
                    await _wait_before_retry(delay, token)
                except OperationCancelledError as cancelled:
                    self.logger.info(
                        "Cancellation requested; abandoning retries for %s",
                        self.operation_name,
                    )
                    raise cancelled from exc


async def _wait_before_retry(delay: float, token: Optional[CancellationToken]) -> None:
    """Sleep for delay seconds, waking early when the token is cancelled"""
    if token is None:
        if delay > 0:
            await asyncio.sleep(delay)
        return

    token.raise_if_cancelled()
    if delay > 0:
        sleeper = asyncio.ensure_future(asyncio.sleep(delay))
        canceller = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            canceller.cancel()
    token.raise_if_cancelled()


def build_policy(
    logger: Optional[logging.Logger],
    operation_name: str,
    max_retries: int,
    should_retry: FaultClassifier,
    backoff: Optional[BackoffStrategy] = None,
    on_retry: Optional[RetryListener] = None,
) -> RetryPolicy:
    """
    Build a retry policy, validating its configuration up front

    Raises:
        ValueError: If logger is missing, operation_name is blank or
            max_retries is negative
    """
    if logger is None:
        raise ValueError("logger is required")
    if not operation_name or not operation_name.strip():
        raise ValueError("operation_name must not be empty")
    if max_retries < 0:
        raise ValueError(f"max_retries must be >= 0, got {max_retries}")

    return RetryPolicy(
        operation_name=operation_name,
        max_retries=max_retries,
        should_retry=should_retry,
        backoff=backoff or exponential_backoff(1.0),
        logger=logger,
        on_retry=on_retry,
    )


MAIL_CONNECTIVITY_FAULTS: FrozenSet[FaultKind] = frozenset(
    {FaultKind.TRANSIENT_IO, FaultKind.TIMEOUT}
)


def mail_connectivity_classifier(
    kind: FaultKind, token: Optional[CancellationToken] = None
) -> bool:
    """Retry socket/handshake failures and timeouts only"""
    return kind in MAIL_CONNECTIVITY_FAULTS


def standard_classifier(
    kind: FaultKind, token: Optional[CancellationToken] = None
) -> bool:
    """Retry I/O failures, timeouts and cancellations the caller did not ask for"""
    if kind in MAIL_CONNECTIVITY_FAULTS:
        return True
    if kind is FaultKind.CANCELLED:
        return token is None or not token.cancelled
    return False


def create_mail_connectivity_policy(
    logger: Optional[logging.Logger],
    operation_name: str,
    max_retries: int = 3,
    base_delay: float = 1.0,
    on_retry: Optional[RetryListener] = None,
) -> RetryPolicy:
    """Policy for connect/login: waits 2, 4, 8... seconds with base_delay=1"""
    return build_policy(
        logger,
        operation_name,
        max_retries,
        mail_connectivity_classifier,
        exponential_backoff(base_delay),
        on_retry,
    )


def create_standard_policy(
    logger: Optional[logging.Logger],
    operation_name: str,
    max_retries: int = 3,
    base_delay: float = 0.25,
    on_retry: Optional[RetryListener] = None,
) -> RetryPolicy:
    """Policy for individual fetches: waits 0.5, 1, 2... seconds with base_delay=0.25"""
    return build_policy(
        logger,
        operation_name,
        max_retries,
        standard_classifier,
        exponential_backoff(base_delay),
        on_retry,
    )
