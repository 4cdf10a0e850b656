"""
Tests for retry policies

PATTERN RECOGNITION: Operations are plain async functions that fail a set
number of times. Backoff is replaced with zero delay so no test sleeps.
"""

import asyncio
import logging
import socket
import unittest
from unittest.mock import MagicMock

from mailsync.utils.cancellation import CancellationToken
from mailsync.utils.errors import FaultKind, MailFault, OperationCancelledError
from mailsync.utils.resilience import (
    build_policy,
    classify_fault,
    create_mail_connectivity_policy,
    create_standard_policy,
    exponential_backoff,
    mail_connectivity_classifier,
    standard_classifier,
)


class FlakyOperation:
    """Raises the given fault `failures` times, then returns "ok"."""

    def __init__(self, failures: int, fault: Exception):
        self.failures = failures
        self.fault = fault
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.fault
        return "ok"


def _policy(max_retries=3, factory=create_mail_connectivity_policy, **kwargs):
    return factory(MagicMock(spec=logging.Logger), "test op", max_retries, 0.0, **kwargs)


class TestClassifyFault(unittest.TestCase):

    def test_mail_fault_keeps_its_kind(self):
        self.assertIs(classify_fault(MailFault("x", FaultKind.TIMEOUT)), FaultKind.TIMEOUT)

    def test_timeout_is_checked_before_oserror(self):
        self.assertIs(classify_fault(TimeoutError()), FaultKind.TIMEOUT)
        self.assertIs(classify_fault(socket.timeout()), FaultKind.TIMEOUT)

    def test_oserror_is_transient(self):
        self.assertIs(classify_fault(ConnectionResetError()), FaultKind.TRANSIENT_IO)

    def test_cancellation(self):
        self.assertIs(classify_fault(OperationCancelledError()), FaultKind.CANCELLED)

    def test_everything_else_is_fatal(self):
        self.assertIs(classify_fault(ValueError("bad")), FaultKind.FATAL)


class TestClassifiers(unittest.TestCase):

    def test_connectivity_profile(self):
        self.assertTrue(mail_connectivity_classifier(FaultKind.TRANSIENT_IO))
        self.assertTrue(mail_connectivity_classifier(FaultKind.TIMEOUT))
        self.assertFalse(mail_connectivity_classifier(FaultKind.CANCELLED))
        self.assertFalse(mail_connectivity_classifier(FaultKind.FATAL))

    def test_standard_profile_retries_unrequested_cancellation(self):
        token = CancellationToken()
        self.assertTrue(standard_classifier(FaultKind.CANCELLED, token))
        token.cancel()
        self.assertFalse(standard_classifier(FaultKind.CANCELLED, token))
        self.assertFalse(standard_classifier(FaultKind.FATAL, None))


class TestBackoff(unittest.TestCase):

    def test_exponential_delays(self):
        backoff = exponential_backoff(1.0)
        self.assertEqual([backoff(1), backoff(2), backoff(3)], [2.0, 4.0, 8.0])


class TestBuildPolicy(unittest.TestCase):
    """Construction validates its inputs before any operation runs"""

    def test_missing_logger(self):
        with self.assertRaises(ValueError):
            create_mail_connectivity_policy(None, "connect")

    def test_blank_operation_name(self):
        with self.assertRaises(ValueError):
            create_standard_policy(logging.getLogger("t"), "   ")

    def test_negative_retries(self):
        with self.assertRaises(ValueError):
            build_policy(logging.getLogger("t"), "op", -1, standard_classifier)


class TestRetryPolicyExecute(unittest.IsolatedAsyncioTestCase):

    async def test_retryable_fault_n_times_then_success(self):
        for n in (0, 1, 3):
            operation = FlakyOperation(n, MailFault("drop", FaultKind.TRANSIENT_IO))
            result = await _policy(max_retries=n).execute(operation)
            self.assertEqual(result, "ok")
            self.assertEqual(operation.calls, n + 1)

    async def test_non_retryable_fault_propagates_immediately(self):
        operation = FlakyOperation(5, MailFault("rejected", FaultKind.FATAL))
        with self.assertRaises(MailFault):
            await _policy().execute(operation)
        self.assertEqual(operation.calls, 1)

    async def test_retries_exhausted_reraises_last_fault(self):
        operation = FlakyOperation(10, TimeoutError("slow"))
        policy = _policy(max_retries=2)
        with self.assertRaises(TimeoutError):
            await policy.execute(operation)
        self.assertEqual(operation.calls, 3)
        self.assertEqual(policy.logger.warning.call_count, 2)
        policy.logger.error.assert_called_once()

    async def test_on_retry_listener_is_notified(self):
        listener = MagicMock()
        operation = FlakyOperation(2, ConnectionResetError())
        await _policy(on_retry=listener).execute(operation)
        self.assertEqual(listener.call_count, 2)
        self.assertEqual(listener.call_args_list[0].args[0], 1)

    async def test_cancelled_token_stops_retrying(self):
        token = CancellationToken()

        async def operation():
            token.cancel()
            raise ConnectionResetError("drop")

        with self.assertRaises(OperationCancelledError) as caught:
            await _policy(max_retries=5).execute(operation, token)
        self.assertIsInstance(caught.exception.__cause__, ConnectionResetError)

    async def test_cancel_during_backoff_wakes_immediately(self):
        token = CancellationToken()
        operation = FlakyOperation(10, ConnectionResetError("drop"))
        policy = create_mail_connectivity_policy(MagicMock(spec=logging.Logger), "test op", 3, 5.0)

        loop = asyncio.get_running_loop()
        loop.call_later(0.05, token.cancel)
        started = loop.time()
        with self.assertRaises(OperationCancelledError):
            await policy.execute(operation, token)

        self.assertLess(loop.time() - started, 1.0)
        self.assertEqual(operation.calls, 1)
        self.assertEqual(token._waiters, [])

    async def test_connectivity_policy_does_not_retry_cancellation(self):
        operation = FlakyOperation(1, OperationCancelledError())
        with self.assertRaises(OperationCancelledError):
            await _policy().execute(operation)
        self.assertEqual(operation.calls, 1)

    async def test_standard_policy_retries_spurious_cancellation(self):
        operation = FlakyOperation(1, OperationCancelledError())
        result = await _policy(factory=create_standard_policy).execute(operation, CancellationToken())
        self.assertEqual(result, "ok")
        self.assertEqual(operation.calls, 2)


if __name__ == "__main__":
    unittest.main()
