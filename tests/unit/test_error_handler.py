import threading
import unittest

import psycopg2
from psycopg2 import errors as pg_errors

from pgcdc.core.exceptions import ConnectorException, RetriesExhaustedException
from pgcdc.handlers.error_handler import ErrorHandler
from pgcdc.handlers.retry import RetryPolicy
from pgcdc.monitoring.metrics import MetricsCollector
from pgcdc.pipeline.queue import ChangeEventQueue

A_CLASSIFIED_EXCEPTION = "Database connection failed when writing to copy"

class TestErrorHandler(unittest.TestCase):
    def setUp(self):
        self.queue = ChangeEventQueue(max_size=10, poll_interval=0.01)
        self.metrics = MetricsCollector()
        self.error_handler = ErrorHandler(self.queue, self.metrics)

    def test_classified_error_is_retriable(self):
        self.assertTrue(self.error_handler.is_retriable(psycopg2.OperationalError(A_CLASSIFIED_EXCEPTION)))

    def test_null_error_is_not_retriable(self):
        self.assertFalse(self.error_handler.is_retriable(None))

    def test_random_unhandled_error_is_not_retriable(self):
        self.assertFalse(self.error_handler.is_retriable(RuntimeError()))

    def test_classified_error_in_connector_exception_is_retriable(self):
        error = ConnectorException(cause=pg_errors.ConnectionFailure(A_CLASSIFIED_EXCEPTION))
        self.assertTrue(self.error_handler.is_retriable(error))

    def test_retriable_error_does_not_notify_queue(self):
        self.assertTrue(self.error_handler.handle(pg_errors.ConnectionFailure("lost")))
        self.assertIsNone(self.queue.producer_error)
        self.assertEqual(self.queue.poll(timeout=0.05), [])
        self.assertEqual(self.metrics.counter_value('error_handler.retriable', {'type': 'ConnectionFailure'}), 1)

    def test_fatal_error_notifies_queue(self):
        error = ValueError("bad data")
        self.assertFalse(self.error_handler.handle(error))

        self.assertIs(self.error_handler.producer_error, error)
        self.assertIs(self.queue.producer_error, error)
        with self.assertRaises(ConnectorException) as context:
            self.queue.poll(timeout=0.05)
        self.assertIs(context.exception.__cause__, error)

    def test_first_fatal_error_is_kept(self):
        first, second = ValueError("first"), ValueError("second")
        self.error_handler.handle(first)
        self.error_handler.handle(second)
        self.assertIs(self.error_handler.producer_error, first)

class TestRetryPolicy(unittest.TestCase):
    def setUp(self):
        self.queue = ChangeEventQueue(max_size=10, poll_interval=0.01)
        self.shutdown = threading.Event()
        self.metrics = MetricsCollector()
        self.error_handler = ErrorHandler(self.queue, self.metrics)

    def policy(self, **config):
        settings = {'max_retries': 3, 'backoff_ms': 1, 'max_backoff_ms': 4}
        settings.update(config)
        return RetryPolicy(settings, self.error_handler, self.shutdown, self.metrics)

    def test_backoff_is_exponential_and_capped(self):
        policy = self.policy(backoff_ms=1000, max_backoff_ms=5000)
        self.assertEqual([policy.backoff_for(n) for n in range(1, 6)], [1.0, 2.0, 4.0, 5.0, 5.0])

    def test_retries_until_success(self):
        calls = []

        def attempt():
            calls.append(len(calls))
            if len(calls) < 3:
                raise pg_errors.ConnectionFailure("lost")

        self.assertTrue(self.policy().execute(attempt))
        self.assertEqual(len(calls), 3)
        self.assertEqual(self.metrics.counter_value('retry.attempts'), 2)
        self.assertIsNone(self.queue.producer_error)

    def test_fatal_error_is_raised_unchanged(self):
        error = KeyError("schema")

        def attempt():
            raise error

        with self.assertRaises(KeyError) as context:
            self.policy().execute(attempt)
        self.assertIs(context.exception, error)
        self.assertIs(self.queue.producer_error, error)

    def test_gives_up_after_max_retries(self):
        calls = []

        def attempt():
            calls.append(1)
            raise psycopg2.OperationalError(A_CLASSIFIED_EXCEPTION)

        with self.assertRaises(RetriesExhaustedException) as context:
            self.policy(max_retries=2).execute(attempt)

        self.assertEqual(len(calls), 3)
        self.assertIsInstance(context.exception.__cause__, psycopg2.OperationalError)
        self.assertIs(self.queue.producer_error, context.exception)

    def test_each_attempt_starts_from_scratch(self):
        sessions = []

        def attempt():
            session = object()
            sessions.append(session)
            if len(sessions) == 1:
                raise pg_errors.ConnectionFailure("lost")

        self.policy().execute(attempt)
        self.assertEqual(len(sessions), 2)
        self.assertIsNot(sessions[0], sessions[1])

    def test_shutdown_preempts_backoff_wait(self):
        policy = self.policy(backoff_ms=60000, max_backoff_ms=60000)
        timer = threading.Timer(0.05, self.shutdown.set)
        timer.start()

        def attempt():
            raise pg_errors.ConnectionFailure("lost")

        try:
            self.assertFalse(policy.execute(attempt))
        finally:
            timer.cancel()
        self.assertIsNone(self.queue.producer_error)

    def test_errors_during_shutdown_are_not_classified(self):
        def attempt():
            self.shutdown.set()
            raise RuntimeError("socket closed by shutdown")

        self.assertFalse(self.policy().execute(attempt))
        self.assertIsNone(self.queue.producer_error)

if __name__ == '__main__':
    unittest.main()
