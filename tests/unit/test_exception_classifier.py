import unittest

import psycopg2
from psycopg2 import errors as pg_errors

from pgcdc.core.exceptions import ConnectionException, ConnectorException
from pgcdc.errors.classifier import ExceptionClassifier, iter_causal_chain

A_CLASSIFIED_EXCEPTION = "Database connection failed when writing to copy"

def wrap(outer: BaseException, inner: BaseException) -> BaseException:
    outer.__cause__ = inner
    return outer

class TestExceptionClassifier(unittest.TestCase):
    def setUp(self):
        self.classifier = ExceptionClassifier()

    def test_none_is_not_classified(self):
        self.assertFalse(self.classifier.is_classified(None))

    def test_plain_runtime_error_is_not_classified(self):
        self.assertFalse(self.classifier.is_classified(RuntimeError()))

    def test_null_reference_error_is_not_classified(self):
        self.assertFalse(self.classifier.is_classified(AttributeError("'NoneType' object has no attribute 'x'")))

    def test_connection_failure_state_is_classified(self):
        self.assertTrue(self.classifier.is_classified(pg_errors.ConnectionFailure(A_CLASSIFIED_EXCEPTION)))

    def test_admin_shutdown_is_classified(self):
        self.assertTrue(self.classifier.is_classified(
            pg_errors.AdminShutdown("terminating connection due to administrator command")
        ))

    def test_copy_failure_message_is_classified(self):
        self.assertTrue(self.classifier.is_classified(psycopg2.OperationalError(A_CLASSIFIED_EXCEPTION)))

    def test_severed_connection_message_is_classified(self):
        error = psycopg2.InterfaceError("connection already closed")
        self.assertTrue(self.classifier.is_classified(error))

    def test_unrelated_structured_error_is_not_classified(self):
        self.assertFalse(self.classifier.is_classified(pg_errors.UniqueViolation("duplicate key value")))

    def test_message_pattern_requires_client_error_type(self):
        self.assertFalse(self.classifier.is_classified(RuntimeError(A_CLASSIFIED_EXCEPTION)))

    def test_classified_error_wrapped_once_is_classified(self):
        error = wrap(ValueError(), pg_errors.ConnectionFailure("definitely not a postgres error"))
        self.assertTrue(self.classifier.is_classified(error))

    def test_classified_error_wrapped_twice_is_classified(self):
        error = wrap(RuntimeError("outer"), wrap(ValueError("middle"), pg_errors.ConnectionFailure("inner")))
        self.assertTrue(self.classifier.is_classified(error))

    def test_classified_error_in_connector_exception_is_classified(self):
        error = ConnectorException(cause=psycopg2.OperationalError(A_CLASSIFIED_EXCEPTION))
        self.assertTrue(self.classifier.is_classified(error))

    def test_connector_exception_without_cause_is_not_classified(self):
        self.assertFalse(self.classifier.is_classified(ConnectorException("boom")))

    def test_explicit_connection_exception_is_classified(self):
        self.assertTrue(self.classifier.is_classified(ConnectionException("Replication connection is not open")))

    def test_implicit_context_is_followed(self):
        try:
            try:
                raise pg_errors.ConnectionFailure("lost")
            except psycopg2.Error:
                raise KeyError("while handling")
        except KeyError as e:
            error = e
        self.assertTrue(self.classifier.is_classified(error))

    def test_suppressed_context_is_not_followed(self):
        try:
            try:
                raise pg_errors.ConnectionFailure("lost")
            except psycopg2.Error:
                raise KeyError("replaced") from None
        except KeyError as e:
            error = e
        self.assertFalse(self.classifier.is_classified(error))

    def test_cyclic_chain_terminates(self):
        first = ValueError("first")
        second = ValueError("second")
        first.__cause__ = second
        second.__cause__ = first
        self.assertFalse(self.classifier.is_classified(first))

    def test_self_referencing_error_terminates(self):
        error = RuntimeError("self")
        error.__cause__ = error
        self.assertFalse(self.classifier.is_classified(error))

    def test_extra_patterns(self):
        classifier = ExceptionClassifier(extra_patterns=[r'replication slot .* is active'])
        error = psycopg2.OperationalError('replication slot "pgcdc" is active for PID 42')
        self.assertTrue(classifier.is_classified(error))
        self.assertFalse(self.classifier.is_classified(error))

    def test_causal_chain_order(self):
        root = KeyError("root")
        middle = wrap(ValueError("middle"), root)
        top = wrap(RuntimeError("top"), middle)
        self.assertEqual(list(iter_causal_chain(top)), [top, middle, root])

if __name__ == '__main__':
    unittest.main()
