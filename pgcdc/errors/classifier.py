import logging
import re
from typing import Iterable, Iterator, Optional

import psycopg2
from psycopg2 import errors as pg_errors

from ..core.exceptions import RetriableException

logger = logging.getLogger(__name__)

CONNECTION_EXCEPTION_CLASS = '08'

# SQLSTATEs outside class 08 that still mean the server went away under us.
RETRIABLE_SQLSTATES = frozenset([
    '57P01',  # admin_shutdown
    '57P02',  # crash_shutdown
    '57P03',  # cannot_connect_now
])

CONNECTION_ERROR_TYPES = (
    pg_errors.ConnectionException,
    pg_errors.SqlclientUnableToEstablishSqlconnection,
    pg_errors.ConnectionDoesNotExist,
    pg_errors.SqlserverRejectedEstablishmentOfSqlconnection,
    pg_errors.ConnectionFailure,
    pg_errors.TransactionResolutionUnknown,
    pg_errors.AdminShutdown,
    pg_errors.CrashShutdown,
    pg_errors.CannotConnectNow,
)

DEFAULT_MESSAGE_PATTERNS = (
    r'Database connection failed when writing to copy',
    r'Database connection failed when reading from copy',
    r'terminating connection due to administrator command',
    r'server closed the connection unexpectedly',
    r'could not receive data from server',
    r'connection already closed',
    r'SSL SYSCALL error',
)


def iter_causal_chain(exc: Optional[BaseException]) -> Iterator[BaseException]:
    """Yield ``exc`` and every exception reachable through its causes.

    Explicit causes are visited before implicit context. Each exception
    instance is yielded at most once, so self-referencing chains terminate.
    """
    if exc is None:
        return

    stack = [exc]
    seen = set()

    while stack:
        current = stack.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current

        context = current.__context__
        if context is not None and not current.__suppress_context__:
            stack.append(context)
        if current.__cause__ is not None:
            stack.append(current.__cause__)


class ExceptionClassifier:
    def __init__(self, extra_patterns: Optional[Iterable[str]] = None):
        patterns = list(DEFAULT_MESSAGE_PATTERNS) + list(extra_patterns or [])
        self._message_pattern = re.compile('|'.join(f'(?:{p})' for p in patterns))

    def is_classified(self, exc: Optional[BaseException]) -> bool:
        for node in iter_causal_chain(exc):
            if self.matches(node):
                logger.debug(f"Classified {type(node).__name__} as transient connection failure")
                return True
        return False

    def matches(self, exc: BaseException) -> bool:
        if isinstance(exc, RetriableException):
            return True

        if not isinstance(exc, psycopg2.Error):
            return False

        if isinstance(exc, CONNECTION_ERROR_TYPES):
            return True

        pgcode = getattr(exc, 'pgcode', None)
        if pgcode and (pgcode.startswith(CONNECTION_EXCEPTION_CLASS) or pgcode in RETRIABLE_SQLSTATES):
            return True

        if isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError)):
            return bool(self._message_pattern.search(str(exc)))

        return False
