import logging
import select
from dataclasses import dataclass
from typing import Any, Dict, Optional

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import LogicalReplicationConnection

from ..core.exceptions import ConnectionException
from ..history.record import Lsn

@dataclass(frozen=True)
class ReplicationMessage:
    payload: str
    lsn: Lsn
    send_time: Any = None

class PostgresReplicationClient:
    """One logical replication session; a new instance is used per attempt."""

    def __init__(self, connection_params: Dict[str, Any], slot_name: str, plugin_name: str = 'wal2json',
                 plugin_options: Optional[Dict[str, str]] = None, status_interval: float = 10.0):
        self.connection_params = connection_params
        self.slot_name = slot_name
        self.plugin_name = plugin_name
        self.plugin_options = plugin_options or {
            'format-version': '2',
            'include-lsn': '1',
            'include-pk': '1',
            'include-transaction': '1',
        }
        self.status_interval = status_interval
        self.logger = logging.getLogger(self.__class__.__name__)
        self._connection = None
        self._cursor = None

    def connect(self) -> None:
        self._connection = psycopg2.connect(connection_factory=LogicalReplicationConnection,
                                            **self.connection_params)
        self._cursor = self._connection.cursor()
        self.logger.info(f"Opened replication connection to {self.connection_params.get('host')}")

    def ensure_slot(self) -> None:
        try:
            self._cursor.create_replication_slot(self.slot_name, output_plugin=self.plugin_name)
            self.logger.info(f"Created replication slot {self.slot_name}")
        except pg_errors.DuplicateObject:
            self.logger.debug(f"Replication slot {self.slot_name} already exists")

    def start(self, start_lsn: Optional[Lsn] = None) -> None:
        self._require_cursor()
        self._cursor.start_replication(
            slot_name=self.slot_name,
            decode=True,
            start_lsn=int(start_lsn) if start_lsn is not None else 0,
            options=self.plugin_options,
            status_interval=self.status_interval,
        )
        self.logger.info(f"Streaming from slot {self.slot_name} at {start_lsn or 'slot position'}")

    def read_message(self, timeout: float = 1.0) -> Optional[ReplicationMessage]:
        self._require_cursor()
        message = self._cursor.read_message()
        if message is None:
            ready, _, _ = select.select([self._cursor], [], [], timeout)
            if not ready:
                return None
            message = self._cursor.read_message()
            if message is None:
                return None
        return ReplicationMessage(payload=message.payload, lsn=Lsn(message.data_start), send_time=message.send_time)

    def send_feedback(self, flush_lsn: Optional[Lsn]) -> None:
        self._require_cursor()
        if flush_lsn is not None:
            self._cursor.send_feedback(flush_lsn=int(flush_lsn))

    def close(self) -> None:
        for resource in (self._cursor, self._connection):
            if resource is None:
                continue
            try:
                resource.close()
            except psycopg2.Error as e:
                self.logger.debug(f"Error closing replication resource: {e}")
        self._cursor = None
        self._connection = None

    def _require_cursor(self):
        if self._cursor is None:
            raise ConnectionException("Replication connection is not open", error_code="NOT_CONNECTED")
