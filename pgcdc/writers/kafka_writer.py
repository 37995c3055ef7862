import json
from typing import Any, Dict, List, Optional

from kafka import KafkaProducer
from kafka.errors import KafkaError

from ..core import ConnectorException, EventSink
from ..monitoring.metrics import MetricsCollector
from ..source.wal2json_decoder import ChangeEvent

class KafkaEventWriter(EventSink):
    """Publishes change events to one topic per table, keyed by primary key."""

    def __init__(self, config: Dict[str, Any], logical_name: str, metrics: Optional[MetricsCollector] = None):
        super().__init__(config)
        self.logical_name = logical_name
        self.metrics_collector = metrics
        self.producer = None
        self._send_timeout = config.get('send_timeout_s', 30)

    def _create_producer(self) -> KafkaProducer:
        def serializer(document):
            if document is None:
                return None
            return json.dumps(document, sort_keys=True, default=str).encode('utf-8')

        return KafkaProducer(
            bootstrap_servers=self.config['bootstrap_servers'],
            client_id=self.config.get('client_id', f"{self.logical_name}-events"),
            acks=self.config.get('acks', 'all'),
            linger_ms=self.config.get('linger_ms', 5),
            max_in_flight_requests_per_connection=1,
            key_serializer=serializer,
            value_serializer=serializer,
        )

    def start(self) -> None:
        try:
            self.producer = self._create_producer()
            self._running = True
            self.logger.info(f"Kafka event writer started for {self.config['bootstrap_servers']}")
        except KafkaError as e:
            raise ConnectorException(f"Failed to start Kafka producer: {e}", error_code="PRODUCER_START_ERROR", cause=e)

    def stop(self) -> None:
        self._running = False
        if self.producer:
            try:
                self.producer.flush()
                self.producer.close()
                self.logger.info("Kafka event writer closed")
            except KafkaError as e:
                self.logger.error(f"Error closing Kafka producer: {e}")
            self.producer = None

    def topic_for(self, event: ChangeEvent) -> str:
        return f"{self.config.get('topic_prefix', self.logical_name)}.{event.table_id.schema}.{event.table_id.table}"

    def write_batch(self, events: List[ChangeEvent]) -> int:
        if self.producer is None:
            raise ConnectorException("Kafka producer not initialized", error_code="PRODUCER_NOT_INITIALIZED")

        futures = []
        for event in events:
            topic = self.topic_for(event)
            futures.append(self.producer.send(topic, key=event.key, value=event.to_dict()))
            if self.metrics_collector:
                self.metrics_collector.increment('writer.events_sent', tags={'topic': topic})

        try:
            for future in futures:
                future.get(timeout=self._send_timeout)
        except KafkaError as e:
            if self.metrics_collector:
                self.metrics_collector.increment('writer.errors')
            raise ConnectorException(f"Batch send failed: {e}", error_code="BATCH_SEND_ERROR", cause=e)

        return len(futures)

    def health_check(self) -> Dict[str, Any]:
        health = {
            'status': 'healthy' if self.is_running() else 'unhealthy',
            'running': self.is_running(),
            'bootstrap_servers': self.config.get('bootstrap_servers'),
        }
        if self.producer is not None:
            try:
                health['connected'] = self.producer.bootstrap_connected()
                if not health['connected']:
                    health['status'] = 'degraded'
            except KafkaError as e:
                health['error'] = str(e)
                health['status'] = 'degraded'
        return health
