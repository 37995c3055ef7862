from .base import BaseComponent, EventSink
from .exceptions import (
    ConnectorException,
    RetriableException,
    ConnectionException,
    ConfigurationException,
    SchemaHistoryException,
    SchemaHistoryParseException,
    DdlParsingException,
    RetriesExhaustedException
)

__all__ = [
    'BaseComponent',
    'EventSink',
    'ConnectorException',
    'RetriableException',
    'ConnectionException',
    'ConfigurationException',
    'SchemaHistoryException',
    'SchemaHistoryParseException',
    'DdlParsingException',
    'RetriesExhaustedException'
]
