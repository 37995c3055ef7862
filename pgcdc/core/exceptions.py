class ConnectorException(Exception):
    def __init__(self, message: str = None, error_code: str = None, details: dict = None, cause: BaseException = None):
        if message is None and cause is not None:
            message = f"{type(cause).__name__}: {cause}"
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}
        if cause is not None:
            self.__cause__ = cause

class RetriableException(ConnectorException):
    pass

class ConnectionException(RetriableException):
    pass

class ConfigurationException(ConnectorException):
    pass

class SchemaHistoryException(ConnectorException):
    pass

class SchemaHistoryParseException(SchemaHistoryException):
    pass

class DdlParsingException(SchemaHistoryParseException):
    pass

class RetriesExhaustedException(ConnectorException):
    pass
