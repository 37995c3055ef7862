import yaml
import os
from typing import Dict, Any, Optional
from pathlib import Path
import json
import copy

from ..core.exceptions import ConfigurationException
from .configuration import flatten

SEARCH_PATHS = (
    'config/config.yaml',
    'config/config.yml',
    'config.yaml',
    'config.yml',
    '/etc/pgcdc/config.yaml',
)

# The connector section is flat (dotted keys), every other section is nested.
CONNECTOR_SECTION = 'connector'

ENV_OVERRIDES = {
    'CONNECTOR_NAME': ('connector', 'name'),
    'DATABASE_HOSTNAME': ('connector', 'database.hostname'),
    'DATABASE_PORT': ('connector', 'database.port'),
    'DATABASE_USER': ('connector', 'database.user'),
    'DATABASE_PASSWORD': ('connector', 'database.password'),
    'DATABASE_DBNAME': ('connector', 'database.dbname'),
    'SLOT_NAME': ('connector', 'slot.name'),
    'HISTORY_CLASS': ('connector', 'database.history'),
    'HISTORY_KAFKA_TOPIC': ('connector', 'database.history.kafka.topic'),
    'HISTORY_BOOTSTRAP_SERVERS': ('connector', 'database.history.kafka.bootstrap.servers'),
    'KAFKA_BOOTSTRAP_SERVERS': ('kafka', 'bootstrap_servers'),
    'OFFSETS_FILE': ('offsets', 'file'),
    'LOG_LEVEL': ('logging', 'level'),
    'METRICS_ENABLED': ('metrics', 'enabled'),
    'METRICS_PORT': ('metrics', 'port'),
    'RETRY_MAX_RETRIES': ('retry', 'max_retries'),
}

REQUIRED_FIELDS = (
    ('connector.name', str),
    ('connector.database.hostname', str),
    ('connector.database.user', str),
    ('connector.database.dbname', str),
    ('kafka.bootstrap_servers', str),
)

DEFAULTS = {
    'connector': {
        'database.port': 5432,
        'slot.name': 'pgcdc',
        'plugin.name': 'wal2json',
        'database.history': 'pgcdc.history.store.KafkaSchemaHistoryStore',
        'database.history.skip.unparseable.ddl': False,
        'database.history.store.only.captured.tables.ddl': False,
        'multi.partition.mode': False,
    },
    'kafka': {
        'acks': 'all',
        'linger_ms': 5,
        'send_timeout_s': 30,
    },
    'queue': {
        'max_size': 1000,
        'max_batch_size': 100,
        'poll_interval_ms': 500,
    },
    'retry': {
        'max_retries': 3,
        'backoff_ms': 1000,
        'max_backoff_ms': 30000,
        'multiplier': 2,
    },
    'offsets': {
        'file': None,
    },
    'logging': {
        'level': 'INFO',
        'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        'file': None
    },
    'metrics': {
        'enabled': True,
        'port': 8080,
        'path': '/metrics'
    },
    'processing': {
        'shutdown_timeout': 30
    }
}

def merge_defaults(defaults: Dict, overrides: Dict) -> Dict:
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged

def coerce_env_value(value: str) -> Any:
    lowered = value.lower()
    if lowered in ('true', 'false'):
        return lowered == 'true'
    if value.lstrip('-').isdigit():
        return int(value)
    return value

class ConfigLoader:
    """Loads the service configuration.

    The ``connector`` section may be written nested in YAML; it is flattened to
    dotted keys so it can back a ``Configuration`` directly. Environment
    variables named ``<prefix>_<SUFFIX>`` override file values.
    """

    def __init__(self, config_path: Optional[str] = None, env_prefix: str = "CDC"):
        self.config_path = config_path or self._find_config_file()
        self.env_prefix = env_prefix
        self._config = {}

    @staticmethod
    def _find_config_file() -> str:
        found = next((path for path in SEARCH_PATHS if Path(path).exists()), None)
        if found is None:
            raise ConfigurationException(
                "No configuration file found",
                error_code="CONFIG_NOT_FOUND",
                details={'search_paths': list(SEARCH_PATHS)}
            )
        return found

    def load(self) -> Dict[str, Any]:
        raw = self._read()
        raw[CONNECTOR_SECTION] = flatten(raw.get(CONNECTOR_SECTION) or {})
        self._config = raw
        self._apply_env_overrides()
        self._validate()
        self._config = merge_defaults(DEFAULTS, self._config)
        return self._config

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, 'r') as f:
                parser = json.load if self.config_path.endswith('.json') else yaml.safe_load
                loaded = parser(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigurationException(
                f"Failed to load configuration file: {e}",
                error_code="CONFIG_LOAD_ERROR",
                details={'path': self.config_path},
                cause=e
            )

        if not isinstance(loaded, dict):
            raise ConfigurationException(
                "Configuration file must contain a mapping",
                error_code="CONFIG_LOAD_ERROR",
                details={'path': self.config_path}
            )
        return loaded

    def _apply_env_overrides(self):
        for suffix, (section, key) in ENV_OVERRIDES.items():
            value = os.getenv(f'{self.env_prefix}_{suffix}')
            if value:
                self._assign(section, key, coerce_env_value(value))

    def _assign(self, section: str, key: str, value: Any):
        target = self._config.setdefault(section, {})
        if section == CONNECTOR_SECTION:
            target[key] = value
            return
        *parents, leaf = key.split('.')
        for parent in parents:
            target = target.setdefault(parent, {})
        target[leaf] = value

    def _validate(self):
        for field_path, expected_type in REQUIRED_FIELDS:
            value = self._lookup(field_path)
            if value is None:
                raise ConfigurationException(
                    f"Required configuration field missing: {field_path}",
                    error_code="MISSING_FIELD",
                    details={'field': field_path}
                )
            if not isinstance(value, expected_type):
                raise ConfigurationException(
                    f"Invalid type for {field_path}: expected {expected_type.__name__}",
                    error_code="INVALID_TYPE",
                    details={'field': field_path, 'expected': expected_type.__name__}
                )

    def _lookup(self, path: str) -> Any:
        section, _, key = path.partition('.')
        current = self._config.get(section)
        if section == CONNECTOR_SECTION:
            return current.get(key) if isinstance(current, dict) else None

        for part in key.split('.') if key else ():
            if not isinstance(current, dict):
                return None
            current = current.get(part)
        return current

    def get(self, path: str, default: Any = None) -> Any:
        value = self._lookup(path)
        return default if value is None else value
