import importlib
from typing import Any, Dict, Iterator, Mapping, Optional

from ..core.exceptions import ConfigurationException

def flatten(settings: Mapping[str, Any], prefix: str = '') -> Dict[str, Any]:
    """``{'database': {'history': {'name': 'x'}}}`` -> ``{'database.history.name': 'x'}``.

    A key may carry a value and children at once: ``database.history`` names
    the store class while ``database.history.*`` configures it. In nested
    form the value sits under an empty-string key.
    """
    flat = {}
    for key, value in settings.items():
        full_key = f"{prefix}.{key}" if prefix and key != '' else (prefix or key)
        if isinstance(value, Mapping):
            flat.update(flatten(value, full_key))
        else:
            flat[full_key] = value
    return flat


class Configuration:
    """Immutable flat key/value settings keyed by dotted names."""

    def __init__(self, settings: Optional[Mapping[str, Any]] = None):
        self._settings = flatten(settings or {})

    def __contains__(self, key: str) -> bool:
        return key in self._settings

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._settings))

    def __len__(self):
        return len(self._settings)

    def __eq__(self, other):
        if not isinstance(other, Configuration):
            return NotImplemented
        return self._settings == other._settings

    def __repr__(self):
        return f"Configuration({self.as_dict()!r})"

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._settings)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._settings.get(key)
        return default if value is None else value

    def get_string(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.get(key, default)
        return None if value is None else str(value)

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key, default)
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ('true', 'false'):
            return value.strip().lower() == 'true'
        raise ConfigurationException(
            f"Invalid boolean for {key}: {value!r}",
            error_code="INVALID_TYPE",
            details={'field': key, 'expected': 'bool'}
        )

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        value = self.get(key, default)
        if value is None or isinstance(value, int) and not isinstance(value, bool):
            return value
        try:
            return int(str(value).strip())
        except ValueError:
            raise ConfigurationException(
                f"Invalid integer for {key}: {value!r}",
                error_code="INVALID_TYPE",
                details={'field': key, 'expected': 'int'}
            ) from None

    def subset(self, prefix: str, remove_prefix: bool = False) -> 'Configuration':
        subset = {}
        for key, value in self._settings.items():
            if key.startswith(prefix):
                subset[key[len(prefix):] if remove_prefix else key] = value
        return Configuration._from_flat(subset)

    def with_defaults(self, defaults: Mapping[str, Any]) -> 'Configuration':
        merged = {key: value for key, value in defaults.items() if value is not None}
        merged.update(self._settings)
        return Configuration._from_flat(merged)

    def get_class(self, key: str, default: Optional[str] = None) -> type:
        class_name = self.get_string(key, default)
        if not class_name:
            raise ConfigurationException(f"No class configured for {key}", error_code="MISSING_FIELD",
                                         details={'field': key})
        module_name, _, attribute = class_name.rpartition('.')
        try:
            return getattr(importlib.import_module(module_name), attribute)
        except (ImportError, AttributeError, ValueError) as e:
            raise ConfigurationException(
                f"Unable to load class {class_name} configured for {key}: {e}",
                error_code="CLASS_NOT_FOUND",
                details={'field': key, 'class': class_name},
                cause=e
            )

    def get_instance(self, key: str, expected_type: type, default: Optional[str] = None) -> Any:
        cls = self.get_class(key, default)
        try:
            instance = cls()
        except Exception as e:
            raise ConfigurationException(
                f"Unable to instantiate {cls.__name__} configured for {key}: {e}",
                error_code="INSTANTIATION_ERROR",
                details={'field': key},
                cause=e
            )
        if not isinstance(instance, expected_type):
            raise ConfigurationException(
                f"{cls.__name__} configured for {key} is not a {expected_type.__name__}",
                error_code="INVALID_TYPE",
                details={'field': key, 'expected': expected_type.__name__}
            )
        return instance

    @classmethod
    def _from_flat(cls, flat: Dict[str, Any]) -> 'Configuration':
        config = cls()
        config._settings = dict(flat)
        return config
