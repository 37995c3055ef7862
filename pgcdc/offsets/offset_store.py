import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..core.exceptions import ConnectorException
from ..history.record import ResumePosition, partition_key

class OffsetStore(ABC):
    """Committed source offsets, one per partition."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._offsets: Dict[Tuple, Tuple[Dict[str, Any], Dict[str, Any]]] = {}

    def load(self, single_partition: bool = True) -> ResumePosition:
        with self._lock:
            self._offsets = {partition_key(partition): (partition, offset) for partition, offset in self._read()}
            entries = list(self._offsets.values())

        if single_partition:
            if len(entries) > 1:
                raise ConnectorException(
                    f"Found committed offsets for {len(entries)} partitions in single-partition mode",
                    error_code="AMBIGUOUS_OFFSETS"
                )
            return ResumePosition.single(entries[0][1] if entries else None)
        return ResumePosition.from_partitions(entries)

    def committed(self, partition: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._offsets.get(partition_key(partition))
        return dict(entry[1]) if entry else None

    def commit(self, partition: Dict[str, Any], offset: Dict[str, Any]) -> None:
        with self._lock:
            self._offsets[partition_key(partition)] = (dict(partition), dict(offset))
            self._write(list(self._offsets.values()))
        self.logger.debug(f"Committed offset {offset} for {partition}")

    @abstractmethod
    def _read(self) -> List[Tuple[Dict[str, Any], Dict[str, Any]]]:
        pass

    @abstractmethod
    def _write(self, entries: List[Tuple[Dict[str, Any], Dict[str, Any]]]) -> None:
        pass

class MemoryOffsetStore(OffsetStore):
    def __init__(self, entries: Optional[List[Tuple[Dict[str, Any], Dict[str, Any]]]] = None):
        super().__init__()
        self._entries = list(entries or [])

    def _read(self):
        return list(self._entries)

    def _write(self, entries):
        self._entries = list(entries)

class FileOffsetStore(OffsetStore):
    """JSON file rewritten atomically on every commit."""

    def __init__(self, path: str):
        super().__init__()
        self.path = Path(path)

    def _read(self):
        if not self.path.exists():
            return []
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except (OSError, ValueError) as e:
            raise ConnectorException(f"Failed to read offsets from {self.path}: {e}",
                                     error_code="OFFSET_READ_ERROR", cause=e)
        return [(entry['partition'], entry['offset']) for entry in document.get('offsets', [])]

    def _write(self, entries):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        document = {'offsets': [{'partition': partition, 'offset': offset} for partition, offset in entries]}
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(document, f, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise ConnectorException(f"Failed to write offsets to {self.path}: {e}",
                                     error_code="OFFSET_WRITE_ERROR", cause=e)
