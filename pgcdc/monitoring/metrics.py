from typing import Dict, Any, Optional
from collections import defaultdict
from datetime import datetime, timezone
import time
import threading

class MetricsCollector:
    def __init__(self, prefix: str = 'pgcdc'):
        self.prefix = prefix
        self._counters = defaultdict(int)
        self._gauges = {}
        self._timers = {}
        self._lock = threading.Lock()
        self._start_time = time.time()

    def increment(self, metric: str, value: int = 1, tags: Dict[str, str] = None):
        with self._lock:
            self._counters[self._build_key(metric, tags)] += value

    def gauge(self, metric: str, value: float, tags: Dict[str, str] = None):
        with self._lock:
            self._gauges[self._build_key(metric, tags)] = value

    def timer(self, metric: str, tags: Dict[str, str] = None):
        return Timer(self, metric, tags)

    def record_timing(self, metric: str, duration: float, tags: Dict[str, str] = None):
        with self._lock:
            key = self._build_key(metric, tags)
            stats = self._timers.setdefault(key, {'count': 0, 'sum': 0.0, 'max': 0.0, 'last': 0.0})
            stats['count'] += 1
            stats['sum'] += duration
            stats['max'] = max(stats['max'], duration)
            stats['last'] = duration

    def counter_value(self, metric: str, tags: Dict[str, str] = None) -> int:
        with self._lock:
            return self._counters.get(self._build_key(metric, tags), 0)

    def _build_key(self, metric: str, tags: Optional[Dict[str, str]]) -> str:
        if not tags:
            return metric

        tag_str = ','.join(f"{k}={v}" for k, v in sorted(tags.items()))
        return f"{metric},{tag_str}"

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'uptime_seconds': time.time() - self._start_time,
                'timestamp': datetime.now(timezone.utc).isoformat(),
                'counters': dict(self._counters),
                'gauges': dict(self._gauges),
                'timers': {
                    key: {
                        'count': stats['count'],
                        'mean': stats['sum'] / stats['count'],
                        'max': stats['max'],
                        'last': stats['last']
                    }
                    for key, stats in self._timers.items() if stats['count']
                }
            }

    def export_prometheus(self) -> str:
        metrics = self.get_metrics()
        lines = [
            f"# TYPE {self.prefix}_uptime_seconds gauge",
            f"{self.prefix}_uptime_seconds {metrics['uptime_seconds']}"
        ]

        for key, value in sorted(metrics['counters'].items()):
            name, labels = self._prometheus_name(key)
            lines.append(f"# TYPE {name} counter")
            lines.append(f"{name}{labels} {value}")

        for key, value in sorted(metrics['gauges'].items()):
            name, labels = self._prometheus_name(key)
            lines.append(f"# TYPE {name} gauge")
            lines.append(f"{name}{labels} {value}")

        for key, stats in sorted(metrics['timers'].items()):
            name, labels = self._prometheus_name(key)
            for stat in ('mean', 'max', 'last', 'count'):
                lines.append(f"{name}_{stat}{labels} {stats[stat]}")

        return '\n'.join(lines)

    def _prometheus_name(self, key: str):
        metric, _, tag_str = key.partition(',')
        name = f"{self.prefix}_{metric.replace('.', '_')}"
        if not tag_str:
            return name, ''
        labels = ','.join(f'{k}="{v}"' for k, v in (tag.split('=', 1) for tag in tag_str.split(',')))
        return name, '{' + labels + '}'

class Timer:
    def __init__(self, collector: MetricsCollector, metric: str, tags: Optional[Dict[str, str]]):
        self.collector = collector
        self.metric = metric
        self.tags = tags
        self.start_time = None

    def __enter__(self):
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.collector.record_timing(self.metric, time.monotonic() - self.start_time, self.tags)

class SchemaHistoryMetrics:
    """Schema history counters, namespaced by connector logical name."""

    def __init__(self, collector: MetricsCollector, logical_name: str, multi_partition_mode: bool = False):
        self.collector = collector
        self.tags = {'connector': logical_name}
        self.multi_partition_mode = multi_partition_mode

    def record_recovered(self):
        self.collector.increment('schema_history.records_recovered', tags=self.tags)

    def record_applied(self):
        self.collector.increment('schema_history.records_applied', tags=self.tags)

    def record_skipped(self):
        self.collector.increment('schema_history.records_skipped', tags=self.tags)

    def record_unparseable(self):
        self.collector.increment('schema_history.records_unparseable', tags=self.tags)

    def record_appended(self):
        self.collector.increment('schema_history.records_appended', tags=self.tags)

    def recovery_finished(self, duration: float):
        self.collector.record_timing('schema_history.recovery_time', duration, self.tags)

class HealthChecker:
    def __init__(self, check_interval: float = 30):
        self.components = {}
        self._cache = {}
        self._check_interval = check_interval

    def register_component(self, name: str, component):
        self.components[name] = component

    def check_health(self) -> Dict[str, Any]:
        overall_status = 'healthy'
        component_status = {}
        now = time.time()

        for name, component in self.components.items():
            cached = self._cache.get(name)
            if cached and now - cached[0] <= self._check_interval:
                status = cached[1]
            else:
                try:
                    status = component.health_check()
                except Exception as e:
                    status = {'status': 'unhealthy', 'error': str(e)}
                self._cache[name] = (now, status)

            component_status[name] = status
            if status.get('status') == 'unhealthy':
                overall_status = 'unhealthy'
            elif status.get('status') == 'degraded' and overall_status != 'unhealthy':
                overall_status = 'degraded'

        return {
            'status': overall_status,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'components': component_status
        }
