"""
Prometheus metrics for InheritVault.

Tracks chain queries made on behalf of callers:
- JSON-RPC calls, errors and latency per method
- Indexer fallback scans
- Vaults enumerated and resolved
- Liveness checks that failed closed
"""

import time
from typing import Dict, Optional
from collections import defaultdict

from inheritvault.lib import util

HISTOGRAM_WINDOW = 1000


class MetricsCollector:
    """
    Collects counters, gauges and latency observations.

    Exported in Prometheus text format by the REST API at /metrics.
    """

    def __init__(self, env=None):
        self.logger = util.class_logger(__name__, self.__class__.__name__)
        self.enabled = getattr(env, 'metrics_enabled', True) if env else True

        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = defaultdict(float)
        self.histograms: Dict[str, list] = defaultdict(list)

        self.start_time = time.time()

        if self.enabled:
            self.logger.info('metrics collection enabled')

    def inc_counter(self, name: str, value: int = 1, labels: Dict[str, str] = None):
        if not self.enabled:
            return
        self.counters[self._make_key(name, labels)] += value

    def get_counter(self, name: str, labels: Dict[str, str] = None) -> int:
        return self.counters.get(self._make_key(name, labels), 0)

    def set_gauge(self, name: str, value: float, labels: Dict[str, str] = None):
        if not self.enabled:
            return
        self.gauges[self._make_key(name, labels)] = value

    def get_gauge(self, name: str, labels: Dict[str, str] = None) -> float:
        return self.gauges.get(self._make_key(name, labels), 0.0)

    def observe_histogram(self, name: str, value: float, labels: Dict[str, str] = None):
        if not self.enabled:
            return
        key = self._make_key(name, labels)
        observations = self.histograms[key]
        observations.append(value)
        if len(observations) > HISTOGRAM_WINDOW:
            del observations[:-HISTOGRAM_WINDOW]

    def generate_metrics(self) -> str:
        """Render all metrics in Prometheus text format."""
        lines = [
            f'# HELP {MetricNames.UPTIME} Process uptime in seconds',
            f'# TYPE {MetricNames.UPTIME} gauge',
            f'{MetricNames.UPTIME} {time.time() - self.start_time:.2f}',
        ]
        declared = {MetricNames.UPTIME}

        def declare(name, kind):
            if name not in declared:
                declared.add(name)
                lines.append(f'# TYPE {name} {kind}')

        for key, value in sorted(self.counters.items()):
            name, label_str = self._parse_key(key)
            declare(name, 'counter')
            lines.append(f'{name}{label_str} {value}')

        for key, value in sorted(self.gauges.items()):
            name, label_str = self._parse_key(key)
            declare(name, 'gauge')
            lines.append(f'{name}{label_str} {value:.6f}')

        for key, values in sorted(self.histograms.items()):
            if not values:
                continue
            name, label_str = self._parse_key(key)
            declare(name, 'summary')
            ordered = sorted(values)
            count = len(ordered)
            lines.append(f'{name}_count{label_str} {count}')
            lines.append(f'{name}_sum{label_str} {sum(ordered):.6f}')
            inner = label_str[1:-1] + ',' if label_str else ''
            for q in (0.5, 0.9, 0.99):
                value = ordered[min(count - 1, int(count * q))]
                lines.append(f'{name}{{{inner}quantile="{q}"}} {value:.6f}')

        return '\n'.join(lines) + '\n'

    @staticmethod
    def _make_key(name: str, labels: Dict[str, str] = None) -> str:
        if not labels:
            return name
        label_parts = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return f"{name}{{{','.join(label_parts)}}}"

    @staticmethod
    def _parse_key(key: str) -> tuple:
        if '{' in key:
            pos = key.index('{')
            return key[:pos], key[pos:]
        return key, ''


class MetricNames:
    UPTIME = 'ivault_uptime_seconds'

    RPC_CALLS = 'ivault_rpc_calls_total'
    RPC_ERRORS = 'ivault_rpc_errors_total'
    RPC_DURATION = 'ivault_rpc_duration_seconds'

    FALLBACK_SCANS = 'ivault_indexer_fallback_scans_total'
    VAULTS_ENUMERATED = 'ivault_vaults_enumerated_total'
    VAULTS_RESOLVED = 'ivault_vaults_resolved_total'
    CELLS_SKIPPED = 'ivault_cells_skipped_total'
    LIVENESS_FAIL_CLOSED = 'ivault_liveness_fail_closed_total'

    TIP_HEIGHT = 'ivault_tip_height'


_metrics: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def init_metrics(env) -> MetricsCollector:
    """Initialize the global metrics collector with environment."""
    global _metrics
    _metrics = MetricsCollector(env)
    return _metrics
