# Metrics & Liveness Monitoring
# File: monitoring.py

"""
Metrics collection and connection liveness reporting for the dashboard.
The liveness check only observes: it records how long the stream has been
quiet and never declares the connection dead.
"""

import statistics
from datetime import datetime
from typing import Dict, Optional, Callable
from collections import deque, defaultdict
from dataclasses import dataclass, field
import logging

logger = logging.getLogger(__name__)

# ============================================================================
# METRICS MODELS
# ============================================================================

@dataclass
class HealthCheck:
    """Health check result"""
    component: str
    status: str  # healthy, degraded, unhealthy
    timestamp: datetime
    details: Dict = field(default_factory=dict)

    def to_dict(self):
        """Convert to dictionary"""
        return {
            'component': self.component,
            'status': self.status,
            'timestamp': self.timestamp.isoformat(),
            'details': self.details
        }

# ============================================================================
# METRICS COLLECTOR
# ============================================================================

class MetricsCollector:
    """Collect and aggregate session metrics"""

    def __init__(self, max_points: int = 1000):
        """
        Initialize metrics collector

        Args:
            max_points: Observations kept per histogram
        """
        self.max_points = max_points
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = defaultdict(float)
        self.histograms: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_points))

    def record_counter(self, name: str, value: int = 1, labels: Dict = None):
        """
        Record counter metric (monotonically increasing)

        Args:
            name: Metric name
            value: Value to add (default 1)
            labels: Optional labels for grouping
        """
        key = self._make_key(name, labels)
        self.counters[key] += value

    def record_gauge(self, name: str, value: float, labels: Dict = None):
        """Record gauge metric (current value that can go up or down)"""
        key = self._make_key(name, labels)
        self.gauges[key] = value

    def record_histogram(self, name: str, value: float, labels: Dict = None):
        """Record an observation (delays, sizes)"""
        key = self._make_key(name, labels)
        self.histograms[key].append(value)

    def get_counter(self, name: str, labels: Dict = None) -> int:
        """Get current counter value"""
        return self.counters.get(self._make_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Dict = None) -> float:
        """Get current gauge value"""
        return self.gauges.get(self._make_key(name, labels), 0.0)

    def get_histogram_stats(self, name: str, labels: Dict = None) -> Dict:
        """
        Get histogram statistics

        Args:
            name: Metric name
            labels: Optional labels filter

        Returns:
            Dictionary with count, min, max, mean, median
        """
        values = sorted(self.histograms.get(self._make_key(name, labels), []))

        if not values:
            return {'count': 0, 'min': 0, 'max': 0, 'mean': 0, 'median': 0}

        return {
            'count': len(values),
            'min': values[0],
            'max': values[-1],
            'mean': statistics.mean(values),
            'median': statistics.median(values)
        }

    def _make_key(self, name: str, labels: Dict = None) -> str:
        """Create metric key from name and labels"""
        if not labels:
            return name

        label_str = ','.join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_all_metrics(self) -> Dict:
        """Get all metrics summary"""
        return {
            'counters': dict(self.counters),
            'gauges': dict(self.gauges),
            'histograms': {
                name: self.get_histogram_stats(name)
                for name in self.histograms.keys()
            },
            'timestamp': datetime.now().isoformat()
        }

# ============================================================================
# LIVENESS MONITOR
# ============================================================================

class LivenessMonitor:
    """Observe stream activity; results are logged and kept, never acted on"""

    def __init__(self, clock: Callable[[], float], interval: float,
                 metrics: Optional[MetricsCollector] = None):
        """
        Args:
            clock: Monotonic time source (the session scheduler's now)
            interval: Expected check interval in seconds
            metrics: Optional collector for the quiet-time gauge
        """
        self.clock = clock
        self.interval = interval
        self.metrics = metrics
        self.last_activity: Optional[float] = None
        self.history: deque = deque(maxlen=100)

    def mark_activity(self):
        """Called for every inbound frame or heart-beat"""
        self.last_activity = self.clock()

    def check(self, connection_state: str) -> HealthCheck:
        """
        Build a health report for the stream

        Args:
            connection_state: Current connection state value

        Returns:
            HealthCheck; degraded when the stream has been quiet for more
            than two intervals while connected
        """
        quiet = None
        if self.last_activity is not None:
            quiet = self.clock() - self.last_activity

        if connection_state != 'connected':
            status = 'unhealthy'
        elif quiet is not None and quiet > 2 * self.interval:
            status = 'degraded'
        else:
            status = 'healthy'

        result = HealthCheck(
            component='stream',
            status=status,
            timestamp=datetime.now(),
            details={'state': connection_state, 'quiet_seconds': quiet}
        )
        self.history.append(result)

        if self.metrics is not None and quiet is not None:
            self.metrics.record_gauge('stream_quiet_seconds', quiet)

        if status == 'healthy':
            logger.debug(f"Liveness: stream healthy (quiet {quiet}s)")
        else:
            logger.info(f"Liveness: stream {status} ({connection_state}, quiet {quiet}s)")
        return result

    @property
    def last_report(self) -> Optional[HealthCheck]:
        return self.history[-1] if self.history else None
