from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import IntEnum
from typing import Callable, Deque, Dict, Iterable, List, Optional

from .config import PerformanceConfig
from .errors import ErrorRegistry

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024.0 * 1024.0
FRAME_TIME_SMOOTHING = 0.1
COMPONENT_BUDGET_SHARE = 0.5
CRITICAL_FACTOR = 1.5


class DegradationLevel(IntEnum):
    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    SEVERE = 4


class AlertSeverity(IntEnum):
    INFO = 0
    WARNING = 1
    CRITICAL = 2


@dataclass(frozen=True)
class DegradationSettings:
    level: DegradationLevel
    batch_size: int
    max_agents_per_frame: int
    update_interval: float


def settings_for(
    level: DegradationLevel,
    base_batch_size: int = 32,
    base_agents_per_frame: int = 10,
    base_update_interval: float = 0.1,
) -> DegradationSettings:
    b, a, i = base_batch_size, base_agents_per_frame, base_update_interval
    if level == DegradationLevel.LOW:
        return DegradationSettings(level, max(16, b - 8), max(5, a - 2), i * 1.2)
    if level == DegradationLevel.MEDIUM:
        return DegradationSettings(level, max(8, b // 2), max(3, a // 2), i * 1.5)
    if level == DegradationLevel.HIGH:
        return DegradationSettings(level, max(4, b // 4), max(2, a // 3), i * 2.0)
    if level == DegradationLevel.SEVERE:
        return DegradationSettings(level, 2, 1, i * 3.0)
    return DegradationSettings(DegradationLevel.NONE, b, a, i)


@dataclass(frozen=True)
class PerformanceSample:
    timestamp: float
    frame_time_ms: float
    memory_mb: float
    active_agents: int
    component_times: Dict[str, float] = field(default_factory=dict)

    def max_ratio(self, config: PerformanceConfig) -> float:
        return max(
            self.frame_time_ms / config.max_frame_time_ms,
            self.memory_mb / config.max_memory_mb,
            self.active_agents / float(config.max_active_agents),
        )


@dataclass(frozen=True)
class PerformanceAlert:
    timestamp: float
    component: str
    metric: str
    value: float
    threshold: float
    severity: AlertSeverity


@dataclass
class PerformanceStatus:
    frame_time_ms: float
    average_frame_time_ms: float
    memory_mb: float
    peak_memory_mb: float
    active_agents: int
    degradation_level: DegradationLevel
    batch_size: int
    max_agents_per_frame: int
    update_interval: float
    component_times: Dict[str, float]

    def to_dict(self) -> Dict:
        payload = asdict(self)
        payload["degradation_level"] = self.degradation_level.name
        return payload


class PerformanceMonitor:
    """
    Tracks frame time, memory and agent load and throttles training work.

    The degradation level is picked from the worst of the three load ratios.
    Each level maps to fixed (batch size, agents per frame, update interval)
    settings; listeners on `on_degradation_changed` receive them on every
    level transition. Independently, adaptive batch sizing nudges the batch
    size up or down from recent frame times.
    """

    def __init__(
        self,
        config: Optional[PerformanceConfig] = None,
        errors: Optional[ErrorRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or PerformanceConfig()
        self.errors = errors or ErrorRegistry()
        self.clock = clock
        self.on_degradation_changed: List[Callable[[DegradationSettings], None]] = []
        self.on_alert: List[Callable[[PerformanceAlert], None]] = []
        self.on_batch_size_changed: List[Callable[[int], None]] = []
        self.history: Deque[PerformanceSample] = deque(maxlen=self.config.history_size)
        self.alerts: Deque[PerformanceAlert] = deque(maxlen=self.config.history_size)
        self.reset()

    def reset(self) -> None:
        cfg = self.config
        self.frame_time_ms = 0.0
        self.average_frame_time_ms = 0.0
        self.memory_mb = 0.0
        self.peak_memory_mb = 0.0
        self.active_agents = 0
        self.component_times: Dict[str, float] = {}
        self.level = DegradationLevel.NONE
        self.settings = self._settings(DegradationLevel.NONE)
        self.batch_size = cfg.base_batch_size
        self._frame_ratios: Deque[float] = deque(maxlen=cfg.batch_window)
        self._updates_since_batch_change = 0
        self._samples = 0
        self._last_check: Optional[float] = None
        self.history.clear()
        self.alerts.clear()

    def _settings(self, level: DegradationLevel) -> DegradationSettings:
        cfg = self.config
        return settings_for(level, cfg.base_batch_size, cfg.base_max_agents_per_frame, cfg.base_update_interval)

    def update_system_metrics(self, frame_time_ms: float, memory_mb: float, active_agents: int) -> None:
        self.frame_time_ms = float(frame_time_ms)
        self.memory_mb = float(memory_mb)
        self.active_agents = int(active_agents)
        self.peak_memory_mb = max(self.peak_memory_mb, self.memory_mb)
        self._samples += 1
        if self._samples == 1:
            self.average_frame_time_ms = self.frame_time_ms
        else:
            self.average_frame_time_ms += FRAME_TIME_SMOOTHING * (self.frame_time_ms - self.average_frame_time_ms)
        if self.config.adaptive_batch_sizing:
            self._adapt_batch_size()

    def _adapt_batch_size(self) -> None:
        cfg = self.config
        self._frame_ratios.append(self.frame_time_ms / cfg.max_frame_time_ms)
        self._updates_since_batch_change += 1
        if len(self._frame_ratios) < max(1, cfg.batch_window // 2):
            return
        if self._updates_since_batch_change < cfg.batch_adjustment_cooldown:
            return
        mean_ratio = sum(self._frame_ratios) / len(self._frame_ratios)
        if mean_ratio > 1.2:
            proposed = int(self.batch_size * (1.0 - cfg.batch_adjustment_rate))
        elif mean_ratio < 0.6:
            proposed = int(round(self.batch_size * (1.0 + cfg.batch_adjustment_rate)))
        else:
            return
        proposed = min(cfg.max_batch_size, max(cfg.min_batch_size, proposed))
        if abs(proposed - self.batch_size) < 2:
            return
        logger.info("Adaptive batch size %d -> %d (mean frame ratio %.2f)", self.batch_size, proposed, mean_ratio)
        self.batch_size = proposed
        self._updates_since_batch_change = 0
        for callback in self.on_batch_size_changed:
            callback(proposed)

    def check(self, now: Optional[float] = None) -> Optional[PerformanceSample]:
        now = self.clock() if now is None else now
        if self._last_check is not None and now - self._last_check < self.config.monitoring_interval:
            return None
        return self.check_now(now)

    def check_now(self, now: Optional[float] = None) -> PerformanceSample:
        now = self.clock() if now is None else now
        self._last_check = now
        sample = PerformanceSample(
            timestamp=now,
            frame_time_ms=self.frame_time_ms,
            memory_mb=self.memory_mb,
            active_agents=self.active_agents,
            component_times=dict(self.component_times),
        )
        self.history.append(sample)
        self._check_thresholds(sample)
        if self.config.auto_degradation:
            self.set_level(self.recommended_level(sample))
        return sample

    def recommended_level(self, sample: Optional[PerformanceSample] = None) -> DegradationLevel:
        if sample is None:
            sample = PerformanceSample(self.clock(), self.frame_time_ms, self.memory_mb, self.active_agents)
        ratio = sample.max_ratio(self.config)
        if ratio >= 1.5:
            return DegradationLevel.SEVERE
        if ratio >= 1.2:
            return DegradationLevel.HIGH
        if ratio >= 1.0:
            return DegradationLevel.MEDIUM
        if ratio >= self.config.soft_threshold:
            return DegradationLevel.LOW
        return DegradationLevel.NONE

    def set_level(self, level: DegradationLevel) -> bool:
        """Apply `level`; returns True and notifies listeners only when it changed."""
        level = DegradationLevel(level)
        changed = level != self.level
        self.settings = self._settings(level)
        if not changed:
            return False
        previous, self.level = self.level, level
        self.batch_size = self.settings.batch_size
        self._updates_since_batch_change = 0
        log = logger.warning if level > previous else logger.info
        log(
            "Degradation %s -> %s (batch=%d, agents/frame=%d, interval=%.3fs)",
            previous.name,
            level.name,
            self.settings.batch_size,
            self.settings.max_agents_per_frame,
            self.settings.update_interval,
        )
        for callback in self.on_degradation_changed:
            callback(self.settings)
        return True

    def _emit(self, alert: PerformanceAlert) -> None:
        self.alerts.append(alert)
        logger.warning(
            "%s %s alert: %s = %.2f (threshold %.2f)",
            alert.severity.name,
            alert.component,
            alert.metric,
            alert.value,
            alert.threshold,
        )
        for callback in self.on_alert:
            callback(alert)

    def _check_thresholds(self, sample: PerformanceSample) -> None:
        cfg = self.config
        checks = (
            ("frame_time", sample.frame_time_ms, cfg.max_frame_time_ms, True),
            ("memory", sample.memory_mb, cfg.max_memory_mb, True),
            ("agent_count", float(sample.active_agents), float(cfg.max_active_agents), False),
        )
        for metric, value, limit, can_be_critical in checks:
            if value <= limit:
                continue
            critical = can_be_critical and value > limit * CRITICAL_FACTOR
            severity = AlertSeverity.CRITICAL if critical else AlertSeverity.WARNING
            self._emit(PerformanceAlert(sample.timestamp, "system", metric, value, limit, severity))

    def record_component_time(self, component: str, elapsed_ms: float) -> None:
        self.component_times[component] = float(elapsed_ms)
        threshold = self.config.max_frame_time_ms * COMPONENT_BUDGET_SHARE
        if elapsed_ms <= threshold:
            return
        severity = AlertSeverity.CRITICAL if elapsed_ms > self.config.max_frame_time_ms else AlertSeverity.WARNING
        self._emit(PerformanceAlert(self.clock(), component, "processing_time", elapsed_ms, threshold, severity))
        self.errors.log_performance_issue(component, "processing_time", elapsed_ms, threshold)

    def recommendations(self) -> List[str]:
        cfg = self.config
        soft = cfg.soft_threshold
        tips: List[str] = []
        if self.frame_time_ms > cfg.max_frame_time_ms * soft:
            tips += [
                "Reduce batch size for network training",
                "Limit number of agents updated per frame",
                "Increase update interval between agent updates",
            ]
        if self.memory_mb > cfg.max_memory_mb * soft:
            tips += [
                "Clear old experience replay buffers",
                "Compress behavior profiles",
                "Reduce network size",
            ]
        if self.active_agents > cfg.max_active_agents * soft:
            tips += [
                "Pool or despawn idle agents",
                "Limit concurrent learning agents",
                "Use rule-based agents for some monsters",
            ]
        return tips

    @staticmethod
    def estimate_memory_mb(agents: Iterable) -> float:
        """Replay buffers plus network parameters, from numpy nbytes."""
        return sum(int(getattr(agent, "nbytes", 0)) for agent in agents) / BYTES_PER_MB

    def status(self) -> PerformanceStatus:
        return PerformanceStatus(
            frame_time_ms=self.frame_time_ms,
            average_frame_time_ms=self.average_frame_time_ms,
            memory_mb=self.memory_mb,
            peak_memory_mb=self.peak_memory_mb,
            active_agents=self.active_agents,
            degradation_level=self.level,
            batch_size=self.batch_size,
            max_agents_per_frame=self.settings.max_agents_per_frame,
            update_interval=self.settings.update_interval,
            component_times=dict(self.component_times),
        )
