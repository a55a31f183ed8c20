from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class MonsterRLError(Exception):
    """Base class for errors raised by the RL engine."""


class NetworkError(MonsterRLError):
    pass


class ProfileError(MonsterRLError):
    pass


class ProfileCorruptedError(ProfileError):
    """Checksum mismatch or unreadable profile document."""


class ProfileValidationError(ProfileError):
    """Profile parsed but failed structural validation."""


class AgentConstructionError(MonsterRLError):
    pass


class ConfigError(MonsterRLError, ValueError):
    pass


class ErrorSeverity(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3


_LOG_LEVELS = {
    ErrorSeverity.LOW: logging.INFO,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


def severity_for(exc: BaseException) -> ErrorSeverity:
    if isinstance(exc, (MemoryError, RecursionError)):
        return ErrorSeverity.CRITICAL
    if isinstance(exc, OSError):
        return ErrorSeverity.HIGH
    if isinstance(exc, (ValueError, TypeError, MonsterRLError)):
        return ErrorSeverity.MEDIUM
    return ErrorSeverity.LOW


@dataclass
class ErrorRecord:
    component: str
    operation: str
    message: str
    error_type: str
    severity: ErrorSeverity
    context: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class ErrorStatistics:
    total: int = 0
    by_severity: Dict[str, int] = field(default_factory=dict)

    def rate(self, severity: ErrorSeverity) -> float:
        if self.total == 0:
            return 0.0
        return self.by_severity.get(severity.name, 0) / self.total


@dataclass
class PerformanceIssue:
    component: str
    metric: str
    actual: float
    expected: float
    suggestion: str
    timestamp: float = field(default_factory=time.time)


_SUGGESTIONS = {
    "frame_time": "Reduce batch size, limit agents per frame, or enable adaptive processing",
    "processing_time": "Reduce batch size, limit agents per frame, or enable adaptive processing",
    "memory": "Clear experience buffers, compress profiles, or reduce network size",
    "agent_count": "Limit concurrent agents or fall back to rule-based agents",
}


class ErrorRegistry:
    """
    Records failures per component so callers can decide when to stop retrying.

    One registry is owned by the system context and handed to every component that
    needs it; there is no module-level state.
    """

    def __init__(self, max_history: int = 100, retry_threshold: int = 3):
        self.max_history = max_history
        self.retry_threshold = retry_threshold
        self.recent: Deque[ErrorRecord] = deque(maxlen=max_history)
        self.operation_counts: Dict[str, int] = {}
        self.component_counts: Dict[str, int] = {}
        self.performance_issues: Deque[PerformanceIssue] = deque(maxlen=max_history)
        self.listeners: List[Callable[[ErrorRecord], None]] = []

    def log_error(
        self,
        component: str,
        operation: str,
        exc: BaseException,
        context: Optional[object] = None,
    ) -> ErrorRecord:
        record = ErrorRecord(
            component=component,
            operation=operation,
            message=str(exc),
            error_type=type(exc).__name__,
            severity=severity_for(exc),
            context=None if context is None else str(context),
        )
        self.recent.append(record)
        key = f"{component}.{operation}"
        self.operation_counts[key] = self.operation_counts.get(key, 0) + 1
        self.component_counts[component] = self.component_counts.get(component, 0) + 1

        msg = f"{component}.{operation}: {record.error_type}: {record.message}"
        if record.context:
            msg += f" (context: {record.context})"
        logger.log(_LOG_LEVELS[record.severity], msg)

        failures = self.component_counts[component]
        if record.severity >= ErrorSeverity.HIGH and failures >= self.retry_threshold:
            logger.error("Component %s has failed %d times; consider disabling it", component, failures)

        for listener in list(self.listeners):
            listener(record)
        return record

    def log_performance_issue(
        self,
        component: str,
        metric: str,
        actual: float,
        expected: float,
        suggestion: Optional[str] = None,
    ) -> PerformanceIssue:
        issue = PerformanceIssue(
            component=component,
            metric=metric,
            actual=float(actual),
            expected=float(expected),
            suggestion=suggestion or _SUGGESTIONS.get(metric, "Reduce computational load"),
        )
        self.performance_issues.append(issue)
        logger.warning(
            "%s: %s = %.2f (expected <= %.2f). Suggestion: %s",
            component,
            metric,
            issue.actual,
            issue.expected,
            issue.suggestion,
        )
        return issue

    def failure_count(self, component: str) -> int:
        return self.component_counts.get(component, 0)

    def should_disable(self, component: str, threshold: Optional[int] = None) -> bool:
        limit = self.retry_threshold if threshold is None else threshold
        return self.failure_count(component) >= limit

    def reset_component(self, component: str) -> None:
        self.component_counts.pop(component, None)
        prefix = f"{component}."
        for key in [k for k in self.operation_counts if k.startswith(prefix)]:
            del self.operation_counts[key]
        logger.info("Reset error count for %s", component)

    def statistics(self) -> ErrorStatistics:
        stats = ErrorStatistics()
        for record in self.recent:
            stats.total += 1
            name = record.severity.name
            stats.by_severity[name] = stats.by_severity.get(name, 0) + 1
        return stats

    def clear(self) -> None:
        self.recent.clear()
        self.operation_counts.clear()
        self.component_counts.clear()
        self.performance_issues.clear()
