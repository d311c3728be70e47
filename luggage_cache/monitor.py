"""Rolling performance statistics for coordinated AI requests."""

import json
import logging
import threading
import time
import uuid
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, Field

from luggage_cache.config import DEFAULT_LATENCY_BUCKETS_MS, DEFAULT_WARNING_RULES, MonitorConfig, WarningRule

logger = logging.getLogger(__name__)


class RequestOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CACHE_HIT = "cache_hit"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return ["low", "medium", "high", "critical"].index(self.value)


class WarningType(str, Enum):
    SLOW_RESPONSE = "slow_response"
    LOW_SUCCESS_RATE = "low_success_rate"
    LOW_CACHE_HIT_RATE = "low_cache_hit_rate"


class TrendDirection(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


# --- Samples and reports ---


class PerformanceSample(BaseModel):
    """One completed request, either answered from cache or by the external client."""

    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    category: str
    outcome: RequestOutcome
    latency_ms: float = Field(ge=0.0)
    timestamp: float = Field(default_factory=time.time)


class CategoryStats(BaseModel):
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cache_hits: int = 0
    success_rate: float = 1.0
    cache_hit_rate: float = 0.0
    average_response_time: float = 0.0


class PerformanceReport(BaseModel):
    """Aggregates over the current window. Response times are in milliseconds."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cache_hits: int = 0
    overall_success_rate: float = 1.0
    cache_hit_rate: float = 0.0
    average_response_time: float = 0.0
    p50_response_time: float = 0.0
    p95_response_time: float = 0.0
    latency_histogram: Dict[str, int] = Field(default_factory=dict)
    requests_by_category: Dict[str, CategoryStats] = Field(default_factory=dict)
    generated_at: float = Field(default_factory=time.time)


class PerformanceWarning(BaseModel):
    type: WarningType
    severity: Severity
    message: str
    value: float
    threshold: float
    category: Optional[str] = Field(default=None, description="Request category, or None for the whole window.")


class PerformanceTrends(BaseModel):
    response_time_trend: TrendDirection = TrendDirection.STABLE
    sample_count: int = 0
    time_range: float
    generated_at: float = Field(default_factory=time.time)


_METRIC_WARNING_TYPES = {
    "success_rate": WarningType.LOW_SUCCESS_RATE,
    "cache_hit_rate": WarningType.LOW_CACHE_HIT_RATE,
    "average_response_time": WarningType.SLOW_RESPONSE,
}


def _summarize(samples: Sequence[PerformanceSample]) -> CategoryStats:
    successes = sum(1 for s in samples if s.outcome == RequestOutcome.SUCCESS)
    failures = sum(1 for s in samples if s.outcome == RequestOutcome.FAILURE)
    hits = sum(1 for s in samples if s.outcome == RequestOutcome.CACHE_HIT)
    external = successes + failures
    latencies = [s.latency_ms for s in samples if s.outcome != RequestOutcome.CACHE_HIT]
    return CategoryStats(
        total_requests=len(samples),
        successful_requests=successes,
        failed_requests=failures,
        cache_hits=hits,
        success_rate=successes / external if external else 1.0,
        cache_hit_rate=hits / len(samples) if samples else 0.0,
        average_response_time=float(np.mean(latencies)) if latencies else 0.0,
    )


def calculate_trend(values: Sequence[float], tolerance_pct: float = 10.0) -> TrendDirection:
    """Compare the mean of the second half of ``values`` against the first half."""
    if len(values) < 2:
        return TrendDirection.STABLE
    half = len(values) // 2
    first_avg = float(np.mean(values[:half]))
    second_avg = float(np.mean(values[-half:]))
    if first_avg == 0:
        return TrendDirection.INCREASING if second_avg > 0 else TrendDirection.STABLE
    change_pct = (second_avg - first_avg) / first_avg * 100
    if change_pct > tolerance_pct:
        return TrendDirection.INCREASING
    if change_pct < -tolerance_pct:
        return TrendDirection.DECREASING
    return TrendDirection.STABLE


class PerformanceMonitor:
    """Bounded rolling window of request samples with derived health warnings.

    Success rate:
        ``successes / (successes + failures)``. Cache hits count toward
        ``total_requests`` and ``cache_hit_rate`` only, so caching alone can
        never inflate the success rate.

    Response time:
        Averages and percentiles cover external calls (successes and failures);
        cache hits are near-instant and would mask a slow provider.

    Warnings:
        Every configured :class:`WarningRule` is evaluated; per metric only the
        most severe triggered rule is reported. A metric is evaluated once its
        denominator reaches ``min_samples_for_warnings``. Success-rate and
        response-time rules are also applied to each category; a category
        warning is reported when it is more severe than the window-wide one.
    """

    def __init__(
        self,
        max_samples: int = 1000,
        max_sample_age_seconds: Optional[float] = None,
        warning_rules: Optional[List[WarningRule]] = None,
        min_samples_for_warnings: int = 1,
        latency_buckets_ms: Optional[Sequence[float]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_samples <= 0:
            raise ValueError(f"max_samples must be positive (received {max_samples}).")
        self.max_samples = max_samples
        self.max_sample_age_seconds = max_sample_age_seconds
        rules = DEFAULT_WARNING_RULES if warning_rules is None else warning_rules
        self.warning_rules = [
            rule if isinstance(rule, WarningRule) else WarningRule.model_validate(rule) for rule in rules
        ]
        self.min_samples_for_warnings = max(1, min_samples_for_warnings)
        self.latency_buckets_ms = sorted(
            latency_buckets_ms if latency_buckets_ms is not None else DEFAULT_LATENCY_BUCKETS_MS
        )
        self._clock = clock
        self._samples: Deque[PerformanceSample] = deque(maxlen=max_samples)
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: MonitorConfig, clock: Callable[[], float] = time.time) -> "PerformanceMonitor":
        return cls(
            max_samples=config.max_samples,
            max_sample_age_seconds=config.max_sample_age_seconds,
            warning_rules=config.warning_rules,
            min_samples_for_warnings=config.min_samples_for_warnings,
            latency_buckets_ms=config.latency_buckets_ms,
            clock=clock,
        )

    # --- Recording ---

    def record(self, sample: PerformanceSample) -> None:
        with self._lock:
            self._samples.append(sample)
            self._prune_locked()

    def record_outcome(
        self,
        category: str,
        outcome: RequestOutcome,
        latency_ms: float,
        request_id: Optional[str] = None,
    ) -> PerformanceSample:
        sample = PerformanceSample(
            request_id=request_id or str(uuid.uuid4()),
            category=category,
            outcome=outcome,
            latency_ms=max(0.0, latency_ms),
            timestamp=self._clock(),
        )
        self.record(sample)
        return sample

    def _prune_locked(self) -> None:
        if self.max_sample_age_seconds is None:
            return
        cutoff = self._clock() - self.max_sample_age_seconds
        while self._samples and self._samples[0].timestamp < cutoff:
            self._samples.popleft()

    def samples(self) -> List[PerformanceSample]:
        with self._lock:
            self._prune_locked()
            return list(self._samples)

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()
        logger.info("Performance statistics reset.")

    # --- Aggregates ---

    def _histogram(self, latencies: Sequence[float]) -> Dict[str, int]:
        edges = self.latency_buckets_ms
        labels = []
        lower = 0.0
        for edge in edges:
            labels.append(f"{lower:g}-{edge:g}ms")
            lower = edge
        labels.append(f"{lower:g}ms+")
        counts = np.zeros(len(labels), dtype=int)
        if len(latencies):
            indices = np.searchsorted(np.asarray(edges, dtype=float), np.asarray(latencies, dtype=float), side="left")
            counts = np.bincount(indices, minlength=len(labels))
        return {label: int(count) for label, count in zip(labels, counts)}

    def report(self) -> PerformanceReport:
        samples = self.samples()
        overall = _summarize(samples)
        latencies = [s.latency_ms for s in samples if s.outcome != RequestOutcome.CACHE_HIT]

        by_category: Dict[str, List[PerformanceSample]] = {}
        for sample in samples:
            by_category.setdefault(sample.category, []).append(sample)

        return PerformanceReport(
            total_requests=overall.total_requests,
            successful_requests=overall.successful_requests,
            failed_requests=overall.failed_requests,
            cache_hits=overall.cache_hits,
            overall_success_rate=overall.success_rate,
            cache_hit_rate=overall.cache_hit_rate,
            average_response_time=overall.average_response_time,
            p50_response_time=float(np.percentile(latencies, 50)) if latencies else 0.0,
            p95_response_time=float(np.percentile(latencies, 95)) if latencies else 0.0,
            latency_histogram=self._histogram(latencies),
            requests_by_category={name: _summarize(group) for name, group in by_category.items()},
            generated_at=self._clock(),
        )

    def _worst_rules(self, observed: Dict[str, Tuple[float, int]]) -> Dict[str, Tuple[float, WarningRule]]:
        worst: Dict[str, Tuple[float, WarningRule]] = {}
        for rule in self.warning_rules:
            if rule.metric not in observed:
                continue
            value, sample_count = observed[rule.metric]
            if sample_count < self.min_samples_for_warnings:
                continue
            triggered = value < rule.threshold if rule.comparison == "lt" else value > rule.threshold
            if not triggered:
                continue
            current = worst.get(rule.metric)
            if current is None or Severity(rule.severity).rank > Severity(current[1].severity).rank:
                worst[rule.metric] = (value, rule)
        return worst

    def warnings(self) -> List[PerformanceWarning]:
        report = self.report()
        external = report.successful_requests + report.failed_requests
        overall = self._worst_rules(
            {
                "success_rate": (report.overall_success_rate, external),
                "cache_hit_rate": (report.cache_hit_rate, report.total_requests),
                "average_response_time": (report.average_response_time, external),
            }
        )
        warnings = [self._make_warning(metric, value, rule) for metric, (value, rule) in overall.items()]

        # A category is reported only when it is worse than the window as a whole.
        for name, stats in sorted(report.requests_by_category.items()):
            category_external = stats.successful_requests + stats.failed_requests
            triggered = self._worst_rules(
                {
                    "success_rate": (stats.success_rate, category_external),
                    "average_response_time": (stats.average_response_time, category_external),
                }
            )
            for metric, (value, rule) in triggered.items():
                global_hit = overall.get(metric)
                if global_hit is not None and Severity(global_hit[1].severity).rank >= Severity(rule.severity).rank:
                    continue
                warnings.append(self._make_warning(metric, value, rule, category=name))

        warnings.sort(key=lambda warning: warning.severity.rank, reverse=True)
        return warnings

    @classmethod
    def _make_warning(
        cls, metric: str, value: float, rule: WarningRule, category: Optional[str] = None
    ) -> PerformanceWarning:
        return PerformanceWarning(
            type=_METRIC_WARNING_TYPES[metric],
            severity=Severity(rule.severity),
            message=cls._warning_message(metric, value, rule.threshold, category),
            value=value,
            threshold=rule.threshold,
            category=category,
        )

    @staticmethod
    def _warning_message(metric: str, value: float, threshold: float, category: Optional[str] = None) -> str:
        scope = f" for {category}" if category else ""
        if metric == "average_response_time":
            return f"Average response time{scope} is too high: {value:.2f}ms (threshold {threshold:.0f}ms)"
        label = "Success rate" if metric == "success_rate" else "Cache hit rate"
        return f"{label}{scope} is too low: {value * 100:.1f}% (threshold {threshold * 100:.1f}%)"

    def trends(self, time_range: float = 3600.0) -> PerformanceTrends:
        """Direction of external response times over the last ``time_range`` seconds."""
        cutoff = self._clock() - time_range
        recent = sorted(
            (s for s in self.samples() if s.timestamp >= cutoff and s.outcome != RequestOutcome.CACHE_HIT),
            key=lambda s: s.timestamp,
        )
        return PerformanceTrends(
            response_time_trend=calculate_trend([s.latency_ms for s in recent]),
            sample_count=len(recent),
            time_range=time_range,
            generated_at=self._clock(),
        )

    # --- Persistence ---

    def save_state(self, filepath: str) -> None:
        """Persist the current window to disk."""
        state = {"samples": [sample.model_dump(mode="json") for sample in self.samples()]}
        try:
            Path(filepath).parent.mkdir(parents=True, exist_ok=True)
            with open(filepath, "w", encoding="utf-8") as handle:
                json.dump(state, handle, indent=2)
        except OSError as exc:
            logger.error("Failed to save performance state: %s", exc)

    def load_state(self, filepath: str) -> None:
        """Restore a previously saved window, if one exists."""
        if not Path(filepath).exists():
            return
        try:
            with open(filepath, "r", encoding="utf-8") as handle:
                state = json.load(handle)
            samples = [PerformanceSample.model_validate(item) for item in state.get("samples", [])]
        except (OSError, ValueError) as exc:
            logger.error("Failed to load performance state: %s", exc)
            return
        with self._lock:
            self._samples.extend(sorted(samples, key=lambda s: s.timestamp))
            self._prune_locked()
        logger.info("Restored %d performance samples.", len(samples))
