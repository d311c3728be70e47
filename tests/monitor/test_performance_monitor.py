import threading

import pytest

from luggage_cache.config import MonitorConfig, WarningRule
from luggage_cache.monitor import (
    PerformanceMonitor,
    PerformanceSample,
    RequestOutcome,
    Severity,
    TrendDirection,
    WarningType,
    calculate_trend,
)

SUCCESS = RequestOutcome.SUCCESS
FAILURE = RequestOutcome.FAILURE
HIT = RequestOutcome.CACHE_HIT


def record_many(monitor, outcome, count, latency_ms=100.0, category="item_identification"):
    for _ in range(count):
        monitor.record_outcome(category, outcome, latency_ms)


def test_empty_report_has_neutral_values(monitor):
    report = monitor.report()

    assert report.total_requests == 0
    assert report.overall_success_rate == 1.0
    assert report.cache_hit_rate == 0.0
    assert report.average_response_time == 0.0
    assert monitor.warnings() == []


def test_cache_hits_are_excluded_from_success_rate(monitor):
    record_many(monitor, SUCCESS, 3, latency_ms=200.0)
    record_many(monitor, FAILURE, 1, latency_ms=600.0)
    record_many(monitor, HIT, 6, latency_ms=1.0)

    report = monitor.report()

    assert report.total_requests == 10
    assert report.successful_requests == 3
    assert report.failed_requests == 1
    assert report.cache_hits == 6
    assert report.overall_success_rate == pytest.approx(0.75)
    assert report.cache_hit_rate == pytest.approx(0.6)
    # Response times cover external calls only.
    assert report.average_response_time == pytest.approx(300.0)


def test_report_breaks_down_by_category(monitor):
    record_many(monitor, SUCCESS, 2, category="airline_policies")
    record_many(monitor, HIT, 2, category="airline_policies")
    record_many(monitor, FAILURE, 1, category="photo_recognition")

    report = monitor.report()

    policies = report.requests_by_category["airline_policies"]
    assert policies.total_requests == 4
    assert policies.cache_hit_rate == pytest.approx(0.5)
    assert report.requests_by_category["photo_recognition"].success_rate == 0.0


def test_percentiles_and_histogram(monitor):
    for latency in (50, 150, 300, 800, 1500, 3000, 7000, 20000):
        monitor.record_outcome("alternatives", SUCCESS, latency)
    record_many(monitor, HIT, 5, latency_ms=0.5)

    report = monitor.report()

    assert report.p50_response_time == pytest.approx(1150.0)
    assert report.p95_response_time > 7000
    assert report.latency_histogram == {
        "0-100ms": 1,
        "100-250ms": 1,
        "250-500ms": 1,
        "500-1000ms": 1,
        "1000-2000ms": 1,
        "2000-5000ms": 1,
        "5000-10000ms": 1,
        "10000ms+": 1,
    }


def test_window_is_bounded_by_count(clock):
    monitor = PerformanceMonitor(max_samples=5, clock=clock)
    record_many(monitor, FAILURE, 5)
    record_many(monitor, SUCCESS, 5)

    report = monitor.report()
    assert report.total_requests == 5
    assert report.overall_success_rate == 1.0


def test_window_is_bounded_by_age(clock):
    monitor = PerformanceMonitor(max_sample_age_seconds=60, clock=clock)
    record_many(monitor, FAILURE, 3)
    clock.advance(61)
    record_many(monitor, SUCCESS, 2)

    assert monitor.report().total_requests == 2


def test_concurrent_records_are_all_counted(monitor):
    def worker():
        record_many(monitor, SUCCESS, 200)

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    samples = monitor.samples()
    assert len(samples) == 1000
    assert len({sample.request_id for sample in samples}) == 1000


def test_default_warnings_report_most_severe_rule_per_metric(monitor):
    record_many(monitor, SUCCESS, 7, latency_ms=6000.0)
    record_many(monitor, FAILURE, 3, latency_ms=6000.0)

    warnings = {warning.type: warning for warning in monitor.warnings()}

    assert warnings[WarningType.LOW_SUCCESS_RATE].severity == Severity.HIGH
    assert warnings[WarningType.LOW_SUCCESS_RATE].value == pytest.approx(0.7)
    assert warnings[WarningType.SLOW_RESPONSE].severity == Severity.HIGH
    assert warnings[WarningType.LOW_CACHE_HIT_RATE].severity == Severity.LOW
    assert len(warnings) == 3


def test_healthy_traffic_has_no_warnings(monitor):
    record_many(monitor, SUCCESS, 4, latency_ms=300.0)
    record_many(monitor, HIT, 6, latency_ms=1.0)

    assert monitor.warnings() == []


def test_warning_thresholds_are_configurable(clock):
    rules = [WarningRule(metric="average_response_time", comparison="gt", threshold=100.0, severity="critical")]
    monitor = PerformanceMonitor(warning_rules=rules, clock=clock)
    record_many(monitor, SUCCESS, 1, latency_ms=150.0)
    record_many(monitor, FAILURE, 9, latency_ms=150.0)

    warnings = monitor.warnings()

    assert [warning.type for warning in warnings] == [WarningType.SLOW_RESPONSE]
    assert warnings[0].severity == Severity.CRITICAL
    assert warnings[0].threshold == 100.0


def test_warnings_wait_for_minimum_samples(clock):
    monitor = PerformanceMonitor(min_samples_for_warnings=5, clock=clock)
    record_many(monitor, FAILURE, 4)
    assert monitor.warnings() == []

    record_many(monitor, FAILURE, 1)
    assert WarningType.LOW_SUCCESS_RATE in {warning.type for warning in monitor.warnings()}


def test_failing_category_is_flagged_when_the_window_looks_healthy(monitor):
    record_many(monitor, SUCCESS, 18, latency_ms=300.0, category="travel_suggestions")
    record_many(monitor, FAILURE, 2, latency_ms=100.0, category="photo_recognition")

    warnings = monitor.warnings()

    assert monitor.report().overall_success_rate == pytest.approx(0.9)
    assert [(w.type, w.severity, w.category) for w in warnings] == [
        (WarningType.LOW_SUCCESS_RATE, Severity.HIGH, "photo_recognition"),
        (WarningType.LOW_CACHE_HIT_RATE, Severity.LOW, None),
    ]
    assert "photo_recognition" in warnings[0].message
    assert warnings[0].value == 0.0


def test_slow_category_is_flagged_once(monitor):
    record_many(monitor, SUCCESS, 9, latency_ms=100.0, category="travel_suggestions")
    record_many(monitor, SUCCESS, 1, latency_ms=9000.0, category="photo_recognition")
    record_many(monitor, HIT, 10, latency_ms=1.0, category="travel_suggestions")

    warnings = monitor.warnings()

    assert len(warnings) == 1
    assert warnings[0].type == WarningType.SLOW_RESPONSE
    assert warnings[0].severity == Severity.HIGH
    assert warnings[0].category == "photo_recognition"


def test_unknown_warning_metric_is_rejected(clock):
    with pytest.raises(ValueError):
        WarningRule(metric="vibes", threshold=1.0)
    with pytest.raises(ValueError):
        PerformanceMonitor(warning_rules=[{"metric": "vibes", "threshold": 1.0}], clock=clock)


def test_from_config_uses_config_rules(clock):
    config = MonitorConfig(
        max_samples=10,
        warning_rules=[{"metric": "cache_hit_rate", "comparison": "lt", "threshold": 0.9, "severity": "high"}],
    )
    monitor = PerformanceMonitor.from_config(config, clock=clock)
    record_many(monitor, SUCCESS, 1)

    assert monitor.max_samples == 10
    assert [warning.severity for warning in monitor.warnings()] == [Severity.HIGH]


def test_trends_compare_halves(clock, monitor):
    for latency in (100, 110, 105, 400, 420, 410):
        monitor.record_outcome("travel_suggestions", SUCCESS, latency)
        clock.advance(10)

    trends = monitor.trends(time_range=3600)
    assert trends.response_time_trend == TrendDirection.INCREASING
    assert trends.sample_count == 6

    clock.advance(7200)
    assert monitor.trends(time_range=3600).sample_count == 0


@pytest.mark.parametrize(
    "values,expected",
    [
        ([], TrendDirection.STABLE),
        ([100.0], TrendDirection.STABLE),
        ([100.0, 105.0], TrendDirection.STABLE),
        ([300.0, 300.0, 100.0, 100.0], TrendDirection.DECREASING),
        ([0.0, 0.0, 50.0, 50.0], TrendDirection.INCREASING),
    ],
)
def test_calculate_trend(values, expected):
    assert calculate_trend(values) == expected


def test_reset_clears_window(monitor):
    record_many(monitor, SUCCESS, 3)
    monitor.reset()
    assert monitor.report().total_requests == 0


def test_state_round_trip(tmp_path, clock):
    path = tmp_path / "state" / "monitor.json"
    original = PerformanceMonitor(clock=clock)
    original.record(PerformanceSample(category="alternatives", outcome=SUCCESS, latency_ms=42.0, timestamp=clock()))
    original.record_outcome("alternatives", HIT, 1.0)
    original.save_state(str(path))

    restored = PerformanceMonitor(clock=clock)
    restored.load_state(str(path))

    assert restored.samples() == original.samples()


def test_load_state_ignores_missing_or_corrupt_files(tmp_path, monitor):
    monitor.load_state(str(tmp_path / "missing.json"))
    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{", encoding="utf-8")
    monitor.load_state(str(corrupt))

    assert monitor.samples() == []
