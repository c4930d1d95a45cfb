# tests/test_performance.py
import pytest

from detection.matcher import match_all
from utils.performance import BatchProcessor, PerformanceMonitor, performance_monitor


def test_batches_keep_input_order():
    processor = BatchProcessor(batch_size=3, max_workers=4)
    items = list(range(10))
    assert processor.split(items) == [[0, 1, 2], [3, 4, 5], [6, 7, 8], [9]]
    assert processor.map_batches(items, sum) == [3, 12, 21, 9]


def test_single_batch_runs_inline():
    processor = BatchProcessor(batch_size=100)
    assert processor.map_batches([1, 2], len) == [2]
    assert processor.map_batches([], len) == []


def test_batch_size_must_be_positive():
    with pytest.raises(ValueError):
        BatchProcessor(batch_size=0)


def test_monitor_records_metrics():
    monitor = PerformanceMonitor()
    with monitor.monitor_operation("unit", event_count=10):
        pass
    assert monitor.metrics_history[-1].operation == "unit"
    assert monitor.metrics_history[-1].events_processed == 10


def test_monitor_history_is_bounded():
    monitor = PerformanceMonitor(history_limit=3)
    for i in range(10):
        with monitor.monitor_operation(f"op-{i}"):
            pass
    assert [m.operation for m in monitor.metrics_history] == ["op-7", "op-8", "op-9"]


def test_repeated_matching_does_not_grow_global_history(make_event, make_rule):
    events = [make_event()]
    rules = [make_rule("any-sysmon", provider="Sysmon")]
    limit = performance_monitor.metrics_history.maxlen
    for _ in range(limit + 50):
        match_all(events, rules)
    assert len(performance_monitor.metrics_history) == limit
