# utils/performance.py
from __future__ import annotations
import logging
import time
import psutil
from collections import deque
from typing import Any, Callable, Deque, List, Optional
from dataclasses import dataclass
from concurrent.futures import ThreadPoolExecutor
import multiprocessing as mp
from contextlib import contextmanager

import constants

logger = logging.getLogger(__name__)

@dataclass
class PerformanceMetrics:
    operation: str
    execution_time: float
    memory_usage_mb: float
    cpu_percent: float
    events_processed: int
    throughput_events_per_sec: float

class PerformanceMonitor:
    """Monitor matching and correlation runs over large event sets.

    Only the most recent runs are kept, so a long-lived embedder does not
    accumulate metrics without bound.
    """

    def __init__(self, history_limit: int = constants.METRICS_HISTORY_LIMIT):
        self.metrics_history: Deque[PerformanceMetrics] = deque(maxlen=history_limit)
        self.process = psutil.Process()

    @contextmanager
    def monitor_operation(self, operation_name: str, event_count: int = 0):
        """Context manager to monitor performance of operations"""
        start_time = time.perf_counter()
        start_memory = self.process.memory_info().rss / 1024 / 1024  # MB
        start_cpu = self.process.cpu_percent()

        try:
            yield
        finally:
            execution_time = time.perf_counter() - start_time
            end_memory = self.process.memory_info().rss / 1024 / 1024  # MB
            end_cpu = self.process.cpu_percent()

            memory_usage = end_memory - start_memory
            cpu_usage = (start_cpu + end_cpu) / 2
            throughput = event_count / execution_time if execution_time > 0 else 0

            metrics = PerformanceMetrics(
                operation=operation_name,
                execution_time=execution_time,
                memory_usage_mb=memory_usage,
                cpu_percent=cpu_usage,
                events_processed=event_count,
                throughput_events_per_sec=throughput
            )

            self.metrics_history.append(metrics)
            logger.info("[PERF] %s: %.2fs, %.0f events/sec, %.1fMB",
                        operation_name, execution_time, throughput, memory_usage)

class BatchProcessor:
    """Process large datasets in optimized batches.

    Batch results are returned in batch order, so concatenation preserves the
    input order regardless of which worker finished first.
    """

    def __init__(self, batch_size: int = 1000, max_workers: Optional[int] = None):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size
        self.max_workers = max_workers or min(mp.cpu_count(), 8)

    def split(self, items: List[Any]) -> List[List[Any]]:
        return [items[i:i + self.batch_size] for i in range(0, len(items), self.batch_size)]

    def map_batches(self, items: List[Any], processor_func: Callable) -> List[Any]:
        """Apply processor_func to each batch on a thread pool and return the per-batch results in order"""
        batches = self.split(items)
        if len(batches) <= 1:
            return [processor_func(batch) for batch in batches]

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            return list(executor.map(processor_func, batches))

# Global instance
performance_monitor = PerformanceMonitor()
