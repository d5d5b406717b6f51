"""
Statistics over output records

Records are accumulated as they are read and summarized in one finalize()
pass, because percentiles and the concurrency sweep need sorted data.
"""

import heapq
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple

from rpcbench.records import OutputRecord, parse_output_record

logger = logging.getLogger(__name__)

US_PER_SECOND = 1_000_000


def percentile(sorted_values: List[int], k: float) -> int:
    """Sample at index floor(k/100 * n), clamped to the last index"""
    if not sorted_values:
        return 0
    index = min(math.floor(k / 100 * len(sorted_values)), len(sorted_values) - 1)
    return sorted_values[index]


def max_concurrency(intervals: List[Tuple[int, int]]) -> int:
    """
    Largest number of intervals open at any interval's start

    An earlier interval counts as open when its end is strictly greater than
    the current start. Ties in start keep input order (stable sort).
    """
    ends: List[int] = []
    best = 0
    for start, end in sorted(intervals, key=lambda interval: interval[0]):
        while ends and ends[0] <= start:
            heapq.heappop(ends)
        heapq.heappush(ends, end)
        best = max(best, len(ends))
    return best


@dataclass
class StatsSummary:
    """Finalized statistics; durations are seconds"""

    calls: int = 0
    ok: int = 0
    error: int = 0
    batch: int = 0
    single: int = 0
    missing_metadata: int = 0
    elapsed: float = 0.0
    rps: float = 0.0
    outgoing_bytes: int = 0
    incoming_bytes: int = 0
    outgoing_bps: float = 0.0
    incoming_bps: float = 0.0
    latency: Dict[str, float] = field(default_factory=dict)
    max_concurrency: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "elapsed": self.elapsed,
            "rps": self.rps,
            "avg_latency": self.latency.get("mean", 0.0),
            "detail": {
                "count": {
                    "calls": self.calls,
                    "ok": self.ok,
                    "error": self.error,
                    "batch": self.batch,
                    "single": self.single,
                    "missing_metadata": self.missing_metadata,
                },
                "size": {
                    "outgoing_bytes": self.outgoing_bytes,
                    "incoming_bytes": self.incoming_bytes,
                    "outgoing_bps": self.outgoing_bps,
                    "incoming_bps": self.incoming_bps,
                },
                "latency": dict(self.latency),
                "concurrency": {"max": self.max_concurrency},
            },
        }


class StatsAccumulator:
    """
    Collects counts, intervals and byte totals from OutputRecords

    Usage:
        stats = StatsAccumulator()
        for line in sys.stdin:
            stats.add_line(line)
        print(serialize(stats.finalize().to_dict()))
    """

    def __init__(self) -> None:
        self.calls = 0
        self.ok = 0
        self.error = 0
        self.batch = 0
        self.single = 0
        self.missing_metadata = 0
        self.intervals: List[Tuple[int, int]] = []
        self.outgoing_bytes = 0
        self.incoming_bytes = 0

    def add(self, record: OutputRecord) -> None:
        response = record.response
        self.calls += 1
        if response.is_error:
            self.error += 1
        else:
            self.ok += 1
        if response.is_batch:
            self.batch += 1
        else:
            self.single += 1

        metadata = record.metadata
        if metadata is None:
            self.missing_metadata += 1
            return

        self.intervals.append((metadata.start_time_us, metadata.end_time_us))
        self.outgoing_bytes += metadata.request_byte_size
        self.incoming_bytes += response.byte_size

    def add_line(self, line: str) -> None:
        """Parse one output line and add it (blank lines are skipped)"""
        if line.strip():
            self.add(parse_output_record(line))

    def extend(self, records: Iterable[OutputRecord]) -> None:
        for record in records:
            self.add(record)

    def finalize(self) -> StatsSummary:
        summary = StatsSummary(
            calls=self.calls,
            ok=self.ok,
            error=self.error,
            batch=self.batch,
            single=self.single,
            missing_metadata=self.missing_metadata,
            outgoing_bytes=self.outgoing_bytes,
            incoming_bytes=self.incoming_bytes,
        )
        if self.missing_metadata:
            logger.warning(f"{self.missing_metadata} record(s) carry no metadata and were not timed")
        if not self.intervals:
            summary.latency = _latency_summary([])
            return summary

        duration_us = max(end for _, end in self.intervals) - min(start for start, _ in self.intervals)
        duration = duration_us / US_PER_SECOND
        summary.elapsed = duration
        if duration > 0:
            summary.rps = len(self.intervals) / duration
            summary.outgoing_bps = self.outgoing_bytes * 8 / duration
            summary.incoming_bps = self.incoming_bytes * 8 / duration

        summary.latency = _latency_summary(sorted(end - start for start, end in self.intervals))
        summary.max_concurrency = max_concurrency(self.intervals)
        return summary


def _latency_summary(latencies_us: List[int]) -> Dict[str, float]:
    if not latencies_us:
        return {"min": 0.0, "p25": 0.0, "p50": 0.0, "p75": 0.0, "max": 0.0, "mean": 0.0}
    return {
        "min": latencies_us[0] / US_PER_SECOND,
        "p25": percentile(latencies_us, 25) / US_PER_SECOND,
        "p50": percentile(latencies_us, 50) / US_PER_SECOND,
        "p75": percentile(latencies_us, 75) / US_PER_SECOND,
        "max": latencies_us[-1] / US_PER_SECOND,
        "mean": sum(latencies_us) / len(latencies_us) / US_PER_SECOND,
    }
