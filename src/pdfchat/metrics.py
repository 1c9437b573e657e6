"""
Turn metrics collector shared by the conversation session and the relay service.

Tracks: latency, time to first token, throughput, memory usage, cost per turn,
failures by outcome kind.
Logs structured metrics to <METRICS_DIR>/metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import psutil

from .config import METRICS_DIR
from .observability import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# OpenAI pricing per million tokens (USD).  Update as needed.
# ---------------------------------------------------------------------------
_OPENAI_PRICING: dict[str, dict[str, float]] = {
    "gpt-4o-mini":   {"input": 0.15,  "output": 0.60},
    "gpt-4o":        {"input": 2.50,  "output": 10.00},
    "gpt-4.1-mini":  {"input": 0.40,  "output": 1.60},
    "gpt-4.1":       {"input": 2.00,  "output": 8.00},
    "_default":      {"input": 0.15,  "output": 0.60},
}


def _get_pricing(model: str) -> dict[str, float]:
    return _OPENAI_PRICING.get(model, _OPENAI_PRICING["_default"])


class MetricsCollector:
    """Thread-safe turn metrics tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = METRICS_DIR):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        # Counters.
        self._total_requests: int = 0
        self._total_latency_ms: float = 0.0
        self._min_latency_ms: float = float("inf")
        self._max_latency_ms: float = 0.0
        self._first_token_samples: int = 0
        self._total_first_token_ms: float = 0.0
        self._failures: Counter[str] = Counter()

        # Token / cost tracking.
        self._total_input_tokens: int = 0
        self._total_output_tokens: int = 0
        self._total_cost_usd: float = 0.0

        # Logging.
        self._log_dir = Path(log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / "metrics.jsonl"
        # Single worker keeps JSONL lines in record order.
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="metrics-writer")

        # Process handle for memory tracking.
        self._process = psutil.Process(os.getpid())

    @property
    def log_path(self) -> Path:
        return self._log_path

    def record_request(
        self,
        latency_ms: float,
        success: bool,
        input_tokens: int = 0,
        output_tokens: int = 0,
        model: str = "",
        *,
        first_token_ms: float | None = None,
        outcome: str = "",
        source: str = "session",
    ) -> None:
        """Records a single turn's outcome and appends to JSONL log."""
        pricing = _get_pricing(model)
        cost_usd = (
            (input_tokens / 1_000_000) * pricing["input"]
            + (output_tokens / 1_000_000) * pricing["output"]
        )
        outcome_label = outcome or ("completed" if success else "failed")

        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "source": source,
            "outcome": outcome_label,
            "latency_ms": round(latency_ms, 2),
            "first_token_ms": round(first_token_ms, 2) if first_token_ms is not None else None,
            "success": success,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "cost_usd": round(cost_usd, 8),
        }

        with self._lock:
            self._total_requests += 1
            self._total_latency_ms += latency_ms
            if latency_ms < self._min_latency_ms:
                self._min_latency_ms = latency_ms
            if latency_ms > self._max_latency_ms:
                self._max_latency_ms = latency_ms
            if first_token_ms is not None:
                self._first_token_samples += 1
                self._total_first_token_ms += first_token_ms
            if not success:
                self._failures[outcome_label] += 1
            self._total_input_tokens += input_tokens
            self._total_output_tokens += output_tokens
            self._total_cost_usd += cost_usd

        # File I/O happens on the writer thread so callers on an event loop never block.
        self._writer.submit(self._append_entry, entry)

    def _append_entry(self, entry: dict) -> None:
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError as exc:
            logger.warning("metrics_write_failed", path=str(self._log_path), error=str(exc))

    def flush(self, timeout: float | None = None) -> None:
        """Blocks until every entry recorded so far is on disk."""
        self._writer.submit(lambda: None).result(timeout=timeout)

    def get_summary(self) -> dict:
        """Returns comprehensive metrics snapshot."""
        with self._lock:
            total = self._total_requests
            avg_lat = (self._total_latency_ms / total) if total > 0 else 0.0
            min_lat = self._min_latency_ms if total > 0 else 0.0
            max_lat = self._max_latency_ms if total > 0 else 0.0
            ttft_samples = self._first_token_samples
            avg_ttft = (self._total_first_token_ms / ttft_samples) if ttft_samples > 0 else 0.0
            failures = dict(self._failures)
            in_tok = self._total_input_tokens
            out_tok = self._total_output_tokens
            cost = self._total_cost_usd

        errors = sum(failures.values())

        # Throughput.
        uptime_s = time.time() - self._start_time
        throughput_rps = (total / uptime_s) if uptime_s > 0 else 0.0

        # Memory usage.
        mem_info = self._process.memory_info()
        mem_rss_mb = mem_info.rss / (1024 * 1024)
        mem_vms_mb = mem_info.vms / (1024 * 1024)

        # Cost.
        avg_cost = (cost / total) if total > 0 else 0.0

        return {
            "latency": {
                "avg_ms": round(avg_lat, 2),
                "min_ms": round(min_lat, 2),
                "max_ms": round(max_lat, 2),
                "avg_first_token_ms": round(avg_ttft, 2),
            },
            "throughput": {
                "total_requests": total,
                "requests_per_second": round(throughput_rps, 4),
                "uptime_seconds": round(uptime_s, 1),
            },
            "memory": {
                "rss_mb": round(mem_rss_mb, 1),
                "vms_mb": round(mem_vms_mb, 1),
            },
            "cost": {
                "total_usd": round(cost, 6),
                "avg_per_query_usd": round(avg_cost, 6),
                "total_input_tokens": in_tok,
                "total_output_tokens": out_tok,
            },
            "errors": {
                "count": errors,
                "rate_percent": round((errors / total * 100) if total > 0 else 0.0, 2),
                "by_outcome": failures,
            },
        }


# Module-level singleton used by the session and the API server.
metrics_collector = MetricsCollector()
