"""
Performance metrics collection for calls.

Metrics live in memory for the lifetime of the process; nothing is persisted.
"""

import time
from dataclasses import dataclass, asdict, field
from datetime import datetime
from typing import Dict, List, Optional, Any
import structlog

logger = structlog.get_logger()


@dataclass
class LatencyMetrics:
    """Latency statistics for a single measurement."""
    min: float
    max: float
    avg: float
    p50: float
    p95: float
    p99: float
    samples: int


@dataclass
class CallMetrics:
    """Metrics for a single call."""
    call_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    total_interactions: int = 0
    chat_latencies: List[float] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    interruptions: int = 0
    capture_restarts: int = 0


class MetricsCollector:
    """
    Collects latency, error and interruption counts for the active call.

    Every ``record_*`` method is a no-op when no call is being tracked.
    """

    def __init__(self):
        self.current_call: Optional[CallMetrics] = None
        self.call_start_time: Optional[float] = None

    def start_call(self, call_id: str) -> None:
        logger.debug("Starting metrics collection", call_id=call_id)
        self.current_call = CallMetrics(call_id=call_id, start_time=datetime.now())
        self.call_start_time = time.time()

    def end_call(self) -> None:
        if not self.current_call:
            logger.warning("No active call to end")
            return

        self.current_call.end_time = datetime.now()
        logger.debug("Ending metrics collection",
                     call_id=self.current_call.call_id,
                     interactions=self.current_call.total_interactions)

    def record_chat_latency(self, latency_ms: float) -> None:
        """Record time from request dispatch to reply."""
        if self.current_call:
            self.current_call.chat_latencies.append(latency_ms)

    def record_interaction(self) -> None:
        """Record a completed user/bot exchange."""
        if self.current_call:
            self.current_call.total_interactions += 1

    def record_interruption(self) -> None:
        """Record in-flight work superseded by newer user input."""
        if self.current_call:
            self.current_call.interruptions += 1

    def record_capture_restart(self) -> None:
        if self.current_call:
            self.current_call.capture_restarts += 1

    def record_error(self, component: str, error: str, metadata: Optional[Dict] = None) -> None:
        """Record an error occurrence."""
        if self.current_call:
            self.current_call.errors.append({
                "timestamp": datetime.now().isoformat(),
                "component": component,
                "error": error,
                "metadata": metadata or {},
            })

    def _calculate_latency_stats(self, latencies: List[float]) -> LatencyMetrics:
        """Calculate statistical metrics for a list of latencies."""
        if not latencies:
            return LatencyMetrics(0, 0, 0, 0, 0, 0, 0)

        sorted_latencies = sorted(latencies)
        count = len(sorted_latencies)

        def percentile(p: float) -> float:
            index = min(int(p * count), count - 1)
            return sorted_latencies[index]

        return LatencyMetrics(
            min=sorted_latencies[0],
            max=sorted_latencies[-1],
            avg=sum(sorted_latencies) / count,
            p50=percentile(0.5),
            p95=percentile(0.95),
            p99=percentile(0.99),
            samples=count,
        )

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of the current call's metrics."""
        if not self.current_call:
            return {"error": "No active call"}

        call = self.current_call
        if call.end_time:
            duration = (call.end_time - call.start_time).total_seconds()
        else:
            duration = time.time() - self.call_start_time

        errors_by_component: Dict[str, int] = {}
        for error in call.errors:
            component = error["component"]
            errors_by_component[component] = errors_by_component.get(component, 0) + 1

        return {
            "call_id": call.call_id,
            "call_duration_seconds": duration,
            "total_interactions": call.total_interactions,
            "chat_latency_ms": asdict(self._calculate_latency_stats(call.chat_latencies)),
            "total_errors": len(call.errors),
            "errors_by_component": errors_by_component,
            "interruptions": call.interruptions,
            "capture_restarts": call.capture_restarts,
            "error_rate": len(call.errors) / max(1, call.total_interactions),
        }
