"""
Turn latency, error and fallback metrics for conversation sessions.
"""

import json
import time
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Any
import structlog

logger = structlog.get_logger()

STAGES = ("stt", "ai", "tts", "e2e")


@dataclass
class LatencyMetrics:
    """Latency statistics for one pipeline stage."""
    min: float
    max: float
    avg: float
    p50: float
    p95: float
    p99: float
    samples: int


@dataclass
class FallbackRecord:
    """One fall-through from a provider tier to the next."""
    chain: str
    tier: str
    error: str
    timestamp: str


@dataclass
class SessionMetrics:
    """Metrics for a single conversation session."""
    session_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    completed_turns: int = 0
    latencies: Dict[str, List[float]] = field(default_factory=lambda: {s: [] for s in STAGES})
    errors: List[Dict[str, Any]] = field(default_factory=list)
    fallbacks: List[FallbackRecord] = field(default_factory=list)
    served_tiers: Dict[str, Dict[str, int]] = field(default_factory=dict)


class MetricsCollector:
    """
    Collects per-session metrics for the conversation pipeline.

    Recording calls are no-ops while no session is active, so providers and
    chains can report unconditionally.
    """

    def __init__(self, storage_path: Optional[Path] = None):
        self.storage_path = Path(storage_path) if storage_path else Path.home() / ".aura" / "metrics"
        self.current_session: Optional[SessionMetrics] = None
        self._started_monotonic: Optional[float] = None

    def start_session(self, session_id: str) -> None:
        logger.debug("Starting metrics collection", session_id=session_id)
        self.current_session = SessionMetrics(
            session_id=session_id,
            start_time=datetime.now(timezone.utc),
        )
        self._started_monotonic = time.monotonic()

    def end_session(self) -> None:
        if not self.current_session:
            logger.warning("No active metrics session to end")
            return
        self.current_session.end_time = datetime.now(timezone.utc)
        logger.debug("Ending metrics collection",
                     session_id=self.current_session.session_id,
                     turns=self.current_session.completed_turns)

    def record_latency(self, stage: str, latency_ms: float) -> None:
        """Record the latency of one pipeline stage (stt, ai, tts or e2e)."""
        if stage not in STAGES:
            raise ValueError(f"Unknown stage: {stage}")
        if self.current_session:
            self.current_session.latencies[stage].append(latency_ms)

    def record_turn(self) -> None:
        if self.current_session:
            self.current_session.completed_turns += 1

    def record_error(self, component: str, error: str, metadata: Optional[Dict] = None) -> None:
        if self.current_session:
            self.current_session.errors.append({
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "component": component,
                "error": error,
                "metadata": metadata or {},
            })

    def record_fallback(self, chain: str, tier: str, error: str) -> None:
        """Record that ``tier`` of ``chain`` failed and the next tier was tried."""
        if self.current_session:
            self.current_session.fallbacks.append(FallbackRecord(
                chain=chain,
                tier=tier,
                error=error,
                timestamp=datetime.now(timezone.utc).isoformat(),
            ))

    def record_served(self, chain: str, tier: str) -> None:
        """Record which tier ultimately served a chain invocation."""
        if self.current_session:
            counts = self.current_session.served_tiers.setdefault(chain, {})
            counts[tier] = counts.get(tier, 0) + 1

    def _calculate_latency_stats(self, latencies: List[float]) -> LatencyMetrics:
        if not latencies:
            return LatencyMetrics(0, 0, 0, 0, 0, 0, 0)

        sorted_latencies = sorted(latencies)
        count = len(sorted_latencies)

        def percentile(p: float) -> float:
            return sorted_latencies[min(int(p * count), count - 1)]

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
        """Get a summary of the current session metrics."""
        if not self.current_session:
            return {"error": "No active session"}

        session = self.current_session
        duration = time.monotonic() - self._started_monotonic if self._started_monotonic else 0.0

        summary = {
            "session_id": session.session_id,
            "session_duration_seconds": duration,
            "completed_turns": session.completed_turns,
            "total_errors": len(session.errors),
            "total_fallbacks": len(session.fallbacks),
            "error_rate": len(session.errors) / max(1, session.completed_turns),
            "served_tiers": session.served_tiers,
        }
        for stage in STAGES:
            summary[f"{stage}_latency_ms"] = asdict(self._calculate_latency_stats(session.latencies[stage]))
        return summary

    def save_metrics(self) -> Optional[Path]:
        """Write the current session metrics as JSON and return the file path."""
        if not self.current_session:
            logger.warning("No metrics session to save")
            return None

        session = self.current_session
        try:
            self.storage_path.mkdir(parents=True, exist_ok=True)
            filename = f"{session.session_id}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"
            filepath = self.storage_path / filename

            data = asdict(session)
            data["start_time"] = session.start_time.isoformat()
            data["end_time"] = session.end_time.isoformat() if session.end_time else None
            data["summary"] = self.get_summary()

            with open(filepath, "w") as f:
                json.dump(data, f, indent=2)

            logger.info("Metrics saved", filepath=str(filepath))
            return filepath

        except OSError as e:
            logger.error("Failed to save metrics", error=str(e))
            return None
