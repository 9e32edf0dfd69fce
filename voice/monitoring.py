"""
Periodic latency publishing and health checks for the voice engine.

Logs aggregate turn-latency statistics via structlog on a fixed interval
and exposes a health snapshot for whatever surface embeds the engine.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional
from datetime import datetime, timezone

from voice.latency import LatencyObserver, Milestone

logger = structlog.get_logger()


class VoiceMetricsPublisher:
    """Publishes LatencyObserver aggregates periodically."""

    def __init__(
        self,
        latency: LatencyObserver,
        publish_interval_s: int = 30,
        degraded_first_token_ms: float = 1500,
    ):
        self.latency = latency
        self.publish_interval_s = publish_interval_s
        self.degraded_first_token_ms = degraded_first_token_ms
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._publish_loop(), name="metrics_publisher")
        logger.info("metrics_publisher_started", interval=self.publish_interval_s)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _publish_loop(self) -> None:
        while self._running:
            try:
                self.publish()
            except Exception as e:
                logger.error("metrics_publish_error", error=str(e))
            await asyncio.sleep(self.publish_interval_s)

    def publish(self) -> list[dict[str, Any]]:
        metrics = self.build_metric_data(self.latency.get_all_stats())
        for m in metrics:
            logger.info("voice_metric", name=m["name"], value=m["value"], unit=m["unit"])
        return metrics

    def build_metric_data(self, stats: dict[str, Any]) -> list[dict[str, Any]]:
        """Flatten aggregate stats into name/value/unit records."""
        now = datetime.now(timezone.utc).isoformat()
        metrics = [{
            "name": "CompletedTurns",
            "value": stats.get("turns", 0),
            "unit": "Count",
            "timestamp": now,
        }]

        for milestone in Milestone:
            milestone_stats = stats.get(milestone.value, {})
            for percentile in ("p50_ms", "p90_ms", "p99_ms"):
                value = milestone_stats.get(percentile, 0)
                if value > 0:
                    metrics.append({
                        "name": f"Turn_{milestone.value}_{percentile}",
                        "value": value,
                        "unit": "Milliseconds",
                        "timestamp": now,
                    })

        return metrics

    def get_health(self) -> dict[str, Any]:
        """Health check data for the voice subsystem."""
        stats = self.latency.get_all_stats()
        first_token_p90 = stats.get(Milestone.FIRST_TOKEN.value, {}).get("p90_ms", 0)

        return {
            "status": "healthy" if first_token_p90 < self.degraded_first_token_ms else "degraded",
            "turns": stats.get("turns", 0),
            "budget_violations": stats.get("violations", 0),
            "latency_p90_ms": {
                m.value: stats.get(m.value, {}).get("p90_ms", 0) for m in Milestone
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
