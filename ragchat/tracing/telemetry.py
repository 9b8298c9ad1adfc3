"""
Telemetry emission

Sampling is decided once per turn. Emission runs as a background task so a
slow or failing sink never touches the response path.
"""
import asyncio
import json
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from ragchat.rag.rag_types import RetrievedItem
from .rag_trace import TurnTrace, end_turn_trace

logger = logging.getLogger(__name__)

DETAIL_LEVELS = ("minimal", "standard", "verbose")


@dataclass(frozen=True)
class TelemetryDecision:
    should_emit: bool
    include_config: bool
    include_retrieval: bool


def decide_telemetry_mode(
    sample_rate: float,
    detail: str = "standard",
    rng: Callable[[], float] = random.random,
) -> TelemetryDecision:
    """
    One random draw per turn. A rate of 0 never emits; a rate of 1 always
    does. When the turn is not sampled every flag is off.
    """
    rate = max(0.0, min(1.0, float(sample_rate or 0.0)))
    draw = rng()
    should_emit = rate > 0 and draw <= rate
    if not should_emit:
        return TelemetryDecision(False, False, False)

    level = (detail or "standard").strip().lower()
    if level not in DETAIL_LEVELS:
        level = "standard"
    return TelemetryDecision(
        should_emit=True,
        include_config=level != "minimal",
        include_retrieval=level == "verbose",
    )


def retrieval_details(items: Sequence[RetrievedItem]) -> List[Dict[str, Any]]:
    return [
        {
            "id": item.id,
            "docId": item.doc_id,
            "title": item.title,
            "sourceUrl": item.source_url,
            "similarity": item.similarity,
            "rerankScore": item.metadata.get("rerank_score"),
            "chars": len(item.chunk),
        }
        for item in items
    ]


class TelemetrySink(ABC):

    @abstractmethod
    async def emit(self, event: Dict[str, Any]) -> None:
        pass


class LoggingTelemetrySink(TelemetrySink):
    """Writes each event as one JSON log line"""

    def __init__(self, logger_name: str = "ragchat.telemetry"):
        self._logger = logging.getLogger(logger_name)

    async def emit(self, event: Dict[str, Any]) -> None:
        self._logger.info(json.dumps(event, ensure_ascii=False, default=str))


class TelemetryEmitter:

    def __init__(
        self,
        sink: TelemetrySink,
        sample_rate: float = 1.0,
        detail_level: str = "standard",
        rng: Callable[[], float] = random.random,
    ):
        self.sink = sink
        self.sample_rate = sample_rate
        self.detail_level = detail_level
        self._rng = rng
        self._pending: Set[asyncio.Task] = set()

    def decide(self) -> TelemetryDecision:
        return decide_telemetry_mode(self.sample_rate, self.detail_level, self._rng)

    def observe(self, trace: Optional[TurnTrace], decision: TelemetryDecision, name: str, payload: Dict[str, Any]) -> None:
        if trace is None or not decision.should_emit:
            return
        trace.observe(name, payload)

    def flush(
        self,
        trace: Optional[TurnTrace],
        decision: TelemetryDecision,
        status: str = "completed",
        config_snapshot: Optional[Dict[str, Any]] = None,
        retrieved: Optional[Sequence[RetrievedItem]] = None,
        error: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """Close the trace and hand it to the sink without waiting"""
        event = end_turn_trace(trace, status=status, error=error)
        if event is None or not decision.should_emit:
            return None

        if decision.include_config and config_snapshot is not None:
            event["config"] = config_snapshot
        if decision.include_retrieval and retrieved is not None:
            event["retrieval"] = retrieval_details(retrieved)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("telemetry dropped: no running event loop")
            return None

        task = loop.create_task(self.sink.emit(event))
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"telemetry emit failed: {error}")

    async def drain(self) -> None:
        """Wait for in-flight emissions; used on shutdown"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
