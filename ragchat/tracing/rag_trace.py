"""
Per-turn trace

Collects timed steps for one chat turn. The active trace lives in a
ContextVar so pipeline stages can open steps without threading the object
through every call.
"""
import logging
import time
import uuid
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime
from contextvars import ContextVar
import json

logger = logging.getLogger(__name__)

_turn_trace: ContextVar[Optional["TurnTrace"]] = ContextVar("turn_trace", default=None)

MAX_LOGGED_VALUE = 200


@dataclass
class TraceStep:
    name: str
    started_at: float
    ended_at: Optional[float] = None
    duration_ms: Optional[float] = None
    status: str = "running"
    attributes: Dict[str, Any] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def finish(self, output: Dict[str, Any] = None, error: str = None, status: str = None):
        self.ended_at = time.time()
        self.duration_ms = (self.ended_at - self.started_at) * 1000
        if output:
            self.output.update(output)
        if error:
            self.error = error
        self.status = status or ("error" if error else "completed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "durationMs": self.duration_ms,
            "status": self.status,
            "attributes": self.attributes,
            "output": self.output,
            "error": self.error,
        }


@dataclass
class TurnTrace:
    """Steps and observations recorded for one chat turn"""
    trace_id: str
    engine: str
    question: str
    started_at: float
    steps: List[TraceStep] = field(default_factory=list)
    observations: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def start_step(self, name: str, attributes: Dict[str, Any] = None) -> TraceStep:
        step = TraceStep(name=name, started_at=time.time(), attributes=attributes or {})
        self.steps.append(step)
        logger.debug(f"[trace:{self.trace_id[:8]}] start {name} {_preview(step.attributes)}")
        return step

    def finish_step(self, step: TraceStep, output: Dict[str, Any] = None, error: str = None, status: str = None):
        step.finish(output, error, status)
        if step.error:
            logger.warning(f"[trace:{self.trace_id[:8]}] {step.name} failed after {step.duration_ms:.1f}ms: {step.error}")
        else:
            logger.debug(
                f"[trace:{self.trace_id[:8]}] end {step.name} "
                f"{step.duration_ms:.1f}ms {step.status} {_preview(step.output)}"
            )

    def observe(self, name: str, payload: Dict[str, Any]) -> None:
        self.observations.append({"name": name, "at": time.time(), "payload": payload})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "traceId": self.trace_id,
            "engine": self.engine,
            "question": self.question,
            "startedAt": datetime.fromtimestamp(self.started_at).isoformat(),
            "durationMs": (time.time() - self.started_at) * 1000,
            "steps": [s.to_dict() for s in self.steps],
            "observations": self.observations,
            "metadata": self.metadata,
        }


def _truncate(value: Any) -> Any:
    if isinstance(value, str) and len(value) > MAX_LOGGED_VALUE:
        return value[:MAX_LOGGED_VALUE] + "..."
    if isinstance(value, dict):
        return {k: _truncate(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return f"[{len(value)} items]"
    return value


def _preview(data: Dict[str, Any]) -> str:
    if not data:
        return ""
    return json.dumps(_truncate(data), ensure_ascii=False, default=str)


def start_turn_trace(question: str, engine: str, metadata: Dict[str, Any] = None) -> TurnTrace:
    trace = TurnTrace(
        trace_id=str(uuid.uuid4()),
        engine=engine,
        question=question,
        started_at=time.time(),
        metadata=metadata or {},
    )
    _turn_trace.set(trace)
    logger.info(f"[trace:{trace.trace_id[:8]}] turn started on {engine} engine")
    return trace


def get_turn_trace() -> Optional[TurnTrace]:
    return _turn_trace.get()


def end_turn_trace(trace: Optional[TurnTrace] = None, status: str = "completed", error: str = None) -> Optional[Dict[str, Any]]:
    """Close the trace and return its serialized form"""
    trace = trace or _turn_trace.get()
    if trace is None:
        return None

    trace.metadata["status"] = status
    elapsed = (time.time() - trace.started_at) * 1000
    if error:
        trace.metadata["error"] = error
        logger.error(f"[trace:{trace.trace_id[:8]}] turn failed after {elapsed:.1f}ms: {error}")
    else:
        logger.info(f"[trace:{trace.trace_id[:8]}] turn {status} in {elapsed:.1f}ms")

    if _turn_trace.get() is trace:
        _turn_trace.set(None)
    return trace.to_dict()


class TraceStepScope:
    """
    Context manager around one step of the active trace

    Usable with ``with`` and ``async with``; a no-op when no trace is active.
    Exceptions are recorded on the step and re-raised.
    """

    def __init__(self, name: str, attributes: Dict[str, Any] = None):
        self.name = name
        self.attributes = attributes or {}
        self.trace = get_turn_trace()
        self.step: Optional[TraceStep] = None
        self._output: Dict[str, Any] = {}

    def record(self, **output) -> None:
        self._output.update(output)

    def __enter__(self):
        if self.trace is not None:
            self.step = self.trace.start_step(self.name, self.attributes)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.trace is not None and self.step is not None:
            status = None
            error = None
            if exc_type is not None:
                if issubclass(exc_type, BaseException) and not issubclass(exc_type, Exception):
                    status = "cancelled"
                else:
                    error = str(exc_val)
            self.trace.finish_step(self.step, self._output, error, status)
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)


def trace_step(name: str, **attributes) -> TraceStepScope:
    return TraceStepScope(name, attributes)
