from .rag_trace import (
    TurnTrace,
    TraceStepScope,
    start_turn_trace,
    end_turn_trace,
    get_turn_trace,
    trace_step,
)
from .telemetry import (
    TelemetryDecision,
    TelemetryEmitter,
    TelemetrySink,
    LoggingTelemetrySink,
    decide_telemetry_mode,
)

__all__ = [
    "TurnTrace",
    "TraceStepScope",
    "start_turn_trace",
    "end_turn_trace",
    "get_turn_trace",
    "trace_step",
    "TelemetryDecision",
    "TelemetryEmitter",
    "TelemetrySink",
    "LoggingTelemetrySink",
    "decide_telemetry_mode",
]
