"""
Chat stream registry

Every in-flight chat stream registers here under its ``X-Chat-Session`` id.
Stopping a stream, whether the client went away or the interrupt endpoint
was called, only sets the session's cancel event; the committed stream checks
the event before pulling each delta.
"""

import asyncio
import time
from typing import Dict, List, Optional
from dataclasses import dataclass, field


@dataclass
class ChatStreamSession:
    session_id: str
    engine: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.monotonic)
    # candidate that produced the first delta, unset while opening
    model: Optional[str] = None
    interrupted: bool = False

    def snapshot(self) -> Dict[str, object]:
        return {
            "session_id": self.session_id,
            "engine": self.engine,
            "model": self.model,
            "is_interrupted": self.interrupted,
            "elapsed_ms": round((time.monotonic() - self.started_at) * 1000, 1),
        }


class StreamInterruptManager:
    """Registry of active chat streams, keyed by session id"""

    def __init__(self):
        self._sessions: Dict[str, ChatStreamSession] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, session_id: str, engine: str) -> ChatStreamSession:
        async with self._lock:
            session = ChatStreamSession(session_id=session_id, engine=engine)
            self._sessions[session_id] = session
            return session

    async def interrupt(self, session_id: str) -> bool:
        """Returns False when the session already finished or never existed"""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.interrupted = True
            session.cancel_event.set()
            return True

    def discard_session(self, session_id: str) -> None:
        # lock-free: runs from generator cleanup while the task is cancelled
        self._sessions.pop(session_id, None)

    def get_active_sessions(self) -> List[Dict[str, object]]:
        return [session.snapshot() for session in self._sessions.values()]


_manager: Optional[StreamInterruptManager] = None


def get_stream_interrupt_manager() -> StreamInterruptManager:
    global _manager
    if _manager is None:
        _manager = StreamInterruptManager()
    return _manager
