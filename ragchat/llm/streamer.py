"""
Generation streaming

Opens a streaming completion, walking the provider's candidate list until a
candidate produces its first chunk. Once a chunk is handed back the stream is
committed: later failures end the stream and are only logged.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from langchain_core.messages import BaseMessage

from ragchat.core.exceptions import GenerationError, ValidationError
from .providers import ProviderStrategy
from .resolver import ModelSelection

logger = logging.getLogger(__name__)

TEXT_PART_TYPES = (None, "text", "output_text", "text_delta")


@dataclass(frozen=True)
class TextDelta:
    text: str


def _flatten_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(_flatten_content(part) for part in content)
    if isinstance(content, dict):
        if content.get("type") not in TEXT_PART_TYPES:
            return ""
        return _flatten_content(content.get("text") or content.get("content") or "")
    return ""


def normalize_chunk(chunk: Any) -> Optional[TextDelta]:
    """
    Reduce any SDK chunk shape to a TextDelta

    Handles plain strings, message chunks whose content is a string or a list
    of parts, and dict payloads with ``text``/``content``/``delta`` keys.
    Returns None for chunks that carry no text (role headers, tool calls,
    usage records).
    """
    if chunk is None:
        return None
    if isinstance(chunk, str):
        text = chunk
    elif isinstance(chunk, dict):
        delta = chunk.get("delta")
        if isinstance(delta, dict):
            text = _flatten_content(delta.get("content") or delta.get("text"))
        else:
            text = _flatten_content(chunk.get("text") or chunk.get("content") or delta)
    else:
        content = getattr(chunk, "content", None)
        if content is None:
            content = getattr(chunk, "text", None)
        text = _flatten_content(content)
    return TextDelta(text) if text else None


async def _close_iterator(iterator: Any) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except RuntimeError as e:
        logger.warning(f"upstream stream did not close cleanly: {e}")


class CommittedStream:
    """
    A stream whose first delta has already arrived

    Iterating yields that delta and then the rest. ``completed``, ``failed``
    and ``cancelled`` describe how iteration ended.
    """

    def __init__(
        self,
        provider: str,
        model: str,
        iterator: Optional[AsyncIterator[Any]],
        first: Optional[TextDelta],
        attempted: List[str],
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.provider = provider
        self.model = model
        self.attempted = attempted
        self._iterator = iterator
        self._first = first
        self._cancel_event = cancel_event
        self._closed = iterator is None
        self.completed = iterator is None
        self.failed = False
        self.cancelled = False
        self.error: Optional[GenerationError] = None

    def _cancel_requested(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    async def __aiter__(self):
        try:
            if self._first is not None:
                yield self._first
            while not self._closed:
                if self._cancel_requested():
                    self.cancelled = True
                    logger.info(f"stream from {self.provider}:{self.model} stopped by client")
                    return
                try:
                    raw = await self._iterator.__anext__()
                except StopAsyncIteration:
                    self.completed = True
                    return
                except asyncio.CancelledError:
                    self.cancelled = True
                    raise
                except Exception as e:
                    self.failed = True
                    self.error = GenerationError(
                        f"Generation failed mid-stream: {e}",
                        provider=self.provider,
                        attempted=self.attempted,
                        committed=True,
                        cause=e,
                    )
                    logger.error(f"{self.provider}:{self.model} failed after output was sent: {e}")
                    return

                delta = normalize_chunk(raw)
                if delta is not None:
                    yield delta
        except GeneratorExit:
            self.cancelled = not (self.completed or self.failed)
            raise
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if not (self.completed or self.failed):
            self.cancelled = True
        if self._closed:
            return
        self._closed = True
        await _close_iterator(self._iterator)


class GenerationStreamer:
    """
    Candidate fallback state machine

    For each candidate: build the client, open the stream and wait for the
    first non-empty delta. A failure before that point moves on to the next
    candidate when the provider strategy calls it retryable.
    """

    def __init__(self, strategies: Dict[str, ProviderStrategy]):
        self.strategies = strategies

    async def open(
        self,
        selection: ModelSelection,
        messages: Sequence[BaseMessage],
        temperature: float = 0.0,
        max_tokens: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CommittedStream:
        strategy = self.strategies.get(selection.provider)
        if strategy is None:
            raise ValidationError(f"Unsupported provider: {selection.provider}", field="provider")

        candidates = strategy.candidates(selection.model) or [selection.model]
        attempted: List[str] = []

        for index, candidate in enumerate(candidates):
            attempted.append(candidate)
            iterator = None
            try:
                client = strategy.create_chat_model(candidate, temperature=temperature, max_tokens=max_tokens)
                iterator = client.astream(list(messages)).__aiter__()
                first, exhausted = await self._first_delta(iterator)
            except asyncio.CancelledError:
                await _close_iterator(iterator)
                raise
            except Exception as e:
                await _close_iterator(iterator)
                has_next = index + 1 < len(candidates)
                if has_next and strategy.is_retryable(candidate, e):
                    logger.warning(
                        f"{selection.provider}:{candidate} failed before output ({e}); "
                        f"retrying with {candidates[index + 1]}"
                    )
                    continue
                raise GenerationError(
                    f"Generation failed: {e}",
                    provider=selection.provider,
                    attempted=attempted,
                    cause=e,
                )

            if candidate != selection.model:
                logger.info(f"{selection.provider}: streaming from fallback candidate {candidate}")
            return CommittedStream(
                provider=selection.provider,
                model=candidate,
                iterator=None if exhausted else iterator,
                first=first,
                attempted=attempted,
                cancel_event=cancel_event,
            )

        raise GenerationError(
            "No model candidates available",
            provider=selection.provider,
            attempted=attempted,
        )

    @staticmethod
    async def _first_delta(iterator: AsyncIterator[Any]):
        """Pull until the first text-bearing chunk; returns ``(delta, exhausted)``"""
        while True:
            try:
                raw = await iterator.__anext__()
            except StopAsyncIteration:
                return None, True
            delta = normalize_chunk(raw)
            if delta is not None:
                return delta, False
