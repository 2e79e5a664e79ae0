"""Incremental SSE rewriter for NIM chat/completions streams.

Upstream frames look like ``data: {"choices":[{"index":0,"delta":{...}}]}``
separated by a blank line and closed by ``data: [DONE]``. NIM reports
reasoning tokens in ``delta.reasoning_content``; OpenAI callers only read
``delta.content``. Each frame is rewritten so that a run of reasoning
fragments is folded into ``content`` between ``<think>\\n`` and
``</think>\\n\\n``. Frames this module cannot understand are forwarded
byte-for-byte.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple

import httpx

from .errors import StreamTransportFailure
from .logger import get_logger
from .transform import THINK_CLOSE, THINK_OPEN


logger = get_logger("streaming")

FRAME_MARKER = b"data:"
FRAME_BOUNDARY = b"\n\n"
DONE_SENTINEL = b"[DONE]"
_ENVELOPE_KEYS = ("id", "object", "created", "model")


class FrameReassembler:
    """Rebuilds boundary-terminated frames from arbitrarily split packets.

    Only the trailing incomplete frame is ever buffered.
    """

    def __init__(self) -> None:
        self._residual = b""

    @property
    def residual(self) -> bytes:
        return self._residual

    def feed(self, chunk: bytes) -> List[bytes]:
        if not chunk:
            return []
        self._residual += chunk
        segments = self._residual.split(FRAME_BOUNDARY)
        self._residual = segments.pop()
        return segments

    def flush(self) -> bytes:
        leftover, self._residual = self._residual, b""
        return leftover


@dataclass(frozen=True)
class DeltaEvent:
    choice_index: int
    reasoning_fragment: Optional[str] = None
    answer_fragment: Optional[str] = None
    is_terminal: bool = False


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _choice_index(choice: Dict[str, Any], position: int) -> int:
    index = choice.get("index")
    return index if isinstance(index, int) else position


def _delta_event(choice: Any, position: int) -> Optional[DeltaEvent]:
    if not isinstance(choice, dict) or not isinstance(choice.get("delta"), dict):
        return None
    delta = choice["delta"]
    return DeltaEvent(
        choice_index=_choice_index(choice, position),
        reasoning_fragment=_text(delta.get("reasoning_content")),
        answer_fragment=_text(delta.get("content")),
        is_terminal=choice.get("finish_reason") is not None,
    )


def _choices(chunk: Any) -> Optional[List[Any]]:
    if isinstance(chunk, dict) and isinstance(chunk.get("choices"), list):
        return chunk["choices"]
    return None


def parse_delta_events(chunk: Any) -> Tuple[DeltaEvent, ...]:
    events = (_delta_event(c, i) for i, c in enumerate(_choices(chunk) or []))
    return tuple(e for e in events if e is not None)


def merge_delta(event: DeltaEvent, reasoning_open: bool) -> Tuple[str, bool]:
    """Fold one delta into caller content; returns (content, reasoning_open)."""
    text = ""
    if event.reasoning_fragment:
        text = event.reasoning_fragment if reasoning_open else THINK_OPEN + event.reasoning_fragment
        reasoning_open = True
    if event.answer_fragment:
        if reasoning_open:
            text += THINK_CLOSE + event.answer_fragment
            reasoning_open = False
        else:
            text += event.answer_fragment
    return text, reasoning_open


def rewrite_chunk(
    chunk: Any,
    open_choices: FrozenSet[int],
    show_reasoning: bool = True,
) -> Tuple[Any, FrozenSet[int]]:
    """Return a rewritten copy of `chunk` and the new set of open reasoning runs.

    The input is never mutated. When the chunk carries no delta the very same
    object is returned so callers can forward the original bytes.
    """
    if not parse_delta_events(chunk):
        return chunk, open_choices

    opened = set(open_choices)
    choices = []
    for position, choice in enumerate(chunk["choices"]):
        event = _delta_event(choice, position)
        if event is None:
            choices.append(choice)
            continue
        delta = {k: v for k, v in choice["delta"].items() if k != "reasoning_content"}
        if show_reasoning:
            merged, is_open = merge_delta(event, event.choice_index in opened)
            if merged:
                delta["content"] = merged
            if is_open:
                opened.add(event.choice_index)
            else:
                opened.discard(event.choice_index)
        else:
            delta["content"] = event.answer_fragment or ""
        choices.append({**choice, "delta": delta})
    return {**chunk, "choices": choices}, frozenset(opened)


def encode_frame(data: Any) -> bytes:
    body = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return b"data: " + body.encode("utf-8") + FRAME_BOUNDARY


def frame_payload(segment: bytes) -> Optional[bytes]:
    if not segment.startswith(FRAME_MARKER):
        return None
    payload = segment[len(FRAME_MARKER):]
    if payload.startswith(b" "):
        payload = payload[1:]
    return payload


def error_event(message: str) -> bytes:
    return encode_frame(StreamTransportFailure(message).to_envelope())


class StreamTranscoder:
    """Per-request state machine: Idle -> Streaming -> Closed."""

    def __init__(self, show_reasoning: bool = True) -> None:
        self.show_reasoning = show_reasoning
        self.reassembler = FrameReassembler()
        self.open_choices: FrozenSet[int] = frozenset()
        self.closed = False
        self._envelope: Dict[str, Any] = {}

    @property
    def reasoning_open(self) -> bool:
        return bool(self.open_choices)

    def feed(self, chunk: bytes) -> List[bytes]:
        if self.closed:
            return []
        out: List[bytes] = []
        for segment in self.reassembler.feed(chunk):
            out.extend(self.transcode_frame(segment))
            if self.closed:
                break
        return out

    def transcode_frame(self, segment: bytes) -> List[bytes]:
        if self.closed:
            return []
        payload = frame_payload(segment)
        if payload is None:
            return []
        if payload.strip() == DONE_SENTINEL:
            out = self._close_reasoning()
            out.append(segment + FRAME_BOUNDARY)
            self.closed = True
            return out
        try:
            chunk = json.loads(payload)
        except ValueError:
            logger.debug("forwarding unparseable frame: %r", segment[:100])
            return [segment + FRAME_BOUNDARY]

        rewritten, open_choices = rewrite_chunk(chunk, self.open_choices, self.show_reasoning)
        if rewritten is chunk:
            return [segment + FRAME_BOUNDARY]
        try:
            frame = encode_frame(rewritten)
        except (TypeError, ValueError):
            logger.debug("forwarding frame that failed to re-encode: %r", segment[:100])
            return [segment + FRAME_BOUNDARY]
        self.open_choices = open_choices
        self._envelope = {k: chunk[k] for k in _ENVELOPE_KEYS if k in chunk}
        return [frame]

    def finish(self) -> List[bytes]:
        """Flush at end of transport; closes reasoning left open without [DONE]."""
        if self.closed:
            return []
        out: List[bytes] = []
        leftover = self.reassembler.flush()
        if leftover.strip():
            out.extend(self.transcode_frame(leftover))
        if not self.closed:
            out.extend(self._close_reasoning())
            self.closed = True
        return out

    def fail(self, message: str) -> List[bytes]:
        if self.closed:
            return []
        self.closed = True
        return [error_event(message)]

    def _close_reasoning(self) -> List[bytes]:
        if not self.show_reasoning or not self.open_choices:
            return []
        frames = [
            encode_frame({**self._envelope, "choices": [{"index": i, "delta": {"content": THINK_CLOSE}}]})
            for i in sorted(self.open_choices)
        ]
        self.open_choices = frozenset()
        return frames


async def transcode_stream(
    chunks: AsyncIterator[bytes],
    transcoder: StreamTranscoder,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[bytes]:
    """Pull upstream bytes, push rewritten frames.

    Stops reading once [DONE] is seen or the caller goes away. A transport
    failure after the first byte becomes one in-band error event.
    """
    try:
        async for chunk in chunks:
            if is_disconnected is not None and await is_disconnected():
                logger.info("client disconnected during streaming")
                return
            for frame in transcoder.feed(chunk):
                yield frame
            if transcoder.closed:
                return
    except (httpx.HTTPError, httpx.StreamError) as e:
        logger.warning("upstream stream error: %s: %s", type(e).__name__, e)
        for frame in transcoder.fail(f"Upstream stream error: {e}"):
            yield frame
        return
    for frame in transcoder.finish():
        yield frame
