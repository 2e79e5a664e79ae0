import asyncio
import itertools
import json
from typing import List

import httpx
import pytest

from nim_proxy.streaming import (
    FrameReassembler,
    StreamTranscoder,
    encode_frame,
    parse_delta_events,
    rewrite_chunk,
    transcode_stream,
)


def _frame(delta, index=None) -> bytes:
    choice = {"delta": delta}
    if index is not None:
        choice["index"] = index
    return b"data: " + json.dumps({"choices": [choice]}).encode() + b"\n\n"


DONE = b"data: [DONE]\n\n"


def _contents(frames: List[bytes], index: int = 0) -> str:
    out = []
    for f in frames:
        assert f.startswith(b"data: ") and f.endswith(b"\n\n")
        payload = f[len(b"data: "):-2]
        if payload == b"[DONE]":
            continue
        obj = json.loads(payload)
        for pos, c in enumerate(obj.get("choices", [])):
            if c.get("index", pos) == index:
                out.append((c.get("delta") or {}).get("content") or "")
    return "".join(out)


def _run(transcoder: StreamTranscoder, chunks: List[bytes]) -> List[bytes]:
    out: List[bytes] = []
    for chunk in chunks:
        out.extend(transcoder.feed(chunk))
    out.extend(transcoder.finish())
    return out


async def _aiter(chunks):
    for c in chunks:
        yield c


async def _collect(agen) -> List[bytes]:
    return [frame async for frame in agen]


SAMPLE = (
    _frame({"role": "assistant", "content": ""})
    + _frame({"reasoning_content": "thinking about ünïcode 🤔"})
    + b": keep-alive\n\n"
    + _frame({"content": "answer"})
    + b'data: {"choices": [{"delta": {"content": "x"}}'
)


def test_reassembler_same_frames_for_any_chunk_size():
    whole = FrameReassembler()
    expected = whole.feed(SAMPLE)
    for size in range(1, len(SAMPLE) + 1):
        r = FrameReassembler()
        got: List[bytes] = []
        for i in range(0, len(SAMPLE), size):
            got.extend(r.feed(SAMPLE[i:i + size]))
        assert got == expected
        assert r.residual == whole.residual


def test_reassembler_same_frames_for_any_two_split_points():
    expected = FrameReassembler().feed(SAMPLE)
    for i, j in itertools.combinations(range(0, len(SAMPLE) + 1, 7), 2):
        r = FrameReassembler()
        got = r.feed(SAMPLE[:i]) + r.feed(SAMPLE[i:j]) + r.feed(SAMPLE[j:])
        assert got == expected


def test_reassembler_keeps_incomplete_tail():
    r = FrameReassembler()
    assert r.feed(b"data: {\"a\"") == []
    assert r.feed(b": 1}\n") == []
    assert r.feed(b"\ndata: x") == [b'data: {"a": 1}']
    assert r.flush() == b"data: x"
    assert r.residual == b""


def test_reasoning_then_answer_scenario():
    t = StreamTranscoder()
    frames = _run(
        t,
        [
            b'data: {"choices":[{"delta":{"reasoning_content":"hi"}}]}\n\n',
            b'data: {"choices":[{"delta":{"content":"world"}}]}\n\n',
            b"data: [DONE]\n\n",
        ],
    )
    assert _contents(frames) == "<think>\nhi</think>\n\nworld"
    assert frames[-1] == DONE
    for f in frames[:-1]:
        assert b"reasoning_content" not in f


def test_scenario_survives_byte_by_byte_delivery():
    raw = (
        b'data: {"choices":[{"delta":{"reasoning_content":"hi"}}]}\n\n'
        b'data: {"choices":[{"delta":{"content":"world"}}]}\n\n'
        b"data: [DONE]\n\n"
    )
    frames = _run(StreamTranscoder(), [raw[i:i + 1] for i in range(len(raw))])
    assert _contents(frames) == "<think>\nhi</think>\n\nworld"
    assert frames[-1] == DONE


def test_done_closes_open_reasoning_first():
    t = StreamTranscoder()
    frames = _run(t, [_frame({"reasoning_content": "a"}), _frame({"reasoning_content": "b"}), DONE])
    assert _contents(frames) == "<think>\nab</think>\n\n"
    assert frames[-1] == DONE
    assert json.loads(frames[-2][6:])["choices"][0]["delta"]["content"] == "</think>\n\n"
    assert t.closed and not t.reasoning_open


def test_end_of_stream_without_done_closes_reasoning():
    t = StreamTranscoder()
    frames = _run(t, [_frame({"reasoning_content": "partial"})])
    assert _contents(frames) == "<think>\npartial</think>\n\n"
    assert DONE not in frames
    assert t.closed


def test_finish_without_any_input_emits_nothing():
    t = StreamTranscoder()
    assert t.finish() == []
    assert t.closed
    assert t.feed(_frame({"content": "late"})) == []


def test_trailing_done_without_boundary_is_still_honoured():
    frames = _run(StreamTranscoder(), [_frame({"reasoning_content": "r"}), b"data: [DONE]"])
    assert _contents(frames) == "<think>\nr</think>\n\n"
    assert frames[-1] == DONE


def test_frames_after_done_are_dropped():
    t = StreamTranscoder()
    frames = t.feed(DONE + _frame({"content": "late"}))
    assert frames == [DONE]
    assert t.feed(_frame({"content": "later"})) == []


def test_malformed_frame_forwarded_verbatim_and_state_untouched():
    t = StreamTranscoder()
    t.feed(_frame({"reasoning_content": "r"}))
    assert t.reasoning_open

    bad = b'data: {"choices": [{"delta": {"content": '
    assert t.feed(bad + b"\n\n") == [bad + b"\n\n"]
    assert t.reasoning_open

    frames = t.feed(_frame({"content": "c"}))
    assert _contents(frames) == "</think>\n\nc"


def test_invalid_utf8_frame_forwarded_verbatim():
    t = StreamTranscoder()
    bad = b'data: {"choices":[{"delta":{"content":"\xff\xfe"}}]}'
    assert t.feed(bad + b"\n\n") == [bad + b"\n\n"]
    assert not t.reasoning_open


def test_frame_without_delta_forwarded_verbatim():
    usage = b'data: {"id":"c1", "choices": [], "usage": {"total_tokens": 3}}\n\n'
    assert StreamTranscoder().feed(usage) == [usage]


def test_segments_without_marker_are_discarded():
    t = StreamTranscoder()
    assert t.feed(b": ping\n\nevent: noop\n\n\n\n") == []
    assert not t.reasoning_open


def test_multibyte_character_split_across_packets():
    raw = 'data: {"choices":[{"delta":{"content":"héllo 🌍"}}]}\n\n'.encode("utf-8")
    cut = raw.index("🌍".encode()) + 2
    frames = _run(StreamTranscoder(), [raw[:cut], raw[cut:]])
    assert _contents(frames) == "héllo 🌍"


def test_hidden_reasoning_only_forwards_answer():
    t = StreamTranscoder(show_reasoning=False)
    frames = _run(
        t,
        [
            _frame({"reasoning_content": "secret"}),
            _frame({"content": "visible"}),
            DONE,
        ],
    )
    assert _contents(frames) == "visible"
    assert all(b"secret" not in f and b"<think>" not in f for f in frames)
    assert json.loads(frames[0][6:])["choices"][0]["delta"] == {"content": ""}


def test_close_frame_reuses_stream_envelope():
    raw = b'data: {"id":"abc","object":"chat.completion.chunk","model":"m","choices":[{"index":0,"delta":{"reasoning_content":"r"}}]}\n\n'
    frames = _run(StreamTranscoder(), [raw, DONE])
    closing = json.loads(frames[1][6:])
    assert closing["id"] == "abc"
    assert closing["model"] == "m"
    assert closing["choices"] == [{"index": 0, "delta": {"content": "</think>\n\n"}}]


def test_reasoning_state_is_tracked_per_choice():
    t = StreamTranscoder()
    frames = _run(
        t,
        [
            _frame({"reasoning_content": "r0"}, index=0),
            _frame({"reasoning_content": "r1"}, index=1),
            _frame({"content": "a0"}, index=0),
            DONE,
        ],
    )
    assert _contents(frames, 0) == "<think>\nr0</think>\n\na0"
    assert _contents(frames, 1) == "<think>\nr1</think>\n\n"


@pytest.mark.parametrize("pattern", list(itertools.product(["r", "a", "ra", "-"], repeat=4)))
def test_delimiters_balanced_for_any_fragment_order(pattern):
    chunks = []
    expected_runs = 0
    in_run = False
    for step in pattern:
        delta = {}
        if "r" in step:
            delta["reasoning_content"] = "R"
            if not in_run:
                expected_runs += 1
                in_run = True
        if "a" in step:
            delta["content"] = "A"
            in_run = False
        chunks.append(_frame(delta))

    for ending in ([DONE], []):
        text = _contents(_run(StreamTranscoder(), chunks + ending))
        assert text.count("<think>\n") == expected_runs
        assert text.count("</think>\n\n") == expected_runs
        depth = 0
        for token in text.replace("<think>\n", "(").replace("</think>\n\n", ")"):
            if token == "(":
                depth += 1
            elif token == ")":
                depth -= 1
            assert depth in (0, 1)
        assert depth == 0


def test_rewrite_chunk_does_not_mutate_input():
    chunk = {"id": "x", "choices": [{"index": 0, "delta": {"reasoning_content": "r", "content": None}}]}
    snapshot = json.dumps(chunk, sort_keys=True)
    out, open_choices = rewrite_chunk(chunk, frozenset())
    assert json.dumps(chunk, sort_keys=True) == snapshot
    assert out["choices"][0]["delta"] == {"content": "<think>\nr"}
    assert open_choices == frozenset({0})


def test_rewrite_chunk_returns_same_object_without_delta():
    chunk = {"choices": [{"index": 0, "finish_reason": "stop"}]}
    out, open_choices = rewrite_chunk(chunk, frozenset({0}))
    assert out is chunk
    assert open_choices == frozenset({0})


def test_parse_delta_events():
    events = parse_delta_events(
        {"choices": [{"index": 2, "delta": {"reasoning_content": "r", "content": ""}, "finish_reason": "stop"}]}
    )
    assert len(events) == 1
    assert events[0].choice_index == 2
    assert events[0].reasoning_fragment == "r"
    assert events[0].answer_fragment is None
    assert events[0].is_terminal is True
    assert parse_delta_events([1, 2]) == ()


def test_encode_frame_is_compact_utf8():
    assert encode_frame({"a": "é"}) == 'data: {"a":"é"}\n\n'.encode("utf-8")


def test_transcode_stream_emits_error_event_on_transport_failure():
    async def failing():
        yield _frame({"reasoning_content": "r"})
        raise httpx.ReadError("connection reset")

    t = StreamTranscoder()
    frames = asyncio.run(_collect(transcode_stream(failing(), t)))
    assert len(frames) == 2
    err = json.loads(frames[-1][6:])
    assert err["error"]["type"] == "server_error"
    assert "Upstream stream error: connection reset" in err["error"]["message"]
    assert t.closed


def test_transcode_stream_stops_reading_after_done():
    pulled = []

    async def upstream():
        for chunk in (_frame({"content": "a"}), DONE, _frame({"content": "ignored"})):
            pulled.append(chunk)
            yield chunk

    frames = asyncio.run(_collect(transcode_stream(upstream(), StreamTranscoder())))
    assert frames[-1] == DONE
    assert len(pulled) == 2


def test_transcode_stream_stops_when_client_disconnects():
    async def gone() -> bool:
        return True

    frames = asyncio.run(_collect(transcode_stream(_aiter([_frame({"content": "a"})]), StreamTranscoder(), gone)))
    assert frames == []


def test_transcode_stream_flushes_safety_close_at_eof():
    frames = asyncio.run(
        _collect(transcode_stream(_aiter([_frame({"reasoning_content": "r"})]), StreamTranscoder()))
    )
    assert _contents(frames) == "<think>\nr</think>\n\n"
