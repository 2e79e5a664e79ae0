from __future__ import annotations

from collections import deque
from typing import Any, AsyncIterator, Dict

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from . import upstream
from .config import settings
from .errors import InvalidRequest, ProxyError, error_envelope
from .logger import get_logger
from .resolver import ModelResolver, ResolutionMemo
from .schemas.openai import ChatCompletionRequest, ModelCard, ModelList
from .streaming import StreamTranscoder, transcode_stream
from .transform import build_upstream_request, nim_to_openai_response, now_unix


logger = get_logger("main")

app = FastAPI(title="OpenAI-to-NIM Proxy")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_RECENT: deque = deque(maxlen=64)


async def _probe(model: str) -> bool:
    return await upstream.probe_model(model)


resolver = ModelResolver(
    aliases=settings.model_map,
    memo=ResolutionMemo(),
    probe=_probe,
    fallbacks={
        "large": settings.fallback_model_large,
        "medium": settings.fallback_model_medium,
        "small": settings.fallback_model_small,
    },
)


def _not_found(request: Request) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content=error_envelope(404, f"Endpoint {request.url.path} not found", "invalid_request_error"),
    )


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {
        "status": "ok",
        "service": settings.service_name,
        "reasoning_display": settings.show_reasoning,
        "thinking_mode": settings.enable_thinking_mode,
    }


@app.get("/v1/models")
async def list_models() -> Dict[str, Any]:
    created = now_unix()
    cards = [ModelCard(id=model_id, created=created) for model_id in resolver.aliases]
    return ModelList(data=cards).model_dump()


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    _rec: Dict[str, Any] = {"phase": "start"}
    try:
        return await _dispatch(request, _rec)
    except ProxyError as e:
        _rec.update({"phase": "error", "status": e.status_code, "message": e.message})
        logger.warning("request failed with %s: %s", e.status_code, e.message)
        return JSONResponse(status_code=e.status_code, content=e.to_envelope())
    except Exception as e:
        _rec.update({"phase": "exception", "status": 500, "exception_type": type(e).__name__})
        logger.exception("proxy error: %s", e)
        return JSONResponse(
            status_code=500,
            content=error_envelope(500, str(e) or "Internal server error", "server_error"),
        )
    finally:
        _RECENT.append(_rec)


async def _dispatch(request: Request, _rec: Dict[str, Any]):
    try:
        body = await request.json()
    except Exception:
        raise InvalidRequest("Invalid JSON body")
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")

    # Checked before schema validation so the caller sees the same message
    # whether `messages` is missing, empty, or not an array.
    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        raise InvalidRequest("'messages' is required and must be a non-empty array")
    try:
        parsed = ChatCompletionRequest.model_validate(body)
    except ValidationError as e:
        raise InvalidRequest(str(e))
    _rec["request_model"] = parsed.model

    resolved_model = await resolver.resolve(parsed.model)
    _rec["resolved_model"] = resolved_model
    is_stream = settings.default_stream if parsed.stream is None else bool(parsed.stream)
    nim_payload = build_upstream_request(
        parsed,
        resolved_model,
        enable_thinking=settings.enable_thinking_mode,
        default_temperature=settings.default_temperature,
        default_max_tokens=settings.default_max_tokens,
        stream=is_stream,
    )
    logger.debug(
        "upstream payload: %s",
        {k: v for k, v in nim_payload.items() if k != "messages"},
    )

    if not is_stream:
        data = await upstream.post_chat(nim_payload, requested_model=parsed.model)
        _rec["phase"] = "non_stream_ok"
        return JSONResponse(
            content=nim_to_openai_response(data, parsed.model, show_reasoning=settings.show_reasoning)
        )

    upstream_resp = await upstream.open_stream(nim_payload, requested_model=parsed.model)
    _rec["phase"] = f"stream_status_{upstream_resp.status_code}"
    logger.info("upstream stream opened with model '%s', status %s", resolved_model, upstream_resp.status_code)
    return StreamingResponse(
        _event_stream(request, upstream_resp),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        background=BackgroundTask(upstream_resp.aclose),
    )


async def _event_stream(request: Request, upstream_resp: httpx.Response) -> AsyncIterator[bytes]:
    transcoder = StreamTranscoder(show_reasoning=settings.show_reasoning)
    try:
        async for frame in transcode_stream(upstream_resp.aiter_bytes(), transcoder, request.is_disconnected):
            yield frame
    finally:
        await upstream_resp.aclose()
        logger.info("stream ended (reasoning_open=%s)", transcoder.reasoning_open)


@app.get("/_debug/last")
async def debug_last(request: Request):
    if not settings.debug:
        return _not_found(request)
    return _RECENT[-1] if _RECENT else {}


@app.get("/_resolution_memo")
async def get_resolution_memo(request: Request):
    if not settings.debug:
        return _not_found(request)
    return {"entries": resolver.memo.snapshot()}


@app.delete("/_resolution_memo")
async def clear_resolution_memo(request: Request):
    if not settings.debug:
        return _not_found(request)
    return {"ok": True, "removed": resolver.memo.clear()}


@app.on_event("startup")
async def _startup_check_config():
    # Refuse to serve without an upstream credential
    settings.require_api_key()
    # Initialize shared HTTP client eagerly to establish pools
    _ = upstream._get_httpx_client()
    logger.info("%s forwarding to %s", settings.service_name, settings.nim_base_url)
    logger.info("Reasoning display: %s", "ENABLED" if settings.show_reasoning else "DISABLED")
    logger.info("Thinking mode: %s", "ENABLED" if settings.enable_thinking_mode else "DISABLED")


@app.on_event("shutdown")
async def _shutdown_close_client():
    await upstream.close_httpx_client()


# Registered last: anything not matched above, on any method
@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
async def catch_all(request: Request, path: str):
    return _not_found(request)
