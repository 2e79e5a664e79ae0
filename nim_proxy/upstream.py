from __future__ import annotations

import json
from typing import Any, Dict, Optional

import httpx

from .config import settings
from .errors import UpstreamRejected, UpstreamUnreachable
from .logger import get_logger


logger = get_logger("upstream")

PROBE_MESSAGE = "test"

# Shared HTTP client (HTTP/1.1 + optional HTTP/2) with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None


def _get_httpx_client() -> httpx.AsyncClient:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        http2_flag = bool(getattr(settings, "http2", True))
        try:
            _HTTPX_CLIENT = httpx.AsyncClient(
                http2=http2_flag,
                limits=limits,
            )
        except ImportError:
            # If http2 extras not installed, gracefully fall back to HTTP/1.1
            _HTTPX_CLIENT = httpx.AsyncClient(
                http2=False,
                limits=limits,
            )
    return _HTTPX_CLIENT


async def close_httpx_client() -> None:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        try:
            await _HTTPX_CLIENT.aclose()
        finally:
            _HTTPX_CLIENT = None


def _auth_headers(stream: bool = False) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {settings.nim_api_key or ''}",
        "Content-Type": "application/json",
    }
    if stream:
        headers["Accept"] = "text/event-stream"
    return headers


def _redacted(headers: Dict[str, str]) -> Dict[str, str]:
    return {k: ("<redacted>" if k.lower() in ("authorization", "x-api-key") else v) for k, v in headers.items()}


def read_error_body(resp: httpx.Response) -> Any:
    """Upstream error body as JSON when possible, raw text otherwise."""
    try:
        return resp.json()
    except Exception:
        try:
            return resp.text
        except Exception:
            return None


async def probe_model(model: str) -> bool:
    """Ask the upstream whether it serves `model` verbatim.

    Sends a one-token completion under the probe timeout. Any non-2xx status
    or transport failure counts as "not served"; nothing is raised.
    """
    payload = {
        "model": model,
        "messages": [{"role": "user", "content": PROBE_MESSAGE}],
        "max_tokens": 1,
    }
    client = _get_httpx_client()
    try:
        resp = await client.post(
            settings.chat_completions_url,
            json=payload,
            headers=_auth_headers(),
            timeout=httpx.Timeout(settings.probe_timeout),
        )
    except httpx.HTTPError as e:
        logger.warning("model probe failed for '%s': %s: %s", model, type(e).__name__, e)
        return False
    if 200 <= resp.status_code < 300:
        return True
    logger.info("model probe for '%s' returned HTTP %s", model, resp.status_code)
    return False


async def post_chat(payload: Dict[str, Any], requested_model: Optional[str] = None) -> Dict[str, Any]:
    """Non-streaming chat completion; returns the decoded upstream body."""
    client = _get_httpx_client()
    headers = _auth_headers()
    if settings.debug:
        logger.debug(
            "upstream request (non-stream): %s",
            json.dumps({"url": settings.chat_completions_url, "headers": _redacted(headers)}, ensure_ascii=False),
        )
    try:
        resp = await client.post(
            settings.chat_completions_url,
            json=payload,
            headers=headers,
            timeout=httpx.Timeout(settings.request_timeout),
        )
    except httpx.HTTPError as e:
        raise UpstreamUnreachable(f"Upstream request failed: {type(e).__name__}: {e}") from e

    if resp.status_code >= 400:
        raise UpstreamRejected(resp.status_code, read_error_body(resp), requested_model, payload.get("model"))
    try:
        data = resp.json()
    except ValueError as e:
        raise UpstreamRejected(502, resp.text, requested_model, payload.get("model")) from e
    if not isinstance(data, dict):
        raise UpstreamRejected(502, data, requested_model, payload.get("model"))
    return data


async def open_stream(payload: Dict[str, Any], requested_model: Optional[str] = None) -> httpx.Response:
    """Send a streaming request and return once the upstream response head is in.

    The caller owns the returned response and must `aclose()` it. Rejections
    and connect failures raise here, before any byte reaches the caller.
    """
    client = _get_httpx_client()
    headers = _auth_headers(stream=True)
    if settings.debug:
        logger.debug(
            "upstream request (stream): %s",
            json.dumps({"url": settings.chat_completions_url, "headers": _redacted(headers)}, ensure_ascii=False),
        )
    # read is an idle limit between chunks, never a cap on the whole stream
    timeout = httpx.Timeout(
        connect=settings.request_timeout,
        read=settings.stream_read_timeout,
        write=settings.request_timeout,
        pool=settings.request_timeout,
    )
    request = client.build_request(
        "POST",
        settings.chat_completions_url,
        json=payload,
        headers=headers,
        timeout=timeout,
    )
    try:
        resp = await client.send(request, stream=True)
    except httpx.HTTPError as e:
        raise UpstreamUnreachable(f"Upstream request failed: {type(e).__name__}: {e}") from e

    if resp.status_code >= 400:
        try:
            await resp.aread()
            body = read_error_body(resp)
        except httpx.HTTPError:
            body = None
        finally:
            await resp.aclose()
        raise UpstreamRejected(resp.status_code, body, requested_model, payload.get("model"))
    return resp
