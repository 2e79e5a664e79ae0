from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from .schemas.openai import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    Choice,
    ResponseMessage,
    Usage,
)


THINK_OPEN = "<think>\n"
THINK_CLOSE = "</think>\n\n"

# Optional OpenAI sampling fields forwarded only when the caller set them
PASSTHROUGH_FIELDS = ("top_p", "stop", "presence_penalty", "frequency_penalty", "seed")


def build_upstream_request(
    request: ChatCompletionRequest,
    resolved_model: str,
    *,
    enable_thinking: bool,
    default_temperature: float,
    default_max_tokens: int,
    stream: bool,
) -> Dict[str, Any]:
    """Map an OpenAI chat/completions body onto the NIM request body."""
    payload: Dict[str, Any] = {
        "model": resolved_model,
        "messages": [m.model_dump(exclude_none=True) for m in request.messages],
        "temperature": default_temperature if request.temperature is None else request.temperature,
        "max_tokens": default_max_tokens if request.max_tokens is None else request.max_tokens,
        "stream": stream,
    }
    for field in PASSTHROUGH_FIELDS:
        value = getattr(request, field)
        if value is not None:
            payload[field] = value
    if enable_thinking:
        payload["chat_template_kwargs"] = {"thinking": True}
    return payload


def merge_reasoning(content: Optional[str], reasoning: Optional[str]) -> str:
    """Prefix a complete answer with its reasoning wrapped in <think> tags."""
    text = content or ""
    if not reasoning:
        return text
    return f"{THINK_OPEN}{reasoning}\n{THINK_CLOSE}{text}"


def nim_to_openai_response(
    nim: Dict[str, Any],
    requested_model: Optional[str] = None,
    *,
    show_reasoning: bool = True,
) -> Dict[str, Any]:
    """Map a non-streaming NIM response to an OpenAI chat.completion body."""
    choices: List[Choice] = []
    for i, choice in enumerate(nim.get("choices") or []):
        if not isinstance(choice, dict):
            continue
        message = choice.get("message") or {}
        content = message.get("content")
        if show_reasoning:
            content = merge_reasoning(content, message.get("reasoning_content"))
        choices.append(
            Choice(
                index=choice.get("index") if isinstance(choice.get("index"), int) else i,
                message=ResponseMessage(role=message.get("role") or "assistant", content=content or ""),
                finish_reason=choice.get("finish_reason"),
            )
        )

    usage = nim.get("usage")
    if isinstance(usage, dict):
        usage = {k: v for k, v in usage.items() if v is not None}
    resp = ChatCompletionResponse(
        id=f"chatcmpl-{now_millis()}",
        created=now_unix(),
        # Always echo the caller's model id, not the upstream one
        model=requested_model or str(nim.get("model") or ""),
        choices=choices,
        usage=Usage.model_validate(usage) if isinstance(usage, dict) else Usage(),
    )
    return resp.model_dump()


def now_unix() -> int:
    return int(time.time())


def now_millis() -> int:
    return int(time.time() * 1000)
