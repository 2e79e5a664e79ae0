import json
import os
from typing import Dict, Optional


# Caller-facing model ids → NIM model ids
DEFAULT_MODEL_MAP: Dict[str, str] = {
    "gpt-3.5-turbo": "nvidia/llama-3.1-nemotron-ultra-253b-v1",
    "gpt-4": "qwen/qwen3-coder-480b-a35b-instruct",
    "gpt-4-turbo": "moonshotai/kimi-k2-instruct-0905",
    "gpt-4o": "deepseek-ai/deepseek-v3.1",
    "claude-3-opus": "z-ai/glm4.7",
    "claude-3-sonnet": "z-ai/glm5",
    "gemini-pro": "qwen/qwen3-next-80b-a3b-thinking",
}

_TRUTHY = ("1", "true", "yes", "on")


class ConfigurationError(RuntimeError):
    ...


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in _TRUTHY


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)))
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except Exception:
        return default


class Settings:
    def __init__(self) -> None:
        self.nim_base_url: str = os.environ.get("NIM_API_BASE", "https://integrate.api.nvidia.com/v1")
        self.nim_api_key: Optional[str] = os.environ.get("NIM_API_KEY") or None
        self.host: str = os.environ.get("HOST", "0.0.0.0")
        self.port: int = _env_int("PORT", 3000)
        # Fold upstream reasoning_content into <think> blocks of the answer
        self.show_reasoning: bool = _env_flag("SHOW_REASONING", "1")
        # Ask the upstream chat template to emit reasoning (chat_template_kwargs.thinking)
        self.enable_thinking_mode: bool = _env_flag("ENABLE_THINKING_MODE", "1")
        # MODEL_MAP expects a JSON object string; entries override the built-in table
        self.model_map: Dict[str, str] = dict(DEFAULT_MODEL_MAP)
        model_map_raw = os.environ.get("MODEL_MAP", "{}")
        try:
            extra = json.loads(model_map_raw)
            if isinstance(extra, dict):
                self.model_map.update({str(k): str(v) for k, v in extra.items()})
        except Exception:
            ...
        self.default_temperature: float = _env_float("DEFAULT_TEMPERATURE", 0.85)
        self.default_max_tokens: int = max(1, _env_int("DEFAULT_MAX_TOKENS", 9024))
        # Stream mode used when the caller leaves `stream` out of the body
        self.default_stream: bool = _env_flag("DEFAULT_STREAM", "0")
        self.probe_timeout: float = _env_float("PROBE_TIMEOUT", 10.0)
        self.request_timeout: float = _env_float("REQUEST_TIMEOUT", 120.0)
        # Idle limit between two upstream reads; streams have no total-duration limit
        self.stream_read_timeout: float = _env_float("STREAM_READ_TIMEOUT", 120.0)
        self.fallback_model_large: str = os.environ.get("FALLBACK_MODEL_LARGE", "meta/llama-3.1-405b-instruct")
        self.fallback_model_medium: str = os.environ.get("FALLBACK_MODEL_MEDIUM", "meta/llama-3.1-70b-instruct")
        self.fallback_model_small: str = os.environ.get("FALLBACK_MODEL_SMALL", "meta/llama-3.1-8b-instruct")
        # Enable HTTP/2 to improve latency and throughput when supported by upstream.
        self.http2: bool = _env_flag("PROXY_HTTP2", "1")
        self.debug: bool = _env_flag("DEBUG_PROXY", "0")
        self.log_level: str = os.environ.get("LOG_LEVEL", "DEBUG" if self.debug else "INFO")
        self.service_name: str = "OpenAI to NVIDIA NIM Proxy"

    @property
    def chat_completions_url(self) -> str:
        return f"{self.nim_base_url.rstrip('/')}/chat/completions"

    def require_api_key(self) -> str:
        """Return the upstream credential or refuse to continue without one."""
        if not self.nim_api_key:
            raise ConfigurationError("NIM_API_KEY environment variable is not set")
        return self.nim_api_key


settings = Settings()
