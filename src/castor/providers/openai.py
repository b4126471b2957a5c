"""OpenAI-compatible HTTP provider (chat, embeddings, speech and images).

Speaks the wire format directly through the engine's transport, so any
OpenAI-compatible server works by setting ``api_base``. Registered as the
``openai`` auto-discovery entry, which also serves the ``custom`` key.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from castor.errors import ConfigurationError
from castor.helpers import join_path, resolve_api_base, resolve_api_key, resolve_api_path
from castor.providers.base import define_handler, define_provider
from castor.transformers import bytes_transformer, json_transformer, sse_transformer

if TYPE_CHECKING:
    from castor.context import CallContext
    from castor.providers.base import Handler

OPENAI_BASE = "https://api.openai.com/v1"
API_KEY_ENV = "OPENAI_API_KEY"
BASE_URL_ENV = "OPENAI_BASE_URL"
COMPLETION_PATH = "/chat/completions"
EMBEDDINGS_PATH = "/embeddings"
SPEECH_PATH = "/audio/speech"
IMAGE_GENERATION_PATH = "/images/generations"

# Request fields forwarded from configuration when set.
_COMPLETION_FIELDS: tuple[str, ...] = (
    "audio",
    "frequency_penalty",
    "function_call",
    "functions",
    "logit_bias",
    "logprobs",
    "max_completion_tokens",
    "max_tokens",
    "metadata",
    "modalities",
    "n",
    "parallel_tool_calls",
    "prediction",
    "presence_penalty",
    "prompt_cache_key",
    "reasoning_effort",
    "response_format",
    "safety_identifier",
    "seed",
    "service_tier",
    "stop",
    "store",
    "stream",
    "stream_options",
    "temperature",
    "tool_choice",
    "tools",
    "top_logprobs",
    "top_p",
    "user",
    "verbosity",
    "web_search_options",
)
_EMBEDDING_FIELDS: tuple[str, ...] = ("input", "dimensions", "encoding_format", "user")
_SPEECH_FIELDS: tuple[str, ...] = (
    "input",
    "voice",
    "instructions",
    "response_format",
    "speed",
)
_IMAGE_FIELDS: tuple[str, ...] = (
    "prompt",
    "background",
    "moderation",
    "n",
    "output_compression",
    "output_format",
    "partial_images",
    "quality",
    "response_format",
    "size",
    "stream",
    "style",
    "user",
)


def _endpoint(ctx: CallContext, default_path: str) -> tuple[str, dict[str, str]]:
    base = resolve_api_base(ctx, env_name=BASE_URL_ENV, default=OPENAI_BASE)
    path = resolve_api_path(ctx, default=default_path)
    if not base:
        raise ConfigurationError(
            "No base URL provided",
            hint=f"Pass api_base=... or set {BASE_URL_ENV}.",
        )
    headers = {"Content-Type": "application/json"}
    api_key = resolve_api_key(ctx, env_name=API_KEY_ENV)
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return join_path(base, path or default_path), headers


def _pick(config: dict[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
    return {k: config[k] for k in fields if config.get(k) is not None}


def completion_request(ctx: CallContext) -> dict[str, Any]:
    url, headers = _endpoint(ctx, COMPLETION_PATH)
    body: dict[str, Any] = {
        "model": ctx.model,
        "messages": ctx.config.get("messages") or [],
    }
    body.update(_pick(ctx.config, _COMPLETION_FIELDS))
    return {"url": url, "method": "POST", "headers": headers, "body": body}


def embedding_request(ctx: CallContext) -> dict[str, Any]:
    url, headers = _endpoint(ctx, EMBEDDINGS_PATH)
    body: dict[str, Any] = {"model": ctx.model}
    body.update(_pick(ctx.config, _EMBEDDING_FIELDS))
    return {"url": url, "method": "POST", "headers": headers, "body": body}


def speech_request(ctx: CallContext) -> dict[str, Any]:
    """Text-to-speech. Streaming asks the server for SSE audio deltas."""
    url, headers = _endpoint(ctx, SPEECH_PATH)
    body: dict[str, Any] = {"model": ctx.model}
    body.update(_pick(ctx.config, _SPEECH_FIELDS))
    body["stream_format"] = "sse" if ctx.config.get("stream") else "audio"
    return {"url": url, "method": "POST", "headers": headers, "body": body}


def image_generation_request(ctx: CallContext) -> dict[str, Any]:
    url, headers = _endpoint(ctx, IMAGE_GENERATION_PATH)
    body: dict[str, Any] = {"model": ctx.model}
    body.update(_pick(ctx.config, _IMAGE_FIELDS))
    return {"url": url, "method": "POST", "headers": headers, "body": body}


completion_handler = define_handler(completion_request, [json_transformer])
streaming_completion_handler = define_handler(completion_request, [sse_transformer])
embedding_handler = define_handler(embedding_request, [json_transformer])
speech_handler = define_handler(speech_request, [bytes_transformer])
streaming_speech_handler = define_handler(speech_request, [sse_transformer])
image_generation_handler = define_handler(image_generation_request, [json_transformer])
streaming_image_generation_handler = define_handler(
    image_generation_request, [sse_transformer]
)


def get_handler(ctx: CallContext) -> Handler | None:
    if ctx.capability == "completion":
        if ctx.config.get("stream"):
            return streaming_completion_handler
        return completion_handler
    if ctx.capability == "embedding":
        return embedding_handler
    if ctx.capability == "speech":
        return streaming_speech_handler if ctx.config.get("stream") else speech_handler
    if ctx.capability == "image_generation":
        if ctx.config.get("stream"):
            return streaming_image_generation_handler
        return image_generation_handler
    return None


auto_provider = define_provider("openai", get_handler)
