"""Target identifier parsing and provider inference.

A target identifier selects a backend model, optionally prefixed with a
provider key (``"openai/gpt-4o"``). Bare names (``"gpt-4o"``) get a provider
key inferred from a static table of popular models, then from naming
conventions, then fall back to :data:`DEFAULT_PROVIDER_KEY`.
"""

from __future__ import annotations

from dataclasses import dataclass

from castor.errors import InvalidIdentifierError

SEPARATOR = "/"

#: Key used when nothing more specific can be inferred.
DEFAULT_PROVIDER_KEY = "custom"

# Popular model names mapped to their provider key.
MODEL_PROVIDER_REGISTRY: dict[str, str] = {
    "gpt-5.2": "openai",
    "gpt-5.1": "openai",
    "gpt-5": "openai",
    "gpt-5-mini": "openai",
    "gpt-5-nano": "openai",
    "gpt-5.2-codex": "openai",
    "gpt-5.1-codex": "openai",
    "gpt-5.1-codex-max": "openai",
    "gpt-5.1-codex-mini": "openai",
    "gpt-5-codex": "openai",
    "gpt-5.2-pro": "openai",
    "gpt-5-pro": "openai",
    "gpt-5-chat": "openai",
    "gpt-5.1-chat": "openai",
    "gpt-5.2-chat": "openai",
    "gpt-4.1": "openai",
    "gpt-4.1-mini": "openai",
    "gpt-4.1-nano": "openai",
    "gpt-4o": "openai",
    "gpt-4o-mini": "openai",
    "gpt-4o-audio": "openai",
    "gpt-4o-mini-audio": "openai",
    "gpt-4o-realtime": "openai",
    "gpt-4o-mini-realtime": "openai",
    "gpt-4o-transcribe": "openai",
    "gpt-4o-mini-transcribe": "openai",
    "gpt-4o-mini-tts": "openai",
    "gpt-4o-search-preview": "openai",
    "gpt-4o-mini-search-preview": "openai",
    "gpt-4-turbo": "openai",
    "gpt-4": "openai",
    "gpt-3.5-turbo": "openai",
    "gpt-audio": "openai",
    "gpt-audio-mini": "openai",
    "gpt-realtime": "openai",
    "gpt-realtime-mini": "openai",
    "gpt-oss-120b": "openai",
    "gpt-oss-20b": "openai",
    "gpt-image-1": "openai",
    "gpt-image-1-mini": "openai",
    "gpt-image-1.5": "openai",
    "chatgpt-image-latest": "openai",
    "o1": "openai",
    "o1-pro": "openai",
    "o3": "openai",
    "o3-mini": "openai",
    "o3-pro": "openai",
    "o3-deep-research": "openai",
    "o4-mini": "openai",
    "o4-mini-deep-research": "openai",
    "omni-moderation": "openai",
    "computer-use-preview": "openai",
    "sora-2": "openai",
    "sora-2-pro": "openai",
    "text-embedding-3-large": "openai",
    "text-embedding-3-small": "openai",
    "text-embedding-ada-002": "openai",
    "tts-1": "openai",
    "tts-1-hd": "openai",
    "whisper": "openai",
}

_OPENAI_NAME_PREFIXES: tuple[str, ...] = (
    "gpt-",
    "sora-",
    "chatgpt-",
    "o1-",
    "o3-",
    "o4-",
    "babbage-",
    "dall-e",
    "codex-",
    "text-embedding-",
    "text-moderation",
    "tts-",
    "whisper",
)


def _infer_from_conventions(model: str) -> str | None:
    if model.startswith(_OPENAI_NAME_PREFIXES):
        return "openai"
    return None


def infer_provider(model: str) -> str:
    """Infer a provider key for a bare model name. Always returns a key."""
    lowered = model.lower()
    known = MODEL_PROVIDER_REGISTRY.get(lowered)
    if known:
        return known
    return _infer_from_conventions(lowered) or DEFAULT_PROVIDER_KEY


@dataclass(frozen=True)
class ParsedIdentifier:
    """Structured form of a target identifier.

    ``target`` is the original string when it carried a provider prefix, or
    the recomposed ``"<inferred>/<model>"`` otherwise.
    """

    target: str
    provider_key: str
    model: str
    norm_provider: str
    norm_model: str

    @property
    def norm_target(self) -> str:
        return f"{self.norm_provider}{SEPARATOR}{self.norm_model}"


def parse_identifier(target: str) -> ParsedIdentifier:
    """Parse *target* into provider key and model components.

    Raises:
        InvalidIdentifierError: If *target* is empty, starts or ends with the
            separator, or contains an empty component.
    """
    if not target:
        raise InvalidIdentifierError(target, "identifier cannot be empty")
    if target.startswith(SEPARATOR):
        raise InvalidIdentifierError(target, "provider component cannot be empty")
    if target.endswith(SEPARATOR):
        raise InvalidIdentifierError(target, "model component cannot be empty")
    if SEPARATOR * 2 in target:
        raise InvalidIdentifierError(target, "empty component found")

    provider_key, sep, model = target.partition(SEPARATOR)
    if sep:
        return ParsedIdentifier(
            target=target,
            provider_key=provider_key,
            model=model,
            norm_provider=provider_key.lower(),
            norm_model=model.lower(),
        )

    inferred = infer_provider(target).lower()
    return ParsedIdentifier(
        target=f"{inferred}{SEPARATOR}{target}",
        provider_key=inferred,
        model=target,
        norm_provider=inferred,
        norm_model=target.lower(),
    )
