"""Configuration: layered dict merge plus a validated view of framework keys.

Configuration comes from up to four layers, broadest first: built-in
defaults, global (``Dispatcher.configure(...)``), per-capability
(``Dispatcher.configure("completion", ...)``) and per-call keyword
arguments. Layers are plain dicts and may carry arbitrary API parameters
next to the framework keys validated here.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from castor.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Mapping

#: Broadest configuration layer, applied beneath the global one.
DEFAULTS: dict[str, Any] = {
    "max_retries": 2,
    "retry_delay": 200,
    "max_retry_delay": 10_000,
}

TARGET_KEY = "model"


def _is_plain_dict(value: object) -> bool:
    return type(value) is dict


def deep_merge(*sources: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge *sources* into a new dict; later sources win per key.

    - Plain dicts on both sides merge recursively.
    - Lists, callables and any other object are replaced wholesale.
    - ``None`` sources are skipped.
    - Inputs are never mutated; nested plain dicts in the result are fresh.

    Example:
        deep_merge({"timeout": 5000, "retries": 3}, {"timeout": 10000})
        # => {"timeout": 10000, "retries": 3}
    """
    result: dict[str, Any] = {}
    for source in sources:
        if source is None:
            continue
        for key, value in source.items():
            current = result.get(key)
            if _is_plain_dict(value):
                base = current if _is_plain_dict(current) else None
                result[key] = deep_merge(base, value)
            else:
                result[key] = value
    return result


def normalize_targets(config: Mapping[str, Any]) -> list[str]:
    """Return the ordered, non-empty list of candidate target identifiers.

    Raises:
        ConfigurationError: If no target is configured.
    """
    raw = config.get(TARGET_KEY)
    if raw is None or raw == "":
        raise ConfigurationError(
            "No model specified",
            hint='Pass model="provider/model" per call or via configure().',
        )
    if isinstance(raw, str):
        targets = [raw]
    elif isinstance(raw, (list, tuple)):
        targets = list(raw)
    else:
        raise ConfigurationError(
            f"model must be a string or a list of strings, got {type(raw).__name__}",
        )
    if not targets:
        raise ConfigurationError(
            "No model specified",
            hint="The model list must contain at least one identifier.",
        )
    for i, t in enumerate(targets):
        if not isinstance(t, str):
            raise ConfigurationError(
                f"model[{i}] must be a string, got {type(t).__name__}",
            )
    return targets


class ExecutionSettings(BaseModel):
    """Validated view of the framework keys in a resolved configuration.

    Times are in milliseconds. API parameters such as ``messages`` or
    ``temperature`` live next to these keys and are not validated here.
    """

    timeout: float | None = Field(default=None)
    max_retries: int = Field(default=0)
    retry_delay: float = Field(default=0)
    max_retry_delay: float = Field(default=0)
    stream: bool = Field(default=False)

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float | None) -> float | None:
        """Treat non-positive or infinite timeouts as "no timeout"."""
        if v is None or v <= 0 or math.isinf(v):
            return None
        return v

    @field_validator("max_retries", "retry_delay", "max_retry_delay")
    @classmethod
    def clamp_nonnegative(cls, v: float) -> float:
        return max(0, v)


def execution_settings(config: Mapping[str, Any]) -> ExecutionSettings:
    """Validate framework keys in *config*.

    Raises:
        ConfigurationError: If a framework key has an invalid type.
    """
    known = {
        k: config[k]
        for k in ExecutionSettings.model_fields
        if config.get(k) is not None
    }
    try:
        return ExecutionSettings.model_validate(known)
    except ValidationError as e:
        err = e.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        raise ConfigurationError(
            f"Configuration validation failed: {loc}: {err.get('msg')}",
            hint="timeout/retry_delay/max_retry_delay are milliseconds; "
            "max_retries is an integer.",
        ) from e
