"""Limiter policies: defaults from settings, optional overrides from YAML."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from bulk_orchestrator.config import RateLimitSettings

DEFAULT_MESSAGE = "Too many requests, please try again later."

_DEFAULT_MESSAGES = {
    "bulk": "Too many bulk operations. Please wait before starting another.",
    "sync": "Too many sync requests. Please wait before syncing again.",
    "auth": "Too many authentication attempts. Please wait before trying again.",
}


class LimiterPolicy(BaseModel):
    name: str
    max_requests: int = Field(ge=1)
    window_seconds: float = Field(gt=0)
    message: str = Field(default=DEFAULT_MESSAGE)


class _LimiterOverride(BaseModel):
    max_requests: int | None = Field(default=None, ge=1)
    window_seconds: float | None = Field(default=None, gt=0)
    message: str | None = None


class LimiterPolicyFile(BaseModel):
    limiters: dict[str, _LimiterOverride] = Field(default_factory=dict)

    @field_validator("limiters", mode="before")
    @classmethod
    def _validate_limiters(cls, v: Any) -> dict:
        if v is None:
            return {}
        return v


def default_policies(settings: RateLimitSettings) -> dict[str, LimiterPolicy]:
    policies: dict[str, LimiterPolicy] = {}
    for name in ("general", "bulk", "sync", "auth"):
        policies[name] = LimiterPolicy(
            name=name,
            max_requests=getattr(settings, f"{name}_max_requests"),
            window_seconds=getattr(settings, f"{name}_window_seconds"),
            message=_DEFAULT_MESSAGES.get(name, DEFAULT_MESSAGE),
        )
    return policies


def load_policy_file(path: str) -> LimiterPolicyFile:
    policy_path = Path(path)
    if not policy_path.exists():
        raise FileNotFoundError(f"Rate limit policy file not found: {policy_path}")
    with policy_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return LimiterPolicyFile.model_validate(data)


def load_policies(settings: RateLimitSettings) -> list[LimiterPolicy]:
    """Build the limiter table, applying the YAML overrides when configured.

    Limiters named only in the file are added; their missing fields fall back
    to the ``general`` limiter.
    """
    policies = default_policies(settings)
    if settings.policy_path:
        overrides = load_policy_file(settings.policy_path)
        for name, override in overrides.limiters.items():
            base = policies.get(name) or policies["general"].model_copy(
                update={"name": name, "message": DEFAULT_MESSAGE}
            )
            policies[name] = base.model_copy(
                update=override.model_dump(exclude_none=True) | {"name": name}
            )
    return list(policies.values())
