"""Tier routing: abstract tiers (top/mid/free) to concrete (platform, model).

Built-in tables can be extended or replaced per platform in settings.yaml:

    platforms:
      gemini:
        argv: ["gemini", "-m", "{model}", "-y", "-p", "{prompt}"]
        models: [gemini-2.5-pro, gemini-2.5-flash]
        tiers: {top: gemini-2.5-pro, mid: gemini-2.5-flash, free: gemini-2.0-flash-lite}
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..contracts.v1 import Plan, Task
from .tokens import InvalidTokenError, validate_model_id, validate_platform

TIERS = ("top", "mid", "free")
TIER_EMOJI = {"top": "🧠", "mid": "⚡", "free": "🆓"}


@dataclass
class PlatformSpec:
    name: str
    argv: List[str]
    models: List[str] = field(default_factory=list)
    tiers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, name: str, d: Dict[str, Any], base: Optional["PlatformSpec"] = None) -> "PlatformSpec":
        argv = d.get("argv")
        models = d.get("models")
        tiers = d.get("tiers")
        return cls(
            name=name,
            argv=[str(a) for a in argv] if isinstance(argv, list) and argv else list(base.argv if base else []),
            models=[str(m) for m in models] if isinstance(models, list) else list(base.models if base else []),
            tiers={str(k): str(v) for k, v in tiers.items()} if isinstance(tiers, dict) else dict(base.tiers if base else {}),
        )


DEFAULT_PLATFORMS: Dict[str, PlatformSpec] = {
    "gemini": PlatformSpec(
        name="gemini",
        argv=["gemini", "-m", "{model}", "-y", "-p", "{prompt}"],
        models=["gemini-2.5-flash", "gemini-2.5-pro", "gemini-3-pro-preview", "gemini-2.0-flash-lite"],
        tiers={"top": "gemini-2.5-pro", "mid": "gemini-2.5-flash", "free": "gemini-2.0-flash-lite"},
    ),
    "kilo": PlatformSpec(
        name="kilo",
        argv=["kilocode", "--auto", "-m", "{model}", "{prompt}"],
        models=["openrouter/z-ai/glm-5", "openrouter/minimax/minimax-m2.5", "openrouter/z-ai/glm-4.7-flash"],
        tiers={
            "top": "openrouter/minimax/minimax-m2.5",
            "mid": "openrouter/minimax/minimax-m2.5",
            "free": "openrouter/z-ai/glm-5",
        },
    ),
}


def platform_table(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, PlatformSpec]:
    table = dict(DEFAULT_PLATFORMS)
    for name, doc in (overrides or {}).items():
        if not isinstance(doc, dict):
            continue
        try:
            validate_platform(str(name))
        except InvalidTokenError:
            continue
        table[str(name)] = PlatformSpec.from_dict(str(name), doc, base=DEFAULT_PLATFORMS.get(str(name)))
    return table


def resolve_route(tier: str, backend: str, table: Dict[str, PlatformSpec]) -> Tuple[str, str]:
    """Default (platform, model) for a tier on the given backend."""
    spec = table.get(backend)
    if spec is None:
        raise InvalidTokenError(f"unknown platform: {backend!r}")
    model = spec.tiers.get(tier) or spec.tiers.get("mid") or (spec.models[0] if spec.models else "")
    return spec.name, model


def apply_tier_defaults(plan: Plan, backend: str, table: Dict[str, PlatformSpec]) -> Plan:
    """Fill unset platform/model on every task; operator overrides are kept."""
    for t in plan.tasks:
        if t.overridden and t.platform:
            continue
        if not t.platform or not t.model:
            platform, model = resolve_route(t.tier, t.platform or backend, table)
            t.platform = platform
            t.model = t.model or model
    plan.default_platform = plan.default_platform or backend
    if not plan.default_model:
        plan.default_model = resolve_route("mid", plan.default_platform, table)[1]
    return plan


def check_route(platform: str, model: str, table: Dict[str, PlatformSpec]) -> Tuple[str, str]:
    """Validate an operator-chosen route; empty model means the platform's mid tier."""
    validate_platform(platform)
    spec = table.get(platform)
    if spec is None:
        raise InvalidTokenError(f"unknown platform: {platform!r}")
    if not model:
        model = resolve_route("mid", platform, table)[1]
    validate_model_id(model)
    return platform, model


def build_argv(spec: PlatformSpec, *, model: str, prompt: str) -> List[str]:
    """Substitute placeholders per element; the prompt never passes through a shell."""
    validate_model_id(model)
    return [a.replace("{model}", model).replace("{prompt}", prompt) if "{" in a else a for a in spec.argv]


def task_route(task: Task, backend: str, table: Dict[str, PlatformSpec]) -> Tuple[PlatformSpec, str]:
    platform = task.platform or backend
    spec = table.get(platform)
    if spec is None:
        raise InvalidTokenError(f"unknown platform: {platform!r}")
    model = task.model or resolve_route(task.tier, platform, table)[1]
    return spec, validate_model_id(model)
