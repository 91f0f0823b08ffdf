from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

# Prompts longer than this go to the slow model when the server resolves "auto".
PROMPT_LENGTH_THRESHOLD = 220

AUTO_ROUTE_KEY = "auto"


class Route(str, Enum):
    FAST = "fast"
    SLOW = "slow"
    # Meta-route: resolved into a concrete plan, never itself an attempt target.
    AUTO = "auto"

    @property
    def is_concrete(self) -> bool:
        return self is not Route.AUTO

    def other(self) -> "Route":
        if self is Route.FAST:
            return Route.SLOW
        if self is Route.SLOW:
            return Route.FAST
        raise ValueError("auto has no alternate route")


@dataclass(frozen=True)
class ModelInfo:
    route: str
    name: str
    label: str

    def to_dict(self) -> Dict[str, str]:
        return {"route": self.route, "name": self.name, "label": self.label}


@dataclass(frozen=True)
class ModelCatalog:
    """
    Wire keys and model names for the two backends, as served by GET /config/models.
    """

    fast: ModelInfo
    slow: ModelInfo
    default_route: str = AUTO_ROUTE_KEY

    def info(self, route: Route) -> ModelInfo:
        if route is Route.FAST:
            return self.fast
        if route is Route.SLOW:
            return self.slow
        raise ValueError("auto is not bound to a model")

    def route_key(self, route: Route) -> str:
        if route is Route.AUTO:
            return self.default_route
        return self.info(route).route

    def model_name(self, route: Route) -> str:
        return self.info(route).name

    def parse(self, key: str) -> Optional[Route]:
        """
        Map a wire key (e.g. "a", "b", "auto") or a route name to a Route.
        Returns None for unknown keys.
        """
        k = (key or "").strip().lower()
        if not k:
            return None
        if k in (self.default_route, Route.AUTO.value):
            return Route.AUTO
        if k in (self.fast.route, Route.FAST.value):
            return Route.FAST
        if k in (self.slow.route, Route.SLOW.value):
            return Route.SLOW
        return None

    def valid_keys(self) -> list[str]:
        return [self.fast.route, self.slow.route, self.default_route]

    def resolve_for_prompt(self, route: Route, prompt: str = "") -> Route:
        """
        Server-side resolution: explicit routes pass through, auto picks by prompt length.
        """
        if route.is_concrete:
            return route
        return Route.SLOW if len(prompt or "") > PROMPT_LENGTH_THRESHOLD else Route.FAST

    def to_dict(self) -> Dict[str, Any]:
        return {
            "defaultRoute": self.default_route,
            "fast": self.fast.to_dict(),
            "slow": self.slow.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, fallback: Optional["ModelCatalog"] = None) -> "ModelCatalog":
        base = fallback or FALLBACK_CATALOG

        def info(raw: Any, default: ModelInfo) -> ModelInfo:
            if not isinstance(raw, Mapping):
                return default
            return ModelInfo(
                route=str(raw.get("route") or default.route).strip().lower(),
                name=str(raw.get("name") or default.name).strip(),
                label=str(raw.get("label") or default.label).strip(),
            )

        return cls(
            fast=info(data.get("fast"), base.fast),
            slow=info(data.get("slow"), base.slow),
            default_route=str(data.get("defaultRoute") or base.default_route).strip().lower(),
        )


FALLBACK_CATALOG = ModelCatalog(
    fast=ModelInfo(route="a", name="MODEL_A", label="Fast model"),
    slow=ModelInfo(route="b", name="MODEL_B", label="Slow model"),
)
