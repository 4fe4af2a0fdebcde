"""Model aliases and token pricing.

The price table is built once at startup and handed to the executors and the
Iteration Controller; nothing looks prices up through module globals.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from .models import TokenUsage

MODEL_ALIASES: Mapping[str, str] = MappingProxyType({
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-5-20250929",
    "opus": "claude-opus-4-5-20251101",
})


@dataclass(frozen=True)
class ModelPricing:
    """Per-model prices in USD per 1M tokens."""

    input: float
    output: float
    cache_write: float = 0.0
    cache_read: float = 0.0


_DEFAULT_PRICES: Dict[str, ModelPricing] = {
    "claude-haiku-4-5-20251001": ModelPricing(input=1.0, output=5.0, cache_write=1.25, cache_read=0.10),
    "claude-sonnet-4-5-20250929": ModelPricing(input=3.0, output=15.0, cache_write=3.75, cache_read=0.30),
    "claude-opus-4-5-20251101": ModelPricing(input=5.0, output=25.0, cache_write=6.25, cache_read=0.50),
}


def resolve_model(name: str) -> str:
    """Map ``haiku | sonnet | opus`` to a full model id; other names pass through."""
    key = (name or "").strip()
    return MODEL_ALIASES.get(key.lower(), key)


class PriceTable:
    """Immutable model → pricing mapping."""

    def __init__(self, prices: Mapping[str, ModelPricing]):
        self._prices: Mapping[str, ModelPricing] = MappingProxyType(dict(prices))

    @classmethod
    def default(cls) -> "PriceTable":
        return cls(_DEFAULT_PRICES)

    @classmethod
    def from_config(cls, overrides: Optional[Dict[str, Dict[str, float]]] = None) -> "PriceTable":
        """Defaults merged with the ``pricing:`` section of the config."""
        prices = dict(_DEFAULT_PRICES)
        for model, values in (overrides or {}).items():
            prices[resolve_model(model)] = ModelPricing(
                input=float(values.get("input", 0.0)),
                output=float(values.get("output", 0.0)),
                cache_write=float(values.get("cache_write", 0.0)),
                cache_read=float(values.get("cache_read", 0.0)),
            )
        return cls(prices)

    def __contains__(self, model: str) -> bool:
        return resolve_model(model) in self._prices

    def get(self, model: str) -> Optional[ModelPricing]:
        return self._prices.get(resolve_model(model))

    def models(self):
        return sorted(self._prices)

    def cost_for(self, model: str, usage: TokenUsage) -> float:
        """Estimate cost in USD; unknown models cost 0.0."""
        pricing = self.get(model)
        if pricing is None:
            return 0.0
        return (
            usage.input * pricing.input
            + usage.output * pricing.output
            + usage.cache_write * pricing.cache_write
            + usage.cache_read * pricing.cache_read
        ) / 1_000_000
