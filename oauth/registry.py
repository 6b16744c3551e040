"""
StrategyRegistry — resolves the protocol strategy for a provider.

Lookup order: a strategy registered for ``(provider id, kind)``, then the
default strategy for ``kind``.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from oauth.base import BaseStrategy
from oauth.flow import ProtocolKind
from oauth.oauth1 import OAuth1Strategy
from oauth.oauth2 import OAuth2Strategy
from oauth.twitter import TwitterPKCEStrategy
from utils.errors import ValidationError

logger = logging.getLogger(__name__)

# ── Defaults and provider overrides ─────────────────────────────────────

_DEFAULTS: List[BaseStrategy] = [
    OAuth2Strategy(),
    OAuth1Strategy(),
]

_OVERRIDES: List[Tuple[str, BaseStrategy]] = [
    ("twitter", TwitterPKCEStrategy()),
    ("x", TwitterPKCEStrategy()),
]


class StrategyRegistry:
    """Singleton registry for protocol strategies."""

    _instance: Optional["StrategyRegistry"] = None

    def __new__(cls) -> "StrategyRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._defaults = {}
            cls._instance._overrides = {}
            cls._instance._discovered = False
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (tests)."""
        cls._instance = None

    def discover(self) -> None:
        """Register the built-in strategies."""
        if self._discovered:
            return
        for strategy in _DEFAULTS:
            self._defaults[strategy.kind] = strategy
            logger.info("Strategy registered: %s (%s)", strategy.name, strategy.kind.value)
        for provider, strategy in _OVERRIDES:
            self.register(provider, strategy)
        self._discovered = True

    def register(self, provider: str, strategy: BaseStrategy) -> None:
        """Use ``strategy`` for ``provider`` whenever its kind is requested."""
        self._overrides[(provider.lower(), strategy.kind)] = strategy
        logger.info(
            "Strategy override: %s → %s (%s)",
            provider,
            strategy.name,
            strategy.kind.value,
        )

    def resolve(self, provider: str, kind: ProtocolKind) -> BaseStrategy:
        self.discover()
        strategy = self._overrides.get((provider.lower(), kind)) or self._defaults.get(kind)
        if strategy is None:
            raise ValidationError(f"Unsupported protocol: {kind.value}")
        return strategy

    def list_overrides(self) -> Dict[str, str]:
        self.discover()
        return {f"{p}:{k.value}": s.name for (p, k), s in self._overrides.items()}
