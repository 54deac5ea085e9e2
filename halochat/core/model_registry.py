"""Static model price table and thinking-mode alias resolution.

Resolution never fails: anything unknown, disabled or malformed falls back to
the default tier so a bad selector degrades the request instead of breaking it.
"""

from dataclasses import dataclass, replace
from decimal import Decimal

import structlog

from halochat.core.config import Settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ModelProfile:
    """Pricing and output cap for one upstream model.

    Attributes:
        model_id: Upstream model identifier.
        max_output_tokens: Output-length cap sent with each request.
        input_price_per_mtok: USD per million input tokens.
        output_price_per_mtok: USD per million output tokens.
        thinking_budget: Extended-thinking budget, or None when disabled.
    """
    model_id: str
    max_output_tokens: int
    input_price_per_mtok: Decimal
    output_price_per_mtok: Decimal
    thinking_budget: int | None = None


HAIKU = ModelProfile("claude-3-5-haiku-20241022", 4096, Decimal("0.80"), Decimal("4.00"))
SONNET_35 = ModelProfile("claude-3-5-sonnet-20241022", 8192, Decimal("3.00"), Decimal("15.00"))
SONNET_4 = ModelProfile("claude-sonnet-4-20250514", 8192, Decimal("3.00"), Decimal("15.00"))
OPUS_4 = ModelProfile("claude-opus-4-20250514", 8192, Decimal("15.00"), Decimal("75.00"))

BUILTIN_PROFILES = {p.model_id: p for p in (HAIKU, SONNET_35, SONNET_4, OPUS_4)}

# Friendly alias -> model id
BUILTIN_ALIASES = {
    "quick": HAIKU.model_id,
    "balanced": SONNET_4.model_id,
    "deep": OPUS_4.model_id,
    "haiku": HAIKU.model_id,
    "sonnet": SONNET_4.model_id,
    "opus": OPUS_4.model_id,
}

THINKING_ALIASES = {"deep"}
GATED_MODELS = {OPUS_4.model_id}


class ModelRegistry:
    """Immutable lookup of model profiles by id or alias."""

    def __init__(
        self,
        profiles: dict[str, ModelProfile],
        aliases: dict[str, str],
        default_model_id: str,
        fallback_model_id: str,
        deep_mode_enabled: bool = False,
        thinking_budget: int = 4096,
        gated: set[str] | None = None,
    ):
        self._profiles = dict(profiles)
        self._aliases = dict(aliases)
        self._gated = set(GATED_MODELS if gated is None else gated)
        self.deep_mode_enabled = deep_mode_enabled
        self.thinking_budget = thinking_budget

        if default_model_id not in self._profiles:
            raise ValueError(f"Unknown default model: {default_model_id}")
        if fallback_model_id not in self._profiles:
            raise ValueError(f"Unknown fallback model: {fallback_model_id}")
        self._default_id = default_model_id
        self._fallback_id = fallback_model_id

    @classmethod
    def from_settings(cls, settings: Settings) -> "ModelRegistry":
        """Build the registry from the built-in table plus env overrides.

        CLAUDE_MODEL and FALLBACK_MODEL accept an alias or a model id. An id
        missing from the table is registered with balanced-tier pricing.
        """
        profiles = dict(BUILTIN_PROFILES)
        aliases = dict(BUILTIN_ALIASES)

        default_id = _register(profiles, aliases, settings.default_model)
        if settings.max_tokens:
            profiles[default_id] = replace(profiles[default_id], max_output_tokens=settings.max_tokens)
        fallback_id = _register(profiles, aliases, settings.fallback_model)

        return cls(
            profiles,
            aliases,
            default_model_id=default_id,
            fallback_model_id=fallback_id,
            deep_mode_enabled=settings.deep_mode_enabled,
            thinking_budget=settings.thinking_budget_tokens,
        )

    @property
    def default(self) -> ModelProfile:
        return self._profiles[self._default_id]

    @property
    def fallback(self) -> ModelProfile:
        return self._profiles[self._fallback_id]

    def is_enabled(self, model_id: str) -> bool:
        if model_id in (self._default_id, self._fallback_id):
            return True
        return self.deep_mode_enabled or model_id not in self._gated

    def resolve(self, selector) -> ModelProfile:
        """Map an alias or raw model id to a profile.

        Args:
            selector: Client-supplied value, possibly None or not a string.

        Returns:
            The matching profile, or the default profile when the selector is
            empty, unknown, or names a disabled tier.
        """
        if not isinstance(selector, str) or not selector.strip():
            return self.default

        key = selector.strip().lower()
        model_id = self._aliases.get(key)
        if model_id is None:
            model_id = next((mid for mid in self._profiles if mid.lower() == key), None)

        if model_id is None:
            logger.info("model.unknown_selector", selector=selector[:80])
            return self.default

        if not self.is_enabled(model_id):
            logger.info("model.tier_disabled", selector=key, model=model_id)
            return self.default

        profile = self._profiles[model_id]
        if key in THINKING_ALIASES and self.thinking_budget > 0:
            max_out = max(profile.max_output_tokens, self.thinking_budget + 1024)
            profile = replace(profile, thinking_budget=self.thinking_budget, max_output_tokens=max_out)
        return profile

    def modes(self) -> list[str]:
        """Thinking-mode aliases whose model is enabled."""
        return [
            alias for alias in ("quick", "balanced", "deep")
            if alias in self._aliases and self.is_enabled(self._aliases[alias])
        ]

    def available_models(self) -> list[str]:
        return [mid for mid in self._profiles if self.is_enabled(mid)]


def _register(profiles: dict[str, ModelProfile], aliases: dict[str, str], selector: str) -> str:
    """Return the model id for an alias/id, adding unknown ids to the table."""
    key = selector.strip()
    if key.lower() in aliases:
        return aliases[key.lower()]
    if key not in profiles:
        logger.info("model.registered_custom", model=key)
        profiles[key] = replace(SONNET_4, model_id=key)
    return key
