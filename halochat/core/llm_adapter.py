"""Anthropic chat adapter with a single model fallback.

If the upstream reports the requested model as not found, the call is retried
once against the fallback model. Every other failure fails immediately; there
is no point retrying an auth, quota or bad-request error on another model.
"""

from dataclasses import dataclass

import anthropic
import structlog
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import BaseMessage

from halochat.core.costs import UsageReport, usage_from_metadata
from halochat.core.model_registry import ModelProfile

logger = structlog.get_logger(__name__)


class UpstreamFailure(Exception):
    """Upstream call failed; not exposed verbatim to clients."""
    pass


class UpstreamModelUnavailable(UpstreamFailure):
    """Neither the requested nor the fallback model exists upstream."""
    pass


@dataclass
class UpstreamResult:
    """Normalized upstream reply.

    Attributes:
        text: Concatenated text blocks (thinking blocks excluded).
        usage: Token counts, or None when the upstream omitted them.
        profile: Profile of the model that actually answered.
        truncated: True when generation stopped at the output cap.
    """
    text: str
    usage: UsageReport | None
    profile: ModelProfile
    truncated: bool = False
    stop_reason: str | None = None

    @property
    def model_used(self) -> str:
        return self.profile.model_id


def extract_text(content) -> str:
    """Join the text parts of an AIMessage content (str or list of blocks)."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class LLMAdapter:
    """Builds ChatAnthropic clients per model profile and invokes them."""

    def __init__(self, api_key: str, timeout: float = 60.0):
        self.api_key = api_key
        self.timeout = timeout
        self._models: dict[tuple, ChatAnthropic] = {}

    def is_healthy(self) -> bool:
        return bool(self.api_key)

    def get_chat_model(self, profile: ModelProfile) -> ChatAnthropic:
        """Return a cached ChatAnthropic configured for this profile."""
        key = (profile.model_id, profile.max_output_tokens, profile.thinking_budget)
        model = self._models.get(key)
        if model is None:
            kwargs = {}
            if profile.thinking_budget:
                kwargs["thinking"] = {"type": "enabled", "budget_tokens": profile.thinking_budget}
            model = ChatAnthropic(
                api_key=self.api_key,
                model=profile.model_id,
                max_tokens=profile.max_output_tokens,
                default_request_timeout=self.timeout,
                max_retries=0,
                **kwargs,
            )
            self._models[key] = model
        return model

    async def _invoke(self, messages: list[BaseMessage], profile: ModelProfile) -> UpstreamResult:
        logger.debug("llm.invoke", model=profile.model_id, thinking=bool(profile.thinking_budget))
        response = await self.get_chat_model(profile).ainvoke(messages)

        metadata = getattr(response, "response_metadata", None) or {}
        stop_reason = metadata.get("stop_reason")
        usage = usage_from_metadata(getattr(response, "usage_metadata", None))
        if usage is None:
            usage = usage_from_metadata(metadata.get("usage"))

        return UpstreamResult(
            text=extract_text(response.content),
            usage=usage,
            profile=profile,
            truncated=stop_reason == "max_tokens",
            stop_reason=stop_reason,
        )

    async def ainvoke_with_fallback(
        self,
        messages: list[BaseMessage],
        profile: ModelProfile,
        fallback: ModelProfile,
    ) -> UpstreamResult:
        """Call the requested model, falling back once if it is not found.

        Args:
            messages: LangChain messages to send.
            profile: Requested model profile.
            fallback: Profile to retry with on a not-found error.

        Returns:
            UpstreamResult whose profile is the model that answered.

        Raises:
            UpstreamModelUnavailable: If the fallback is also not found.
            UpstreamFailure: For any other upstream error.
        """
        try:
            return await self._invoke(messages, profile)

        except anthropic.NotFoundError as e:
            if fallback.model_id == profile.model_id:
                logger.error("llm.model_not_found", model=profile.model_id, fallback="none")
                raise UpstreamModelUnavailable(f"Model {profile.model_id} not found") from e
            logger.warning("llm.model_not_found", model=profile.model_id, fallback=fallback.model_id)

        except Exception as e:
            logger.error("llm.failed", model=profile.model_id, error_type=type(e).__name__, error=str(e))
            raise UpstreamFailure(f"Upstream call failed for {profile.model_id}") from e

        try:
            result = await self._invoke(messages, fallback)
            logger.info("llm.fallback_ok", model=fallback.model_id)
            return result

        except anthropic.NotFoundError as e:
            logger.error("llm.fallback_not_found", model=fallback.model_id)
            raise UpstreamModelUnavailable(
                f"Models {profile.model_id} and {fallback.model_id} not found"
            ) from e

        except Exception as e:
            logger.error("llm.fallback_failed", model=fallback.model_id,
                         error_type=type(e).__name__, error=str(e))
            raise UpstreamFailure(f"Fallback call failed for {fallback.model_id}") from e
