"""Chat orchestration: prepare -> upstream call -> settle.

The three steps are separate so the route can run the upstream call under its
own cancellation guard. Balance ownership is fixed per process by
settings.balance_mode; the ledger is only present in "server" mode.
"""

from dataclasses import dataclass
from decimal import Decimal

import structlog
from langchain_core.messages import BaseMessage

from halochat.api.schemas import ChatResponse, CostsOut, SkippedOut, UsageOut
from halochat.core.config import Settings
from halochat.core.content import build_messages, build_user_content
from halochat.core.costs import (
    ZERO,
    BalanceExhausted,
    CostLedger,
    CostSummary,
    compute_cost,
    reconcile_client_balance,
)
from halochat.core.llm_adapter import LLMAdapter, UpstreamResult
from halochat.core.model_registry import ModelProfile, ModelRegistry
from halochat.core.normalizer import ClientInputError, NormalizedChat

logger = structlog.get_logger(__name__)

EMPTY_INPUT_REPLY = "Please enter a message or attach a file."
EXHAUSTED_REPLY = "Your balance has been used up. Please reset it to keep chatting."
UPSTREAM_APOLOGY = "Sorry, I couldn't get a response right now. Please try again in a moment."
INVALID_INPUT_REPLY = "Sorry, I couldn't read that request. Please check your message and try again."


@dataclass
class PreparedCall:
    messages: list[BaseMessage]
    profile: ModelProfile
    content_blocks: int


class ChatService:
    """Per-process chat orchestrator; holds no per-request state."""

    def __init__(
        self,
        settings: Settings,
        registry: ModelRegistry,
        adapter: LLMAdapter,
        ledger: CostLedger | None = None,
    ):
        if (settings.balance_mode == "server") != (ledger is not None):
            raise ValueError("A ledger is required in server balance mode and forbidden otherwise")
        self.settings = settings
        self.registry = registry
        self.adapter = adapter
        self.ledger = ledger

    def prepare(self, chat: NormalizedChat) -> PreparedCall:
        """Assemble the upstream request.

        Raises:
            BalanceExhausted: In server mode when the ledger is used up.
        """
        if self.ledger is not None and self.ledger.is_exhausted:
            logger.warning("chat.balance_exhausted", total_spent=str(self.ledger.total_spent))
            raise BalanceExhausted()

        content = build_user_content(chat.message, chat.attachments)
        messages = build_messages(self.settings.system_prompt, chat.history, content)
        return PreparedCall(messages=messages, profile=chat.profile or self.registry.default,
                            content_blocks=len(content))

    async def call_upstream(self, prepared: PreparedCall) -> UpstreamResult:
        return await self.adapter.ainvoke_with_fallback(
            prepared.messages, prepared.profile, self.registry.fallback
        )

    def settle(self, chat: NormalizedChat, result: UpstreamResult) -> ChatResponse:
        """Price the call with the model that actually answered and build the reply."""
        cost = compute_cost(result.usage, result.profile)

        if self.ledger is not None:
            summary = self.ledger.charge(cost)
        else:
            summary = reconcile_client_balance(cost, chat.session_cost, chat.balance)

        if result.truncated:
            logger.info("chat.output_truncated", model=result.model_used,
                        max_tokens=result.profile.max_output_tokens)

        return ChatResponse(
            reply=result.text,
            usage=UsageOut(input_tokens=result.usage.input_tokens,
                           output_tokens=result.usage.output_tokens) if result.usage else None,
            costs=_costs_out(summary),
            truncated=result.truncated,
            used_model=result.model_used,
            skipped=_skipped_out(chat),
        )

    def unchanged_costs(self, session_cost: Decimal | None = None,
                        balance: Decimal | None = None) -> CostSummary | None:
        """Current figures with a zero charge applied.

        Returns:
            The ledger snapshot in server mode. In client mode the echoed
            client figures, or None when the request carried none we could read.
        """
        if self.ledger is not None:
            return self.ledger.snapshot()
        if balance is None:
            return None
        return reconcile_client_balance(ZERO, session_cost or ZERO, balance)

    def canned_reply(self, reply: str, chat: NormalizedChat | None = None) -> ChatResponse:
        """Zero-cost reply that never touched the upstream."""
        if chat is None:
            summary = self.unchanged_costs()
        else:
            summary = self.unchanged_costs(chat.session_cost, chat.balance)
        return _canned(reply, summary, _skipped_out(chat) if chat else [])

    def rejected_reply(self, error: ClientInputError) -> ChatResponse:
        """Canned reply for a request we refused to read, echoing any figures it carried."""
        return _canned(INVALID_INPUT_REPLY, self.unchanged_costs(error.session_cost, error.balance), [])


def _canned(reply: str, summary: CostSummary | None, skipped: list[SkippedOut]) -> ChatResponse:
    return ChatResponse(
        reply=reply,
        usage=None,
        costs=_costs_out(summary) if summary is not None else None,
        truncated=False,
        used_model=None,
        skipped=skipped,
    )


def _costs_out(summary: CostSummary) -> CostsOut:
    return CostsOut(
        last=float(summary.last),
        session=float(summary.session),
        balance=float(summary.balance),
        session_exact=float(summary.session_exact),
        balance_exact=float(summary.balance_exact),
    )


def _skipped_out(chat: NormalizedChat) -> list[SkippedOut]:
    return [SkippedOut(name=s.name, reason=s.reason) for s in chat.skipped]
