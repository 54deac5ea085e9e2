"""Tests for the prepare / call / settle orchestration."""

import asyncio
from decimal import Decimal

import pytest
from langchain_core.messages import HumanMessage, SystemMessage

from conftest import FakeAdapter, ai_message, make_settings, not_found_error
from halochat.core.chat_service import EMPTY_INPUT_REPLY, INVALID_INPUT_REPLY, ChatService
from halochat.core.costs import BalanceExhausted, CostLedger
from halochat.core.model_registry import SONNET_4, SONNET_35, ModelRegistry
from halochat.core.normalizer import ClientInputError, NormalizedChat, SkippedAttachment


def make_chat(registry, **overrides) -> NormalizedChat:
    values = {"message": "Hello", "profile": registry.default, "balance": Decimal("10")}
    values.update(overrides)
    return NormalizedChat(**values)


@pytest.fixture
def server_service():
    settings = make_settings(balance_mode="server", starting_balance=Decimal("1"))
    registry = ModelRegistry.from_settings(settings)
    return ChatService(settings, registry, FakeAdapter(), CostLedger(settings.starting_balance))


@pytest.fixture
def client_service(settings, registry, fake_adapter):
    return ChatService(settings, registry, fake_adapter)


class TestConstruction:

    def test_server_mode_requires_ledger(self, registry):
        with pytest.raises(ValueError):
            ChatService(make_settings(balance_mode="server"), registry, FakeAdapter())

    def test_client_mode_forbids_ledger(self, settings, registry):
        with pytest.raises(ValueError):
            ChatService(settings, registry, FakeAdapter(), CostLedger(Decimal("1")))


class TestPrepare:

    def test_builds_messages(self, client_service, registry):
        chat = make_chat(registry, history=[{"role": "user", "content": "earlier"}])
        prepared = client_service.prepare(chat)
        assert isinstance(prepared.messages[0], SystemMessage)
        assert isinstance(prepared.messages[-1], HumanMessage)
        assert prepared.messages[-1].content == [{"type": "text", "text": "Hello"}]
        assert prepared.profile == registry.default
        assert prepared.content_blocks == 1

    def test_exhausted_ledger_short_circuits(self, server_service):
        server_service.ledger.charge(Decimal("5"))
        with pytest.raises(BalanceExhausted):
            server_service.prepare(make_chat(server_service.registry))


class TestSettleClientMode:

    def test_hello_scenario(self, client_service, registry, fake_adapter):
        fake_adapter.script(SONNET_4.model_id, ai_message("Hi!", 1000, 2000))
        chat = make_chat(registry)
        result = asyncio.run(client_service.call_upstream(client_service.prepare(chat)))
        response = client_service.settle(chat, result)

        assert response.reply == "Hi!"
        assert response.costs.last == pytest.approx(0.033)
        assert response.costs.last > 0
        assert response.costs.balance < 10
        assert response.costs.session == pytest.approx(0.04)
        assert response.usage.input_tokens == 1000
        assert response.used_model == SONNET_4.model_id
        assert response.truncated is False

    def test_missing_usage_costs_zero(self, client_service, registry, fake_adapter):
        fake_adapter.script(SONNET_4.model_id, ai_message("Hi!", input_tokens=None))
        chat = make_chat(registry)
        result = asyncio.run(client_service.call_upstream(client_service.prepare(chat)))
        response = client_service.settle(chat, result)
        assert response.usage is None
        assert response.costs.last == 0
        assert response.costs.balance == 10

    def test_fallback_model_priced_and_reported(self, client_service, registry, fake_adapter):
        fake_adapter.script(SONNET_4.model_id, not_found_error(SONNET_4.model_id))
        fake_adapter.script(SONNET_35.model_id, ai_message("From fallback"))
        chat = make_chat(registry)
        result = asyncio.run(client_service.call_upstream(client_service.prepare(chat)))
        response = client_service.settle(chat, result)
        assert response.used_model == SONNET_35.model_id
        assert response.reply == "From fallback"

    def test_truncated_flag(self, client_service, registry, fake_adapter):
        fake_adapter.script(SONNET_4.model_id, ai_message("partial", stop_reason="max_tokens"))
        chat = make_chat(registry)
        result = asyncio.run(client_service.call_upstream(client_service.prepare(chat)))
        assert client_service.settle(chat, result).truncated is True

    def test_skipped_attachments_reported(self, client_service, registry):
        chat = make_chat(registry, skipped=[SkippedAttachment("big.pdf", "too_large")])
        result = asyncio.run(client_service.call_upstream(client_service.prepare(chat)))
        response = client_service.settle(chat, result)
        assert [(s.name, s.reason) for s in response.skipped] == [("big.pdf", "too_large")]


class TestSettleServerMode:

    def test_charges_ledger(self, server_service):
        chat = make_chat(server_service.registry)
        result = asyncio.run(server_service.call_upstream(server_service.prepare(chat)))
        response = server_service.settle(chat, result)
        assert server_service.ledger.total_spent == Decimal("0.0330")
        assert response.costs.balance == pytest.approx(0.96)

    def test_balance_never_negative_after_exhaustion(self, server_service):
        server_service.adapter.script(SONNET_4.model_id, ai_message("x", 100_000, 100_000))
        chat = make_chat(server_service.registry)
        balances = []
        for _ in range(5):
            try:
                prepared = server_service.prepare(chat)
            except BalanceExhausted:
                balances.append(server_service.canned_reply("done").costs.balance)
                continue
            result = asyncio.run(server_service.call_upstream(prepared))
            balances.append(server_service.settle(chat, result).costs.balance)
        assert all(b >= 0 for b in balances)
        assert balances[-1] == 0
        assert server_service.adapter.call_count == 1


class TestCannedReply:

    def test_zero_cost_and_unchanged_balance(self, client_service, registry):
        chat = make_chat(registry, message="", balance=Decimal("4.20"), session_cost=Decimal("1.10"))
        response = client_service.canned_reply(EMPTY_INPUT_REPLY, chat)
        assert response.reply == EMPTY_INPUT_REPLY
        assert response.usage is None
        assert response.costs.last == 0
        assert response.costs.balance == 4.2
        assert response.costs.session == 1.1
        assert response.used_model is None

    def test_without_figures_client_mode_has_no_costs(self, client_service):
        response = client_service.canned_reply("sorry")
        assert response.costs is None

    def test_exact_figures_echoed(self, client_service, registry):
        chat = make_chat(registry, balance=Decimal("9.9992"), session_cost=Decimal("0.0008"))
        costs = client_service.canned_reply(EMPTY_INPUT_REPLY, chat).costs
        assert costs.balance_exact == 9.9992
        assert costs.balance == 9.99
        assert costs.session_exact == 0.0008
        assert costs.session == 0.01


class TestRejectedReply:

    def test_echoes_figures_carried_by_error(self, client_service):
        error = ClientInputError("Message too long", Decimal("1.5"), Decimal("3"))
        response = client_service.rejected_reply(error)
        assert response.reply == INVALID_INPUT_REPLY
        assert response.usage is None
        assert response.costs.last == 0
        assert response.costs.balance == 3
        assert response.costs.session == 1.5

    def test_unreadable_body_client_mode_has_no_costs(self, client_service):
        response = client_service.rejected_reply(ClientInputError("Invalid JSON body"))
        assert response.costs is None

    def test_server_mode_reports_ledger(self, server_service):
        server_service.ledger.charge(Decimal("0.25"))
        response = server_service.rejected_reply(ClientInputError("Invalid JSON body"))
        assert response.costs.balance == 0.75
        assert response.costs.session == 0.25
