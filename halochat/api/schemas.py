"""Pydantic models for the API layer.

Defines response schemas for all endpoints. Request bodies are loosely typed
and go through halochat.core.normalizer instead.
"""

from pydantic import BaseModel, ConfigDict, Field


class UsageOut(BaseModel):
    """Token usage reported by the upstream for one call."""
    input_tokens: int = Field(..., ge=0)
    output_tokens: int = Field(..., ge=0)


class CostsOut(BaseModel):
    """Cost of the last call plus running session/balance figures (USD).

    `session`/`balance` are cents for display. The `*Exact` figures keep 4 dp
    and are what a client should send back as `sessionCostExact` (or `sessionExact`) and `balanceExact`.
    """
    model_config = ConfigDict(populate_by_name=True)

    last: float = Field(..., ge=0)
    session: float = Field(..., ge=0)
    balance: float = Field(..., ge=0)
    session_exact: float | None = Field(default=None, ge=0, alias="sessionExact")
    balance_exact: float | None = Field(default=None, ge=0, alias="balanceExact")


class SkippedOut(BaseModel):
    name: str
    reason: str


class ChatResponse(BaseModel):
    """Outgoing chat reply."""
    model_config = ConfigDict(populate_by_name=True)

    reply: str
    usage: UsageOut | None = None
    costs: CostsOut | None = None
    truncated: bool = False
    used_model: str | None = Field(default=None, alias="modelUsed")
    skipped: list[SkippedOut] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Error body for strict-mode failures and middleware rejections."""
    error: str


class HealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    timestamp: str
    default_model: str = Field(..., alias="defaultModel")
    modes: list[str]
    available_models: list[str] = Field(..., alias="availableModels")
    deep_enabled: bool = Field(..., alias="deepEnabled")
    balance_mode: str = Field(..., alias="balanceMode")


class BalanceResponse(BaseModel):
    status: str
    balance: float
    session: float
