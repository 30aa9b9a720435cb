"""Request bodies accepted by the wallet and internal endpoints.

Wallet bodies allow extra fields (tableId, gameId, live, ...); those are kept
as transaction metadata.
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class BetLeg(BaseModel):
    model_config = ConfigDict(extra="allow")

    betType: str | None = None
    betAmount: Decimal = Field(ge=0)


class PayoffLeg(BaseModel):
    model_config = ConfigDict(extra="allow")

    betType: str | None = None
    payoffAmount: Decimal = Field(ge=0)


class BetRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    txId: str = Field(min_length=1)
    bets: list[BetLeg] = Field(min_length=1)


class PayoffRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    txId: str = Field(min_length=1)
    payoffs: list[PayoffLeg] = Field(min_length=1)


class ReverseRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    txId: str = Field(min_length=1)
    reversalAmount: Decimal


class CreateUserRequest(BaseModel):
    """Payload of `POST /internal/createUser`."""

    currency: str | None = None
    balance: Decimal | None = None
    language: str | None = None
    username: str | None = None
    password: str | None = None
    name: str | None = None
    namePrefix: str | None = None
    type: str = "real"
    avatarUrl: str | None = None


class UpdateUserRequest(BaseModel):
    username: str | None = None
    balance: Decimal | None = None
    language: str | None = None
    password: str | None = None
    name: str | None = None
    avatarUrl: str | None = None


class SetUserActiveRequest(BaseModel):
    username: str | None = None
    active: bool
