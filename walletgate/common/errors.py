"""Typed failures raised by services and mapped to HTTP at the boundary."""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    INVALID_PARAMETER = "invalid_parameter"
    INVALID_CLIENT = "invalid_client"
    DUPLICATE_CLIENT = "duplicate_client"
    INVALID_GRANT = "invalid_grant"
    INVALID_STATE = "invalid_state"
    INSUFFICIENT_FUNDS = "insufficient_funds"


STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.INVALID_PARAMETER: 400,
    ErrorKind.INVALID_CLIENT: 400,
    ErrorKind.DUPLICATE_CLIENT: 409,
    ErrorKind.INVALID_GRANT: 400,
    ErrorKind.INVALID_STATE: 400,
    ErrorKind.INSUFFICIENT_FUNDS: 400,
}


class WalletGateError(Exception):
    """Base failure carrying a kind and an optional structured payload.

    `props` are merged into the JSON error body, so they must be safe to show
    to API callers. The message is for server-side logs only.
    """

    kind: ErrorKind = ErrorKind.INVALID_PARAMETER

    def __init__(self, message: str, **props: Any) -> None:
        super().__init__(message)
        self.message = message
        self.props = props

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    def to_body(self) -> dict[str, Any]:
        return {"errorCode": self.status_code, "error": self.kind.value, **self.props}


class InvalidParameter(WalletGateError):
    kind = ErrorKind.INVALID_PARAMETER


class InvalidClient(WalletGateError):
    kind = ErrorKind.INVALID_CLIENT


class UnknownClient(InvalidClient):
    """Client id is not registered."""


class DuplicateClient(WalletGateError):
    kind = ErrorKind.DUPLICATE_CLIENT


class InvalidGrant(WalletGateError):
    kind = ErrorKind.INVALID_GRANT


class InvalidState(WalletGateError):
    kind = ErrorKind.INVALID_STATE


class InsufficientFunds(WalletGateError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


def missing_parameter(name: str) -> InvalidParameter:
    return InvalidParameter(f"Missing parameter: `{name}`", parameter=name)
