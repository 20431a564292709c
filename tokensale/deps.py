"""Dependency helpers for router modules."""

from decimal import Decimal
from enum import Enum

from starlette.requests import Request


def get_server(request: Request):
    return request.app.state.server


def plain(value):
    """Make ledger records JSON-safe. Decimals go out as strings so no amount
    passes through a float on its way to the client."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [plain(v) for v in value]
    return value


def public_account(acct: dict) -> dict:
    """Account record without its API key."""
    return plain({k: v for k, v in acct.items() if k != "api_key"})
