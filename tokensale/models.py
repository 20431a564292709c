"""Pydantic request models for the REST API."""

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from tokensale.config import CASH_BALANCE_METHOD


class RegisterRequest(BaseModel):
    email: str = ""
    referral_code: Optional[str] = None


class WalletVerifyRequest(BaseModel):
    address: str
    signature: str
    nonce: str


class PurchaseRequest(BaseModel):
    cash_amount: Decimal
    payment_method: str = CASH_BALANCE_METHOD


class ConvertRequest(BaseModel):
    token_amount: Decimal


class StakeRequest(BaseModel):
    amount: Decimal
    lock_years: Optional[int] = None


class WithdrawalRequest(BaseModel):
    amount: Decimal
    network: str
    destination_address: str
    asset: str = "token"


class SetPriceRequest(BaseModel):
    price: Decimal
    date: Optional[date] = None


class CommissionRateRequest(BaseModel):
    percent: Decimal


class StakingApyRequest(BaseModel):
    apy: Decimal


class RejectRequest(BaseModel):
    reason: str = ""


class CompleteWithdrawalRequest(BaseModel):
    tx_hash: str = ""


class DepositRequest(BaseModel):
    cash_amount: Decimal
    note: str = ""


class ResolveFlagRequest(BaseModel):
    note: str = ""
