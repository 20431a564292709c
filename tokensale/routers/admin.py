"""Admin router - /api/admin/* operator endpoints and /api/status."""

from typing import Optional

from fastapi import APIRouter, Header, Query
from starlette.requests import Request

from tokensale.deps import get_server, plain, public_account
from tokensale.models import (
    CommissionRateRequest,
    CompleteWithdrawalRequest,
    DepositRequest,
    RejectRequest,
    ResolveFlagRequest,
    SetPriceRequest,
    StakingApyRequest,
)
from tokensale.states import EntryKind, EntryStatus

router = APIRouter()


@router.get("/")
async def root(request: Request):
    srv = get_server(request)
    return {
        "service": "Token Ledger",
        "api_port": srv.api_port,
        "uptime": "running",
    }


@router.get("/api/status")
async def server_status(request: Request):
    srv = get_server(request)
    return plain(await srv.status())


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@router.put("/api/admin/price")
async def set_price(
    request: Request,
    req: SetPriceRequest,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    admin = await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    if req.date is None:
        row = await srv.pricing.set_today(req.price, updated_by=admin["account_id"])
    else:
        row = await srv.pricing.set_price(req.date, req.price, updated_by=admin["account_id"])
    return plain(row)


@router.put("/api/admin/commission-rate")
async def set_commission_rate(
    request: Request,
    req: CommissionRateRequest,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    admin = await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    rate = await srv.referrals.set_commission_rate(req.percent, updated_by=admin["account_id"])
    return {"commission_rate": str(rate)}


@router.put("/api/admin/staking-apy")
async def set_staking_apy(
    request: Request,
    req: StakingApyRequest,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    admin = await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    apy = await srv.staking.set_default_apy(req.apy, updated_by=admin["account_id"])
    return {"staking_apy": str(apy)}


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

@router.get("/api/admin/accounts")
async def list_accounts(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    accounts = await srv.accounts.list_accounts(limit=limit, offset=offset)
    return [public_account(a) for a in accounts]


@router.post("/api/admin/accounts/{account_id}/activate")
async def activate_account(
    request: Request,
    account_id: str,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    return public_account(await srv.accounts.activate(account_id))


@router.post("/api/admin/accounts/{account_id}/deactivate")
async def deactivate_account(
    request: Request,
    account_id: str,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    return public_account(await srv.accounts.deactivate(account_id))


@router.post("/api/admin/accounts/{account_id}/deposit")
async def manual_deposit(
    request: Request,
    account_id: str,
    req: DepositRequest,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    admin = await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    entry = await srv.purchases.manual_deposit(account_id, req.cash_amount, req.note, admin["account_id"])
    return plain(entry)


# ---------------------------------------------------------------------------
# Purchases awaiting payment
# ---------------------------------------------------------------------------

@router.get("/api/admin/purchases/pending")
async def pending_purchases(
    request: Request,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    entries = await srv.ledger.list_entries(
        kind=EntryKind.PURCHASE.value, status=EntryStatus.PENDING.value, limit=None,
    )
    return plain(entries)


@router.post("/api/admin/purchases/{entry_id}/confirm")
async def confirm_purchase(
    request: Request,
    entry_id: int,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    return plain(await srv.purchases.confirm_payment(entry_id))


@router.post("/api/admin/purchases/{entry_id}/reject")
async def reject_purchase(
    request: Request,
    entry_id: int,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    return plain(await srv.purchases.reject_payment(entry_id))


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------

@router.get("/api/admin/withdrawals")
async def list_withdrawals(
    request: Request,
    status: Optional[str] = Query(default=None),
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    return plain(await srv.withdrawals.list_requests(status=status))


@router.post("/api/admin/withdrawals/{withdrawal_id}/approve")
async def approve_withdrawal(
    request: Request,
    withdrawal_id: str,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    admin = await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    return plain(await srv.withdrawals.approve(withdrawal_id, admin["account_id"]))


@router.post("/api/admin/withdrawals/{withdrawal_id}/reject")
async def reject_withdrawal(
    request: Request,
    withdrawal_id: str,
    req: RejectRequest,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    admin = await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    return plain(await srv.withdrawals.reject(withdrawal_id, admin["account_id"], req.reason))


@router.post("/api/admin/withdrawals/{withdrawal_id}/complete")
async def complete_withdrawal(
    request: Request,
    withdrawal_id: str,
    req: CompleteWithdrawalRequest,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    return plain(await srv.withdrawals.complete(withdrawal_id, req.tx_hash))


# ---------------------------------------------------------------------------
# Staking
# ---------------------------------------------------------------------------

@router.get("/api/admin/staking")
async def staking_overview(
    request: Request,
    status: Optional[str] = Query(default=None),
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    return plain({
        "stats": await srv.staking.stats(),
        "positions": await srv.staking.list_positions(status=status),
    })


@router.post("/api/admin/staking/mature")
async def mature_now(
    request: Request,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    return await srv.staking.mature_all()


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------

@router.get("/api/admin/referrals")
async def referral_overview(
    request: Request,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    return plain({
        "stats": await srv.referrals.stats(),
        "commissions": await srv.referrals.list_commissions(),
    })


# ---------------------------------------------------------------------------
# Flagged transfers
# ---------------------------------------------------------------------------

@router.get("/api/admin/flagged")
async def list_flagged(
    request: Request,
    status: Optional[str] = Query(default="open"),
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    return plain(await srv.reconciler.list_flagged(status=status or None))


@router.post("/api/admin/flagged/{tx_hash}/resolve")
async def resolve_flagged(
    request: Request,
    tx_hash: str,
    req: ResolveFlagRequest,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    admin = await srv.auth.require_admin(x_api_key=x_api_key, authorization=authorization)
    return plain(await srv.reconciler.resolve_flagged(tx_hash, admin["account_id"], req.note))
