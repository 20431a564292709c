"""Token router - price, purchase, conversion, staking, withdrawals, referrals."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Header, Query
from starlette.requests import Request

from tokensale.deps import get_server, plain
from tokensale.models import ConvertRequest, PurchaseRequest, StakeRequest, WithdrawalRequest

router = APIRouter()


# ---------------------------------------------------------------------------
# Price (public)
# ---------------------------------------------------------------------------

@router.get("/api/price")
async def current_price(request: Request):
    srv = get_server(request)
    return {"price": str(await srv.pricing.current_price())}


@router.get("/api/price/history")
async def price_history(request: Request, limit: int = Query(default=30, ge=1, le=365)):
    srv = get_server(request)
    return plain(await srv.pricing.history(limit))


@router.get("/api/price/{day}")
async def price_on(request: Request, day: date):
    srv = get_server(request)
    return {"date": day.isoformat(), "price": str(await srv.pricing.price_at(day))}


@router.get("/api/supply")
async def supply_status(request: Request):
    srv = get_server(request)
    return plain(await srv.supply.status())


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------

@router.post("/api/purchase")
async def purchase(
    request: Request,
    req: PurchaseRequest,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    caller = await srv.auth.get_current_account(x_api_key=x_api_key, authorization=authorization)
    entry = await srv.purchases.purchase(caller["account_id"], req.cash_amount, req.payment_method)
    return plain(entry)


@router.post("/api/convert")
async def convert(
    request: Request,
    req: ConvertRequest,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    caller = await srv.auth.get_current_account(x_api_key=x_api_key, authorization=authorization)
    return plain(await srv.purchases.convert_to_cash(caller["account_id"], req.token_amount))


# ---------------------------------------------------------------------------
# Staking
# ---------------------------------------------------------------------------

@router.get("/api/stake/projection")
async def stake_projection(
    request: Request,
    amount: str = Query(...),
    lock_years: Optional[int] = Query(default=None),
):
    srv = get_server(request)
    return plain(await srv.staking.projected_rewards(amount, lock_years=lock_years))


@router.post("/api/stake")
async def stake(
    request: Request,
    req: StakeRequest,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    caller = await srv.auth.get_current_account(x_api_key=x_api_key, authorization=authorization)
    position = await srv.staking.open_position(caller["account_id"], req.amount, req.lock_years)
    return plain(position)


@router.get("/api/stake/positions")
async def my_positions(
    request: Request,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    caller = await srv.auth.get_current_account(x_api_key=x_api_key, authorization=authorization)
    return plain(await srv.staking.list_positions(account_id=caller["account_id"]))


@router.post("/api/stake/{position_id}/cancel")
async def cancel_stake(
    request: Request,
    position_id: str,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    caller = await srv.auth.get_current_account(x_api_key=x_api_key, authorization=authorization)
    owner = None if caller["role"] == "admin" else caller["account_id"]
    return plain(await srv.staking.cancel_position(position_id, account_id=owner))


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------

@router.post("/api/withdrawals")
async def request_withdrawal(
    request: Request,
    req: WithdrawalRequest,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    caller = await srv.auth.get_current_account(x_api_key=x_api_key, authorization=authorization)
    result = await srv.withdrawals.request(
        caller["account_id"], req.amount, req.network, req.destination_address, req.asset,
    )
    return plain(result)


@router.get("/api/withdrawals")
async def my_withdrawals(
    request: Request,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    caller = await srv.auth.get_current_account(x_api_key=x_api_key, authorization=authorization)
    return plain(await srv.withdrawals.list_for_account(caller["account_id"]))


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------

@router.get("/api/referrals")
async def my_commissions(
    request: Request,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    caller = await srv.auth.get_current_account(x_api_key=x_api_key, authorization=authorization)
    return plain(await srv.referrals.list_commissions(referrer_id=caller["account_id"]))
