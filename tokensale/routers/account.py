"""Account router - /api/auth/*, /api/accounts/{id}/* endpoints."""

from fastapi import APIRouter, Header, HTTPException, Query
from starlette.requests import Request

from tokensale.account import normalize_wallet
from tokensale.auth import SIGN_MESSAGE_TEMPLATE
from tokensale.deps import get_server, plain, public_account
from tokensale.models import RegisterRequest, WalletVerifyRequest

router = APIRouter()


@router.post("/api/auth/register")
async def auth_register(request: Request, req: RegisterRequest):
    srv = get_server(request)
    acct = await srv.accounts.register(email=req.email, referral_code=req.referral_code)
    api_key = await srv.auth.issue_api_key(acct["account_id"])
    result = public_account(acct)
    result["api_key"] = api_key
    return result


@router.get("/api/auth/nonce")
async def auth_nonce(request: Request, address: str = Query(...)):
    srv = get_server(request)
    address = normalize_wallet(address)
    nonce = srv.auth.generate_nonce(address)
    return {
        "nonce": nonce,
        "message": SIGN_MESSAGE_TEMPLATE.format(nonce=nonce),
    }


@router.post("/api/auth/verify")
async def auth_verify(request: Request, req: WalletVerifyRequest):
    srv = get_server(request)
    if not srv.auth.verify_signature(req.address, req.signature, req.nonce):
        raise HTTPException(status_code=401, detail="Invalid signature or expired nonce")
    acct = await srv.accounts.find_by_wallet(normalize_wallet(req.address))
    if acct is None:
        raise HTTPException(status_code=404, detail="No account is linked to this wallet")
    return {
        "token": srv.auth.issue_jwt(acct),
        "address": acct["wallet_address"],
        "account_id": acct["account_id"],
        "role": acct["role"],
    }


@router.get("/api/auth/me")
async def auth_me(
    request: Request,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    acct = await srv.auth.get_current_account(x_api_key=x_api_key, authorization=authorization)
    return public_account(acct)


@router.get("/api/accounts/{account_id}/balance")
async def get_balance(
    request: Request,
    account_id: str,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    caller = await srv.auth.get_current_account(x_api_key=x_api_key, authorization=authorization)
    srv.auth.require_owner(caller, account_id)
    return plain(await srv.ledger.balance(account_id))


@router.get("/api/accounts/{account_id}/history")
async def get_history(
    request: Request,
    account_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    caller = await srv.auth.get_current_account(x_api_key=x_api_key, authorization=authorization)
    srv.auth.require_owner(caller, account_id)
    return plain(await srv.accounts.history(account_id, limit))


@router.post("/api/accounts/{account_id}/wallet")
async def link_wallet(
    request: Request,
    account_id: str,
    req: WalletVerifyRequest,
    x_api_key: str = Header(default=""),
    authorization: str = Header(default=""),
):
    srv = get_server(request)
    caller = await srv.auth.get_current_account(x_api_key=x_api_key, authorization=authorization)
    srv.auth.require_owner(caller, account_id)
    if not srv.auth.verify_signature(req.address, req.signature, req.nonce):
        raise HTTPException(status_code=401, detail="Invalid signature or expired nonce")
    acct = await srv.accounts.set_wallet_address(account_id, req.address)
    return public_account(acct)
