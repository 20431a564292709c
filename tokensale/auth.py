"""
auth.py - API key, admin key, JWT and wallet (EIP-191) authentication.

Supported credentials, checked in this order by resolve_account():
  1. Authorization: Bearer <jwt>   (issued after a wallet signature check)
  2. X-API-Key: <admin key>        (operator access)
  3. X-API-Key: <account api key>  (issued at registration)

Wallet proof: GET /api/auth/nonce -> sign the message -> POST /api/auth/verify.
The same nonce/signature pair is used to prove ownership before a wallet is
linked to an account, since the reconciler credits deposits by wallet.
"""

import logging
import secrets
import time
from typing import TYPE_CHECKING, Dict, Optional, Tuple

import jwt as pyjwt
from eth_account import Account as EthAccount
from eth_account.messages import encode_defunct
from fastapi import Header, HTTPException

from tokensale.errors import AccountNotFound

if TYPE_CHECKING:
    from tokensale.storage import AccountRepo, Database

logger = logging.getLogger("auth")

ADMIN_ACCOUNT_ID = "_admin"
NONCE_TTL = 300  # 5 minutes
JWT_TTL = 86400  # 24 hours
SIGN_MESSAGE_TEMPLATE = (
    "Sign this message to link your wallet with the token sale.\n\nNonce: {nonce}"
)


class AuthService:
    """Credential checks and role-based access for the REST layer."""

    def __init__(
        self,
        db: "Database",
        account_repo: "AccountRepo",
        admin_key: str,
        jwt_secret: str = "",
        feed_key: str = "",
    ):
        self._db = db
        self._repo = account_repo
        self._admin_key = admin_key
        self._feed_key = feed_key
        self._jwt_secret = jwt_secret or secrets.token_hex(32)
        if not jwt_secret:
            logger.warning(
                "No --jwt-secret provided; generated ephemeral secret "
                "(JWTs will invalidate on restart)"
            )
        # address -> (nonce, expiry_timestamp)
        self._nonces: Dict[str, Tuple[str, float]] = {}

    @staticmethod
    def generate_api_key() -> str:
        return secrets.token_hex(16)

    # -------------------------------------------------------------------
    # Nonce / wallet signatures
    # -------------------------------------------------------------------

    def generate_nonce(self, address: str) -> str:
        nonce = secrets.token_hex(16)
        self._nonces[address.lower()] = (nonce, time.time() + NONCE_TTL)
        return nonce

    def verify_signature(self, address: str, signature: str, nonce: str) -> bool:
        addr_lower = address.lower()
        stored = self._nonces.get(addr_lower)
        if stored is None or stored[0] != nonce:
            return False
        if time.time() > stored[1]:
            self._nonces.pop(addr_lower, None)
            return False

        msg = encode_defunct(text=SIGN_MESSAGE_TEMPLATE.format(nonce=nonce))
        try:
            recovered = EthAccount.recover_message(msg, signature=signature)
        except Exception:
            logger.info("Unrecoverable signature for %s", address)
            return False
        if recovered.lower() != addr_lower:
            return False

        # Consume nonce
        self._nonces.pop(addr_lower, None)
        return True

    # -------------------------------------------------------------------
    # JWT
    # -------------------------------------------------------------------

    def issue_jwt(self, account: dict) -> str:
        now = int(time.time())
        payload = {
            "sub": account["wallet_address"].lower(),
            "role": account["role"],
            "account_id": account["account_id"],
            "iat": now,
            "exp": now + JWT_TTL,
        }
        return pyjwt.encode(payload, self._jwt_secret, algorithm="HS256")

    def decode_jwt(self, token: str) -> Optional[dict]:
        try:
            return pyjwt.decode(token, self._jwt_secret, algorithms=["HS256"])
        except pyjwt.ExpiredSignatureError:
            return None
        except pyjwt.InvalidTokenError:
            return None

    # -------------------------------------------------------------------
    # API keys
    # -------------------------------------------------------------------

    async def issue_api_key(self, account_id: str) -> str:
        api_key = self.generate_api_key()
        async with self._db.transaction():
            if await self._repo.get(account_id) is None:
                raise AccountNotFound(account_id)
            await self._repo.set_api_key(account_id, api_key)
        return api_key

    # -------------------------------------------------------------------
    # FastAPI dependencies
    # -------------------------------------------------------------------

    async def resolve_account(
        self,
        x_api_key: str = Header(default=""),
        authorization: str = Header(default=""),
    ) -> Optional[dict]:
        """Resolve JWT or API key to an account. Returns None if no valid credentials."""
        if authorization.startswith("Bearer "):
            claims = self.decode_jwt(authorization[7:])
            if claims:
                async with self._db.read():
                    acct = await self._repo.get(claims.get("account_id", ""))
                if acct:
                    return acct

        if not x_api_key:
            return None

        if secrets.compare_digest(x_api_key, self._admin_key):
            return {"account_id": ADMIN_ACCOUNT_ID, "role": "admin", "wallet_address": "", "api_key": ""}

        async with self._db.read():
            return await self._repo.get_by_api_key(x_api_key)

    async def get_current_account(
        self,
        x_api_key: str = Header(default=""),
        authorization: str = Header(default=""),
    ) -> dict:
        acct = await self.resolve_account(x_api_key, authorization)
        if acct is None:
            raise HTTPException(
                status_code=401,
                detail="Missing or invalid credentials. Pass Authorization: Bearer <jwt> or X-API-Key header.",
            )
        return acct

    async def require_admin(
        self,
        x_api_key: str = Header(default=""),
        authorization: str = Header(default=""),
    ) -> dict:
        acct = await self.get_current_account(x_api_key, authorization)
        if acct["role"] != "admin":
            raise HTTPException(status_code=403, detail="Admin access required")
        return acct

    async def authorize_stream(self, api_key: str = "", token: str = "") -> Optional[dict]:
        """Admin account behind an event stream subscription, or None to refuse the socket."""
        acct = await self.resolve_account(api_key, f"Bearer {token}" if token else "")
        if acct is None or acct["role"] != "admin":
            return None
        return acct

    def require_owner(self, caller: dict, account_id: str):
        if caller["role"] != "admin" and caller["account_id"] != account_id:
            raise HTTPException(status_code=403, detail="You can only act on your own account")

    def check_feed_key(self, x_feed_key: str):
        """The transfer webhook accepts the feed key, or the admin key when none is set."""
        expected = self._feed_key or self._admin_key
        if not x_feed_key or not secrets.compare_digest(x_feed_key, expected):
            raise HTTPException(status_code=401, detail="Invalid or missing X-Feed-Key")
