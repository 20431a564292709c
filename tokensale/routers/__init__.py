"""Router package - collects all API routers and registers them on the FastAPI app."""

from fastapi import FastAPI

from tokensale.routers import (
    account,
    admin,
    chain,
    tokens,
    ws as ws_router,
)


def register_all_routers(app: FastAPI):
    app.include_router(account.router)
    app.include_router(tokens.router)
    app.include_router(admin.router)
    app.include_router(chain.router)
    ws_router.register(app)
