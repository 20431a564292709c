"""Chain router - /api/chain/* inbound transfer webhook."""

from typing import Any, Dict, List, Union

from fastapi import APIRouter, Body, Header, HTTPException, Query
from starlette.requests import Request

from tokensale.deps import get_server
from tokensale.reconciler import ChainTransfer

router = APIRouter()


@router.post("/api/chain/transfers")
async def receive_transfers(
    request: Request,
    body: Union[List[Dict[str, Any]], Dict[str, Any]] = Body(...),
    wait: bool = Query(default=False),
    x_feed_key: str = Header(default=""),
):
    """Accept one transfer or a batch from the chain watcher.

    Transfers are queued for the feed consumer; with ?wait=true they are
    reconciled inline and the outcome of each is returned.
    """
    srv = get_server(request)
    srv.auth.check_feed_key(x_feed_key)

    items = body if isinstance(body, list) else [body]
    transfers = []
    for item in items:
        try:
            transfers.append(ChainTransfer.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            raise HTTPException(status_code=422, detail=f"Malformed transfer: {e}")

    if wait:
        results = []
        for transfer in transfers:
            outcome = await srv.consumer.consume(transfer)
            results.append({
                "tx_hash": transfer.tx_hash,
                "outcome": outcome.value if outcome is not None else "error",
            })
        return {"accepted": len(transfers), "results": results}

    if srv.queue_feed is None:
        raise HTTPException(status_code=503, detail="Transfer queue is not enabled")
    queued = sum(1 for transfer in transfers if srv.queue_feed.push(transfer))
    if queued < len(transfers):
        raise HTTPException(status_code=503, detail=f"Queue full; accepted {queued} of {len(transfers)}")
    return {"accepted": queued, "pending": srv.queue_feed.pending}


@router.get("/api/chain/stats")
async def feed_stats(request: Request):
    srv = get_server(request)
    stats = srv.consumer.stats() if srv.consumer else {}
    stats["pending"] = srv.queue_feed.pending if srv.queue_feed else 0
    return stats
