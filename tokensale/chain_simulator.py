"""
chain_simulator.py - USDT transfer chain simulator.

Stands in for the external blockchain watcher during development and tests:
 - POST /chain/transfer        -> mint a simulated USDT transfer into a new block
 - GET  /chain/transfers       -> transfers at or after ?from_block= (PollingFeed source)
 - GET  /chain/balance/{addr}  -> simulated USDT balance for an address
 - GET  /chain/stats           -> block height and transfer counts

Values are USDT micro-units (6 decimals), like the real token contract.

Usage (standalone):
    python -m tokensale.chain_simulator --port 8545

Usage (embedded in the ledger server):
    chain = ChainSimulator()
    chain.register_routes(fastapi_app)
    feed = PollingFeed(chain.fetch_since)
"""

import argparse
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pydantic import BaseModel

logger = logging.getLogger("chain")


@dataclass
class SimulatedTransfer:
    tx_hash: str
    from_address: str
    to_address: str
    value: int
    block_number: int
    status: str = "success"
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "hash": self.tx_hash,
            "from": self.from_address,
            "to": self.to_address,
            "value": str(self.value),
            "blockNumber": self.block_number,
            "timestamp": self.timestamp,
            "status": self.status,
        }


class TransferRequest(BaseModel):
    """Request body for simulating a transfer."""

    from_address: str
    to_address: str
    value: int
    status: str = "success"


class ChainSimulator:
    """In-memory chain of USDT transfers, one transfer per block."""

    def __init__(self, start_block: int = 1):
        self._transfers: List[SimulatedTransfer] = []
        self._next_block = start_block
        self._balances: Dict[str, int] = {}
        logger.info("Chain simulator initialized (start_block=%d)", start_block)

    @property
    def block_height(self) -> int:
        return self._next_block - 1

    def transfer(self, from_address: str, to_address: str, value: int, status: str = "success") -> dict:
        if value <= 0:
            raise ValueError("value must be positive")
        tx = SimulatedTransfer(
            tx_hash="0x" + secrets.token_hex(32),
            from_address=from_address,
            to_address=to_address,
            value=value,
            block_number=self._next_block,
            status=status,
        )
        self._transfers.append(tx)
        self._next_block += 1
        if status == "success":
            src, dst = from_address.lower(), to_address.lower()
            self._balances[src] = self._balances.get(src, 0) - value
            self._balances[dst] = self._balances.get(dst, 0) + value
        logger.info(
            "Block #%d: %s -> %s value=%d status=%s",
            tx.block_number, from_address[:10], to_address[:10], value, status,
        )
        return tx.to_dict()

    def get_transfers_since(self, from_block: int = 0, limit: int = 500) -> List[dict]:
        return [t.to_dict() for t in self._transfers if t.block_number >= from_block][:limit]

    async def fetch_since(self, from_block: int) -> List[dict]:
        return self.get_transfers_since(from_block)

    def get_balance(self, address: str) -> int:
        return self._balances.get(address.lower(), 0)

    def get_stats(self) -> dict:
        failed = sum(1 for t in self._transfers if t.status != "success")
        return {
            "block_height": self.block_height,
            "total_transfers": len(self._transfers),
            "failed_transfers": failed,
            "addresses": len(self._balances),
        }

    # -------------------------------------------------------------------
    # FastAPI route registration
    # -------------------------------------------------------------------

    def register_routes(self, app):
        """Register the simulator endpoints on an existing FastAPI app."""
        from fastapi import HTTPException

        @app.post("/chain/transfer")
        async def simulate_transfer(req: TransferRequest):
            try:
                return self.transfer(req.from_address, req.to_address, req.value, req.status)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        @app.get("/chain/transfers")
        async def list_transfers(from_block: int = 0, limit: int = 500):
            return self.get_transfers_since(from_block, limit)

        @app.get("/chain/balance/{address}")
        async def get_balance(address: str):
            return {"address": address, "balance": str(self.get_balance(address))}

        @app.get("/chain/stats")
        async def chain_stats():
            return self.get_stats()

        logger.info("Chain simulator routes registered on FastAPI app")


# ---------------------------------------------------------------------------
# Standalone mode
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )

    parser = argparse.ArgumentParser(description="USDT Chain Simulator (standalone)")
    parser.add_argument("--port", type=int, default=8545, help="HTTP port (default: 8545)")
    args = parser.parse_args(argv)

    from fastapi import FastAPI
    import uvicorn

    app = FastAPI(title="USDT Chain Simulator", version="0.1.0")
    chain = ChainSimulator()
    chain.register_routes(app)

    @app.get("/")
    async def root():
        stats = chain.get_stats()
        stats["service"] = "USDT Chain Simulator"
        return stats

    uvicorn.run(app, host="0.0.0.0", port=args.port, log_level="info")


if __name__ == "__main__":
    main()
