"""
Migration Status API - FastAPI

Endpoints:
- GET /health                                     Liveness
- GET /api/migration/relayer-status              Relayer runtime status (admin)
- GET /api/migration/status?address=0x...        Allocation, relayed amount, history for a wallet

Read-only. The relayer runs with or without this surface.
"""

import logging
import os
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

logger = logging.getLogger("migration.api")

HISTORY_LIMIT = 50
API_PREFIX = "/api/migration"


# ============================================================
# MODELS
# ============================================================

class RelayHistoryItem(BaseModel):
    tx_in: str
    tx_out: Optional[str] = None
    amount: str
    status: str
    reason: Optional[str] = None
    created_at: Optional[str] = None


class MigrationStatusResponse(BaseModel):
    address: str
    allocation: str
    claimed: str
    relayed: str
    remaining: str
    paused: bool
    relayer_address: str
    history: list[RelayHistoryItem]


class RelayerStatusResponse(BaseModel):
    configured: bool
    running: Optional[bool] = None
    relayer_address: Optional[str] = None
    watermark: Optional[int] = None
    relay_count: Optional[int] = None
    return_count: Optional[int] = None
    failed_count: Optional[int] = None
    unconfirmed_count: Optional[int] = None
    last_error: Optional[str] = None
    started_at: Optional[str] = None
    last_poll_at: Optional[str] = None
    ledger_counts: Optional[dict[str, int]] = None


# ============================================================
# APP
# ============================================================

def create_app(relayer=None, ledger=None, oracle=None) -> FastAPI:
    """
    Create the status app. relayer/ledger/oracle are None when the
    relayer is not configured; endpoints then answer `configured: false`/503.
    """
    app = FastAPI(
        title="Migration relayer",
        description="V1 → V2 token migration relayer status.",
        version="0.1.0",
    )

    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        """Heartbeat endpoint."""
        return {
            "ok": True,
            "relayer_running": bool(relayer and relayer.is_running),
        }

    router = APIRouter(prefix=API_PREFIX)

    @router.get("/relayer-status", response_model=RelayerStatusResponse)
    async def relayer_status():
        if relayer is None:
            return RelayerStatusResponse(configured=False)

        counts = None
        if ledger is not None:
            try:
                counts = await ledger.count_by_status()
            except Exception as e:
                logger.warning(f"Failed to count relay rows: {e}")

        return RelayerStatusResponse(configured=True, ledger_counts=counts, **relayer.get_status())

    @router.get("/status", response_model=MigrationStatusResponse)
    async def migration_status(address: str = Query(..., examples=["0x1234..."])):
        from web3 import Web3

        if not address or not Web3.is_address(address):
            raise HTTPException(400, "Invalid Ethereum address")
        if relayer is None or oracle is None or ledger is None:
            raise HTTPException(503, "Migration not configured")

        try:
            snapshot = await oracle.read(address)
            paused = await oracle.is_paused()
        except Exception as e:
            logger.error(f"Failed to fetch migration status: {e}")
            raise HTTPException(500, "Failed to fetch migration data")

        relayed = 0
        history: list[RelayHistoryItem] = []
        try:
            relayed = await ledger.sum_sent_amount(address)
            for r in await ledger.history(address, limit=HISTORY_LIMIT):
                history.append(RelayHistoryItem(
                    tx_in=r.tx_hash_in,
                    tx_out=r.tx_hash_out,
                    amount=str(r.v1_amount),
                    status=r.status.value,
                    reason=r.reason,
                    created_at=r.created_at.isoformat() if r.created_at else None,
                ))
        except Exception as e:
            logger.warning(f"Failed to query relay DB: {e}")

        return MigrationStatusResponse(
            address=address.lower(),
            allocation=str(snapshot.allocation),
            claimed=str(snapshot.claimed),
            relayed=str(relayed),
            remaining=str(max(0, snapshot.remaining(relayed))),
            paused=paused,
            relayer_address=relayer.relayer_address,
            history=history,
        )

    app.include_router(router)
    return app
