# app.py
"""
Aviator / Crash Game - HTTP & WebSocket entry point

Responsibilities:
- FastAPI HTTP server (betting + wallet endpoints)
- Request validation (Pydantic)
- Push channel over WebSocket with a per-user join handshake
- Lifespan: database init, crash recovery, round loop task

Identity comes from the auth layer in front of this service, as the
X-User-Id (and optional X-User-Name) request headers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncEngine

from .broadcast import EventBroadcaster, Subscriber
from .config import GameConfig
from .db import Transaction, User, create_db_engine, create_session_factory, init_db
from .engine import CrashGameEngine, CrashPointFn
from .errors import EngineError
from .history import RoundHistory
from .ledger import WalletLedger, WalletLocks
from .utils import as_utc

# =====================================================
# LOGGING
# =====================================================

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("aviator.app")

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

class BetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal = Field(..., gt=0)
    auto_cashout: Optional[Decimal] = Field(None, alias="autoCashout", gt=1)


class WalletRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal = Field(..., gt=0)
    payment_method: Optional[str] = Field(None, alias="paymentMethod", max_length=32)


class SettingsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    deposit_limit: Optional[Decimal] = Field(None, alias="depositLimit", ge=0)
    loss_limit: Optional[Decimal] = Field(None, alias="lossLimit", ge=0)
    session_time_limit: Optional[int] = Field(None, alias="sessionTimeLimit", ge=0)
    betting_enabled: Optional[bool] = Field(None, alias="isBettingEnabled")


@dataclass
class Caller:
    user_id: str
    name: Optional[str] = None


# =====================================================
# DEPENDENCIES
# =====================================================

async def current_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
) -> Caller:
    if not x_user_id:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing X-User-Id header")
    return Caller(user_id=x_user_id, name=x_user_name)


def get_engine(request: Request) -> CrashGameEngine:
    return request.app.state.engine


def get_ledger(request: Request) -> WalletLedger:
    return request.app.state.ledger


def get_history(request: Request) -> RoundHistory:
    return request.app.state.history


def ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def settings_to_dict(user: User) -> dict[str, Any]:
    return {
        "isBettingEnabled": user.betting_enabled,
        "depositLimit": float(user.deposit_limit) if user.deposit_limit is not None else None,
        "lossLimit": float(user.loss_limit) if user.loss_limit is not None else None,
        "sessionTimeLimit": user.session_time_limit,
    }


def tx_to_dict(tx: Transaction) -> dict[str, Any]:
    return {
        "transactionId": tx.id,
        "type": tx.type.value,
        "amount": float(tx.amount),
        "balanceAfter": float(tx.balance_after),
        "status": tx.status.value,
        "roundId": tx.round_id,
        "betId": tx.bet_id,
        "paymentMethod": tx.payment_method,
        "createdAt": as_utc(tx.created_at).isoformat() if tx.created_at else None,
    }


# =====================================================
# API - BETTING
# =====================================================

betting = APIRouter(prefix="/betting", tags=["betting"])


@betting.get("/current-round")
async def current_round(engine: CrashGameEngine = Depends(get_engine)):
    return ok(await engine.snapshot())


@betting.get("/active-bets")
async def active_bets(
    caller: Caller = Depends(current_caller),
    engine: CrashGameEngine = Depends(get_engine),
):
    return ok(await engine.active_bets(caller.user_id))


@betting.post("/place-bet")
async def place_bet(
    payload: BetRequest,
    caller: Caller = Depends(current_caller),
    engine: CrashGameEngine = Depends(get_engine),
):
    """
    Debit and bet registration commit together, or neither does.
    """
    bet = await engine.place_bet(
        caller.user_id,
        payload.amount,
        payload.auto_cashout,
        name=caller.name,
    )
    return ok(bet.to_dict())


@betting.post("/cashout/{bet_id}")
async def cashout(
    bet_id: str,
    caller: Caller = Depends(current_caller),
    engine: CrashGameEngine = Depends(get_engine),
):
    bet = await engine.cash_out(caller.user_id, bet_id)
    return ok(bet.to_dict())


@betting.get("/history")
async def bet_history(
    page: int = Query(1),
    limit: int = Query(20),
    caller: Caller = Depends(current_caller),
    history: RoundHistory = Depends(get_history),
):
    return ok(await history.bet_history(caller.user_id, page, limit))


@betting.get("/leaderboard")
async def leaderboard(
    period: str = Query("daily"),
    history: RoundHistory = Depends(get_history),
):
    return ok(await history.leaderboard(period))


@betting.get("/rounds")
async def recent_rounds(
    limit: int = Query(20),
    history: RoundHistory = Depends(get_history),
):
    return ok(await history.recent_rounds(limit))


@betting.get("/verify/{round_id}")
async def verify_round(
    round_id: str,
    history: RoundHistory = Depends(get_history),
):
    return ok(await history.verify_round(round_id))


# =====================================================
# API - WALLET
# =====================================================

wallet = APIRouter(prefix="/wallet", tags=["wallet"])


@wallet.get("/balance")
async def balance(
    caller: Caller = Depends(current_caller),
    ledger: WalletLedger = Depends(get_ledger),
    history: RoundHistory = Depends(get_history),
):
    user = await ledger.get_wallet(caller.user_id, caller.name)
    stats = await history.user_stats(caller.user_id)
    return ok({"balance": float(user.balance), **stats, "settings": settings_to_dict(user)})


@wallet.post("/deposit")
async def deposit(
    payload: WalletRequest,
    caller: Caller = Depends(current_caller),
    ledger: WalletLedger = Depends(get_ledger),
):
    tx = await ledger.deposit(caller.user_id, payload.amount, payload.payment_method)
    return ok({
        "transactionId": tx.id,
        "amount": float(tx.amount),
        "newBalance": float(tx.balance_after),
        "status": tx.status.value,
    })


@wallet.post("/withdraw")
async def withdraw(
    payload: WalletRequest,
    caller: Caller = Depends(current_caller),
    ledger: WalletLedger = Depends(get_ledger),
):
    tx = await ledger.withdraw(caller.user_id, payload.amount, payload.payment_method)
    return ok({
        "transactionId": tx.id,
        "amount": float(-tx.amount),
        "newBalance": float(tx.balance_after),
        "status": tx.status.value,
    })


@wallet.put("/settings")
async def update_settings(
    payload: SettingsRequest,
    caller: Caller = Depends(current_caller),
    ledger: WalletLedger = Depends(get_ledger),
):
    """
    Responsible-gaming controls. A null limit removes it; fields left
    out are unchanged.
    """
    changes = payload.model_dump(exclude_unset=True)
    for key in ("session_time_limit", "betting_enabled"):
        if changes.get(key, 0) is None:
            del changes[key]
    user = await ledger.update_settings(caller.user_id, **changes)
    return ok(settings_to_dict(user))


@wallet.get("/transactions")
async def transactions(
    page: int = Query(1),
    limit: int = Query(20),
    tx_type: Optional[str] = Query(None, alias="type"),
    caller: Caller = Depends(current_caller),
    ledger: WalletLedger = Depends(get_ledger),
):
    items, total = await ledger.transactions(caller.user_id, page, limit, tx_type)
    return ok({
        "transactions": [tx_to_dict(tx) for tx in items],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": -(-total // limit),
        },
    })


# =====================================================
# PUSH CHANNEL
# =====================================================

push = APIRouter(tags=["push"])


async def _pump(websocket: WebSocket, subscriber: Subscriber) -> None:
    """Drain one subscriber's queue onto its socket, in order."""
    try:
        while not subscriber.closed:
            message = await subscriber.next_event()
            await websocket.send_json(message)
    except (WebSocketDisconnect, RuntimeError):
        logger.debug(f"Push to user {subscriber.user_id} stopped: socket closed")


@push.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Client sends:
    - {"action": "join", "userId": "..."}
    - {"action": "leave"}
    - {"action": "ping"}

    Server sends:
    - {"event": "joined", "data": {"userId": "..."}}
    - {"event": "game:snapshot", "data": {...current round...}}
    - {"event": "<engine event>", "seq": n, "data": {...}, "timestamp": "..."}
    - {"event": "error", "data": {"message": "...", "code": "..."}}
    """
    broadcaster: EventBroadcaster = websocket.app.state.broadcaster
    engine: CrashGameEngine = websocket.app.state.engine

    await websocket.accept()
    subscriber: Optional[Subscriber] = None
    sender: Optional[asyncio.Task] = None

    async def leave() -> None:
        nonlocal subscriber, sender
        if sender is not None:
            sender.cancel()
            sender = None
        if subscriber is not None:
            broadcaster.unsubscribe(subscriber)
            subscriber = None

    async def error(message: str, code: str) -> None:
        await websocket.send_json({"event": "error", "data": {"message": message, "code": code}})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await error("Invalid JSON", "INVALID_MESSAGE")
                continue

            action = message.get("action") if isinstance(message, dict) else None

            if action == "join":
                user_id = message.get("userId")
                if not user_id:
                    await error("Missing userId", "INVALID_MESSAGE")
                    continue

                await leave()
                subscriber, snapshot = await engine.join(str(user_id))
                await websocket.send_json({"event": "joined", "data": {"userId": str(user_id)}})
                await websocket.send_json({"event": "game:snapshot", "data": snapshot})
                sender = asyncio.create_task(_pump(websocket, subscriber))

            elif action == "leave":
                await leave()
                await websocket.send_json({"event": "left", "data": {}})

            elif action == "ping":
                await websocket.send_json({"event": "pong", "data": {}})

            else:
                await error(f"Unknown action: {action}", "UNKNOWN_ACTION")

    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected")
    finally:
        await leave()


# =====================================================
# APP FACTORY
# =====================================================

def create_app(
    config: Optional[GameConfig] = None,
    db_engine: Optional[AsyncEngine] = None,
    clock: Callable[[], float] = time.monotonic,
    crash_point_fn: Optional[CrashPointFn] = None,
    run_loop: bool = True,
) -> FastAPI:
    config = config or GameConfig.from_env()
    logging.getLogger("aviator").setLevel(config.log_level.upper())
    owns_db = db_engine is None
    db_engine = db_engine or create_db_engine(config.database_url, echo=config.db_echo)

    session_factory = create_session_factory(db_engine)
    broadcaster = EventBroadcaster()
    wallet_locks = WalletLocks()
    engine = CrashGameEngine(
        session_factory,
        config,
        broadcaster=broadcaster,
        wallet_locks=wallet_locks,
        clock=clock,
        crash_point_fn=crash_point_fn,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Startup: Initializing Database...")
        await init_db(db_engine)

        recovered = await engine.recover()
        if recovered:
            logger.warning(f"Startup: force-crashed {recovered} unfinished round(s)")

        if run_loop:
            engine.start()

        yield

        logger.info("Shutdown: Cleaning up...")
        await engine.stop()
        if owns_db:
            await db_engine.dispose()

    app = FastAPI(title="Aviator Crash Game API", version="1.0.0", lifespan=lifespan)
    app.state.config = config
    app.state.db_engine = db_engine
    app.state.broadcaster = broadcaster
    app.state.engine = engine
    app.state.ledger = WalletLedger(session_factory, config, wallet_locks)
    app.state.history = RoundHistory(session_factory, config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EngineError)
    async def engine_error_handler(_, exc: EngineError):
        logger.warning(f"Rejected: {exc.code} {exc}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.code, "message": str(exc)},
        )

    @app.exception_handler(HTTPException)
    async def http_error_handler(_, exc: HTTPException):
        code = "UNAUTHORIZED" if exc.status_code == status.HTTP_401_UNAUTHORIZED else "HTTP_ERROR"
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": code, "message": str(exc.detail)},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "success": False,
                "error": "VALIDATION_ERROR",
                "message": "; ".join(
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
                ),
            },
        )

    app.include_router(betting)
    app.include_router(wallet)
    app.include_router(push)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "aviator.app:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
