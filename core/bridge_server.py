"""
FastAPI Server for the MT4 File Bridge
======================================

Thin HTTP surface over `TerminalBridge`:
- /health: bridge status (no authentication)
- /account/*: balance, account info and account stats
- /orders/*: place, list, modify and close orders
- /ping: round-trip check with the terminal

Authentication:
- If BRIDGE_API_TOKEN is set, every route except /health requires a
  matching X-Bridge-Token header.

Error mapping:
- BridgeBusy -> 409, CommandTimeout -> 504, CommandRejected -> 422,
  invalid parameters -> 400

Usage:
    env FOLDER_PATH=/path/to/MQL4/Files BRIDGE_API_TOKEN=xxx \\
        python -m uvicorn core.bridge_server:app --host 0.0.0.0 --port 3000
"""
from __future__ import annotations

import hmac
import logging
import os
from datetime import datetime
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.bridge import BridgeBusy, CommandRejected, CommandTimeout, TerminalBridge, load_config

# Load environment variables from .env if present
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

API_TOKEN = os.getenv("BRIDGE_API_TOKEN", "")


# ============================================================================
# Request bodies
# ============================================================================

class MarketOrderRequest(BaseModel):
    symbol: str
    side: str
    lots: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    comment: str = ""


class LimitOrderRequest(MarketOrderRequest):
    price: float


class ModifyOrderRequest(BaseModel):
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    price: Optional[float] = None
    comment: Optional[str] = None


# ============================================================================
# Helper Functions
# ============================================================================

def _now() -> str:
    return datetime.utcnow().isoformat()


def _require_auth(request: Request) -> None:
    """Check X-Bridge-Token when a token is configured.

    Raises HTTPException if authentication fails.
    """
    if not API_TOKEN:
        return
    token = request.headers.get("X-Bridge-Token", "")
    if not token:
        raise HTTPException(status_code=401, detail="missing_token")
    if not hmac.compare_digest(token, API_TOKEN):
        client = request.client.host if request.client else "unknown"
        logger.error(f"Invalid token from {client}")
        raise HTTPException(status_code=403, detail="invalid_token")


def _ok(result: Any) -> dict:
    return {"status": "ok", "result": result, "timestamp": _now()}


def create_app(bridge: Optional[TerminalBridge] = None) -> FastAPI:
    """Build the app around `bridge` (defaults to one built from the environment)."""
    app = FastAPI(
        title="MT4 File Bridge",
        description="HTTP access to an MT4 terminal through the file bridge",
        version="1.0.0",
    )
    app.state.bridge = bridge or TerminalBridge(load_config(dotenv=False))

    def get_bridge() -> TerminalBridge:
        return app.state.bridge

    # ========================================================================
    # API Endpoints
    # ========================================================================

    @app.get("/health")
    async def health_check():
        """Health check endpoint - no authentication required."""
        status = get_bridge().status()
        return {
            "status": "ok" if status["running"] else "stopped",
            "service": "mt4-file-bridge",
            "timestamp": _now(),
            "version": "1.0.0",
            "bridge": status,
            "token_configured": bool(API_TOKEN),
        }

    @app.get("/account/balance")
    async def account_balance(request: Request):
        _require_auth(request)
        return _ok(await get_bridge().get_balance())

    @app.get("/account/info")
    async def account_info(request: Request, refresh: bool = False):
        _require_auth(request)
        info = await get_bridge().refresh_account_info(force=refresh)
        return _ok(info.to_dict())

    @app.get("/account/stats")
    async def account_stats(request: Request):
        _require_auth(request)
        return _ok(await get_bridge().get_account_stats())

    @app.get("/orders/market")
    async def list_market_orders(request: Request):
        _require_auth(request)
        return _ok(await get_bridge().get_open_orders())

    @app.get("/orders/pending")
    async def list_pending_orders(request: Request):
        _require_auth(request)
        return _ok(await get_bridge().get_pending_orders())

    @app.post("/orders/market")
    async def place_market_order(request: Request, body: MarketOrderRequest):
        _require_auth(request)
        result = await get_bridge().place_market_order(
            body.symbol, body.side, body.lots, body.stop_loss, body.take_profit, body.comment
        )
        return _ok(result)

    @app.post("/orders/limit")
    async def place_limit_order(request: Request, body: LimitOrderRequest):
        _require_auth(request)
        result = await get_bridge().place_limit_order(
            body.symbol, body.side, body.lots, body.price, body.stop_loss, body.take_profit, body.comment
        )
        return _ok(result)

    @app.post("/orders/market/close-all")
    async def close_all_market_orders(request: Request):
        _require_auth(request)
        return _ok(await get_bridge().close_all_market_orders())

    @app.post("/orders/pending/close-all")
    async def close_all_pending_orders(request: Request):
        _require_auth(request)
        return _ok(await get_bridge().close_all_pending_orders())

    @app.post("/orders/pending/{ticket}/close")
    async def close_pending_order(request: Request, ticket: int):
        _require_auth(request)
        return _ok(await get_bridge().close_pending_order(ticket))

    @app.post("/orders/{ticket}/close")
    async def close_order(request: Request, ticket: int):
        _require_auth(request)
        return _ok(await get_bridge().close_order(ticket))

    @app.post("/orders/{ticket}/modify")
    async def modify_order(request: Request, ticket: int, body: ModifyOrderRequest):
        _require_auth(request)
        result = await get_bridge().modify_order(ticket, body.stop_loss, body.take_profit, body.price, body.comment)
        return _ok(result)

    @app.post("/ping")
    async def ping(request: Request):
        _require_auth(request)
        return _ok(await get_bridge().ping())

    # ========================================================================
    # Error handling
    # ========================================================================

    def _error(status_code: int, detail: Any) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"status": "error", "detail": detail, "timestamp": _now()},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return _error(exc.status_code, exc.detail)

    @app.exception_handler(BridgeBusy)
    async def busy_handler(request: Request, exc: BridgeBusy):
        return _error(409, str(exc))

    @app.exception_handler(CommandTimeout)
    async def timeout_handler(request: Request, exc: CommandTimeout):
        return _error(504, str(exc))

    @app.exception_handler(CommandRejected)
    async def rejected_handler(request: Request, exc: CommandRejected):
        return _error(422, exc.message)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _error(400, str(exc))

    # ========================================================================
    # Startup/Shutdown
    # ========================================================================

    @app.on_event("startup")
    async def startup_event():
        bridge = get_bridge()
        await bridge.start()
        logger.info("=" * 60)
        logger.info("MT4 File Bridge Server Starting")
        logger.info("=" * 60)
        logger.info(f"Command file: {bridge.channel.command_path}")
        logger.info(f"Response file: {bridge.channel.response_path}")
        logger.info(f"Token configured: {bool(API_TOKEN)}")
        logger.info("=" * 60)

    @app.on_event("shutdown")
    async def shutdown_event():
        await get_bridge().stop()
        logger.info("MT4 File Bridge Server Shutting Down")

    return app


app = create_app()
