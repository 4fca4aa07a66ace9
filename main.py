# main.py
# =========================================================
# potcycle Backend (FastAPI)
# =========================================================
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException

import db as dbmod
from bets import BetIntake
from config import Settings, settings as default_settings
from custody import KeyCustody, SqliteKeyCustody
from errors import LedgerError, PotCycleError, ValidationError
from games import GameRegistry
from ledger import LedgerGateway
from locks import SettlementLocks
from models import GameStatus
from scheduler import CycleMonitor
from scores import ScoreLedger
from settlement import SettlementEngine
from treasury import TreasurySweep

logger = logging.getLogger("potcycle")

VERSION = "0.1.0"

# =========================================================
# Wiring
# =========================================================
@dataclass
class Services:
    db: dbmod.Database
    ledger: LedgerGateway
    custody: KeyCustody
    locks: SettlementLocks
    registry: GameRegistry
    scores: ScoreLedger
    bets: BetIntake
    engine: SettlementEngine
    monitor: CycleMonitor
    treasury: TreasurySweep


def build_services(db: dbmod.Database, ledger: LedgerGateway, cfg: Settings) -> Services:
    custody = SqliteKeyCustody(db)
    locks = SettlementLocks(db, ttl_seconds=cfg.SETTLEMENT_LOCK_TTL_SECONDS)
    registry = GameRegistry(
        db, custody, default_tax=cfg.DEFAULT_TAX_PERCENTAGE, default_cycle_seconds=cfg.cycle_seconds
    )
    scores = ScoreLedger(db)
    engine = SettlementEngine(
        db, registry, scores, ledger, custody, locks, service_wallet=cfg.SERVICE_WALLET
    )
    return Services(
        db=db,
        ledger=ledger,
        custody=custody,
        locks=locks,
        registry=registry,
        scores=scores,
        bets=BetIntake(registry, ledger, locks),
        engine=engine,
        monitor=CycleMonitor(registry, engine, interval_seconds=cfg.MONITOR_INTERVAL_SECONDS),
        treasury=TreasurySweep(registry, ledger, custody, locks, operator_wallet=cfg.OPERATOR_WALLET),
    )


def configure_logging(cfg: Settings) -> None:
    level = logging.DEBUG if cfg.DEBUG else getattr(logging, cfg.LOG_LEVEL, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")


# =========================================================
# Models
# =========================================================
class Req(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateGameReq(Req):
    game_id: Optional[str] = None
    game_name: str = Field(min_length=1)
    tax_percentage: Optional[int] = Field(default=None, ge=0, le=100)
    cycle_duration_seconds: Optional[int] = Field(default=None, gt=0)


class UpdateGameReq(Req):
    game_id: str = Field(min_length=1)
    game_name: Optional[str] = None
    tax_percentage: Optional[int] = Field(default=None, ge=0, le=100)
    cycle_duration_seconds: Optional[int] = Field(default=None, gt=0)


class GameIdReq(Req):
    game_id: str = Field(min_length=1)


class PlaceBetReq(Req):
    public_key: str = Field(min_length=1)
    amount_native: float = Field(gt=0, description="Wager in whole SOL")
    game_id: str = Field(min_length=1)


class ConfirmBetReq(PlaceBetReq):
    signature: str = Field(min_length=1)


class UpdateScoreReq(Req):
    game_id: str = Field(min_length=1)
    user_id: Optional[str] = None
    score: Optional[float] = None
    fetch_only: bool = False


# =========================================================
# App Init
# =========================================================
_auth_scheme = HTTPBearer(auto_error=False)


def admin_guard(request: Request, creds: HTTPAuthorizationCredentials = Depends(_auth_scheme)):
    cfg: Settings = request.app.state.settings
    if not cfg.ADMIN_TOKEN:
        # allow only if explicitly running in debug/dev
        if cfg.DEBUG:
            return True
        raise HTTPException(401, "ADMIN_TOKEN required in production")
    if not creds or creds.credentials != cfg.ADMIN_TOKEN:
        raise HTTPException(401, "Unauthorized")
    return True


def svc(request: Request) -> Services:
    return request.app.state.services


def create_app(cfg: Optional[Settings] = None, ledger: Optional[LedgerGateway] = None) -> FastAPI:
    """
    cfg defaults to the environment settings; pass a ledger to run against
    something other than the configured RPC node.
    """
    cfg = cfg or default_settings
    configure_logging(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = await dbmod.connect(cfg.DB_PATH)
        owned_ledger = ledger is None
        gateway = ledger or LedgerGateway(
            cfg.RPC_URL,
            default_signature_fee=cfg.DEFAULT_SIGNATURE_FEE,
            confirm_timeout=cfg.CONFIRM_TIMEOUT_SECONDS,
        )
        services = build_services(database, gateway, cfg)
        app.state.services = services
        if cfg.MONITOR_ENABLED:
            services.monitor.start()
        logger.info("[startup] db=%s rpc=%s monitor=%s", cfg.DB_PATH, cfg.RPC_URL, cfg.MONITOR_ENABLED)
        try:
            yield
        finally:
            await services.monitor.stop()
            if owned_ledger:
                await gateway.close()
            await database.close()

    app = FastAPI(title="potcycle Backend", version=VERSION, lifespan=lifespan)
    app.state.settings = cfg

    # ----------------------------- CORS ---------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------- Error envelope ---------------------------
    @app.exception_handler(PotCycleError)
    async def _domain_error(request: Request, exc: PotCycleError):
        if isinstance(exc, LedgerError):
            logger.error("[api] %s %s ledger error: %s", request.method, request.url.path, exc, exc_info=exc)
        elif exc.status_code >= 500:
            logger.error("[api] %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError):
        parts = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
            parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        return JSONResponse({"error": "; ".join(parts) or "Invalid request"}, status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("[api] %s %s unhandled error", request.method, request.url.path, exc_info=exc)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    register_routes(app, cfg.API_PREFIX.rstrip("/"))
    return app


# =========================================================
# Endpoints
# =========================================================
def register_routes(app: FastAPI, API: str) -> None:

    # ---------------- Health ----------------
    @app.get(f"{API}/health")
    async def health():
        return {"ok": True, "ts": time.time(), "service": "potcycle", "version": VERSION}

    @app.get(f"{API}/health/rpc", include_in_schema=False)
    async def health_rpc(s: Services = Depends(svc)):
        try:
            ok = await s.ledger.is_connected()
        except Exception as e:
            return {"ok": False, "error": str(e)}
        return {"ok": bool(ok)}

    # ---------------- Registry ----------------
    @app.get(f"{API}/games")
    async def list_games(id: Optional[str] = Query(None), s: Services = Depends(svc)):
        if id:
            return (await s.registry.get(id)).model_dump(mode="json", by_alias=True)
        return [g.model_dump(mode="json", by_alias=True) for g in await s.registry.list_all()]

    @app.post(f"{API}/games")
    async def create_game(body: CreateGameReq, s: Services = Depends(svc), auth: bool = Depends(admin_guard)):
        game = await s.registry.create(
            body.game_name,
            game_id=body.game_id,
            tax_percentage=body.tax_percentage,
            cycle_duration_seconds=body.cycle_duration_seconds,
        )
        return game.model_dump(mode="json", by_alias=True)

    @app.put(f"{API}/games")
    async def update_game(body: UpdateGameReq, s: Services = Depends(svc), auth: bool = Depends(admin_guard)):
        game = await s.registry.update(
            body.game_id,
            game_name=body.game_name,
            tax_percentage=body.tax_percentage,
            cycle_duration_seconds=body.cycle_duration_seconds,
        )
        return game.model_dump(mode="json", by_alias=True)

    @app.delete(f"{API}/games")
    async def delete_game(body: GameIdReq = Body(...), s: Services = Depends(svc), auth: bool = Depends(admin_guard)):
        drained = await s.treasury.close_game(body.game_id)
        return {"success": True, "sweptAmount": drained.amount if drained else 0}

    # ---------------- Status ----------------
    @app.get(f"{API}/game-status")
    async def game_status(gameId: Optional[str] = Query(None), s: Services = Depends(svc)):
        now = dbmod.utcnow()
        if gameId:
            game = await s.registry.get(gameId)
            return GameStatus.of(game, now).model_dump(mode="json", by_alias=True)
        return [GameStatus.of(g, now).model_dump(mode="json", by_alias=True) for g in await s.registry.list_all()]

    @app.post(f"{API}/get-pot-amount")
    async def get_pot_amount(body: GameIdReq, s: Services = Depends(svc)):
        return {"potAmount": await s.registry.get_pot_amount(body.game_id)}

    # ---------------- Bets ----------------
    @app.post(f"{API}/place-bet")
    async def place_bet(body: PlaceBetReq, s: Services = Depends(svc)):
        tx = await s.bets.prepare_bet(body.public_key, body.amount_native, body.game_id)
        return {"transaction": tx}

    @app.post(f"{API}/place-bet-confirm")
    async def place_bet_confirm(body: ConfirmBetReq, s: Services = Depends(svc)):
        await s.bets.confirm_bet(body.public_key, body.amount_native, body.game_id, body.signature)
        return {"success": True}

    # ---------------- Scores ----------------
    @app.post(f"{API}/update-score")
    async def update_score(body: UpdateScoreReq, s: Services = Depends(svc)):
        if body.fetch_only:
            rows = await s.scores.list_live_scores(body.game_id)
            return [r.model_dump(mode="json", by_alias=True) for r in rows]
        if not body.user_id or body.score is None:
            raise ValidationError("Missing required fields")
        result = await s.scores.record_score(body.game_id, body.user_id, body.score)
        return result.model_dump(mode="json", by_alias=True)

    # ---------------- Settlement / Treasury ----------------
    @app.post(f"{API}/distribute-winnings")
    async def distribute_winnings(body: GameIdReq, s: Services = Depends(svc)):
        outcome = await s.engine.distribute_winnings(body.game_id)
        return {
            "success": True,
            "paid": outcome.paid,
            "reason": outcome.reason.value if outcome.reason else None,
        }

    @app.post(f"{API}/sweep-to-operator")
    async def sweep_to_operator(body: GameIdReq, s: Services = Depends(svc), auth: bool = Depends(admin_guard)):
        result = await s.treasury.sweep_to_operator(body.game_id)
        return {"success": True, "signature": result.signature, "amount": result.amount}

    @app.post(f"{API}/cleanup")
    async def cleanup(body: GameIdReq, s: Services = Depends(svc), auth: bool = Depends(admin_guard)):
        game = await s.registry.reconcile_players(body.game_id)
        return {"success": True, "updatedGame": game.model_dump(mode="json", by_alias=True)}


app = create_app()
