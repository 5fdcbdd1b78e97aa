"""
Nerve Cord main entry point.

Builds the FastAPI app that:
  1. Loads persisted state on startup and runs the maintenance loop (expiry sweep + save)
  2. Mounts the token-gated REST API from nervecord.routes
  3. Serves the public endpoints: /stats, /skill, /skill/version and GET /heartbeat
"""
import asyncio
import logging
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from nervecord.auth import Tier, check_route_table, resolve_tier
from nervecord.config import HOST, PORT, DEFAULT_TOKEN, BUS_VERSION, Settings
from nervecord.db import crud
from nervecord.db.activity_log import ActivityLog
from nervecord.db.database import Durability, make_backend
from nervecord.db.store import BrokerState
from nervecord.errors import BrokerError, StorageError
from nervecord.routes import router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("nervecord")

_SKILL_VERSION = re.compile(r"^VERSION:\s*(.+)$", re.MULTILINE)


async def _maintenance_loop(app: FastAPI) -> None:
    """Every save interval: expire messages, purge stale larvae, save a full snapshot."""
    interval = app.state.settings.save_interval
    while True:
        await asyncio.sleep(interval)
        try:
            crud.sweep(app.state.broker)
            await app.state.durability.save_all()
        except Exception:
            logger.exception("Maintenance tick failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: load snapshots, then start the sweep/save loop
    await app.state.durability.load_all()
    task = asyncio.create_task(_maintenance_loop(app))
    logger.info(f"Nerve Cord running at http://{HOST}:{PORT}")
    yield
    # Shutdown: stop the loop, save once more, close storage
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    await app.state.durability.save_all()
    await app.state.durability.close()


def _read_skill(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        raise StorageError("skill file not found")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    if settings.token == DEFAULT_TOKEN:
        logger.warning("Using the default bus token. Set NERVECORD_TOKEN before exposing this server.")

    app = FastAPI(
        title="Nerve Cord",
        description="Message broker for a small fleet of cooperating bots.",
        version=BUS_VERSION,
        lifespan=lifespan,
    )
    state = BrokerState()
    app.state.settings = settings
    app.state.broker = state
    app.state.durability = Durability(state, make_backend(settings))
    app.state.activity_log = ActivityLog(Path(settings.data_dir) / "log")

    # ─────────────────────────────────────────────
    # Error responses: always {"error": "..."}
    # ─────────────────────────────────────────────

    @app.exception_handler(BrokerError)
    async def broker_error_handler(request: Request, exc: BrokerError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        # Only token holders get to learn which paths and methods exist
        if resolve_tier(request.headers.get("authorization", ""), settings) is Tier.NONE:
            return JSONResponse(status_code=401, content={"error": "unauthorized"})
        message = "not found" if exc.status_code == 404 else str(exc.detail).lower()
        return JSONResponse(status_code=exc.status_code, content={"error": message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        err = exc.errors()[0] if exc.errors() else {"loc": (), "msg": "invalid request"}
        field = ".".join(str(p) for p in err["loc"] if p not in ("query", "path", "body"))
        return JSONResponse(
            status_code=400,
            content={"error": f"{field}: {err['msg']}" if field else err["msg"]},
        )

    # ─────────────────────────────────────────────
    # Public endpoints (no token)
    # ─────────────────────────────────────────────

    @app.get("/stats")
    async def stats():
        return crud.bus_stats(state)

    @app.get("/skill")
    async def skill():
        return PlainTextResponse(_read_skill(settings.skill_file), media_type="text/markdown")

    @app.get("/skill/version")
    async def skill_version():
        match = _SKILL_VERSION.search(_read_skill(settings.skill_file))
        return {"version": match.group(1).strip() if match else "unknown"}

    @app.get("/heartbeat")
    async def heartbeat_list():
        return crud.heartbeat_list(state)

    check_route_table(router.routes)
    app.include_router(router)
    return app


app = create_app()
