import os
import logging

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from . import ledger, lifecycle
from .db import SessionLocal, init_db
from .events import log_event, manager
from .auth_routes import router as auth_router
from .admin_bootstrap_routes import count_admins, ensure_admin, router as admin_bootstrap_router
from .catalog_routes import router as catalog_router
from .cart_routes import router as cart_router
from .order_routes import router as order_router
from .request_routes import router as request_router
from .wallet_routes import router as wallet_router
from .content_routes import router as content_router
from .report_routes import router as report_router

ALLOWED_ORIGINS = [o.strip() for o in (os.environ.get("ALLOWED_ORIGINS") or "*").split(",") if o.strip()]

# ---------- FastAPI ----------
app = FastAPI(title="Storefront API", version="1.0.0")
app.include_router(auth_router)
app.include_router(admin_bootstrap_router)
app.include_router(catalog_router)
app.include_router(cart_router)
app.include_router(order_router)
app.include_router(request_router)
app.include_router(wallet_router)
app.include_router(content_router)
app.include_router(report_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=ALLOWED_ORIGINS != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Compress JSON responses to reduce payload sizes for large order lists
app.add_middleware(GZipMiddleware, minimum_size=500)


# ---------- Domain errors ----------
@app.exception_handler(ledger.LedgerError)
async def _ledger_error(request: Request, exc: ledger.LedgerError):
    status = 409 if isinstance(exc, ledger.IdempotencyConflict) else 400
    return JSONResponse(status_code=status, content={"detail": str(exc)})


@app.exception_handler(lifecycle.TransitionError)
async def _transition_error(request: Request, exc: lifecycle.TransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.websocket("/ws")
async def ws_updates(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        while True:
            # Keep-alive; we don't require messages from the client
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


@app.get("/api/health")
async def health():
    return {"ok": True}


# Ensure database tables exist on startup
@app.on_event("startup")
async def _init_db_tables():
    try:
        await init_db()
    except Exception as e:
        log_event("startup", "init_db_failed", logging.ERROR, error=str(e))


# Log routes on startup to verify ordering and presence
@app.on_event("startup")
async def _log_routes():
    routes = []
    for r in app.router.routes:
        path = getattr(r, "path", "?")
        methods = sorted(getattr(r, "methods", None) or [])
        routes.append(f"{','.join(methods) or r.__class__.__name__} {path}")
    log_event("startup", "routes", logging.DEBUG, routes=routes)


# ---------- Optional default admin bootstrap (env-based) ----------
# Creates an admin user ONLY IF no admin exists. Useful for first deploy / recovery.
ADMIN_DEFAULT_EMAIL = (os.environ.get("ADMIN_DEFAULT_EMAIL") or "").strip().lower()
ADMIN_DEFAULT_PASSWORD = (os.environ.get("ADMIN_DEFAULT_PASSWORD") or "").strip()
ADMIN_DEFAULT_NAME = (os.environ.get("ADMIN_DEFAULT_NAME") or "").strip()


@app.on_event("startup")
async def _ensure_default_admin():
    if not ADMIN_DEFAULT_EMAIL or not ADMIN_DEFAULT_PASSWORD:
        return
    try:
        async with SessionLocal() as session:
            if await count_admins(session):
                return
            await ensure_admin(session, email=ADMIN_DEFAULT_EMAIL, password=ADMIN_DEFAULT_PASSWORD, name=ADMIN_DEFAULT_NAME)
            await session.commit()
            log_event("startup", "default_admin_ensured", email=ADMIN_DEFAULT_EMAIL)
    except Exception as e:
        # Never fail startup for this helper
        log_event("startup", "default_admin_failed", logging.ERROR, error=str(e))
