# backend/atelier/main.py
from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.logging import get_logger, setup_logging
from .api.deps import get_current_user, CurrentUser
from .engine.errors import ConsistencyViolation, EngineError

# ---- Routers ----
from .api import admin, contracts, listings, proposals, resolution, tickets

setup_logging(settings.LOG_LEVEL)
logger = get_logger(__name__)

app = FastAPI(title="Atelier Commission API")

# ---------------------------
# CORS (frontend dev servers)
# ---------------------------
DEFAULT_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


def _resolve_allowed_origins() -> list[str]:
    # CORS_ALLOW_ORIGINS may be a list or a comma separated string
    raw = getattr(settings, "CORS_ALLOW_ORIGINS", None)
    if not raw:
        return DEFAULT_CORS_ORIGINS
    if isinstance(raw, (list, tuple)):
        vals = [str(x).strip().rstrip("/") for x in raw if str(x).strip()]
    else:
        vals = [s.strip().rstrip("/") for s in str(raw).split(",") if s.strip()]
    # a bare "*" cannot be combined with credentials
    if len(vals) == 1 and vals[0] == "*":
        return DEFAULT_CORS_ORIGINS
    return vals or DEFAULT_CORS_ORIGINS


ALLOW_ORIGINS = _resolve_allowed_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------
# Engine errors → JSON
# ---------------------------
@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if isinstance(exc, ConsistencyViolation):
        logger.error("%s %s rejected: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.kind, "detail": exc.message, "context": exc.details},
    )


# ---------------------------
# Health & Current User
# ---------------------------
@app.get("/health", tags=["system"])
def health():
    return {"status": "ok"}


@app.get("/me", tags=["auth"])
def me(current: CurrentUser = Depends(get_current_user)):
    return {"id": current.id, "email": current.email, "role": current.role_name}


# ---------------------------
# Routers
# ---------------------------
app.include_router(listings.router)
app.include_router(proposals.router)
app.include_router(contracts.router)
app.include_router(tickets.router)
app.include_router(resolution.router)
app.include_router(admin.router)
