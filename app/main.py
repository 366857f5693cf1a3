"""
Application FastAPI — Point d'entrée
====================================

Rôle
----
- Instancie l'app FastAPI, configure le CORS pour le front,
- Monte les routeurs (REST + WebSocket),
- Traduit les erreurs métier du quiz en réponses HTTP,
- Journalise la configuration et la liste des routes au démarrage.

Traduction des erreurs
----------------------
- NotFoundError  → 404
- ConflictError  → 409 (join en double, réponse en double, event terminé)
- FatalError     → 503 (store injoignable, générateur non configuré)
- TransientError → 503 (après épuisement des retries)
- ValueError     → 400

Notes
-----
- ⚠️ Le middleware CORS doit être ajouté AVANT les include_router.
- Les protections admin sont posées PAR ROUTE (préflights OPTIONS).
"""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.routes.events import router as events_router
from app.routes.health import router as health_router
from app.routes.play import router as play_router
from app.routes.websocket import router as ws_router

from app.config.settings import settings
from app.services.errors import ConflictError, FatalError, NotFoundError, TransientError

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# --- App FastAPI principale  ---
app = FastAPI(title=settings.APP_NAME)

# ===========================
# CORS (dev: permissif)
# ===========================
ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],  # dont Authorization
)

# ===========================
# Montage des routers
# ===========================
app.include_router(health_router)
app.include_router(events_router)
app.include_router(play_router)
app.include_router(ws_router)  # WebSocket endpoint (/ws/events/{event_id})


# ===========================
# Erreurs métier → HTTP
# ===========================
def _error(status: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, exc)


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return _error(409, exc)


@app.exception_handler(FatalError)
async def fatal_handler(request: Request, exc: FatalError):
    logger.error("Fatal error on %s", request.url.path, extra={"error": str(exc)})
    return _error(503, exc)


@app.exception_handler(TransientError)
async def transient_handler(request: Request, exc: TransientError):
    logger.warning("Transient failure surfaced on %s", request.url.path, extra={"error": str(exc)})
    return _error(503, exc)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(400, exc)


# --- Racine utile pour "ping" simple (sans /health) ---
@app.get("/")
async def root():
    """Ping basique : permet de vérifier que l'app tourne."""
    return {"ok": True, "service": settings.APP_NAME}


# --- Hook de démarrage ---
@app.on_event("startup")
async def list_routes():
    """Journalise la config du générateur et les routes enregistrées (diagnostic)."""
    logger.info("LLM config: provider=%s models=%s", settings.LLM_PROVIDER, settings.LLM_MODELS)
    for r in app.routes:
        methods = getattr(r, "methods", None)
        logger.info("route %s %s", getattr(r, "path", r), sorted(methods) if methods else "")
