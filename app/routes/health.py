"""
Module routes/health.py
Rôle:
- Endpoints de santé (service OK + état du générateur de questions).

Intégrations:
- settings: nom d'app + paramètres LLM.
- registry: ping du record store.
- get_generator: provider configuré (aucun appel réseau, seulement la configuration).
"""
from fastapi import APIRouter
import time

from app.config.settings import settings
from app.services.question_generator import get_generator
from app.services.registry import get_adapter

router = APIRouter(prefix="/health", tags=["health"])

@router.get("")
async def health():
    """Renvoie un OK minimal avec le nom de service configuré et l'état du store."""
    t0 = time.perf_counter()
    store_ok = await get_adapter().ping()
    return {
        "ok": bool(store_ok),
        "service": settings.APP_NAME,
        "store_latency_s": round(time.perf_counter() - t0, 3),
    }

@router.get("/llm")
async def health_llm():
    """
    Indique le provider, les modèles (ordre de repli) et si la clé API est configurée.
    Ne déclenche pas de génération (coût/latence).
    """
    info = get_generator().ping()
    return {
        "ok": bool(info.get("configured")),
        "provider": settings.LLM_PROVIDER,
        "endpoint": settings.LLM_ENDPOINT if info.get("provider") != "stub" else None,
        "models": info.get("models", []),
    }
