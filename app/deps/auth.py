"""
Dépendance d'authentification admin
===================================

Fournit une *dependency* FastAPI `admin_required` qui protège la surface de
commande de l'admin via un **Bearer token** (`settings.ADMIN_TOKEN`).

Pourquoi ne pas protéger le router entier ?
-------------------------------------------
Le navigateur envoie une requête **OPTIONS** (préflight CORS) sans header
`Authorization`. On protège donc chaque route réelle avec `Depends(admin_required)`.

Codes retour
------------
- 401 si aucun Bearer n'est fourni,
- 403 si le Bearer ne correspond pas à `ADMIN_TOKEN`,
- True sinon.
"""

from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config.settings import settings

# Schéma Bearer (désactive l'erreur auto pour qu'on rende nos 401/403)
bearer = HTTPBearer(auto_error=False)


def admin_required(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> bool:
    if credentials and (credentials.scheme or "").lower() == "bearer":
        if secrets.compare_digest(credentials.credentials, settings.ADMIN_TOKEN):
            return True
        raise HTTPException(status_code=403, detail="Invalid token")
    raise HTTPException(status_code=401, detail="Admin authentication required")
