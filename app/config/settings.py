"""
Configuration de l'application (Settings)
=========================================

Rôle
----
- Centraliser les paramètres du quiz (nom, host/port, jeton admin, stockage, timers, LLM…).
- Les valeurs par défaut conviennent pour un environnement de dev local.
- Les variables peuvent être surchargées via un fichier `.env` ou l'environnement.

Intégrations
------------
- `pydantic-settings` charge automatiquement les variables d'env et `.env`.
- Les services/routers importent `from app.config.settings import settings`.

Bonnes pratiques
----------------
- *Ne commitez pas* une valeur réelle de `ADMIN_TOKEN` ni de `LLM_API_KEY`. Utilisez `.env`.
- `TICK_INTERVAL_S` vaut 1 seconde en prod ; les tests le réduisent fortement.
- `DATA_DIR` calcule un chemin relatif au repo : `<repo>/app/data`.

Exemples de `.env`
------------------
APP_NAME="Mind Matrix Quiz (Staging)"
PORT=8080
ADMIN_TOKEN="mettre-une-valeur-secrète-en-prod"
LLM_PROVIDER="groq"
LLM_API_KEY="gsk_..."
STORE_PERSIST=true
DATA_DIR="/var/opt/quiz/data"
"""
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict
import os


class Settings(BaseSettings):
    # Nom du service (apparaît dans /health)
    APP_NAME: str = "Mind Matrix Quiz"
    # Bind réseau (FastAPI / Uvicorn)
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Jeton admin utilisé par la dépendance `admin_required`
    # ⚠️ Remplacez en production via .env
    ADMIN_TOKEN: str = "changeme-admin-secret"

    # Stockage des records (events, participants, questions, answers)
    # Par défaut: <repo>/app/data/records.json, persistance désactivée (mémoire seule)
    DATA_DIR: str = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data")
    STORE_PERSIST: bool = False

    # Déroulé d'une partie
    DEFAULT_TIME_PER_QUESTION: int = 30  # secondes
    NEXT_QUESTION_COUNTDOWN: int = 60    # secondes
    TICK_INTERVAL_S: float = 1.0         # pas des timers côté client

    # Diffusion (broadcast) : 3 tentatives, backoff linéaire 200ms × tentative
    BROADCAST_SEND_ATTEMPTS: int = 3
    BROADCAST_BACKOFF_MS: int = 200

    # Écritures admin (création d'event) : 3 tentatives, backoff 1s × tentative
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_BACKOFF_MS: int = 1000
    QUESTION_BATCH_SIZE: int = 5

    # Génération de questions (API compatible OpenAI, Groq par défaut)
    LLM_PROVIDER: str = "groq"
    LLM_ENDPOINT: str = "https://api.groq.com/openai/v1/chat/completions"
    LLM_API_KEY: str = ""
    LLM_MODELS: List[str] = ["llama-3.3-70b-versatile", "llama3-70b-8192", "mixtral-8x7b-32768"]
    LLM_TIMEOUT_S: float = 30.0

    # Paramétrage pydantic-settings :
    # - lit le fichier .env (UTF-8) si présent
    # - ignore les clés supplémentaires pour éviter les erreurs
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


# Instance unique importable partout : `settings`
settings = Settings()
