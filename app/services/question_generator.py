"""
Service: question_generator.py
- Génère des brouillons de questions via une API chat-completions compatible OpenAI (Groq par défaut).
- Essaie chaque modèle configuré dans l'ordre (`settings.LLM_MODELS`) : modèle introuvable,
  timeout ou erreur réseau → modèle suivant.
- Post-traitement : retrait des fences markdown, validation de chaque brouillon
  (≥2 options, `correct_answer` entier dans les bornes), `order_index` séquentiel.

Fonctions principales:
- QuestionGenerator.generate(topic, count, difficulty) → List[QuestionDraft]
- parse_questions(content, topic) → List[QuestionDraft]
- get_generator() : provider configuré ("groq" ou "stub" sans réseau).
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from app.config.settings import settings
from app.models.question import QuestionDraft
from .errors import FatalError, QuestionValidationError, TransientError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 5.0

SYSTEM_PROMPT = (
    "You are a quiz question generator. You ONLY output valid JSON arrays. "
    "No markdown, no code fences, no explanatory text. Just the raw JSON array."
)

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


class LLMServiceError(TransientError):
    """Erreur encapsulant un échec de communication avec le LLM."""


def build_prompt(topic: str, count: int, difficulty: str) -> str:
    return (
        f'Generate {count} quiz questions about "{topic}" at {difficulty} difficulty level.\n\n'
        "Return ONLY a valid JSON array with NO additional text, markdown, or formatting. "
        "Each object must have:\n"
        '- "question": the question text\n'
        '- "options": array of exactly 4 answer choices (strings)\n'
        '- "correct_answer": the index (0-3) of the correct option\n'
        '- "explanation": a brief 1-sentence explanation of why the answer is correct\n'
        '- "category": the topic/category\n\n'
        "Make sure questions are diverse, interesting, and factually accurate. No duplicate questions."
    )


def _validate_draft(raw: Any, idx: int, topic: str) -> QuestionDraft:
    if not isinstance(raw, dict):
        raise QuestionValidationError(f"question {idx} is not an object")
    options = raw.get("options")
    if not isinstance(options, list) or len(options) < 2:
        raise QuestionValidationError(f"question {idx} has invalid options")
    correct = raw.get("correct_answer")
    if isinstance(correct, bool):
        raise QuestionValidationError(f"question {idx} has invalid correct_answer: {correct}")
    try:
        as_float = float(correct)
    except (TypeError, ValueError):
        raise QuestionValidationError(f"question {idx} has invalid correct_answer: {correct}")
    if not as_float.is_integer() or not 0 <= int(as_float) < len(options):
        raise QuestionValidationError(f"question {idx} has invalid correct_answer: {correct}")
    text = raw.get("question") or raw.get("question_text")
    if not isinstance(text, str) or not text.strip():
        raise QuestionValidationError(f"question {idx} has no text")
    return QuestionDraft(
        question_text=text.strip(),
        options=[str(o) for o in options],
        correct_answer=int(as_float),
        explanation=raw.get("explanation") or "",
        category=raw.get("category") or topic,
    )


def parse_questions(content: str, topic: str) -> List[QuestionDraft]:
    """
    Parse la réponse brute du modèle.
    Les brouillons invalides sont écartés (journalisés); un contenu non-JSON ou qui
    n'est pas un tableau lève LLMServiceError.
    """
    json_str = (content or "").strip()
    match = _FENCE.search(json_str)
    if match:
        json_str = match.group(1).strip()
    try:
        items = json.loads(json_str)
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse LLM response", extra={"llm_content": (content or "")[:200]})
        raise LLMServiceError("Failed to parse AI response. Please try again.") from exc
    if not isinstance(items, list):
        raise LLMServiceError("AI response is not an array")

    drafts: List[QuestionDraft] = []
    for idx, raw in enumerate(items):
        try:
            draft = _validate_draft(raw, idx, topic)
        except QuestionValidationError as exc:
            logger.warning("Skipping invalid question draft", extra={"index": idx, "reason": str(exc)})
            continue
        drafts.append(draft.model_copy(update={"order_index": len(drafts)}))
    return drafts


class QuestionGenerator:
    """
    Client HTTP du fournisseur de questions.
    - Session `requests` avec retries urllib3 (429/5xx) et backoff exponentiel.
    - Journalise chaque requête avec un identifiant de corrélation.
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        models: Optional[List[str]] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[Tuple[float, float]] = None,
    ) -> None:
        self.endpoint = endpoint or settings.LLM_ENDPOINT
        self.api_key = settings.LLM_API_KEY if api_key is None else api_key
        self.models = list(models or settings.LLM_MODELS)
        self.session = session or self._build_session()
        self.timeout = timeout or (CONNECT_TIMEOUT, settings.LLM_TIMEOUT_S)

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        retry = Retry(
            total=3,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset({"POST"}),
            respect_retry_after_header=True,
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = {}
        err = data.get("error") if isinstance(data, dict) else None
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        return f"LLM API error: {response.status_code}"

    def _complete(self, model: str, messages: List[Dict[str, str]], *, request_id: str) -> str:
        payload = {
            "model": model,
            "messages": messages,
            "temperature": 0.7,
            "max_tokens": 4096,
            "top_p": 0.9,
        }
        logger.debug("LLM request start", extra={"llm_url": self.endpoint, "llm_model": model, "llm_request_id": request_id})
        response = self.session.post(self.endpoint, json=payload, headers=self._headers(), timeout=self.timeout)
        if response.status_code >= 400:
            raise _HTTPFailure(response.status_code, self._error_message(response))
        try:
            data = response.json()
        except ValueError as exc:
            logger.error("Invalid JSON payload from LLM", exc_info=True, extra={"llm_request_id": request_id})
            raise LLMServiceError("Invalid JSON payload from LLM") from exc
        choices = data.get("choices") or []
        content = ((choices[0] if choices else {}).get("message") or {}).get("content") or ""
        content = content.strip()
        if not content:
            raise LLMServiceError("Empty response from LLM")
        return content

    def generate(self, topic: str = "General Knowledge", count: int = 10, difficulty: str = "medium") -> List[QuestionDraft]:
        if not self.api_key:
            raise FatalError("LLM API key is not configured")

        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(topic, count, difficulty)},
        ]
        last_error: Optional[Exception] = None
        for model in self.models:
            request_id = f"questions-{uuid4().hex}"
            try:
                content = self._complete(model, messages, request_id=request_id)
            except _HTTPFailure as exc:
                last_error = LLMServiceError(exc.message)
                if exc.status == 404 or "not found" in exc.message or "does not exist" in exc.message:
                    logger.warning("LLM model unavailable, trying next", extra={"llm_model": model, "llm_request_id": request_id})
                    continue
                logger.error("LLM request rejected", extra={"llm_model": model, "status": exc.status})
                raise last_error from exc
            except requests.Timeout as exc:
                logger.warning("LLM request timeout, trying next", extra={"llm_model": model, "llm_request_id": request_id})
                last_error = LLMServiceError("LLM request timed out")
                last_error.__cause__ = exc
                continue
            except requests.ConnectionError as exc:
                logger.warning("LLM network error, trying next", extra={"llm_model": model, "llm_request_id": request_id})
                last_error = LLMServiceError("LLM request failed")
                last_error.__cause__ = exc
                continue
            except requests.RequestException as exc:
                logger.error("LLM request failed", exc_info=True, extra={"llm_model": model, "llm_request_id": request_id})
                raise LLMServiceError("LLM request failed") from exc

            drafts = parse_questions(content, topic)
            logger.info(
                "LLM questions generated",
                extra={"llm_model": model, "llm_request_id": request_id, "count": len(drafts)},
            )
            return drafts

        raise last_error or LLMServiceError("All LLM models failed. Check your API key and network connection.")

    def ping(self) -> Dict[str, Any]:
        return {"provider": "groq", "models": self.models, "configured": bool(self.api_key)}


class _HTTPFailure(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


class StubQuestionGenerator:
    """Générateur local déterministe (dev, tests, démo hors ligne)."""

    def generate(self, topic: str = "General Knowledge", count: int = 10, difficulty: str = "medium") -> List[QuestionDraft]:
        return [
            QuestionDraft(
                question_text=f"[{difficulty}] {topic} question #{i + 1}?",
                options=[f"Option {c}" for c in "ABCD"],
                correct_answer=i % 4,
                explanation=f"Option {'ABCD'[i % 4]} is the stub answer.",
                category=topic,
                order_index=i,
            )
            for i in range(max(0, count))
        ]

    def ping(self) -> Dict[str, Any]:
        return {"provider": "stub", "models": [], "configured": True}


def get_generator():
    if settings.LLM_PROVIDER == "stub":
        return StubQuestionGenerator()
    return QuestionGenerator()
