"""
Models / answer.py
Rôle:
- `Answer`: réponse persistée (collection `answers`), au plus une par (participant, question).
- `SubmittedAnswer`: trace locale côté client (historique des réponses du joueur).

Notes:
- `answer_index` vaut -1 quand le temps s'est écoulé sans sélection.
"""
from pydantic import BaseModel, Field

NO_ANSWER = -1


class Answer(BaseModel):
    event_id: str
    participant_id: str
    question_id: str
    answer_index: int = Field(ge=NO_ANSWER)
    is_correct: bool
    response_time_ms: int = Field(ge=0)
    score: float = Field(default=0, ge=0, le=10)


class SubmittedAnswer(BaseModel):
    """Entrée de l'historique local (jamais mutée après ajout)."""
    question_id: str
    answer: int
    is_correct: bool
    response_time_ms: int
    score: float
