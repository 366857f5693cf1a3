"""
Models / question.py
Rôle:
- `QuestionDraft`: brouillon produit par le générateur, validé avant acceptation.
- `Question`: question stockée (immuable après création), ordonnée par `order_index`.

Règles de validation:
- au moins 2 options,
- `correct_answer` entier dans [0, len(options)).
Un brouillon invalide lève une erreur de validation Pydantic (il est écarté du lot).
"""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class QuestionDraft(BaseModel):
    question_text: str
    options: List[str] = Field(min_length=2)
    correct_answer: int
    explanation: str = ""
    category: Optional[str] = None
    order_index: int = 0

    @model_validator(mode="after")
    def _check_correct_answer(self) -> "QuestionDraft":
        if not 0 <= self.correct_answer < len(self.options):
            raise ValueError(f"correct_answer {self.correct_answer} out of range for {len(self.options)} options")
        return self


class Question(QuestionDraft):
    """Question rattachée à un event (collection `questions`)."""
    id: str
    event_id: str
