"""
Models / event.py
Rôle:
- Définir l'event de quiz (une session programmée avec son code, ses questions, ses participants).

Notes:
- `status` restreint à un jeu de valeurs (Literal) pour éviter les fautes de frappe.
- `code` est stocké en majuscules (recherche insensible à la casse).
- `current_question_index` vaut -1 tant qu'aucune question n'a été révélée.
- Un event `finished` n'est plus modifiable.
"""
from pydantic import BaseModel, Field
from typing import Literal, Optional

EventStatus = Literal["waiting", "active", "finished"]


class Event(BaseModel):
    """Event de quiz tel que stocké dans la collection `events`."""
    id: str  # identifiant généré par le store
    code: str  # code partagé aux joueurs (unique, majuscules)
    name: str = ""  # libellé affiché côté admin
    topic: Optional[str] = None  # thème(s) de génération
    difficulty: Optional[str] = None  # easy | medium | hard
    status: EventStatus = "waiting"
    current_question_index: int = Field(default=-1, ge=-1)
    time_per_question: int = Field(default=30, gt=0)  # secondes
    question_count: int = 0

    @property
    def is_finished(self) -> bool:
        return self.status == "finished"
