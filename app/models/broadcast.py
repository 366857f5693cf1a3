"""
Models / broadcast.py
Rôle:
- Message diffusé sur un canal. Un seul message par canal est conservé : chaque envoi
  remplace le précédent (pas de journal).

Notes:
- `nonce` est unique par envoi : il sert à détecter les changements et dédupliquer,
  jamais à ordonner.
- Les types d'événements émis par l'admin sont listés dans `BroadcastEventType`.
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, Literal
import time

BroadcastEventType = Literal[
    "event_update",
    "question_reveal",
    "round_review",
    "leaderboard_update",
    "next_question_countdown",
    "game_end",
]


class BroadcastMessage(BaseModel):
    event_type: BroadcastEventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    nonce: str
    timestamp: float = Field(default_factory=time.time)
