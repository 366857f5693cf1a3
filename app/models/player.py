"""
Models / player.py
Rôle:
- Définir le participant inscrit à un event et l'entrée de classement dérivée.

Champs:
- id: identifiant unique du participant (généré par le store).
- event_id: event rejoint.
- player_id: identifiant saisi par le joueur (unique par event, majuscules).
- name: nom d’affichage.
- score: cumul des points (≥ 0), modifié uniquement par incrément atomique.
"""
from pydantic import BaseModel, Field


class Participant(BaseModel):
    """Participant tel que stocké dans la collection `participants`."""
    id: str
    event_id: str
    player_id: str  # unique par event_id (contrainte du store)
    name: str  # nom affiché (saisi à l’inscription)
    score: float = Field(default=0, ge=0)


class LeaderboardEntry(BaseModel):
    """Ligne de classement, toujours recalculée depuis les participants (jamais stockée)."""
    participant_id: str
    name: str
    score: float = 0
