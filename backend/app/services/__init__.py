"""Internal application services (pure helpers and ledger operations)."""

from .validation import ValidationError, validate_game_scores
from .rewards import calculate_rewards
from .ranking import replay_ledger
from .integrity import audit_ledger

__all__ = [
    "validate_game_scores",
    "ValidationError",
    "calculate_rewards",
    "replay_ledger",
    "audit_ledger",
]
