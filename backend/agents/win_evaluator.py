"""
Win condition check, recomputed after every kill (vote or night).

Impostors win once living impostors >= everyone else alive (and at least one
impostor lives); citizens win when no impostor is left. Either way, a living
Bug steals the win.
"""
from typing import Iterable, Optional

from models.game import Faction, Player, RoleId


def evaluate_winner(players: Iterable[Player]) -> Optional[Faction]:
    alive = [p for p in players if p.is_alive]
    alive_impostors = sum(1 for p in alive if p.role == RoleId.IMPOSTOR)
    alive_others = len(alive) - alive_impostors

    winner: Optional[Faction] = None
    if alive_impostors >= alive_others and alive_impostors > 0:
        winner = Faction.IMPOSTOR
    elif alive_impostors == 0:
        winner = Faction.CITIZEN

    if winner and any(p.role == RoleId.BUG for p in alive):
        return Faction.BUG
    return winner
