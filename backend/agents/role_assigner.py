"""
Role Assignment Agent — deterministic deck building, fresh shuffle every game.

Responsibilities:
- Expand the host's role counts into a deck sized to the room
  (pad with citizens when short, truncate when over)
- Shuffle the deck (Fisher–Yates via random.Random.shuffle)
- Persist role i of the shuffled deck onto player i (players in join order)

Called by the Game Master when the host starts (or restarts) a game.
"""
import asyncio
import logging
import random
from typing import Any, Dict, List, Mapping, Optional, Sequence

from models.game import Player, RoleId
from services.document_store import DocumentStore, RoomPaths

logger = logging.getLogger(__name__)


def assign_roles(player_count: int, role_counts: Mapping[RoleId, int]) -> List[RoleId]:
    """
    Build the role deck for `player_count` players.

    Counts are expanded in mapping order. If they undershoot the player count
    the deck is padded with citizens; if they overshoot it is truncated.
    """
    roles: List[RoleId] = []
    for role, count in role_counts.items():
        roles.extend([RoleId(role)] * count)

    while len(roles) < player_count:
        roles.append(RoleId.CITIZEN)

    return roles[:player_count]


def shuffle_roles(roles: Sequence[RoleId], rng: Optional[random.Random] = None) -> List[RoleId]:
    """Uniform random permutation of `roles`; the input is left untouched."""
    shuffled = list(roles)
    (rng or random).shuffle(shuffled)
    return shuffled


def _join_order(player: Player):
    return (player.joined_at.timestamp() if player.joined_at else 0.0, player.id)


class RoleAssigner:
    """
    Assigns roles to every player in a room.
    A new permutation is drawn on every call, so "play again" never reuses
    the previous game's seating.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng

    async def assign(
        self,
        store: DocumentStore,
        paths: RoomPaths,
        players: List[Player],
        role_counts: Mapping[RoleId, int],
    ) -> List[Dict[str, Any]]:
        """
        Shuffle and persist roles for all players.

        Returns [{"player_id": str, "player_name": str, "role": str}, ...]
        in assignment order.
        """
        ordered = sorted(players, key=_join_order)
        deck = shuffle_roles(assign_roles(len(ordered), role_counts), self.rng)

        assignments: List[Dict[str, Any]] = []
        player_updates = []
        for player, role in zip(ordered, deck):
            player_updates.append(store.update_doc(paths.player(player.id), {
                "role": role.value,
                "roleReadConfirmed": False,
            }))
            assignments.append({
                "player_id": player.id,
                "player_name": player.name,
                "role": role.value,
            })
        await asyncio.gather(*player_updates)

        logger.info(
            "[%s] Roles assigned to %d players: %s",
            paths.room_code, len(assignments), sorted(a["role"] for a in assignments),
        )
        return assignments
