"""
Night action resolution. Pure: the Game Master loads actions and players,
calls resolve_night(), then applies the deaths.

Resolution order is fixed and independent of submission order:
  1. Engineer vs Bug      an engineer check on a living Bug kills it (bug_death)
  2. Impostor target      the earliest-submitted impostor action binds
  3. Impostor kill        skipped if the target is gone, already a victim,
                          protected by a Fallen Angel, or a Bug (immune)
  4. Doctor               read-only, never produces a death

Step 2 is first-submit-wins: when several impostors are alive and disagree,
every later submission is discarded. That is observable game behaviour and is
kept as is.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Sequence

from models.game import DeathCause, NightAction, Player, RoleId, SKIP_TARGET

logger = logging.getLogger(__name__)

# Actions without a timestamp sort after every stamped one
_UNSTAMPED = datetime.max.replace(tzinfo=timezone.utc)


@dataclass
class NightVictim:
    player_id: str
    cause: DeathCause
    role: Optional[RoleId] = None


@dataclass
class NightResolution:
    victims: List[NightVictim] = field(default_factory=list)
    impostor_target: Optional[str] = None
    protected: bool = False        # Fallen Angel cancelled the kill
    bug_immune: bool = False       # impostor attacked a Bug

    @property
    def victim_ids(self) -> List[str]:
        return [v.player_id for v in self.victims]


def _submitted(action: NightAction) -> datetime:
    stamp = action.submitted_at
    if stamp is None:
        return _UNSTAMPED
    if stamp.tzinfo is None:
        return stamp.replace(tzinfo=timezone.utc)
    return stamp


def select_impostor_target(actions: Sequence[NightAction]) -> Optional[str]:
    """Target of the earliest impostor submission (first-submit-wins)."""
    impostor_actions = [
        a for a in actions if a.type == RoleId.IMPOSTOR and a.target_id != SKIP_TARGET
    ]
    if not impostor_actions:
        return None
    return min(impostor_actions, key=_submitted).target_id


def resolve_night(
    actions: Sequence[NightAction], players: Mapping[str, Player]
) -> NightResolution:
    resolution = NightResolution()

    # ── Step 1: Engineer vs Bug ──────────────────────────────────────────────
    for action in actions:
        if action.type != RoleId.ENGINEER:
            continue
        target = players.get(action.target_id)
        if target and target.is_alive and target.role == RoleId.BUG:
            if target.id not in resolution.victim_ids:
                logger.info("Bug %s eliminated by Engineer", target.id)
                resolution.victims.append(
                    NightVictim(target.id, DeathCause.BUG_DEATH, target.role)
                )

    # ── Step 2: Impostor target ──────────────────────────────────────────────
    target_id = select_impostor_target(actions)
    resolution.impostor_target = target_id

    # ── Step 3: Impostor kill ────────────────────────────────────────────────
    if target_id:
        target = players.get(target_id)
        if target and target.is_alive and target_id not in resolution.victim_ids:
            protected = any(
                a.type == RoleId.FALLEN_ANGEL and a.target_id == target_id
                for a in actions
            )
            if protected:
                resolution.protected = True
                logger.info("Player %s protected by Fallen Angel", target_id)
            elif target.role == RoleId.BUG:
                resolution.bug_immune = True
                logger.info("Impostor attack failed on Bug %s", target_id)
            else:
                resolution.victims.append(
                    NightVictim(target_id, DeathCause.IMPOSTOR, target.role)
                )

    return resolution


def valid_night_targets(
    role: Optional[RoleId], actor_id: str, players: Mapping[str, Player]
) -> List[str]:
    """
    Player ids `actor_id` may pick tonight.

    Engineer and Fallen Angel pick a living player other than themselves
    (the Fallen Angel may protect an impostor); the Doctor picks a deceased
    player; an impostor picks a living non-impostor other than themselves.
    """
    result: List[str] = []
    for pid, p in players.items():
        if role in (RoleId.ENGINEER, RoleId.FALLEN_ANGEL):
            ok = p.is_alive and pid != actor_id
        elif role == RoleId.DOCTOR:
            ok = not p.is_alive
        elif role == RoleId.IMPOSTOR:
            ok = p.is_alive and pid != actor_id and p.role != RoleId.IMPOSTOR
        else:
            ok = False
        if ok:
            result.append(pid)
    return result


def index_players(players: Sequence[Player]) -> Dict[str, Player]:
    return {p.id: p for p in players}
