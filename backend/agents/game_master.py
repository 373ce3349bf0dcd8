"""
Game Master Agent — host-authoritative phase engine. Pure deterministic Python.

Responsibilities:
- Single writer of rooms/{code}/gameState/current (versioned phase record)
- Phase transitions along PHASE_TRANSITIONS, triggered by host buttons,
  countdown expiry and all-submitted aggregation checks
- Vote tally application, night resolution application, win checks
- Full game reset

Every mutating call is a silent no-op unless this client is the host:
non-host clients call these defensively from stale screens. Aggregation
checks may fire many times; each one re-reads the current phase under the
transition lock, so a transition happens at most once.
"""
import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import settings
from models.errors import PlayerNotFoundError
from models.game import (
    DeathCause, DeathLogEntry, Faction, GameState, NightAction, Phase, Player,
    ROLE_FACTION, RoleId, RoomStatus, SPECIAL_NIGHT_ROLES, SKIP_TARGET, LEFT_PLAYER_NAME,
    TimerKind, Vote, VoteHistoryEntry, VoteOutcome, can_transition,
)
from agents.countdown import Countdown, timeout_transition
from agents.night_resolver import (
    NightResolution, index_players, resolve_night, valid_night_targets,
)
from agents.role_assigner import RoleAssigner
from agents.vote_tally import VoteTally, tally_votes
from agents.win_evaluator import evaluate_winner
from services.document_store import Increment, SERVER_TIMESTAMP, DEATH_LOG, NIGHT_ACTIONS, VOTES, VOTE_HISTORY
from services.room_service import (
    RoomSession, best_effort, clear_collection, load_players, load_settings,
    lobby_state_doc,
)

logger = logging.getLogger(__name__)


class GameMaster:
    """
    Deterministic game engine for one room session.
    All methods read/write the session's Document Store.
    """

    def __init__(
        self,
        session: RoomSession,
        assigner: Optional[RoleAssigner] = None,
        tick_seconds: Optional[float] = None,
        monitor_interval: Optional[float] = None,
    ):
        self.session = session
        self.store = session.store
        self.paths = session.paths
        self.assigner = assigner or RoleAssigner()
        self.tick_seconds = tick_seconds if tick_seconds is not None else settings.timer_tick_seconds
        self.monitor_interval = (
            monitor_interval if monitor_interval is not None else settings.host_monitor_interval
        )
        self._lock = asyncio.Lock()
        self._countdown: Optional[Countdown] = None
        session.scope.add_cleanup(self.cancel_countdown)

    @property
    def is_host(self) -> bool:
        return self.session.is_host

    def _ignored(self, action: str) -> None:
        logger.debug("[%s] %s ignored: %s is not the host",
                     self.paths.room_code, action, self.session.player_id)

    # ── Authoritative record ──────────────────────────────────────────────────

    async def get_state(self) -> Optional[GameState]:
        data = await self.store.get_doc(self.paths.game_state)
        return GameState.model_validate(data) if data else None

    async def current_phase(self) -> Phase:
        state = await self.get_state()
        return state.phase if state else Phase.LOBBY

    async def set_phase(self, phase: Phase, payload: Optional[Dict[str, Any]] = None) -> bool:
        """
        Merge-write the phase record with a bumped version.
        Fields from earlier phases that are not repeated may linger.
        """
        if not self.is_host:
            self._ignored(f"set_phase({phase.value})")
            return False

        data: Dict[str, Any] = {
            "phase": phase.value,
            "version": Increment(1),
            "transitionId": f"{phase.value}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}",
            "updatedAt": SERVER_TIMESTAMP,
            "hostUid": self.session.player_id,
        }
        data.update(payload or {})
        await self.store.set_doc(self.paths.game_state, data, merge=True)
        logger.info("[%s] Phase → %s", self.paths.room_code, phase.value)
        return True

    async def _advance(
        self,
        expected: Phase,
        target: Phase,
        payload: Optional[Dict[str, Any]] = None,
        timer: Optional[TimerKind] = None,
    ) -> bool:
        """
        Move `expected` → `target`, only if the record is still in `expected`.
        The phase timer, if any, is running before the phase is written, so
        nothing that reacts to the new phase can leave it without a clock.
        """
        current = await self.current_phase()
        if current != expected:
            logger.debug(
                "[%s] Skip %s → %s: record is already in %s",
                self.paths.room_code, expected.value, target.value, current.value,
            )
            return False
        if not can_transition(current, target):
            logger.warning(
                "[%s] Illegal transition %s → %s refused",
                self.paths.room_code, current.value, target.value,
            )
            return False
        self.cancel_countdown()
        if timer is not None:
            await self._start_countdown(timer)
        return await self.set_phase(target, payload)

    async def _current_day(self) -> int:
        room = await self.store.get_doc(self.paths.room)
        return int(room.get("day", 1)) if room else 1

    # ── Timers ────────────────────────────────────────────────────────────────

    def cancel_countdown(self) -> None:
        countdown, self._countdown = self._countdown, None
        if countdown:
            countdown.cancel()

    async def _start_countdown(self, kind: TimerKind) -> None:
        game_settings = await load_settings(self.store, self.paths)
        seconds = game_settings.timers.seconds_for(kind)
        await self.session.ephemeral.set_value(
            self.paths.timer_key, {"remaining": seconds, "phase": kind.value}
        )

        async def _tick(remaining: int) -> None:
            await self.session.ephemeral.update_value(
                self.paths.timer_key, {"remaining": remaining}
            )

        countdown = Countdown(
            seconds,
            on_tick=_tick,
            on_expire=lambda: self._on_timeout(kind, countdown),
            tick_seconds=self.tick_seconds,
        )
        self.cancel_countdown()
        self._countdown = countdown.start()

    async def _on_timeout(self, kind: TimerKind, countdown: Countdown) -> None:
        if self._countdown is countdown:
            self._countdown = None
        if not self.is_host:
            return
        expected, target = timeout_transition(kind)
        actions: Dict[Phase, Callable[[], Awaitable[Any]]] = {
            Phase.VOTING: self.transition_to_voting,
            Phase.VOTE_RESULT: self.process_votes,
            Phase.NIGHT_SPECIAL: self.transition_to_night,
        }
        logger.info("[%s] %s timer expired in %s → %s",
                    self.paths.room_code, kind.value, expected.value, target.value)
        try:
            await actions[target]()
        except Exception as exc:
            logger.error("[%s] Timeout action for %s failed: %s",
                         self.paths.room_code, kind.value, exc)

    # ── Game start / role reveal ─────────────────────────────────────────────

    async def start_game(self) -> Optional[List[Dict[str, Any]]]:
        """
        Assign roles and open ROLE_REVEAL.
        Raises RoleCountMismatchError if settings do not fit the room.
        """
        if not self.is_host:
            self._ignored("start_game")
            return None
        async with self._lock:
            if await self.current_phase() != Phase.LOBBY:
                return None
            players = await load_players(self.store, self.paths)
            game_settings = await load_settings(self.store, self.paths)
            game_settings.check_player_count(len(players))

            assignments = await self.assigner.assign(
                self.store, self.paths, players, game_settings.roles
            )
            await self.store.update_doc(self.paths.room, {"status": RoomStatus.INGAME.value})
            await self._advance(Phase.LOBBY, Phase.ROLE_REVEAL)
            return assignments

    async def mark_role_read(self) -> None:
        await self.store.update_doc(
            self.paths.player(self.session.player_id), {"roleReadConfirmed": True}
        )

    async def check_all_players_read_role(self) -> bool:
        players = await load_players(self.store, self.paths)
        all_read = all(p.role_read_confirmed for p in players)
        if all_read and self.is_host:
            async with self._lock:
                await self._advance(
                    Phase.ROLE_REVEAL, Phase.MEETING_DISCUSSION, timer=TimerKind.MEETING
                )
        return all_read

    # ── Meeting / voting ──────────────────────────────────────────────────────

    async def transition_to_voting(self) -> bool:
        if not self.is_host:
            self._ignored("transition_to_voting")
            return False
        async with self._lock:
            if await self.current_phase() != Phase.MEETING_DISCUSSION:
                return False
            await clear_collection(self.store, self.paths, VOTES)
            return await self._advance(
                Phase.MEETING_DISCUSSION, Phase.VOTING, timer=TimerKind.VOTING
            )

    async def submit_vote(self, target_id: str) -> bool:
        """Accepted only during VOTING, from a living player, for a living player."""
        if await self.current_phase() != Phase.VOTING:
            logger.info("[%s] Vote from %s dropped: not in VOTING",
                        self.paths.room_code, self.session.player_id)
            return False
        me = await self.own_player()
        if me is None or not me.is_alive:
            logger.info("[%s] Vote from %s dropped: not a living player",
                        self.paths.room_code, self.session.player_id)
            return False
        target = await self.store.get_doc(self.paths.player(target_id))
        if target is None or not Player.from_doc(target_id, target).is_alive:
            logger.info("[%s] Vote from %s dropped: %s is not a living player",
                        self.paths.room_code, self.session.player_id, target_id)
            return False
        await self.store.set_doc(self.paths.vote(self.session.player_id), {
            "targetId": target_id,
            "submittedAt": SERVER_TIMESTAMP,
        })
        return True

    async def get_votes(self) -> Dict[str, str]:
        """{voter_id: target_id} for the current round."""
        docs = await self.store.list_docs(self.paths.votes)
        return {voter_id: Vote.model_validate(data).target_id for voter_id, data in docs}

    async def check_all_voted(self) -> bool:
        players = await load_players(self.store, self.paths)
        alive_ids = {p.id for p in players if p.is_alive}
        votes = await self.get_votes()
        all_voted = len(alive_ids & set(votes)) >= len(alive_ids)
        if all_voted and self.is_host:
            async with self._lock:
                if await self.current_phase() == Phase.VOTING:
                    await self._process_votes()
        return all_voted

    async def process_votes(self) -> Optional[VoteTally]:
        """Force the tally (vote timer expiry or host button)."""
        if not self.is_host:
            self._ignored("process_votes")
            return None
        async with self._lock:
            return await self._process_votes()

    async def _process_votes(self) -> Optional[VoteTally]:
        if await self.current_phase() != Phase.VOTING:
            return None

        votes = await self.get_votes()
        tally = tally_votes(votes)

        if tally.result != VoteOutcome.KILLED:
            logger.info("[%s] Vote result: %s %s",
                        self.paths.room_code, tally.result.value, tally.targets)
            await self._advance(Phase.VOTING, Phase.VOTE_RESULT, {
                "result": tally.result.value,
                "tiedPlayers": tally.targets,
                "voteCounts": tally.counts,
            })
            return tally

        day = await self._current_day()
        await self._archive_votes(votes, day)

        victim_id = tally.victim_id
        try:
            victim = await self._require_player(victim_id)
        except PlayerNotFoundError as exc:
            # Voted-out player already left: report the kill anyway so the game moves on
            logger.warning("[%s] %s (left the game?)", self.paths.room_code, exc)
            victim_name = LEFT_PLAYER_NAME
        else:
            victim_name = victim.name
            if victim.is_alive:
                await self._kill(victim_id, DeathCause.VOTE, victim.role, day)

        logger.info("[%s] Vote result: %s eliminated with %d votes",
                    self.paths.room_code, victim_id, tally.counts[victim_id])
        await self._advance(Phase.VOTING, Phase.VOTE_RESULT, {
            "result": VoteOutcome.KILLED.value,
            "victimId": victim_id,
            "victimName": victim_name,
            "tiedPlayers": [],
            "voteCounts": tally.counts,
        })
        return tally

    async def _archive_votes(self, votes: Dict[str, str], day: int) -> None:
        await asyncio.gather(*[
            self.store.add_doc(self.paths.vote_history, {
                "day": day,
                "voterId": voter_id,
                "targetId": target_id,
                "timestamp": SERVER_TIMESTAMP,
            })
            for voter_id, target_id in votes.items()
        ])

    async def _kill(self, player_id: str, cause: DeathCause, role: Optional[RoleId], day: int) -> None:
        await asyncio.gather(
            self.store.update_doc(self.paths.player(player_id), {"isAlive": False}),
            self.store.set_doc(self.paths.death(player_id), {
                "cause": cause.value,
                "day": day,
                "role": role.value if role else None,
                "timestamp": SERVER_TIMESTAMP,
            }),
        )

    async def proceed_after_vote(self) -> Optional[Phase]:
        """VOTE_RESULT → meeting again (tie), break, or game over."""
        if not self.is_host:
            self._ignored("proceed_after_vote")
            return None
        async with self._lock:
            state = await self.get_state()
            if not state or state.phase != Phase.VOTE_RESULT:
                return None

            if state.result != VoteOutcome.KILLED:
                if await self._advance(
                    Phase.VOTE_RESULT, Phase.MEETING_DISCUSSION, timer=TimerKind.MEETING
                ):
                    return Phase.MEETING_DISCUSSION
                return None

            winner = await self.check_win_condition()
            if winner:
                await self._advance(Phase.VOTE_RESULT, Phase.GAME_RESULT, {"winner": winner.value})
                return Phase.GAME_RESULT
            if await self._advance(Phase.VOTE_RESULT, Phase.BREAK, timer=TimerKind.BREAK):
                return Phase.BREAK
            return None

    # ── Night ─────────────────────────────────────────────────────────────────

    async def transition_to_night(self) -> bool:
        if not self.is_host:
            self._ignored("transition_to_night")
            return False
        async with self._lock:
            if await self.current_phase() != Phase.BREAK:
                return False
            await clear_collection(self.store, self.paths, NIGHT_ACTIONS)
            return await self._advance(Phase.BREAK, Phase.NIGHT_SPECIAL)

    async def submit_night_action(self, action_type: RoleId, target_id: str = SKIP_TARGET) -> bool:
        await self.store.set_doc(self.paths.night_action(self.session.player_id), {
            "type": RoleId(action_type).value,
            "targetId": target_id,
            "submittedAt": SERVER_TIMESTAMP,
        })
        return True

    async def get_night_actions(self) -> List[NightAction]:
        docs = await self.store.list_docs(self.paths.night_actions)
        return [NightAction.from_doc(actor_id, data) for actor_id, data in docs]

    async def check_special_roles_submitted(self) -> bool:
        players = await load_players(self.store, self.paths)
        actors = {p.id for p in players if p.is_alive and p.role in SPECIAL_NIGHT_ROLES}
        submitted = {a.actor_id for a in await self.get_night_actions()}
        all_submitted = actors <= submitted
        if all_submitted and self.is_host:
            async with self._lock:
                await self._advance(Phase.NIGHT_SPECIAL, Phase.NIGHT_IMPOSTOR)
        return all_submitted

    async def check_impostor_submitted(self) -> bool:
        actions = await self.get_night_actions()
        impostor_submitted = any(a.type == RoleId.IMPOSTOR for a in actions)
        if impostor_submitted and self.is_host:
            async with self._lock:
                if await self.current_phase() == Phase.NIGHT_IMPOSTOR:
                    await self._process_morning()
        return impostor_submitted

    async def process_morning(self) -> Optional[NightResolution]:
        if not self.is_host:
            self._ignored("process_morning")
            return None
        async with self._lock:
            return await self._process_morning()

    async def _process_morning(self) -> Optional[NightResolution]:
        if await self.current_phase() != Phase.NIGHT_IMPOSTOR:
            return None

        actions = await self.get_night_actions()
        players = index_players(await load_players(self.store, self.paths))
        resolution = resolve_night(actions, players)

        day = await self._current_day()
        failures = await best_effort(self.paths.room_code, "apply night deaths", [
            self._kill(v.player_id, v.cause, v.role, day) for v in resolution.victims
        ])
        if failures:
            logger.error("[%s] %d night deaths could not be written", self.paths.room_code, failures)
        await self.store.atomic_increment(self.paths.room, "day")

        logger.info("[%s] Night %d resolved: victims=%s",
                    self.paths.room_code, day, resolution.victim_ids)
        await self._advance(Phase.NIGHT_IMPOSTOR, Phase.MORNING_ANNOUNCEMENT, {
            "victims": resolution.victim_ids,
        })
        return resolution

    async def proceed_after_morning(self) -> Optional[Phase]:
        if not self.is_host:
            self._ignored("proceed_after_morning")
            return None
        async with self._lock:
            if await self.current_phase() != Phase.MORNING_ANNOUNCEMENT:
                return None
            winner = await self.check_win_condition()
            if winner:
                await self._advance(
                    Phase.MORNING_ANNOUNCEMENT, Phase.GAME_RESULT, {"winner": winner.value}
                )
                return Phase.GAME_RESULT
            if await self._advance(
                Phase.MORNING_ANNOUNCEMENT, Phase.MEETING_DISCUSSION, timer=TimerKind.MEETING
            ):
                return Phase.MEETING_DISCUSSION
            return None

    # ── Win condition ─────────────────────────────────────────────────────────

    async def check_win_condition(self) -> Optional[Faction]:
        return evaluate_winner(await load_players(self.store, self.paths))

    # ── Host monitor ──────────────────────────────────────────────────────────

    def aggregation_check(self, phase: Phase) -> Optional[Callable[[], Awaitable[bool]]]:
        """The all-submitted check that can end `phase`, if any."""
        return {
            Phase.ROLE_REVEAL: self.check_all_players_read_role,
            Phase.VOTING: self.check_all_voted,
            Phase.NIGHT_SPECIAL: self.check_special_roles_submitted,
            Phase.NIGHT_IMPOSTOR: self.check_impostor_submitted,
        }.get(phase)

    async def run_host_monitor(self, phase: Phase) -> None:
        """
        Poll the aggregation check for `phase` until the phase moves on.
        Runs on the host whether or not the host has anything to submit.
        """
        check = self.aggregation_check(phase)
        if check is None or not self.is_host:
            return
        while True:
            await asyncio.sleep(self.monitor_interval)
            try:
                if await self.current_phase() != phase:
                    return
                # A render for the next phase cancels this task; the transition finishes anyway
                await asyncio.shield(check())
            except Exception as exc:
                logger.warning("[%s] Host monitor check for %s failed: %s",
                               self.paths.room_code, phase.value, exc)

    # ── Player-facing reads ───────────────────────────────────────────────────

    async def _require_player(self, player_id: str) -> Player:
        data = await self.store.get_doc(self.paths.player(player_id))
        if data is None:
            raise PlayerNotFoundError(self.paths.room_code, player_id)
        return Player.from_doc(player_id, data)

    async def own_player(self) -> Optional[Player]:
        data = await self.store.get_doc(self.paths.player(self.session.player_id))
        return Player.from_doc(self.session.player_id, data) if data else None

    async def night_targets(self) -> List[str]:
        me = await self.own_player()
        if me is None or not me.is_alive:
            return []
        players = index_players(await load_players(self.store, self.paths))
        return valid_night_targets(me.role, me.id, players)

    async def reveal_role(self, target_id: str) -> Optional[Dict[str, Any]]:
        """
        Engineer: role of one living player. Doctor: role of a deceased one.
        Read-only; nothing is persisted.
        """
        me = await self.own_player()
        if me is None or me.role not in (RoleId.ENGINEER, RoleId.DOCTOR):
            return None
        players = index_players(await load_players(self.store, self.paths))
        if target_id not in valid_night_targets(me.role, me.id, players):
            return None
        target = players[target_id]
        return {
            "targetId": target.id,
            "name": target.name,
            "role": target.role.value if target.role else None,
            "faction": ROLE_FACTION[target.role].value if target.role else None,
        }

    async def get_vote_history(self) -> List[VoteHistoryEntry]:
        docs = await self.store.list_docs(self.paths.vote_history)
        entries = [VoteHistoryEntry.model_validate(data) for _, data in docs]
        return sorted(entries, key=lambda e: (e.day, e.timestamp.timestamp() if e.timestamp else 0.0))

    async def get_death_log(self) -> Dict[str, DeathLogEntry]:
        docs = await self.store.list_docs(self.paths.death_log)
        return {victim_id: DeathLogEntry.model_validate(data) for victim_id, data in docs}

    # ── Reset ─────────────────────────────────────────────────────────────────

    async def reset_game_state(self) -> bool:
        """
        Back to a fresh lobby: everyone alive and roleless, logs wiped, timer
        gone, day 1. The phase record is overwritten (not merged) at version 0
        so no winner/victim fields survive into the next game.
        """
        if not self.is_host:
            self._ignored("reset_game_state")
            return False
        async with self._lock:
            self.cancel_countdown()
            try:
                players = await load_players(self.store, self.paths)
                await best_effort(self.paths.room_code, "reset players", [
                    self.store.update_doc(self.paths.player(p.id), {
                        "isAlive": True,
                        "role": None,
                        "roleReadConfirmed": False,
                    })
                    for p in players
                ])
                await asyncio.gather(*[
                    clear_collection(self.store, self.paths, name)
                    for name in (VOTES, NIGHT_ACTIONS, DEATH_LOG, VOTE_HISTORY)
                ])
                await self.store.update_doc(self.paths.room, {
                    "day": 1,
                    "status": RoomStatus.LOBBY.value,
                })
                await best_effort(self.paths.room_code, "clear timer", [
                    self.session.ephemeral.delete_value(self.paths.timer_key),
                ])
                await self.store.set_doc(
                    self.paths.game_state, lobby_state_doc(self.session.player_id)
                )
            except Exception as exc:
                logger.error("[%s] Error resetting game state: %s", self.paths.room_code, exc)
                return False
            logger.info("[%s] Game state reset; room is fresh", self.paths.room_code)
            return True
