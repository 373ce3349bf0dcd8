import asyncio

import pytest

from models.errors import RoleCountMismatchError
from models.game import (
    LEFT_PLAYER_NAME, Phase, RoleId, TimerSettings, VoteOutcome,
)


def test_versions_strictly_increase(make_table):
    async def scenario():
        table = await make_table(["host", "ann"])
        seen = [(await table.gm.get_state()).version]
        for phase in (Phase.ROLE_REVEAL, Phase.MEETING_DISCUSSION, Phase.VOTING, Phase.VOTE_RESULT):
            await table.gm.set_phase(phase, {"note": phase.value})
            seen.append((await table.gm.get_state()).version)
        state = await table.gm.get_state()
        table.close()
        return seen, state

    seen, state = asyncio.run(scenario())
    assert seen == [0, 1, 2, 3, 4]
    assert state.phase == Phase.VOTE_RESULT
    assert state.transition_id.startswith("VOTE_RESULT_")
    assert state.host_uid == "host"


def test_non_host_mutations_are_silent_noops(make_table):
    async def scenario():
        table = await make_table(["host", "ann"])
        ann = table.master("ann")
        results = [
            await ann.set_phase(Phase.ROLE_REVEAL),
            await ann.start_game(),
            await ann.transition_to_voting(),
            await ann.reset_game_state(),
        ]
        state = await table.gm.get_state()
        table.close()
        return results, state

    results, state = asyncio.run(scenario())
    assert results == [False, None, False, False]
    assert state.phase == Phase.LOBBY
    assert state.version == 0


def test_start_game_rejects_mismatched_role_counts(make_table):
    async def scenario():
        table = await make_table(["host", "ann", "bob"], roles={RoleId.IMPOSTOR: 1, RoleId.CITIZEN: 3})
        try:
            with pytest.raises(RoleCountMismatchError):
                await table.gm.start_game()
            return await table.gm.current_phase()
        finally:
            table.close()

    assert asyncio.run(scenario()) == Phase.LOBBY


def test_start_game_requires_an_impostor(make_table):
    async def scenario():
        table = await make_table(["host", "ann"], roles={RoleId.CITIZEN: 2})
        try:
            with pytest.raises(RoleCountMismatchError):
                await table.gm.start_game()
        finally:
            table.close()

    asyncio.run(scenario())


def test_start_game_assigns_roles_and_opens_role_reveal(make_table):
    async def scenario():
        table = await make_table(["host", "ann", "bob", "cid"])
        assignments = await table.gm.start_game()
        room = await table.store.get_doc(table.paths.room)
        state = await table.gm.get_state()
        roles = [(await table.player(s.player_id))["role"] for s in table.sessions]
        table.close()
        return assignments, room, state, roles

    assignments, room, state, roles = asyncio.run(scenario())
    assert len(assignments) == 4
    assert room["status"] == "ingame"
    assert state.phase == Phase.ROLE_REVEAL
    assert state.version == 1
    assert sorted(roles) == ["citizen", "citizen", "citizen", "impostor"]


def test_role_read_check_is_idempotent(make_table):
    async def scenario():
        table = await make_table(["host", "ann", "bob"])
        await table.gm.start_game()
        first_partial = await table.gm.check_all_players_read_role()
        for session in table.sessions:
            await table.master(session.player_id).mark_role_read()
        await table.gm.check_all_players_read_role()
        await table.gm.check_all_players_read_role()
        await table.master("ann").check_all_players_read_role()
        state = await table.gm.get_state()
        timer = table.ephemeral.get(table.paths.timer_key)
        table.close()
        return first_partial, state, timer

    first_partial, state, timer = asyncio.run(scenario())
    assert first_partial is False
    assert state.phase == Phase.MEETING_DISCUSSION
    assert state.version == 2
    assert timer["phase"] == "meeting"


async def _open_voting(table, roles):
    await table.set_roles(roles)
    await table.gm.set_phase(Phase.MEETING_DISCUSSION)
    assert await table.gm.transition_to_voting()


def test_tie_returns_to_meeting(make_table):
    async def scenario():
        table = await make_table(["host", "ann", "bob", "cid"])
        await _open_voting(table, {
            "host": RoleId.CITIZEN, "ann": RoleId.IMPOSTOR,
            "bob": RoleId.CITIZEN, "cid": RoleId.CITIZEN,
        })
        await table.master("host").submit_vote("ann")
        await table.master("ann").submit_vote("bob")
        await table.master("bob").submit_vote("ann")
        await table.master("cid").submit_vote("bob")
        assert await table.gm.check_all_voted()
        result = await table.gm.get_state()
        next_phase = await table.gm.proceed_after_vote()
        history = await table.gm.get_vote_history()
        table.close()
        return result, next_phase, history

    result, next_phase, history = asyncio.run(scenario())
    assert result.phase == Phase.VOTE_RESULT
    assert result.result == VoteOutcome.TIE
    assert sorted(result.tied_players) == ["ann", "bob"]
    assert next_phase == Phase.MEETING_DISCUSSION
    assert history == []


def test_kill_archives_votes_and_moves_to_break(make_table):
    async def scenario():
        table = await make_table(["host", "ann", "bob", "cid", "dee"])
        await _open_voting(table, {
            "host": RoleId.CITIZEN, "ann": RoleId.IMPOSTOR, "bob": RoleId.CITIZEN,
            "cid": RoleId.CITIZEN, "dee": RoleId.IMPOSTOR,
        })
        for voter, target in (("host", "ann"), ("bob", "ann"), ("cid", "ann"), ("ann", "bob"), ("dee", "bob")):
            await table.master(voter).submit_vote(target)
        await table.gm.check_all_voted()
        await table.gm.check_all_voted()
        result = await table.gm.get_state()
        victim = await table.player("ann")
        deaths = await table.gm.get_death_log()
        history = await table.gm.get_vote_history()
        next_phase = await table.gm.proceed_after_vote()
        timer = table.ephemeral.get(table.paths.timer_key)
        table.close()
        return result, victim, deaths, history, next_phase, timer

    result, victim, deaths, history, next_phase, timer = asyncio.run(scenario())
    assert result.result == VoteOutcome.KILLED
    assert result.victim_id == "ann"
    assert result.victim_name == "Ann"
    assert result.vote_counts == {"ann": 3, "bob": 2}
    assert victim["isAlive"] is False
    assert deaths["ann"].cause.value == "vote"
    assert deaths["ann"].role == RoleId.IMPOSTOR
    assert deaths["ann"].day == 1
    assert len(history) == 5
    assert next_phase == Phase.BREAK
    assert timer["phase"] == "break"


def test_dead_players_cannot_vote(make_table):
    async def scenario():
        table = await make_table(["host", "ann", "bob"])
        await _open_voting(table, {"host": RoleId.CITIZEN, "ann": RoleId.IMPOSTOR, "bob": RoleId.CITIZEN})
        await table.store.update_doc(table.paths.player("bob"), {"isAlive": False})
        accepted = await table.master("bob").submit_vote("ann")
        votes = await table.gm.get_votes()
        table.close()
        return accepted, votes

    accepted, votes = asyncio.run(scenario())
    assert accepted is False
    assert votes == {}


def test_votes_need_a_living_target_during_voting(make_table):
    async def scenario():
        table = await make_table(["host", "ann", "bob", "cid"])
        await table.set_roles({
            "host": RoleId.CITIZEN, "ann": RoleId.IMPOSTOR,
            "bob": RoleId.CITIZEN, "cid": RoleId.CITIZEN,
        })
        await table.gm.set_phase(Phase.MEETING_DISCUSSION)
        early = await table.master("host").submit_vote("ann")
        assert await table.gm.transition_to_voting()

        # bob died to the impostor last night
        await table.store.update_doc(table.paths.player("bob"), {"isAlive": False})
        await table.store.set_doc(table.paths.death("bob"), {"cause": "impostor", "day": 1, "role": "citizen"})
        for_dead = await table.master("host").submit_vote("bob")
        for_absent = await table.master("ann").submit_vote("nobody")
        for_living = await table.master("cid").submit_vote("ann")
        votes = await table.gm.get_votes()
        table.close()
        return early, for_dead, for_absent, for_living, votes

    early, for_dead, for_absent, for_living, votes = asyncio.run(scenario())
    assert early is False
    assert for_dead is False
    assert for_absent is False
    assert for_living is True
    assert votes == {"cid": "ann"}


def test_tally_on_dead_player_keeps_original_death(make_table):
    async def scenario():
        table = await make_table(["host", "ann", "bob", "cid"])
        await _open_voting(table, {
            "host": RoleId.CITIZEN, "ann": RoleId.IMPOSTOR,
            "bob": RoleId.CITIZEN, "cid": RoleId.CITIZEN,
        })
        await table.master("host").submit_vote("bob")
        await table.master("cid").submit_vote("bob")
        # bob dies between the votes and the tally
        await table.store.update_doc(table.paths.player("bob"), {"isAlive": False})
        await table.store.set_doc(table.paths.death("bob"), {"cause": "impostor", "day": 1, "role": "citizen"})
        tally = await table.gm.process_votes()
        deaths = await table.gm.get_death_log()
        state = await table.gm.get_state()
        table.close()
        return tally, deaths, state

    tally, deaths, state = asyncio.run(scenario())
    assert tally.result == VoteOutcome.KILLED
    assert state.victim_id == "bob"
    assert deaths["bob"].cause.value == "impostor"


def test_departed_victim_gets_placeholder_name(make_table):
    async def scenario():
        table = await make_table(["host", "ann", "bob"])
        await _open_voting(table, {"host": RoleId.CITIZEN, "ann": RoleId.IMPOSTOR, "bob": RoleId.CITIZEN})
        await table.master("host").submit_vote("bob")
        await table.master("ann").submit_vote("bob")
        await table.store.delete_doc(table.paths.player("bob"))
        tally = await table.gm.process_votes()
        state = await table.gm.get_state()
        table.close()
        return tally, state

    tally, state = asyncio.run(scenario())
    assert tally.result == VoteOutcome.KILLED
    assert state.phase == Phase.VOTE_RESULT
    assert state.victim_id == "bob"
    assert state.victim_name == LEFT_PLAYER_NAME


def test_empty_vote_round_repeats_meeting(make_table):
    async def scenario():
        table = await make_table(["host", "ann"])
        await _open_voting(table, {"host": RoleId.CITIZEN, "ann": RoleId.IMPOSTOR})
        await table.gm.process_votes()
        result = await table.gm.get_state()
        next_phase = await table.gm.proceed_after_vote()
        table.close()
        return result, next_phase

    result, next_phase = asyncio.run(scenario())
    assert result.result == VoteOutcome.NO_VOTES
    assert next_phase == Phase.MEETING_DISCUSSION


def test_full_night_resolves_into_morning(make_table):
    async def scenario():
        table = await make_table(["host", "eng", "doc", "ang", "imp", "bug", "cit"])
        await table.set_roles({
            "host": RoleId.CITIZEN, "eng": RoleId.ENGINEER, "doc": RoleId.DOCTOR,
            "ang": RoleId.FALLEN_ANGEL, "imp": RoleId.IMPOSTOR, "bug": RoleId.BUG,
            "cit": RoleId.CITIZEN,
        })
        await table.gm.set_phase(Phase.BREAK)
        assert await table.gm.transition_to_night()

        await table.master("eng").submit_night_action(RoleId.ENGINEER, "bug")
        await table.master("doc").submit_night_action(RoleId.DOCTOR)
        assert not await table.gm.check_special_roles_submitted()
        await table.master("ang").submit_night_action(RoleId.FALLEN_ANGEL, "host")
        assert await table.gm.check_special_roles_submitted()
        assert await table.gm.current_phase() == Phase.NIGHT_IMPOSTOR

        await table.master("imp").submit_night_action(RoleId.IMPOSTOR, "cit")
        await table.gm.check_impostor_submitted()
        await table.gm.check_impostor_submitted()

        state = await table.gm.get_state()
        room = await table.store.get_doc(table.paths.room)
        deaths = await table.gm.get_death_log()
        next_phase = await table.gm.proceed_after_morning()
        table.close()
        return state, room, deaths, next_phase

    state, room, deaths, next_phase = asyncio.run(scenario())
    assert state.phase == Phase.MORNING_ANNOUNCEMENT
    assert state.victims == ["bug", "cit"]
    assert room["day"] == 2
    assert deaths["bug"].cause.value == "bug_death"
    assert deaths["cit"].cause.value == "impostor"
    assert deaths["cit"].day == 1
    assert next_phase == Phase.MEETING_DISCUSSION


def test_morning_ends_game_when_impostors_reach_parity(make_table):
    async def scenario():
        table = await make_table(["host", "imp", "cit"])
        await table.set_roles({"host": RoleId.CITIZEN, "imp": RoleId.IMPOSTOR, "cit": RoleId.CITIZEN})
        await table.gm.set_phase(Phase.BREAK)
        await table.gm.transition_to_night()
        await table.gm.check_special_roles_submitted()
        await table.master("imp").submit_night_action(RoleId.IMPOSTOR, "cit")
        await table.gm.check_impostor_submitted()
        next_phase = await table.gm.proceed_after_morning()
        state = await table.gm.get_state()
        table.close()
        return next_phase, state

    next_phase, state = asyncio.run(scenario())
    assert next_phase == Phase.GAME_RESULT
    assert state.winner.value == "impostor"


def test_timer_expiry_drives_meeting_and_vote(make_table):
    async def scenario():
        table = await make_table(["host", "ann"], timers=TimerSettings(meeting=1, vote=1, break_=1))
        await table.gm.start_game()
        for session in table.sessions:
            await table.master(session.player_id).mark_role_read()
        await table.gm.check_all_players_read_role()
        reached = await table.wait_for_phase(Phase.VOTE_RESULT)
        state = await table.gm.get_state()
        table.close()
        return reached, state

    reached, state = asyncio.run(scenario())
    assert reached
    assert state.result == VoteOutcome.NO_VOTES
    # ROLE_REVEAL, MEETING_DISCUSSION, VOTING, VOTE_RESULT: one write each
    assert state.version == 4


def test_host_monitor_advances_night_without_host_action(make_table):
    async def scenario():
        table = await make_table(["host", "imp", "cit", "eng"])
        await table.set_roles({
            "host": RoleId.CITIZEN, "imp": RoleId.IMPOSTOR,
            "cit": RoleId.CITIZEN, "eng": RoleId.ENGINEER,
        })
        await table.gm.set_phase(Phase.BREAK)
        await table.gm.transition_to_night()
        monitor = asyncio.create_task(table.gm.run_host_monitor(Phase.NIGHT_SPECIAL))
        await table.master("eng").submit_night_action(RoleId.ENGINEER, "cit")
        reached = await table.wait_for_phase(Phase.NIGHT_IMPOSTOR)
        await asyncio.wait_for(monitor, timeout=1.0)
        table.close()
        return reached

    assert asyncio.run(scenario())


def test_reset_round_trip(make_table):
    async def scenario():
        table = await make_table(["host", "ann", "bob"])
        await _open_voting(table, {"host": RoleId.CITIZEN, "ann": RoleId.IMPOSTOR, "bob": RoleId.CITIZEN})
        for voter in ("host", "bob", "ann"):
            await table.master(voter).submit_vote("ann" if voter != "ann" else "bob")
        await table.gm.check_all_voted()
        await table.gm.proceed_after_vote()
        await table.master("host").submit_night_action(RoleId.CITIZEN)

        assert await table.gm.reset_game_state()

        state_doc = await table.store.get_doc(table.paths.game_state)
        players = [await table.player(pid) for pid in ("host", "ann", "bob")]
        room = await table.store.get_doc(table.paths.room)
        collections = {
            name: await table.store.list_docs(table.paths.collection(name))
            for name in ("votes", "nightActions", "deathLog", "voteHistory")
        }
        timer = table.ephemeral.get(table.paths.timer_key)
        table.close()
        return state_doc, players, room, collections, timer

    state_doc, players, room, collections, timer = asyncio.run(scenario())
    assert state_doc["phase"] == "LOBBY"
    assert state_doc["version"] == 0
    assert state_doc["transitionId"].startswith("RESET_")
    assert "winner" not in state_doc and "victimId" not in state_doc
    for player in players:
        assert player["isAlive"] is True
        assert player["role"] is None
        assert player["roleReadConfirmed"] is False
    assert room["day"] == 1
    assert room["status"] == "lobby"
    assert all(docs == [] for docs in collections.values())
    assert timer is None


def test_reveal_role_for_engineer_and_doctor(make_table):
    async def scenario():
        table = await make_table(["host", "eng", "doc", "imp"])
        await table.set_roles({
            "host": RoleId.CITIZEN, "eng": RoleId.ENGINEER,
            "doc": RoleId.DOCTOR, "imp": RoleId.IMPOSTOR,
        })
        await table.store.update_doc(table.paths.player("host"), {"isAlive": False})
        engineer_view = await table.master("eng").reveal_role("imp")
        doctor_view = await table.master("doc").reveal_role("host")
        doctor_on_living = await table.master("doc").reveal_role("imp")
        citizen_view = await table.master("imp").reveal_role("eng")
        table.close()
        return engineer_view, doctor_view, doctor_on_living, citizen_view

    engineer_view, doctor_view, doctor_on_living, citizen_view = asyncio.run(scenario())
    assert engineer_view["role"] == "impostor"
    assert doctor_view["role"] == "citizen"
    assert doctor_on_living is None
    assert citizen_view is None
