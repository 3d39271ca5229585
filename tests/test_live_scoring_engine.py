import threading
from dataclasses import replace

import pytest

from cricket_live.scoring.ball_event import WicketKind
from cricket_live.scoring.errors import (
    ConflictError,
    ScoringTimeoutError,
    UnknownLeagueError,
    UnknownMatchError,
    ValidationError,
)
from cricket_live.scoring.fantasy_points import FantasyLeague, FantasyTeam, ScoringRules
from cricket_live.scoring.innings_state import InningsStatus, MatchSetup
from cricket_live.scoring.live_scoring_engine import LiveScoringEngine
from tests.conftest import example_over, make_ball


PLAYERS = ["A", "B", "C", "D", "E", "F", "G", "H", "I", "J", "K"]


def score_over(engine, match_id="m1"):
    """Submit the example over; returns the committed sequences."""
    return [engine.submit_ball(match_id, 1, event)[0] for event in example_over()]


class TestSubmitBall:

    def test_submit_returns_sequence_and_state(self, engine):
        sequence, state = engine.submit_ball("m1", 1, make_ball(1, 1, runs=1))
        assert sequence == 1
        assert state.total_runs == 1
        assert state.striker == "B"
        assert engine.get_innings_state("m1").total_runs == 1

    def test_example_over(self, engine):
        assert score_over(engine) == [1, 2, 3, 4, 5, 6]
        state = engine.get_innings_state("m1", 1)
        assert (state.total_runs, state.wickets, state.overs) == (12, 1, "1.0")
        assert (state.striker, state.non_striker) == ("C", "A")

    def test_event_fields_taken_from_call(self, engine):
        event = make_ball(1, 1, runs=2, match_id="other", innings=2)
        sequence, state = engine.submit_ball("m1", 1, event)
        committed = engine.replay("m1")[0]
        assert committed.match_id == "m1"
        assert committed.innings == 1
        assert state.innings == 1

    def test_retry_returns_original_sequence(self, engine):
        first, _ = engine.submit_ball("m1", 1, make_ball(1, 1, runs=1), idempotency_key="sub-1")
        engine.submit_ball("m1", 1, make_ball(1, 2, "B", "A"), idempotency_key="sub-2")
        retried, state = engine.submit_ball("m1", 1, make_ball(1, 1, runs=1), idempotency_key="sub-1")

        assert retried == first == 1
        assert len(engine.replay("m1")) == 2
        assert state.total_runs == 1

    def test_illegal_delivery_never_reaches_ledger(self, engine):
        score_over(engine)
        with pytest.raises(ValidationError) as exc_info:
            # B is already out
            engine.submit_ball("m1", 1, make_ball(2, 1, "B", "C", bowler="Y"))

        assert exc_info.value.last_good_sequence == 6
        assert len(engine.replay("m1")) == 6

    def test_delivery_without_key_rejected(self, engine):
        engine.submit_ball("m1", 1, make_ball(1, 1, runs=1))
        keyless = replace(make_ball(1, 2, "B", "A", runs=4), idempotency_key=None)

        with pytest.raises(ValidationError) as exc_info:
            engine.submit_ball("m1", 1, keyless)

        assert "idempotency key" in exc_info.value.message
        assert exc_info.value.last_good_sequence == 1
        assert len(engine.replay("m1")) == 1

    def test_key_passed_with_call(self, engine):
        keyless = replace(make_ball(1, 1, runs=1), idempotency_key=None)
        first, _ = engine.submit_ball("m1", 1, keyless, idempotency_key="sub-1")
        retried, _ = engine.submit_ball("m1", 1, keyless, idempotency_key="sub-1")
        assert first == retried == 1
        assert engine.replay("m1")[0].idempotency_key == "sub-1"

    def test_keys_are_scoped_to_innings(self, engine_dirs, one_over_setup):
        engine = LiveScoringEngine(**engine_dirs)
        try:
            engine.register_match(one_over_setup)
            engine.submit_ball("m1", 1, make_ball(1, 1, "A", "B", key="ball-1"))
            for ball in range(2, 7):
                engine.submit_ball("m1", 1, make_ball(1, ball, "A", "B"))

            sequence, state = engine.submit_ball(
                "m1", 2, make_ball(1, 1, "P", "Q", bowler="A", runs=1, key="ball-1")
            )
            assert sequence == 7
            assert state.innings == 2
            assert state.total_runs == 1
        finally:
            engine.close()

    def test_malformed_delivery_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.submit_ball("m1", 1, make_ball(1, 1, striker="A", non_striker="A"))
        assert engine.replay("m1") == []

    def test_expected_sequence_conflict(self, engine):
        engine.submit_ball("m1", 1, make_ball(1, 1, runs=1), expected_sequence=1)
        with pytest.raises(ConflictError) as exc_info:
            engine.submit_ball("m1", 1, make_ball(1, 2, "B", "A"), expected_sequence=1)
        assert exc_info.value.last_good_sequence == 1

    def test_unknown_match(self, engine):
        with pytest.raises(UnknownMatchError):
            engine.submit_ball("nope", 1, make_ball(1, 1))

    def test_concurrent_submissions_serialised(self, engine):
        errors = []

        def scorer(offset):
            try:
                for i in range(5):
                    engine.submit_ball("m1", 1, make_ball(1, 1), idempotency_key=f"s{offset}-{i}")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=scorer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert [e.sequence for e in engine.replay("m1")] == list(range(1, 21))
        assert engine.get_innings_state("m1").legal_balls == 20


class TestRetraction:

    def test_retraction_rebuilds_figures(self, engine):
        score_over(engine)
        sequence, state = engine.retract("m1", 1, 3, reason="four was a leg-bye")
        assert sequence == 7
        assert state.total_runs == 8

        engine.wait_for_rebuild("m1")
        figures = engine.get_player_figures("m1")
        assert figures["B"].batting.runs == 0
        assert figures["X"].bowling.runs_conceded == 8
        engine.check_consistency("m1")

    def test_next_ball_waits_for_rebuild(self, engine):
        score_over(engine)
        engine.retract("m1", 1, 6)
        sequence, state = engine.submit_ball("m1", 1, make_ball(1, 6, "A", "C", runs=1))

        assert sequence == 8
        assert state.total_runs == 7
        assert engine.get_player_figures("m1")["A"].batting.runs == 2

    def test_retraction_delta_lists_changed_figures(self, engine):
        score_over(engine)
        subscription = engine.subscribe("m1")
        engine.retract("m1", 1, 3)
        engine.wait_for_rebuild("m1")

        delta = subscription.get(timeout=1)
        assert delta.sequence == 7
        assert delta.event["kind"] == "retraction"
        assert {f["player_id"] for f in delta.changed_figures} == {"B", "X"}
        assert delta.innings_state["total_runs"] == 8

    def test_failed_background_rebuild_retried(self, engine, monkeypatch):
        score_over(engine)
        real_update = engine.scorecard_cache.update
        calls = []

        def update_failing_once(**kwargs):
            calls.append(kwargs["last_sequence"])
            if len(calls) == 1:
                raise OSError(28, "No space left on device")
            return real_update(**kwargs)

        monkeypatch.setattr(engine.scorecard_cache, "update", update_failing_once)
        engine.retract("m1", 1, 6)
        sequence, state = engine.submit_ball("m1", 1, make_ball(1, 6, "A", "C", runs=1))

        assert sequence == 8
        assert state.total_runs == 7
        assert calls[:2] == [7, 7]
        assert engine.get_player_figures("m1")["A"].batting.runs == 2
        assert engine.scorecard_cache.get_latest("m1")["last_sequence"] == 8

    def test_rebuild_that_keeps_failing_blocks_until_it_succeeds(self, engine, monkeypatch):
        score_over(engine)
        real_update = engine.scorecard_cache.update

        def broken_update(**kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(engine.scorecard_cache, "update", broken_update)
        engine.retract("m1", 1, 6)
        with pytest.raises(OSError):
            engine.submit_ball("m1", 1, make_ball(1, 6, "A", "C", runs=1))
        assert len(engine.replay("m1")) == 7

        monkeypatch.setattr(engine.scorecard_cache, "update", real_update)
        sequence, _ = engine.submit_ball("m1", 1, make_ball(1, 6, "A", "C", runs=1))
        assert sequence == 8
        assert engine.get_player_figures("m1")["A"].batting.runs == 2

    def test_unknown_target(self, engine):
        engine.submit_ball("m1", 1, make_ball(1, 1))
        with pytest.raises(ValidationError):
            engine.retract("m1", 1, 4)


class TestTimeouts:

    @pytest.fixture
    def make_engine(self, engine_dirs, t20_setup):
        """Build engines with short timeouts, closing them afterwards."""
        engines = []

        def build(**timeouts):
            live = LiveScoringEngine(**engine_dirs, **timeouts)
            live.register_match(t20_setup)
            engines.append(live)
            return live

        yield build
        for live in engines:
            live.close()

    def test_busy_match_times_out(self, make_engine):
        engine = make_engine(append_timeout=0.05)
        engine.submit_ball("m1", 1, make_ball(1, 1, runs=1))

        session = engine._matches["m1"]
        session.lock.acquire()
        try:
            with pytest.raises(ScoringTimeoutError) as exc_info:
                engine.submit_ball("m1", 1, make_ball(1, 2, "B", "A"))
        finally:
            session.lock.release()

        assert exc_info.value.last_good_sequence == 1
        assert len(engine.replay("m1")) == 1

    def test_slow_rebuild_times_out_next_ball(self, make_engine, monkeypatch):
        engine = make_engine(recompute_timeout=0.05)
        score_over(engine)

        release = threading.Event()
        real_rebuild = engine._rebuild_figures

        def slow_rebuild(session, event):
            release.wait(5)
            real_rebuild(session, event)

        monkeypatch.setattr(engine, "_rebuild_figures", slow_rebuild)
        engine.retract("m1", 1, 6)
        try:
            with pytest.raises(ScoringTimeoutError) as exc_info:
                engine.submit_ball("m1", 1, make_ball(1, 6, "A", "C", runs=1))
        finally:
            release.set()

        assert exc_info.value.last_good_sequence == 7
        assert len(engine.replay("m1")) == 7

        engine._matches["m1"].pending_rebuild.result(timeout=5)
        sequence, _ = engine.submit_ball("m1", 1, make_ball(1, 6, "A", "C", runs=1))
        assert sequence == 8


class TestSuspension:

    def test_suspend_and_resume_with_fewer_overs(self, engine):
        engine.submit_ball("m1", 1, make_ball(1, 1, runs=1))
        _, state = engine.suspend("m1", 1, reason="rain")
        assert state.status == InningsStatus.SUSPENDED

        with pytest.raises(ValidationError):
            engine.submit_ball("m1", 1, make_ball(1, 2, "B", "A"))

        _, state = engine.resume("m1", 1, revised_overs=12)
        assert state.status == InningsStatus.IN_PROGRESS
        assert state.max_overs == 12


class TestReads:

    def test_innings_scope_figures(self, engine):
        score_over(engine)
        figures = engine.get_player_figures("m1", scope="innings:1", player_ids=["A"])
        assert list(figures) == ["A"]
        assert figures["A"].batting.runs == 7

    def test_career_figures(self, engine):
        score_over(engine)
        engine.register_match(MatchSetup("m2", "IND", "AUS", "AUS", overs=1))
        engine.submit_ball("m2", 1, make_ball(1, 1, "A", "B", runs=4))

        career = engine.get_career_figures(["A"])
        assert career["A"].batting.runs == 11
        assert career["A"].batting.innings == 2
        assert engine.get_player_figures("m1", scope="career")["A"].batting.runs == 11

    def test_snapshot_isolated_from_later_balls(self, engine):
        engine.submit_ball("m1", 1, make_ball(1, 1, runs=1))
        before = engine.get_innings_state("m1")
        engine.submit_ball("m1", 1, make_ball(1, 2, "B", "A", runs=2))
        assert before.total_runs == 1
        assert engine.get_innings_state("m1").total_runs == 3

    def test_innings_out_of_range(self, engine):
        with pytest.raises(ValidationError):
            engine.get_innings_state("m1", 5)

    def test_replay_from_sequence(self, engine):
        score_over(engine)
        assert [e.sequence for e in engine.replay("m1", from_sequence=5)] == [5, 6]

    def test_check_consistency(self, engine):
        score_over(engine)
        summary = engine.check_consistency("m1")
        assert summary == [{"innings": 1, "total_runs": 12, "extras": 0, "reconciled": True}]

    def test_scorecard_cache_follows_ledger(self, engine):
        score_over(engine)
        cached = engine.scorecard_cache.get_latest("m1")
        assert cached["last_sequence"] == 6
        assert cached["innings"][0]["total_runs"] == 12


class TestBroadcast:

    def test_one_delta_per_ball_in_order(self, engine):
        subscription = engine.subscribe("m1")
        score_over(engine)

        deltas = subscription.drain()
        assert [d.sequence for d in deltas] == [1, 2, 3, 4, 5, 6]
        assert deltas[3].event["wicket"]["kind"] == WicketKind.BOWLED.value
        assert {f["player_id"] for f in deltas[0].changed_figures} == {"A", "B", "X"}
        assert deltas[-1].innings_state["total_runs"] == 12

    def test_unsubscribe(self, engine):
        subscription = engine.subscribe("m1")
        engine.unsubscribe(subscription)
        engine.submit_ball("m1", 1, make_ball(1, 1))
        assert subscription.drain() == []

    def test_subscribe_unknown_match(self, engine):
        with pytest.raises(UnknownMatchError):
            engine.subscribe("nope")


class TestRecovery:

    def test_recover_from_ledger(self, engine, engine_dirs):
        score_over(engine)
        engine.submit_ball("m1", 1, make_ball(2, 1, "C", "A", bowler="Y", runs=2))
        engine.close()

        restarted = LiveScoringEngine(**engine_dirs)
        try:
            assert restarted.recover() == ["m1"]
            state = restarted.get_innings_state("m1")
            assert (state.total_runs, state.wickets, state.legal_balls) == (14, 1, 7)
            assert restarted.get_player_figures("m1")["C"].batting.runs == 3

            sequence, _ = restarted.submit_ball("m1", 1, make_ball(2, 2, "C", "A", bowler="Y"))
            assert sequence == 8
        finally:
            restarted.close()

    def test_recover_without_checkpoint(self, engine, engine_dirs):
        score_over(engine)
        engine.close()
        for path in engine_dirs["checkpoint_dir"].glob("*.json"):
            path.unlink()

        restarted = LiveScoringEngine(**engine_dirs)
        try:
            restarted.recover()
            assert restarted.get_innings_state("m1").total_runs == 12
        finally:
            restarted.close()

    def test_rebuild_matches_live_state(self, engine):
        score_over(engine)
        engine.retract("m1", 1, 5)
        engine.wait_for_rebuild("m1")
        live = engine.get_innings_state("m1").to_dict()

        rebuilt = engine.rebuild("m1")
        assert rebuilt.to_dict() == live

    def test_reregister_same_setup(self, engine, t20_setup):
        score_over(engine)
        state = engine.register_match(t20_setup)
        assert state.total_runs == 12

    def test_reregister_different_setup(self, engine):
        with pytest.raises(ConflictError):
            engine.register_match(MatchSetup("m1", "IND", "AUS", "AUS"))


class TestFantasy:

    @pytest.fixture
    def league(self, engine):
        league = FantasyLeague(
            league_id="L1",
            match_id="m1",
            name="Friends",
            rules=ScoringRules.from_dict({"runs": 1, "wickets": 10}),
        )
        engine.register_league(league)
        engine.add_team("L1", FantasyTeam("t1", "L1", "Hitters", list(PLAYERS), captain="A", vice_captain="B"))
        engine.add_team("L1", FantasyTeam("t2", "L1", "Bowlers", ["X"] + PLAYERS[1:], captain="X", vice_captain="B"))
        return league

    def test_points_follow_figures(self, engine, league):
        score_over(engine)
        points = engine.get_fantasy_points("L1")
        assert points["A"].total == 7
        assert points["X"].total == 10

    def test_team_points_apply_captaincy(self, engine, league):
        score_over(engine)
        team = engine.get_team_points("L1", "t1")
        # A (c) 7 x 2, B (vc) 4 x 1.5, C 1
        assert team.total == pytest.approx(14 + 6 + 1)

    def test_leaderboard(self, engine, league):
        score_over(engine)
        board = engine.get_leaderboard("L1")
        assert [t["team_id"] for t in board] == ["t2", "t1"]
        assert board[0]["total"] == pytest.approx(20 + 6 + 1)

    def test_points_recomputed_after_retraction(self, engine, league):
        score_over(engine)
        engine.retract("m1", 1, 6)
        engine.wait_for_rebuild("m1")
        assert engine.get_fantasy_points("L1")["A"].total == 1

    def test_duplicate_league(self, engine, league):
        with pytest.raises(ConflictError):
            engine.register_league(FantasyLeague(league_id="L1", match_id="m1"))

    def test_unknown_league_and_team(self, engine, league):
        with pytest.raises(UnknownLeagueError):
            engine.get_league("nope")
        with pytest.raises(UnknownLeagueError):
            engine.get_team_points("L1", "t9")

    def test_wrong_match_for_league(self, engine, league):
        with pytest.raises(ValidationError):
            engine.get_fantasy_points("L1", match_id="m2")

    def test_league_for_unregistered_match_scores_zero(self, engine):
        engine.register_league(FantasyLeague(league_id="L2", match_id="later"))
        assert engine.get_fantasy_points("L2") == {}
