import itertools

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from cricket_live.scoring import api_server

_submissions = itertools.count(1)


def ball_body(over, ball, striker="A", non_striker="B", bowler="X", runs=0, **extra):
    body = {
        "innings": 1,
        "over": over,
        "ball": ball,
        "striker": striker,
        "non_striker": non_striker,
        "bowler": bowler,
        "runs_off_bat": runs,
        "submission_id": f"tablet-1:{next(_submissions)}",
    }
    body.update(extra)
    return body


OVER = [
    ball_body(1, 1, "A", "B", runs=1),
    ball_body(1, 2, "B", "A"),
    ball_body(1, 3, "B", "A", runs=4),
    ball_body(1, 4, "B", "A", wicket={"kind": "bowled", "player_out": "B"}),
    ball_body(1, 5, "C", "A", runs=1),
    ball_body(1, 6, "A", "C", runs=6),
]


@pytest.fixture(scope="function")
def client(engine):
    """Test client bound to the fixture engine."""
    api_server.set_engine(engine)
    yield TestClient(api_server.app)
    api_server.set_engine(None)


def post_over(client):
    for body in OVER:
        response = client.post("/matches/m1/balls", json=body)
        assert response.status_code == 200


class TestMatchRoutes:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"

    def test_register_match(self, client):
        response = client.post("/matches", json={
            "match_id": "m2", "team_a": "ENG", "team_b": "NZ", "batting_first": "NZ", "match_format": "odi",
        })
        assert response.status_code == 200
        assert response.json()["innings_state"]["batting_team"] == "NZ"
        assert response.json()["innings_state"]["max_overs"] == 50

        matches = client.get("/matches").json()["matches"]
        assert [m["match_id"] for m in matches] == ["m1", "m2"]

    def test_register_conflicting_setup(self, client):
        response = client.post("/matches", json={
            "match_id": "m1", "team_a": "IND", "team_b": "AUS", "batting_first": "AUS",
        })
        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    def test_register_invalid_setup(self, client):
        response = client.post("/matches", json={
            "match_id": "m3", "team_a": "IND", "team_b": "AUS", "batting_first": "ENG",
        })
        assert response.status_code == 422
        assert response.json()["error"] == "validation"

    def test_unsafe_match_id_rejected(self, client):
        response = client.post("/matches", json={
            "match_id": "ipl/2024 final", "team_a": "IND", "team_b": "AUS", "batting_first": "IND",
        })
        assert response.status_code == 422
        assert response.json()["error"] == "validation"
        assert "ipl/2024 final" not in [m["match_id"] for m in client.get("/matches").json()["matches"]]

    def test_write_routes_document_error_body(self, client):
        schema = client.get("/openapi.json").json()
        for path in ("/matches", "/matches/{match_id}/balls", "/matches/{match_id}/retractions"):
            responses = schema["paths"][path]["post"]["responses"]
            for status in ("404", "409", "422", "503"):
                ref = responses[status]["content"]["application/json"]["schema"]["$ref"]
                assert ref.endswith("/ErrorResponse")


class TestBallRoutes:

    def test_submit_over(self, client):
        post_over(client)
        state = client.get("/matches/m1/innings/1").json()
        assert state["total_runs"] == 12
        assert state["wickets"] == 1
        assert state["overs"] == "1.0"

    def test_resubmission_returns_same_sequence(self, client):
        body = ball_body(1, 1, runs=1, submission_id="tablet-7:1")
        first = client.post("/matches/m1/balls", json=body).json()
        second = client.post("/matches/m1/balls", json=body).json()

        assert first["sequence"] == second["sequence"] == 1
        assert len(client.get("/matches/m1/events").json()["events"]) == 1

    def test_submission_needs_a_key(self, client):
        body = ball_body(1, 1, runs=1)
        del body["submission_id"]
        response = client.post("/matches/m1/balls", json=body)

        assert response.status_code == 422
        assert response.json()["error"] == "validation"
        assert "idempotency_key" in response.json()["message"]
        assert client.get("/matches/m1/events").json()["events"] == []

    def test_explicit_key_identifies_retry(self, client):
        body = ball_body(1, 1, runs=1, idempotency_key="ball-1.1")
        first = client.post("/matches/m1/balls", json=body).json()
        body["submission_id"] = "tablet-2:9"
        second = client.post("/matches/m1/balls", json=body).json()
        assert first["sequence"] == second["sequence"] == 1

    def test_illegal_delivery(self, client):
        post_over(client)
        response = client.post("/matches/m1/balls", json=ball_body(2, 1, "B", "C", bowler="Y"))
        assert response.status_code == 422
        assert response.json() == {
            "error": "validation",
            "message": "Player B is already out in innings 1",
            "last_good_sequence": 6,
        }

    def test_schema_errors_share_error_shape(self, client):
        response = client.post("/matches/m1/balls", json=ball_body(1, 16))
        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "validation"
        assert "ball" in body["message"]
        assert body["last_good_sequence"] is None

    def test_expected_sequence_conflict(self, client):
        client.post("/matches/m1/balls", json=ball_body(1, 1, expected_sequence=1))
        response = client.post("/matches/m1/balls", json=ball_body(1, 2, expected_sequence=1))
        assert response.status_code == 409
        assert response.json()["last_good_sequence"] == 1

    def test_unknown_match(self, client):
        response = client.post("/matches/nope/balls", json=ball_body(1, 1))
        assert response.status_code == 404
        assert response.json()["error"] == "unknown_match"

    def test_extra_and_wicket_inferred(self, client):
        response = client.post("/matches/m1/balls", json=ball_body(
            1, 1, extra={"kind": "no_ball", "amount": 1},
            wicket={"kind": "run_out", "player_out": "B", "fielders": ["F"]},
        ))
        assert response.status_code == 200
        event = client.get("/matches/m1/events").json()["events"][0]
        assert event["kind"] == "wicket"
        assert event["legal"] is False

    def test_retraction(self, client, engine):
        post_over(client)
        response = client.post("/matches/m1/retractions", json={"innings": 1, "retracts_sequence": 3})
        assert response.status_code == 200
        assert response.json()["sequence"] == 7
        assert response.json()["innings_state"]["total_runs"] == 8

        engine.wait_for_rebuild("m1")
        players = client.get("/matches/m1/figures").json()["players"]
        assert {p["player_id"]: p["batting"]["runs"] for p in players}["B"] == 0

    def test_suspend_and_resume(self, client):
        client.post("/matches/m1/balls", json=ball_body(1, 1))
        suspended = client.post("/matches/m1/suspend", json={"innings": 1, "reason": "rain"}).json()
        assert suspended["innings_state"]["status"] == "suspended"

        resumed = client.post("/matches/m1/resume", json={"innings": 1, "revised_overs": 15}).json()
        assert resumed["innings_state"]["status"] == "in_progress"
        assert resumed["innings_state"]["max_overs"] == 15


class TestReadRoutes:

    def test_figures(self, client):
        post_over(client)
        body = client.get("/matches/m1/figures", params={"scope": "innings:1"}).json()
        assert body["scope"] == 1
        assert body["players"][0]["player_id"] == "A"
        assert body["players"][0]["batting"]["runs"] == 7

    def test_bad_scope(self, client):
        assert client.get("/matches/m1/figures", params={"scope": "season"}).status_code == 400

    def test_career(self, client):
        post_over(client)
        body = client.get("/players/career", params={"player_id": "A"}).json()
        assert [p["player_id"] for p in body["players"]] == ["A"]

    def test_events_from_sequence(self, client):
        post_over(client)
        events = client.get("/matches/m1/events", params={"from_sequence": 5}).json()["events"]
        assert [e["sequence"] for e in events] == [5, 6]

    def test_all_innings(self, client):
        innings = client.get("/matches/m1/innings").json()["innings"]
        assert [i["innings"] for i in innings] == [1, 2]
        assert innings[0]["status"] == "not_started"

    def test_consistency_and_rebuild(self, client):
        post_over(client)
        assert client.get("/matches/m1/consistency").json()["innings"][0]["reconciled"] is True
        rebuilt = client.post("/matches/m1/rebuild").json()
        assert rebuilt["innings_state"]["total_runs"] == 12

    def test_scorecard(self, client):
        assert client.get("/matches/m1/scorecard").status_code == 404
        post_over(client)
        assert client.get("/matches/m1/scorecard").json()["last_sequence"] == 6


class TestStream:

    def test_stream_pushes_deltas(self, client):
        with client.websocket_connect("/matches/m1/stream") as ws:
            client.post("/matches/m1/balls", json=ball_body(1, 1, runs=4))
            delta = ws.receive_json()

        assert delta["sequence"] == 1
        assert delta["inningsState"]["total_runs"] == 4
        assert {f["player_id"] for f in delta["changedFigures"]} == {"A", "B", "X"}

    def test_stream_unknown_match(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/matches/nope/stream") as ws:
                ws.receive_json()


class TestFantasyRoutes:

    TEAM = {
        "team_id": "t1",
        "name": "Hitters",
        "players": ["A", "B", "C", "D", "E", "F", "G", "H", "I", "J", "K"],
        "captain": "A",
        "vice_captain": "B",
    }

    def register(self, client):
        response = client.post("/fantasy/leagues", json={
            "league_id": "L1", "match_id": "m1", "name": "Friends",
            "scoring_rules": {"runs": 1, "fifties": 0, "strikeRateBonus": 0},
        })
        assert response.status_code == 200
        assert client.post("/fantasy/leagues/L1/teams", json=self.TEAM).status_code == 200

    def test_league_and_points(self, client):
        self.register(client)
        post_over(client)

        league = client.get("/fantasy/leagues/L1").json()
        assert league["rules"]["wickets"] == 10
        assert league["rules"]["strike_rate_bonus"] == 0

        points = client.get("/fantasy/leagues/L1/points").json()["players"]
        by_player = {p["player_id"]: p["total"] for p in points}
        assert by_player["A"] == 7
        assert by_player["X"] == 10

        team = client.get("/fantasy/leagues/L1/teams/t1/points").json()
        assert team["total"] == pytest.approx(14 + 6 + 1)

        board = client.get("/fantasy/leagues/L1/leaderboard").json()
        assert board["teams"][0]["rank"] == 1
        assert board["tie_break"] == "most_recent"

    def test_invalid_team(self, client):
        self.register(client)
        bad = dict(self.TEAM, team_id="t2", captain="Z")
        response = client.post("/fantasy/leagues/L1/teams", json=bad)
        assert response.status_code == 422

    def test_unknown_league(self, client):
        response = client.get("/fantasy/leagues/nope/points")
        assert response.status_code == 404
        assert response.json()["error"] == "unknown_league"
