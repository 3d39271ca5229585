import pandas as pd

from cricket_live.scoring.innings_state_machine import InningsStateMachine
from cricket_live.scoring.player_figures import PlayerFigureAggregator
from cricket_live.scoring.scorecard_cache import ScorecardCache


class TestScorecardCache:

    def test_update_and_read(self, tmp_path, t20_setup, over_events):
        cache = ScorecardCache(tmp_path / "scorecards")
        machine = InningsStateMachine.from_events(t20_setup, over_events)
        figures = PlayerFigureAggregator.project(over_events)

        cache.update("m1", machine.innings.values(), figures, last_sequence=6)
        cached = cache.get_latest("m1")

        assert cached["match_id"] == "m1"
        assert cached["last_sequence"] == 6
        assert cached["innings"][0]["total_runs"] == 12
        assert cached["num_players"] == 4
        assert not list((tmp_path / "scorecards").glob("*.tmp"))

    def test_missing_scorecard(self, tmp_path):
        assert ScorecardCache(tmp_path).get_latest("nope") is None

    def test_corrupt_scorecard(self, tmp_path):
        cache = ScorecardCache(tmp_path)
        (tmp_path / "scorecard_m1.json").write_text("{not json", encoding="utf-8")
        assert cache.get_latest("m1") is None

    def test_export_to_csv(self, tmp_path, over_events):
        cache = ScorecardCache(tmp_path / "scorecards")
        output = tmp_path / "export" / "figures.csv"
        cache.export_to_csv("m1", PlayerFigureAggregator.project(over_events), output)

        df = pd.read_csv(output)
        assert len(df) == 4
        assert df.iloc[0]["player_id"] == "A"

    def test_clear(self, tmp_path, t20_setup):
        cache = ScorecardCache(tmp_path)
        machine = InningsStateMachine(t20_setup)
        cache.update("m1", machine.innings.values(), {}, last_sequence=0)
        cache.update("m2", machine.innings.values(), {}, last_sequence=0)

        cache.clear("m1")
        assert cache.get_latest("m1") is None
        assert cache.get_latest("m2") is not None

        cache.clear()
        assert cache.get_latest("m2") is None
