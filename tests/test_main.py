import pandas as pd
import pytest

from cricket_live.main import main, parse_arguments
from cricket_live.scoring.event_store import create_match_filepath
from tests.conftest import example_over


@pytest.fixture(scope="function")
def ledger_file(engine):
    """Ledger of the T20 match after the example over."""
    for event in example_over():
        engine.submit_ball("m1", 1, event)
    return create_match_filepath(engine.ledger.base_dir, "m1")


class TestCommandLine:

    def test_serve_defaults(self):
        args = parse_arguments(["serve"])
        assert args.command == "serve"
        assert args.port == 8000

    def test_replay_prints_scorecard(self, ledger_file, capsys):
        assert main(["replay", str(ledger_file)]) == 0
        out = capsys.readouterr().out
        assert "IND v AUS (T20)" in out
        assert "Innings 1 (IND): 12/1 in 1.0 overs" in out

    def test_export_figures(self, ledger_file, tmp_path):
        output = tmp_path / "figures.csv"
        assert main(["export", str(ledger_file), str(output)]) == 0
        df = pd.read_csv(output)
        assert set(df["player_id"]) == {"A", "B", "C", "X"}

    def test_export_events(self, ledger_file, tmp_path):
        output = tmp_path / "events.csv"
        assert main(["export", str(ledger_file), str(output), "--events"]) == 0
        assert len(pd.read_csv(output)) == 6

    def test_missing_ledger(self, tmp_path):
        assert main(["replay", str(tmp_path / "match_none.jsonl")]) == 1

    def test_export_events_from_copied_ledger(self, ledger_file, tmp_path):
        copied = tmp_path / "archive" / "final day copy.jsonl"
        copied.parent.mkdir()
        copied.write_bytes(ledger_file.read_bytes())
        ledger_file.unlink()

        output = tmp_path / "events.csv"
        assert main(["export", str(copied), str(output), "--events"]) == 0
        df = pd.read_csv(output)
        assert list(df["sequence"]) == [1, 2, 3, 4, 5, 6]
        assert df.loc[3, "player_out"] == "B"
