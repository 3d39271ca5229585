"""
Main CLI entry point for the live cricket scoring engine.
"""

import argparse
import logging
import sys
from pathlib import Path

import pandas as pd
import uvicorn

from . import config
from .scoring.errors import ScoringError
from .scoring.event_store import load_events, write_events_csv
from .scoring.innings_state import InningsStatus, load_match_setup, setup_filepath
from .scoring.innings_state_machine import InningsStateMachine
from .scoring.player_figures import PlayerFigureAggregator, figures_to_dataframe, reconcile


def setup_logging(verbose: bool = False):
    """
    Configure logging for the application.

    Args:
        verbose: Enable verbose (DEBUG) logging
    """
    level = logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=config.LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def parse_arguments(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='Live Cricket Scoring Engine',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the scoring API
  python -m cricket_live.main serve --port 8000

  # Rebuild a match from its ledger and print the scorecard
  python -m cricket_live.main replay data/ledgers/match_m1.jsonl

  # Export player figures (or the raw events) to CSV
  python -m cricket_live.main export data/ledgers/match_m1.jsonl figures.csv
  python -m cricket_live.main export data/ledgers/match_m1.jsonl events.csv --events
        """
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose (DEBUG) logging'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    serve = subparsers.add_parser('serve', help='Run the scoring HTTP/WebSocket API')
    serve.add_argument('--host', default=config.API_HOST, help=f'Bind address (default: {config.API_HOST})')
    serve.add_argument('--port', type=int, default=config.API_PORT, help=f'Port (default: {config.API_PORT})')

    replay = subparsers.add_parser('replay', help='Rebuild a match from its ledger and print the scorecard')
    replay.add_argument('ledger_file', type=Path, help='Match ledger (JSONL)')
    replay.add_argument(
        '--setup',
        type=Path,
        default=None,
        help='Match setup JSON (default: the .setup.json beside the ledger)'
    )

    export = subparsers.add_parser('export', help='Export a match ledger to CSV')
    export.add_argument('ledger_file', type=Path, help='Match ledger (JSONL)')
    export.add_argument('output', type=Path, help='CSV output path')
    export.add_argument(
        '--events',
        action='store_true',
        help='Export the raw ledger events instead of player figures'
    )

    return parser.parse_args(argv)


def run_serve(args) -> None:
    logger = logging.getLogger(__name__)
    logger.info(f"Starting scoring API on {args.host}:{args.port}")
    uvicorn.run(
        'cricket_live.scoring.api_server:app',
        host=args.host,
        port=args.port,
        log_level=config.LOG_LEVEL.lower()
    )


def run_replay(args) -> int:
    logger = logging.getLogger(__name__)

    setup = load_match_setup(args.setup or setup_filepath(args.ledger_file))
    events = load_events(args.ledger_file)
    logger.info(f"Loaded {len(events)} events for match {setup.match_id} from {args.ledger_file}")

    machine = InningsStateMachine.from_events(setup, events)

    print("=" * 60)
    print(f"{setup.team_a} v {setup.team_b} ({setup.match_format}) - match {setup.match_id}")
    print("=" * 60)
    for number in sorted(machine.innings):
        state = machine.innings[number]
        if state.status == InningsStatus.NOT_STARTED:
            continue
        reconcile(state, PlayerFigureAggregator.project(events, number))
        line = (
            f"Innings {number} ({state.batting_team}): {state.total_runs}/{state.wickets} "
            f"in {state.overs} overs, extras {state.extras_total} [{state.status.value}]"
        )
        if state.target is not None:
            line += f", target {state.target}"
        print(line)

    figures = PlayerFigureAggregator.project(events)
    df = figures_to_dataframe(figures)
    if not df.empty:
        columns = [
            'player_id', 'bat_runs', 'bat_balls_faced', 'bat_strike_rate', 'dismissal',
            'bowl_overs', 'bowl_runs_conceded', 'bowl_wickets', 'bowl_economy',
            'catches', 'run_outs', 'stumpings'
        ]
        with pd.option_context('display.max_rows', None, 'display.width', 200):
            print()
            print(df[[c for c in columns if c in df.columns]].to_string(index=False))
    return 0


def run_export(args) -> int:
    logger = logging.getLogger(__name__)

    events = load_events(args.ledger_file)
    if not events:
        logger.error(f"No events in {args.ledger_file}")
        return 1

    if args.events:
        write_events_csv(events, args.output)
        return 0

    df = figures_to_dataframe(PlayerFigureAggregator.project(events))
    args.output.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(args.output, index=False)
    logger.info(f"Exported figures for {len(df)} players to {args.output}")
    return 0


def main(argv=None):
    """Main execution function with command branching."""
    args = parse_arguments(argv)

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        if args.command == 'serve':
            run_serve(args)
            return 0
        if args.command == 'replay':
            return run_replay(args)
        return run_export(args)
    except FileNotFoundError as e:
        logger.error(f"File not found: {e.filename}")
        return 1
    except ScoringError as e:
        logger.error(f"{e.error_code}: {e.message} (last good sequence {e.last_good_sequence})")
        return 1


if __name__ == '__main__':
    sys.exit(main())
