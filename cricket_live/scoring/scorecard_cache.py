"""
Scorecard caching for live matches.

Provides one JSON scorecard file per match that can be consumed by web UIs
or other tools. Uses atomic writes (temp file + rename) so a reader never
sees a half-written scorecard. The cache is derived data: deleting it loses
nothing that a ledger replay cannot rebuild.
"""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional

import pandas as pd

from .innings_state import InningsState
from .player_figures import PlayerFigures, figures_to_dataframe

logger = logging.getLogger(__name__)


class ScorecardCache:
    """Cache the latest scorecard of each match for API/web consumption."""

    def __init__(self, cache_dir: Path):
        """
        Initialize scorecard cache.

        Args:
            cache_dir: Directory for cache files
        """
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def _cache_file(self, match_id: str) -> Path:
        safe_id = re.sub(r'[^A-Za-z0-9_.-]', '_', match_id)
        return self.cache_dir / f"scorecard_{safe_id}.json"

    def update(
        self,
        match_id: str,
        innings: Iterable[InningsState],
        figures: Dict[str, PlayerFigures],
        last_sequence: int,
        timestamp: Optional[datetime] = None
    ) -> None:
        """
        Replace the cached scorecard of a match.

        Args:
            match_id: Match identifier
            innings: Every innings of the match
            figures: Match-scope player figures
            last_sequence: Ledger sequence the scorecard reflects
            timestamp: When this scorecard was computed
        """
        cache_data = {
            "match_id": match_id,
            "timestamp": (timestamp or datetime.now()).isoformat(),
            "last_sequence": last_sequence,
            "innings": [state.to_dict() for state in innings],
            "num_players": len(figures),
            "players": [pf.to_dict() for pf in figures.values()],
        }

        cache_file = self._cache_file(match_id)
        temp_file = cache_file.with_suffix('.tmp')

        with open(temp_file, 'w', encoding='utf-8') as f:
            json.dump(cache_data, f, indent=2)

        temp_file.replace(cache_file)

        logger.debug(f"Updated scorecard for match {match_id} at seq {last_sequence} -> {cache_file}")

    def get_latest(self, match_id: str) -> Optional[dict]:
        """
        Read the cached scorecard of a match.

        Returns:
            Cached data dict or None if there is no usable cache
        """
        cache_file = self._cache_file(match_id)
        if not cache_file.exists():
            logger.debug(f"No cached scorecard for match {match_id}")
            return None

        try:
            with open(cache_file, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Failed to read scorecard cache for match {match_id}: {e}")
            return None

    def export_to_csv(self, match_id: str, figures: Dict[str, PlayerFigures], output_path: Path) -> None:
        """
        Export a match's player figures to CSV.

        Args:
            match_id: Match identifier (for logging)
            figures: Match-scope player figures
            output_path: Path for CSV output
        """
        df: pd.DataFrame = figures_to_dataframe(figures)
        if df.empty:
            logger.warning(f"No player figures to export for match {match_id}")
            return

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(output_path, index=False)

        logger.info(f"Exported {len(df)} players for match {match_id} to {output_path}")

    def clear(self, match_id: Optional[str] = None) -> None:
        """
        Clear cache files for one match, or for every match.

        WARNING: Deletes cached scorecards. They are rebuilt on the next ball.
        """
        if match_id is not None:
            targets = [self._cache_file(match_id)]
        else:
            targets = list(self.cache_dir.glob("scorecard_*.json"))

        for cache_file in targets:
            if cache_file.exists():
                cache_file.unlink()
                logger.warning(f"Cleared scorecard cache: {cache_file}")
