"""
Client for the upstream cricket platform REST API.

Integrates with platform endpoints:
- GET /matches/{id}: Match reference data (teams, format, toss, squads)
- GET /fantasy/leagues/{id}: League configuration and scoring rules

Both documents change rarely once a match starts, so responses are cached
to disk and reused unless a refresh is forced.
"""

import json
import logging
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import requests

from .. import config
from .fantasy_points import FantasyLeague, ScoringRules
from .innings_state import MatchSetup

logger = logging.getLogger(__name__)


class PlatformClient:
    """Client for fetching match setup and league config from the platform."""

    def __init__(
        self,
        base_url: str = config.PLATFORM_BASE_URL,
        api_token: Optional[str] = config.PLATFORM_API_TOKEN,
        cache_dir: Optional[Path] = None,
        timeout: int = config.PLATFORM_REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize platform client.

        Args:
            base_url: Platform API root, e.g. http://host/api
            api_token: Bearer token (optional for public reads)
            cache_dir: Directory for cached documents (default: PLATFORM_CACHE_DIR)
            timeout: Request timeout in seconds
            session: Preconfigured session (tests pass a stub)
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

        self.cache_dir = Path(cache_dir or config.PLATFORM_CACHE_DIR)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        # Session for connection pooling
        self.session = session or requests.Session()
        if api_token:
            self.session.headers['Authorization'] = f'Bearer {api_token}'

    # ----- raw documents -----

    def fetch_match(self, match_id: str, force_refresh: bool = False) -> Dict:
        """
        Fetch the platform's match document.

        Raises:
            requests.RequestException: On API failure
        """
        return self._fetch_cached('match', match_id, f"{self.base_url}/matches/{match_id}", force_refresh)

    def fetch_league_document(self, league_id: str, force_refresh: bool = False) -> Dict:
        """
        Fetch the platform's fantasy league document.

        Raises:
            requests.RequestException: On API failure
        """
        return self._fetch_cached(
            'league', league_id, f"{self.base_url}/fantasy/leagues/{league_id}", force_refresh
        )

    # ----- mapped reference data -----

    def fetch_match_setup(self, match_id: str, force_refresh: bool = False) -> MatchSetup:
        """
        Fetch a match and map it to MatchSetup.

        The side batting first comes from the toss: the toss winner bats
        if they chose to, otherwise the other side does.
        """
        doc = _unwrap(self.fetch_match(match_id, force_refresh))

        team_a = _ref_id(doc.get('teamAId') or doc.get('teamA'))
        team_b = _ref_id(doc.get('teamBId') or doc.get('teamB'))
        toss_winner = _ref_id(doc.get('tossWinner'))
        decision = (doc.get('tossDecision') or '').lower()

        if toss_winner in (team_a, team_b) and decision in ('bat', 'bowl'):
            if decision == 'bat':
                batting_first = toss_winner
            else:
                batting_first = team_b if toss_winner == team_a else team_a
        else:
            logger.warning(f"Match {match_id} has no toss result, assuming {team_a} bats first")
            batting_first = team_a

        match_format = (doc.get('matchType') or config.DEFAULT_FORMAT).upper()
        format_overs = config.MATCH_FORMATS.get(match_format, {}).get('overs')
        overs = doc.get('overs')
        squads_doc = doc.get('squads') or {}
        squads = {
            team_a: [_ref_id(p) for p in squads_doc.get('teamA', [])],
            team_b: [_ref_id(p) for p in squads_doc.get('teamB', [])],
        }

        setup = MatchSetup(
            match_id=match_id,
            team_a=team_a,
            team_b=team_b,
            batting_first=batting_first,
            match_format=match_format,
            overs=overs if overs and overs != format_overs else None,
            squads={team: players for team, players in squads.items() if players}
        )
        logger.info(
            f"Loaded match {match_id}: {team_a} v {team_b} ({match_format}, "
            f"{setup.max_overs or 'unlimited'} overs), {batting_first} batting first"
        )
        return setup

    def fetch_league(self, league_id: str, force_refresh: bool = False) -> FantasyLeague:
        """Fetch a fantasy league and map it to FantasyLeague (without teams)."""
        doc = _unwrap(self.fetch_league_document(league_id, force_refresh))

        raw_rules = {
            key: value for key, value in (doc.get('scoringRules') or {}).items()
            if not key.startswith('_')
        }
        rules = ScoringRules.default().with_overrides(raw_rules)

        match_id = _ref_id(doc.get('relatedMatch') or doc.get('matchId'))
        league = FantasyLeague(
            league_id=league_id,
            match_id=match_id,
            name=doc.get('name', ''),
            rules=rules,
            team_size=int(doc.get('maxPlayersPerTeam') or config.FANTASY_TEAM_SIZE)
        )
        logger.info(f"Loaded league {league_id} ({league.name}) for match {match_id}")
        return league

    # ----- transport -----

    def _cache_file(self, kind: str, doc_id: str) -> Path:
        safe_id = re.sub(r'[^A-Za-z0-9_.-]', '_', doc_id)
        return self.cache_dir / f"{kind}_{safe_id}.json"

    def _fetch_cached(self, kind: str, doc_id: str, endpoint: str, force_refresh: bool) -> Dict:
        cache_file = self._cache_file(kind, doc_id)

        if not force_refresh and cache_file.exists():
            try:
                with open(cache_file, 'r', encoding='utf-8') as f:
                    cached = json.load(f)
                logger.debug(f"Using cached {kind} {doc_id} from {cached.get('cached_at')}")
                return cached['document']
            except (json.JSONDecodeError, KeyError) as e:
                logger.warning(f"Failed to load cached {kind} {doc_id}: {e}, will re-fetch")

        try:
            document = self._make_request(endpoint)
        except requests.RequestException as e:
            logger.error(f"Failed to fetch {kind} {doc_id}: {e}")
            raise

        with open(cache_file, 'w', encoding='utf-8') as f:
            json.dump({'document': document, 'cached_at': datetime.now().isoformat()}, f, indent=2)

        logger.debug(f"Cached {kind} {doc_id} -> {cache_file}")
        return document

    def _make_request(self, endpoint: str, max_retries: int = 3) -> Dict:
        """
        Make HTTP GET request to the platform with retries.

        Args:
            endpoint: Full URL endpoint
            max_retries: Maximum retry attempts on failure

        Returns:
            Parsed JSON response

        Raises:
            requests.RequestException: After all retries exhausted
        """
        for attempt in range(1, max_retries + 1):
            try:
                logger.debug(f"GET {endpoint} (attempt {attempt}/{max_retries})")
                response = self.session.get(endpoint, timeout=self.timeout)
                response.raise_for_status()
                return response.json()

            except requests.HTTPError:
                # Only 5xx responses are retried
                if response.status_code < 500 or attempt == max_retries:
                    raise
                logger.warning(f"Server error {response.status_code} (attempt {attempt}/{max_retries})")
                time.sleep(2 ** attempt)

            except requests.RequestException as e:
                logger.warning(f"Request failed (attempt {attempt}/{max_retries}): {e}")
                if attempt == max_retries:
                    raise
                time.sleep(2 ** attempt)

    def close(self) -> None:
        """Close the HTTP session."""
        self.session.close()


def _unwrap(payload: Dict) -> Dict:
    """Platform responses may wrap the document as {'data': {...}}."""
    if isinstance(payload, dict) and isinstance(payload.get('data'), dict):
        return payload['data']
    return payload


def _ref_id(value) -> Optional[str]:
    """A reference is either an id string or a populated document."""
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get('_id') or value.get('id')
    return str(value)

