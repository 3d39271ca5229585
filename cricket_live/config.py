"""
Configuration constants for the live cricket scoring engine.
"""

import os

# Data root (override with CRICKET_LIVE_DATA_DIR)
DATA_DIR = os.getenv('CRICKET_LIVE_DATA_DIR', 'data')

# ===== MATCH FORMATS =====

TEAM_SIZE = 11
BALLS_PER_OVER = 6

# A single over can run long under wides/no-balls
MAX_DELIVERIES_PER_OVER = 15

# overs: None means unlimited (multi-day)
# power_play_overs: overs 1..N carry fielding restrictions
MATCH_FORMATS = {
    'T20': {
        'overs': 20,
        'power_play_overs': 6,
        'innings_per_side': 1,
    },
    'ODI': {
        'overs': 50,
        'power_play_overs': 10,
        'innings_per_side': 1,
    },
    'T10': {
        'overs': 10,
        'power_play_overs': 2,
        'innings_per_side': 1,
    },
    'TEST': {
        'overs': None,
        'power_play_overs': 0,
        'innings_per_side': 2,
    },
}

DEFAULT_FORMAT = 'T20'

# ===== FANTASY SCORING =====

# Default league scoring table (points per unit / per milestone)
DEFAULT_SCORING_RULES = {
    'runs': 1,
    'wickets': 10,
    'catches': 4,
    'stumpings': 6,
    'run_outs': 4,
    'fifties': 8,
    'hundreds': 16,
    'four_wickets': 8,
    'five_wickets': 16,
    'maiden_overs': 4,
    'economy_bonus': 4,
    'strike_rate_bonus': 4,
}

CAPTAIN_MULTIPLIER = 2.0
VICE_CAPTAIN_MULTIPLIER = 1.5

# Bonus thresholds
ECONOMY_BONUS_MAX_ECONOMY = 6.0
ECONOMY_BONUS_MIN_BALLS = 12       # 2 overs
STRIKE_RATE_BONUS_MIN_RATE = 150.0
STRIKE_RATE_BONUS_MIN_BALLS = 10

FANTASY_TEAM_SIZE = 11

# Leaderboard ordering on equal totals:
# 'most_recent' - team whose latest points-earning ball is newest ranks higher
# 'earliest'    - team that reached the total first ranks higher
LEADERBOARD_TIE_BREAK = 'most_recent'

# ===== STORAGE =====

LEDGER_DIR = os.path.join(DATA_DIR, 'ledgers')
SCORECARD_CACHE_DIR = os.path.join(DATA_DIR, 'scorecards')
CHECKPOINT_DIR = os.path.join(DATA_DIR, 'checkpoints')
PLATFORM_CACHE_DIR = os.path.join(DATA_DIR, 'platform')

# ===== TIMEOUTS (seconds) =====

LEDGER_APPEND_TIMEOUT = 5.0
REPLAY_TIMEOUT = 30.0
RECOMPUTE_TIMEOUT = 30.0

# Subscriber queues drop the connection rather than grow without bound
BROADCAST_QUEUE_SIZE = 1000
BROADCAST_POLL_INTERVAL = 1.0

# ===== UPSTREAM PLATFORM API =====

PLATFORM_BASE_URL = os.getenv('CRICKET_LIVE_PLATFORM_URL', 'http://localhost:3000/api')
PLATFORM_API_TOKEN = os.getenv('CRICKET_LIVE_PLATFORM_TOKEN')
PLATFORM_REQUEST_TIMEOUT = 10

# ===== API SERVER =====

API_HOST = '127.0.0.1'
API_PORT = 8000

# Logging
LOG_LEVEL = os.getenv('CRICKET_LIVE_LOG_LEVEL', 'INFO')
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
