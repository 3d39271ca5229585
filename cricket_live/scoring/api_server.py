"""
FastAPI server for live match scoring.

Provides HTTP endpoints to register matches, score them ball by ball, read
innings state, player figures and fantasy points, and a WebSocket stream of
live deltas per match.
"""

import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .. import config
from .api_serializers import (
    BallSubmission,
    ErrorResponse,
    FantasyTeamRequest,
    LeagueRequest,
    MatchSetupRequest,
    ResumeRequest,
    RetractionRequest,
    SubmitResponse,
    SuspendRequest,
    serialize_figures,
    serialize_points,
    serialize_submit,
)
from .errors import (
    ConflictError,
    OutOfOrderError,
    ReconciliationError,
    ScoringError,
    ScoringTimeoutError,
    UnknownLeagueError,
    UnknownMatchError,
    ValidationError,
)
from .live_scoring_engine import LiveScoringEngine
from .platform_client import PlatformClient
from .player_figures import parse_scope

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Cricket Live Scoring API",
    description="Ball-by-ball scoring, player figures and fantasy points",
    version="1.0.0"
)

# CORS middleware for the scoring UI
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global engine instance (created on first use, replaceable for tests)
_engine: Optional[LiveScoringEngine] = None

ERROR_STATUS = {
    ConflictError: 409,
    OutOfOrderError: 409,
    ValidationError: 422,
    UnknownMatchError: 404,
    UnknownLeagueError: 404,
    ScoringTimeoutError: 503,
    ReconciliationError: 500,
}

# Documented error bodies for routes that write to a match
WRITE_ERRORS = {
    status: {'model': ErrorResponse}
    for status in (404, 409, 422, 500, 503)
}


def get_engine() -> LiveScoringEngine:
    global _engine
    if _engine is None:
        _engine = LiveScoringEngine(platform_client=PlatformClient())
        _engine.recover()
    return _engine


def set_engine(engine: Optional[LiveScoringEngine]) -> None:
    """Install the engine the endpoints use."""
    global _engine
    _engine = engine


# ===== Error mapping =====

@app.exception_handler(ScoringError)
async def scoring_error_handler(request: Request, exc: ScoringError):
    status = ERROR_STATUS.get(type(exc), 500)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected ({exc.error_code}): {exc.message}")
    return JSONResponse(status_code=status, content=ErrorResponse(**exc.to_dict()).model_dump())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    )
    body = ErrorResponse(error=ValidationError.error_code, message=details)
    return JSONResponse(status_code=422, content=body.model_dump())


def _parse_scope(raw: str):
    try:
        return parse_scope(raw)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ===== Matches =====

@app.post("/matches", responses=WRITE_ERRORS)
def register_match(request: MatchSetupRequest):
    """
    Register a match for scoring.

    Raises:
        409 Conflict: If the match is registered with a different setup
        422 Unprocessable: If the setup is invalid
    """
    state = get_engine().register_match(request.to_setup())
    return {'match_id': request.match_id, 'innings_state': state.to_dict()}


@app.post("/matches/{match_id}/load")
def load_match(match_id: str, force_refresh: bool = Query(False)):
    """Register a match using its setup from the upstream platform."""
    state = get_engine().load_match(match_id, force_refresh)
    return {'match_id': match_id, 'innings_state': state.to_dict()}


@app.get("/matches")
def list_matches():
    engine = get_engine()
    return {'matches': [engine.get_match_setup(mid).to_dict() for mid in engine.match_ids()]}


@app.post("/matches/{match_id}/balls", response_model=SubmitResponse, responses=WRITE_ERRORS)
def submit_ball(match_id: str, request: BallSubmission):
    """
    Score one delivery.

    Returns:
        SubmitResponse with the committed sequence and the innings state

    Raises:
        409 Conflict: Expected sequence taken by another scorer
        422 Unprocessable: Illegal delivery for the current state
        503 Service Unavailable: Match busy past the timeout
    """
    sequence, state = get_engine().submit_ball(
        match_id,
        request.innings,
        request.to_event(match_id),
        idempotency_key=request.key_for(match_id),
        expected_sequence=request.expected_sequence
    )
    return serialize_submit(sequence, state)


@app.post("/matches/{match_id}/retractions", response_model=SubmitResponse, responses=WRITE_ERRORS)
def retract_ball(match_id: str, request: RetractionRequest):
    """Retract an earlier delivery; figures are recomputed in the background."""
    sequence, state = get_engine().retract(
        match_id,
        request.innings,
        request.retracts_sequence,
        idempotency_key=request.idempotency_key,
        reason=request.reason,
        expected_sequence=request.expected_sequence
    )
    return serialize_submit(sequence, state)


@app.post("/matches/{match_id}/suspend", response_model=SubmitResponse, responses=WRITE_ERRORS)
def suspend_innings(match_id: str, request: SuspendRequest):
    sequence, state = get_engine().suspend(
        match_id, request.innings, reason=request.reason, idempotency_key=request.idempotency_key
    )
    return serialize_submit(sequence, state)


@app.post("/matches/{match_id}/resume", response_model=SubmitResponse, responses=WRITE_ERRORS)
def resume_innings(match_id: str, request: ResumeRequest):
    sequence, state = get_engine().resume(
        match_id,
        request.innings,
        revised_overs=request.revised_overs,
        reason=request.reason,
        idempotency_key=request.idempotency_key
    )
    return serialize_submit(sequence, state)


@app.get("/matches/{match_id}/innings")
def get_all_innings(match_id: str):
    return {'match_id': match_id, 'innings': [s.to_dict() for s in get_engine().get_all_innings(match_id)]}


@app.get("/matches/{match_id}/innings/{innings}")
def get_innings_state(match_id: str, innings: int):
    return get_engine().get_innings_state(match_id, innings).to_dict()


@app.get("/matches/{match_id}/figures")
def get_player_figures(
    match_id: str,
    scope: str = Query('match', description="'match', 'career' or an innings number")
):
    parsed = _parse_scope(scope)
    figures = get_engine().get_player_figures(match_id, parsed)
    return serialize_figures(match_id, parsed, figures)


@app.get("/matches/{match_id}/events")
def replay_events(
    match_id: str,
    innings: Optional[int] = Query(None, ge=1),
    from_sequence: int = Query(0, ge=0)
):
    """Committed ledger events in sequence order."""
    events = get_engine().replay(match_id, innings=innings, from_sequence=from_sequence)
    return {'match_id': match_id, 'events': [e.to_dict() for e in events]}


@app.post("/matches/{match_id}/rebuild", responses=WRITE_ERRORS)
def rebuild_match(match_id: str):
    """
    Refold all derived state from the ledger.

    Raises:
        500 Internal Server Error: If the rebuilt figures do not reconcile
    """
    state = get_engine().rebuild(match_id)
    return {'match_id': match_id, 'innings_state': state.to_dict()}


@app.get("/matches/{match_id}/consistency")
def check_consistency(match_id: str):
    return {'match_id': match_id, 'innings': get_engine().check_consistency(match_id)}


@app.get("/matches/{match_id}/scorecard")
def get_scorecard(match_id: str):
    """Latest cached scorecard (innings + figures) for polling UIs."""
    engine = get_engine()
    engine.get_match_setup(match_id)
    cached = engine.scorecard_cache.get_latest(match_id)
    if cached is None:
        raise HTTPException(status_code=404, detail=f"No scorecard yet for match {match_id}")
    return cached


@app.websocket("/matches/{match_id}/stream")
async def stream_match(websocket: WebSocket, match_id: str):
    """Push one delta message per committed ledger event."""
    engine = get_engine()
    try:
        subscription = engine.subscribe(match_id)
    except UnknownMatchError as e:
        await websocket.close(code=4404, reason=e.message)
        return

    async def watch_disconnect():
        while True:
            incoming = await websocket.receive()
            if incoming['type'] == 'websocket.disconnect':
                subscription.close()
                return

    await websocket.accept()
    watcher = asyncio.create_task(watch_disconnect())
    try:
        while not subscription.closed:
            message = await run_in_threadpool(subscription.get, config.BROADCAST_POLL_INTERVAL)
            if message is not None:
                await websocket.send_json(message.to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        watcher.cancel()
        engine.unsubscribe(subscription)
        logger.info(f"Stream client disconnected from match {match_id}")


# ===== Players =====

@app.get("/players/career")
def get_career_figures(player_id: Optional[str] = Query(None)):
    figures = get_engine().get_career_figures([player_id] if player_id else None)
    return serialize_figures(None, 'career', figures)


# ===== Fantasy =====

@app.post("/fantasy/leagues")
def register_league(request: LeagueRequest):
    league = get_engine().register_league(request.to_league())
    return league.to_dict()


@app.post("/fantasy/leagues/{league_id}/load")
def load_league(league_id: str, force_refresh: bool = Query(False)):
    """Register a league using its configuration from the upstream platform."""
    return get_engine().load_league(league_id, force_refresh).to_dict()


@app.get("/fantasy/leagues/{league_id}")
def get_league(league_id: str):
    return get_engine().get_league(league_id).to_dict()


@app.post("/fantasy/leagues/{league_id}/teams")
def add_team(league_id: str, request: FantasyTeamRequest):
    team = get_engine().add_team(league_id, request.to_team(league_id))
    return team.to_dict()


@app.get("/fantasy/leagues/{league_id}/points")
def get_fantasy_points(league_id: str, match_id: Optional[str] = Query(None)):
    records = get_engine().get_fantasy_points(league_id, match_id)
    return serialize_points(league_id, records)


@app.get("/fantasy/leagues/{league_id}/teams/{team_id}/points")
def get_team_points(league_id: str, team_id: str):
    return get_engine().get_team_points(league_id, team_id).to_dict()


@app.get("/fantasy/leagues/{league_id}/leaderboard")
def get_leaderboard(league_id: str):
    engine = get_engine()
    return {
        'league_id': league_id,
        'tie_break': engine.tie_break,
        'teams': engine.get_leaderboard(league_id),
    }


@app.get("/health")
def health_check():
    """
    Simple health check endpoint.

    Returns:
        Status OK if server is running
    """
    return {
        "status": "ok",
        "service": "Cricket Live Scoring API",
        "version": "1.0.0"
    }
