"""
ladder_server/server.py - FastAPI server for the challenge ladder.

Endpoints:
    POST   /teams                              Register a team
    GET    /teams/{id}                         Team details and roster
    POST   /teams/{id}/members                 Add a roster member
    DELETE /teams/{id}/members/{user_id}       Remove a roster member
    POST   /teams/{id}/captain                 Transfer captaincy
    GET    /teams/{id}/challenges              Open challenges across tournaments

    POST   /tournaments                        Create a tournament
    GET    /tournaments                        List tournaments (?status=)
    GET    /tournaments/{id}                   Tournament details
    POST   /tournaments/{id}/status            Advance the lifecycle
    POST   /tournaments/{id}/teams             Enter a team
    DELETE /tournaments/{id}/teams/{team_id}   Withdraw a team
    GET    /tournaments/{id}/standings         Ladder order
    GET    /tournaments/{id}/challenges        Challenges by status (?status=)
    GET    /tournaments/{id}/past-due          Unanswered challenges past deadline

    POST   /challenges                         Issue a challenge (challenger captain only)
    GET    /challenges/{id}                    Challenge details
    POST   /challenges/{id}/dates              Propose match dates
    POST   /challenges/{id}/schedule           Pick one proposed date
    POST   /challenges/{id}/result             Submit the match result
    POST   /challenges/{id}/forfeit            Forfeit
    POST   /challenges/{id}/cancel             Cancel

    POST   /admin/sweep                        Run the auto-forfeit sweep now
    GET    /health                             Server health check

Rejected operations answer with the rejection as the error detail:
{"reason": ..., "message": ..., "context": {...}}.
"""

import logging
from contextlib import asynccontextmanager, contextmanager
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Iterator

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from ladder.config import LadderConfig, load_config
from ladder.engine import ChallengeEngine
from ladder.errors import (
    NOT_FOUND_REASONS,
    Reason,
    Rejection,
    RosterError,
    StandingNotFoundError,
    StoreUnavailableError,
    TeamNotFoundError,
    TournamentConfigError,
    TournamentNotFoundError,
)
from ladder.models import (
    ChallengeStatus,
    ForfeitReason,
    GameResult,
    MatchFormat,
    Role,
    TeamMember,
    TournamentRules,
    TournamentStatus,
)
from ladder.store import LadderDB
from ladder.sweeper import RecurringTask, TimeoutSweeper, daily_at

logger = logging.getLogger(__name__)


# Global instances, set during lifespan
_engine: ChallengeEngine | None = None
_sweeper: TimeoutSweeper | None = None
_task: RecurringTask | None = None


def get_engine() -> ChallengeEngine:
    assert _engine is not None, "Engine not initialized"
    return _engine


def get_sweeper() -> TimeoutSweeper:
    assert _sweeper is not None, "Sweeper not initialized"
    return _sweeper


def build_sweep_task(sweeper: TimeoutSweeper, config: LadderConfig) -> RecurringTask:
    """Daily sweep at the configured UTC hour."""
    now = sweeper.engine.now()
    return RecurringTask(
        sweeper.sweep,
        interval=timedelta(days=1),
        first_due=daily_at(config.sweeper.hour, now),
        run_on_start=config.sweeper.run_on_start,
        name="timeout-sweeper",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _engine, _sweeper, _task
    config: LadderConfig = getattr(app.state, "config", None) or load_config()
    db_path = getattr(app.state, "db_path", None) or config.database.path

    db = LadderDB(db_path)
    _engine = ChallengeEngine.from_db(
        db,
        penalties=config.penalties,
        date_tolerance=config.scheduling.date_tolerance,
    )
    _sweeper = TimeoutSweeper(
        _engine,
        grace_period=config.sweeper.grace_period,
        max_retries=config.sweeper.max_retries,
        retry_delay=config.sweeper.retry_delay_seconds,
    )
    logger.info(f"Ladder DB initialized: {db_path}")

    if config.sweeper.enabled:
        _task = build_sweep_task(_sweeper, config)
        _task.start()
    else:
        logger.info("Timeout sweeper disabled by config")

    yield

    if _task is not None:
        _task.stop()
    db.close()
    _engine = _sweeper = _task = None


app = FastAPI(title="Tier Ladder", lifespan=lifespan)


# ======================================================================
# Request/Response Models
# ======================================================================


class MemberModel(BaseModel):
    user_id: str
    username: str
    role: Role | None = None
    is_captain: bool = False


class CreateTeamRequest(BaseModel):
    name: str
    captain_id: str
    captain_name: str
    members: list[MemberModel] = []


class AddMemberRequest(BaseModel):
    user_id: str
    username: str
    role: Role | None = None


class CaptainRequest(BaseModel):
    user_id: str


class TeamResponse(BaseModel):
    team_id: str
    name: str
    captain_id: str
    members: list[MemberModel]
    retired: bool
    created_at: datetime | None = None


class RulesModel(BaseModel):
    challenge_timeframe_days: int = 7
    protection_days_after_defense: int = 3
    max_challenges_per_month: int = 4
    min_required_date_options: int = 3
    grace_period_days: int | None = None


class CreateTournamentRequest(BaseModel):
    name: str
    game: str
    format: MatchFormat
    max_tiers: int
    tier_limits: list[int]
    rules: RulesModel = RulesModel()


class StatusRequest(BaseModel):
    status: TournamentStatus


class TournamentResponse(BaseModel):
    tournament_id: str
    name: str
    game: str
    format: MatchFormat
    max_tiers: int
    tier_limits: list[int]
    rules: RulesModel
    status: TournamentStatus
    created_at: datetime | None = None


class JoinTournamentRequest(BaseModel):
    team_id: str
    initial_tier: int | None = None


class StandingResponse(BaseModel):
    standing_id: str
    team_id: str
    tournament_id: str
    tier: int
    prestige: int
    wins: int
    losses: int
    win_streak: int
    protected_until: datetime | None = None


class CreateChallengeRequest(BaseModel):
    tournament_id: str
    challenger_standing_id: str
    defender_standing_id: str
    captain_id: str
    cast_demand: bool = False


class ProposeDatesRequest(BaseModel):
    dates: list[datetime]


class ScheduleRequest(BaseModel):
    date: datetime


class GameModel(BaseModel):
    winner: str
    loser: str
    duration: float | None = None


class ResultRequest(BaseModel):
    winner_standing_id: str
    score: str
    games: list[GameModel] = []


class ForfeitRequest(BaseModel):
    standing_id: str
    unfair: bool = False
    reason: ForfeitReason | None = None


class TierPairModel(BaseModel):
    challenger: int
    defender: int


class ChallengeResultModel(BaseModel):
    winner: str
    score: str
    games: list[GameModel] = []


class ChallengeResponse(BaseModel):
    challenge_id: str
    tournament_id: str
    challenger_id: str
    defender_id: str
    tier_before: TierPairModel
    status: ChallengeStatus
    cast_demand: bool
    proposed_dates: list[datetime] = []
    scheduled_date: datetime | None = None
    result: ChallengeResultModel | None = None
    tier_after: TierPairModel | None = None
    prestige_awarded: TierPairModel | None = None
    forfeited_by: str | None = None
    unfair_forfeit: bool = False
    forfeit_reason: ForfeitReason | None = None
    forfeit_penalty: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SweepResponse(BaseModel):
    forfeited: int
    challenge_ids: list[str]


class HealthResponse(BaseModel):
    status: str
    tournaments: int
    active_tournaments: int
    sweeper_running: bool
    next_sweep: datetime | None = None


# ======================================================================
# Error mapping
# ======================================================================

# Malformed or inconsistent input; everything else not-found is a conflict
BAD_INPUT_REASONS = frozenset(
    {
        Reason.SELF_CHALLENGE,
        Reason.INSUFFICIENT_DATE_OPTIONS,
        Reason.DATE_NOT_IN_FUTURE,
        Reason.SCHEDULED_DATE_NOT_AMONG_PROPOSED,
        Reason.WINNER_NOT_PARTICIPANT,
        Reason.SCORE_FORMAT_INVALID,
    }
)


def status_code_for(reason: Reason) -> int:
    if reason in NOT_FOUND_REASONS:
        return 404
    if reason in BAD_INPUT_REASONS:
        return 400
    return 409


def _unwrap(outcome):
    """Return the engine's value, or raise the matching HTTP error for a Rejection."""
    if isinstance(outcome, Rejection):
        raise HTTPException(status_code=status_code_for(outcome.reason), detail=outcome.to_dict())
    return outcome


@contextmanager
def _registry_errors() -> Iterator[None]:
    try:
        yield
    except (TeamNotFoundError, TournamentNotFoundError, StandingNotFoundError) as e:
        raise HTTPException(status_code=404, detail=f"Not found: {e.args[0] if e.args else e}")
    except (RosterError, TournamentConfigError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable: {e}")
        raise HTTPException(status_code=503, detail="Ladder store unavailable, retry later")


def _require_tournament(engine: ChallengeEngine, tournament_id: str):
    tournament = engine.tournaments.get_tournament(tournament_id)
    if tournament is None:
        raise HTTPException(status_code=404, detail="Tournament not found")
    return tournament


# ======================================================================
# Teams
# ======================================================================


@app.post("/teams", response_model=TeamResponse)
def create_team(req: CreateTeamRequest) -> dict[str, Any]:
    engine = get_engine()
    members = [TeamMember(m.user_id, m.username, m.role) for m in req.members]
    with _registry_errors():
        team = engine.teams.create_team(req.name, req.captain_id, req.captain_name, members)
    return asdict(team)


@app.get("/teams/{team_id}", response_model=TeamResponse)
def get_team(team_id: str) -> dict[str, Any]:
    team = get_engine().teams.get_team_by_id(team_id)
    if team is None:
        raise HTTPException(status_code=404, detail="Team not found")
    return asdict(team)


@app.post("/teams/{team_id}/members", response_model=TeamResponse)
def add_member(team_id: str, req: AddMemberRequest) -> dict[str, Any]:
    with _registry_errors():
        team = get_engine().teams.add_member(team_id, req.user_id, req.username, req.role)
    return asdict(team)


@app.delete("/teams/{team_id}/members/{user_id}", response_model=TeamResponse)
def remove_member(team_id: str, user_id: str) -> dict[str, Any]:
    with _registry_errors():
        team = get_engine().teams.remove_member(team_id, user_id)
    return asdict(team)


@app.post("/teams/{team_id}/captain", response_model=TeamResponse)
def transfer_captain(team_id: str, req: CaptainRequest) -> dict[str, Any]:
    with _registry_errors():
        team = get_engine().teams.transfer_captain(team_id, req.user_id)
    return asdict(team)


@app.get("/teams/{team_id}/challenges", response_model=list[ChallengeResponse])
def team_challenges(team_id: str) -> list[dict[str, Any]]:
    engine = get_engine()
    if engine.teams.get_team_by_id(team_id) is None:
        raise HTTPException(status_code=404, detail="Team not found")
    return [asdict(c) for c in engine.list_pending_for_team(team_id)]


# ======================================================================
# Tournaments
# ======================================================================


@app.post("/tournaments", response_model=TournamentResponse)
def create_tournament(req: CreateTournamentRequest) -> dict[str, Any]:
    with _registry_errors():
        tournament = get_engine().tournaments.create_tournament(
            req.name,
            req.game,
            req.format,
            req.max_tiers,
            req.tier_limits,
            TournamentRules(**req.rules.model_dump()),
        )
    return asdict(tournament)


@app.get("/tournaments", response_model=list[TournamentResponse])
def list_tournaments(status: TournamentStatus | None = None) -> list[dict[str, Any]]:
    return [asdict(t) for t in get_engine().tournaments.list_tournaments(status)]


@app.get("/tournaments/{tournament_id}", response_model=TournamentResponse)
def get_tournament(tournament_id: str) -> dict[str, Any]:
    return asdict(_require_tournament(get_engine(), tournament_id))


@app.post("/tournaments/{tournament_id}/status", response_model=TournamentResponse)
def set_tournament_status(tournament_id: str, req: StatusRequest) -> dict[str, Any]:
    with _registry_errors():
        tournament = get_engine().tournaments.set_status(tournament_id, req.status)
    return asdict(tournament)


@app.post("/tournaments/{tournament_id}/teams", response_model=StandingResponse)
def join_tournament(tournament_id: str, req: JoinTournamentRequest) -> dict[str, Any]:
    with _registry_errors():
        standing = get_engine().tournaments.add_team(req.team_id, tournament_id, req.initial_tier)
    return asdict(standing)


@app.delete("/tournaments/{tournament_id}/teams/{team_id}")
def leave_tournament(tournament_id: str, team_id: str) -> dict[str, Any]:
    with _registry_errors():
        get_engine().tournaments.remove_team(team_id, tournament_id)
    return {"success": True}


@app.get("/tournaments/{tournament_id}/standings", response_model=list[StandingResponse])
def standings(tournament_id: str) -> list[dict[str, Any]]:
    engine = get_engine()
    _require_tournament(engine, tournament_id)
    return [asdict(s) for s in engine.tournaments.list_standings(tournament_id)]


@app.get("/tournaments/{tournament_id}/challenges", response_model=list[ChallengeResponse])
def tournament_challenges(
    tournament_id: str, status: ChallengeStatus = ChallengeStatus.PENDING
) -> list[dict[str, Any]]:
    engine = get_engine()
    _require_tournament(engine, tournament_id)
    return [asdict(c) for c in engine.list_by_status(tournament_id, status)]


@app.get("/tournaments/{tournament_id}/past-due", response_model=list[ChallengeResponse])
def past_due(tournament_id: str) -> list[dict[str, Any]]:
    engine = get_engine()
    _require_tournament(engine, tournament_id)
    return [asdict(c) for c in engine.get_past_due_challenges(tournament_id)]


# ======================================================================
# Challenges
# ======================================================================


@app.post("/challenges", response_model=ChallengeResponse)
def create_challenge(req: CreateChallengeRequest) -> dict[str, Any]:
    engine = get_engine()
    with _registry_errors():
        challenger = engine.tournaments.get_standing_by_id(req.challenger_standing_id)
        allowed = challenger is None or engine.teams.is_captain(challenger.team_id, req.captain_id)
    if not allowed:
        raise HTTPException(
            status_code=403, detail="Only the challenging team's captain can issue a challenge"
        )
    with _registry_errors():
        outcome = engine.create_challenge(
            req.challenger_standing_id,
            req.defender_standing_id,
            req.tournament_id,
            cast_demand=req.cast_demand,
        )
    return asdict(_unwrap(outcome))


@app.get("/challenges/{challenge_id}", response_model=ChallengeResponse)
def get_challenge(challenge_id: str) -> dict[str, Any]:
    challenge = get_engine().get_challenge(challenge_id)
    if challenge is None:
        raise HTTPException(status_code=404, detail="Challenge not found")
    return asdict(challenge)


@app.post("/challenges/{challenge_id}/dates", response_model=ChallengeResponse)
def propose_dates(challenge_id: str, req: ProposeDatesRequest) -> dict[str, Any]:
    with _registry_errors():
        outcome = get_engine().propose_dates(challenge_id, req.dates)
    return asdict(_unwrap(outcome))


@app.post("/challenges/{challenge_id}/schedule", response_model=ChallengeResponse)
def schedule_challenge(challenge_id: str, req: ScheduleRequest) -> dict[str, Any]:
    with _registry_errors():
        outcome = get_engine().schedule_challenge(challenge_id, req.date)
    return asdict(_unwrap(outcome))


@app.post("/challenges/{challenge_id}/result", response_model=ChallengeResponse)
def submit_result(challenge_id: str, req: ResultRequest) -> dict[str, Any]:
    games = [GameResult(g.winner, g.loser, g.duration) for g in req.games]
    with _registry_errors():
        outcome = get_engine().submit_result(challenge_id, req.winner_standing_id, req.score, games)
    return asdict(_unwrap(outcome))


@app.post("/challenges/{challenge_id}/forfeit", response_model=ChallengeResponse)
def forfeit_challenge(challenge_id: str, req: ForfeitRequest) -> dict[str, Any]:
    with _registry_errors():
        outcome = get_engine().forfeit_challenge(
            challenge_id, req.standing_id, unfair=req.unfair, reason=req.reason
        )
    return asdict(_unwrap(outcome))


@app.post("/challenges/{challenge_id}/cancel", response_model=ChallengeResponse)
def cancel_challenge(challenge_id: str) -> dict[str, Any]:
    with _registry_errors():
        outcome = get_engine().cancel_challenge(challenge_id)
    return asdict(_unwrap(outcome))


# ======================================================================
# Admin
# ======================================================================


@app.post("/admin/sweep", response_model=SweepResponse)
def admin_sweep() -> dict[str, Any]:
    """Run the auto-forfeit sweep immediately."""
    with _registry_errors():
        notices = get_sweeper().sweep()
    return {
        "forfeited": len(notices),
        "challenge_ids": [n.challenge_id for n in notices],
    }


@app.get("/health", response_model=HealthResponse)
def health() -> dict[str, Any]:
    tournaments = get_engine().tournaments
    return {
        "status": "ok",
        "tournaments": len(tournaments.list_tournaments()),
        "active_tournaments": len(tournaments.list_tournaments(TournamentStatus.ACTIVE)),
        "sweeper_running": _task is not None and _task.running,
        "next_sweep": _task.next_due if _task is not None else None,
    }
