#!/usr/bin/env python3
"""
ladder/cli.py - Command line interface for the challenge ladder

Usage:
    ladder serve [--port 8000] [--db ladder.db]
    ladder sweep [--db ladder.db]
    ladder past-due <tournament_id>
    ladder standings <tournament_id>
    ladder tournaments [--status active]
"""

import argparse
import logging
import sys
from pathlib import Path

from ladder.config import LadderConfig, load_config
from ladder.engine import ChallengeEngine
from ladder.models import TournamentStatus
from ladder.store import LadderDB
from ladder.sweeper import TimeoutSweeper

logger = logging.getLogger(__name__)


def _load(args) -> LadderConfig:
    config = load_config(Path(args.config).expanduser() if args.config else None)
    if args.db:
        config.database.path = args.db
    return config


def _open_engine(config: LadderConfig) -> ChallengeEngine:
    return ChallengeEngine.from_db(
        LadderDB(config.database.path),
        penalties=config.penalties,
        date_tolerance=config.scheduling.date_tolerance,
    )


def cmd_serve(args):
    """Start the HTTP server (sweeper included)."""
    import uvicorn

    from ladder_server.server import app

    config = _load(args)
    port = args.port or config.server.port

    # Lifespan picks these up from app state
    app.state.config = config
    app.state.db_path = config.database.path
    logger.info(f"Starting ladder server on port {port} (db: {config.database.path})")
    uvicorn.run(app, host=config.server.host, port=port, log_level="info")
    return 0


def cmd_sweep(args):
    """Run one auto-forfeit sweep and exit."""
    config = _load(args)
    engine = _open_engine(config)
    sweeper = TimeoutSweeper(
        engine,
        grace_period=config.sweeper.grace_period,
        max_retries=config.sweeper.max_retries,
        retry_delay=config.sweeper.retry_delay_seconds,
    )
    notices = sweeper.sweep()
    for n in notices:
        print(f"forfeited {n.challenge_id}  (deadline {n.deadline:%Y-%m-%d %H:%M} UTC)")
    print(f"\n{len(notices)} challenge(s) auto-forfeited")
    return 0


def cmd_past_due(args):
    """List unanswered challenges past their response deadline."""
    engine = _open_engine(_load(args))
    tournament = engine.tournaments.get_tournament(args.tournament_id)
    if tournament is None:
        logger.error(f"Unknown tournament: {args.tournament_id}")
        return 1

    overdue = engine.get_past_due_challenges(tournament.tournament_id)
    print(f"\nPast-due challenges in {tournament.name}\n")
    print(f"{'Challenge':<38} {'Created':<18} {'Deadline':<18}")
    print("-" * 74)
    for c in overdue:
        deadline = engine.response_deadline(c, tournament)
        print(f"{c.challenge_id:<38} {c.created_at:%Y-%m-%d %H:%M}  {deadline:%Y-%m-%d %H:%M}")
    print()
    return 0


def cmd_standings(args):
    """Print the ladder for one tournament."""
    engine = _open_engine(_load(args))
    tournament = engine.tournaments.get_tournament(args.tournament_id)
    if tournament is None:
        logger.error(f"Unknown tournament: {args.tournament_id}")
        return 1

    print(f"\n{tournament.name} ({tournament.game}, {tournament.format.value})\n")
    print(f"{'Tier':<6} {'Team':<24} {'Prestige':>9} {'W-L':>8} {'Streak':>7}")
    print("-" * 58)
    for s in engine.tournaments.list_standings(tournament.tournament_id):
        team = engine.teams.get_team_by_id(s.team_id)
        name = team.name if team else s.team_id
        record = f"{s.wins}-{s.losses}"
        print(f"{s.tier:<6} {name:<24} {s.prestige:>9} {record:>8} {s.win_streak:>7}")
    print()
    return 0


def cmd_tournaments(args):
    """List tournaments."""
    engine = _open_engine(_load(args))
    status = TournamentStatus(args.status) if args.status else None
    for t in engine.tournaments.list_tournaments(status):
        print(f"{t.tournament_id}  {t.status.value:<9} {t.name} ({t.game}, {t.max_tiers} tiers)")
    return 0


def main(argv: list[str] | None = None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    parser = argparse.ArgumentParser(
        prog="ladder",
        description="Tiered challenge ladder for team tournaments",
    )
    parser.add_argument("--config", default=None, help="Config file (default: ~/.ladder/config.toml)")
    parser.add_argument("--db", default=None, help="SQLite database path (overrides config)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    serve_parser.add_argument("--port", "-p", type=int, default=None, help="Server port (default: from config, 8000)")
    serve_parser.set_defaults(func=cmd_serve)

    # sweep command
    sweep_parser = subparsers.add_parser("sweep", help="Auto-forfeit past-due challenges now")
    sweep_parser.set_defaults(func=cmd_sweep)

    # past-due command
    due_parser = subparsers.add_parser("past-due", help="List past-due challenges")
    due_parser.add_argument("tournament_id", help="Tournament id")
    due_parser.set_defaults(func=cmd_past_due)

    # standings command
    standings_parser = subparsers.add_parser("standings", help="Show a tournament's ladder")
    standings_parser.add_argument("tournament_id", help="Tournament id")
    standings_parser.set_defaults(func=cmd_standings)

    # tournaments command
    list_parser = subparsers.add_parser("tournaments", help="List tournaments")
    list_parser.add_argument(
        "--status", choices=[s.value for s in TournamentStatus], default=None, help="Filter by status"
    )
    list_parser.set_defaults(func=cmd_tournaments)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
