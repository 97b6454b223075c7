"""
On Deck Data Layer Entry Point.

Bootstraps the dependency graph via constructor injection, initialises the
local SQLite schema, and runs one headless command against the data layer.
Every subsystem is wired here; there are no module-level globals besides
the configuration singleton.

Usage::

    python main.py players <team_id>
    python main.py --email coach@example.com --password ... teams
    python main.py evict
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import sys
from pathlib import Path
from typing import Optional

from ondeck.config import get_config
from ondeck.database import DatabaseManager
from ondeck.errors import DataAccessError
from ondeck.logger import StructuredLogger, get_logger
from ondeck.models.cache_models import FetchResult
from ondeck.schema import initialize_schema
from ondeck.container import ServiceContainer, create_services


def build_parser() -> argparse.ArgumentParser:
    """Build the top-level argument parser."""
    parser = argparse.ArgumentParser(
        prog="ondeck",
        description="On Deck roster data layer",
    )
    parser.add_argument("--email", default=None, help="Sign in with this account first")
    parser.add_argument(
        "--password",
        default=None,
        help="Password for --email (prompted when omitted)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    players_p = sub.add_parser("players", help="List a team's players (cache fallback when offline)")
    players_p.add_argument("team_id")
    players_p.add_argument("--page", type=int, default=None, help="Zero-based page number")

    rosters_p = sub.add_parser("rosters", help="List a team's saved game rosters")
    rosters_p.add_argument("team_id")

    sub.add_parser("teams", help="List the signed-in user's teams")
    sub.add_parser("evict", help="Remove expired and corrupt offline cache entries")
    sub.add_parser("clear-cache", help="Remove every offline cache entry")
    return parser


def _print_result(result: FetchResult, logger: StructuredLogger) -> None:
    if result.from_cache:
        logger.warning(
            "Offline: showing cached data from %s.",
            result.cached_at.isoformat() if result.cached_at else "an unknown time",
        )
    for item in result.items:
        print(item.model_dump_json())


async def _run_command(
    args: argparse.Namespace,
    services: ServiceContainer,
    page_size: int,
    logger: StructuredLogger,
) -> int:
    if args.command == "players":
        players = services["player_repository"]
        if args.page is None:
            result = await players.get_players(args.team_id)
        else:
            start = args.page * page_size
            result = await players.get_players_page(args.team_id, start, start + page_size - 1)
        _print_result(result, logger)
    elif args.command == "rosters":
        result = await services["game_roster_repository"].get_game_rosters(args.team_id)
        _print_result(result, logger)
    elif args.command == "teams":
        for membership in await services["team_repository"].get_teams():
            print(membership.model_dump_json())
    elif args.command == "evict":
        removed = await services["cache"].evict_expired()
        print(json.dumps({"evicted": removed}))
    elif args.command == "clear-cache":
        await services["cache"].clear_all()
    return 0


async def run(argv: Optional[list[str]] = None) -> int:
    """Wire dependencies, run one command, and shut down cleanly."""
    args = build_parser().parse_args(argv)
    logger: StructuredLogger = get_logger("main")

    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config = get_config()

    # ------------------------------------------------------------------
    # 2. Database Manager (offline-first: Supabase optional, SQLite always)
    # ------------------------------------------------------------------
    db = await DatabaseManager.create(
        supabase_url=config.SUPABASE_URL,
        supabase_key=config.SUPABASE_ANON_KEY.get_secret_value(),
        sqlite_path=Path(config.LOCAL_STORE_PATH),
        logger=get_logger("database"),
    )

    try:
        # --------------------------------------------------------------
        # 3. SQLite schema (idempotent)
        # --------------------------------------------------------------
        initialize_schema(db.sqlite, get_logger("schema"))

        # --------------------------------------------------------------
        # 4. Service container (single composition root)
        # --------------------------------------------------------------
        services = create_services(db=db, config=config)
        controller = services["session_controller"]
        if db.is_online:
            controller.attach(db.supabase.auth)

        # Startup eviction runs concurrently with the command.
        eviction = services["cache"].start_background_eviction()

        # --------------------------------------------------------------
        # 5. Optional sign-in, then the command
        # --------------------------------------------------------------
        if args.email:
            password = args.password or getpass.getpass("Password: ")
            auth_result = await services["auth_service"].sign_in(args.email, password)
            if not auth_result.success:
                logger.error("Sign-in failed: %s", auth_result.error_message)
                return 2

        try:
            return await _run_command(args, services, config.PLAYERS_PAGE_SIZE, logger)
        except DataAccessError as exc:
            logger.error("%s failed: %s", args.command, exc.message)
            return 1
        finally:
            if eviction is not None:
                await asyncio.gather(eviction, return_exceptions=True)
            for repository in (
                services["player_repository"],
                services["game_roster_repository"],
            ):
                await repository.close_live_queries()
            await controller.wait_idle()
            controller.detach()
    finally:
        await db.aclose()
        logger.info("On Deck data layer shut down.")


def main() -> None:
    """Application entry point."""
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
