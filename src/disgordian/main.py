"""
main.py — Disgordian Entry Point

Usage:
    python -m disgordian                           # token from .env / environment
    python -m disgordian --token <bot token>
    python -m disgordian --log-level DEBUG         # Verbose logging
    python -m disgordian --config path/to/config.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv


def _find_env_file() -> Path | None:
    """Walk up from CWD looking for .env file."""
    cwd = Path.cwd()
    for d in [cwd, *cwd.parents]:
        candidate = d / ".env"
        if candidate.is_file():
            return candidate
    return None


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="disgordian",
        description="Disgordian — Discord gateway bot",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $DISGORDIAN_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--token",
        default=None,
        help="Bot token (overrides DISCORD_BOT_TOKEN)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from pydantic import ValidationError

    from disgordian.config.settings import ConfigError, load_settings
    from disgordian.observability.logger import get_logger, setup_logging

    env_path = _find_env_file()
    if env_path:
        load_dotenv(dotenv_path=env_path)

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(args.config, DISCORD_BOT_TOKEN=args.token)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.log_json_format,
        console_output=settings.log_console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("disgordian.main")
    return settings, log


def _install_signal_handlers(session) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, session.request_stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler
            pass


async def main(argv: list[str] | None = None) -> int:
    from disgordian.commands import CommandRegistry, register_builtin_commands
    from disgordian.events import EventRouter
    from disgordian.exceptions import GatewayError, RestError
    from disgordian.gateway.session import GatewaySession
    from disgordian.rest.client import RestClient

    args = parse_args(argv)
    settings, log = bootstrap(args)

    log.info(
        "disgordian.starting",
        gateway_version=settings.gateway.version,
        shard=settings.gateway.shard,
    )

    async with RestClient(settings.bot_token, base_url=settings.gateway.api_base_url) as rest:
        try:
            url = await rest.get_gateway_url()
        except RestError as exc:
            log.error("disgordian.startup_failed", stage="gateway_url", error=str(exc))
            return 1

        router = EventRouter()
        commands = CommandRegistry(prefix=settings.commands.prefix)
        register_builtin_commands(commands, rest)
        commands.install(router)

        session = GatewaySession(
            url,
            settings.bot_token,
            on_dispatch=router.dispatch,
            config=settings.gateway,
        )
        _install_signal_handlers(session)

        try:
            result = await session.run()
        except GatewayError as exc:
            log.error(
                "disgordian.startup_failed",
                stage="gateway",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return 1

    log.info(
        "disgordian.stopped",
        reason=result.reason,
        dispatch_count=result.dispatch_count,
    )
    return 0


def cli() -> None:
    sys.exit(asyncio.run(main()))
