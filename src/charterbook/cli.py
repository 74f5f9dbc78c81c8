"""CLI entry point for charterbook."""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
import signal
import sys
from pathlib import Path

from . import __version__

MINIMAL_CONFIG = """\
policy:
  timezone: "America/Mazatlan"

provider:
  api_key: "${CAL_API_KEY}"

web:
  port: 8080
  api_key: "${CHARTERBOOK_API_KEY}"

yachts:
  - slug: "example-yacht"
    name: "Example Yacht"
    booking_mode: "policy_v2"
    public_enabled: true
    event_type_id: 0
"""

MINIMAL_ENV = "CAL_API_KEY=cal_live_...\nCHARTERBOOK_API_KEY=change-me\nTURNSTILE_SECRET_KEY=\n"


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


def cmd_init(args: argparse.Namespace) -> None:
    """Initialize charterbook configuration in the current directory."""
    config_dest = Path("config.yaml")
    env_dest = Path(".env")

    pkg_dir = Path(__file__).parent.parent.parent  # src/charterbook -> project root
    config_src = pkg_dir / "config.example.yaml"
    env_src = pkg_dir / ".env.example"

    if config_dest.exists() and not args.force:
        print("config.yaml already exists. Use --force to overwrite.")
    else:
        if config_src.exists():
            shutil.copy(config_src, config_dest)
        else:
            config_dest.write_text(MINIMAL_CONFIG)
        print(f"Created {config_dest}")

    if env_dest.exists() and not args.force:
        print(".env already exists. Use --force to overwrite.")
    else:
        if env_src.exists():
            shutil.copy(env_src, env_dest)
        else:
            env_dest.write_text(MINIMAL_ENV)
        print(f"Created {env_dest}")

    print("\nNext steps:")
    print("  1. Edit config.yaml with your yachts and Cal.com event type ids")
    print("  2. Edit .env with your API keys")
    print("  3. Verify: charterbook check")
    print("  4. Run: charterbook run")


def cmd_check(args: argparse.Namespace) -> None:
    """Load the config and report what is configured."""
    from .config import BOOKING_MODE_POLICY, load_config

    print(f"charterbook v{__version__} - config check\n")

    try:
        config = load_config(args.config)
        print(f"[OK] Config loaded from {args.config}")
    except Exception as e:
        print(f"[FAIL] Config: {e}")
        sys.exit(1)

    policy = config.policy
    print(
        f"[OK] Policy {policy.policy_version}: {policy.min_hours}-{policy.max_hours}h trips, "
        f"{policy.operating_start:02d}:00-{policy.operating_end:02d}:00 {policy.timezone}"
    )

    if config.provider.api_key:
        print(f"[OK] Provider: {config.provider.base_url} (api version {config.provider.api_version})")
    else:
        print("[WARN] Provider: API key not set")

    print("[OK] Bot check: Turnstile" if config.turnstile.secret_key else "[--] Bot check: disabled")
    print("[OK] Internal API: key set" if config.web.api_key else "[--] Internal API: disabled")

    if not config.yachts:
        print("[WARN] No yachts configured")
    for yacht in config.yachts:
        if yacht.booking_mode != BOOKING_MODE_POLICY:
            print(f"[--] Yacht {yacht.slug}: {yacht.booking_mode}")
        elif yacht.event_type_id is None:
            print(f"[WARN] Yacht {yacht.slug}: policy_v2 but no event_type_id")
        else:
            visibility = "public" if yacht.public_enabled else "internal only"
            live = f", live from {yacht.live_from}" if yacht.live_from else ""
            print(f"[OK] Yacht {yacht.slug}: event type {yacht.event_type_id}, {visibility}{live}")


def cmd_policy(args: argparse.Namespace) -> None:
    """Print the allowed start hours for each trip length."""
    from .config import PolicyConfig, load_config
    from .core.policy import BookingPolicy

    policy_config = load_config(args.config).policy if Path(args.config).exists() else PolicyConfig()
    policy = BookingPolicy(policy_config)

    durations = [args.hours] if args.hours else list(policy.durations())
    for duration in durations:
        reason = policy.explain_rejection(duration, policy_config.operating_start)
        starts = policy.allowed_starts(duration)
        if not starts:
            print(f"{duration}h: none ({reason})")
            continue
        labels = ", ".join(policy.time_range_label(duration, s) for s in starts)
        print(f"{duration}h: {labels}")


def cmd_availability(args: argparse.Namespace) -> None:
    """Display a month of availability for one yacht."""
    from .config import load_config
    from .core.engine import BookingEngine
    from .database import Database
    from .errors import BookingError
    from .provider import CalComProvider

    _setup_logging(args.verbose)
    config = load_config(args.config)
    db = Database(config.database_path)
    db.connect()

    async def show():
        provider = CalComProvider(config.provider)
        engine = BookingEngine(config, provider, db)
        try:
            payload = await engine.get_availability(args.yacht, args.month, internal=True)
        finally:
            await provider.aclose()

        print(f"{payload['yacht']['name'] or args.yacht} - {payload['month']} ({payload['timezone']})\n")
        for date_key, day in payload["days"].items():
            starts = "  ".join(
                f"{d}h:{','.join(str(s) for s in hours)}"
                for d, hours in day["validStartsByDuration"].items()
                if hours
            )
            print(f"  {date_key}  am={day['am']:<9} pm={day['pm']:<9} {starts or '-'}")

    try:
        asyncio.run(show())
    except BookingError as e:
        print(f"[FAIL] {e.message}")
        sys.exit(1)
    finally:
        db.close()


def cmd_run(args: argparse.Namespace) -> None:
    """Run the booking API."""
    from .config import load_config

    config = load_config(args.config)
    _setup_logging(args.verbose)
    asyncio.run(_run_server(config))


async def _run_server(config) -> None:
    """Wire provider, database and engine, then serve until signalled."""
    from .core.engine import BookingEngine
    from .database import Database
    from .provider import CalComProvider
    from .web import WebServer

    db = Database(config.database_path)
    db.connect()

    provider = CalComProvider(config.provider)
    engine = BookingEngine(config, provider, db)
    server = WebServer(config, engine)

    stop_event = asyncio.Event()

    def signal_handler():
        print("\nShutting down...")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    task = asyncio.create_task(server.start())
    await stop_event.wait()

    await server.stop()
    await task
    await provider.aclose()
    db.close()


def main():
    parser = argparse.ArgumentParser(
        prog="charterbook",
        description="Yacht-charter availability and booking policy service",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command")

    # init
    init_parser = subparsers.add_parser("init", help="Initialize configuration")
    init_parser.add_argument("--force", action="store_true", help="Overwrite existing files")

    # check
    check_parser = subparsers.add_parser("check", help="Check configuration")
    check_parser.add_argument("-c", "--config", default="config.yaml", help="Config file path")

    # policy
    policy_parser = subparsers.add_parser("policy", help="Show allowed start hours")
    policy_parser.add_argument("-c", "--config", default="config.yaml", help="Config file path")
    policy_parser.add_argument("--hours", type=int, default=None, help="Only this trip length")

    # availability
    avail_parser = subparsers.add_parser("availability", help="Show a month of availability")
    avail_parser.add_argument("-c", "--config", default="config.yaml", help="Config file path")
    avail_parser.add_argument("--yacht", required=True, help="Yacht slug")
    avail_parser.add_argument("--month", default=None, help="YYYY-MM (default: current month)")
    avail_parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    # run
    run_parser = subparsers.add_parser("run", help="Run the booking API")
    run_parser.add_argument("-c", "--config", default="config.yaml", help="Config file path")
    run_parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    commands = {
        "init": cmd_init,
        "check": cmd_check,
        "policy": cmd_policy,
        "availability": cmd_availability,
        "run": cmd_run,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
