"""Command-line entry point for Ghostmail Sync."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from ghostmail.core import AppSettings, configure_logging, load_app_settings
from ghostmail.core.container import ServiceContainer, build_container
from ghostmail.core.errors import GhostmailError, SyncError

COMMANDS = [
    "info",
    "sync",
    "dedupe",
    "zones",
    "add-zone",
    "remove-zone",
    "set-token",
    "logout",
    "subdomains",
    "stats",
    "serve",
]


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Sync Cloudflare Email Routing aliases across zones"
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=COMMANDS,
        help="Operation to execute.",
    )
    parser.add_argument("--account-id", dest="account_id", default=None)
    parser.add_argument("--zone-id", dest="zone_id", default=None)
    parser.add_argument(
        "--token",
        default=None,
        help="API token for add-zone and set-token.",
    )
    parser.add_argument(
        "--disable",
        action="store_true",
        help="Turn subdomain routing off for the subdomains command.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Bypass the statistics cache for the stats command.",
    )
    parser.add_argument(
        "--no-background-sync",
        dest="background_sync",
        action="store_false",
        help="Do not run periodic sync while serving.",
    )
    return parser


def execute(
    args: argparse.Namespace,
    settings: AppSettings,
    container: ServiceContainer | None = None,
) -> int:
    """Execute the requested CLI command and return an exit status."""
    services = container or build_container(settings)
    try:
        return _dispatch(args, settings, services)
    except SyncError as exc:
        print(f"Sync failed: {exc}")
        for zone_id, error in exc.failures.items():
            print(f"  {zone_id}: {error}")
        return 1
    except GhostmailError as exc:
        print(f"Error: {exc}")
        return 1
    finally:
        if args.command != "serve":
            services.close()


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    sys.exit(execute(args, settings))


def _dispatch(
    args: argparse.Namespace, settings: AppSettings, services: ServiceContainer
) -> int:
    command = args.command
    if command == "info":
        zones = services.resolve("registry").list_zones()
        print("Ghostmail Sync is ready.")
        print(f"Database path: {settings.storage.db_path}")
        print(f"Zones configured: {len(zones)}")
        print(f"Cloudflare API: {settings.cloudflare.base_url}")
    elif command == "sync":
        report = services.resolve("coordinator").refresh_now()
        print(
            f"Created {report.created}, updated {report.updated}, "
            f"deleted {report.deleted}, unchanged {report.unchanged}."
        )
        for zone_id, error in report.failures.items():
            print(f"Zone {zone_id} failed: {error}")
    elif command == "dedupe":
        deleted = services.resolve("coordinator").dedupe_now()
        print(f"Removed {deleted} duplicate alias(es).")
    elif command == "zones":
        zones = services.resolve("registry").list_zones()
        if not zones:
            print("No zones configured.")
        for zone in zones:
            state = "ok" if zone.is_authenticated else "needs re-auth"
            print(f"{zone.zone_id}  {zone.display_name}  [{state}]")
    elif command == "add-zone":
        _require(args, "account_id", "zone_id", "token")
        zone = services.resolve("onboarding").add_zone(
            args.account_id, args.zone_id, args.token
        )
        print(f"Added zone {zone.display_name}.")
        services.resolve("coordinator").zones_changed()
    elif command == "remove-zone":
        _require(args, "zone_id")
        services.resolve("aliases").remove_zone(args.zone_id)
        print(f"Removed zone {args.zone_id}.")
    elif command == "set-token":
        _require(args, "zone_id", "token")
        services.resolve("onboarding").reauthenticate(args.zone_id, args.token)
        print(f"Updated token for zone {args.zone_id}.")
    elif command == "logout":
        aliases = services.resolve("aliases")
        if args.zone_id:
            hidden = aliases.logout_zone(args.zone_id)
        else:
            hidden = aliases.logout_all()
        print(f"Logged out; {hidden} alias(es) hidden until re-authentication.")
    elif command == "subdomains":
        onboarding = services.resolve("onboarding")
        if args.zone_id:
            zones = [onboarding.toggle_subdomains(args.zone_id, not args.disable)]
        else:
            zones = onboarding.refresh_subdomains()
        for zone in zones:
            hosts = ", ".join(zone.subdomains) or "none"
            state = "on" if zone.subdomains_enabled else "off"
            print(f"{zone.zone_id}  subdomains {state}: {hosts}")
    elif command == "stats":
        statistics = services.resolve("statistics").refresh(force=args.force)
        if not statistics:
            print("No statistics available.")
        for statistic in statistics:
            print(f"{statistic.count:6d}  {statistic.email_address}")
    elif command == "serve":
        _serve(settings, services, background_sync=args.background_sync)
    return 0


def _serve(
    settings: AppSettings, services: ServiceContainer, *, background_sync: bool
) -> None:
    # pylint: disable=import-outside-toplevel
    import uvicorn

    from ghostmail.web import create_app

    app = create_app(settings, container=services, background_sync=background_sync)
    uvicorn.run(app, host=settings.web.host, port=settings.web.port)


def _require(args: argparse.Namespace, *names: str) -> None:
    missing = [name for name in names if not getattr(args, name)]
    if missing:
        options = ", ".join("--" + name.replace("_", "-") for name in missing)
        raise SystemExit(f"Missing required option(s): {options}")


if __name__ == "__main__":
    main()
