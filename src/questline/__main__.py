from pathlib import Path
import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

# Ensure the src directory is on sys.path when running as a script
_SRC_DIR = Path(__file__).resolve().parents[1]
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from questline.application.services.tracker_service import TrackerService
from questline.bootstrap import create_tracker_service
from questline.domain.errors import QuestlineError


logger = logging.getLogger("questline")


def _print_help_surface() -> None:
    print("\nHelp:")
    print("- Content: point QUESTLINE_CONTENT_FILE at a tasks/hideout JSON export.")
    print("- Sync: set QUESTLINE_REMOTE to memory, sql or rest, or unset it for local-only mode.")
    print("- Local data lives in QUESTLINE_DATA_FILE (default .questline/progress.json).")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="questline", description="Quest and station upgrade progress tracker.")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("status", help="show progress and sync status")

    toggle = commands.add_parser("toggle", help="flip completion of an entity")
    toggle.add_argument("entity_id")
    toggle.add_argument("--set", choices=("done", "undone"), help="set an explicit state instead of flipping")

    priorities = commands.add_parser("priorities", help="list entities by urgency tier")
    priorities.add_argument("--all", action="store_true", help="include completed entities")

    commands.add_parser("resources", help="list required items by urgency tier")

    collect = commands.add_parser("collect", help="record how many of an item are already collected")
    collect.add_argument("resource_id")
    collect.add_argument("quantity", type=int)

    commands.add_parser("sync", help="connect, pull remote progress and push pending changes")
    commands.add_parser("migrate", help="push all local progress to the remote store")

    import_log = commands.add_parser("import-log", help="apply quest events from a game notification log")
    import_log.add_argument("path", type=Path)

    commands.add_parser("reset", help="clear local progress")
    return parser


def _print_status(service: TrackerService) -> None:
    status = service.sync_status()
    print(f"Tracked entities: {len(service.graph)}")
    print(f"Completed: {service.store.completed_count()}")
    print(f"Sync: {status.label} (pending {status.pending})")
    if status.last_synced_at is not None:
        print(f"Last synced: {status.last_synced_at.isoformat()}")
    if status.last_error:
        print(f"Last error: {status.last_error}")


async def _run(args: argparse.Namespace) -> int:
    service = create_tracker_service()
    try:
        if service.coordinator.online and args.command not in {"reset", "migrate"}:
            summary = await service.connect()
            if not summary.ok:
                print(f"Remote unavailable, working locally: {summary.error}")

        if args.command == "status":
            _print_status(service)
        elif args.command == "toggle":
            if args.set is None:
                record = service.toggle(args.entity_id)
            else:
                record = service.report_change(args.entity_id, args.set == "done")
            state = "done" if record.completed else "not done"
            print(f"{record.entity_id}: {state}")
        elif args.command == "priorities":
            for row in service.priority_rows(include_completed=args.all):
                marker = " (cycle)" if row.cycle_detected else ""
                done = " [done]" if row.completed else ""
                print(f"{row.tier:<5} depth={row.depth:<3} {row.name}{done}{marker}")
        elif args.command == "resources":
            for resource in service.get_resource_priorities():
                drivers = ", ".join(sorted(resource.driving_entities))
                held = f" (have {resource.owned}/{resource.needed})" if resource.owned else ""
                print(f"{resource.tier.value:<5} x{resource.quantity:<4} {resource.resource_id}{held}  <- {drivers}")
        elif args.command == "collect":
            held = service.set_owned_quantity(args.resource_id, args.quantity)
            print(f"{args.resource_id}: {held} collected")
        elif args.command == "sync":
            _print_status(service)
        elif args.command == "migrate":
            service.coordinator.link_owner()
            migration = await service.migrate()
            print(f"Migrated {migration.sent}/{migration.total} records in {migration.batches} batches.")
            for error in migration.errors:
                print(f"- {error}")
        elif args.command == "import-log":
            applied = service.import_log(args.path.read_text(encoding="utf-8", errors="replace"))
            print(f"Applied {len(applied)} quest changes from {args.path}.")
        elif args.command == "reset":
            service.reset()
            print("Local progress cleared.")

        await service.flush()
        return 0
    finally:
        await service.close()


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("QUESTLINE_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        print("\nSession ended.")
        return 130
    except (QuestlineError, ValueError, OSError) as exc:
        logger.debug("Command failed", exc_info=True)
        print("The command failed. Local progress was left as it was.")
        print(f"Reason: {exc}")
        _print_help_surface()
        return 1


if __name__ == "__main__":
    sys.exit(main())
