#!/usr/bin/env python3
"""
Identity Resolution

CLI script to run cross-source identity resolution for one organization.

Usage:
    python scripts/identity_resolution.py init-schema
    python scripts/identity_resolution.py compute --org org_acme_001 --actor ops@acme.com
    python scripts/identity_resolution.py candidates --org org_acme_001 --run <run_id>
    python scripts/identity_resolution.py apply --org org_acme_001 --run <run_id> --reject id1,id2
    python scripts/identity_resolution.py reverse --org org_acme_001 --run <run_id>
    python scripts/identity_resolution.py post-sync --org org_acme_001
    python scripts/identity_resolution.py summary --org org_acme_001

Every command prints its result as JSON.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from identigraph.db.client import close_db, get_db_session, init_db
from identigraph.db.schema import create_schema, validate_schema
from identigraph.identity import (
    get_identity_summary,
    get_resolution_orchestrator,
    run_post_sync_resolution,
)
from identigraph.kernel.errors import IdentigraphError
from identigraph.logging import configure_logging


def _split_ids(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


def _print(payload) -> None:
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json")
    elif isinstance(payload, list):
        payload = [item.model_dump(mode="json") for item in payload]
    print(json.dumps(payload, indent=2, sort_keys=True))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run cross-source identity resolution",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-schema", help="Create the resolution tables if missing")

    def with_org(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("--org", required=True, help="Organization ID")
        return sub

    compute = with_org("compute", "Compute a new run of match candidates")
    compute.add_argument("--actor", help="Who triggered the run")

    apply = with_org("apply", "Apply candidates of a run as graph edges")
    apply.add_argument("--run", required=True, help="Run ID")
    apply.add_argument("--actor", help="Who applied the run")
    apply.add_argument("--accept", help="Comma-separated candidate IDs to apply (default: all)")
    apply.add_argument("--reject", help="Comma-separated candidate IDs to reject first")
    apply.add_argument(
        "--strict",
        action="store_true",
        help="Fail when --accept names candidates outside the run",
    )

    reverse = with_org("reverse", "Reverse an applied run")
    reverse.add_argument("--run", required=True, help="Run ID")

    post_sync = with_org("post-sync", "Compute and auto-apply high-confidence matches")
    post_sync.add_argument("--actor", help="Who triggered the sync")

    candidates = with_org("candidates", "List candidates of a run (default: latest pending)")
    candidates.add_argument("--run", help="Run ID")
    candidates.add_argument("--limit", type=int, help="Maximum candidates to list")

    with_org("summary", "Show unified people counts")

    return parser


async def run_command(args: argparse.Namespace) -> int:
    if args.command == "init-schema":
        async with get_db_session() as session:
            await create_schema(session)
            is_valid, missing = await validate_schema(session)
        _print({"valid": is_valid, "missing": missing})
        return 0 if is_valid else 1

    if args.command == "summary":
        summary = await get_identity_summary(args.org)
        if summary is None:
            print("Identity summary unavailable", file=sys.stderr)
            return 1
        _print(summary)
        return 0

    if args.command == "post-sync":
        _print(await run_post_sync_resolution(args.org, args.actor))
        return 0

    orchestrator = get_resolution_orchestrator()

    if args.command == "compute":
        _print(await orchestrator.compute(args.org, args.actor))
    elif args.command == "apply":
        _print(
            await orchestrator.apply(
                args.org,
                args.run,
                args.actor,
                accepted_ids=_split_ids(args.accept),
                rejected_ids=_split_ids(args.reject),
                strict=args.strict,
            )
        )
    elif args.command == "reverse":
        _print(await orchestrator.reverse(args.org, args.run))
    elif args.command == "candidates":
        run_id = args.run
        if run_id is None:
            run = await orchestrator.latest_pending_run(args.org)
            if run is None:
                print("No run pending review", file=sys.stderr)
                return 1
            run_id = run.id
        _print(await orchestrator.list_candidates(args.org, run_id, limit=args.limit))
    return 0


async def main() -> int:
    args = build_parser().parse_args()
    configure_logging()
    await init_db()
    try:
        return await run_command(args)
    except IdentigraphError as e:
        print(json.dumps(e.to_public_dict(), indent=2), file=sys.stderr)
        return 1
    finally:
        await close_db()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
