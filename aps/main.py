"""Entry point: validates input, runs the planning pipeline, writes deliverables."""

import argparse
import asyncio
import logging
import sys

from aps.config import get_config
from aps.errors import PipelineError
from aps.llm import PROVIDERS
from aps.orchestrator import Orchestrator
from aps.state import OrchestrationProgress
from aps.store import open_store
from aps.utils.formatter import write_deliverables
from aps.utils.validator import validate_input


def _print_progress(progress: OrchestrationProgress) -> None:
    done = len(progress["completed_stages"])
    total = progress["total_stages"]
    if progress.get("error"):
        print(f"[APS] Failed during {progress['current_stage']}: {progress['error']}", file=sys.stderr)
    else:
        print(f"[APS] ({done}/{total}) {progress['current_stage']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aps", description="Turn a project idea into a build plan.")
    parser.add_argument("description", nargs="*", help="Project description (read from stdin if omitted)")
    parser.add_argument("--name", default="", help="Project name (defaults to the first words of the description)")
    parser.add_argument("--provider", choices=PROVIDERS, default=None)
    parser.add_argument("--project-id", default=None, help="Re-run an existing project instead of creating one")
    parser.add_argument("--competitor-link", action="append", default=[], dest="competitor_links")
    parser.add_argument("--competitor-review", action="append", default=[], dest="competitor_reviews")
    parser.add_argument("--db", default=None, help="SQLite store path")
    parser.add_argument("--output", default=None, help="Directory for deliverable files")
    parser.add_argument("--log-level", default="WARNING")
    return parser


def run(args: argparse.Namespace) -> int:
    store = open_store(args.db)
    try:
        if args.project_id:
            project_id = args.project_id
        else:
            text = " ".join(args.description) if args.description else sys.stdin.read()
            description = validate_input(text)
            name = args.name or " ".join(description.split()[:6])
            project = store.insert_project(name, description, args.competitor_links, args.competitor_reviews)
            project_id = project["id"]
            print(f"[APS] Project: {project_id}")

        provider = args.provider or get_config().get("provider")
        orchestrator = Orchestrator(project_id, provider, store=store, on_progress=_print_progress)
        try:
            asyncio.run(orchestrator.run_all_stages())
        except PipelineError as exc:
            print(f"[APS] Error: {exc}", file=sys.stderr)
            errors = getattr(exc, "errors", [])
            for e in errors:
                print(f"  - {e}", file=sys.stderr)
            return 1

        project = store.get_project(project_id)
        output_path = write_deliverables(orchestrator.results, project["name"] if project else "", args.output)
        print(f"[APS] Status: {project['status'] if project else 'unknown'}")
        print(f"[APS] Output written to: {output_path}")
        return 0
    finally:
        store.close()


def main() -> None:
    """CLI entry point. Accepts the project description as arguments or from stdin."""
    args = build_parser().parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    if not args.project_id and not args.description:
        print("Enter your project description (Ctrl+D / Ctrl+Z to submit):")
    sys.exit(run(args))


if __name__ == "__main__":
    main()
