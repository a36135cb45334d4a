"""Output Formatter: turns final stage outputs into deliverable Markdown files."""

import json
import re
from collections.abc import Mapping
from pathlib import Path

from aps.config import get_config, project_root
from aps.ledger import fold_ledger
from aps.state import StageResult


def format_prompt(prompt: dict) -> str:
    """Render one generated implementation prompt as Markdown."""
    lines = [f"# {prompt.get('title', 'Untitled')}", ""]
    lines.append("## Instruction")
    lines.append(str(prompt.get("prompt", "")))
    lines.append("")

    sections = (
        ("files", "Files to Modify"),
        ("constraints", "Constraints"),
        ("acceptance", "Acceptance Criteria"),
        ("tests", "Tests"),
    )
    for key, heading in sections:
        items = prompt.get(key) or []
        if items:
            lines.append(f"## {heading}")
            for item in items:
                lines.append(f"- {item}")
            lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def missing_required_titles(prompts_output: Mapping, required: list[str]) -> list[str]:
    """Return the required prompt titles absent from the bolt/cursor lists (case-insensitive)."""
    titles = {
        str(p.get("title", "")).lower()
        for p in list(prompts_output.get("bolt") or []) + list(prompts_output.get("cursor") or [])
        if isinstance(p, dict)
    }
    return [t for t in required if t.lower() not in titles]


def _render_prompts_fallback(prompts_output: Mapping) -> str:
    lines = ["# Prompts", ""]
    for tool in ("bolt", "cursor"):
        items = prompts_output.get(tool) or []
        if not items:
            continue
        lines.append(f"## {tool.capitalize()}")
        lines.append("")
        for i, p in enumerate(items, 1):
            lines.append(f"### {i}. {p.get('title', 'Untitled')}")
            lines.append("")
            lines.append(format_prompt(p).split("\n", 2)[2])
    return "\n".join(lines)


def _unique_dir(base: Path) -> Path:
    if not base.exists():
        return base
    counter = 1
    while True:
        counter += 1
        candidate = base.with_name(f"{base.name} ({counter})")
        if not candidate.exists():
            return candidate


def write_deliverables(results: Mapping[str, StageResult], project_name: str = "", output_dir: Path | None = None) -> Path:
    """Write Build Plan.md, Prompts.md and decision-ledger.json for a finished run.

    Uses the composer's Markdown when present and falls back to rendering the
    prompts stage directly. Returns the directory written to.
    """
    config = get_config()
    base = Path(output_dir) if output_dir else project_root() / config["output_dir"]
    stem = re.sub(r"[^a-z0-9]+", "-", project_name.lower()).strip("-") or "plan"
    target = _unique_dir(base / stem)
    target.mkdir(parents=True, exist_ok=True)

    composer = results.get(config.get("composer_stage", "composer"))
    composer_out = composer.output if composer and isinstance(composer.output, dict) else {}
    prompts = results.get(config.get("prompts_stage", "prompts"))
    prompts_out = prompts.output if prompts and isinstance(prompts.output, dict) else {}

    build_plan = composer_out.get("buildPlanMd") or "# Build Plan\n\n*The composer stage produced no build plan.*\n"
    prompts_md = composer_out.get("promptsMd") or _render_prompts_fallback(prompts_out)
    ledger = composer_out.get("decisionLedger") or fold_ledger(results.values())

    (target / "Build Plan.md").write_text(build_plan, encoding="utf-8")
    (target / "Prompts.md").write_text(prompts_md, encoding="utf-8")
    (target / "decision-ledger.json").write_text(json.dumps(ledger, indent=2), encoding="utf-8")
    return target
