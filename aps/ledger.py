"""Decision Ledger: a derived, deduplicated view over stage outputs.

The ledger is never stored or mutated on its own. It is folded fresh from
the current stage results every time it is needed, so it can never go stale
after a stage is re-run.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from aps.state import LedgerEntry, StageResult


def _declared(output) -> list[dict]:
    output = output if isinstance(output, dict) else {}
    decisions = output.get("decisions")
    if not isinstance(decisions, list):
        return []
    return [d for d in decisions if isinstance(d, dict) and d.get("key")]


def _completion_order(results: Iterable[StageResult]) -> list[StageResult]:
    # sorted() is stable, so results completed at the same instant keep their
    # collection order (the orchestrator inserts in completion order).
    completed = [r for r in results if r.status == "completed"]
    return sorted(completed, key=lambda r: (r.completed_at is None, r.completed_at or r.created_at))


def fold_ledger(results: Iterable[StageResult]) -> list[LedgerEntry]:
    """Fold every completed stage's declared decisions into one entry per key.

    When several stages declare the same key, the most recently completed
    stage wins. Entries keep the position where their key first appeared.
    """
    ledger: dict[str, LedgerEntry] = {}
    for result in _completion_order(results):
        for d in _declared(result.output):
            key = str(d["key"])
            ledger[key] = {
                "key": key,
                "value": str(d.get("value", "")),
                "reason": str(d.get("reason", "")),
            }
    return list(ledger.values())


def duplicate_keys(outputs: Mapping[str, Any]) -> dict[str, list[str]]:
    """Return keys declared by more than one stage, mapped to the declaring stage types.

    `outputs` maps stage type to validated output, in completion order.
    """
    owners: dict[str, list[str]] = {}
    for stage_type, output in outputs.items():
        for d in _declared(output):
            stages = owners.setdefault(str(d["key"]), [])
            if stage_type not in stages:
                stages.append(stage_type)
    return {key: stages for key, stages in owners.items() if len(stages) > 1}


def outputs_by_type(results: Iterable[StageResult]) -> dict[str, Any]:
    """Snapshot completed outputs keyed by stage type, in completion order."""
    return {r.stage_type: r.output for r in _completion_order(results)}
