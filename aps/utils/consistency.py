"""Cross-stage side-checks: deterministic, advisory checks run after a stage validates.

Returns a list of issues. The StageRunner logs them; they never block a
stage from completing. Checks that produce revision requests live in
aps.checklist.
"""

from collections.abc import Iterable, Mapping
from typing import Any

AUTH_CHECKED_STAGES = {"data", "api", "composer"}


def _auth_choice(prior: Mapping[str, Any]) -> str:
    ux = prior.get("ux") if isinstance(prior.get("ux"), dict) else {}
    auth = ux.get("auth")
    if isinstance(auth, dict) and auth.get("choice"):
        return str(auth["choice"])
    system = prior.get("system") if isinstance(prior.get("system"), dict) else {}
    for d in system.get("decisions") or []:
        if isinstance(d, dict) and d.get("key") == "auth.choice":
            return str(d.get("value", ""))
    return ""


def _users_columns(entities) -> set[str] | None:
    if not isinstance(entities, list):
        return None
    for entity in entities:
        if isinstance(entity, dict) and str(entity.get("name", "")).lower() == "users":
            columns = entity.get("columns")
            if isinstance(columns, list):
                return {c.get("name") for c in columns if isinstance(c, dict)}
    return None


def check_auth(stage_type: str, output: Any, prior: Mapping[str, Any]) -> list[str]:
    """Auth single source of truth: the chosen strategy must match the users table columns."""
    if stage_type not in AUTH_CHECKED_STAGES:
        return []
    choice = _auth_choice(prior).lower()
    if not choice:
        return []

    entities = output.get("entities") if isinstance(output, dict) else None
    if entities is None and isinstance(prior.get("data"), dict):
        entities = prior["data"].get("entities")
    columns = _users_columns(entities)
    if columns is None:
        return []

    issues = []
    if "firebase" in choice and "password_hash" in columns:
        issues.append("Auth mismatch: Firebase chosen but password_hash present in Data model.")
    if "local" in choice and "firebase_uid" in columns:
        issues.append("Auth mismatch: Local auth chosen but firebase_uid present in Data model.")
    return issues


def check_entities(stage_type: str, output: Any) -> list[str]:
    """Entity names in the data model must be unique."""
    if stage_type != "data" or not isinstance(output, dict):
        return []
    seen = set()
    issues = []
    for entity in output.get("entities") or []:
        name = str(entity.get("name", "")).lower() if isinstance(entity, dict) else ""
        if name and name in seen:
            issues.append(f"Entity '{name}' is defined more than once.")
        seen.add(name)
    return issues


def check_revision_targets(stage_type: str, output: Any, known_types: Iterable[str]) -> list[str]:
    """Critic revision requests should name a known stage type."""
    if not isinstance(output, dict):
        return []
    known = set(known_types)
    issues = []
    for r in output.get("revisionRequests") or []:
        target = str(r.get("targetPhase", "")).strip().lower() if isinstance(r, dict) else ""
        if target not in known:
            issues.append(f"Revision request targets unknown stage '{target}'.")
    return issues


def cross_stage_checks(
    stage_type: str,
    output: Any,
    prior: Mapping[str, Any],
    known_types: Iterable[str] = (),
    critic_stage: str = "critic",
) -> list[str]:
    """Run every side-check that applies to `stage_type`.

    `prior` maps stage type to the validated output of earlier stages.
    Returns a list of issue strings. Empty list = consistent.
    """
    issues = check_auth(stage_type, output, prior)
    issues += check_entities(stage_type, output)
    if stage_type == critic_stage:
        issues += check_revision_targets(stage_type, output, known_types)
    return issues
