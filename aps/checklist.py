"""Quality checklist: cross-stage consistency rules over completed stage outputs.

Each rule is a pure function taking a read-only snapshot {stage type: output}
and returning a RuleOutcome. Rules never mutate state. A failing rule may
carry revision requests, each naming exactly one target stage; the
convergence controller turns those into targeted re-runs.

New rules are added by appending a ChecklistRule to DEFAULT_RULES (or by
passing a custom rule list to evaluate()).
"""

import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from aps.ledger import duplicate_keys
from aps.state import ChecklistItem, ChecklistResult, RevisionRequest

logger = logging.getLogger(__name__)

Snapshot = Mapping[str, Any]

_WORD_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = {
    "about", "after", "also", "based", "being", "between", "could", "every", "from",
    "have", "into", "more", "most", "only", "other", "over", "should", "such", "than",
    "that", "their", "them", "then", "there", "these", "they", "this", "those", "through",
    "users", "very", "what", "when", "where", "which", "while", "will", "with", "without",
    "would", "your",
}


@dataclass(frozen=True)
class RuleOutcome:
    passed: bool
    details: str | None = None
    failure: str | None = None  # Short label listed in fail_items.
    revisions: tuple[RevisionRequest, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ChecklistRule:
    check: str  # Human-readable rule name.
    evaluate: Callable[[Snapshot], RuleOutcome]


def _obj(snapshot: Snapshot, stage_type: str) -> dict:
    value = snapshot.get(stage_type)
    return value if isinstance(value, dict) else {}


def _list(value) -> list:
    return value if isinstance(value, list) else []


def _revision(stage: str, request: str) -> RevisionRequest:
    return {"stage": stage, "request": request}


def _tokens(text: str) -> set[str]:
    return {w for w in _WORD_RE.findall(str(text).lower()) if len(w) >= 4 and w not in _STOPWORDS}


# --- Rules ---


def auth_consistency(snapshot: Snapshot) -> RuleOutcome:
    """The auth strategy chosen in UX must be reflected in the users table."""
    auth = _obj(snapshot, "ux").get("auth")
    ux_auth = str(auth.get("choice") or "") if isinstance(auth, dict) else ""
    if not ux_auth:
        # Fall back to an auth decision recorded by the system architect.
        for d in _list(_obj(snapshot, "system").get("decisions")):
            if isinstance(d, dict) and "auth" in str(d.get("key", "")).lower():
                ux_auth = str(d.get("value", ""))
                break
    choice = ux_auth.lower()

    entities = _list(_obj(snapshot, "data").get("entities"))
    users = next(
        (e for e in entities if isinstance(e, dict) and str(e.get("name", "")).lower() == "users"),
        {},
    )
    column_names = {c.get("name") for c in _list(users.get("columns")) if isinstance(c, dict)}
    has_pwd_hash = "password_hash" in column_names
    has_firebase_uid = "firebase_uid" in column_names

    if "firebase" in choice:
        passed = has_firebase_uid and not has_pwd_hash
    elif "local" in choice:
        passed = has_pwd_hash and not has_firebase_uid
    else:
        passed = True

    if passed:
        return RuleOutcome(passed=True)
    return RuleOutcome(
        passed=False,
        details=(
            f"UX auth: {ux_auth}, Data has password_hash: {has_pwd_hash}, "
            f"firebase_uid: {has_firebase_uid}"
        ),
        failure="Auth mismatch across stages",
        revisions=(
            _revision("system", f"Ensure auth choice in decisions matches UX auth.choice: {ux_auth}"),
            _revision(
                "data",
                "Update users table: if Firebase auth, include firebase_uid and remove password_hash; "
                "if local auth, include password_hash and remove firebase_uid",
            ),
        ),
    )


def motion_and_loading_states(snapshot: Snapshot) -> RuleOutcome:
    ui = _obj(snapshot, "ui")
    motion = ui.get("motion")
    has_motion = isinstance(motion, dict) and isinstance(motion.get("durations"), dict)
    has_skeletons = len(_list(ui.get("skeletons"))) > 0

    if has_motion and has_skeletons:
        return RuleOutcome(passed=True)
    return RuleOutcome(
        passed=False,
        details=f"Motion: {has_motion}, Skeletons: {has_skeletons}",
        failure="Missing motion or skeleton patterns in design system",
        revisions=(_revision("ui", "Add motion durations (fast/base/slow) and skeleton loading patterns"),),
    )


def pagination_and_error_model(snapshot: Snapshot) -> RuleOutcome:
    spec = _obj(snapshot, "api").get("openApiYaml")
    has_openapi = isinstance(spec, str) and len(spec) > 0
    text = spec.lower() if has_openapi else ""
    has_pagination = "cursor" in text
    has_error_model = "error" in text or bool(re.search(r"['\"]?4\d\d['\"]?\s*:", text))

    if has_pagination and has_error_model:
        return RuleOutcome(passed=True)
    return RuleOutcome(
        passed=False,
        details=f"Pagination: {has_pagination}, Error model: {has_error_model}",
        failure="Missing pagination or error model in API spec",
        revisions=(
            _revision(
                "api",
                "Ensure OpenAPI spec includes cursor-based pagination for list endpoints "
                "and proper error responses",
            ),
        ),
    )


def non_functional_requirements(snapshot: Snapshot) -> RuleOutcome:
    nf = _obj(snapshot, "system").get("nonFunctional")
    present = isinstance(nf, dict) and all(
        isinstance(nf.get(k), list) and nf.get(k) for k in ("performance", "reliability", "privacy")
    )
    if present:
        return RuleOutcome(passed=True)
    return RuleOutcome(
        passed=False,
        details="Missing nonFunctional requirements in system architecture",
        failure="Missing non-functional requirements",
        revisions=(
            _revision("system", "Add nonFunctional requirements covering performance, reliability, and privacy"),
        ),
    )


def providers_and_policies(snapshot: Snapshot) -> RuleOutcome:
    pp = _obj(snapshot, "system").get("providersPolicies")
    present = (
        isinstance(pp, dict)
        and isinstance(pp.get("providers"), list)
        and all(isinstance(pp.get(k), str) and pp.get(k).strip() for k in ("quotas", "caching", "attribution"))
    )
    if present:
        return RuleOutcome(passed=True)
    return RuleOutcome(
        passed=False,
        details="Missing providersPolicies in system architecture",
        failure="Missing provider policies",
        revisions=(
            _revision("system", "Add providersPolicies with quotas, caching, attribution, and data retention"),
        ),
    )


def ledger_integrity(snapshot: Snapshot) -> RuleOutcome:
    duplicates = duplicate_keys(snapshot)
    if not duplicates:
        return RuleOutcome(passed=True)
    listed = ", ".join(f"{key} ({'/'.join(stages)})" for key, stages in duplicates.items())
    return RuleOutcome(
        passed=False,
        details=f"Duplicate decision keys: {listed}",
        failure="Decision ledger has keys declared by more than one stage",
    )


def required_prompts(snapshot: Snapshot) -> RuleOutcome:
    prompts = _obj(snapshot, "prompts")
    titles = [
        str(p.get("title", "")).lower()
        for p in _list(prompts.get("bolt")) + _list(prompts.get("cursor"))
        if isinstance(p, dict)
    ]
    has_scaffolding = any("scaffold" in t for t in titles)
    has_smoke_test = any("smoke" in t or "release" in t for t in titles)

    if has_scaffolding and has_smoke_test:
        return RuleOutcome(passed=True)
    return RuleOutcome(
        passed=False,
        details=f"Scaffolding: {has_scaffolding}, Smoke test: {has_smoke_test}",
        failure="Missing required prompts",
        revisions=(
            _revision(
                "prompts",
                'Add "Project Scaffolding" as first task and "Smoke Test + Release Checklist" as final task',
            ),
        ),
    )


def opportunities_reflected(snapshot: Snapshot) -> RuleOutcome:
    """If competitor findings exist, at least one Must feature should derive from them."""
    competitor = _obj(snapshot, "competitor")
    findings = [
        o.get("idea", "") for o in _list(competitor.get("opportunities")) if isinstance(o, dict)
    ] + [str(i) for i in _list(competitor.get("topInsights"))]
    findings = [f for f in findings if str(f).strip()]
    if not findings:
        return RuleOutcome(passed=True)

    features = _obj(snapshot, "strategy").get("features")
    must = _list(features.get("must")) if isinstance(features, dict) else []
    finding_tokens = set().union(*(_tokens(f) for f in findings))
    reflected = any(_tokens(feature) & finding_tokens for feature in must)

    if reflected:
        return RuleOutcome(passed=True)
    return RuleOutcome(
        passed=False,
        details="Competitor opportunities not reflected in strategy features",
        failure="Competitor insights not incorporated into strategy",
        revisions=(
            _revision(
                "strategy",
                "Incorporate competitor opportunities from the competitor stage into Must/Should/Could features",
            ),
        ),
    )


DEFAULT_RULES: tuple[ChecklistRule, ...] = (
    ChecklistRule("Single source of truth for Auth selected and reflected across UX, API, Data", auth_consistency),
    ChecklistRule("Design tokens include motion+loading states", motion_and_loading_states),
    ChecklistRule("Pagination and error model specified in OpenAPI", pagination_and_error_model),
    ChecklistRule("Non-functional (perf/reliability/privacy) noted", non_functional_requirements),
    ChecklistRule("Providers & Policies list quotas/caching/attribution", providers_and_policies),
    ChecklistRule("Decision Ledger consistent across all stages", ledger_integrity),
    ChecklistRule("Prompts include Scaffolding and Smoke Test + Release Checklist", required_prompts),
    ChecklistRule("If competitor data present: opportunities reflected in features", opportunities_reflected),
)


def evaluate(outputs: Mapping[str, Any], rules: Iterable[ChecklistRule] = DEFAULT_RULES) -> ChecklistResult:
    """Run every rule against a snapshot of completed outputs keyed by stage type."""
    snapshot = MappingProxyType(dict(outputs))
    items: list[ChecklistItem] = []
    fail_items: list[str] = []
    revision_requests: list[RevisionRequest] = []

    for rule in rules:
        outcome = rule.evaluate(snapshot)
        item: ChecklistItem = {"check": rule.check, "passed": outcome.passed}
        if outcome.details:
            item["details"] = outcome.details
        items.append(item)
        if not outcome.passed:
            fail_items.append(outcome.failure or rule.check)
            revision_requests.extend(outcome.revisions)

    status = "pass" if not fail_items else "fail"
    if status == "fail":
        logger.warning("Quality checklist failed: %s", ", ".join(fail_items))
    return {
        "status": status,
        "items": items,
        "fail_items": fail_items,
        "revision_requests": revision_requests,
    }
