"""Stage catalogue: the fixed, ordered list of planning stages.

Each stage has a system prompt and the JSON schema its artifact must satisfy.
Stages that record decisions carry a `decisions` array of {key, value, reason};
the orchestrator folds those into the Decision Ledger shown to later stages.
"""

from aps.state import StageDescriptor


def _string_list() -> dict:
    return {"type": "array", "items": {"type": "string"}}


def _decision_list() -> dict:
    return {
        "type": "array",
        "items": {
            "type": "object",
            "required": ["key", "value", "reason"],
            "properties": {
                "key": {"type": "string", "minLength": 1},
                "value": {"type": "string"},
                "reason": {"type": "string"},
            },
        },
    }


def _prompt_list() -> dict:
    return {
        "type": "array",
        "items": {
            "type": "object",
            "required": ["title", "prompt", "files", "constraints", "acceptance", "tests"],
            "properties": {
                "title": {"type": "string", "minLength": 1},
                "prompt": {"type": "string", "minLength": 1},
                "files": _string_list(),
                "constraints": _string_list(),
                "acceptance": _string_list(),
                "tests": _string_list(),
            },
        },
    }


COMPETITOR = StageDescriptor(
    type="competitor",
    name="Competitor & Review Miner",
    description="Parse competitor sites & user reviews to extract jobs, pains, gaps, requests",
    system_prompt="""\
You are a Competitor & Review Miner. Analyze provided competitor links and/or user reviews.
Extract: recurring user jobs, pain points, requested features, and perceived gaps. Cluster findings,
estimate frequency (low/medium/high), sentiment (-2..+2), and impact on activation, retention, or revenue.
Propose high-leverage opportunities and risks for our v1. JSON only.""",
    schema={
        "type": "object",
        "required": ["themes", "topInsights", "opportunities", "risks"],
        "properties": {
            "themes": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["name", "signals"],
                    "properties": {
                        "name": {"type": "string"},
                        "signals": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "required": ["quote", "freq", "sentiment"],
                                "properties": {
                                    "quote": {"type": "string"},
                                    "freq": {"type": "string", "enum": ["low", "medium", "high"]},
                                    "sentiment": {"type": "integer", "minimum": -2, "maximum": 2},
                                },
                            },
                        },
                    },
                },
            },
            "topInsights": _string_list(),
            "opportunities": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["idea", "whyNow", "impactArea"],
                    "properties": {
                        "idea": {"type": "string"},
                        "whyNow": {"type": "string"},
                        "impactArea": {
                            "type": "string",
                            "enum": ["activation", "retention", "revenue", "perf", "trust"],
                        },
                    },
                },
            },
            "risks": _string_list(),
        },
    },
)

STRATEGY = StageDescriptor(
    type="strategy",
    name="Product Strategist",
    description="Defines market need, personas, features, and success metrics",
    system_prompt="""\
You are a Product Strategist. Combine the idea with the Competitor & Review Miner output.
Produce a strategy that is feasible for a 6-8 week v1.

Must include: problem, personas, jobs-to-be-done, market signals,
feature set categorized Must/Should/Could, success metrics (North Star + 3 guardrails),
and a Decision Ledger update for monetization & platform focus.
JSON only.""",
    schema={
        "type": "object",
        "required": ["problem", "personas", "jobsToBeDone", "features", "successMetrics", "decisions"],
        "properties": {
            "problem": {"type": "string", "minLength": 1},
            "personas": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "required": ["name", "goals"],
                    "properties": {"name": {"type": "string"}, "goals": _string_list()},
                },
            },
            "jobsToBeDone": _string_list(),
            "marketSignals": _string_list(),
            "features": {
                "type": "object",
                "required": ["must", "should", "could"],
                "properties": {
                    "must": _string_list(),
                    "should": _string_list(),
                    "could": _string_list(),
                },
            },
            "successMetrics": {
                "type": "object",
                "required": ["northStar", "guardrails"],
                "properties": {"northStar": {"type": "string"}, "guardrails": _string_list()},
            },
            "decisions": _decision_list(),
        },
    },
)

UX = StageDescriptor(
    type="ux",
    name="UX Architect",
    description="Designs information architecture, user flows, and auth strategy",
    system_prompt="""\
You are a UX Architect. Design the experience using IA and 3-5 primary flows with step lists,
plus edge cases. Propose a single auth choice with rationale (e.g., email+magic-link, OAuth providers).
Include accessibility notes and empty/error states. JSON only.""",
    schema={
        "type": "object",
        "required": [
            "informationArchitecture",
            "primaryFlows",
            "auth",
            "edgeCases",
            "a11yNotes",
            "emptyStates",
        ],
        "properties": {
            "informationArchitecture": _string_list(),
            "primaryFlows": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["name", "steps"],
                    "properties": {"name": {"type": "string"}, "steps": _string_list()},
                },
            },
            "auth": {
                "type": "object",
                "required": ["choice", "rationale"],
                "properties": {"choice": {"type": "string"}, "rationale": {"type": "string"}},
            },
            "edgeCases": _string_list(),
            "a11yNotes": _string_list(),
            "emptyStates": _string_list(),
        },
    },
)

SYSTEM = StageDescriptor(
    type="system",
    name="System Architect",
    description="Defines overall system design, services, and infrastructure",
    system_prompt="""\
You are a System Architect. Define services, responsibilities, data flow, third-party deps,
security, and observability fit for a v1 (single-region, low ops).
Add a Providers & Policies block (API quotas, caching/attribution, data retention),
and record any vendor decisions in the Decision Ledger. JSON only.""",
    schema={
        "type": "object",
        "required": [
            "services",
            "dependencies",
            "security",
            "observability",
            "providersPolicies",
            "nonFunctional",
            "decisions",
        ],
        "properties": {
            "services": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["name", "responsibilities"],
                    "properties": {"name": {"type": "string"}, "responsibilities": _string_list()},
                },
            },
            "dependencies": _string_list(),
            "security": _string_list(),
            "observability": _string_list(),
            "providersPolicies": {
                "type": "object",
                "required": ["providers", "quotas", "caching", "attribution", "dataRetention"],
                "properties": {
                    "providers": _string_list(),
                    "quotas": {"type": "string"},
                    "caching": {"type": "string"},
                    "attribution": {"type": "string"},
                    "dataRetention": {"type": "string"},
                },
            },
            "nonFunctional": {
                "type": "object",
                "required": ["performance", "reliability", "privacy"],
                "properties": {
                    "performance": _string_list(),
                    "reliability": _string_list(),
                    "privacy": _string_list(),
                },
            },
            "decisions": _decision_list(),
        },
    },
)

DATA = StageDescriptor(
    type="data",
    name="Data Modeler",
    description="Designs database schema, entities, and relationships",
    system_prompt="""\
You are a Data Modeler. Output DB choice and entities with columns & constraints, migrations list,
and explicit indices/uniques. Include audit fields (created_at, updated_at, created_by).
Mark forward-compatibility: which tables are append-only vs mutable, and any denormalized snapshots
for durability. JSON only.""",
    schema={
        "type": "object",
        "required": ["dbChoice", "entities", "migrations", "dataEvolution"],
        "properties": {
            "dbChoice": {"type": "string"},
            "entities": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "required": ["name", "columns"],
                    "properties": {
                        "name": {"type": "string"},
                        "columns": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "required": ["name", "type"],
                                "properties": {
                                    "name": {"type": "string"},
                                    "type": {"type": "string"},
                                    "constraints": _string_list(),
                                },
                            },
                        },
                    },
                },
            },
            "migrations": _string_list(),
            "dataEvolution": {
                "type": "object",
                "required": ["appendOnly", "denormalizedSnapshots"],
                "properties": {
                    "appendOnly": _string_list(),
                    "denormalizedSnapshots": _string_list(),
                },
            },
        },
    },
)

API = StageDescriptor(
    type="api",
    name="API Designer",
    description="Creates API specification and endpoint design",
    system_prompt="""\
You are an API Designer. Produce an OpenAPI 3.1 YAML as a string field,
with authentication (bearer or session), pagination (cursor), error model,
and versioning strategy. Include webhook shapes if async jobs exist.
JSON only.""",
    schema={
        "type": "object",
        "required": ["openApiYaml", "webhooks", "rateLimits"],
        "properties": {
            "openApiYaml": {"type": "string", "minLength": 1},
            "webhooks": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["event", "payload"],
                    "properties": {"event": {"type": "string"}, "payload": {"type": "object"}},
                },
            },
            "rateLimits": {"type": "string"},
        },
    },
)

UI = StageDescriptor(
    type="ui",
    name="UI Design System",
    description="Defines design tokens, components, and visual system",
    system_prompt="""\
You are a UI/UX Designer. Produce a light-theme AA design system: color tokens,
typography scale, spacing, radii, elevations, and core components with props and states.
Include loading/skeleton patterns and motion durations. Avoid purple/indigo unless requested.
JSON only.""",
    schema={
        "type": "object",
        "required": ["tokens", "components", "motion", "skeletons"],
        "properties": {
            "tokens": {
                "type": "object",
                "required": ["color", "space", "radius", "typography", "elevation"],
                "properties": {
                    "color": {"type": "object"},
                    "space": {"type": "object"},
                    "radius": {"type": "object"},
                    "typography": {"type": "object"},
                    "elevation": {"type": "object"},
                },
            },
            "components": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["name", "props", "states"],
                    "properties": {
                        "name": {"type": "string"},
                        "props": _string_list(),
                        "states": _string_list(),
                    },
                },
            },
            "motion": {
                "type": "object",
                "required": ["durations", "easing"],
                "properties": {
                    "durations": {
                        "type": "object",
                        "required": ["fast", "base", "slow"],
                        "properties": {
                            "fast": {"type": "number", "minimum": 0},
                            "base": {"type": "number", "minimum": 0},
                            "slow": {"type": "number", "minimum": 0},
                        },
                    },
                    "easing": {"type": "string"},
                },
            },
            "skeletons": _string_list(),
        },
    },
)

PROMPTS = StageDescriptor(
    type="prompts",
    name="Prompt Engineer",
    description="Generates implementation prompts for Bolt/Cursor",
    system_prompt="""\
You are a Prompt Engineer. Generate 6-12 tightly-scoped Bolt/Cursor prompts.
Each item: title, prompt (with context), files to touch, constraints, acceptance criteria, and test notes.
Order by dependency, include a "Project Scaffolding" task first and a
"Smoke Test + Release Checklist" task last.
JSON only.""",
    schema={
        "type": "object",
        "required": ["bolt", "cursor"],
        "properties": {"bolt": _prompt_list(), "cursor": _prompt_list()},
    },
)

CRITIC = StageDescriptor(
    type="critic",
    name="Critic/QA",
    description="Check cross-stage consistency, catch missing edge cases, and request targeted revisions",
    system_prompt="""\
You are a Critic/QA. Compare all artifacts for contradictions, missing edge cases, and unrealistic
assumptions. Score overall risk 0..1. List specific revision requests that can be addressed by exactly
one target stage (use the stage type, e.g. "data", as targetPhase).
JSON only.""",
    schema={
        "type": "object",
        "required": ["issues", "severityIndex", "revisionRequests"],
        "properties": {
            "issues": _string_list(),
            "severityIndex": {"type": "number", "minimum": 0, "maximum": 1},
            "revisionRequests": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["targetPhase", "request"],
                    "properties": {
                        "targetPhase": {"type": "string"},
                        "request": {"type": "string"},
                    },
                },
            },
        },
    },
)

COMPOSER = StageDescriptor(
    type="composer",
    name="Composer",
    description="Merge all artifacts into build plan and prompts markdown files",
    system_prompt="""\
You are the Composer. Merge all artifacts into two markdown files:
1) Build Plan.md - strategy, UX, architecture, data model, API (excerpt), design system, risks, decisions.
2) Prompts.md - ordered Bolt/Cursor tasks with acceptance criteria.

Also output the final Decision Ledger (merged and deduped).
JSON only.""",
    schema={
        "type": "object",
        "required": ["buildPlanMd", "promptsMd", "decisionLedger"],
        "properties": {
            "buildPlanMd": {"type": "string", "minLength": 1},
            "promptsMd": {"type": "string", "minLength": 1},
            "decisionLedger": _decision_list(),
        },
    },
)

STAGES: tuple[StageDescriptor, ...] = (
    COMPETITOR,
    STRATEGY,
    UX,
    SYSTEM,
    DATA,
    API,
    UI,
    PROMPTS,
    CRITIC,
    COMPOSER,
)

STAGES_BY_TYPE: dict[str, StageDescriptor] = {s.type: s for s in STAGES}

