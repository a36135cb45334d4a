"""Shared fixtures for the APS test suite."""

import json

import pytest
from unittest.mock import patch

from aps.agents.catalog import STAGES
from aps.llm import Generation
from aps.state import StageResult
from aps.store import InMemoryStore


class ScriptedBackend:
    """GenerationBackend that replays queued texts (or raises queued exceptions).

    `script` is either a list consumed in call order, or a dict mapping stage
    type to such a list; the stage is recognized from the system prompt. The
    last entry of a per-stage list is reused once the list runs down.
    """

    name = "scripted"

    def __init__(self, script):
        if isinstance(script, dict):
            self.script = {k: list(v) for k, v in script.items()}
        else:
            self.script = list(script)
        self.calls = []

    def _stage_of(self, messages):
        system = messages[0]["content"]
        for stage in STAGES:
            if stage.system_prompt in system:
                return stage.type
        return None

    def _next(self, queue):
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def generate(self, messages, *, temperature, top_p, max_tokens, timeout):
        stage_type = self._stage_of(messages)
        self.calls.append({"stage": stage_type, "messages": messages, "temperature": temperature})
        if isinstance(self.script, dict):
            item = self._next(self.script[stage_type])
        else:
            item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if not isinstance(item, str):
            item = json.dumps(item)
        return Generation(text=item, model="scripted-model")

    def calls_for(self, stage_type):
        return [c for c in self.calls if c["stage"] == stage_type]


@pytest.fixture(autouse=True)
def mock_config():
    """Patch the config singleton with test-friendly values (no real backoff sleeps)."""
    test_config = {
        "provider": "anthropic",
        "models": {"anthropic": "claude-test", "google": "gemini-test"},
        "max_attempts": 3,
        "temperature": 0.2,
        "repair_temperature": 0.1,
        "top_p": 1.0,
        "max_tokens": 4000,
        "timeout_seconds": 5,
        "llm_max_retries": 2,
        "backoff_initial": 0,
        "backoff_max": 0,
        "backoff_jitter": 0,
        "severity_threshold": 0.5,
        "max_revision_cycles": 1,
        "critic_stage": "critic",
        "composer_stage": "composer",
        "prompts_stage": "prompts",
        "guardrails_enabled": True,
        "required_prompt_titles": ["Project Scaffolding", "Smoke Test + Release Checklist"],
        "db_path": "./output/test.sqlite3",
        "output_dir": "./output",
    }
    with patch("aps.config._config", test_config):
        yield test_config


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def project(store):
    return store.insert_project(
        "Team tasks",
        "A shared task board for small remote teams",
        competitor_links=["https://example.com/competitor"],
        competitor_reviews=["Setup takes forever"],
    )


@pytest.fixture
def context(project):
    return {
        "description": project["description"],
        "competitor_links": project["competitor_links"],
        "competitor_reviews": project["competitor_reviews"],
    }


@pytest.fixture
def stage_outputs():
    """One schema-valid, mutually consistent output per stage (passes the checklist)."""
    return {
        "competitor": {
            "themes": [
                {
                    "name": "Onboarding",
                    "signals": [{"quote": "Setup takes forever", "freq": "high", "sentiment": -2}],
                }
            ],
            "topInsights": ["Users abandon during onboarding setup"],
            "opportunities": [
                {
                    "idea": "Guided onboarding checklist",
                    "whyNow": "Competitors ignore setup pain",
                    "impactArea": "activation",
                }
            ],
            "risks": ["Crowded market"],
        },
        "strategy": {
            "problem": "Small teams lose track of shared tasks",
            "personas": [{"name": "Team lead", "goals": ["See progress at a glance"]}],
            "jobsToBeDone": ["Coordinate weekly work"],
            "marketSignals": ["Remote work growth"],
            "features": {
                "must": ["Guided onboarding checklist", "Shared task board"],
                "should": ["Slack notifications"],
                "could": ["Calendar sync"],
            },
            "successMetrics": {
                "northStar": "Weekly active teams",
                "guardrails": ["Churn", "Latency", "Support tickets"],
            },
            "decisions": [{"key": "monetization", "value": "freemium", "reason": "Lower adoption friction"}],
        },
        "ux": {
            "informationArchitecture": ["Dashboard", "Board", "Settings"],
            "primaryFlows": [{"name": "Sign up", "steps": ["Open app", "Sign in with Google"]}],
            "auth": {"choice": "Firebase Auth (Google OAuth)", "rationale": "Managed identity"},
            "edgeCases": ["Offline editing"],
            "a11yNotes": ["Full keyboard navigation"],
            "emptyStates": ["No tasks yet"],
        },
        "system": {
            "services": [{"name": "api", "responsibilities": ["Task CRUD"]}],
            "dependencies": ["Firebase"],
            "security": ["Verify Firebase ID tokens"],
            "observability": ["Structured logs"],
            "providersPolicies": {
                "providers": ["Firebase"],
                "quotas": "10k MAU on the free tier",
                "caching": "CDN for static assets",
                "attribution": "None required",
                "dataRetention": "30 days for logs",
            },
            "nonFunctional": {
                "performance": ["p95 < 300ms"],
                "reliability": ["99.5% uptime"],
                "privacy": ["GDPR export"],
            },
            "decisions": [{"key": "auth.choice", "value": "firebase", "reason": "Matches UX"}],
        },
        "data": {
            "dbChoice": "PostgreSQL",
            "entities": [
                {
                    "name": "users",
                    "columns": [
                        {"name": "id", "type": "uuid", "constraints": ["primary key"]},
                        {"name": "firebase_uid", "type": "text", "constraints": ["unique"]},
                    ],
                }
            ],
            "migrations": ["001_create_users"],
            "dataEvolution": {"appendOnly": ["audit_log"], "denormalizedSnapshots": []},
        },
        "api": {
            "openApiYaml": (
                "openapi: 3.1.0\npaths:\n  /tasks:\n    get:\n      parameters:\n"
                "        - name: cursor\n      responses:\n        '400':\n          description: Error\n"
            ),
            "webhooks": [],
            "rateLimits": "100 requests/minute per user",
        },
        "ui": {
            "tokens": {
                "color": {"primary": "#0a7f5a"},
                "space": {"sm": 4},
                "radius": {"md": 8},
                "typography": {"body": "16px"},
                "elevation": {"1": "0 1px 2px rgba(0,0,0,.1)"},
            },
            "components": [{"name": "Button", "props": ["variant"], "states": ["hover", "disabled"]}],
            "motion": {"durations": {"fast": 100, "base": 200, "slow": 400}, "easing": "ease-out"},
            "skeletons": ["TaskCardSkeleton"],
        },
        "prompts": {
            "bolt": [
                {
                    "title": "Project Scaffolding",
                    "prompt": "Create the Vite + React project",
                    "files": ["package.json"],
                    "constraints": ["No extra dependencies"],
                    "acceptance": ["npm run dev starts"],
                    "tests": ["Smoke render App"],
                },
                {
                    "title": "Smoke Test + Release Checklist",
                    "prompt": "Verify the main flows end to end",
                    "files": [],
                    "constraints": [],
                    "acceptance": ["All flows pass"],
                    "tests": [],
                },
            ],
            "cursor": [],
        },
        "critic": {"issues": [], "severityIndex": 0.1, "revisionRequests": []},
        "composer": {
            "buildPlanMd": "# Build Plan\n\nShip the task board.",
            "promptsMd": "# Prompts\n\n1. Project Scaffolding",
            "decisionLedger": [{"key": "monetization", "value": "freemium", "reason": "Lower adoption friction"}],
        },
    }


def completed_result(stage_type, output, project_id="p1", completed_at=None):
    result = StageResult(project_id=project_id, stage_type=stage_type, status="completed", output=output)
    if completed_at is not None:
        result.completed_at = completed_at
    return result


@pytest.fixture
def scripted():
    """Factory for ScriptedBackend instances."""
    return ScriptedBackend


@pytest.fixture
def make_result():
    """Factory for completed StageResults."""
    return completed_result
