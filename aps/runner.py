"""Stage Runner: executes one stage end-to-end.

build prompt -> generate -> parse -> validate -> repair-retry -> persist.

Each generation is assessed into a tagged outcome (ParseFailed, Invalid or
Valid) and the attempt loop branches on the tag.
"""

import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from aps.config import get_config
from aps.errors import ExhaustedRetries, MalformedOutput, SchemaViolation, TransportFailure
from aps.ledger import fold_ledger, outputs_by_type
from aps.llm import Generation, GenerationBackend
from aps.state import ProjectContext, RevisionRequest, StageDescriptor, StageResult, utc_now
from aps.store import Store
from aps.utils.consistency import cross_stage_checks
from aps.utils.guidance import system_prompt_for
from aps.utils.parsing import invoke_with_retry, parse_json_response
from aps.utils.validator import validate_output

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Parsed:
    value: Any


@dataclass(frozen=True)
class ParseFailed:
    error: MalformedOutput


@dataclass(frozen=True)
class Invalid:
    value: Any
    errors: list[str]


@dataclass(frozen=True)
class Valid:
    value: Any


Outcome = ParseFailed | Invalid | Valid


def parse_step(text: str) -> Parsed | ParseFailed:
    try:
        return Parsed(parse_json_response(text))
    except MalformedOutput as exc:
        return ParseFailed(exc)


def validate_step(parsed: Parsed, schema: dict) -> Invalid | Valid:
    report = validate_output(parsed.value, schema)
    if report.valid:
        return Valid(parsed.value)
    return Invalid(parsed.value, report.errors)


def assess(text: str, schema: dict) -> Outcome:
    """Parse then validate one generated text."""
    parsed = parse_step(text)
    if isinstance(parsed, ParseFailed):
        return parsed
    return validate_step(parsed, schema)


def build_prompt(
    stage: StageDescriptor,
    context: ProjectContext,
    prior_results: Iterable[StageResult],
    revision_requests: Sequence[RevisionRequest] = (),
) -> str:
    """Construct the user prompt: project context, prior artifacts, ledger, task, schema."""
    prior = list(prior_results)
    context_data = {
        "projectDescription": context["description"],
        "competitorLinks": context.get("competitor_links", []),
        "competitorReviews": context.get("competitor_reviews", []),
        "priorArtifacts": outputs_by_type(prior),
        "decisionLedger": fold_ledger(prior),
    }

    parts = [f"Project Context:\n{json.dumps(context_data, indent=2)}\n"]
    parts.append(f"Task: {stage.description}\n")
    if revision_requests:
        parts.append("Revision Requests (address every item in this revision):")
        parts.extend(f"- {r['request']}" for r in revision_requests)
        parts.append("")
    parts.append("Return ONLY valid JSON matching this schema. No prose, no markdown code blocks.")
    parts.append(f"Schema: {json.dumps(stage.schema, indent=2)}")
    return "\n".join(parts)


def build_repair_prompt(raw_output: str, errors: list[str], schema: dict) -> str:
    """Construct the follow-up prompt asking the model to fix its own invalid output."""
    numbered = "\n".join(f"{i}. {e}" for i, e in enumerate(errors, 1))
    return (
        "Your last JSON failed validation.\n\n"
        f"Previous output:\n{raw_output}\n\n"
        f"Errors:\n{numbered}\n\n"
        f"Schema:\n{json.dumps(schema, indent=2)}\n\n"
        "Return corrected JSON matching the schema. No prose, no markdown code blocks."
    )


class StageRunner:
    """Runs single stages for one project against one generation backend."""

    def __init__(self, project_id: str, backend: GenerationBackend, store: Store, known_types: Iterable[str] = ()) -> None:
        self.project_id = project_id
        self.backend = backend
        self.store = store
        self.known_types = tuple(known_types)
        self.repair_calls = 0  # Total repair calls issued, for diagnostics.

    async def _generate(self, messages: list[dict], temperature: float) -> Generation:
        config = get_config()
        return await invoke_with_retry(
            self.backend,
            messages,
            temperature=temperature,
            top_p=config.get("top_p", 1.0),
            max_tokens=config.get("max_tokens", 4000),
            timeout=config.get("timeout_seconds", 60),
        )

    async def _attempt_loop(self, stage: StageDescriptor, system: str, prompt: str) -> tuple[Any, int, str]:
        """Return (validated output, attempts used, backend model id)."""
        config = get_config()
        max_attempts = config.get("max_attempts", 3)
        messages = [{"role": "system", "content": system}, {"role": "user", "content": prompt}]

        for attempt in range(1, max_attempts + 1):
            try:
                generation = await self._generate(messages, config.get("temperature", 0.2))
            except TransportFailure as exc:
                raise ExhaustedRetries(
                    stage.type, attempt, [str(exc)], f"{stage.name}: generation backend unavailable: {exc}"
                ) from exc

            outcome = assess(generation.text, stage.schema)

            if isinstance(outcome, ParseFailed):
                if attempt < max_attempts:
                    logger.warning("%s: unparseable output (attempt %d/%d)", stage.type, attempt, max_attempts)
                    continue
                raise ExhaustedRetries(
                    stage.type,
                    attempt,
                    [str(outcome.error)],
                    f"Failed to parse JSON after {max_attempts} attempts: {outcome.error}",
                ) from outcome.error

            if isinstance(outcome, Valid):
                return outcome.value, attempt, generation.model

            # Invalid
            if attempt == max_attempts:
                violation = SchemaViolation(outcome.errors)
                raise ExhaustedRetries(
                    stage.type,
                    attempt,
                    outcome.errors,
                    f"JSON validation failed after {max_attempts} attempts: {', '.join(outcome.errors)}",
                ) from violation

            logger.warning(
                "%s: %d schema error(s) on attempt %d/%d, issuing repair call",
                stage.type, len(outcome.errors), attempt, max_attempts,
            )
            repair_messages = [
                {"role": "system", "content": system},
                {"role": "user", "content": build_repair_prompt(generation.text, outcome.errors, stage.schema)},
            ]
            self.repair_calls += 1
            try:
                repair = await self._generate(repair_messages, config.get("repair_temperature", 0.1))
            except TransportFailure as exc:
                raise ExhaustedRetries(
                    stage.type, attempt, [str(exc)], f"{stage.name}: generation backend unavailable: {exc}"
                ) from exc

            repaired = assess(repair.text, stage.schema)
            if isinstance(repaired, Valid):
                return repaired.value, attempt, repair.model

        # Unreachable: the final attempt always returns or raises.
        raise ExhaustedRetries(stage.type, max_attempts, [], f"{stage.name}: attempts exhausted")

    async def run(
        self,
        stage: StageDescriptor,
        context: ProjectContext,
        prior_results: Iterable[StageResult],
        revision_requests: Sequence[RevisionRequest] = (),
    ) -> StageResult:
        """Run one stage and return its completed StageResult.

        Persists `processing` before generating and `completed` or `failed`
        before returning. Raises ExhaustedRetries when the stage cannot
        produce a schema-valid artifact within its attempt budget.
        """
        prior = list(prior_results)
        record = self.store.insert_stage_result(
            StageResult(project_id=self.project_id, stage_type=stage.type, status="processing")
        )
        logger.info("Running stage %s (%s)", stage.type, stage.name)

        try:
            prompt = build_prompt(stage, context, prior, revision_requests)
            output, attempts, model = await self._attempt_loop(stage, system_prompt_for(stage), prompt)
        except Exception:
            self.store.update_stage_result(record.id, status="failed")
            raise

        for issue in cross_stage_checks(
            stage.type,
            output,
            outputs_by_type(prior),
            known_types=self.known_types,
            critic_stage=get_config().get("critic_stage", "critic"),
        ):
            logger.warning("%s: %s", stage.type, issue)

        completed = self.store.update_stage_result(
            record.id,
            status="completed",
            output=output,
            attempts=attempts,
            model_used=model or self.backend.name,
            completed_at=utc_now(),
        )
        logger.info("Completed stage %s in %d attempt(s)", stage.type, attempts)
        return completed
