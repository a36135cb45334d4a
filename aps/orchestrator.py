"""Orchestrator: sequences the fixed stage list, then drives the convergence post-passes."""

import asyncio
import logging
from collections.abc import Callable, Sequence

from aps.agents.catalog import STAGES
from aps.config import get_config
from aps.convergence import ConvergenceController
from aps.errors import ProjectNotFound
from aps.llm import GenerationBackend, build_backend
from aps.runner import StageRunner
from aps.state import (
    OrchestrationProgress,
    Project,
    ProjectContext,
    RevisionRequest,
    StageDescriptor,
    StageResult,
    project_context,
)
from aps.store import Store
from aps.utils.formatter import format_prompt, missing_required_titles

logger = logging.getLogger(__name__)

ProgressObserver = Callable[[OrchestrationProgress], None]


class Orchestrator:
    """Runs one pipeline execution for one project.

    The orchestrator is the only writer of the in-memory result collection
    and of the store during a run; stages execute strictly one at a time.
    """

    def __init__(
        self,
        project_id: str,
        provider: str | None = None,
        *,
        store: Store,
        backend: GenerationBackend | None = None,
        on_progress: ProgressObserver | None = None,
        stages: Sequence[StageDescriptor] = STAGES,
    ) -> None:
        self.project_id = project_id
        self.provider = provider
        self.store = store
        self.backend = backend or build_backend(provider)
        self.on_progress = on_progress
        self.stages = tuple(stages)
        self.by_type = {s.type: s for s in self.stages}
        self.runner = StageRunner(project_id, self.backend, store, known_types=self.by_type)
        # Live result per stage type, in completion order.
        self.results: dict[str, StageResult] = {}
        self.controller: ConvergenceController | None = None

    def _notify(self, current: str, error: str | None = None) -> None:
        if not self.on_progress:
            return
        progress: OrchestrationProgress = {
            "current_stage": current,
            "completed_stages": list(self.results),
            "total_stages": len(self.stages),
        }
        if error is not None:
            progress["error"] = error
        self.on_progress(progress)

    def _record(self, result: StageResult) -> None:
        # Re-insert so dict order tracks completion order (last write wins).
        self.results.pop(result.stage_type, None)
        self.results[result.stage_type] = result

    async def _run_stage(
        self,
        stage: StageDescriptor,
        context: ProjectContext,
        revision_requests: list[RevisionRequest] | None = None,
    ) -> StageResult:
        self._notify(stage.name)
        try:
            result = await self.runner.run(stage, context, list(self.results.values()), revision_requests or [])
        except Exception:
            # a failed re-run must not leave its earlier result looking completed
            self.results.pop(stage.type, None)
            raise
        self._record(result)
        return result

    async def run_all_stages(self) -> None:
        """Run the first pass, the convergence post-passes, and persist deliverables.

        On any unrecovered stage failure the project's status is restored to
        its pre-run value, the observer receives the error, and the error
        propagates to the caller.
        """
        project: Project | None = self.store.get_project(self.project_id)
        if not project:
            raise ProjectNotFound("Project not found")

        previous_status = project["status"]
        context = project_context(project)
        self.results = {}
        self.store.update_project_status(self.project_id, "planning")

        current = self.stages[0].name if self.stages else ""
        try:
            for stage in self.stages:
                current = stage.name
                await self._run_stage(stage, context)

            async def rerun(stage_type: str, requests: list[RevisionRequest]) -> StageResult:
                nonlocal current
                stage = self.by_type[stage_type]
                current = stage.name
                return await self._run_stage(stage, context, requests)

            self.controller = ConvergenceController(self.results, rerun, known_types=self.by_type)
            await self.controller.run()
        except Exception as exc:
            self._notify(current, error=str(exc) or type(exc).__name__)
            self.store.update_project_status(self.project_id, previous_status)
            raise

        self._persist_prompts()
        self.store.update_project_status(self.project_id, "completed")
        self._notify("Completed")

    def _persist_prompts(self) -> None:
        """Store the final prompts stage output as ordered, formatted prompt rows."""
        config = get_config()
        prompts = self.results.get(config.get("prompts_stage", "prompts"))
        if not prompts or not isinstance(prompts.output, dict):
            return

        for title in missing_required_titles(prompts.output, config.get("required_prompt_titles", [])):
            logger.warning("Missing required prompt: %s", title)

        self.store.delete_prompts(self.project_id)
        for tool in ("bolt", "cursor"):
            for i, p in enumerate(prompts.output.get(tool) or []):
                self.store.insert_prompt(self.project_id, tool, p.get("title", ""), format_prompt(p), i)


def run_pipeline(
    project_id: str,
    provider: str | None = None,
    *,
    store: Store,
    backend: GenerationBackend | None = None,
    on_progress: ProgressObserver | None = None,
) -> bool:
    """Pipeline trigger: run every stage for a project. Returns True or raises."""
    orchestrator = Orchestrator(project_id, provider, store=store, backend=backend, on_progress=on_progress)
    asyncio.run(orchestrator.run_all_stages())
    return True
