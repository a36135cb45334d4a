"""LangGraph StateGraph for the post-pass convergence protocol.

    auto_fix -> critic_review -> [targeted_rerun -> re_critic] -> recompose -> END

auto_fix runs the quality checklist once and re-runs every stage it flags.
critic_review reads the critic stage's first-pass output; only when it asks
for revisions or scores severity at or above the threshold does the graph
take the targeted_rerun -> re_critic cycle. The number of cycles is bounded
by `max_revision_cycles` (1 by default: the re-run critic is never
re-evaluated for a further cycle).
"""

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping

from langgraph.graph import END, StateGraph

from aps import checklist
from aps.config import get_config
from aps.ledger import outputs_by_type
from aps.state import ChecklistResult, ConvergenceState, RevisionRequest, StageResult

logger = logging.getLogger(__name__)

Rerun = Callable[[str, list[RevisionRequest]], Awaitable[StageResult]]


def read_critic(output) -> tuple[float, list[RevisionRequest]]:
    """Extract (severity, revision requests) from a critic stage output."""
    if not isinstance(output, dict):
        return 0.0, []
    severity = output.get("severityIndex")
    if isinstance(severity, bool) or not isinstance(severity, (int, float)):
        severity = 0.0
    requests: list[RevisionRequest] = []
    for r in output.get("revisionRequests") or []:
        if not isinstance(r, dict):
            continue
        target = str(r.get("targetPhase", "")).strip().lower()
        if target:
            requests.append({"stage": target, "request": str(r.get("request", ""))})
    return float(severity), requests


def group_by_stage(requests: Iterable[RevisionRequest]) -> dict[str, list[RevisionRequest]]:
    """Group requests by target stage, keeping the order stages were first named."""
    grouped: dict[str, list[RevisionRequest]] = {}
    for r in requests:
        grouped.setdefault(r["stage"], []).append(r)
    return grouped


class ConvergenceController:
    """Drives AutoFix -> CriticReview -> TargetedRerun -> ReCritic -> Recompose.

    `results` is the orchestrator's live {stage type: StageResult} collection;
    the controller only reads it. All re-runs go through `rerun`, which
    replaces the stage's entry in that collection.
    """

    def __init__(
        self,
        results: Mapping[str, StageResult],
        rerun: Rerun,
        known_types: Iterable[str],
        rules: Iterable[checklist.ChecklistRule] = checklist.DEFAULT_RULES,
    ) -> None:
        config = get_config()
        self.results = results
        self.rerun = rerun
        self.known_types = tuple(known_types)
        self.rules = tuple(rules)
        self.critic_stage = config.get("critic_stage", "critic")
        self.composer_stage = config.get("composer_stage", "composer")
        self.severity_threshold = config.get("severity_threshold", 0.5)
        self.max_cycles = max(0, int(config.get("max_revision_cycles", 1)))
        self.checklist_result: ChecklistResult | None = None
        self.transitions: list[str] = []
        self.graph = self._build_graph()

    # --- Nodes ---

    async def _auto_fix(self, state: ConvergenceState) -> dict:
        self.transitions.append("auto_fix")
        result = checklist.evaluate(outputs_by_type(self.results.values()), self.rules)
        self.checklist_result = result
        if result["status"] == "pass":
            logger.info("Quality checklist passed")
            return {"outstanding": []}

        logger.info("Applying %d automatic fix(es)...", len(result["revision_requests"]))
        for request in result["revision_requests"]:
            if request["stage"] not in self.known_types:
                logger.warning("Skipping checklist fix for unknown stage '%s'", request["stage"])
                continue
            logger.info("Re-running %s to fix: %s", request["stage"], request["request"])
            await self.rerun(request["stage"], [request])
        return {"outstanding": []}

    def _read_current_critic(self) -> dict:
        critic = self.results.get(self.critic_stage)
        severity, requests = read_critic(critic.output if critic else None)
        return {"severity": severity, "outstanding": requests}

    async def _critic_review(self, state: ConvergenceState) -> dict:
        self.transitions.append("critic_review")
        return self._read_current_critic()

    async def _targeted_rerun(self, state: ConvergenceState) -> dict:
        self.transitions.append("targeted_rerun")
        for stage_type, requests in group_by_stage(state["outstanding"]).items():
            if stage_type not in self.known_types:
                logger.warning("Skipping critic revision for unknown stage '%s'", stage_type)
                continue
            if stage_type in (self.critic_stage, self.composer_stage):
                continue  # Re-run by re_critic / recompose.
            await self.rerun(stage_type, requests)
        return {"outstanding": []}

    async def _re_critic(self, state: ConvergenceState) -> dict:
        self.transitions.append("re_critic")
        update = {"iteration": state["iteration"] + 1}
        if self.critic_stage in self.known_types:
            await self.rerun(self.critic_stage, [])
            update.update(self._read_current_critic())
        return update

    async def _recompose(self, state: ConvergenceState) -> dict:
        self.transitions.append("recompose")
        if self.composer_stage in self.known_types:
            await self.rerun(self.composer_stage, [])
        return {"iteration": state["iteration"]}

    # --- Edges ---

    def _escalates(self, state: ConvergenceState) -> bool:
        return bool(state["outstanding"]) or state["severity"] >= self.severity_threshold

    def _route_after_critic(self, state: ConvergenceState) -> str:
        if self.max_cycles > 0 and self._escalates(state):
            logger.info(
                "Critic escalation: severity %.2f, %d revision request(s)",
                state["severity"], len(state["outstanding"]),
            )
            return "targeted_rerun"
        return "recompose"

    def _route_after_re_critic(self, state: ConvergenceState) -> str:
        if state["iteration"] < self.max_cycles and self._escalates(state):
            return "targeted_rerun"
        return "recompose"

    def _build_graph(self):
        workflow = StateGraph(ConvergenceState)

        workflow.add_node("auto_fix", self._auto_fix)
        workflow.add_node("critic_review", self._critic_review)
        workflow.add_node("targeted_rerun", self._targeted_rerun)
        workflow.add_node("re_critic", self._re_critic)
        workflow.add_node("recompose", self._recompose)

        workflow.set_entry_point("auto_fix")
        workflow.add_edge("auto_fix", "critic_review")
        workflow.add_conditional_edges(
            "critic_review",
            self._route_after_critic,
            {"targeted_rerun": "targeted_rerun", "recompose": "recompose"},
        )
        workflow.add_edge("targeted_rerun", "re_critic")
        workflow.add_conditional_edges(
            "re_critic",
            self._route_after_re_critic,
            {"targeted_rerun": "targeted_rerun", "recompose": "recompose"},
        )
        workflow.add_edge("recompose", END)

        return workflow.compile()

    async def run(self) -> ConvergenceState:
        """Run the convergence protocol once. State is fresh for every run."""
        initial: ConvergenceState = {"iteration": 0, "severity": 0.0, "outstanding": []}
        # auto_fix, critic_review, recompose + two steps per cycle, with headroom.
        limit = 10 + 2 * self.max_cycles
        return await self.graph.ainvoke(initial, config={"recursion_limit": limit})
