"""Global guardrails appended to every stage's system prompt."""

# Imperative rules for LLM consumption. Shared by all stages.
_GUARDRAIL_RULES = """\
GLOBAL SYSTEM GUARDRAILS:
- Output VALID JSON only, matching the schema provided for your stage. No prose.
- If a decision is ambiguous, choose a sensible default, record it in the Decision Ledger \
(key/value/reason), and continue.
- Never contradict earlier stages. If you must change something, emit a correction and update \
the Decision Ledger.
- Keep v1 shippable in 6-8 weeks with minimal dependencies; note stretch items separately.
- Respect privacy/compliance and avoid vendor lock-in where feasible.
- If competitor inputs are provided, map at least one top opportunity into a Must feature \
(or state why not).\
"""


def load_guidance() -> str:
    """Return the global guardrail rules.

    Returns an empty string if guardrails are disabled in config
    (set guardrails_enabled to false or remove it).
    """
    from aps.config import get_config

    config = get_config()
    if not config.get("guardrails_enabled", False):
        return ""

    return _GUARDRAIL_RULES


def system_prompt_for(stage) -> str:
    """Compose a stage's system prompt with the guardrails prepended."""
    guidance = load_guidance()
    if not guidance:
        return stage.system_prompt
    return f"{guidance}\n\n{stage.system_prompt}"
