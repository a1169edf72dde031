from __future__ import annotations

import logging
from pathlib import Path

from langchain_core.messages import HumanMessage, SystemMessage

from .llm import StructuredDecisionModel, build_structured_model
from .models import AgentDecision

logger = logging.getLogger(__name__)

DEFAULT_AGENT_INSTRUCTIONS = """\
You are an autonomous package engineer. You build one npm package from a plan,
one command per turn, until it is published.

Available commands:
1. APPLY_CODE_CHANGES: write or delete files. Use this for all coding and for fixing errors.
2. AWAIT_DEPENDENCY: wait until a dependency named in package_name is published.
3. GATHER_CONTEXT_FOR_DEPENDENCY: read the published API of the dependency named in package_name.
4. CHECK_LICENSE_HEADERS: after writing code, verify every source file carries the license header.
5. VALIDATE_PACKAGE_JSON: after creating or changing package.json, verify its required fields.
6. RUN_BUILD: compile the package.
7. RUN_LINT_CHECK: after build and validation pass, check for style issues.
8. RUN_UNIT_TESTS: after lint passes, verify correctness and test coverage.
9. PUBLISH_PACKAGE: only when every other step has passed.

If the last action was a failed check, your next command MUST be APPLY_CODE_CHANGES.
JSON files must contain raw JSON, never wrapped in markdown code fences.
"""


def render_decision_prompt(*, plan: str, context: str, action_history: list[str]) -> str:
    history = "\n".join(f"- {entry}" for entry in action_history) or "- (none)"
    return (
        "PROJECT PLAN:\n---\n"
        f"{plan.strip()}\n---\n\n"
        "CURRENT CODEBASE CONTEXT:\n---\n"
        f"{context.strip()}\n---\n\n"
        "ACTION HISTORY (what has been done so far):\n---\n"
        f"{history}\n---\n\n"
        "Based on the plan, context and history, choose the single next command."
    )


class LLMDecisionProvider:
    """Decision provider backed by an OpenAI chat model with AgentDecision structured output."""

    def __init__(
        self,
        plan: str,
        *,
        model_name: str = "gpt-4o",
        instructions: str = DEFAULT_AGENT_INSTRUCTIONS,
        model: StructuredDecisionModel[AgentDecision] | None = None,
        env_dir: Path | None = None,
    ) -> None:
        if not plan.strip():
            raise ValueError("plan must be non-empty")
        self.plan = plan
        self.instructions = instructions
        self.model = model or build_structured_model(
            model_name=model_name,
            schema=AgentDecision,
            env_dir=env_dir,
        )

    def choose_command(self, context: str, action_history: list[str]) -> AgentDecision:
        messages = [
            SystemMessage(content=self.instructions),
            HumanMessage(content=render_decision_prompt(plan=self.plan, context=context, action_history=action_history)),
        ]
        decision = self.model.invoke(messages)
        logger.debug("Model chose %s: %s", decision.command.value, decision.reasoning[:200])
        return decision
