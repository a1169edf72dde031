from typing import Any

import pytest
from langchain_core.messages import HumanMessage, SystemMessage

from turn_loop_agent.decision import DEFAULT_AGENT_INSTRUCTIONS, LLMDecisionProvider, render_decision_prompt
from turn_loop_agent.llm import StructuredDecisionModel, coerce_structured_output, require_openai_api_key
from turn_loop_agent.models import AgentCommand, AgentDecision


class CannedRunnable:
    def __init__(self, output: Any) -> None:
        self.output = output
        self.inputs: list[Any] = []

    def invoke(self, input: Any) -> Any:
        self.inputs.append(input)
        return self.output


def test_render_decision_prompt_contains_plan_context_and_history() -> None:
    prompt = render_decision_prompt(
        plan="Build a widget library.",
        context="No files have been created yet.",
        action_history=["Workflow started."],
    )
    assert "PROJECT PLAN:\n---\nBuild a widget library.\n---" in prompt
    assert "No files have been created yet." in prompt
    assert "- Workflow started." in prompt


def test_provider_sends_instructions_and_prompt_to_model() -> None:
    runnable = CannedRunnable({"command": "RUN_BUILD", "reasoning": "compile first"})
    provider = LLMDecisionProvider(
        "Build a widget library.",
        model=StructuredDecisionModel(schema=AgentDecision, runnable=runnable),
    )

    decision = provider.choose_command("context", ["Workflow started."])

    assert decision.command == AgentCommand.RUN_BUILD
    messages = runnable.inputs[0]
    assert isinstance(messages[0], SystemMessage)
    assert messages[0].content == DEFAULT_AGENT_INSTRUCTIONS
    assert isinstance(messages[1], HumanMessage)
    assert "Build a widget library." in messages[1].content


def test_provider_rejects_empty_plan() -> None:
    with pytest.raises(ValueError):
        LLMDecisionProvider("  ", model=StructuredDecisionModel(schema=AgentDecision, runnable=CannedRunnable({})))


def test_coerce_structured_output_accepts_envelope_and_instances() -> None:
    decision = AgentDecision(command=AgentCommand.PUBLISH_PACKAGE)
    envelope = {"parsed": decision, "parsing_error": None, "raw": None}
    assert coerce_structured_output(envelope, schema=AgentDecision) is decision
    assert coerce_structured_output({"command": "RUN_LINT_CHECK"}, schema=AgentDecision).command == (
        AgentCommand.RUN_LINT_CHECK
    )


@pytest.mark.parametrize(
    "raw",
    [
        {"parsed": None, "parsing_error": ValueError("bad json"), "raw": None},
        {"command": "DANCE"},
        "RUN_BUILD",
    ],
)
def test_coerce_structured_output_rejects_bad_payloads(raw: Any) -> None:
    with pytest.raises(RuntimeError):
        coerce_structured_output(raw, schema=AgentDecision)


def test_require_openai_api_key_reads_dotenv(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "placeholder")
    monkeypatch.delenv("OPENAI_API_KEY")
    with pytest.raises(RuntimeError):
        require_openai_api_key(tmp_path)
    (tmp_path / ".env").write_text("OPENAI_API_KEY=sk-test-123\n", encoding="utf-8")
    assert require_openai_api_key(tmp_path) == "sk-test-123"


def test_coerce_structured_output_leaves_path_checks_to_the_applier() -> None:
    raw = {"command": "APPLY_CODE_CHANGES", "files": [{"path": "../outside.ts", "content": "export {};\n"}]}
    decision = coerce_structured_output(raw, schema=AgentDecision)
    assert decision.files[0].path == "../outside.ts"
