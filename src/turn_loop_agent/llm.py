from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, Sequence, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
StructuredOutputMethod = Literal["function_calling", "json_mode", "json_schema"]

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3


class SupportsInvoke(Protocol):
    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredDecisionModel(Generic[ModelT]):
    """Chat model bound to one Pydantic schema.

    Every response is validated against ``schema`` before it leaves this
    wrapper, so callers never see a half-parsed decision.
    """

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, messages: Sequence[BaseMessage] | str) -> ModelT:
        raw_output = self.runnable.invoke(list(messages) if not isinstance(messages, str) else messages)
        return coerce_structured_output(raw_output, schema=self.schema)


def require_openai_api_key(env_dir: Path | None = None) -> str:
    """Return OPENAI_API_KEY, loading ``<env_dir>/.env`` first when present.

    Raises:
        RuntimeError: If no key is configured.
    """
    env_path = (env_dir if env_dir is not None else Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required to run the LLM decision provider")
    return key


def coerce_structured_output(raw_output: Any, *, schema: type[ModelT]) -> ModelT:
    """Turn whatever the structured runnable returned into a validated ``schema`` instance.

    Accepts the ``include_raw=True`` envelope, a model instance (of ``schema`` or
    another model with a compatible shape) or a plain dict.

    Raises:
        RuntimeError: If the output cannot be parsed or fails validation.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise RuntimeError(f"Could not parse {schema.__name__} from model output: {parsing_error!r}")
        payload = payload.get("parsed")
        if payload is None:
            raise RuntimeError(f"Model output contained no parsed {schema.__name__}")

    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, dict):
        raise RuntimeError(
            f"Model output for {schema.__name__} has unsupported type {type(payload).__name__}"
        )

    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise RuntimeError(f"Model output failed {schema.__name__} validation: {exc}") from exc


def build_structured_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    method: StructuredOutputMethod = "function_calling",
    env_dir: Path | None = None,
) -> StructuredDecisionModel[ModelT]:
    """Build a ChatOpenAI model constrained to ``schema`` via ``with_structured_output``.

    Args:
        model_name: OpenAI model identifier.
        schema: Pydantic model every response must satisfy.
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        max_retries: Retry attempts on transient API failures.
        method: Structured output method passed to LangChain.
        env_dir: Directory searched for a ``.env`` file holding the API key.

    Raises:
        ValueError: If ``model_name`` is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    require_openai_api_key(env_dir)
    model = ChatOpenAI(
        model=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
    )
    logger.debug("Built structured chat model %s for %s", model_name, schema.__name__)
    runnable = model.with_structured_output(schema, method=method)
    return StructuredDecisionModel(schema=schema, runnable=runnable)
