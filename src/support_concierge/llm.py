from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

if TYPE_CHECKING:
    from .agent_runtime import RoleAgentRuntime

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_DEFAULT_TIMEOUT: int = 60
_DEFAULT_MAX_RETRIES: int = 2

REPAIR_INSTRUCTION = (
    "Your previous answer could not be validated against the required schema. "
    "Error: {error}. Answer again with a single object that matches the schema exactly."
)


class PhaseFailure(RuntimeError):
    """A generative phase could not produce a schema-valid result."""


@dataclass(frozen=True)
class LlmRequest:
    """Role-scoped prompt plus the schema the answer must satisfy."""

    role: str
    system_prompt: str
    user_prompt: str
    schema: type[BaseModel]

    def with_repair(self, error: str) -> "LlmRequest":
        repair = REPAIR_INSTRUCTION.format(error=error[:500])
        return replace(self, user_prompt=f"{self.user_prompt}\n\n{repair}")


@dataclass
class LlmResponse:
    payload: Any
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


class LanguageModel(Protocol):
    """Narrow contract the pipeline uses to reach a language model."""

    async def complete(self, request: LlmRequest) -> LlmResponse:
        ...


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for language model calls")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with validated API key and production defaults.

    Args:
        model_name: OpenAI model identifier (e.g. 'gpt-4o', 'gpt-4o-mini').
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        max_retries: Maximum number of retry attempts on transient failures.
        max_completion_tokens: Maximum tokens for the completion response.
        repo_root: Optional repo root for .env file resolution.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    return ChatOpenAI(**kwargs)


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Normalize raw LLM structured output into a validated Pydantic model instance.

    Handles three input shapes:
    1. ``include_raw=True`` envelope: ``{"parsed": ..., "parsing_error": ..., "raw": ...}``
    2. Direct Pydantic BaseModel instance (same or different schema)
    3. Plain dict

    Raises:
        RuntimeError: If the output cannot be parsed or validated against the schema.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise RuntimeError(f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}")
        payload = payload.get("parsed")
        if payload is None:
            raise RuntimeError(f"Structured output returned no parsed payload for {schema.__name__}")

    if isinstance(payload, schema):
        return payload

    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json")
    elif isinstance(payload, dict):
        candidate = payload
    elif isinstance(payload, str):
        try:
            return schema.model_validate_json(payload)
        except ValidationError as exc:
            raise RuntimeError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc
    else:
        raise RuntimeError(
            f"Structured output for {schema.__name__} returned unsupported payload type "
            f"{type(payload).__name__}"
        )

    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise RuntimeError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc


async def invoke_structured(llm: LanguageModel, request: LlmRequest, *, timeout: float) -> Any:
    """Call the model and validate its answer, repairing once on a schema mismatch.

    Timeouts and transport errors are not retried here; ``ChatOpenAI`` already
    retries transient HTTP failures.

    Raises:
        PhaseFailure: If the call fails, times out, or the repaired answer is still invalid.
    """
    current = request
    last_error = ""
    for attempt in (1, 2):
        try:
            async with asyncio.timeout(timeout):
                response = await llm.complete(current)
        except TimeoutError as exc:
            raise PhaseFailure(f"{request.role} call timed out after {timeout}s") from exc
        except Exception as exc:
            raise PhaseFailure(f"{request.role} call failed: {exc}") from exc
        try:
            return normalize_structured_output(raw_output=response.payload, schema=request.schema)
        except RuntimeError as exc:
            last_error = str(exc)
            logger.warning("%s returned invalid %s (attempt %d): %s", request.role, request.schema.__name__, attempt, exc)
            current = request.with_repair(last_error)
    raise PhaseFailure(f"{request.role} output failed validation after repair: {last_error}")


class ChatOpenAILanguageModel:
    """LanguageModel backed by ``ChatOpenAI.with_structured_output``.

    Model name, temperature and token limit come from the role binding of the
    request's role.
    """

    def __init__(self, *, runtime: "RoleAgentRuntime", timeout: int = _DEFAULT_TIMEOUT) -> None:
        self.runtime = runtime
        self.timeout = timeout
        self._models: dict[str, ChatOpenAI] = {}
        self._runnables: dict[tuple[str, type[BaseModel]], Any] = {}

    def _runnable(self, role: str, schema: type[BaseModel]) -> Any:
        """One client per role and one structured-output runnable per role and schema."""
        key = (role, schema)
        if key not in self._runnables:
            if role not in self._models:
                binding = self.runtime.binding_for(role)
                self._models[role] = get_chat_model(
                    model_name=binding.model_name,
                    temperature=binding.config.temperature,
                    timeout=self.timeout,
                    max_completion_tokens=binding.config.max_completion_tokens,
                )
            self._runnables[key] = self._models[role].with_structured_output(
                schema,
                method="function_calling",
                include_raw=True,
                strict=False,
            )
        return self._runnables[key]

    async def complete(self, request: LlmRequest) -> LlmResponse:
        runnable = self._runnable(request.role, request.schema)
        started = time.perf_counter()
        output = await runnable.ainvoke(
            [SystemMessage(content=request.system_prompt), HumanMessage(content=request.user_prompt)]
        )
        latency_ms = (time.perf_counter() - started) * 1000
        prompt_tokens = 0
        completion_tokens = 0
        raw_message = output.get("raw") if isinstance(output, dict) else None
        usage = getattr(raw_message, "usage_metadata", None) or {}
        if usage:
            prompt_tokens = int(usage.get("input_tokens", 0))
            completion_tokens = int(usage.get("output_tokens", 0))
        return LlmResponse(
            payload=output,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
        )


@dataclass
class RoleUsage:
    calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


@dataclass
class UsageTracker:
    """LanguageModel wrapper that tallies token usage and latency per role."""

    inner: LanguageModel
    by_role: dict[str, RoleUsage] = field(default_factory=dict)

    async def complete(self, request: LlmRequest) -> LlmResponse:
        response = await self.inner.complete(request)
        usage = self.by_role.setdefault(request.role, RoleUsage())
        usage.calls += 1
        usage.prompt_tokens += response.prompt_tokens
        usage.completion_tokens += response.completion_tokens
        usage.latency_ms += response.latency_ms
        return response

    @property
    def total_tokens(self) -> int:
        return sum(item.prompt_tokens + item.completion_tokens for item in self.by_role.values())

    def summary(self) -> dict[str, dict[str, float]]:
        return {
            role: {
                "calls": usage.calls,
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "latency_ms": round(usage.latency_ms, 1),
            }
            for role, usage in sorted(self.by_role.items())
        }
