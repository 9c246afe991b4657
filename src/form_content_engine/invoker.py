from __future__ import annotations

import json
import logging
from typing import Any, Callable, Mapping, Protocol

import vertexai
from vertexai.generative_models import GenerationConfig, GenerativeModel

from .errors import InvocationFailed

logger = logging.getLogger(__name__)


class Invoker(Protocol):
    """Runs a named generation or validation function.

    Implementations are synchronous; callers on the event loop go through
    ``asyncio.to_thread``.
    """

    def invoke(self, function_ref: str, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        ...


class LocalInvoker:
    """Dispatches to in-process callables registered by function ref."""

    def __init__(self, functions: Mapping[str, Callable[[Mapping[str, Any]], Mapping[str, Any]]] | None = None) -> None:
        self._functions: dict[str, Callable[[Mapping[str, Any]], Mapping[str, Any]]] = dict(functions or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def register(self, function_ref: str, function: Callable[[Mapping[str, Any]], Mapping[str, Any]]) -> None:
        self._functions[function_ref] = function

    def invoke(self, function_ref: str, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        function = self._functions.get(function_ref)
        if function is None:
            raise InvocationFailed(f"Unknown function: {function_ref}", function_ref=function_ref)
        self.calls.append((function_ref, dict(payload)))
        try:
            result = function(payload)
        except InvocationFailed:
            raise
        except Exception as exc:
            raise InvocationFailed(f"{function_ref} failed: {exc}", function_ref=function_ref) from exc
        if not isinstance(result, Mapping):
            raise InvocationFailed(
                f"{function_ref} returned {type(result).__name__}, expected a mapping",
                function_ref=function_ref,
            )
        return result


class VertexAIInvoker:
    """Invoker backed by Vertex AI Gemini models in JSON mode.

    Each function ref maps to a prompt template; ``{payload}`` inside the
    template is replaced with the JSON-encoded payload.
    """

    DEFAULT_PROMPT = (
        "You are the \"{function_ref}\" function of a content workspace.\n"
        "Input payload:\n{payload}\n\n"
        "Respond with a single JSON object."
    )

    def __init__(
        self,
        *,
        project_id: str,
        location: str = "asia-northeast1",
        model_name: str = "gemini-1.5-pro",
        prompts: Mapping[str, str] | None = None,
        temperature: float = 0.4,
        max_output_tokens: int = 8192,
    ) -> None:
        """Initialize the Vertex AI invoker.

        Args:
            project_id: GCP project ID
            location: Vertex AI location
            model_name: Model name (e.g., "gemini-1.5-pro")
            prompts: Prompt template per function ref
            temperature: Sampling temperature (0.0 - 1.0)
            max_output_tokens: Maximum output tokens
        """
        self.project_id = project_id
        self.location = location
        self.model_name = model_name
        self.prompts = dict(prompts or {})
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

        vertexai.init(project=project_id, location=location)
        self.model = GenerativeModel(model_name)

    def invoke(self, function_ref: str, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        template = self.prompts.get(function_ref, self.DEFAULT_PROMPT)
        prompt = template.replace("{function_ref}", function_ref).replace(
            "{payload}", json.dumps(payload, ensure_ascii=False, indent=2, default=str)
        )
        prompt = f"{prompt}\n\nPlease respond with valid JSON only."

        try:
            response = self.model.generate_content(
                prompt,
                generation_config=GenerationConfig(
                    temperature=self.temperature,
                    max_output_tokens=self.max_output_tokens,
                    response_mime_type="application/json",
                ),
            )
            text = response.text
        except Exception as exc:
            logger.error(
                "Vertex AI call failed",
                exc_info=True,
                extra={"function_ref": function_ref, "model": self.model_name},
            )
            raise InvocationFailed(f"{function_ref} failed: {exc}", function_ref=function_ref) from exc

        logger.info(
            "Invoked function with Vertex AI",
            extra={
                "function_ref": function_ref,
                "model": self.model_name,
                "input_length": len(prompt),
                "output_length": len(text),
            },
        )
        result = parse_json_response(text, function_ref=function_ref)
        if not isinstance(result, Mapping):
            raise InvocationFailed(
                f"{function_ref} returned {type(result).__name__}, expected a JSON object",
                function_ref=function_ref,
            )
        return result


def parse_json_response(text: str, *, function_ref: str) -> Any:
    """Parse model output, stripping markdown code fences if present."""
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    try:
        return json.loads(cleaned.strip())
    except json.JSONDecodeError as exc:
        logger.error(
            "Failed to parse JSON response",
            exc_info=True,
            extra={"function_ref": function_ref, "response": text},
        )
        raise InvocationFailed(f"Invalid JSON response: {exc}", function_ref=function_ref) from exc


__all__ = ["Invoker", "LocalInvoker", "VertexAIInvoker", "parse_json_response"]
