"""Tool registry built on Pydantic v2 models."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from time import perf_counter
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from query_gateway.errors import (
    GatewayError,
    MalformedToolArguments,
    QueryExecutionFailed,
    UnknownTool,
)
from query_gateway.types import ToolTrace

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 320

ToolObserver = Callable[[ToolTrace], None]


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: Callable[[BaseModel], Any]
    tags: list[str] = Field(default_factory=list)

    def invoke(self, payload: dict[str, Any]) -> Any:
        data = self.args_schema.model_validate(payload)
        return self.handler(data)

    def as_openai_tool(self) -> dict[str, Any]:
        parameters = self.args_schema.model_json_schema(by_alias=True)
        parameters.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


class ToolRegistry:
    """Stores tool specs and exports them as OpenAI function tools.

    The registry holds no per-request state. Callers that want ``ToolTrace``
    records pass their own ``observer`` to ``execute``/``dispatch``, so one
    registry can serve concurrent requests.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def execute(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        observer: ToolObserver | None = None,
    ) -> Any:
        spec = self._tools.get(name)
        if spec is None:
            raise UnknownTool(name)
        return self._execute_spec(spec, payload, observer)

    def dispatch(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        observer: ToolObserver | None = None,
    ) -> Any:
        """Execute a model-requested call, turning failures into result objects.

        Tool failures are part of the conversation: the model sees an
        ``{"error": ..., "errorType": ...}`` object and may correct itself.
        No failure of one call escapes, so the remaining calls of a turn
        still run.
        """

        try:
            return self.execute(name, payload, observer=observer)
        except UnknownTool as exc:
            logger.warning("Model requested unknown tool %s", name)
            _notify(observer, name, payload, exc.to_tool_result(), 0.0, is_error=True)
            return exc.to_tool_result()
        except GatewayError as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return exc.to_tool_result()
        except Exception as exc:
            logger.exception("Tool %s raised an unexpected error", name)
            return QueryExecutionFailed(
                f"Tool {name} failed ({type(exc).__name__})"
            ).to_tool_result()

    def as_openai_tools(self) -> list[dict[str, Any]]:
        return [spec.as_openai_tool() for spec in self._tools.values()]

    def specs(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def _execute_spec(
        self, spec: ToolSpec, payload: dict[str, Any], observer: ToolObserver | None
    ) -> Any:
        start = perf_counter()
        try:
            output = spec.invoke(payload)
        except ValidationError as exc:
            error = MalformedToolArguments(
                f"Invalid arguments for {spec.name}: {exc.error_count()} validation error(s); "
                + "; ".join(_describe_validation_error(item) for item in exc.errors())
            )
            _notify(observer, spec.name, payload, error.to_tool_result(), _elapsed_ms(start), is_error=True)
            raise error from exc
        except GatewayError as exc:
            _notify(observer, spec.name, payload, exc.to_tool_result(), _elapsed_ms(start), is_error=True)
            raise
        except Exception as exc:
            failure = {"error": str(exc), "errorType": type(exc).__name__}
            _notify(observer, spec.name, payload, failure, _elapsed_ms(start), is_error=True)
            raise

        _notify(observer, spec.name, payload, output, _elapsed_ms(start))
        return output


def _notify(
    observer: ToolObserver | None,
    name: str,
    payload: dict[str, Any],
    output: Any,
    latency_ms: float,
    *,
    is_error: bool = False,
) -> None:
    if observer is None:
        return
    observer(
        ToolTrace(
            name=name,
            input_payload=payload,
            output_preview=render_tool_result(output)[:_PREVIEW_CHARS],
            latency_ms=latency_ms,
            is_error=is_error,
        )
    )


def render_tool_result(output: Any) -> str:
    """Serialize a tool result the way it is handed back to the model."""

    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii=False, default=str)


def _elapsed_ms(start: float) -> float:
    return (perf_counter() - start) * 1000.0


def _describe_validation_error(item: dict[str, Any]) -> str:
    location = ".".join(str(part) for part in item.get("loc", ())) or "arguments"
    return f"{location}: {item.get('msg', 'invalid')}"
