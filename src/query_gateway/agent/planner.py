"""Tool-calling orchestration loop with observability hooks."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

import openai
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from query_gateway.agent.announcement import AnnouncementDetector
from query_gateway.agent.registry import ToolObserver, ToolRegistry, render_tool_result
from query_gateway.config import AgentConfig
from query_gateway.errors import InvalidRequest, MalformedToolArguments
from query_gateway.obs.tracing import Timer, TraceStore, estimate_token_count
from query_gateway.safety.moderation import map_openai_error
from query_gateway.types import ToolTrace

logger = logging.getLogger(__name__)

NO_ANSWER_FALLBACK = (
    "Ich habe deine Anfrage verarbeitet, konnte aber keine abschließende Antwort formulieren. "
    "Bitte formuliere die Frage genauer."
)

SYSTEM_PROMPT = """
Du bist ein hilfreicher Assistent mit Lesezugriff auf die Geschäftsdatenbank.

Regeln:
1) Beantworte Fragen ausschließlich anhand der Daten, die du über die Tools abrufst.
2) Erfinde niemals Daten. Wenn etwas nicht existiert, sag das klar.
3) Nutze `listTables` und `describeTable`, wenn du die passende Tabelle nicht kennst.
4) Nutze `queryTable` mit Filtern und einem sinnvollen Limit für einzelne Tabellen.
5) Bevorzuge Views (v_*), die Fremdschlüssel bereits auflösen. Sonst verknüpfe Tabellen
   mit `queryTableWithJoin`; schlägt die automatische Verknüpfung fehl, wiederhole den
   Aufruf mit einem expliziten `joinColumn`.
6) Gib niemals rohe IDs als Antwort aus, wenn ein lesbarer Name verfügbar ist.
7) Kündige Tool-Aufrufe nicht an ("Einen Moment..."), sondern rufe die Tools direkt auf.

Antworte knapp, sachlich und auf Deutsch.
""".strip()

_HISTORY_ROLES: dict[str, type[BaseMessage]] = {
    "user": HumanMessage,
    "assistant": AIMessage,
}


class ToolCallingPlanner:
    """Drives model/tool round trips until a final answer or the round ceiling.

    Each model turn that carries tool calls is followed by executing every
    call in order; results (including error objects) are appended as
    ``ToolMessage``s so the model can self-correct. A turn without tool calls
    is final.
    """

    def __init__(
        self,
        *,
        llm: Any,
        tool_registry: ToolRegistry,
        trace_store: TraceStore,
        config: AgentConfig | None = None,
        announcement_filter: Callable[[str], bool] | None = None,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self.tool_registry = tool_registry
        self.trace_store = trace_store
        self.config = config or AgentConfig()
        self.is_announcement = announcement_filter or AnnouncementDetector(
            max_chars=self.config.announcement_max_chars
        )
        self.system_prompt = system_prompt
        self.model = llm.bind_tools(self.tool_registry.as_openai_tools())

    def invoke(
        self,
        question: str,
        *,
        chat_history: Sequence[BaseMessage | dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Run one full orchestration and persist trace metrics.

        Returns:
            A structured payload containing the answer, number of model
            rounds, tool calls made, trace id, latency, whether the latency
            target (<8s by default) was met, and whether the model produced a
            final answer before the round ceiling.
        """

        if not question or not question.strip():
            raise InvalidRequest("Question must not be empty")

        messages: list[BaseMessage] = [SystemMessage(content=self.system_prompt)]
        messages.extend(to_messages(chat_history or []))
        messages.append(HumanMessage(content=question))

        observed_tools: list[ToolTrace] = []
        with Timer() as timer:
            answer, rounds, completed = self._run(messages, observed_tools.append)

        record = self.trace_store.create_record(
            question=question,
            answer=answer,
            rounds=rounds,
            completed=completed,
            tool_traces=observed_tools,
            input_tokens=sum(estimate_token_count(_text_of(m.content)) for m in messages),
            output_tokens=estimate_token_count(answer),
            latency_ms=timer.elapsed_ms,
        )

        return {
            "answer": answer,
            "rounds": rounds,
            "tool_calls": [trace.name for trace in observed_tools],
            "completed": completed,
            "trace_id": record.trace_id,
            "latency_ms": record.latency_ms,
            "latency_target_met": record.latency_ms
            <= (self.config.target_latency_seconds * 1000.0),
        }

    def _run(
        self, messages: list[BaseMessage], observer: ToolObserver
    ) -> tuple[str, int, bool]:
        last_content = ""
        for round_number in range(1, self.config.max_rounds + 1):
            response = self._call_model(messages)
            content = _text_of(response.content).strip()
            tool_calls = list(getattr(response, "tool_calls", None) or [])
            invalid_calls = list(getattr(response, "invalid_tool_calls", None) or [])

            if not tool_calls and not invalid_calls:
                return content or last_content or NO_ANSWER_FALLBACK, round_number, True

            if content and self.is_announcement(content):
                logger.debug("Suppressed announcement in round %d", round_number)
                response = response.model_copy(update={"content": ""})
                content = ""
            if content:
                last_content = content
            messages.append(response)

            for call in tool_calls:
                result = self.tool_registry.dispatch(
                    call["name"], dict(call.get("args") or {}), observer=observer
                )
                messages.append(_tool_message(result, call.get("id"), call["name"]))
            for call in invalid_calls:
                error = MalformedToolArguments(
                    f"Could not parse arguments for {call.get('name')}: {call.get('error') or 'invalid JSON'}"
                )
                logger.warning("%s", error)
                messages.append(_tool_message(error.to_tool_result(), call.get("id"), call.get("name")))

        logger.warning("Round ceiling of %d reached without a final answer", self.config.max_rounds)
        return last_content or NO_ANSWER_FALLBACK, self.config.max_rounds, False

    def _call_model(self, messages: list[BaseMessage]) -> AIMessage:
        try:
            return self.model.invoke(messages)
        except openai.OpenAIError as exc:
            raise map_openai_error(exc, operation="chat completion") from exc


def to_messages(history: Sequence[BaseMessage | dict[str, Any]]) -> list[BaseMessage]:
    """Convert client-supplied history into conversation messages.

    Only user and assistant turns are accepted; system prompts and tool
    results from the client are dropped.
    """

    converted: list[BaseMessage] = []
    for item in history:
        if isinstance(item, BaseMessage):
            converted.append(item)
            continue
        message_cls = _HISTORY_ROLES.get(str(item.get("role", "")))
        content = item.get("content")
        if message_cls is None or not isinstance(content, str) or not content.strip():
            continue
        converted.append(message_cls(content=content))
    return converted


def _tool_message(result: Any, call_id: str | None, name: str | None) -> ToolMessage:
    return ToolMessage(
        content=render_tool_result(result),
        tool_call_id=call_id or "",
        name=name,
    )


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                if "text" in item:
                    parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return " ".join(parts)
    return str(content or "")
