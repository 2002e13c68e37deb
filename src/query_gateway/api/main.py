"""FastAPI entrypoint for chat, speech, health and trace endpoints."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Literal

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from query_gateway.admission.controller import AdmissionController
from query_gateway.admission.rate_limit import client_identifier
from query_gateway.agent.planner import ToolCallingPlanner
from query_gateway.agent.registry import ToolRegistry
from query_gateway.agent.tools import register_query_tools
from query_gateway.config import (
    AgentConfig,
    GatewaySettings,
    QueryConfig,
    SafetyConfig,
    SpeechConfig,
)
from query_gateway.errors import GatewayError, InvalidRequest, Unauthorized, UpstreamAuthFailure
from query_gateway.obs.logconfig import configure_logging
from query_gateway.obs.tracing import TraceStore
from query_gateway.query.executor import QueryExecutor
from query_gateway.query.store import SqlStore
from query_gateway.safety.gate import SafetyGate
from query_gateway.safety.moderation import OpenAIModerator
from query_gateway.speech.clients import (
    DeepgramTranscriber,
    ElevenLabsSynthesizer,
    infer_content_type,
)

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)


class SpeechRequest(BaseModel):
    text: str


def _create_llm(settings: GatewaySettings) -> Any:
    from langchain_openai import ChatOpenAI

    return ChatOpenAI(
        model=settings.openai_model,
        temperature=0,
        api_key=settings.openai_api_key,
        timeout=settings.request_timeout,
        max_retries=0,
    )


def _create_planner(
    settings: GatewaySettings,
    store: SqlStore,
    trace_store: TraceStore,
    agent_config: AgentConfig,
) -> ToolCallingPlanner:
    llm = _create_llm(settings)
    executor = QueryExecutor(store, QueryConfig())
    registry = ToolRegistry()
    register_query_tools(registry, executor)
    return ToolCallingPlanner(
        llm=llm,
        tool_registry=registry,
        trace_store=trace_store,
        config=agent_config,
    )


def build_app(
    settings: GatewaySettings | None = None,
    *,
    admission: AdmissionController | None = None,
    planner: ToolCallingPlanner | None = None,
    safety_gate: SafetyGate | None = None,
    transcriber: DeepgramTranscriber | None = None,
    synthesizer: ElevenLabsSynthesizer | None = None,
    trace_store: TraceStore | None = None,
    agent_config: AgentConfig | None = None,
    speech_config: SpeechConfig | None = None,
    safety_config: SafetyConfig | None = None,
) -> FastAPI:
    """Wire collaborators into a FastAPI app.

    Collaborators that are not passed in are built from ``settings``; those
    whose credentials are missing stay unset and their endpoints answer with
    a configuration error. Resources the app builds itself are released on
    shutdown; injected collaborators belong to the caller.
    """

    settings = settings or GatewaySettings()
    agent_config = agent_config or AgentConfig()
    speech_config = speech_config or SpeechConfig(timeout_seconds=settings.request_timeout)
    safety_config = safety_config or SafetyConfig()
    trace_store = trace_store or TraceStore()
    admission = admission or AdmissionController()

    owned: list[Callable[[], None]] = []
    if planner is None and settings.openai_api_key:
        store = SqlStore.from_url(settings.database_url)
        owned.append(store.engine.dispose)
        planner = _create_planner(settings, store, trace_store, agent_config)
    if safety_gate is None and settings.openai_api_key:
        moderator = OpenAIModerator(
            api_key=settings.openai_api_key,
            model=safety_config.moderation_model,
            timeout=settings.request_timeout,
        )
        owned.append(moderator.close)
        safety_gate = SafetyGate(moderator)
    if transcriber is None and settings.deepgram_api_key:
        transcriber = DeepgramTranscriber(settings.deepgram_api_key, speech_config)
        owned.append(transcriber.close)
    if synthesizer is None and settings.elevenlabs_api_key:
        synthesizer = ElevenLabsSynthesizer(
            settings.elevenlabs_api_key, settings.elevenlabs_voice_id, speech_config
        )
        owned.append(synthesizer.close)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        for release in reversed(owned):
            release()
        logger.info("Released %d gateway resources", len(owned))

    app = FastAPI(title="Query Gateway", version="0.1.0", lifespan=lifespan)
    app.state.transcriber = transcriber
    app.state.synthesizer = synthesizer

    def require_api_key(
        x_internal_api_key: str | None = Header(default=None, alias="X-Internal-Api-Key"),
    ) -> None:
        expected = settings.internal_api_key
        if not expected:
            return
        if not x_internal_api_key or not hmac.compare_digest(
            x_internal_api_key.encode("utf-8"), expected.encode("utf-8")
        ):
            raise Unauthorized("Missing or invalid internal API key")

    @app.exception_handler(GatewayError)
    def handle_gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        else:
            logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.user_message, "errorType": type(exc).__name__},
            headers=getattr(exc, "headers", None),
        )

    def _client_id(request: Request) -> str:
        return client_identifier(request.headers, request.client.host if request.client else None)

    def _require(collaborator: Any, name: str) -> Any:
        if collaborator is None:
            raise UpstreamAuthFailure(f"{name} is not configured")
        return collaborator

    @app.get("/health")
    def health() -> JSONResponse:
        missing = settings.missing_keys()
        return JSONResponse(
            status_code=503 if missing else 200,
            content={
                "status": "degraded" if missing else "ok",
                "missing": missing,
                "llm_configured": planner is not None,
                "trace_count": len(trace_store.list_recent(limit=1000)),
            },
        )

    @app.post("/chat", dependencies=[Depends(require_api_key)])
    def chat(body: ChatRequest, request: Request, response: Response) -> dict[str, Any]:
        last = body.messages[-1]
        if last.role != "user" or not last.content.strip():
            raise InvalidRequest("Last message must be a non-empty user message")
        if len(last.content) > agent_config.max_input_chars:
            raise InvalidRequest(
                f"Message exceeds {agent_config.max_input_chars} characters",
                user_message=(
                    f"Die Nachricht ist zu lang. Maximale Länge: {agent_config.max_input_chars} Zeichen"
                ),
            )

        active_planner = _require(planner, "Chat model")
        history = [message.model_dump() for message in body.messages[:-1]]
        with admission.admit(_client_id(request), "chat") as ticket:
            result = active_planner.invoke(last.content, chat_history=history)
            response.headers.update(ticket.headers())

        return {
            "message": {"role": "assistant", "content": result["answer"]},
            "meta": {key: value for key, value in result.items() if key != "answer"},
        }

    @app.post("/stt", dependencies=[Depends(require_api_key)])
    def stt(request: Request, response: Response, audio: UploadFile = File(...)) -> dict[str, str]:
        active_transcriber = _require(transcriber, "Speech-to-text")
        active_gate = _require(safety_gate, "Safety gate")
        with admission.admit(_client_id(request), "stt") as ticket:
            payload = audio.file.read(speech_config.max_audio_bytes + 1)
            content_type = infer_content_type(audio.filename, audio.content_type)
            transcript = active_transcriber.transcribe(payload, content_type)
            active_gate.ensure_safe([transcript])
            response.headers.update(ticket.headers())
        return {"transcript": transcript}

    @app.post("/tts", dependencies=[Depends(require_api_key)])
    def tts(body: SpeechRequest, request: Request) -> Response:
        active_synthesizer = _require(synthesizer, "Text-to-speech")
        active_gate = _require(safety_gate, "Safety gate")
        with admission.admit(_client_id(request), "tts") as ticket:
            active_gate.ensure_safe([body.text])
            audio_bytes = active_synthesizer.synthesize(body.text)
            headers = ticket.headers()
        headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
        return Response(content=audio_bytes, media_type="audio/mpeg", headers=headers)

    @app.get("/traces", dependencies=[Depends(require_api_key)])
    def traces(limit: int = 20) -> dict[str, Any]:
        records = [asdict(record) for record in trace_store.list_recent(limit=limit)]
        return {"items": records}

    @app.get("/traces/{trace_id}", dependencies=[Depends(require_api_key)])
    def trace_detail(trace_id: str) -> dict[str, Any]:
        try:
            record = trace_store.get(trace_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics", dependencies=[Depends(require_api_key)])
    def metrics() -> dict[str, Any]:
        return {
            **trace_store.summary(),
            "concurrency_acquired": admission.concurrency.acquire_count,
            "concurrency_released": admission.concurrency.release_count,
        }

    return app


def create_default_app() -> FastAPI:
    settings = GatewaySettings()
    configure_logging(settings.log_level)
    return build_app(settings)


app = create_default_app()
