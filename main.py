"""FastAPI entrypoint for the Ember local model runtime."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from app.constants import APP_NAME
from app.runtime import Runtime, build_runtime
from app.settings import RuntimeSettings
from engine.errors import ConfigurationError
from engine.types import FileRef, GenerationRequest, Message, ModelInfo

logger = logging.getLogger("ember.main")

runtime_settings = RuntimeSettings.load()
app = FastAPI(title=f"{APP_NAME} Runtime")
app.state.runtime = build_runtime(runtime_settings)


class AttachmentPayload(BaseModel):
    """File attached to a user message; read when the prompt is built."""

    name: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1, description="Absolute path readable by the runtime.")
    kind: str = Field(default="text", description="Free-form type label shown to the model.")
    size_bytes: int = Field(default=0, ge=0)


class HistoryMessage(BaseModel):
    """One prior turn of the conversation."""

    id: str = ""
    is_from_user: bool
    text: str = ""
    attachments: list[AttachmentPayload] = Field(default_factory=list)


class ChatPayload(BaseModel):
    """Schema for a generation request against the loaded model."""

    prompt: str = Field(..., max_length=100_000)
    history: list[HistoryMessage] = Field(default_factory=list)


class ModelLoadRequest(BaseModel):
    """Schema selecting the GGUF weights used for generation."""

    path: str = Field(..., min_length=1)
    name: str | None = Field(default=None, description="Display name; defaults to the file name.")
    is_downloaded: bool = True


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _sse_event(event: str, data: Any) -> str:
    """Serialize an SSE event frame."""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def _to_request(session_id: str, payload: ChatPayload, *, streaming: bool) -> GenerationRequest:
    history = [
        Message(
            id=item.id,
            is_from_user=item.is_from_user,
            text=item.text,
            attachments=tuple(
                FileRef(name=ref.name, path=Path(ref.path), kind=ref.kind, size_bytes=ref.size_bytes)
                for ref in item.attachments
            ),
        )
        for item in payload.history
    ]
    return GenerationRequest.build(session_id, payload.prompt, history, streaming=streaming)


@app.on_event("startup")
async def announce_runtime() -> None:
    runtime: Runtime = app.state.runtime
    logger.info(
        "%s runtime ready (install root %s, llama-cli %s, gate=%s)",
        APP_NAME,
        runtime.settings.install_root,
        "found" if runtime.locator.is_installed() else "missing",
        runtime.coordinator.gate,
    )


@app.on_event("shutdown")
async def stop_sessions() -> None:
    """Terminate every engine process before the server exits."""
    runtime: Runtime = app.state.runtime
    await runtime.shutdown()


@app.get("/ping")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/engine/status")
async def engine_status(request: Request) -> dict[str, Any]:
    runtime = _runtime(request)
    binary = runtime.locator.locate()
    return {
        "installed": binary is not None,
        "binary": str(binary) if binary else None,
        "install": runtime.installer.state.as_dict(),
        "generation": runtime.coordinator.status(),
    }


@app.post("/engine/install", status_code=202)
async def start_install(request: Request) -> dict[str, Any]:
    """Kick off a background install pass; 409 while one is running."""
    runtime = _runtime(request)
    if not runtime.start_install():
        raise HTTPException(status_code=409, detail="Installation already in progress")
    # Let the task publish its first state before responding.
    await asyncio.sleep(0)
    return {"accepted": True, "install": runtime.installer.state.as_dict()}


@app.get("/engine/install")
async def install_progress(request: Request) -> dict[str, Any]:
    runtime = _runtime(request)
    last = runtime.last_install
    return {
        "install": runtime.installer.state.as_dict(),
        "result": last.as_dict() if last is not None else None,
    }


@app.post("/models/load")
async def load_model(payload: ModelLoadRequest, request: Request) -> dict[str, Any]:
    runtime = _runtime(request)
    path = Path(payload.path).expanduser()
    model = ModelInfo(name=payload.name or path.name, path=path, is_downloaded=payload.is_downloaded)
    try:
        runtime.coordinator.load_model(model)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"model": {"name": model.name, "path": str(model.path)}}


@app.post("/models/unload")
async def unload_model(request: Request) -> dict[str, Any]:
    _runtime(request).coordinator.unload_model()
    return {"model": None}


@app.get("/models/template")
async def model_template(request: Request) -> dict[str, Any]:
    coordinator = _runtime(request).coordinator
    if coordinator.model is None:
        raise HTTPException(status_code=400, detail="Error: No model selected")
    return {"chat_template": await coordinator.chat_template()}


# Registered before /chat/{session_id} so these literal paths win.
@app.post("/chat/stop")
async def stop_latest(request: Request) -> dict[str, Any]:
    """Stop the most recently started generation."""
    return {"stopped": _runtime(request).coordinator.stop_generation()}


@app.post("/chat/stop-all")
async def stop_all(request: Request) -> dict[str, Any]:
    return {"stopped": _runtime(request).coordinator.stop_all_sessions()}


@app.post("/chat/{session_id}/stop")
async def stop_session(session_id: str, request: Request) -> dict[str, Any]:
    return {"stopped": _runtime(request).coordinator.stop_generation(session_id)}


@app.post("/chat/{session_id}")
async def chat(session_id: str, payload: ChatPayload, request: Request) -> dict[str, Any]:
    """Run a generation to completion and return the terminal result."""
    coordinator = _runtime(request).coordinator
    result = await coordinator.generate(_to_request(session_id, payload, streaming=False))
    return result.as_dict()


@app.post("/chat/{session_id}/stream")
async def chat_stream(session_id: str, payload: ChatPayload, request: Request) -> StreamingResponse:
    """Stream decoded output chunks as ``token`` events, then a ``complete`` event."""
    coordinator = _runtime(request).coordinator
    generation = _to_request(session_id, payload, streaming=True)

    async def event_generator() -> AsyncIterator[str]:
        queue: asyncio.Queue[str | None] = asyncio.Queue()
        task = asyncio.create_task(coordinator.generate(generation, on_token=queue.put_nowait))
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                token = await queue.get()
                if token is None:
                    break
                yield _sse_event("token", {"text": token})
            result = await task
            yield _sse_event("complete", result.as_dict())
        finally:
            if not task.done():
                logger.info("Stream for session %s closed early; cancelling", session_id[:8])
                task.cancel()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


__all__ = ["app"]


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, runtime_settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=runtime_settings.host, port=runtime_settings.port)
