"""Drive one llama-cli generation per request, end to end."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Sequence

from app.constants import STOPPED_BY_USER
from app.telemetry import TelemetrySink
from engine.cleaner import clean_response
from engine.collector import READ_CHUNK_BYTES, OutputCollector, TokenCallback, Utf8ChunkDecoder
from engine.errors import ConcurrencyError, ConfigurationError, EngineError, ProcessError
from engine.locator import ToolchainLocator
from engine.prompt import PromptBuilder
from engine.supervisor import ProcessSupervisor
from engine.templates import ChatTemplateExtractor
from engine.types import (
    GenerationRequest,
    GenerationResult,
    GenerationStatus,
    ModelInfo,
    SamplingConfig,
)

logger = logging.getLogger("ember.coordinator")

GATE_GLOBAL = "global"
GATE_SESSION = "session"


def _short(session_id: str) -> str:
    return str(session_id)[:8]


class GenerationCoordinator:
    """Own the loaded model and the set of in-flight generations.

    With the ``global`` gate only one generation may run in the whole
    process; with ``session`` each session id may run one at a time.
    """

    def __init__(
        self,
        *,
        locator: ToolchainLocator,
        sampling: SamplingConfig,
        supervisor: ProcessSupervisor | None = None,
        prompt_builder: PromptBuilder | None = None,
        template_extractor: ChatTemplateExtractor | None = None,
        telemetry: TelemetrySink | None = None,
        extra_args: Sequence[str] = (),
        gate: str = GATE_GLOBAL,
    ) -> None:
        if gate not in (GATE_GLOBAL, GATE_SESSION):
            raise ValueError(f"unknown generation gate '{gate}'")
        self.locator = locator
        self.sampling = sampling
        self.supervisor = supervisor or ProcessSupervisor()
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.templates = template_extractor or ChatTemplateExtractor(locator.locate)
        self.telemetry = telemetry or TelemetrySink(None)
        self.extra_args = list(extra_args)
        self.gate = gate
        self._lock = threading.Lock()
        self._model: ModelInfo | None = None
        self._generating: set[str] = set()
        self._cancelled: set[str] = set()
        self._latest: str | None = None

    # ------------------------------------------------------------------ model
    @property
    def model(self) -> ModelInfo | None:
        with self._lock:
            return self._model

    def load_model(self, model: ModelInfo) -> None:
        if not model.is_downloaded:
            raise ConfigurationError("Model is not downloaded")
        if not Path(model.path).is_file():
            raise ConfigurationError("Model file not found")
        with self._lock:
            self._model = model
        logger.info("Loaded model %s (%s)", model.name, model.path)

    def unload_model(self) -> None:
        with self._lock:
            previous, self._model = self._model, None
        if previous is not None:
            logger.info("Unloaded model %s", previous.name)

    async def chat_template(self) -> str | None:
        model = self.model
        if model is None:
            return None
        return await self.templates.extract(model.path)

    # ------------------------------------------------------------------ state
    def is_generating(self, session_id: str | None = None) -> bool:
        with self._lock:
            if session_id is None:
                return bool(self._generating)
            return session_id in self._generating

    @property
    def state(self) -> str:
        return "generating" if self.is_generating() else "idle"

    def status(self) -> dict[str, Any]:
        with self._lock:
            model = self._model
            sessions = sorted(self._generating)
        return {
            "state": "generating" if sessions else "idle",
            "gate": self.gate,
            "model": None if model is None else {"name": model.name, "path": str(model.path)},
            "generating_sessions": sessions,
        }

    def build_argv(self, binary: Path, model_path: Path, prompt: str) -> list[str]:
        s = self.sampling
        return [
            str(binary),
            "-m",
            str(model_path),
            "-p",
            prompt,
            "-n",
            str(s.max_tokens),
            "-c",
            str(s.context_length),
            "--temp",
            str(s.temperature),
            "--top-k",
            str(s.top_k),
            "--top-p",
            str(s.top_p),
            "--repeat-penalty",
            str(s.repeat_penalty),
            "--repeat-last-n",
            str(s.repeat_last_n),
            "-ngl",
            str(s.gpu_layers),
            "--no-display-prompt",
            "--simple-io",
            *self.extra_args,
        ]

    # ------------------------------------------------------------- generation
    def _busy(self, session_id: str) -> bool:
        if self.gate == GATE_GLOBAL:
            return bool(self._generating)
        return session_id in self._generating

    def _reject(self, exc: EngineError, session_id: str) -> GenerationResult:
        logger.info("Rejected generation for session %s: %s", _short(session_id), exc)
        self.telemetry.generation_event("rejected", session_id=session_id, kind=exc.kind, error=str(exc))
        return GenerationResult.failure(exc.kind, str(exc), session_id=session_id)

    async def generate(self, request: GenerationRequest, on_token: TokenCallback | None = None) -> GenerationResult:
        """Run one generation and return its terminal result; never raises engine errors."""
        session_id = request.session_id
        with self._lock:
            model = self._model
            if model is None:
                rejection: EngineError | None = ConfigurationError("Error: No model selected")
            elif self._busy(session_id):
                rejection = ConcurrencyError("Error: A response is already being generated")
            elif not request.prompt.strip():
                rejection = ConfigurationError("Error: Prompt is empty")
            else:
                rejection = None
                self._generating.add(session_id)
                self._cancelled.discard(session_id)
                self._latest = session_id
        if rejection is not None:
            return self._reject(rejection, session_id)

        started = time.monotonic()
        try:
            result = await self._run(request, model, on_token)
        except EngineError as exc:
            logger.warning("Generation failed for session %s: %s", _short(session_id), exc)
            result = GenerationResult.failure(exc.kind, str(exc), session_id=session_id)
        except Exception as exc:
            logger.exception("Unexpected generation failure for session %s", _short(session_id))
            result = GenerationResult.failure("runtime", f"Error: {exc}", session_id=session_id)
        finally:
            with self._lock:
                self._generating.discard(session_id)
                self._cancelled.discard(session_id)
                if self._latest == session_id:
                    self._latest = None

        elapsed = time.monotonic() - started
        self.telemetry.generation_event(
            result.status.value,
            session_id=session_id,
            model=model.name,
            kind=result.error_kind,
            chars=len(result.text),
            seconds=round(elapsed, 3),
        )
        logger.info(
            "Generation %s for session %s in %.2fs (%s chars)",
            result.status.value,
            _short(session_id),
            elapsed,
            len(result.text),
        )
        return result

    async def generate_once(self, prompt: str) -> GenerationResult:
        """Single-turn generation under a throwaway session id."""
        return await self.generate(GenerationRequest.build(f"once-{uuid.uuid4().hex}", prompt))

    async def _run(
        self,
        request: GenerationRequest,
        model: ModelInfo,
        on_token: TokenCallback | None,
    ) -> GenerationResult:
        session_id = request.session_id
        prompt = self.prompt_builder.build(request.history, request.prompt)
        binary = self.locator.locate()
        if binary is None:
            raise ConfigurationError("Error: llama.cpp not installed")
        if not Path(model.path).is_file():
            raise ConfigurationError("Error: Model file not found")

        argv = self.build_argv(binary, Path(model.path), prompt)
        try:
            process = await self.supervisor.start(
                session_id,
                argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProcessError(f"Error: Failed to start llama-cli: {exc}") from exc

        with self._lock:
            stopped_early = session_id in self._cancelled
        if stopped_early:
            self.supervisor.stop(session_id)

        collector = OutputCollector()
        stderr_task = asyncio.create_task(self._pump_stderr(process.stderr, session_id))
        try:
            if process.stdout is None:
                raise ProcessError("Error: llama-cli started without an output pipe")
            if on_token is not None:
                await collector.stream(process.stdout, on_token)
                returncode = await process.wait()
            else:
                # Read while waiting so a full pipe cannot stall the child.
                _, returncode = await asyncio.gather(collector.read_all(process.stdout), process.wait())
            await stderr_task
        except BaseException:
            # Cancelled, or the token callback raised: the child must not outlive us.
            if self.supervisor.get(session_id) is process:
                self.supervisor.stop(session_id)
            stderr_task.cancel()
            raise
        finally:
            self.supervisor.release(session_id, process)

        raw = collector.text
        with self._lock:
            cancelled = session_id in self._cancelled
        if cancelled:
            return GenerationResult(
                status=GenerationStatus.CANCELLED,
                text=raw,
                session_id=session_id,
                metadata={"returncode": returncode},
            )
        cleaned = clean_response(raw)
        if returncode != 0:
            return GenerationResult.failure(
                ProcessError.kind,
                f"Error: llama-cli exited with status {returncode}",
                session_id=session_id,
                text=cleaned,
            )
        return GenerationResult(
            status=GenerationStatus.COMPLETED,
            text=cleaned or STOPPED_BY_USER,
            session_id=session_id,
            metadata={"returncode": returncode, "raw_chars": len(raw)},
        )

    @staticmethod
    async def _pump_stderr(stream: asyncio.StreamReader | None, session_id: str) -> None:
        if stream is None:
            return
        decoder = Utf8ChunkDecoder()
        while True:
            data = await stream.read(READ_CHUNK_BYTES)
            if not data:
                break
            text = decoder.feed(data).rstrip()
            if text:
                logger.debug("[llama-cli %s] %s", _short(session_id), text)

    # ------------------------------------------------------------ cancellation
    def stop_generation(self, session_id: str | None = None) -> bool:
        """Terminate a session's process (or the most recent one).

        Without a session id the target is the session owning the most
        recently started process, falling back to the latest accepted
        request while its spawn is still pending. A process that had already
        exited keeps its result.
        """
        target = session_id
        if target is None:
            target = self.supervisor.most_recent_session()
        if target is None:
            with self._lock:
                target = self._latest
        if target is None:
            logger.info("Stop requested with no generation running")
            return False
        with self._lock:
            if target in self._generating:
                self._cancelled.add(target)
        process = self.supervisor.get(target)
        stopped = self.supervisor.stop(target)
        if not stopped and process is not None:
            with self._lock:
                self._cancelled.discard(target)
        logger.info("Stop requested for session %s (signalled=%s)", _short(target), stopped)
        return stopped

    def stop_all_sessions(self) -> int:
        with self._lock:
            self._cancelled.update(self._generating)
        return self.supervisor.stop_all()


__all__ = ["GATE_GLOBAL", "GATE_SESSION", "GenerationCoordinator"]
