"""Dataclasses shared by the installer, coordinator and HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Sequence

from app.constants import STOPPED_BY_USER


class InstallStage(str, Enum):
    IDLE = "idle"
    PREPARE = "prepare"
    CLONE = "clone"
    VERIFY = "verify"
    TOOLCHAIN = "toolchain"
    CONFIGURE = "configure"
    BUILD = "build"
    FINALIZE = "finalize"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class InstallState:
    """Snapshot of an installation pass as seen by observers."""

    stage: InstallStage = InstallStage.IDLE
    fraction_complete: float = 0.0
    status_text: str = ""
    is_active: bool = False

    def evolve(self, **changes: Any) -> "InstallState":
        return replace(self, **changes)

    def as_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "fraction_complete": round(self.fraction_complete, 4),
            "status_text": self.status_text,
            "is_active": self.is_active,
        }


InstallObserver = Callable[[InstallState], None]


@dataclass(frozen=True)
class DownloadProgress:
    """Progress tuple emitted by HTTP downloads (fraction, bytes, total, MB/s)."""

    fraction_complete: float
    bytes_downloaded: int
    bytes_total: int
    speed: float


@dataclass(frozen=True)
class FileRef:
    name: str
    path: Path
    kind: str = "text"
    size_bytes: int = 0


@dataclass(frozen=True)
class Message:
    id: str
    is_from_user: bool
    text: str
    attachments: tuple[FileRef, ...] = ()


@dataclass(frozen=True)
class GenerationRequest:
    session_id: str
    prompt: str
    history: tuple[Message, ...] = ()
    streaming: bool = False

    @classmethod
    def build(
        cls,
        session_id: str,
        prompt: str,
        history: Sequence[Message] = (),
        *,
        streaming: bool = False,
    ) -> "GenerationRequest":
        return cls(session_id=session_id, prompt=prompt, history=tuple(history), streaming=streaming)


@dataclass(frozen=True)
class ModelInfo:
    """Model weights the coordinator runs against."""

    name: str
    path: Path
    is_downloaded: bool = True


@dataclass(frozen=True)
class SamplingConfig:
    context_length: int
    max_tokens: int
    temperature: float
    top_p: float
    top_k: int
    repeat_penalty: float
    repeat_last_n: int
    gpu_layers: int


class GenerationStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class GenerationResult:
    """Terminal outcome of a single generation request."""

    status: GenerationStatus
    text: str = ""
    error_kind: str | None = None
    error: str | None = None
    session_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def visible_text(self) -> str:
        """Text the caller should leave on screen for this turn."""
        if self.status is GenerationStatus.CANCELLED:
            if self.text:
                return f"{self.text}\n\n{STOPPED_BY_USER}"
            return STOPPED_BY_USER
        if self.status is GenerationStatus.FAILED:
            return self.error or self.text
        return self.text

    @classmethod
    def failure(cls, kind: str, message: str, *, session_id: str | None = None, text: str = "") -> "GenerationResult":
        return cls(
            status=GenerationStatus.FAILED,
            text=text,
            error_kind=kind,
            error=message,
            session_id=session_id,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "text": self.text,
            "visible_text": self.visible_text,
            "error_kind": self.error_kind,
            "error": self.error,
            "session_id": self.session_id,
            "metadata": dict(self.metadata),
        }


__all__ = [
    "DownloadProgress",
    "FileRef",
    "GenerationRequest",
    "GenerationResult",
    "GenerationStatus",
    "InstallObserver",
    "InstallStage",
    "InstallState",
    "Message",
    "ModelInfo",
    "SamplingConfig",
]
