"""Exception hierarchy raised inside the engine runtime."""

from __future__ import annotations

from engine.types import InstallStage


class EngineError(RuntimeError):
    """Base class for failures surfaced by the engine runtime."""

    kind = "runtime"


class ConfigurationError(EngineError):
    """No model selected, model not on disk, or llama-cli missing."""

    kind = "configuration"


class ConcurrencyError(EngineError):
    """A generation or installation is already running."""

    kind = "concurrency"


class ProcessError(EngineError):
    """The engine process could not be spawned or exited abnormally."""

    kind = "process"

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class InstallError(EngineError):
    kind = "install"


class InstallStageError(InstallError):
    """Raised when one installation stage fails; aborts the whole pass."""

    def __init__(
        self,
        stage: InstallStage,
        message: str,
        *,
        retryable: bool = False,
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.retryable = retryable
        self.hint = hint

    def as_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage.value,
            "message": str(self),
            "retryable": self.retryable,
            "hint": self.hint,
        }


class InstallInProgressError(InstallError, ConcurrencyError):
    """A second install() was requested while one is active."""

    kind = "concurrency"


__all__ = [
    "ConcurrencyError",
    "ConfigurationError",
    "EngineError",
    "InstallError",
    "InstallInProgressError",
    "InstallStageError",
    "ProcessError",
]
