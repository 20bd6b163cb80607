"""Engine runtime package exports."""

from .cleaner import clean_response
from .coordinator import GenerationCoordinator
from .errors import (
    ConcurrencyError,
    ConfigurationError,
    EngineError,
    InstallError,
    InstallInProgressError,
    InstallStageError,
    ProcessError,
)
from .installer import InstallationPipeline, InstallResult
from .locator import ToolchainLocator
from .prompt import PromptBuilder
from .supervisor import ProcessSupervisor
from .templates import ChatTemplateExtractor
from .types import (
    FileRef,
    GenerationRequest,
    GenerationResult,
    GenerationStatus,
    InstallStage,
    InstallState,
    Message,
    ModelInfo,
)

__all__ = [
    "ChatTemplateExtractor",
    "ConcurrencyError",
    "ConfigurationError",
    "EngineError",
    "FileRef",
    "GenerationCoordinator",
    "GenerationRequest",
    "GenerationResult",
    "GenerationStatus",
    "InstallError",
    "InstallInProgressError",
    "InstallResult",
    "InstallStage",
    "InstallStageError",
    "InstallState",
    "InstallationPipeline",
    "Message",
    "ModelInfo",
    "ProcessError",
    "ProcessSupervisor",
    "PromptBuilder",
    "ToolchainLocator",
    "clean_response",
]
