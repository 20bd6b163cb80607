"""Centralized constant definitions used across the runtime."""

from __future__ import annotations

import sys
from pathlib import Path

APP_NAME = "Ember"

LLAMA_CPP_SOURCE_URL = "https://github.com/ggerganov/llama.cpp.git"
LLAMA_CLI_NAME = "llama-cli"

CMAKE_VERSION = "3.27.7"
CMAKE_RELEASE_URL = "https://github.com/Kitware/CMake/releases/download/v{version}/cmake-{version}-{arch}.tar.gz"

CMAKE_CANDIDATE_PATHS: tuple[str, ...] = (
    "/usr/local/bin/cmake",
    "/opt/homebrew/bin/cmake",
    "/usr/bin/cmake",
    "~/.local/bin/cmake",
    "/Applications/CMake.app/Contents/bin/cmake",
)

# Marker paths that must exist in a complete llama.cpp checkout.
SOURCE_MARKERS: tuple[str, ...] = ("CMakeLists.txt", "src")

# Sampling defaults passed to llama-cli on every generation.
DEFAULT_CONTEXT_LENGTH = 4096
DEFAULT_MAX_TOKENS = 2048
DEFAULT_TEMPERATURE = 0.8
DEFAULT_TOP_P = 0.9
DEFAULT_TOP_K = 40
DEFAULT_REPEAT_PENALTY = 1.0
DEFAULT_REPEAT_LAST_N = 64
DEFAULT_GPU_LAYERS = 99

USER_TAG = "User:"
ASSISTANT_TAG = "Assistant:"

STOPPED_BY_USER = "Generating stopped by user."

# Sentinels emitted by llama-cli and the common chat templates.
END_MARKERS: tuple[str, ...] = (
    "EOF",
    "[end of text]",
    "<|endoftext|>",
    "<|end|>",
    "<|eot_id|>",
    "</s>",
    "<|im_end|>",
)

# Interactive-mode continuation prompts leaked into simple-io output.
PROMPT_ARTIFACTS: tuple[str, ...] = ("\n\n>", "\n>", "\n  >", "  >")

TRUNCATED_STOP_PHRASES: tuple[str, ...] = ("by the user", "by user")

FENCE_MARKER = "```"

TEMPLATE_METADATA_KEYS: tuple[str, ...] = ("tokenizer.chat_template", "chat_template")
TEMPLATE_MIN_LENGTH = 10

# Share of the overall install progress bar owned by each stage.
CLONE_BAND: tuple[float, float] = (0.02, 0.94)
BUILD_BAND: tuple[float, float] = (0.96, 0.99)
CLONE_EXPECTED_SECONDS = 420.0
BUILD_EXPECTED_SECONDS = 300.0

# git progress phases mapped onto the clone band, as fractions of that band.
CLONE_PHASES: dict[str, tuple[float, float]] = {
    "Counting objects": (0.0, 0.1),
    "Compressing objects": (0.1, 0.2),
    "Receiving objects": (0.2, 0.9),
    "Resolving deltas": (0.9, 1.0),
}


def default_install_root() -> Path:
    """Return the per-user application-support directory for the engine."""
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / APP_NAME
    if sys.platform.startswith("win"):
        return home / "AppData" / "Local" / APP_NAME
    return home / ".local" / "share" / APP_NAME.lower()


__all__ = [
    "APP_NAME",
    "ASSISTANT_TAG",
    "BUILD_BAND",
    "BUILD_EXPECTED_SECONDS",
    "CLONE_BAND",
    "CLONE_EXPECTED_SECONDS",
    "CLONE_PHASES",
    "CMAKE_CANDIDATE_PATHS",
    "CMAKE_RELEASE_URL",
    "CMAKE_VERSION",
    "DEFAULT_CONTEXT_LENGTH",
    "DEFAULT_GPU_LAYERS",
    "DEFAULT_MAX_TOKENS",
    "DEFAULT_REPEAT_LAST_N",
    "DEFAULT_REPEAT_PENALTY",
    "DEFAULT_TEMPERATURE",
    "DEFAULT_TOP_K",
    "DEFAULT_TOP_P",
    "END_MARKERS",
    "FENCE_MARKER",
    "LLAMA_CLI_NAME",
    "LLAMA_CPP_SOURCE_URL",
    "PROMPT_ARTIFACTS",
    "SOURCE_MARKERS",
    "STOPPED_BY_USER",
    "TEMPLATE_METADATA_KEYS",
    "TEMPLATE_MIN_LENGTH",
    "TRUNCATED_STOP_PHRASES",
    "USER_TAG",
    "default_install_root",
]
