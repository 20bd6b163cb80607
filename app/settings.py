"""Runtime settings loader and related helpers."""

from __future__ import annotations

import json
import logging
import os
import shlex
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Sequence

from app.constants import (
    CMAKE_VERSION,
    DEFAULT_CONTEXT_LENGTH,
    DEFAULT_GPU_LAYERS,
    DEFAULT_MAX_TOKENS,
    DEFAULT_REPEAT_LAST_N,
    DEFAULT_REPEAT_PENALTY,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOP_K,
    DEFAULT_TOP_P,
    LLAMA_CPP_SOURCE_URL,
    default_install_root,
)
from engine.types import SamplingConfig

logger = logging.getLogger("ember.settings")
CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
GENERATION_GATES = ("global", "session")
ACCELERATION_BACKENDS = ("auto", "metal", "cuda", "vulkan", "hipblas", "cpu")


def settings_path() -> Path:
    """JSON settings file named by the environment, else ``config/settings.json``."""
    env_path = os.getenv("EMBER_SETTINGS_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return CONFIG_DIR / os.getenv("EMBER_SETTINGS_FILE", "settings.json")


@lru_cache(maxsize=1)
def load_settings() -> dict[str, Any]:
    path = settings_path()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable settings file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Settings file %s must hold a JSON object; ignoring it", path)
        return {}
    logger.debug("Loaded %s setting(s) from %s", len(data), path)
    return data


def _parse_float(value: Any, default: float) -> float:
    if value in (None, ""):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_int(value: Any, default: int) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_bool(value: Any, default: bool = False) -> bool:
    if value in (None, ""):
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on", "enable", "enabled"}:
            return True
        if normalized in {"0", "false", "no", "off", "disable", "disabled"}:
            return False
    return default


def _parse_choice(value: Any, choices: Sequence[str], default: str) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in choices else default


def _parse_args(value: Any) -> list[str]:
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, Sequence):
        return [str(arg) for arg in value]
    return []


def _get_setting(settings: dict[str, Any], key: str, env_var: str, default: Any = None) -> Any:
    value = settings.get(key)
    if value not in (None, ""):
        return value
    env_value = os.getenv(env_var)
    if env_value not in (None, ""):
        return env_value
    return default


@dataclass(frozen=True)
class RuntimeSettings:
    raw: dict[str, Any]
    install_root: Path
    source_url: str
    cmake_version: str
    acceleration: str
    build_jobs: int
    llama_cli_override: str
    context_length: int
    max_tokens: int
    temperature: float
    top_p: float
    top_k: int
    repeat_penalty: float
    repeat_last_n: int
    gpu_layers: int
    extra_args: list[str]
    generation_gate: str
    progress_tick_seconds: float
    progress_idle_seconds: float
    telemetry_enabled: bool
    log_dir: Path
    log_level: str
    host: str
    port: int

    @property
    def sampling(self) -> SamplingConfig:
        """Bundle the per-generation llama-cli limits."""
        return SamplingConfig(
            context_length=self.context_length,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
            top_k=self.top_k,
            repeat_penalty=self.repeat_penalty,
            repeat_last_n=self.repeat_last_n,
            gpu_layers=self.gpu_layers,
        )

    @classmethod
    def load(cls) -> "RuntimeSettings":
        settings = load_settings()

        def getter(key: str, env: str, default: Any = None) -> Any:
            return _get_setting(settings, key, env, default)

        install_root = Path(
            str(getter("install_root", "EMBER_INSTALL_ROOT", "") or default_install_root())
        ).expanduser()
        source_url = str(getter("source_url", "EMBER_LLAMA_SOURCE_URL", LLAMA_CPP_SOURCE_URL)).strip()
        cmake_version = str(getter("cmake_version", "EMBER_CMAKE_VERSION", CMAKE_VERSION)).strip()
        acceleration = _parse_choice(
            getter("acceleration", "EMBER_ACCELERATION", "auto"),
            ACCELERATION_BACKENDS,
            "auto",
        )
        build_jobs = max(1, _parse_int(getter("build_jobs", "EMBER_BUILD_JOBS"), os.cpu_count() or 1))
        llama_cli_override = str(getter("llama_cli_path", "EMBER_LLAMA_CLI", "") or "").strip()

        context_length = _parse_int(getter("context_length", "EMBER_CONTEXT_LENGTH"), DEFAULT_CONTEXT_LENGTH)
        max_tokens = _parse_int(getter("max_tokens", "EMBER_MAX_TOKENS"), DEFAULT_MAX_TOKENS)
        temperature = _parse_float(getter("temperature", "EMBER_TEMPERATURE"), DEFAULT_TEMPERATURE)
        top_p = _parse_float(getter("top_p", "EMBER_TOP_P"), DEFAULT_TOP_P)
        top_k = _parse_int(getter("top_k", "EMBER_TOP_K"), DEFAULT_TOP_K)
        repeat_penalty = _parse_float(getter("repeat_penalty", "EMBER_REPEAT_PENALTY"), DEFAULT_REPEAT_PENALTY)
        repeat_last_n = _parse_int(getter("repeat_last_n", "EMBER_REPEAT_LAST_N"), DEFAULT_REPEAT_LAST_N)
        gpu_layers = _parse_int(getter("gpu_layers", "EMBER_GPU_LAYERS"), DEFAULT_GPU_LAYERS)
        extra_args = _parse_args(getter("extra_args", "EMBER_LLAMA_ARGS", ""))

        generation_gate = _parse_choice(
            getter("generation_gate", "EMBER_GENERATION_GATE", "global"),
            GENERATION_GATES,
            "global",
        )
        progress_tick_seconds = _parse_float(getter("progress_tick_seconds", "EMBER_PROGRESS_TICK"), 0.5)
        progress_idle_seconds = _parse_float(getter("progress_idle_seconds", "EMBER_PROGRESS_IDLE"), 3.0)
        telemetry_enabled = _parse_bool(getter("telemetry_enabled", "EMBER_TELEMETRY"), True)
        log_dir = Path(
            str(getter("log_dir", "EMBER_LOG_DIR", "") or Path(__file__).resolve().parents[1] / "logs")
        ).expanduser()
        log_level = str(getter("log_level", "EMBER_LOG_LEVEL", "INFO")).strip().upper() or "INFO"
        host = str(getter("host", "EMBER_HOST", "127.0.0.1"))
        port = _parse_int(getter("port", "EMBER_PORT"), 8765)

        return cls(
            raw=settings,
            install_root=install_root,
            source_url=source_url,
            cmake_version=cmake_version,
            acceleration=acceleration,
            build_jobs=build_jobs,
            llama_cli_override=llama_cli_override,
            context_length=context_length,
            max_tokens=max_tokens,
            temperature=temperature,
            top_p=top_p,
            top_k=top_k,
            repeat_penalty=repeat_penalty,
            repeat_last_n=repeat_last_n,
            gpu_layers=gpu_layers,
            extra_args=extra_args,
            generation_gate=generation_gate,
            progress_tick_seconds=progress_tick_seconds,
            progress_idle_seconds=progress_idle_seconds,
            telemetry_enabled=telemetry_enabled,
            log_dir=log_dir,
            log_level=log_level,
            host=host,
            port=port,
        )


def clear_settings_cache() -> None:
    """Reset the cached settings loader."""
    load_settings.cache_clear()


__all__ = [
    "ACCELERATION_BACKENDS",
    "GENERATION_GATES",
    "RuntimeSettings",
    "clear_settings_cache",
    "load_settings",
    "settings_path",
]
