"""Find an installed llama-cli binary on disk."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Sequence

from app.constants import LLAMA_CLI_NAME

logger = logging.getLogger("ember.locator")


def stable_binary_path(install_root: Path) -> Path:
    """Location the installer copies the finished binary to."""
    return Path(install_root) / "bin" / LLAMA_CLI_NAME


def build_output_path(install_root: Path) -> Path:
    """Location CMake leaves the binary inside the source checkout."""
    return Path(install_root) / "llama.cpp" / "build" / "bin" / LLAMA_CLI_NAME


class ToolchainLocator:
    """Check a short ordered list of install locations for llama-cli."""

    def __init__(self, install_root: Path, *, extra_candidates: Iterable[Path | str] = ()) -> None:
        self.install_root = Path(install_root)
        self._extra: tuple[Path, ...] = tuple(Path(str(p)).expanduser() for p in extra_candidates if str(p))

    @property
    def candidates(self) -> Sequence[Path]:
        return (
            *self._extra,
            stable_binary_path(self.install_root),
            build_output_path(self.install_root),
        )

    def locate(self) -> Path | None:
        for path in self.candidates:
            if path.is_file():
                logger.debug("Found llama-cli at %s", path)
                return path.resolve()
        logger.debug("llama-cli not found under %s", self.install_root)
        return None

    def is_installed(self) -> bool:
        return self.locate() is not None


__all__ = ["ToolchainLocator", "build_output_path", "stable_binary_path"]
