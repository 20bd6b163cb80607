"""Read the embedded chat template out of a GGUF model via llama-cli."""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Callable, Iterable

from app.constants import TEMPLATE_METADATA_KEYS, TEMPLATE_MIN_LENGTH

logger = logging.getLogger("ember.templates")


def parse_chat_template(lines: Iterable[str]) -> str | None:
    """Return the first plausible ``chat_template`` value in verbose output."""
    for line in lines:
        stripped = line.strip()
        if not any(key in stripped for key in TEMPLATE_METADATA_KEYS):
            continue
        _, sep, value = stripped.partition("=")
        if not sep:
            continue
        value = value.strip().strip("\"'")
        if len(value) > TEMPLATE_MIN_LENGTH:
            return value
    return None


class ChatTemplateExtractor:
    """Memoize chat templates per model path for the life of the process."""

    def __init__(self, binary_resolver: Callable[[], Path | None]) -> None:
        self._resolve_binary = binary_resolver
        self._cache: dict[str, str | None] = {}
        self._lock = threading.Lock()

    def cached(self, model_path: Path | str) -> tuple[bool, str | None]:
        key = str(model_path)
        with self._lock:
            if key in self._cache:
                return True, self._cache[key]
        return False, None

    async def extract(self, model_path: Path | str) -> str | None:
        hit, template = self.cached(model_path)
        if hit:
            return template
        binary = self._resolve_binary()
        if binary is None:
            # Not cached: the binary may be installed later.
            logger.debug("Skipping template extraction; llama-cli not installed")
            return None
        template = await self._run(binary, Path(model_path))
        with self._lock:
            self._cache[str(model_path)] = template
        return template

    async def _run(self, binary: Path, model_path: Path) -> str | None:
        try:
            process = await asyncio.create_subprocess_exec(
                str(binary),
                "-m",
                str(model_path),
                "--verbose",
                "-n",
                "0",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            logger.warning("Failed to run llama-cli for template extraction: %s", exc)
            return None
        output, _ = await process.communicate()
        template = parse_chat_template(output.decode("utf-8", errors="replace").splitlines())
        if template:
            logger.info("Extracted chat template for %s (%s chars)", model_path.name, len(template))
        else:
            logger.info("No chat template found in %s", model_path.name)
        return template


__all__ = ["ChatTemplateExtractor", "parse_chat_template"]
