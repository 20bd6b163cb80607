"""Clone and build llama-cli into the Ember install root from the console."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from app.settings import ACCELERATION_BACKENDS, RuntimeSettings  # noqa: E402
from app.telemetry import TelemetrySink  # noqa: E402
from engine.installer import InstallationPipeline  # noqa: E402
from engine.locator import stable_binary_path  # noqa: E402
from engine.types import InstallState  # noqa: E402


class ConsoleProgress:
    """Print one line per status change, plus whole-percent progress steps."""

    def __init__(self) -> None:
        self._last_text = ""
        self._last_percent = -1

    def __call__(self, state: InstallState) -> None:
        percent = int(state.fraction_complete * 100)
        if state.status_text == self._last_text and percent == self._last_percent:
            return
        self._last_text = state.status_text
        self._last_percent = percent
        print(f"[llama-build] {percent:3d}% {state.stage.value:<9} {state.status_text}", flush=True)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = RuntimeSettings.load()
    parser = argparse.ArgumentParser(description="Build llama-cli for the Ember runtime.")
    parser.add_argument(
        "--install-root",
        type=Path,
        default=settings.install_root,
        help="Directory receiving the llama.cpp checkout, local CMake and bin/llama-cli.",
    )
    parser.add_argument("--source-url", default=settings.source_url, help="Git URL of llama.cpp.")
    parser.add_argument(
        "--backend",
        choices=ACCELERATION_BACKENDS,
        default=settings.acceleration,
        help="GPU backend to enable ('auto' picks Metal on macOS, CUDA when nvcc is present).",
    )
    parser.add_argument("--jobs", type=int, default=settings.build_jobs, help="Parallel build jobs.")
    parser.add_argument("--verbose", action="store_true", help="Echo tool output at debug level.")
    args = parser.parse_args(argv)
    args.settings = settings
    return args


async def run_install(args: argparse.Namespace) -> int:
    settings: RuntimeSettings = args.settings
    pipeline = InstallationPipeline(
        args.install_root,
        source_url=args.source_url,
        cmake_version=settings.cmake_version,
        acceleration=args.backend,
        build_jobs=args.jobs,
        observer=ConsoleProgress(),
        telemetry=TelemetrySink(settings.log_dir if settings.telemetry_enabled else None),
        tick_seconds=settings.progress_tick_seconds,
        idle_seconds=settings.progress_idle_seconds,
    )
    result = await pipeline.install()
    if not result.ok:
        print(f"[llama-build] ERROR: {result.message}", file=sys.stderr)
        hint = getattr(result.error, "hint", None)
        if hint:
            print(hint, file=sys.stderr)
        return 1
    print(f"[llama-build] llama-cli binary is located at: {stable_binary_path(args.install_root)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(run_install(args))


if __name__ == "__main__":
    sys.exit(main())
