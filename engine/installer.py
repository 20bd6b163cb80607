"""Clone, configure and build llama-cli into the per-user install root.

The pipeline is strictly sequential; any stage failure aborts the pass with
an ``InstallStageError`` naming the stage. Progress is reported through an
observer as immutable ``InstallState`` snapshots and never decreases within
a pass: percentages parsed from tool output and wall-clock estimates are
merged by taking the larger of the two.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import platform
import re
import shutil
import sys
import tarfile
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

import httpx

from app.constants import (
    BUILD_BAND,
    BUILD_EXPECTED_SECONDS,
    CLONE_BAND,
    CLONE_EXPECTED_SECONDS,
    CLONE_PHASES,
    CMAKE_CANDIDATE_PATHS,
    CMAKE_RELEASE_URL,
    CMAKE_VERSION,
    LLAMA_CLI_NAME,
    LLAMA_CPP_SOURCE_URL,
    SOURCE_MARKERS,
)
from app.telemetry import TelemetrySink
from engine.collector import Utf8ChunkDecoder
from engine.errors import InstallError, InstallInProgressError, InstallStageError
from engine.locator import stable_binary_path
from engine.types import DownloadProgress, InstallObserver, InstallStage, InstallState

logger = logging.getLogger("ember.installer")

_PERCENT = re.compile(r"(\d+)%")
_NINJA_COUNTER = re.compile(r"\[(\d+)/(\d+)\]")
_MAKE_PERCENT = re.compile(r"\[\s*(\d+)%\]")
_SEGMENT_SPLIT = re.compile(r"[\r\n]+")
OUTPUT_TAIL_LINES = 40
MAX_CARRY_CHARS = 512

# Milestone = the end of the phase a parsed line belongs to.
Milestone = tuple[float, float]


def clone_progress(line: str) -> Milestone | None:
    """Map one git progress line to ``(fraction, milestone)`` within the clone share."""
    match = _PERCENT.search(line)
    if not match:
        return None
    percent = min(float(match.group(1)), 100.0) / 100.0
    for phase, (low, high) in CLONE_PHASES.items():
        if phase in line:
            return low + percent * (high - low), high
    return None


def build_progress(line: str) -> Milestone | None:
    """Map ``[current/total]`` (or make-style ``[ NN%]``) counters to a build fraction."""
    match = _NINJA_COUNTER.search(line)
    if match:
        current, total = int(match.group(1)), int(match.group(2))
        if total > 0:
            return min(current / total, 1.0), 1.0
        return None
    match = _MAKE_PERCENT.search(line)
    if match:
        return min(float(match.group(1)), 100.0) / 100.0, 1.0
    return None


def in_band(fraction: float, band: tuple[float, float]) -> float:
    low, high = band
    return low + max(0.0, min(fraction, 1.0)) * (high - low)


def acceleration_flags(backend: str) -> list[str]:
    """CMake flags enabling the requested GPU backend."""
    backend = (backend or "auto").lower()
    if backend == "auto":
        if sys.platform == "darwin":
            backend = "metal"
        elif shutil.which("nvcc"):
            backend = "cuda"
        else:
            backend = "cpu"
    if backend == "metal":
        return ["-DGGML_METAL=ON"]
    if backend == "cuda":
        return ["-DGGML_CUDA=ON"]
    if backend == "vulkan":
        return ["-DGGML_VULKAN=ON"]
    if backend == "hipblas":
        return ["-DGGML_HIP=ON"]
    if backend == "cpu":
        return []
    raise ValueError(f"unsupported backend '{backend}'")


def cmake_archive_arch() -> str | None:
    machine = platform.machine().lower()
    if sys.platform == "darwin":
        return "macos-universal"
    if sys.platform.startswith("linux"):
        if machine in {"x86_64", "amd64"}:
            return "linux-x86_64"
        if machine in {"aarch64", "arm64"}:
            return "linux-aarch64"
    return None


@dataclass(frozen=True)
class InstallResult:
    ok: bool
    error: InstallError | None = None

    @property
    def message(self) -> str | None:
        return str(self.error) if self.error is not None else None

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"ok": self.ok, "message": self.message}
        if isinstance(self.error, InstallStageError):
            payload["error"] = self.error.as_dict()
        return payload


class ProgressTracker:
    """Own the current ``InstallState`` and keep its fraction monotone."""

    def __init__(self, observer: InstallObserver | None = None) -> None:
        self._observer = observer
        self._state = InstallState()

    @property
    def state(self) -> InstallState:
        return self._state

    def _publish(self, state: InstallState) -> None:
        self._state = state
        if self._observer is not None:
            try:
                self._observer(state)
            except Exception:  # pragma: no cover - observers must not break installs
                logger.debug("Install observer raised", exc_info=True)

    def begin(self) -> None:
        self._publish(InstallState(InstallStage.PREPARE, 0.0, "Creating directories...", True))

    def enter(self, stage: InstallStage, status_text: str, fraction: float | None = None) -> None:
        value = self._state.fraction_complete
        if fraction is not None:
            value = max(value, min(max(fraction, 0.0), 1.0))
        self._publish(self._state.evolve(stage=stage, status_text=status_text, fraction_complete=value))

    def status(self, status_text: str) -> None:
        self._publish(self._state.evolve(status_text=status_text))

    def advance(self, fraction: float) -> bool:
        value = min(max(fraction, 0.0), 1.0)
        if value <= self._state.fraction_complete:
            return False
        self._publish(self._state.evolve(fraction_complete=value))
        return True

    def complete(self) -> None:
        self._publish(InstallState(InstallStage.COMPLETE, 1.0, "Installation complete!", False))

    def fail(self, error: InstallStageError) -> None:
        self._publish(self._state.evolve(stage=InstallStage.FAILED, status_text=str(error), is_active=False))


class ProgressMeter:
    """Feed one stage's tool output and idle ticks into the tracker.

    Parsed output moves progress directly. When the tool has been silent for
    ``idle_seconds``, an elapsed-time estimate is applied instead, capped at
    the end of the latest phase seen so it never runs past an unseen
    milestone.
    """

    def __init__(
        self,
        tracker: ProgressTracker,
        *,
        band: tuple[float, float],
        expected_seconds: float,
        parse: Callable[[str], Milestone | None],
        initial_milestone: float = 1.0,
        idle_seconds: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tracker = tracker
        self.band = band
        self.expected_seconds = max(expected_seconds, 1e-6)
        self.parse = parse
        self.milestone = initial_milestone
        self.idle_seconds = idle_seconds
        self.clock = clock
        self.started = clock()
        self.last_output = self.started
        self._carry = ""

    def observe(self, text: str) -> None:
        segments = _SEGMENT_SPLIT.split(self._carry + text)
        # The last segment may be a line cut at a read boundary. It is parsed
        # now and again once the rest arrives; a fragment cannot parse past
        # its true value.
        self._carry = segments[-1][-MAX_CARRY_CHARS:]
        for segment in segments:
            parsed = self.parse(segment)
            if parsed is None:
                continue
            fraction, milestone = parsed
            self.milestone = max(self.milestone, milestone)
            self.tracker.advance(in_band(fraction, self.band))
        self.last_output = self.clock()

    def tick(self) -> None:
        now = self.clock()
        if now - self.last_output < self.idle_seconds:
            return
        estimate = min((now - self.started) / self.expected_seconds, self.milestone)
        self.tracker.advance(in_band(estimate, self.band))
        self.last_output = now


class InstallationPipeline:
    """Provision llama-cli without elevated privileges."""

    def __init__(
        self,
        install_root: Path,
        *,
        source_url: str = LLAMA_CPP_SOURCE_URL,
        cmake_version: str = CMAKE_VERSION,
        acceleration: str = "auto",
        build_jobs: int | None = None,
        git_executable: str | None = None,
        cmake_candidates: Sequence[str] = CMAKE_CANDIDATE_PATHS,
        observer: InstallObserver | None = None,
        telemetry: TelemetrySink | None = None,
        tick_seconds: float = 0.5,
        idle_seconds: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.install_root = Path(install_root)
        self.source_url = source_url
        self.cmake_version = cmake_version
        self.acceleration = acceleration
        self.build_jobs = build_jobs or os.cpu_count() or 1
        self.git_executable = git_executable
        self.cmake_candidates = tuple(cmake_candidates)
        self.tick_seconds = tick_seconds
        self.idle_seconds = idle_seconds
        self.clock = clock
        self._tracker = ProgressTracker(observer)
        self._telemetry = telemetry or TelemetrySink(None)
        self._http_transport = http_transport
        self._active = False

    @property
    def source_dir(self) -> Path:
        return self.install_root / "llama.cpp"

    @property
    def build_dir(self) -> Path:
        return self.source_dir / "build"

    @property
    def state(self) -> InstallState:
        return self._tracker.state

    @property
    def is_active(self) -> bool:
        return self._active

    async def install(self) -> InstallResult:
        if self._active:
            logger.info("Install requested while another pass is running; rejecting")
            return InstallResult(ok=False, error=InstallInProgressError("Installation already in progress"))
        self._active = True
        self._tracker.begin()
        self._telemetry.install_event("install_started", root=str(self.install_root))
        try:
            binary = await self._run_stages()
        except InstallStageError as exc:
            return self._failed(exc)
        except asyncio.CancelledError:
            self._tracker.fail(InstallStageError(self.state.stage, "Installation cancelled"))
            raise
        except Exception as exc:
            logger.exception("Unexpected failure during %s stage", self.state.stage.value)
            return self._failed(InstallStageError(self.state.stage, f"Installation failed: {exc}"))
        finally:
            self._active = False
        self._tracker.complete()
        self._telemetry.install_event("install_completed", binary=str(binary))
        logger.info("Installation completed; llama-cli at %s", binary)
        return InstallResult(ok=True)

    def _failed(self, exc: InstallStageError) -> InstallResult:
        logger.error("Install failed at %s: %s", exc.stage.value, exc)
        self._tracker.fail(exc)
        self._telemetry.install_event("install_failed", **exc.as_dict())
        return InstallResult(ok=False, error=exc)

    async def _run_stages(self) -> Path:
        self._prepare_directories()
        await self._clone_source()
        self._verify_source()
        cmake = await self._resolve_cmake()
        await self._configure(cmake)
        await self._build(cmake)
        return self._finalize()

    def _enter(self, stage: InstallStage, status_text: str, fraction: float | None = None) -> None:
        logger.info("[%s] %s", stage.value, status_text)
        self._tracker.enter(stage, status_text, fraction)
        self._telemetry.install_event(
            "stage",
            stage=stage.value,
            status=status_text,
            fraction=round(self.state.fraction_complete, 4),
        )

    def _prepare_directories(self) -> None:
        try:
            self.install_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise InstallStageError(
                InstallStage.PREPARE,
                "Failed to create directory",
                hint=f"{self.install_root}: {exc.strerror or exc}",
            ) from exc

    async def _clone_source(self) -> None:
        self._enter(InstallStage.CLONE, "Downloading llama.cpp...", CLONE_BAND[0])
        if self.source_dir.exists():
            logger.info("Removing existing checkout at %s for a clean install", self.source_dir)
            try:
                shutil.rmtree(self.source_dir)
            except OSError as exc:
                logger.warning("Could not remove existing checkout: %s", exc)
        git = self.git_executable or shutil.which("git") or "git"
        meter = ProgressMeter(
            self._tracker,
            band=CLONE_BAND,
            expected_seconds=CLONE_EXPECTED_SECONDS,
            parse=clone_progress,
            initial_milestone=next(iter(CLONE_PHASES.values()))[1],
            idle_seconds=self.idle_seconds,
            clock=self.clock,
        )
        argv = [git, "clone", "--progress", self.source_url, str(self.source_dir)]
        try:
            returncode, tail = await self._run_tool(argv, cwd=self.install_root, label="git", meter=meter)
        except OSError as exc:
            raise InstallStageError(
                InstallStage.CLONE,
                "Download failed",
                retryable=True,
                hint=f"Could not run git: {exc}",
            ) from exc
        if returncode != 0:
            raise InstallStageError(
                InstallStage.CLONE,
                "Clone failed. Check internet connection.",
                retryable=True,
                hint=tail or None,
            )
        self._enter(InstallStage.CLONE, "Clone complete! Checking for CMake...", CLONE_BAND[1])

    def _verify_source(self) -> None:
        self._enter(InstallStage.VERIFY, "Verifying source tree...")
        missing = [name for name in SOURCE_MARKERS if not (self.source_dir / name).exists()]
        if missing:
            raise InstallStageError(
                InstallStage.VERIFY,
                "Clone incomplete. Please retry.",
                retryable=True,
                hint=f"Missing {', '.join(missing)}; retry from a clean checkout.",
            )

    def find_cmake(self) -> Path | None:
        """Search well-known cmake locations, then PATH, then a local copy."""
        for candidate in self.cmake_candidates:
            path = Path(candidate).expanduser()
            if path.is_file():
                logger.info("Found CMake at %s", path)
                return path
        located = shutil.which("cmake")
        if located:
            logger.info("Found CMake on PATH at %s", located)
            return Path(located)
        local = self.install_root / "cmake" / "bin" / "cmake"
        if local.is_file():
            logger.info("Using previously installed local CMake at %s", local)
            return local
        return None

    async def _resolve_cmake(self) -> Path:
        self._enter(InstallStage.TOOLCHAIN, "Checking for CMake...")
        cmake = self.find_cmake()
        if cmake is not None:
            return cmake
        self._enter(InstallStage.TOOLCHAIN, "Installing CMake...", 0.945)
        try:
            return await self.install_cmake_locally()
        except (OSError, httpx.HTTPError, tarfile.TarError) as exc:
            raise InstallStageError(
                InstallStage.TOOLCHAIN,
                "Failed to install CMake. Please install it with your package manager (e.g. brew install cmake).",
                retryable=True,
                hint=str(exc),
            ) from exc

    async def install_cmake_locally(self) -> Path:
        """Download and unpack a pinned CMake release into the install root."""
        cmake_dir = self.install_root / "cmake"
        cmake_bin = cmake_dir / "bin" / "cmake"
        if cmake_bin.is_file():
            return cmake_bin
        arch = cmake_archive_arch()
        if arch is None:
            raise OSError(f"no prebuilt CMake for {sys.platform}/{platform.machine()}")
        url = CMAKE_RELEASE_URL.format(version=self.cmake_version, arch=arch)
        archive = self.install_root / "cmake.tar.gz"
        logger.info("Downloading CMake from %s", url)
        await self._download(url, archive)

        logger.info("Extracting CMake...")
        await asyncio.to_thread(self._extract, archive, self.install_root)
        extracted = self.install_root / f"cmake-{self.cmake_version}-{arch}"
        if cmake_dir.exists():
            shutil.rmtree(cmake_dir)
        bundle = extracted / "CMake.app" / "Contents"
        shutil.move(str(bundle if bundle.exists() else extracted), str(cmake_dir))
        archive.unlink(missing_ok=True)
        shutil.rmtree(extracted, ignore_errors=True)
        if not cmake_bin.is_file():
            raise OSError(f"CMake binary not found at expected path: {cmake_bin}")
        cmake_bin.chmod(0o755)
        logger.info("CMake installed at %s", cmake_bin)
        return cmake_bin

    @staticmethod
    def _extract(archive: Path, destination: Path) -> None:
        with tarfile.open(archive, "r:gz") as bundle:
            bundle.extractall(destination, filter="data")

    async def _download(self, url: str, destination: Path) -> None:
        destination.unlink(missing_ok=True)
        started = self.clock()
        received = 0
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(30.0, read=None),
            transport=self._http_transport,
        ) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                total = int(response.headers.get("content-length") or 0)
                with destination.open("wb") as handle:
                    async for chunk in response.aiter_bytes():
                        handle.write(chunk)
                        received += len(chunk)
                        elapsed = self.clock() - started
                        progress = DownloadProgress(
                            fraction_complete=received / total if total else 0.0,
                            bytes_downloaded=received,
                            bytes_total=total,
                            speed=(received / (1024 * 1024)) / elapsed if elapsed > 0 else 0.0,
                        )
                        self._report_download(progress)
        logger.info("Downloaded %s bytes to %s", received, destination)

    def _report_download(self, progress: DownloadProgress) -> None:
        self._tracker.advance(0.945 + progress.fraction_complete * 0.005)
        self._tracker.status(
            f"Installing CMake... {progress.fraction_complete * 100:.0f}% ({progress.speed:.1f} MB/s)"
        )

    async def _configure(self, cmake: Path) -> None:
        self._enter(InstallStage.CONFIGURE, "Configuring build with CMake...", 0.95)
        try:
            self.build_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise InstallStageError(InstallStage.CONFIGURE, "Failed to create build directory", hint=str(exc)) from exc
        argv = [
            str(cmake),
            "-S",
            str(self.source_dir),
            "-B",
            str(self.build_dir),
            "-DCMAKE_BUILD_TYPE=Release",
            "-DLLAMA_CURL=OFF",
            *acceleration_flags(self.acceleration),
        ]
        try:
            returncode, tail = await self._run_tool(argv, cwd=self.build_dir, label="cmake")
        except OSError as exc:
            raise InstallStageError(InstallStage.CONFIGURE, "CMake configuration error", hint=str(exc)) from exc
        if returncode != 0:
            raise InstallStageError(
                InstallStage.CONFIGURE,
                "CMake configuration failed",
                hint=tail or "Check the compiler toolchain and acceleration backend.",
            )

    async def _build(self, cmake: Path) -> None:
        self._enter(InstallStage.BUILD, "Building llama.cpp...", BUILD_BAND[0])
        meter = ProgressMeter(
            self._tracker,
            band=BUILD_BAND,
            expected_seconds=BUILD_EXPECTED_SECONDS,
            parse=build_progress,
            idle_seconds=self.idle_seconds,
            clock=self.clock,
        )
        argv = [
            str(cmake),
            "--build",
            str(self.build_dir),
            "--config",
            "Release",
            "--target",
            LLAMA_CLI_NAME,
            "-j",
            str(self.build_jobs),
        ]
        try:
            returncode, tail = await self._run_tool(argv, cwd=self.build_dir, label="build", meter=meter)
        except OSError as exc:
            raise InstallStageError(InstallStage.BUILD, "Build error", hint=str(exc)) from exc
        if returncode != 0:
            raise InstallStageError(
                InstallStage.BUILD,
                "Build failed",
                hint=tail or "Inspect the compiler output and rebuild manually.",
            )

    def _built_binary(self) -> Path:
        if os.name == "nt":
            return self.build_dir / "bin" / "Release" / f"{LLAMA_CLI_NAME}.exe"
        return self.build_dir / "bin" / LLAMA_CLI_NAME

    def _finalize(self) -> Path:
        self._enter(InstallStage.FINALIZE, "Finalizing installation...", BUILD_BAND[1])
        product = self._built_binary()
        if not product.is_file():
            raise InstallStageError(
                InstallStage.BUILD,
                "Build finished without producing llama-cli",
                hint=str(product),
            )
        target = stable_binary_path(self.install_root)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.unlink(missing_ok=True)
            shutil.copy2(product, target)
            target.chmod(0o755)
        except OSError as exc:
            raise InstallStageError(InstallStage.FINALIZE, "Failed to place llama-cli", hint=str(exc)) from exc
        return target

    async def _run_tool(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        label: str,
        meter: ProgressMeter | None = None,
    ) -> tuple[int, str]:
        """Run a provisioning command, draining merged output into the meter."""
        logger.debug("[%s] %s", label, " ".join(argv))
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        decoder = Utf8ChunkDecoder()

        def consume(text: str) -> None:
            if not text:
                return
            for line in _SEGMENT_SPLIT.split(text):
                if line.strip():
                    tail.append(line)
                    logger.debug("[%s] %s", label, line)
            if meter is not None:
                meter.observe(text)

        async def ticker() -> None:
            while True:
                await asyncio.sleep(self.tick_seconds)
                if meter is not None:
                    meter.tick()

        ticker_task = asyncio.create_task(ticker())
        try:
            while True:
                data = await process.stdout.read(4096)
                if not data:
                    break
                consume(decoder.feed(data))
            consume(decoder.flush())
            returncode = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            raise
        finally:
            ticker_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await ticker_task
        logger.info("[%s] exited with status %s", label, returncode)
        return returncode, "\n".join(tail)


__all__ = [
    "InstallResult",
    "InstallationPipeline",
    "ProgressMeter",
    "ProgressTracker",
    "acceleration_flags",
    "build_progress",
    "clone_progress",
    "cmake_archive_arch",
    "in_band",
]
