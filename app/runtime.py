"""Runtime container wiring the engine collaborators together."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from app.settings import RuntimeSettings
from app.telemetry import TelemetrySink
from engine.coordinator import GenerationCoordinator
from engine.installer import InstallationPipeline, InstallResult
from engine.locator import ToolchainLocator
from engine.supervisor import ProcessSupervisor
from engine.templates import ChatTemplateExtractor

logger = logging.getLogger("ember.runtime")


@dataclass
class Runtime:
    """Explicitly constructed manager objects shared by the HTTP layer and CLI."""

    settings: RuntimeSettings
    locator: ToolchainLocator
    installer: InstallationPipeline
    coordinator: GenerationCoordinator
    templates: ChatTemplateExtractor
    telemetry: TelemetrySink
    install_task: asyncio.Task[InstallResult] | None = field(default=None, repr=False)
    last_install: InstallResult | None = None

    def start_install(self) -> bool:
        """Schedule an install pass on the running loop; False if one is running."""
        if self.installer.is_active or (self.install_task is not None and not self.install_task.done()):
            return False
        self.install_task = asyncio.create_task(self._install())
        return True

    async def _install(self) -> InstallResult:
        result = await self.installer.install()
        self.last_install = result
        return result

    async def shutdown(self) -> None:
        stopped = self.coordinator.stop_all_sessions()
        if stopped:
            logger.info("Stopped %s generation(s) on shutdown", stopped)
        task = self.install_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.install_task = None


def build_runtime(settings: RuntimeSettings | None = None) -> Runtime:
    settings = settings or RuntimeSettings.load()
    telemetry = TelemetrySink(settings.log_dir if settings.telemetry_enabled else None)
    overrides = [settings.llama_cli_override] if settings.llama_cli_override else []
    locator = ToolchainLocator(settings.install_root, extra_candidates=overrides)
    templates = ChatTemplateExtractor(locator.locate)
    installer = InstallationPipeline(
        settings.install_root,
        source_url=settings.source_url,
        cmake_version=settings.cmake_version,
        acceleration=settings.acceleration,
        build_jobs=settings.build_jobs,
        telemetry=telemetry,
        tick_seconds=settings.progress_tick_seconds,
        idle_seconds=settings.progress_idle_seconds,
    )
    coordinator = GenerationCoordinator(
        locator=locator,
        sampling=settings.sampling,
        supervisor=ProcessSupervisor(),
        template_extractor=templates,
        telemetry=telemetry,
        extra_args=settings.extra_args,
        gate=settings.generation_gate,
    )
    logger.debug("Runtime built for install root %s", settings.install_root)
    return Runtime(
        settings=settings,
        locator=locator,
        installer=installer,
        coordinator=coordinator,
        templates=templates,
        telemetry=telemetry,
    )


__all__ = ["Runtime", "build_runtime"]
