# broker gateway application entry point

import asyncio
import logging
import os
import sys
from typing import Callable, Optional

from core.logging import configure_logging, get_logger, get_statistics
from core.config.settings import Environment
from core.config.validator import validate_startup_configuration
from app.containers import AppContainer
from services.lifecycle import TaskStatus


def hard_exit(exit_code: int) -> None:
    """End the process now, without joining executor threads still blocked in SDK calls."""
    logging.shutdown()
    os._exit(exit_code)


class ApplicationOrchestrator:
    """Wires the container, validates configuration and runs until shutdown."""

    def __init__(self, container: Optional[AppContainer] = None,
                 exit_process: Callable[[int], None] = hard_exit):
        self.container = container or AppContainer()
        self._exit_process = exit_process
        self.settings = self.container.settings()
        configure_logging(self.settings)
        self.logger = get_logger("broker_gateway.main", component="application")

        self.exit_code = 0
        self._terminated: Optional[asyncio.Event] = None

        self.coordinator = self.container.lifecycle_coordinator()
        self.coordinator.set_terminate(self._on_terminate)

        self.logger.info("Broker gateway initializing", active_brokers=self.settings.active_brokers,
                         session_store=self.settings.session_store.backend,
                         log_channels=get_statistics().get("attached_channels", []))

    def _on_terminate(self, exit_code: int) -> None:
        self.exit_code = exit_code
        if self._terminated is not None:
            self._terminated.set()

    async def startup(self) -> bool:
        """Validate configuration, prepare storage and start the sweep loop."""
        broker_factory = self.container.broker_factory()
        config_valid = await validate_startup_configuration(
            self.settings, supported_brokers=broker_factory.supported_brokers()
        )
        if not config_valid:
            if self.settings.environment == Environment.PRODUCTION:
                self.logger.critical("Configuration validation failed - cannot proceed with startup")
                return False
            self.logger.warning("Configuration validation failed; continuing outside production")

        if self.settings.session_store.backend == "postgres":
            db_manager = self.container.db_manager()
            await db_manager.wait_for_ready(timeout=30)
            await db_manager.init()
            self.logger.info("Database initialized and verified ready")

        await self.coordinator.start()
        self.logger.info("Broker gateway started",
                         supported_brokers=broker_factory.supported_brokers())
        return True

    async def run(self) -> int:
        """Run until the lifecycle coordinator terminates; returns the exit code."""
        loop = asyncio.get_running_loop()
        self._terminated = asyncio.Event()
        self.coordinator.install_signal_handlers(loop)
        self.coordinator.install_exception_handler(loop)

        try:
            started = await self.startup()
        except Exception as e:
            self.logger.critical("Startup failed", error=str(e), exc_info=True)
            started = False

        if not started:
            await self.coordinator.trigger_shutdown("startup_failed")
            self._exit_if_forced(1)
            return 1

        self.logger.info("Application is now running. Press Ctrl+C to exit.")
        await self._terminated.wait()
        self._exit_if_forced(self.exit_code)
        return self.exit_code

    def _exit_if_forced(self, exit_code: int) -> None:
        """After a forced shutdown, exit without waiting on abandoned executor work."""
        report = self.coordinator.report
        if report is None or not report.forced:
            return
        timed_out = [o.name for o in report.outcomes if o.status == TaskStatus.TIMED_OUT]
        self.logger.critical("Shutdown deadline exceeded, exiting immediately",
                             exit_code=exit_code, timed_out=timed_out)
        self._exit_process(exit_code)


async def main() -> int:
    """Application entry point"""
    app = ApplicationOrchestrator()
    return await app.run()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
