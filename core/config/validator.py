"""
Configuration validation at application startup.

Checks broker credentials, lifecycle budgets, logging and the session
store backend before any service starts.
"""

from pathlib import Path
from typing import List, Dict, Any, Optional, Iterable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy import text

from core.logging import get_logger
from .settings import Settings

logger = get_logger(__name__, component="lifecycle")


@dataclass
class ValidationResult:
    """Result of a configuration validation check"""
    is_valid: bool
    component: str
    message: str
    severity: str = "error"  # "error", "warning", "info"


class ConfigurationValidator:
    """
    Startup configuration validator.

    Collects ValidationResults for every check; ``validate_all`` passes when
    no result has error severity.
    """

    def __init__(self, settings: Settings, supported_brokers: Optional[Iterable[str]] = None,
                 check_database: bool = True):
        self.settings = settings
        self.supported_brokers = set(supported_brokers) if supported_brokers else {"zerodha"}
        self.check_database = check_database
        self.validation_results: List[ValidationResult] = []

    async def validate_all(self) -> bool:
        """
        Run all validation checks.

        Returns:
            bool: True if all critical validations pass
        """
        logger.info("Starting configuration validation")
        self.validation_results = []

        self._validate_active_brokers()
        self._validate_file_paths()
        self._validate_broker_credentials()
        self._validate_lifecycle_settings()
        self._validate_pool_settings()
        self._validate_logging_settings()
        if self.check_database:
            await self._validate_database_connection()

        errors = [r for r in self.validation_results if r.severity == "error"]
        warnings = [r for r in self.validation_results if r.severity == "warning"]

        if errors:
            logger.error("Configuration validation failed",
                         errors=len(errors), warnings=len(warnings))
            for result in errors:
                logger.error("Configuration error", component_name=result.component,
                             detail=result.message)

        for result in warnings:
            logger.warning("Configuration warning", component_name=result.component,
                           detail=result.message)

        if not errors and not warnings:
            logger.info("All configuration validation checks passed")
        elif not errors:
            logger.info("Configuration validation passed with warnings", warnings=len(warnings))

        return len(errors) == 0

    def _validate_active_brokers(self):
        """Every active broker must have a registered connection variant"""
        if not self.settings.active_brokers:
            self.validation_results.append(ValidationResult(
                is_valid=False,
                component="Environment",
                message="ACTIVE_BROKERS must contain at least one broker",
                severity="error"
            ))
            return

        invalid_brokers = set(self.settings.active_brokers) - self.supported_brokers
        if invalid_brokers:
            self.validation_results.append(ValidationResult(
                is_valid=False,
                component="Environment",
                message=f"Unsupported brokers in ACTIVE_BROKERS: {sorted(invalid_brokers)}. "
                        f"Supported: {sorted(self.supported_brokers)}",
                severity="error"
            ))

    def _validate_file_paths(self):
        """Validate that the logs directory can be created"""
        if not self.settings.logging.file_enabled:
            return
        logs_dir = Path(self.settings.logs_dir).resolve()
        if not logs_dir.parent.exists():
            self.validation_results.append(ValidationResult(
                is_valid=False,
                component="File System",
                message=f"Parent directory for logs does not exist: {logs_dir.parent}",
                severity="error"
            ))

    def _validate_broker_credentials(self):
        if "zerodha" in self.settings.active_brokers:
            if not self.settings.zerodha.api_key or not self.settings.zerodha.api_secret:
                self.validation_results.append(ValidationResult(
                    is_valid=False,
                    component="Broker",
                    message="Zerodha API credentials not configured but zerodha broker is active",
                    severity="error"
                ))
            if not self.settings.zerodha.redirect_url:
                self.validation_results.append(ValidationResult(
                    is_valid=False,
                    component="Broker",
                    message="Zerodha redirect_url not configured; login flow will rely on the app console setting",
                    severity="warning"
                ))
            if self.settings.zerodha.session_ttl_hours <= 0:
                self.validation_results.append(ValidationResult(
                    is_valid=False,
                    component="Broker",
                    message="zerodha.session_ttl_hours must be positive",
                    severity="error"
                ))

    def _validate_lifecycle_settings(self):
        lifecycle = self.settings.lifecycle
        if lifecycle.shutdown_task_timeout_seconds <= 0:
            self.validation_results.append(ValidationResult(
                is_valid=False,
                component="Lifecycle",
                message="shutdown_task_timeout_seconds must be positive",
                severity="error"
            ))
        if lifecycle.shutdown_global_timeout_seconds < lifecycle.shutdown_task_timeout_seconds:
            self.validation_results.append(ValidationResult(
                is_valid=False,
                component="Lifecycle",
                message="shutdown_global_timeout_seconds is shorter than the per-task timeout; "
                        "every slow task will be cut by the global deadline",
                severity="warning"
            ))
        if lifecycle.sweep_interval_seconds < 60:
            self.validation_results.append(ValidationResult(
                is_valid=False,
                component="Lifecycle",
                message="Sweep interval less than 60 seconds will query the session store very often",
                severity="warning"
            ))

    def _validate_pool_settings(self):
        if self.settings.connection_pool.connect_timeout_seconds <= 0:
            self.validation_results.append(ValidationResult(
                is_valid=False,
                component="Connection Pool",
                message="connect_timeout_seconds must be positive",
                severity="error"
            ))
        if self.settings.streaming.queue_maxsize <= 0:
            self.validation_results.append(ValidationResult(
                is_valid=False,
                component="Streaming",
                message="streaming.queue_maxsize must be positive",
                severity="error"
            ))

    def _validate_logging_settings(self):
        """Validate logging configuration"""
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        if self.settings.logging.level.upper() not in valid_log_levels:
            self.validation_results.append(ValidationResult(
                is_valid=False,
                component="Logging",
                message=f"Invalid log level: {self.settings.logging.level}",
                severity="error"
            ))

    async def _validate_database_connection(self):
        """Validate database connection when sessions are stored in postgres"""
        if self.settings.session_store.backend != "postgres":
            return

        try:
            engine = create_async_engine(self.settings.database.postgres_url, pool_timeout=10)
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            await engine.dispose()

            self.validation_results.append(ValidationResult(
                is_valid=True,
                component="Database",
                message="Database connection successful",
                severity="info"
            ))

        except Exception as e:
            self.validation_results.append(ValidationResult(
                is_valid=False,
                component="Database",
                message=f"Cannot connect to database: {e}",
                severity="error"
            ))

    def get_validation_summary(self) -> Dict[str, Any]:
        """Get a summary of validation results"""
        errors = [r for r in self.validation_results if r.severity == "error"]
        warnings = [r for r in self.validation_results if r.severity == "warning"]

        return {
            "total_checks": len(self.validation_results),
            "errors": len(errors),
            "warnings": len(warnings),
            "is_valid": len(errors) == 0,
            "error_details": [{"component": r.component, "message": r.message} for r in errors],
            "warning_details": [{"component": r.component, "message": r.message} for r in warnings]
        }


async def validate_startup_configuration(settings: Settings,
                                         supported_brokers: Optional[Iterable[str]] = None) -> bool:
    """
    Convenience function to run startup configuration validation.

    Args:
        settings: Application settings to validate
        supported_brokers: Broker tags registered in the broker factory

    Returns:
        bool: True if validation passes (no critical errors)
    """
    validator = ConfigurationValidator(settings, supported_brokers=supported_brokers)
    return await validator.validate_all()
