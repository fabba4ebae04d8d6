"""Tests for settings-driven logging setup."""

import structlog

from docflow.core.config import Settings
from docflow.core.logging import get_logger, setup_logging, use_json_logs


class TestUseJsonLogs:
    """Renderer choice from APP_ENV and LOG_JSON."""

    def test_development_console(self):
        """Development renders for the console unless LOG_JSON is set."""
        assert not use_json_logs(Settings(APP_ENV="development", LOG_JSON=False))
        assert use_json_logs(Settings(APP_ENV="development", LOG_JSON=True))

    def test_production_json(self):
        """Production always logs JSON lines."""
        assert use_json_logs(Settings(APP_ENV="production", LOG_JSON=False))


class TestSetupLogging:
    """structlog configuration."""

    def test_json_renderer(self):
        """json_logs=True ends the processor chain with the JSON renderer."""
        setup_logging("DEBUG", json_logs=True)
        try:
            processors = structlog.get_config()["processors"]
            assert isinstance(processors[-1], structlog.processors.JSONRenderer)
            get_logger(__name__).info("Logging configured")
        finally:
            setup_logging("INFO", json_logs=False)
