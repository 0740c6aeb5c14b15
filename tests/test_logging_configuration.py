"""
Tests for logging configuration to ensure HTTP client verbosity is properly suppressed.
"""
import logging
import io
from unittest.mock import patch
from friction_pipeline.config.logging_config import LOG_FORMAT, NOISY_LOGGERS, configure_logging


class TestLoggingConfiguration:
    """Test that configure_logging suppresses verbose HTTP logging."""

    def teardown_method(self):
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.NOTSET)

    @patch('friction_pipeline.config.logging_config.logging.basicConfig')
    def test_basic_config(self, mock_basic_config):
        """Test the root format and level."""
        configure_logging("DEBUG")
        mock_basic_config.assert_called_once_with(level=logging.DEBUG, format=LOG_FORMAT)

    @patch('friction_pipeline.config.logging_config.logging.basicConfig')
    def test_unknown_level_falls_back_to_info(self, mock_basic_config):
        configure_logging("chatty")
        mock_basic_config.assert_called_once_with(level=logging.INFO, format=LOG_FORMAT)

    @patch('friction_pipeline.config.logging_config.logging.basicConfig')
    def test_http_loggers_set_to_warning(self, mock_basic_config):
        configure_logging()

        for name in ("httpx", "httpcore", "openai"):
            assert logging.getLogger(name).level == logging.WARNING

    @patch('friction_pipeline.config.logging_config.logging.basicConfig')
    def test_pipeline_logging_configuration(self, mock_basic_config):
        """Test application logs pass while httpx INFO is suppressed."""
        # Capture logging output
        log_capture = io.StringIO()
        handler = logging.StreamHandler(log_capture)
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))

        app_logger = logging.getLogger("friction_pipeline.pipelines.analyze_portfolio")
        app_logger.setLevel(logging.INFO)
        app_logger.addHandler(handler)
        httpx_logger = logging.getLogger("httpx")
        httpx_logger.addHandler(handler)

        try:
            configure_logging()

            app_logger.info("Analyzing account Acme")
            httpx_logger.info("HTTP Request: GET https://acme.my.salesforce.com")
            httpx_logger.warning("HTTP Warning message")
        finally:
            app_logger.removeHandler(handler)
            httpx_logger.removeHandler(handler)

        output = log_capture.getvalue()
        assert "Analyzing account Acme" in output
        assert "HTTP Request" not in output
        assert "HTTP Warning message" in output
        assert " - friction_pipeline.pipelines.analyze_portfolio - INFO - " in output
