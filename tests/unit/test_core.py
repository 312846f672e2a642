"""
ECOF Delivery - Core Unit Tests
===============================
Configuration, error taxonomy and log formatting.
"""

import json
import logging
import os
from unittest.mock import patch

import pytest

from core.config import Settings, get_settings, reload_settings
from core.errors import ConfigError, DeliveryError, ECOFError, NotFoundError, TransientDeliveryError, ValidationError
from core.logging import CorrelationFilter, DeliveryJSONFormatter, correlation, current_correlation_id, setup_logging


class TestSettings:
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings()

        assert settings.BACKOFF_BASE_SECONDS == 30.0
        assert settings.ERP_QUEUE_MAX_ATTEMPTS == 5
        assert settings.RESYNC_BACKOFF_BASE_SECONDS == 60.0
        assert settings.WEBHOOK_CATEGORIES == ["analytics", "objects"]
        assert settings.DEBUG is False

    def test_env_override(self):
        env = {
            "DELIVERY_CLAIM_LIMIT": "25",
            "DELIVERY_TICK_SECONDS": "0.5",
            "JSON_LOGS": "yes",
            "WEBHOOK_CATEGORIES": " analytics , ,objects,extra ",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings()

        assert settings.DELIVERY_CLAIM_LIMIT == 25
        assert settings.DELIVERY_TICK_SECONDS == 0.5
        assert settings.JSON_LOGS is True
        assert settings.WEBHOOK_CATEGORIES == ["analytics", "objects", "extra"]

    def test_invalid_numbers_fall_back(self):
        with patch.dict(os.environ, {"API_PORT": "http", "BACKOFF_MAX_SECONDS": "soon"}, clear=True):
            settings = Settings()

        assert settings.API_PORT == 8000
        assert settings.BACKOFF_MAX_SECONDS == 3600.0

    def test_validate_soft(self):
        assert Settings().validate_soft() == []

        settings = Settings(ERP_API_URL="", WEBHOOK_CATEGORIES=[], BACKOFF_MAX_SECONDS=1.0)
        warnings = settings.validate_soft()

        assert len(warnings) == 3
        assert any("ERP_API_URL" in w for w in warnings)

    def test_validate_hard(self):
        Settings().validate_hard()

        with pytest.raises(ConfigError) as exc_info:
            Settings(ERP_QUEUE_MAX_ATTEMPTS=0).validate_hard()
        assert exc_info.value.key == "ERP_QUEUE_MAX_ATTEMPTS"
        assert exc_info.value.code == "CONFIG_ERROR"

    def test_lease_must_outlast_http_timeout(self):
        Settings(DELIVERY_CLAIM_LEASE_SECONDS=16, DELIVERY_HTTP_TIMEOUT=15.0).validate_hard()

        for lease in (15, 10):
            with pytest.raises(ConfigError) as exc_info:
                Settings(DELIVERY_CLAIM_LEASE_SECONDS=lease, DELIVERY_HTTP_TIMEOUT=15.0).validate_hard()
            assert exc_info.value.key == "DELIVERY_CLAIM_LEASE_SECONDS"

    def test_reload_settings(self):
        with patch.dict(os.environ, {"ERP_QUEUE_CLAIM_LIMIT": "3"}):
            reloaded = reload_settings()
            assert get_settings() is reloaded
            assert reloaded.ERP_QUEUE_CLAIM_LIMIT == 3
        reload_settings()


class TestErrors:
    def test_to_dict(self):
        error = NotFoundError("Destination", "d-1")

        assert error.to_dict() == {
            "error": "NOT_FOUND",
            "message": "Destination not found: d-1",
            "details": {"entity": "Destination", "id": "d-1"},
        }

    def test_hierarchy(self):
        transient = TransientDeliveryError("Document doc-1 not sent to ERP yet", status_code=503)

        assert isinstance(transient, DeliveryError)
        assert isinstance(transient, ECOFError)
        assert transient.status_code == 503
        assert transient.code == "TRANSIENT_DELIVERY_ERROR"
        assert ValidationError("bad", field="status").field == "status"


class TestLogging:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("ecof.delivery.worker", logging.INFO, __file__, 1, "tick %s done", ("analytics",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_correlation_context(self):
        assert current_correlation_id() == "-"
        with correlation("tick-analytics-7"):
            record = self._record()
            CorrelationFilter().filter(record)
            assert record.correlation_id == "tick-analytics-7"
        assert current_correlation_id() == "-"

    def test_filter_keeps_explicit_correlation_id(self):
        record = self._record(correlation_id="req-9")

        with correlation("tick-erp-1"):
            CorrelationFilter().filter(record)

        assert record.correlation_id == "req-9"

    def test_json_formatter(self):
        record = self._record(correlation_id="req-1", category="analytics", attempt=3)

        entry = json.loads(DeliveryJSONFormatter().format(record))

        assert entry["message"] == "tick analytics done"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "ecof.delivery.worker"
        assert entry["correlation_id"] == "req-1"
        assert entry["category"] == "analytics"
        assert entry["attempt"] == 3
        assert entry["ts"].endswith("+00:00")
        assert "item_id" not in entry

    def test_setup_logging_replaces_its_handler(self):
        ecof_logger = logging.getLogger("ecof")
        saved = (ecof_logger.handlers[:], ecof_logger.level, ecof_logger.propagate)
        try:
            setup_logging(level="debug", json_format=False)
            setup_logging(level="warning", json_format=True)

            ours = [h for h in ecof_logger.handlers if h.get_name() == "ecof-delivery"]
            assert len(ours) == 1
            assert isinstance(ours[0].formatter, DeliveryJSONFormatter)
            assert ecof_logger.level == logging.WARNING
            assert ecof_logger.propagate is False
        finally:
            ecof_logger.handlers, ecof_logger.level, ecof_logger.propagate = saved
            logging.getLogger("uvicorn").handlers = []
            logging.getLogger("uvicorn").propagate = True
