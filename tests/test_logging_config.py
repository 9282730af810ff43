import json
import logging

from app.logging_config import JSONFormatter, get_logger, tenant_logger


class _ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestJSONFormatter:
    def test_formats_context(self):
        record = logging.LogRecord("storebot.test", logging.INFO, __file__, 1, "Order created", None, None)
        record.context = {"tenant_id": "T1", "quantity": 3}

        data = json.loads(JSONFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["logger"] == "storebot.test"
        assert data["message"] == "Order created"
        assert data["context"] == {"tenant_id": "T1", "quantity": 3}


class TestTenantLogger:
    def test_binds_tenant_and_merges_context(self):
        logger = get_logger("test_tenant_logger")
        handler = _ListHandler()
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            log = tenant_logger(logger, "T1", contact_id="C1")
            log.info("Product selected", context={"product_id": "SKU-001"})
        finally:
            logger.removeHandler(handler)

        assert logger.name == "storebot.test_tenant_logger"
        assert handler.records[0].context == {"tenant_id": "T1", "contact_id": "C1", "product_id": "SKU-001"}
