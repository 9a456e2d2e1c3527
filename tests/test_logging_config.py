import json
import logging

from wacanda.logging_config import ContextLogger, JSONFormatter, get_logger


def _record(**extra):
    record = logging.LogRecord("wacanda.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "wacanda.test"
        assert data["message"] == "hello world"
        assert "context" not in data

    def test_context_and_non_json_values(self):
        data = json.loads(JSONFormatter().format(_record(context={"owner_id": object.__name__, "count": 3})))
        assert data["context"] == {"owner_id": "object", "count": 3}


class TestContextLogger:
    def test_fixed_and_call_context_are_merged(self):
        log = ContextLogger(get_logger("test"), {"instance_key": "acme-main"})

        msg, kwargs = log.process("synced", {"context": {"inserted": 2}})

        assert kwargs["extra"]["context"] == {"instance_key": "acme-main", "inserted": 2}

    def test_bind_adds_context(self):
        log = ContextLogger(get_logger("test"), {"instance_key": "acme-main"}).bind(remote_jid="x@s.whatsapp.net")

        _, kwargs = log.process("failed", {})

        assert kwargs["extra"]["context"] == {"instance_key": "acme-main", "remote_jid": "x@s.whatsapp.net"}

    def test_logger_namespace(self):
        assert get_logger("reconciliation").name == "wacanda.reconciliation"
