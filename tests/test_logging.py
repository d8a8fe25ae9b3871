import json
import logging

from suraksha import config
from suraksha.logging_config import AuditLogger, StructuredFormatter, request_context, request_id_var
from suraksha.security import REDACTED, sanitize_for_logging


def test_sanitize_redacts_secret_fields():
    clean = sanitize_for_logging({
        "username": "officer42",
        "password": "hunter2hunter2",
        "nested": {"otp": "123456", "reason": "mismatch"},
        "items": [{"token": "abc.def.ghi"}, "plain"],
        "code": None,
    })
    assert clean["username"] == "officer42"
    assert clean["password"] == REDACTED
    assert clean["nested"] == {"otp": REDACTED, "reason": "mismatch"}
    assert clean["items"] == [{"token": REDACTED}, "plain"]
    assert clean["code"] is None


def test_audit_events_carry_request_id_and_redact(caplog):
    audit = AuditLogger("suraksha.audit.test")
    with caplog.at_level(logging.INFO, logger="suraksha.audit.test"):
        with request_context("req-42") as request_id:
            audit.security_event("password_reset_requested", severity="low", password="hunter2hunter2")
    assert request_id == "req-42"

    record = caplog.records[-1]
    assert record.extra_fields["request_id"] == "req-42"
    assert record.extra_fields["password"] == REDACTED
    assert record.getMessage() == "SECURITY_EVENT: Security event: password_reset_requested"

    line = json.loads(StructuredFormatter().format(record))
    assert line["request_id"] == "req-42"
    assert "hunter2hunter2" not in json.dumps(line)


def test_request_context_resets():
    assert request_id_var.get() == ""
    with request_context() as outer:
        assert len(outer) == 32
        with request_context("inner"):
            assert request_id_var.get() == "inner"
        assert request_id_var.get() == outer
    assert request_id_var.get() == ""


def test_validate_config_reports_missing_files(tmp_path):
    db_file = tmp_path / "present.db"
    db_file.write_bytes(b"")
    result = config.validate_config(db_path=str(db_file), signing_key_path=str(tmp_path / "absent.json"))
    assert result == {"database": True, "token_signing_key": False}
