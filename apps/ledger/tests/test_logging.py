import datetime as dt
from types import SimpleNamespace

from stampcard_ledger.core.logging import _build_payload


def _record(**overrides):
    record = {
        "time": dt.datetime(2026, 10, 19, 9, 30, tzinfo=dt.timezone.utc),
        "level": SimpleNamespace(name="WARNING"),
        "message": "Stamp claim rejected",
        "name": "stampcard_ledger.services.stamps.ledger",
        "extra": {"code": "ST-ABCDEFGHJK", "reason": "code_already_claimed"},
        "exception": None,
    }
    record.update(overrides)
    return record


def test_payload_carries_service_metadata_and_context() -> None:
    payload = _build_payload(_record(), {"service_name": "stampcard-ledger", "environment": "test", "version": "0.1.0"})

    assert payload["level"] == "warning"
    assert payload["service"] == "stampcard-ledger"
    assert payload["environment"] == "test"
    assert payload["code"] == "ST-ABCDEFGHJK"
    assert payload["reason"] == "code_already_claimed"
    assert "trace_id" not in payload
    assert "exception" not in payload


def test_payload_summarises_exceptions() -> None:
    error = ValueError("bad delta")
    payload = _build_payload(_record(extra={}, exception=(ValueError, error, None)), {})

    assert payload["service"] == "unknown"
    assert payload["exception"] == {"type": "ValueError", "message": "bad delta"}
