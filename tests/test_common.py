"""Shared plumbing: log context binding, redaction, engine selection, spans."""

import logging

import pytest
from sqlalchemy.pool import StaticPool

from momorecon.common.config import CommonSettings
from momorecon.common.db import make_engine
from momorecon.common.logging import ContextFilter, log_context, mask_phone_numbers, sms_id_ctx, trace_id_ctx
from momorecon.common.startup import log_startup_config, safe_value
from momorecon.common.tracing import pipeline_span


def test_log_context_binds_and_restores_ids():
    with log_context(trace_id="t-1", sms_id="s-1"):
        assert trace_id_ctx.get() == "t-1"
        with log_context(sms_id="s-2", trace_id=None):
            assert sms_id_ctx.get() == "s-2"
            assert trace_id_ctx.get() == "t-1"
        assert sms_id_ctx.get() == "s-1"
    assert trace_id_ctx.get() == ""
    assert sms_id_ctx.get() == ""


def test_log_context_restores_on_error():
    with pytest.raises(RuntimeError):
        with log_context(sms_id="s-9"):
            raise RuntimeError("boom")
    assert sms_id_ctx.get() == ""


def test_context_filter_stamps_record():
    record = logging.LogRecord("momorecon", logging.INFO, __file__, 1, "hello", None, None)
    with log_context(trace_id="t-7", payment_id="p-7"):
        ContextFilter().filter(record)
    assert record.trace_id == "t-7"
    assert record.payment_id == "p-7"
    assert record.event_id == ""


def test_mask_phone_numbers_keeps_last_digits():
    text = "You have received 15,000 RWF from 0788123456 and +250722000111"
    masked = mask_phone_numbers(text)
    assert "0788123456" not in masked
    assert "*******456" in masked
    assert masked.endswith("**********111")
    assert "15,000 RWF" in masked


def test_mask_phone_numbers_ignores_transaction_ids():
    assert mask_phone_numbers("TxId: 12345678901") == "TxId: 12345678901"


def test_safe_value_hides_secrets_and_credentials():
    assert safe_value("classifier_api_key", "abc") == "<set>"
    assert safe_value("sms_webhook_token", "") == "<unset>"
    assert safe_value("postgres_dsn", "postgresql+psycopg://recon:pw@db:5432/momo") == "postgresql+psycopg://db:5432/momo"
    assert safe_value("auto_settle_threshold", 0.7) == 0.7


def test_log_startup_config_reads_parsed_settings():
    config = CommonSettings(postgres_dsn="sqlite://", service_name="reconciler", notifier_api_key="k")
    snapshot = log_startup_config(config, ["postgres_dsn", "notifier_api_key", "match_lookback_seconds"])
    assert snapshot == {
        "service": "reconciler",
        "postgres_dsn": "sqlite://",
        "notifier_api_key": "<set>",
        "match_lookback_seconds": 300,
    }


def test_make_engine_shares_one_connection_for_memory_sqlite(tmp_path):
    memory = make_engine("sqlite://")
    on_disk = make_engine(f"sqlite:///{tmp_path / 'recon.db'}")
    try:
        assert isinstance(memory.pool, StaticPool)
        assert not isinstance(on_disk.pool, StaticPool)
    finally:
        memory.dispose()
        on_disk.dispose()


def test_pipeline_span_reraises():
    with pytest.raises(ValueError):
        with pipeline_span("match", "sms-1", amount=None):
            raise ValueError("no candidates table")
