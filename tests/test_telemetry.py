import json
import logging

import pytest

from telemetry import metrics
from telemetry.logging_utils import JsonFormatter, TurnContextFilter, turn_context
from telemetry.pii import sanitize_log_payload, scrub_text
from telemetry.retry import retry_with_backoff


def _format(message, **extra):
    record = logging.LogRecord("advisor.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    TurnContextFilter().filter(record)
    return json.loads(JsonFormatter().format(record))


def test_scrub_text_hashes_contact_details():
    text = scrub_text("mail asha@example.com or call +91 98200 12345")
    assert "asha@example.com" not in text
    assert "98200" not in text
    assert "[EMAIL_" in text and "[PHONE_" in text


def test_chat_text_is_summarised_not_logged():
    cleaned = sanitize_log_payload(
        {"reply": "Hello there", "messages": [{"role": "user", "content": "Hi"}], "deltas": 3, "email": "A@x.io "}
    )
    assert cleaned["reply"] == {"redacted": True, "chars": 11}
    assert cleaned["messages"] == {"redacted": True, "items": 1}
    assert cleaned["deltas"] == 3
    assert cleaned["email"].startswith("[HASH:")


def test_formatter_keeps_event_name_and_adds_turn_context():
    with turn_context(conversation_id="c1", turn=2):
        payload = _format("stream_turn_complete", deltas=4, fragment="secret words")
    assert payload["message"] == "stream_turn_complete"
    assert payload["conversation_id"] == "c1"
    assert payload["turn"] == 2
    assert payload["deltas"] == 4
    assert payload["fragment"] == {"redacted": True, "chars": 12}


def test_turn_context_is_restored_after_the_block():
    with turn_context(conversation_id="c1"):
        pass
    assert "conversation_id" not in _format("idle")


def test_retry_with_backoff_retries_listed_errors_only():
    calls = []
    delays = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("reset")
        return "ok"

    assert retry_with_backoff(flaky, retries=3, jitter=0, retry_exceptions=(ConnectionError,), sleep=delays.append) == "ok"
    assert delays == [0.25, 0.5]

    def broken():
        raise ValueError("bad payload")

    with pytest.raises(ValueError):
        retry_with_backoff(broken, retries=3, retry_exceptions=(ConnectionError,), sleep=delays.append)


def test_retry_gives_up_after_the_last_attempt():
    def down():
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        retry_with_backoff(down, retries=2, jitter=0, sleep=lambda _: None)


def test_stream_timer_writes_a_metric_row(isolated_metrics):
    timer = metrics.start_timer("advisor_stream", "test-model", "c1")
    timer.record_delta("Hel")
    timer.record_delta("lo")
    row = timer.done(outcome="rate_limited")

    assert row["deltas"] == 2
    assert row["chars_out"] == 5
    assert row["first_delta_ms"] is not None
    assert isolated_metrics.exists()
    assert metrics.fetch_metrics()[0]["outcome"] == "rate_limited"


def test_summarize_metrics_averages_per_component():
    summary = metrics.summarize_metrics(
        [
            {"component": "advisor_stream", "latency_ms": "100", "first_delta_ms": "20", "outcome": "ok"},
            {"component": "advisor_stream", "latency_ms": "300", "first_delta_ms": "", "outcome": "transport"},
        ]
    )
    assert summary["average_latency_ms"] == {"advisor_stream": 200.0}
    assert summary["average_first_delta_ms"] == {"advisor_stream": 20.0}
    assert summary["outcomes"] == {"ok": 1, "transport": 1}
    assert summary["sample_size"] == 2
