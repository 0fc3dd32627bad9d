import pytest

from advisor.handoff import HandoffReason
from advisor.transcript import MessageAssembler, Role, TranscriptEventKind


def test_deltas_accumulate_in_arrival_order():
    transcript = MessageAssembler()
    message_id = transcript.begin_assistant_turn()
    for fragment in ["Hel", "", "lo", " there"]:
        transcript.apply_delta(message_id, fragment)
    assert transcript.finalize(message_id).content == "Hello there"
    assert transcript.in_flight_id is None


def test_only_one_assistant_message_in_flight():
    transcript = MessageAssembler()
    transcript.begin_assistant_turn()
    with pytest.raises(RuntimeError):
        transcript.begin_assistant_turn()


def test_finalized_message_is_immutable():
    transcript = MessageAssembler()
    message_id = transcript.begin_assistant_turn()
    transcript.apply_delta(message_id, "done")
    transcript.finalize(message_id)
    with pytest.raises(RuntimeError):
        transcript.apply_delta(message_id, "more")
    with pytest.raises(RuntimeError):
        transcript.replace_content(message_id, "other")


def test_history_skips_greeting_offers_failures_and_in_flight():
    transcript = MessageAssembler()
    transcript.add_greeting("Welcome!")
    transcript.append_user("Hi")
    ok_id = transcript.begin_assistant_turn()
    transcript.apply_delta(ok_id, "Hello")
    transcript.finalize(ok_id)
    transcript.append_handoff_offer(HandoffReason.SITE_VISIT)
    transcript.append_user("again")
    failed_id = transcript.begin_assistant_turn()
    transcript.fail(failed_id, "Rate limit exceeded.", "rate_limited")
    transcript.append_user("third")
    transcript.begin_assistant_turn()

    assert transcript.history() == [
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello"},
        {"role": "user", "content": "again"},
        {"role": "user", "content": "third"},
    ]


def test_failed_turn_shows_error_text_and_is_closed():
    transcript = MessageAssembler()
    message_id = transcript.begin_assistant_turn()
    transcript.apply_delta(message_id, "partial")
    message = transcript.fail(message_id, "AI service temporarily unavailable.", "upstream_unavailable")
    assert message.content == "AI service temporarily unavailable."
    assert message.finalized
    assert message.metadata["error"] == "upstream_unavailable"


def test_handoff_offer_carries_reason_and_no_content():
    transcript = MessageAssembler()
    offer = transcript.append_handoff_offer(HandoffReason.LOW_CONFIDENCE)
    assert offer.role is Role.ASSISTANT
    assert offer.content == ""
    assert offer.handoff_trigger is HandoffReason.LOW_CONFIDENCE
    assert offer.to_dict()["handoff_trigger"] == "lowConfidence"


def test_listeners_get_copies_and_a_failing_listener_is_isolated():
    seen = []

    def broken(event):
        raise ValueError("listener bug")

    transcript = MessageAssembler(listener=broken)
    unsubscribe = transcript.subscribe(seen.append)
    message_id = transcript.begin_assistant_turn()
    transcript.apply_delta(message_id, "a")
    transcript.apply_delta(message_id, "b")

    assert [e.kind for e in seen] == [
        TranscriptEventKind.ASSISTANT_STARTED,
        TranscriptEventKind.DELTA,
        TranscriptEventKind.DELTA,
    ]
    assert [e.message.content for e in seen] == ["", "a", "ab"]
    assert seen[2].fragment == "b"

    seen[2].message.content = "tampered"
    assert transcript.get(message_id).content == "ab"

    unsubscribe()
    transcript.finalize(message_id)
    assert len(seen) == 3


def test_unknown_message_id():
    with pytest.raises(KeyError):
        MessageAssembler().apply_delta("assistant-missing", "x")
