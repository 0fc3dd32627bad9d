import pytest

from advisor.errors import FramingAnomaly
from advisor.frames import FrameKind, classify_line, extract_delta_text, parse_delta_payload


@pytest.mark.parametrize("line", ["", "   ", ": keep-alive", ":"])
def test_blank_and_comment_lines_are_comments(line):
    assert classify_line(line).kind is FrameKind.COMMENT


@pytest.mark.parametrize("line", ["event: message", "data:{}", "id: 42", "retry: 1000"])
def test_lines_without_data_prefix_are_malformed(line):
    assert classify_line(line).kind is FrameKind.MALFORMED


def test_terminator_tolerates_surrounding_whitespace_and_cr():
    assert classify_line("data:  [DONE]  \r").kind is FrameKind.TERMINATOR


def test_delta_text_is_read_from_first_choice():
    frame = classify_line('data: {"choices":[{"delta":{"content":"Hel"}},{"delta":{"content":"x"}}]}')
    assert frame.kind is FrameKind.DELTA
    assert frame.text == "Hel"


@pytest.mark.parametrize(
    "event",
    [
        {},
        {"choices": []},
        {"choices": [{"delta": {"role": "assistant"}}]},
        {"choices": [{"delta": {"content": None}}]},
        {"choices": [{"delta": {"content": 5}}]},
        {"choices": "nope"},
        ["not", "a", "dict"],
    ],
)
def test_missing_or_non_string_content_is_empty(event):
    assert extract_delta_text(event) == ""


def test_unparseable_json_is_incomplete_not_dropped():
    frame = classify_line('data: {"choices":[{"delta":{"content":"B')
    assert frame.kind is FrameKind.INCOMPLETE
    assert frame.raw.startswith("data: ")


def test_control_characters_only_parse_in_lenient_mode():
    payload = '{"choices":[{"delta":{"content":"a\nb"}}]}'
    with pytest.raises(FramingAnomaly):
        parse_delta_payload(payload)
    assert parse_delta_payload(payload, strict=False) == "a\nb"
