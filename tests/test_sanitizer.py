from __future__ import annotations

import allure

from agent_bridge.streaming.sanitizer import sanitize_output, sanitize_stream_output, strip_ansi

pytestmark = [
    allure.epic("Streaming"),
    allure.feature("Output Sanitizer"),
]


def test_strip_ansi_removes_escape_and_control_sequences() -> None:
    raw = "\x1b[1;32mgreen\x1b[0m\x1b]0;title\x07 text\x00\tend\r\n"

    assert strip_ansi(raw) == "green text end\r\n"


def test_sanitize_output_drops_spinner_and_hint_lines() -> None:
    raw = "Thinking ▣▣▣\nAnswer line\nesc interrupt\n\n\n\nSecond paragraph\r\n"

    assert sanitize_output(raw) == "Answer line\n\nSecond paragraph"


def test_sanitize_output_of_chrome_only_is_empty() -> None:
    assert sanitize_output("\x1b[2K━━━━\nctrl+t to toggle\n") == ""


def test_stream_output_turns_glyph_lines_into_bullets_and_keeps_newline() -> None:
    raw = "■ Reading files\nplain line\n"

    assert sanitize_stream_output(raw) == "• Reading files\nplain line\n"


def test_stream_output_cuts_usage_footer() -> None:
    raw = "Result text\nTotal usage est: 1 premium request\n12.5k input, 300 output\n"

    assert sanitize_stream_output(raw) == "Result text\n"


def test_stream_output_without_trailing_newline_is_not_extended() -> None:
    assert sanitize_stream_output("partial") == "partial"
