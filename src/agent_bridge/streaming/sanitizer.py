"""Strip terminal control sequences and UI chrome from raw CLI output."""

from __future__ import annotations

import re

_REPLACEMENTS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\x1b\[[0-9;?]*[A-Za-z]"), ""),
    (re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"), ""),
    (re.compile(r"\x1b[()][A-Za-z0-9]"), ""),
    (re.compile(r"\t"), " "),
    (re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]"), ""),
]

_SPINNER_GLYPHS = re.compile(r"[▣⬝■█▀━┃]")
_KEYBOARD_HINTS = re.compile(r"esc interrupt|ctrl\+t|ctrl\+p", re.IGNORECASE)
_BLANK_RUNS = re.compile(r"\n{3,}")

_USAGE_FOOTER = re.compile(
    r"Total usage est:|Usage by model:|Total duration \(API\):|Total duration \(wall\):"
    r"|Premium requests|Total code changes:"
    r"|\b\d+(?:\.\d+)?k?\s+input\b|\b\d+(?:\.\d+)?k?\s+output\b|\b\d+(?:\.\d+)?k?\s+cache read\b",
    re.IGNORECASE,
)


def strip_ansi(text: str) -> str:
    """Remove escape sequences and non-printing control characters.

    Newlines and carriage returns survive; tabs become spaces.
    """

    value = text
    for pattern, replacement in _REPLACEMENTS:
        value = pattern.sub(replacement, value)
    return value


def sanitize_output(text: str) -> str:
    """Reduce one buffer of terminal output to its semantic text."""

    cleaned = strip_ansi(text).replace("\r", "")
    kept = [
        line
        for line in cleaned.split("\n")
        if not _SPINNER_GLYPHS.search(line) and not _KEYBOARD_HINTS.search(line)
    ]
    return _BLANK_RUNS.sub("\n\n", "\n".join(kept)).strip()


def sanitize_stream_output(text: str) -> str:
    """Clean streamed output without trimming so consecutive buffers join cleanly.

    Lines carrying spinner glyphs become bullets, usage footers are cut off
    and blank lines are dropped. A trailing newline in the raw buffer is kept.
    """

    cleaned = strip_ansi(text).replace("\r", "\n")
    kept: list[str] = []
    for line in cleaned.split("\n"):
        without_glyphs = _SPINNER_GLYPHS.sub(" ", line)
        if not without_glyphs.strip() or _KEYBOARD_HINTS.search(line):
            continue
        candidate = (
            f"• {without_glyphs.strip()}" if _SPINNER_GLYPHS.search(line) else without_glyphs
        )
        usage = _USAGE_FOOTER.search(candidate)
        if usage is not None:
            candidate = candidate[: usage.start()].rstrip()
            if not candidate.strip("• "):
                continue
        kept.append(candidate)
    if not kept:
        return ""
    joined = "\n".join(kept)
    return f"{joined}\n" if cleaned.endswith("\n") else joined
