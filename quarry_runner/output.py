"""Output normalization and comparison helpers."""
import re
from typing import Optional

_WHITESPACE = re.compile(r"\s")


def normalize_output(value: Optional[str]) -> str:
    """CRLF to LF, trailing whitespace stripped per line, trailing blank lines dropped."""
    if value is None:
        return ""
    lines = value.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    return "\n".join(line.rstrip() for line in lines).rstrip("\n")


def contains_ignoring_whitespace(output: str, expected: str) -> bool:
    """Legacy check: expected text appears in output once all whitespace is removed."""
    return _WHITESPACE.sub("", expected) in _WHITESPACE.sub("", output)


def split_output_lines(text: str, max_lines: int, max_line_length: int) -> tuple[list[str], bool]:
    """Split process output into display lines, bounded in count and width."""
    lines = text.replace("\r\n", "\n").split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    truncated = len(lines) > max_lines
    bounded = [line if len(line) <= max_line_length else line[:max_line_length] + "…" for line in lines[:max_lines]]
    return bounded, truncated
