# tags.py
# Tolerant extraction of XML-like tags from model output.
#
# Model output is not XML: it is prose with embedded <tag>...</tag> blocks,
# often malformed. Everything here is regex based, DOTALL, non-greedy, and
# anchored on a backreference to the opening name so that sibling tags never
# merge. Nothing in this module raises on absent tags.

import re
from functools import lru_cache
from typing import Iterable, NamedTuple

_BLOCK_RE = re.compile(r"<(\w+)>(.*?)</\1>", re.DOTALL)
_OPEN_RE = re.compile(r"<(\w+)>")
_CLOSE_RE = re.compile(r"</(\w+)>")

NO_VALID_TAGS = "No valid action tags found. Actions must be wrapped in XML-style tags."


class TagBlock(NamedTuple):
    tag: str
    inner: str
    full: str


@lru_cache(maxsize=256)
def _tag_re(tag: str) -> re.Pattern[str]:
    name = re.escape(tag)
    return re.compile(rf"<{name}>(.*?)</{name}>", re.DOTALL)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def extract_tag(text: str, tag: str) -> str | None:
    """Return the trimmed inner text of the first <tag> block, or None."""
    match = _tag_re(tag).search(text)
    return match.group(1).strip() if match else None


def extract_tags(text: str, tag: str) -> list[str]:
    """Return the trimmed inner text of every <tag> block, in document order."""
    return [m.group(1).strip() for m in _tag_re(tag).finditer(text)]


def extract_tag_lines(text: str, tag: str) -> list[str]:
    """Split the first <tag> block on newlines, trimming and dropping blanks."""
    content = extract_tag(text, tag)
    if not content:
        return []
    return [line.strip() for line in content.splitlines() if line.strip()]


def extract_nested_tags(text: str, parent: str, child: str) -> list[str]:
    """
    Return every <child> found strictly inside the first <parent> block.

    Children of later <parent> blocks are never included.
    """
    parent_content = extract_tag(text, parent)
    if not parent_content:
        return []
    return extract_tags(parent_content, child)


def extract_all_tags_with_content(text: str, tag: str) -> list[str]:
    """Return each complete <tag>...</tag> block, markup included."""
    return [m.group(0).strip() for m in _tag_re(tag).finditer(text)]


def find_action_blocks(text: str) -> list[TagBlock]:
    """
    Return the top-level well-formed blocks of a response in document order.

    Children of a matched block are consumed with it, so <path> inside
    <write_file> is never reported as its own block.
    """
    return [TagBlock(m.group(1), m.group(2), m.group(0)) for m in _BLOCK_RE.finditer(text)]


# ---------------------------------------------------------------------------
# Structural validation
# ---------------------------------------------------------------------------


def _example(tag: str) -> str:
    return f"<{tag}>content</{tag}>"


def validate_structure(text: str, action_tags: Iterable[str]) -> str | None:
    """
    Check gross well-formedness of a model response.

    Returns None when at least one well-formed tag pair exists. Otherwise
    returns a diagnostic naming the offending fragment and showing the
    correctly tagged form.
    """
    if _BLOCK_RE.search(text):
        return None

    for tag in action_tags:
        if (
            re.search(rf"\b{re.escape(tag)}\b", text)
            and f"<{tag}>" not in text
            and f"</{tag}>" not in text
        ):
            return (
                f'Found "{tag}" without proper XML tag structure. '
                f"Tags must be wrapped in < > brackets. For example: {_example(tag)}"
            )

    opened = [m.group(1) for m in _OPEN_RE.finditer(text)]
    closed = [m.group(1) for m in _CLOSE_RE.finditer(text)]

    for tag in opened:
        if tag not in closed:
            return (
                f"Found opening tag <{tag}> without a matching closing tag </{tag}>. "
                f"{NO_VALID_TAGS} For example: {_example(tag)}"
            )

    for tag in closed:
        if tag not in opened:
            return (
                f"Found closing tag </{tag}> without a matching opening tag <{tag}>. "
                f"{NO_VALID_TAGS} For example: {_example(tag)}"
            )

    return f"{NO_VALID_TAGS} For example: {_example('end_task')}"
