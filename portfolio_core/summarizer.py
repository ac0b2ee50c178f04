"""Reduce a repository readme to a short plain-text summary.

The reduction is pure: the same readme text always produces the same
summary, and summarizing an existing summary returns it unchanged.
"""

import re
import warnings
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

DEFAULT_WORD_BUDGET = 100
TRUNCATION_MARKER = "..."

_FENCE = re.compile(r"^\s*(```|~~~)")
_HEADING = re.compile(r"^\s{0,3}#{1,6}(\s|$)")
_SETEXT_UNDERLINE = re.compile(r"^\s{0,3}(=+|-+)\s*$")
_RULE = re.compile(r"^\s{0,3}([-*_])(\s*\1){2,}\s*$")
_HTML_TAG = re.compile(r"</?[A-Za-z][^>]*>")
_REFERENCE_DEF = re.compile(r"^\s{0,3}\[[^\]]+\]:\s+\S+")
_TABLE_ROW = re.compile(r"^\s*\|.*\|\s*$")

_IMAGE = re.compile(r"!\[[^\]]*\]\([^)]*\)|!\[[^\]]*\]\[[^\]]*\]")
_LINKED_IMAGE = re.compile(r"\[\s*!\[[^\]]*\]\([^)]*\)\s*\]\([^)]*\)")
_LINK = re.compile(r"\[([^\]]+)\]\([^)]*\)")
_REFERENCE_LINK = re.compile(r"\[([^\]]+)\]\[[^\]]*\]")
_AUTOLINK = re.compile(r"<(https?://[^>]+)>")
_INLINE_CODE = re.compile(r"`+([^`]*)`+")
_STRONG = re.compile(r"(\*\*|__)(?=\S)(.+?)(?<=\S)\1")
_EMPHASIS_STAR = re.compile(r"\*(?=\S)(.+?)(?<=\S)\*")
_EMPHASIS_UNDERSCORE = re.compile(r"(?<!\w)_(?=\S)(.+?)(?<=\S)_(?!\w)")
_STRIKE = re.compile(r"~~(?=\S)(.+?)(?<=\S)~~")
_BLOCKQUOTE = re.compile(r"^\s*(>\s?)+")
_LIST_MARKER = re.compile(r"^\s*([-*+]|\d+[.)])\s+")
_WHITESPACE = re.compile(r"\s+")

# block markers that a single line of prose must not start with
_LEADING_MARKUP = re.compile(r"^(\s*(#{1,6}(?=\s|$)|>|[-*+](?=\s)|\d+[.)](?=\s)|\||```|~~~))+\s*")
_REFERENCE_LABEL = re.compile(r"^\s*\[([^\]]+)\]:(?=\s)")


def _html_to_text(fragment: str) -> str:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MarkupResemblesLocatorWarning)
        soup = BeautifulSoup(fragment, "html.parser")
    for img in soup.find_all("img"):
        img.decompose()
    return soup.get_text(" ")


def strip_inline_markup(line: str) -> str:
    line = _LINKED_IMAGE.sub("", line)
    line = _IMAGE.sub("", line)
    line = _LINK.sub(r"\1", line)
    line = _REFERENCE_LINK.sub(r"\1", line)
    line = _AUTOLINK.sub(r"\1", line)
    line = _INLINE_CODE.sub(r"\1", line)
    line = _STRONG.sub(r"\2", line)
    line = _STRIKE.sub(r"\1", line)
    line = _EMPHASIS_STAR.sub(r"\1", line)
    line = _EMPHASIS_UNDERSCORE.sub(r"\1", line)
    if _HTML_TAG.search(line):
        line = _html_to_text(line)
    return line


def _paragraphs(text: str) -> List[List[str]]:
    """Split markdown into blocks of prose lines, skipping structural lines."""
    blocks: List[List[str]] = []
    current: List[str] = []
    in_fence = False

    def flush():
        if current:
            blocks.append(list(current))
            current.clear()

    for raw_line in text.replace("\r\n", "\n").split("\n"):
        if _FENCE.match(raw_line):
            in_fence = not in_fence
            flush()
            continue
        if in_fence:
            continue
        if not raw_line.strip():
            flush()
            continue
        if current and _SETEXT_UNDERLINE.match(raw_line):
            # the preceding line was a heading
            current.pop()
            flush()
            continue
        if _HEADING.match(raw_line) or _RULE.match(raw_line) or _REFERENCE_DEF.match(raw_line):
            flush()
            continue
        if _TABLE_ROW.match(raw_line):
            flush()
            continue
        line = _BLOCKQUOTE.sub("", raw_line)
        line = _LIST_MARKER.sub("", line)
        current.append(line)
    flush()
    return blocks


def _reduce(prose: str) -> str:
    prose = _LEADING_MARKUP.sub("", prose)
    prose = _REFERENCE_LABEL.sub(r"\1:", prose)
    prose = _RULE.sub("", prose)
    prose = strip_inline_markup(prose)
    return _WHITESPACE.sub(" ", prose).strip()


def _settle(prose: str) -> str:
    """Reduce until another pass changes nothing."""
    reduced = _reduce(prose)
    while reduced != prose:
        prose, reduced = reduced, _reduce(reduced)
    return prose


def _first_prose(text: str, word_cap: Optional[int] = None) -> Tuple[str, bool]:
    for block in _paragraphs(text):
        words = " ".join(block).split()
        clipped = word_cap is not None and len(words) > word_cap
        if clipped:
            words = words[:word_cap]
        prose = _settle(" ".join(words))
        if prose:
            return prose, clipped
    return "", False


def first_paragraph(text: str, word_cap: Optional[int] = None) -> str:
    """Return the first block of readable prose with all markup removed.

    With ``word_cap`` set, only that many raw words of the block are reduced.
    """
    return _first_prose(text, word_cap)[0]


def truncate_words(text: str, budget: int = DEFAULT_WORD_BUDGET) -> str:
    words = text.split()
    if len(words) <= budget:
        return " ".join(words)
    return " ".join(words[:budget]) + TRUNCATION_MARKER


def summarize_readme(text: Optional[str], word_budget: int = DEFAULT_WORD_BUDGET) -> Optional[str]:
    """
    Reduce raw readme markdown to a one-paragraph summary.

    Only twice the word budget of raw text is reduced, so the cost does not
    grow with the size of the readme.

    Args:
        text: Raw readme content
        word_budget: Maximum number of words kept before the truncation marker

    Returns:
        The summary, or None when the readme holds no prose
    """
    if not text:
        return None
    prose, clipped = _first_prose(text, word_budget * 2)
    summary = truncate_words(prose, word_budget)
    if clipped and summary and len(prose.split()) <= word_budget:
        summary += TRUNCATION_MARKER
    return summary or None
