"""
Chaptering engine.

Splits raw novel text into an ordered list of chapters close to a target
count, cutting at the most natural boundary available near each target
offset. Splitting is lossless: joining the chapter texts in order gives
back the input exactly.
"""

import bisect
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from novel_video_agent.errors import InvalidInputError
from novel_video_agent.utils.logger import get_logger

logger = get_logger(__name__)

TITLE_MAX_CHARS = 30
DEFAULT_TOLERANCE = 0.2

_CN_NUMERALS = "0-9零一二三四五六七八九十百千万两〇"

HEADING_RE = re.compile(
    r"^[ \t　]*(?:"
    rf"第[ \t]*[{_CN_NUMERALS}]+[ \t]*[章回节卷]"
    rf"|章节[ \t]*[{_CN_NUMERALS}]+"
    r"|chapter[ \t]+(?:\d+|[ivxlcdm]+)\b"
    r")[^\n]*",
    re.IGNORECASE | re.MULTILINE,
)
# Heading lines longer than this are prose that happens to start with "Chapter"
_MAX_HEADING_LINE = 60

_PARAGRAPH_RE = re.compile(r"\n\s*")
_SENTENCE_RE = re.compile(r"[.!?。！？…;；]+[\"'”’」』)）]*[ \t　]*")
_WHITESPACE_RE = re.compile(r"\s+")
_CJK_RE = re.compile(r"[㐀-鿿豈-﫿]")
_WORD_RE = re.compile(r"[A-Za-z0-9']+")

# Boundary tiers, most natural first
TIER_HEADING = 0
TIER_PARAGRAPH = 1
TIER_SENTENCE = 2
TIER_WHITESPACE = 3


@dataclass(frozen=True)
class ChapterDraft:
    """One chapter produced by split_text, before it is persisted."""

    title: str
    text: str


def find_headings(text: str) -> List[tuple]:
    """Locate chapter heading lines.

    Args:
        text: Full novel text.

    Returns:
        List of (offset, heading_line) tuples in text order, where offset is
        the start of the heading line.

    Examples:
        >>> find_headings("Intro\\nChapter 1\\nText")
        [(6, 'Chapter 1')]
    """
    headings = []
    for match in HEADING_RE.finditer(text):
        line = match.group(0).strip()
        if len(line) <= _MAX_HEADING_LINE:
            headings.append((match.start(), line))
    return headings


def _boundary_tiers(text: str, headings: Sequence[tuple]) -> List[List[int]]:
    """Sorted candidate break offsets per tier, excluding 0 and len(text)."""
    n = len(text)

    def collect(positions):
        return sorted({p for p in positions if 0 < p < n})

    return [
        collect(offset for offset, _ in headings),
        collect(m.end() for m in _PARAGRAPH_RE.finditer(text)),
        collect(m.end() for m in _SENTENCE_RE.finditer(text)),
        collect(m.end() for m in _WHITESPACE_RE.finditer(text)),
    ]


def _nearest_in_window(candidates: List[int], lo: int, hi: int, center: float) -> Optional[int]:
    """Candidate in (lo, hi] closest to center; earlier wins ties."""
    start = bisect.bisect_right(candidates, lo)
    end = bisect.bisect_right(candidates, hi)
    if start >= end:
        return None
    window = candidates[start:end]
    # Only the two candidates around center can be nearest
    idx = bisect.bisect_left(window, center)
    options = window[max(0, idx - 1):idx + 1]
    return min(options, key=lambda p: (abs(p - center), p))


def _window_breaks(text: str, count: int, tiers: List[List[int]]) -> List[int]:
    """Pick count - 1 strictly increasing break offsets.

    Break i lives in its own window (int((i-0.5)L), int((i+0.5)L)] around
    the cumulative offset i*L. Windows are disjoint, non-empty and inside
    (0, len(text)), so every chapter is non-empty.
    """
    n = len(text)
    length = n / count
    breaks = []
    for i in range(1, count):
        center = i * length
        lo = int((i - 0.5) * length)
        hi = int((i + 0.5) * length)
        chosen = None
        for candidates in tiers:
            chosen = _nearest_in_window(candidates, lo, hi, center)
            if chosen is not None:
                break
        if chosen is None:
            chosen = min(max(int(round(center)), lo + 1), hi)
        breaks.append(chosen)
    return breaks


def max_chapter_count(target: int, tolerance: float = DEFAULT_TOLERANCE) -> int:
    """Largest chapter count accepted for a target.

    Examples:
        >>> max_chapter_count(5)
        6
    """
    return target + int(target * tolerance + 1e-9)


def chapter_title(text: str, sequence: int) -> str:
    """Derive a title: heading line, first non-empty line, or 'Chapter N'."""
    headings = find_headings(text)
    if headings and not text[:headings[0][0]].strip():
        return headings[0][1][:TITLE_MAX_CHARS]
    for line in text.splitlines():
        line = line.strip()
        if line:
            return line[:TITLE_MAX_CHARS]
    return f"Chapter {sequence}"


def split_text(text: str, target_chapters: int,
               tolerance: float = DEFAULT_TOLERANCE) -> List[ChapterDraft]:
    """Split novel text into chapters.

    When the text's own chapter headings yield between target_chapters and
    max_chapter_count(target_chapters) sections, it is cut exactly at the
    headings (a preface joins the first chapter). Otherwise it is cut into
    exactly min(target_chapters, len(text)) chapters at the nearest
    heading, paragraph, sentence or whitespace boundary to each
    cumulative target offset, falling back to the raw offset.

    Args:
        text: Full novel text.
        target_chapters: Desired number of chapters, at least 1.
        tolerance: Fraction above target accepted when honouring headings.

    Returns:
        Ordered list of ChapterDraft whose texts concatenate to text.

    Raises:
        InvalidInputError: If text is empty or whitespace, or the target
            is not a positive integer.

    Examples:
        >>> chapters = split_text("First part. Second part.", 2)
        >>> [c.text for c in chapters]
        ['First part. ', 'Second part.']
    """
    if isinstance(target_chapters, bool) or not isinstance(target_chapters, int) or target_chapters < 1:
        raise InvalidInputError(f"target_chapters must be a positive integer, got {target_chapters!r}")
    if text is None or not text.strip():
        raise InvalidInputError("Novel text must be non-empty")

    headings = find_headings(text)
    # Any preface belongs to the first heading's chapter
    heading_breaks = [offset for offset, _ in headings[1:]]
    sections = len(headings)

    if headings and target_chapters <= sections <= max_chapter_count(target_chapters, tolerance):
        breaks = heading_breaks
        logger.debug(f"[CHAPTER] Using {sections} heading boundaries for target {target_chapters}")
    else:
        count = min(target_chapters, len(text))
        breaks = _window_breaks(text, count, _boundary_tiers(text, headings))
        logger.debug(f"[CHAPTER] Using window boundaries for {count} chapters")

    edges = [0, *breaks, len(text)]
    chapters = []
    for sequence, (start, end) in enumerate(zip(edges, edges[1:]), start=1):
        chunk = text[start:end]
        chapters.append(ChapterDraft(title=chapter_title(chunk, sequence), text=chunk))
    return chapters


def chapter_stats(text: str) -> Dict[str, int]:
    """Character, word and line counts for a chapter.

    Each CJK character counts as one word; other words are runs of
    letters and digits.

    Examples:
        >>> chapter_stats("Hello world\\n第一章")
        {'total_chars': 15, 'word_count': 5, 'line_count': 2}
    """
    return {
        "total_chars": len(text),
        "word_count": len(_CJK_RE.findall(text)) + len(_WORD_RE.findall(text)),
        "line_count": sum(1 for line in text.splitlines() if line.strip()),
    }
