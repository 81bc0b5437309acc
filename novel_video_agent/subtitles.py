"""
Subtitle generator.

Lays narration text out on a running timeline built from each shot's
recorded audio duration and writes one aggregate caption track (SRT by
default, ASS optional) per narration.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from novel_video_agent.dependencies import require_ready
from novel_video_agent.errors import InvalidInputError
from novel_video_agent.models import NarrationContent, iter_shots
from novel_video_agent.narration import get_active_narration, narration_content
from novel_video_agent.resources import upload_resource
from novel_video_agent.storage import BlobStore
from novel_video_agent.store import RecordStore
from novel_video_agent.utils.logger import get_logger

logger = get_logger(__name__)

SUBTITLE_FORMATS = ("srt", "ass")
MAX_CUE_CHARS = 42

_BREAK_RE = re.compile(r"(?<=[，。！？、；,.!?;:：])|(?<=\s)")

ASS_HEADER = """[Script Info]
Title: {title}
ScriptType: v4.00+
PlayResX: 1920
PlayResY: 1080
WrapStyle: 0

[V4+ Styles]
Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, BackColour, Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, BorderStyle, Outline, Shadow, Alignment, MarginL, MarginR, MarginV, Encoding
Style: Default,Arial,64,&H00FFFFFF,&H000000FF,&H00000000,&H80000000,0,0,0,0,100,100,0,0,1,3,1,2,60,60,60,1

[Events]
Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text
"""


@dataclass(frozen=True)
class Cue:
    start_ms: int
    end_ms: int
    text: str
    scene_number: int
    shot_number: int


@dataclass(frozen=True)
class ShotSpan:
    """Where one shot sits on the narration timeline, [start_ms, end_ms)."""

    scene_number: int
    shot_number: int
    start_ms: int
    end_ms: int

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms


def timeline(content: NarrationContent, audios: Sequence[Dict[str, Any]]) -> List[ShotSpan]:
    """Accumulate shot durations into a running timeline.

    Args:
        content: Narration whose shot order drives the timeline.
        audios: Completed audio records carrying duration_ms.

    Returns:
        One ShotSpan per shot in scene/shot order.

    Raises:
        InvalidInputError: If a shot has no audio duration.
    """
    durations = {(a["scene_number"], a["shot_number"]): a["duration_ms"] for a in audios}
    spans = []
    cursor = 0
    for scene_number, shot_number, _ in iter_shots(content):
        duration = durations.get((scene_number, shot_number))
        if not duration or duration <= 0:
            raise InvalidInputError(f"No audio duration for scene {scene_number} shot {shot_number}")
        spans.append(ShotSpan(scene_number, shot_number, cursor, cursor + duration))
        cursor += duration
    return spans


def split_cue_text(text: str, max_chars: int = MAX_CUE_CHARS) -> List[str]:
    """Break a long narration line into caption-sized pieces.

    Pieces break after punctuation or whitespace where possible, and are
    hard-cut only when a single run exceeds max_chars.

    Examples:
        >>> split_cue_text("Short line.")
        ['Short line.']
    """
    text = " ".join(text.split()) if not re.search(r"[　-鿿]", text) else text.strip()
    if len(text) <= max_chars:
        return [text]

    pieces: List[str] = []
    current = ""
    for token in (t for t in _BREAK_RE.split(text) if t):
        while len(token) > max_chars:
            if current.strip():
                pieces.append(current.strip())
                current = ""
            pieces.append(token[:max_chars].strip())
            token = token[max_chars:]
        if len(current) + len(token) > max_chars and current.strip():
            pieces.append(current.strip())
            current = ""
        current += token
    if current.strip():
        pieces.append(current.strip())
    return [p for p in pieces if p]


def build_cues(content: NarrationContent, audios: Sequence[Dict[str, Any]],
               max_chars: int = MAX_CUE_CHARS) -> List[Cue]:
    """Cues for every shot; a split shot shares its duration by character count."""
    shots = {(scene, number): shot for scene, number, shot in iter_shots(content)}
    cues = []
    for span in timeline(content, audios):
        pieces = split_cue_text(shots[(span.scene_number, span.shot_number)].text, max_chars)
        total = sum(len(p) for p in pieces)
        consumed = 0
        start = span.start_ms
        for piece in pieces:
            consumed += len(piece)
            end = span.start_ms + round(span.duration_ms * consumed / total)
            cues.append(Cue(start, end, piece, span.scene_number, span.shot_number))
            start = end
    return cues


def _srt_time(ms: int) -> str:
    hours, rem = divmod(ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d},{millis:03d}"


def _ass_time(ms: int) -> str:
    hours, rem = divmod(ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds, millis = divmod(rem, 1000)
    return f"{hours:d}:{minutes:02d}:{seconds:02d}.{millis // 10:02d}"


def format_srt(cues: Sequence[Cue]) -> str:
    """Render cues as SubRip.

    Examples:
        >>> print(format_srt([Cue(0, 1500, "Hello", 1, 1)]))
        1
        00:00:00,000 --> 00:00:01,500
        Hello
        <BLANKLINE>
    """
    blocks = [
        f"{index}\n{_srt_time(cue.start_ms)} --> {_srt_time(cue.end_ms)}\n{cue.text}\n"
        for index, cue in enumerate(cues, start=1)
    ]
    return "\n".join(blocks)


def format_ass(cues: Sequence[Cue], title: str = "Narration") -> str:
    """Render cues as an Advanced SubStation Alpha script."""
    lines = [ASS_HEADER.format(title=title)]
    for cue in cues:
        text = cue.text.replace("\n", "\\N")
        lines.append(f"Dialogue: 0,{_ass_time(cue.start_ms)},{_ass_time(cue.end_ms)},Default,,0,0,0,,{text}")
    return "\n".join(lines) + "\n"


def generate_subtitle(store: RecordStore, blobs: BlobStore, chapter_id: str,
                      fmt: str = "srt") -> Dict[str, Any]:
    """Build and store the caption track for a chapter's narration.

    Fails fast, without creating a record, unless the narration and every
    one of its audio clips are completed. A new track supersedes the
    previous one.

    Args:
        store: Record store.
        blobs: Blob store for the caption file.
        chapter_id: Chapter to caption.
        fmt: "srt" or "ass".

    Returns:
        The completed subtitle record.

    Raises:
        PreconditionError: If narration or any audio is not completed.
    """
    if fmt not in SUBTITLE_FORMATS:
        raise InvalidInputError(f"Invalid subtitle format: {fmt}. Must be one of {SUBTITLE_FORMATS}")
    require_ready(store, "subtitle", chapter_id)

    narration = get_active_narration(store, chapter_id)
    content = narration_content(narration)
    audios = store.find("audios", narration_id=narration["id"], status="completed")
    cues = build_cues(content, audios)

    chapter = store.require("chapters", chapter_id)
    body = format_srt(cues) if fmt == "srt" else format_ass(cues, chapter["title"])

    record = store.supersede(
        "subtitles",
        {"narration_id": narration["id"]},
        [{"chapter_id": chapter_id, "user_id": narration["user_id"], "format": fmt, "status": "pending"}],
    )[0]
    try:
        resource = upload_resource(store, blobs, narration["user_id"], f"subtitle.{fmt}",
                                   body.encode("utf-8"), "text/plain")
    except Exception as e:
        store.transition("subtitles", record["id"], "failed", error_message=str(e))
        raise

    logger.info(f"[SUBTITLE] Chapter {chapter_id}: {len(cues)} cues ({fmt})")
    return store.transition("subtitles", record["id"], "completed",
                            storage_key=resource["storage_key"], resource_id=resource["id"])


def get_active_subtitle(store: RecordStore, narration_id: str):
    subtitles = store.find("subtitles", narration_id=narration_id)
    return subtitles[0] if subtitles else None
