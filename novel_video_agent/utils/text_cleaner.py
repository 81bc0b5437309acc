"""
Text cleanup before speech synthesis.
"""

import re

# ASCII and full-width brackets hold stage directions, not spoken words
_BRACKETED = [
    re.compile(r"\([^)]*\)"),
    re.compile(r"\[[^\]]*\]"),
    re.compile(r"\{[^}]*\}"),
    re.compile(r"（[^）]*）"),
    re.compile(r"【[^】]*】"),
]


def clean_text_for_tts(text: str) -> str:
    """Strip bracketed asides and '&', then normalize whitespace.

    Returns the original text, stripped, when cleaning would leave nothing
    to speak.

    Examples:
        >>> clean_text_for_tts("He left (quietly) &  never   returned.")
        'He left never returned.'
        >>> clean_text_for_tts("他笑了（轻声）。")
        '他笑了。'
    """
    cleaned = text
    for pattern in _BRACKETED:
        cleaned = pattern.sub("", cleaned)
    cleaned = cleaned.replace("&", "")
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned or text.strip()
