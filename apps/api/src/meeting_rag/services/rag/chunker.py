from __future__ import annotations


def chunk_text(text: str, max_words: int) -> list[str]:
    """Split ``text`` into consecutive windows of at most ``max_words`` words.

    Words are whitespace-separated tokens and are re-joined with single
    spaces. There is no overlap between windows and only the last one may
    be shorter, so boundaries depend on token order and ``max_words`` alone.
    """
    if max_words <= 0:
        raise ValueError("max_words must be > 0")

    words = text.split()
    return [
        " ".join(words[start : start + max_words])
        for start in range(0, len(words), max_words)
    ]
