"""Split outbound text into platform-sized chunks."""


def _find_break(window: str) -> int:
    newline = window.rfind("\n")
    if newline > 0:
        return newline
    # A split inside the leading indent would send the indent on its own.
    start = len(window) - len(window.lstrip())
    for i in range(len(window) - 1, start, -1):
        if window[i].isspace():
            return i
    return len(window)


def chunk_text(text: str | None, limit: int) -> list[str]:
    """
    Split text into chunks no longer than ``limit`` characters.

    Breaks on the last newline inside the window, then on the last
    whitespace, and only then hard-cuts at the limit. Only the single
    separator character a chunk was broken on is dropped, so indentation
    and blank lines survive into the following chunk.

    Args:
        text: Text to split.
        limit: Maximum characters per chunk. Values below 1 disable chunking.

    Returns:
        Ordered list of non-blank chunks.
    """
    if not text:
        return []
    if limit <= 0 or len(text) <= limit:
        return [text]

    chunks: list[str] = []
    remaining = text
    while len(remaining) > limit:
        break_idx = _find_break(remaining[:limit])
        chunk = remaining[:break_idx]
        if chunk.strip():
            chunks.append(chunk)
        if remaining[break_idx].isspace():
            break_idx += 1
        remaining = remaining[break_idx:]

    if remaining.strip():
        chunks.append(remaining)
    return chunks
