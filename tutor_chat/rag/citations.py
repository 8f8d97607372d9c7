"""
Citation extraction for generated answers.

The model cites sources inline as [Video Title @ M:SS] or [Video Title @ H:MM:SS].
Markers are resolved against the retrieved chunks by title.
"""
import re
from typing import List, Optional, Sequence

from tutor_chat.models import Citation, RetrievedChunk


# [Title @ 3:45] or [Title @ 1:02:03]; title may not contain ']' or '@'
CITATION_PATTERN = re.compile(r'\[([^\]@]+)@\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\]')

SNIPPET_LENGTH = 200


def marker_offset_seconds(first: str, second: str, third: Optional[str] = None) -> int:
    """Seconds for M:SS, or H:MM:SS when a third group is present."""
    if third is not None:
        return int(first) * 3600 + int(second) * 60 + int(third)
    return int(first) * 60 + int(second)


def extract_citations(generated_text: str, chunks: Sequence[RetrievedChunk]) -> List[Citation]:
    """
    Resolve bracketed timestamp markers to citations.

    A marker matches the first chunk whose title contains the marker title
    (case-insensitive). Unmatched markers are dropped; repeats of the same
    source and offset are collapsed, keeping first-appearance order.
    """
    citations = []
    seen = set()

    for match in CITATION_PATTERN.finditer(generated_text):
        title = match.group(1).strip().lower()
        if not title:
            continue

        chunk = next(
            (c for c in chunks if c.source_title and title in c.source_title.lower()),
            None
        )
        if chunk is None:
            continue

        offset = marker_offset_seconds(match.group(2), match.group(3), match.group(4))
        if (chunk.source_id, offset) in seen:
            continue
        seen.add((chunk.source_id, offset))

        citations.append(Citation(
            source_id=chunk.source_id,
            source_title=chunk.source_title,
            offset_seconds=offset,
            snippet=chunk.text[:SNIPPET_LENGTH],
        ))

    return citations
