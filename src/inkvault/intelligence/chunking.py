"""Heading-aware markdown chunking.

An article is split into sections at markdown headings (each section keeps
the stack of headings enclosing it), and each section is cut into windows
of at most ``chunk_size`` words, consecutive windows sharing
``chunk_overlap`` words. Chunk indexes run across the whole article.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field

HEADING_RE = re.compile(r"^(#{1,6})\s+(.+)$")


@dataclass
class Chunk:
    """One embeddable piece of an article.

    Attributes:
        id: "<filename>#<chunk_index>"
        filename: Article filename ("<slug>.md")
        title: Article title
        heading_path: Heading lines enclosing the chunk, outermost first
        chunk_index: Position across the whole article
        text: Chunk text
    """

    id: str
    filename: str
    title: str
    chunk_index: int
    text: str
    heading_path: list[str] = field(default_factory=list)

    @property
    def content_hash(self) -> str:
        return content_hash(self.text)


@dataclass
class _Section:
    heading_path: list[str]
    text: str


def content_hash(content: str) -> str:
    """Short sha256 digest used for change detection."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def split_by_headings(content: str) -> list[_Section]:
    """Split markdown into sections delimited by headings."""
    sections: list[_Section] = []
    heading_stack: list[tuple[int, str]] = []
    current_path: list[str] = []
    current_lines: list[str] = []

    for line in content.split("\n"):
        match = HEADING_RE.match(line)
        if match is None:
            current_lines.append(line)
            continue

        if current_lines:
            sections.append(_Section(list(current_path), "\n".join(current_lines).strip()))
            current_lines = []

        level = len(match.group(1))
        while heading_stack and heading_stack[-1][0] >= level:
            heading_stack.pop()
        heading_stack.append((level, match.group(0)))
        current_path = [heading for _, heading in heading_stack]

    if current_lines:
        sections.append(_Section(list(current_path), "\n".join(current_lines).strip()))

    if not sections and content.strip():
        sections.append(_Section([], content.strip()))

    return sections


def split_into_windows(text: str, chunk_size: int, overlap: int) -> list[str]:
    """Cut text into overlapping word windows.

    Raises:
        ValueError: If overlap does not leave room to advance
    """
    if overlap >= chunk_size:
        raise ValueError("overlap must be less than chunk_size")
    if not text or not text.strip():
        return []

    words = text.split()
    if len(words) <= chunk_size:
        return [text]

    windows: list[str] = []
    start = 0
    while start < len(words):
        end = min(start + chunk_size, len(words))
        windows.append(" ".join(words[start:end]))
        if end >= len(words):
            break
        start = end - overlap
    return windows


def chunk_markdown(
    filename: str,
    title: str,
    content: str,
    chunk_size: int = 500,
    chunk_overlap: int = 50,
) -> list[Chunk]:
    """Chunk an article for embedding.

    Args:
        filename: Article filename, used as the chunk ID prefix.
        title: Article title.
        content: Markdown body.
        chunk_size: Maximum words per chunk.
        chunk_overlap: Words shared by consecutive chunks of a section.

    Returns:
        Chunks in document order. Sections without text produce none.
    """
    chunks: list[Chunk] = []
    for section in split_by_headings(content):
        for text in split_into_windows(section.text, chunk_size, chunk_overlap):
            index = len(chunks)
            chunks.append(
                Chunk(
                    id=f"{filename}#{index}",
                    filename=filename,
                    title=title,
                    chunk_index=index,
                    text=text,
                    heading_path=section.heading_path,
                )
            )
    return chunks
