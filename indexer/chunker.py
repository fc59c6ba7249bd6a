from __future__ import annotations
import math
import re
from typing import List

SENTENCE_BOUNDARY = re.compile(r'(?<=[.!?])\s+')

class TextChunker:
    """Sentence-aware splitter producing overlapping, bounded-length chunks.

    Output is deterministic for a given text and options, and non-empty
    input always yields at least one chunk.
    """

    def __init__(self, max_length: int = 1000, overlap: int = 100, min_chunk_length: int = 100):
        if max_length <= 0:
            raise ValueError("max_length must be positive")
        if overlap < 0 or overlap >= max_length:
            raise ValueError("overlap must be >= 0 and smaller than max_length")
        if min_chunk_length < 0:
            raise ValueError("min_chunk_length must be >= 0")
        self.max_length = max_length
        self.overlap = overlap
        self.min_chunk_length = min_chunk_length

    def _split_sentences(self, text: str) -> List[str]:
        return [s.strip() for s in SENTENCE_BOUNDARY.split(text) if s.strip()]

    def _break_long_sentence(self, sentence: str) -> List[str]:
        """Break a sentence longer than max_length at word boundaries."""
        pieces = []
        current = ""
        for word in sentence.split():
            while len(word) > self.max_length:
                if current:
                    pieces.append(current)
                    current = ""
                pieces.append(word[:self.max_length])
                word = word[self.max_length:]
            if not word:
                continue
            if current and len(current) + 1 + len(word) > self.max_length:
                pieces.append(current)
                current = word
            else:
                current = f"{current} {word}" if current else word
        if current:
            pieces.append(current)
        return pieces

    def _pieces(self, text: str) -> List[str]:
        pieces = []
        for sentence in self._split_sentences(text):
            if len(sentence) > self.max_length:
                pieces.extend(self._break_long_sentence(sentence))
            else:
                pieces.append(sentence)
        return pieces

    def _overlap_text(self, chunk: str) -> str:
        """Tail of a closed chunk to carry into the next one.

        Prefers whole trailing sentences; falls back to a word-aligned
        character tail when no sentence fits.
        """
        if self.overlap <= 0 or not chunk:
            return ""

        sentences = self._split_sentences(chunk)
        overlap = ""
        for sentence in reversed(sentences[1:]):
            candidate = f"{sentence} {overlap}" if overlap else sentence
            if len(candidate) > self.overlap:
                break
            overlap = candidate
        if overlap:
            return overlap

        tail = chunk[-self.overlap:]
        if len(chunk) > self.overlap and not chunk[-self.overlap - 1].isspace():
            # Drop the partial word at the cut
            space = tail.find(" ")
            tail = tail[space + 1:] if space != -1 else ""
        return tail.strip()

    def split(self, text: str) -> List[str]:
        if not text or not text.strip():
            return []

        chunks: List[str] = []
        current = ""

        for piece in self._pieces(text):
            if not current:
                current = piece
                continue

            if len(current) + 1 + len(piece) <= self.max_length:
                current = f"{current} {piece}"
                continue

            if len(current) < self.min_chunk_length:
                # Too small to close; grow past max_length rather than lose it
                current = f"{current} {piece}"
                continue

            chunks.append(current)
            overlap = self._overlap_text(current)
            if overlap and len(overlap) + 1 + len(piece) <= self.max_length:
                current = f"{overlap} {piece}"
            else:
                current = piece

        if current and (len(current) >= self.min_chunk_length or chunks):
            chunks.append(current)

        if not chunks:
            return [text.strip()[:self.max_length]]

        return chunks


def chunk_content(text: str, max_length: int = 1000, overlap: int = 100,
                  min_chunk_length: int = 100) -> List[str]:
    """Split normalized text into overlapping chunks.

    Chunks stay within ``max_length`` chars unless a chunk shorter than
    ``min_chunk_length`` has to absorb the next piece to reach it.
    """
    return TextChunker(max_length, overlap, min_chunk_length).split(text)


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token for English."""
    return math.ceil(len(text) / 4)


def chunk_content_by_tokens(text: str, max_tokens: int = 250, overlap_tokens: int = 25) -> List[str]:
    """Chunk by an approximate token budget instead of characters."""
    return chunk_content(
        text,
        max_length=max_tokens * 4,
        overlap=overlap_tokens * 4,
        min_chunk_length=50
    )
