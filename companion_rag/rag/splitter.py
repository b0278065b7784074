"""
Text segmenter for chunking documents into embeddable pieces
Sentence-aware greedy packing with word-boundary overlap, character fallback
"""

import re
import uuid
from collections import Counter
from typing import List, Optional, Protocol

import structlog

from companion_rag.models.exceptions import RAGValidationError
from .models import ChunkMetadata, ChunkingOptions, ContentType, DocumentChunk

logger = structlog.get_logger()

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_OVERLAP = 200
MIN_CHUNK_SIZE = 100

ABBREVIATIONS = frozenset({
    "Dr", "Mr", "Mrs", "Ms", "Prof", "Sr", "Jr", "Inc", "Ltd", "Co",
    "vs", "etc", "e.g", "i.e", "viz", "cf", "al", "Apr", "Aug", "Dec",
    "Feb", "Jan", "Jul", "Jun", "Mar", "May", "Nov", "Oct", "Sep",
})

STOP_WORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "can", "had",
    "her", "was", "one", "our", "out", "day", "get", "has", "him", "his",
    "how", "its", "may", "new", "now", "old", "see", "two", "way", "who",
    "boy", "did", "use", "man", "work", "life", "them", "been", "many",
    "after", "back", "other", "good", "just", "first", "time", "very",
})

_SENTENCE_TERMINATORS = ".!?"


class SentenceSplitter(Protocol):
    """Anything that turns normalized text into an ordered list of sentences"""

    def split(self, text: str) -> List[str]:
        ...


class AbbreviationSentenceSplitter:
    """
    Heuristic sentence scanner.

    A terminator ends a sentence unless the word before it is a known
    abbreviation, and only when the character right after it is end of text,
    a space or a newline.
    """

    def __init__(self, abbreviations: frozenset = ABBREVIATIONS):
        self.abbreviations = abbreviations

    def split(self, text: str) -> List[str]:
        sentences = []
        current = []

        for i, char in enumerate(text):
            current.append(char)

            if char not in _SENTENCE_TERMINATORS:
                continue

            is_abbreviation = self._word_before(text, i) in self.abbreviations
            after = text[i + 1] if i + 1 < len(text) else ""

            if not is_abbreviation and after in ("", " ", "\n"):
                sentence = "".join(current).strip()
                if sentence:
                    sentences.append(sentence)
                current = []

        tail = "".join(current).strip()
        if tail:
            sentences.append(tail)

        return sentences

    @staticmethod
    def _word_before(text: str, position: int) -> str:
        start = position - 1
        while start >= 0 and text[start].isspace():
            start -= 1

        end = start
        while start >= 0 and not text[start].isspace():
            start -= 1

        return text[start + 1:end + 1]


def normalize_text(content: str) -> str:
    """Unify line endings, squeeze whitespace, trim, glue punctuation"""
    text = content.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = text.strip()
    return re.sub(r"\s+([.!?])", r"\1", text)


class TextSegmenter:
    """
    Split one logical document into ordered, bounded, overlapping chunks.
    """

    def __init__(self, sentence_splitter: Optional[SentenceSplitter] = None):
        """
        Initialize segmenter.

        Args:
            sentence_splitter: Sentence scanner (default abbreviation-aware heuristic)
        """
        self.sentence_splitter = sentence_splitter or AbbreviationSentenceSplitter()

    def chunk_document(
        self,
        content: str,
        title: str,
        content_type: ContentType,
        options: Optional[ChunkingOptions] = None,
        source: Optional[str] = None,
    ) -> List[DocumentChunk]:
        """
        Chunk a document.

        Args:
            content: Raw document text
            title: Document title, copied into every chunk
            content_type: Content type, copied into every chunk
            options: Chunk size, overlap and sentence preservation
            source: Optional source, copied into every chunk

        Returns:
            Chunks numbered 0..N-1 in document order

        Raises:
            RAGValidationError: If chunk size or overlap are out of bounds
        """
        options = options or ChunkingOptions()
        max_size = options.max_chunk_size
        overlap = options.overlap_size

        if max_size < MIN_CHUNK_SIZE:
            raise RAGValidationError(
                f"Chunk size must be at least {MIN_CHUNK_SIZE} characters",
                context={"max_chunk_size": max_size},
            )

        if overlap >= max_size:
            raise RAGValidationError(
                "Overlap size must be less than chunk size",
                context={"max_chunk_size": max_size, "overlap_size": overlap},
            )

        metadata = ChunkMetadata(title=title, content_type=content_type, source=source)
        text = normalize_text(content)

        if len(text) <= max_size:
            texts = [text]
        elif options.preserve_sentences:
            texts = self._split_by_sentences(text, max_size, overlap)
        else:
            texts = self._split_by_characters(text, max_size, overlap)

        chunks = [
            DocumentChunk(
                text=chunk_text,
                chunk_id=uuid.uuid4().hex,
                chunk_index=index,
                metadata=metadata,
            )
            for index, chunk_text in enumerate(texts)
        ]

        logger.debug(
            "splitter.split_complete",
            input_length=len(text),
            num_chunks=len(chunks),
            preserve_sentences=options.preserve_sentences,
        )

        return chunks

    def _split_by_sentences(self, text: str, max_size: int, overlap: int) -> List[str]:
        chunks: List[str] = []
        current = ""

        def close(chunk: str) -> None:
            chunk = chunk.strip()
            if not chunk:
                return
            if len(chunk) > max_size:
                # Overlap seed plus a long sentence can still overflow
                chunks.extend(self._split_by_characters(chunk, max_size, overlap))
            else:
                chunks.append(chunk)

        for sentence in self.sentence_splitter.split(text):
            proposed = f"{current} {sentence}" if current else sentence

            if len(proposed) <= max_size:
                current = proposed
            elif current:
                close(current)
                current = f"{create_overlap(current, overlap)} {sentence}"
            else:
                chunks.extend(self._split_by_characters(sentence, max_size, overlap))

        close(current)
        return chunks

    @staticmethod
    def _split_by_characters(text: str, max_size: int, overlap: int) -> List[str]:
        chunks = []
        position = 0

        while position < len(text):
            end = min(position + max_size, len(text))
            window = text[position:end]

            if end < len(text):
                last_space = window.rfind(" ")
                if last_space > max_size * 0.8:
                    window = window[:last_space]

            stripped = window.strip()
            if stripped:
                chunks.append(stripped)

            if end >= len(text):
                break

            advance = len(window) - overlap
            position += advance if advance > 0 else len(window)

        return chunks


def create_overlap(text: str, overlap_size: int) -> str:
    """Trailing overlap of a closed chunk, started on a word boundary when cheap"""
    if len(text) <= overlap_size:
        return text

    overlap = text[-overlap_size:] if overlap_size > 0 else ""
    first_space = overlap.find(" ")
    if 0 < first_space < overlap_size * 0.3:
        return overlap[first_space + 1:]

    return overlap


def extract_keywords(text: str, max_keywords: int = 10) -> List[str]:
    """
    Most frequent content words.

    Args:
        text: Text to analyse
        max_keywords: Number of keywords to return

    Returns:
        Lowercase words ordered by frequency, ties in first-seen order
    """
    words = re.sub(r"[^\w\s]", " ", text.lower()).split()
    counts = Counter(
        word for word in words
        if len(word) > 3 and word not in STOP_WORDS
    )
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return [word for word, _ in ranked[:max_keywords]]


def generate_summary(
    text: str,
    max_length: int = 200,
    sentence_splitter: Optional[SentenceSplitter] = None,
) -> str:
    """
    Leading whole sentences that fit the budget.

    Falls back to a hard cut with an ellipsis when not even the first
    sentence fits.
    """
    if len(text) <= max_length:
        return text

    splitter = sentence_splitter or AbbreviationSentenceSplitter()
    summary = ""

    for sentence in splitter.split(text):
        if len(summary) + len(sentence) <= max_length:
            summary += sentence + " "
        else:
            break

    return summary.strip() or text[:max_length] + "..."
