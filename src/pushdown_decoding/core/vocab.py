"""Vocabulary analysis for grammar masking.

This module provides Vocabulary, which decodes every token of a tokenizer
once and arranges the surface texts in a character trie so that the mask
generator can simulate shared prefixes a single time.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)


class Tokenizer(Protocol):
    """Protocol for tokenizers compatible with Vocabulary."""

    def decode(self, token_ids: list[int]) -> str:
        """Decode token IDs to string."""
        ...

    def get_vocab_size(self) -> int:
        """Return vocabulary size."""
        ...


@dataclass
class TrieNode:
    """Node of the vocabulary character trie.

    Attributes:
        children: Next character -> child node
        token_ids: Tokens whose surface text ends exactly at this node
    """

    children: dict[str, TrieNode] = field(default_factory=dict)
    token_ids: list[int] = field(default_factory=list)

    def walk(self, prefix: str = "") -> Iterator[tuple[str, TrieNode]]:
        """Yield ``(text, node)`` for every node below this one, depth first."""
        for char, child in self.children.items():
            text = prefix + char
            yield text, child
            yield from child.walk(text)


@dataclass
class Vocabulary:
    """Token surface texts plus the trie built over them.

    Attributes:
        texts: Surface text of every token id
        eos_token_id: End-of-sequence token, allowed only when the grammar accepts
        trie: Character trie of all non-empty texts (EOS excluded)

    Example:
        >>> vocab = Vocabulary(["{", "}", '"name"', ":", "<eos>"], eos_token_id=4)
        >>> vocab.size
        5
        >>> vocab.distinct_prefixes
        9
    """

    texts: list[str]
    eos_token_id: int | None = None
    trie: TrieNode = field(init=False)
    _by_text: dict[str, list[int]] = field(init=False, default_factory=dict)

    def __post_init__(self) -> None:
        """Build the trie."""
        if self.eos_token_id is not None and not 0 <= self.eos_token_id < len(self.texts):
            raise ValueError(f"eos_token_id {self.eos_token_id} outside vocabulary")
        self.trie = TrieNode()
        empty = 0
        for token_id, text in enumerate(self.texts):
            self._by_text.setdefault(text, []).append(token_id)
            if token_id == self.eos_token_id:
                continue
            if not text:
                empty += 1
                continue
            node = self.trie
            for char in text:
                node = node.children.setdefault(char, TrieNode())
            node.token_ids.append(token_id)
        if empty:
            logger.debug("%d tokens with empty surface text are never allowed", empty)

    @classmethod
    def from_tokenizer(
        cls,
        tokenizer: Tokenizer,
        vocab_size: int | None = None,
        eos_token_id: int | None = None,
    ) -> Vocabulary:
        """Decode every token id of a tokenizer.

        Args:
            tokenizer: Tokenizer to analyze
            vocab_size: Override, since tokenizer vocab may be smaller than the model's
            eos_token_id: End-of-sequence token id

        Returns:
            Vocabulary with one entry per id
        """
        size = vocab_size if vocab_size is not None else tokenizer.get_vocab_size()
        texts: list[str] = []
        for token_id in range(size):
            try:
                texts.append(tokenizer.decode([token_id]))
            except (KeyError, IndexError, ValueError):
                # Some token IDs may be invalid
                texts.append("")
        return cls(texts, eos_token_id=eos_token_id)

    @classmethod
    def from_tokens(cls, tokens: Sequence[str], eos: str | None = None) -> Vocabulary:
        """Build a vocabulary from token strings, appending ``eos`` if given."""
        texts = list(tokens)
        eos_id = None
        if eos is not None:
            texts.append(eos)
            eos_id = len(texts) - 1
        return cls(texts, eos_token_id=eos_id)

    @property
    def size(self) -> int:
        return len(self.texts)

    def __len__(self) -> int:
        return len(self.texts)

    @property
    def distinct_prefixes(self) -> int:
        """Number of trie nodes below the root (one simulation each, at most)."""
        return sum(1 for _ in self.trie.walk())

    def text(self, token_id: int) -> str:
        """Surface text of a token, empty for EOS."""
        if token_id == self.eos_token_id:
            return ""
        return self.texts[token_id]

    def ids_for(self, text: str) -> list[int]:
        """All token ids with exactly this surface text."""
        return list(self._by_text.get(text, ()))

    def id_for(self, text: str) -> int:
        """The first token id with this surface text.

        Raises:
            KeyError: If no token has this text
        """
        ids = self._by_text.get(text)
        if not ids:
            raise KeyError(text)
        return ids[0]
