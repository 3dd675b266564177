"""Token mask generation.

For the current configuration set, TokenMasker decides which vocabulary
tokens can be appended without the automaton rejecting. Candidates are
simulated one character at a time along the vocabulary trie, and each
``(configuration set, character)`` step is memoized in a transition cache,
so a prefix shared by many tokens is simulated once per configuration set.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from pushdown_decoding.core.runtime import (
    EMPTY,
    ConfigSet,
    is_accepting,
    stack_view,
    state_label,
    step,
)
from pushdown_decoding.errors import DeadlockError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from pushdown_decoding.core.automaton import PushdownAutomaton
    from pushdown_decoding.core.vocab import TrieNode, Vocabulary

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Mask:
    """Boolean allow-mask over the vocabulary.

    Only valid for the configuration set it was computed from; it must be
    recomputed after every committed token.

    Attributes:
        allowed: Array of shape (vocab_size,), True = token may be sampled
    """

    allowed: NDArray[np.bool_]

    def __getitem__(self, token_id: int) -> bool:
        return bool(self.allowed[token_id])

    def __len__(self) -> int:
        return int(self.allowed.shape[0])

    @property
    def count(self) -> int:
        return int(np.count_nonzero(self.allowed))

    def any(self) -> bool:
        return bool(self.allowed.any())

    @property
    def allowed_ids(self) -> list[int]:
        """Sparse view: ids of the allowed tokens, ascending."""
        return [int(i) for i in np.flatnonzero(self.allowed)]

    def apply_to_logits(self, logits: NDArray[np.floating]) -> NDArray[np.floating]:
        """Set logits of disallowed tokens to -inf."""
        return np.where(self.allowed, logits, -np.inf)

    def apply_to_probs(self, probs: NDArray[np.floating]) -> NDArray[np.floating]:
        """Zero disallowed probability mass (no renormalization)."""
        return np.where(self.allowed, probs, 0.0)


@dataclass
class MaskerSettings:
    """Tuning knobs for TokenMasker.

    Attributes:
        cache_size: Maximum transition cache entries before it is cleared
        workers: Threads used to evaluate trie branches (1 = inline)
    """

    cache_size: int = 200_000
    workers: int = 1

    def __post_init__(self) -> None:
        if self.cache_size < 1:
            raise ValueError("cache_size must be >= 1")
        if self.workers < 1:
            raise ValueError("workers must be >= 1")


class TokenMasker:
    """Computes grammar masks for one automaton and one vocabulary.

    The masker holds no per-session state besides its transition cache,
    which is keyed by configuration set contents, so one masker can serve
    every session that uses the same grammar and vocabulary.

    Example:
        >>> masker = TokenMasker(compile_grammar(JSON_GRAMMAR), vocab)
        >>> mask = masker.compute_mask(runtime.configs)
        >>> mask.allowed_ids
        [0, 7]
    """

    def __init__(
        self,
        automaton: PushdownAutomaton,
        vocabulary: Vocabulary,
        settings: MaskerSettings | None = None,
    ) -> None:
        self.automaton = automaton
        self.vocabulary = vocabulary
        self.settings = settings or MaskerSettings()
        self._cache: dict[tuple[ConfigSet, str], ConfigSet] = {}
        self._lock = threading.Lock()
        self.checks = 0
        self.cache_hits = 0

    def step(self, configs: ConfigSet, char: str) -> ConfigSet:
        """Memoized ``runtime.step``."""
        key = (configs, char)
        cached = self._cache.get(key)
        if cached is not None:
            self.cache_hits += 1
            return cached
        result = step(self.automaton, configs, char)
        with self._lock:
            self.checks += 1
            if len(self._cache) >= self.settings.cache_size:
                logger.debug("transition cache full (%d entries), clearing", len(self._cache))
                self._cache.clear()
            self._cache[key] = result
        return result

    def feed(self, configs: ConfigSet, text: str) -> ConfigSet:
        """Advance through ``text`` using the cache; EMPTY if any character is rejected."""
        for char in text:
            configs = self.step(configs, char)
            if not configs:
                return EMPTY
        return configs

    def is_token_valid(self, configs: ConfigSet, text: str) -> bool:
        """Direct replay of one candidate, bypassing the trie."""
        if not text:
            return False
        current = configs
        for char in text:
            current = step(self.automaton, current, char)
            if not current:
                return False
        return True

    def compute_mask(self, configs: ConfigSet) -> Mask:
        """Mask of every token that keeps the automaton non-rejecting.

        The EOS token is allowed exactly when the configuration set accepts.

        Raises:
            DeadlockError: If no token is allowed and the input so far is not
                a complete sentence
        """
        allowed = np.zeros(self.vocabulary.size, dtype=np.bool_)
        accepting = is_accepting(self.automaton, configs)
        eos = self.vocabulary.eos_token_id
        if eos is not None and accepting:
            allowed[eos] = True

        if configs:
            branches = list(self.vocabulary.trie.children.items())
            workers = min(self.settings.workers, len(branches))
            if workers > 1:
                chunks = [branches[i::workers] for i in range(workers)]
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    for ids in pool.map(lambda chunk: self._walk(configs, chunk), chunks):
                        allowed[ids] = True
            else:
                allowed[self._walk(configs, branches)] = True

        mask = Mask(allowed)
        logger.debug("mask allows %d/%d tokens", mask.count, len(mask))
        if not mask.any() and not accepting:
            raise DeadlockError(
                state_label(self.automaton, configs), stack_view(configs)
            )
        return mask

    def _walk(self, configs: ConfigSet, branches: list[tuple[str, TrieNode]]) -> list[int]:
        """Depth-first walk of trie branches; returns the ids of valid tokens."""
        valid: list[int] = []
        pending = [(child, char, configs) for char, child in branches]
        while pending:
            node, char, parent_configs = pending.pop()
            current = self.step(parent_configs, char)
            if not current:
                # nothing below a rejected prefix can be valid
                continue
            valid.extend(node.token_ids)
            pending.extend((child, c, current) for c, child in node.children.items())
        return valid
