"""Draft proposers for speculative decoding.

A proposer guesses several tokens ahead without consulting the grammar.
The decoding loop then feeds the whole batch through the automaton at once
and rolls back to a runtime snapshot if any draft is ungrammatical.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

import numpy as np

from pushdown_decoding.backends.base import LanguageModel

# (token_id, probability the draft model assigned to it)
Draft = tuple[int, float]


class DraftProposer(Protocol):
    """Anything that can propose a run of token ids."""

    def propose(self, context: Sequence[int], count: int) -> list[Draft]:
        """Propose up to ``count`` tokens that follow ``context``."""
        ...


class ModelDraftProposer:
    """Greedy drafts from a (usually smaller, faster) language model.

    Args:
        model: Draft model sharing the target model's vocabulary
        eos_token_id: Drafting stops after proposing this token
    """

    def __init__(self, model: LanguageModel, eos_token_id: int | None = None) -> None:
        self.model = model
        self.eos_token_id = eos_token_id

    def propose(self, context: Sequence[int], count: int) -> list[Draft]:
        drafts: list[Draft] = []
        tokens = list(context)
        for _ in range(count):
            probs = np.asarray(self.model.next_token_probs(tokens))
            token_id = int(np.argmax(probs))
            drafts.append((token_id, float(probs[token_id])))
            tokens.append(token_id)
            if token_id == self.eos_token_id:
                break
        return drafts
