"""Protocols for the language models the decoding loop drives."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray


@runtime_checkable
class LanguageModel(Protocol):
    """Opaque source of next-token distributions over a fixed vocabulary."""

    @property
    def vocab_size(self) -> int:
        """Number of entries in every returned distribution."""
        ...

    def next_token_probs(self, context: Sequence[int]) -> NDArray[np.floating]:
        """Probability of every vocabulary entry given the context token ids."""
        ...

