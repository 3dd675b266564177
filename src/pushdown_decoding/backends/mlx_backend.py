"""MLX backend: local Apple Silicon models as a LanguageModel.

This module loads a model with ``mlx_lm`` and turns its last-position
logits into the numpy probability vectors the decoding loop consumes.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import numpy as np

from pushdown_decoding.core.vocab import Vocabulary

if TYPE_CHECKING:
    from numpy.typing import NDArray


class MLXLanguageModel:
    """MLX model wrapper implementing the LanguageModel protocol.

    Example:
        >>> model = MLXLanguageModel.from_pretrained("mlx-community/Llama-3.2-1B-4bit")
        >>> vocab = model.vocabulary()
        >>> probs = model.next_token_probs(model.encode("Return JSON: "))
    """

    def __init__(
        self,
        model: Any,
        tokenizer: Any,
    ) -> None:
        """Initialize the MLX backend.

        Args:
            model: The loaded MLX model.
            tokenizer: The tokenizer for the model.
        """
        self._model = model
        self._tokenizer = tokenizer
        self._vocab_size: int | None = None

    @classmethod
    def from_pretrained(cls, model_path: str) -> MLXLanguageModel:
        """Load a model from HuggingFace Hub or local path.

        Args:
            model_path: HuggingFace model ID or local path.

        Returns:
            Initialized MLXLanguageModel instance.

        Raises:
            ImportError: If mlx_lm is not installed.
        """
        try:
            import mlx_lm
        except ImportError as e:
            raise ImportError(
                "mlx_lm is required for MLX backend. Install with: pip install pushdown-decoding[mlx]"
            ) from e

        model, tokenizer = mlx_lm.load(model_path)
        return cls(model=model, tokenizer=tokenizer)

    @property
    def tokenizer(self) -> Any:
        return self._tokenizer

    @property
    def vocab_size(self) -> int:
        """Get vocabulary size."""
        if self._vocab_size is None:
            # The model's output layer can be wider than the tokenizer's vocab
            config = getattr(self._model, "args", None) or getattr(self._model, "config", None)
            if config is not None and getattr(config, "vocab_size", None):
                self._vocab_size = int(config.vocab_size)
            elif hasattr(self._tokenizer, "vocab_size"):
                self._vocab_size = int(self._tokenizer.vocab_size)
            elif hasattr(self._tokenizer, "__len__"):
                self._vocab_size = len(self._tokenizer)
            else:
                raise ValueError("Could not determine vocabulary size")
        return self._vocab_size

    @property
    def eos_token_id(self) -> int | None:
        return getattr(self._tokenizer, "eos_token_id", None)

    def encode(self, text: str) -> list[int]:
        return list(self._tokenizer.encode(text))

    def decode(self, token_ids: list[int]) -> str:
        return self._tokenizer.decode(token_ids)

    def get_vocab_size(self) -> int:
        return self.vocab_size

    def vocabulary(self) -> Vocabulary:
        """Decode every token id into a grammar-maskable Vocabulary."""
        return Vocabulary.from_tokenizer(
            self, vocab_size=self.vocab_size, eos_token_id=self.eos_token_id
        )

    def next_token_probs(self, context: Sequence[int]) -> NDArray[np.floating]:
        """Softmax of the logits at the last position.

        Args:
            context: Input token IDs (prompt plus generated tokens).

        Returns:
            Probability array of shape (vocab_size,).
        """
        try:
            import mlx.core as mx
        except ImportError as e:
            raise ImportError(
                "mlx is required for MLX backend. Install with: pip install pushdown-decoding[mlx]"
            ) from e

        if not context:
            raise ValueError("MLX models need at least one context token")
        tokens = mx.array([list(context)])
        logits = self._model(tokens)[0, -1, :]
        probs = mx.softmax(logits.astype(mx.float32))
        # Force evaluation and convert to numpy
        mx.eval(probs)
        return np.array(probs, dtype=np.float64)


def list_available_models() -> list[str]:
    """Popular MLX models that work as a starting point."""
    return [
        "mlx-community/Llama-3.2-1B-4bit",
        "mlx-community/Llama-3.2-3B-4bit",
        "mlx-community/Qwen2.5-1.5B-Instruct-4bit",
        "mlx-community/Qwen3-4B-4bit",
    ]
