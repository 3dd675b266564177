"""Language model backends.

MLX is optional; importing this package does not import it.
"""

from pushdown_decoding.backends.base import LanguageModel
from pushdown_decoding.backends.mlx_backend import MLXLanguageModel, list_available_models

__all__ = [
    "LanguageModel",
    "MLXLanguageModel",
    "list_available_models",
]
