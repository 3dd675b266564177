"""Masked temperature / nucleus sampling.

All functions take and return probability vectors of shape (vocab_size,).
Randomness comes only from the ``numpy.random.Generator`` passed in, so a
seeded generator makes sampling reproducible.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from pushdown_decoding.core.mask import Mask

    Array = NDArray[np.floating]

logger = logging.getLogger(__name__)


def normalize(probs: Array) -> Array | None:
    """Scale to sum 1. Returns None when there is no mass to scale."""
    total = float(np.sum(probs))
    if not np.isfinite(total) or total <= 0.0:
        return None
    return probs / total


def softmax(logits: Array) -> Array:
    """Numerically stable softmax."""
    # Numerical stability: subtract max
    scaled = logits - np.max(logits)
    exp_logits = np.exp(scaled)
    return exp_logits / np.sum(exp_logits)


def apply_mask(probs: Array, mask: Mask) -> Array:
    """Zero invalid entries and renormalize.

    If the model put no mass on any valid token, fall back to a uniform
    distribution over the valid tokens.
    """
    masked = normalize(mask.apply_to_probs(np.asarray(probs, dtype=np.float64)))
    if masked is not None:
        return masked
    count = mask.count
    if count == 0:
        raise ValueError("mask allows no tokens")
    logger.warning("model assigns zero probability to all %d valid tokens, sampling uniformly", count)
    return mask.allowed.astype(np.float64) / count


def apply_temperature(probs: Array, temperature: float) -> Array:
    """Rescale as ``p ** (1 / T)``, i.e. softmax(log p / T). Zero stays zero."""
    if temperature <= 0:
        raise ValueError("temperature must be > 0")
    if temperature == 1.0:
        return probs
    out = np.zeros_like(probs, dtype=np.float64)
    nonzero = probs > 0
    if not nonzero.any():
        return out
    log_p = np.log(probs[nonzero]) / temperature
    log_p -= np.max(log_p)
    out[nonzero] = np.exp(log_p)
    return out / np.sum(out)


def top_p_filter(probs: Array, top_p: float) -> Array:
    """Keep the smallest set of most likely tokens whose mass reaches ``top_p``."""
    if not 0.0 < top_p <= 1.0:
        raise ValueError("top_p must be in (0, 1]")
    if top_p >= 1.0:
        return probs
    order = np.argsort(-probs, kind="stable")
    cumulative = np.cumsum(probs[order])
    # index of the first token at which the cumulative mass reaches top_p
    cutoff = int(np.searchsorted(cumulative, top_p - 1e-12)) + 1
    keep = order[:cutoff]
    out = np.zeros_like(probs)
    out[keep] = probs[keep]
    return out / np.sum(out)


def sample_token(
    probs: Array,
    rng: np.random.Generator,
    temperature: float = 1.0,
    top_p: float = 1.0,
) -> int:
    """Temperature scaling, then nucleus truncation, then one draw."""
    scaled = apply_temperature(probs, temperature)
    filtered = top_p_filter(scaled, top_p)
    return int(rng.choice(len(filtered), p=filtered))


def sample_valid(
    probs: Array,
    mask: Mask,
    rng: np.random.Generator,
    is_valid: Callable[[int], bool],
    temperature: float = 1.0,
    top_p: float = 1.0,
    max_attempts: int = 8,
) -> int:
    """Resample from the masked distribution until ``is_valid`` agrees.

    A retry wrapper for callers that verify tokens themselves. Because the
    mask already guarantees validity the first draw should always pass.

    Raises:
        ValueError: If no valid token was drawn in ``max_attempts`` tries
    """
    masked = apply_mask(probs, mask)
    for attempt in range(max_attempts):
        token_id = sample_token(masked, rng, temperature, top_p)
        if is_valid(token_id):
            return token_id
        logger.warning("sampled token %d failed verification (attempt %d)", token_id, attempt + 1)
        masked = masked.copy()
        masked[token_id] = 0.0
        renormalized = normalize(masked)
        if renormalized is None:
            break
        masked = renormalized
    raise ValueError(f"no valid token after {max_attempts} attempts")


def top_candidates(probs: Array, k: int) -> list[int]:
    """Ids of the ``k`` most likely tokens, most likely first."""
    if k <= 0:
        return []
    k = min(k, len(probs))
    idx = np.argpartition(-probs, k - 1)[:k]
    return [int(i) for i in idx[np.argsort(-probs[idx], kind="stable")]]
