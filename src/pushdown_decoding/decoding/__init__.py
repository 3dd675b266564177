"""The decoding loop, sampling helpers and generation sessions."""

from pushdown_decoding.decoding.loop import DecodingLoop
from pushdown_decoding.decoding.sampling import apply_mask, sample_token, sample_valid
from pushdown_decoding.decoding.session import GenerationSession, SamplingConfig
from pushdown_decoding.decoding.speculative import DraftProposer, ModelDraftProposer

__all__ = [
    "DecodingLoop",
    "GenerationSession",
    "SamplingConfig",
    "DraftProposer",
    "ModelDraftProposer",
    "apply_mask",
    "sample_token",
    "sample_valid",
]
