"""Core functionality: the automaton, its runtime and token masking."""

from pushdown_decoding.core.automaton import BOTTOM, ControlState, PushdownAutomaton, Transition
from pushdown_decoding.core.mask import Mask, MaskerSettings, TokenMasker
from pushdown_decoding.core.runtime import (
    Config,
    PDARuntime,
    RuntimeSnapshot,
    RuntimeStatus,
    StackNode,
    accepts,
    closure,
    initial_configs,
    step,
)
from pushdown_decoding.core.vocab import Vocabulary

__all__ = [
    "BOTTOM",
    "ControlState",
    "PushdownAutomaton",
    "Transition",
    "Config",
    "StackNode",
    "PDARuntime",
    "RuntimeSnapshot",
    "RuntimeStatus",
    "accepts",
    "closure",
    "initial_configs",
    "step",
    "Vocabulary",
    "Mask",
    "MaskerSettings",
    "TokenMasker",
]
