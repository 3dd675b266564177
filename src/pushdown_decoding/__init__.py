"""Pushdown Decoding - Grammar-constrained decoding via pushdown automata.

This library compiles a context-free grammar into a pushdown automaton and
masks every vocabulary entry that would leave the grammar, so a language
model's output is a valid sentence (or prefix) by construction.

Example:
    >>> from pushdown_decoding import Engine, SamplingConfig
    >>> engine = Engine(model, vocab)
    >>> handle = engine.compile_builtin("json")
    >>> session_id = engine.start(handle, SamplingConfig(seed=0))
    >>> for event in engine.run(session_id):
    ...     print(event)
"""

from pushdown_decoding.core.automaton import ControlState, PushdownAutomaton
from pushdown_decoding.core.mask import Mask, MaskerSettings, TokenMasker
from pushdown_decoding.core.runtime import PDARuntime, RuntimeStatus, accepts
from pushdown_decoding.core.vocab import Vocabulary
from pushdown_decoding.decoding.loop import DecodingLoop
from pushdown_decoding.decoding.session import GenerationSession, SamplingConfig
from pushdown_decoding.decoding.speculative import DraftProposer, ModelDraftProposer
from pushdown_decoding.engine import Engine, GrammarHandle
from pushdown_decoding.errors import (
    DeadlockError,
    GrammarError,
    GrammarErrorKind,
    InvariantViolation,
    PushdownDecodingError,
    StoppedByCaller,
)
from pushdown_decoding.events.emitter import EngineStats, MetricsEmitter
from pushdown_decoding.events.models import (
    EngineStatsSnapshot,
    EventKind,
    GenerationEvent,
    MetricsSnapshot,
    SessionOutcome,
    Token,
)
from pushdown_decoding.grammar.builtin import BUILTIN_GRAMMARS, builtin_grammar
from pushdown_decoding.grammar.compiler import compile_grammar

__version__ = "0.1.0"

__all__ = [
    # Engine
    "Engine",
    "GrammarHandle",
    # Grammar
    "compile_grammar",
    "builtin_grammar",
    "BUILTIN_GRAMMARS",
    # Automaton and runtime
    "PushdownAutomaton",
    "ControlState",
    "PDARuntime",
    "RuntimeStatus",
    "accepts",
    # Masking
    "Vocabulary",
    "Mask",
    "MaskerSettings",
    "TokenMasker",
    # Decoding
    "DecodingLoop",
    "GenerationSession",
    "SamplingConfig",
    "DraftProposer",
    "ModelDraftProposer",
    # Events
    "EventKind",
    "GenerationEvent",
    "SessionOutcome",
    "Token",
    "MetricsSnapshot",
    "EngineStatsSnapshot",
    "MetricsEmitter",
    "EngineStats",
    # Errors
    "PushdownDecodingError",
    "GrammarError",
    "GrammarErrorKind",
    "DeadlockError",
    "InvariantViolation",
    "StoppedByCaller",
]
