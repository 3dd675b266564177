"""Pytest configuration and fixtures for pushdown_decoding tests."""

from collections.abc import Sequence

import numpy as np
import pytest

from pushdown_decoding.core.automaton import PushdownAutomaton
from pushdown_decoding.core.mask import TokenMasker
from pushdown_decoding.core.vocab import Vocabulary
from pushdown_decoding.grammar.builtin import JSON_GRAMMAR
from pushdown_decoding.grammar.compiler import compile_grammar

# Token strings for the JSON-object scenarios; EOS is appended last (id 10)
JSON_TOKENS = ["{", "}", '"name"', ":", '"John"', ",", '"age"', "30", '"Jo', 'hn"']
EOS = "<eos>"


class MockTokenizer:
    """Mock tokenizer for testing without real model."""

    def __init__(self, vocab_size: int = 1000) -> None:
        self._vocab_size = vocab_size
        # Create a simple vocabulary
        self._vocab = {i: chr(32 + (i % 95)) for i in range(vocab_size)}

    def get_vocab_size(self) -> int:
        return self._vocab_size

    def decode(self, token_ids: list[int]) -> str:
        return "".join(self._vocab.get(tid, "") for tid in token_ids)

    def encode(self, text: str) -> list[int]:
        return [ord(c) - 32 for c in text if 0 <= ord(c) - 32 < self._vocab_size]


class ScriptedModel:
    """Language model that follows a fixed script of token ids.

    At output position i it puts ``peak`` probability on ``script[i]`` and
    spreads the rest uniformly. Past the end of the script it peaks on
    ``fallback`` (usually EOS).
    """

    def __init__(
        self,
        vocab_size: int,
        script: Sequence[int],
        fallback: int | None = None,
        peak: float = 0.9,
        prompt_len: int = 0,
    ) -> None:
        self._vocab_size = vocab_size
        self.script = list(script)
        self.fallback = fallback
        self.peak = peak
        self.prompt_len = prompt_len
        self.calls = 0

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    def next_token_probs(self, context: Sequence[int]) -> np.ndarray:
        self.calls += 1
        position = len(context) - self.prompt_len
        target = self.script[position] if position < len(self.script) else self.fallback
        if target is None:
            return np.full(self._vocab_size, 1.0 / self._vocab_size)
        probs = np.full(self._vocab_size, (1.0 - self.peak) / (self._vocab_size - 1))
        probs[target] = self.peak
        return probs


class RandomModel:
    """Deterministic pseudo-random distributions, seeded by context length."""

    def __init__(self, vocab_size: int, seed: int = 0) -> None:
        self._vocab_size = vocab_size
        self.seed = seed

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    def next_token_probs(self, context: Sequence[int]) -> np.ndarray:
        rng = np.random.default_rng(self.seed * 1000 + len(context))
        return rng.dirichlet(np.ones(self._vocab_size))


def ids(vocab: Vocabulary, *texts: str) -> list[int]:
    """Token ids for surface texts."""
    return [vocab.id_for(text) for text in texts]


@pytest.fixture
def mock_tokenizer() -> MockTokenizer:
    """Provide a mock tokenizer for testing."""
    return MockTokenizer(vocab_size=1000)


@pytest.fixture(scope="session")
def json_automaton() -> PushdownAutomaton:
    """Compiled builtin JSON grammar, shared across tests (it is immutable)."""
    return compile_grammar(JSON_GRAMMAR)


@pytest.fixture
def json_vocab() -> Vocabulary:
    """Small vocabulary for the JSON-object scenarios."""
    return Vocabulary.from_tokens(JSON_TOKENS, eos=EOS)


@pytest.fixture
def json_masker(json_automaton, json_vocab) -> TokenMasker:
    return TokenMasker(json_automaton, json_vocab)


@pytest.fixture
def person_script(json_vocab) -> list[int]:
    """Token ids spelling {"name":"John","age":30}."""
    return ids(json_vocab, "{", '"name"', ":", '"John"', ",", '"age"', ":", "30", "}")


@pytest.fixture
def person_model(json_vocab, person_script) -> ScriptedModel:
    """Model that wants to write the person object, then EOS."""
    return ScriptedModel(json_vocab.size, person_script, fallback=json_vocab.eos_token_id)


# Skip markers for backend-specific tests
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "mlx: mark test as requiring MLX")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


def pytest_collection_modifyitems(config, items):
    """Skip tests based on available backends."""
    try:
        import mlx.core  # noqa: F401

        has_mlx = True
    except ImportError:
        has_mlx = False

    skip_mlx = pytest.mark.skip(reason="MLX not available")

    for item in items:
        if "mlx" in item.keywords and not has_mlx:
            item.add_marker(skip_mlx)
