"""Constrained decoding walkthrough with a toy model.

This example shows how to:
1. Compile the built-in JSON grammar
2. Watch the mask block tokens a careless model prefers
3. Read the automaton state and stack after every token
4. Run speculative decoding and see a rollback

No real model is needed: ToyModel is a hand-written distribution over a
twelve-token vocabulary. Swap in MLXLanguageModel for the real thing.

Run with:
    uv run python examples/constrained_json.py
"""

import numpy as np
from rich.console import Console

from pushdown_decoding import Engine, SamplingConfig, Vocabulary
from pushdown_decoding.events.formatters import events_table, metrics_table

TOKENS = ["{", "}", '"name"', ":", '"Ada"', ",", '"born"', "1815", '"Ad', 'a"', " ", "]"]


class ToyModel:
    """Wants to write {"name":"Ada","born":1815} but likes '}' and ']' too much."""

    def __init__(self, vocab: Vocabulary, plan: list[str]) -> None:
        self.vocab = vocab
        self.plan = [vocab.id_for(text) for text in plan]
        self.distractors = [vocab.id_for("}"), vocab.id_for("]")]

    @property
    def vocab_size(self) -> int:
        return self.vocab.size

    def next_token_probs(self, context):
        probs = np.full(self.vocab.size, 0.02)
        step = len(context)
        if step < len(self.plan):
            probs[self.plan[step]] = 0.5
            # every third step the model's favourite is ungrammatical
            if step % 3 == 0:
                probs[self.distractors[step % 2]] = 0.6
        else:
            probs[self.vocab.eos_token_id] = 0.8
        return probs / probs.sum()


PLAN = ["{", '"name"', ":", '"Ad', 'a"', ",", '"born"', ":", "1815", "}"]


def demo_masking(console: Console, vocab: Vocabulary) -> None:
    """Masked generation: blocked tokens are reported, output stays valid."""
    console.rule("Masked generation")
    engine = Engine(ToyModel(vocab, PLAN), vocab)
    handle = engine.compile_builtin("json")
    session_id = engine.start(handle, SamplingConfig(temperature=0.2, top_p=0.8, seed=1))

    events = list(engine.run(session_id))
    console.print(events_table(events))
    console.print(metrics_table(engine.stats(session_id)))
    console.print(f"Output: {engine.session(session_id).text}")


def demo_speculative(console: Console, vocab: Vocabulary) -> None:
    """Speculative decoding: a bad draft batch is rolled back."""
    console.rule("Speculative decoding")
    sloppy_plan = ["{", '"name"', ":", "}"] + PLAN[3:]
    engine = Engine(
        ToyModel(vocab, PLAN),
        vocab,
        draft_model=ToyModel(vocab, sloppy_plan),
    )
    handle = engine.compile_builtin("json")
    config = SamplingConfig(temperature=0.2, top_p=0.8, seed=1, speculative=True)
    session_id = engine.start(handle, config)

    events = list(engine.run(session_id))
    console.print(events_table(events, title="Speculative events"))
    console.print(metrics_table(engine.stats(session_id)))


def main():
    console = Console()
    vocab = Vocabulary.from_tokens(TOKENS, eos="</s>")
    demo_masking(console, vocab)
    demo_speculative(console, vocab)


if __name__ == "__main__":
    main()
