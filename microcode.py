"""Micro-prompt table for the semantic opcodes.

Each semantic opcode maps to one fixed template plus the way its answer is
turned into a register value:

- TEXT        the cleaned answer is stored as Text
- VERDICT     the answer is matched against `accept`; a hit stores 100, else 0
- SIMILARITY  both operands are embedded; cosine is scaled to 0..100

Unary templates refer to the context stack as "it" and take `{a}`;
binary templates take `{a}` and `{b}`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from isa import OpCode


class Strategy(Enum):
    TEXT = "text"
    VERDICT = "verdict"
    SIMILARITY = "similarity"


@dataclass(frozen=True)
class MicroPrompt:
    template: str
    strategy: Strategy = Strategy.TEXT
    accept: frozenset[str] = frozenset()

    def render(self, *operands: str) -> str:
        names = dict(zip("ab", operands))
        return self.template.format(**names)

    def verdict(self, answer: str) -> int:
        """Map a verdict answer to 100 (accepted word) or 0."""
        word = clean_answer(answer).upper().strip(" .!\"'[]")
        return 100 if word in self.accept else 0


def clean_answer(answer: str) -> str:
    """Trim the answer and fold line breaks into single spaces."""
    return " ".join(answer.replace("\r", "\n").split("\n")).strip()


MICROCODE: dict[OpCode, MicroPrompt] = {
    # generative / cognitive, operate on the context
    OpCode.MOR: MicroPrompt("Transform it into the following format:\n{a}\n\nTransformed Output:"),
    OpCode.PRJ: MicroPrompt("Project how it might evolve based on this direction or trend:\n{a}\n\nProjected Output:"),
    OpCode.DST: MicroPrompt("Distill it down following the goal or criteria:\n{a}\n\nDistilled Result:"),
    OpCode.COR: MicroPrompt("Find the correlation with:\n{a}\n\nRelational Analysis:"),
    # guardrails
    OpCode.AUD: MicroPrompt(
        "Does it comply with:\n{a}\n\nYES/NO:",
        Strategy.VERDICT,
        frozenset({"YES"}),
    ),
    OpCode.HAL: MicroPrompt(
        'Does "{a}" ring true with reality, or is it a hollow hallucination? Answer REAL or HOLLOW.',
        Strategy.VERDICT,
        frozenset({"REAL"}),
    ),
    OpCode.SIM: MicroPrompt("", Strategy.SIMILARITY),
    OpCode.ADT: MicroPrompt(
        'Hold the data in "{a}" against the sacred light of the criteria "{b}". '
        "List any fractures where the data fails to comply."
    ),
    # arithmetic analogues
    OpCode.ADD: MicroPrompt('Merge the essence, attributes, and presence of "{a}" and "{b}" into a single form.'),
    OpCode.SUB: MicroPrompt(
        'Strip the essence, attributes, and presence of "{b}" away from "{a}", leaving only the remainder.'
    ),
    OpCode.MUL: MicroPrompt('Magnify the intensity, scale, and influence of "{a}" using the defining traits of "{b}".'),
    OpCode.DIV: MicroPrompt(
        'Deconstruct the complex concept "{a}" into the specific units of "{b}". List only the resulting components.'
    ),
    OpCode.INF: MicroPrompt(
        'Identify the pattern, sequence, or narrative trajectory in "{a}". '
        'Project this trajectory forward by the amount specified in "{b}".'
    ),
    # heuristics
    OpCode.EQV: MicroPrompt(
        'Relation: "{a}" vs "{b}". Label: [IDENTICAL, SYNONYMOUS, RELATED, DISPARATE]. Result:',
        Strategy.VERDICT,
        frozenset({"IDENTICAL", "SYNONYMOUS", "RELATED"}),
    ),
    OpCode.INT: MicroPrompt(
        'Does the hidden intent behind "{a}" align with the goal of "{b}"? Answer TRUE or FALSE.',
        Strategy.VERDICT,
        frozenset({"TRUE"}),
    ),
}
