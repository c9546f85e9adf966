"""Collaborators for semantic opcodes and file loading.

The VM only talks to `SemanticAdapter.evaluate` and `read_file`; transport
and answer interpretation live here.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Sequence

import openai
from openai import OpenAI

from errors import IoError, SemanticError
from isa import Message, Number, OpCode, Text, Value
from microcode import MICROCODE, MicroPrompt, Strategy, clean_answer


class SemanticAdapter(ABC):
    """Evaluates one semantic opcode against the current context."""

    @abstractmethod
    def evaluate(self, opcode: OpCode, messages: Sequence[Message], operands: Sequence[Value]) -> Value:
        """Return the result value or raise SemanticError."""


def micro_prompt(opcode: OpCode) -> MicroPrompt:
    try:
        return MICROCODE[opcode]
    except KeyError as e:
        err = f"{opcode.name} has no micro-prompt"
        raise SemanticError(err) from e


def interpret(mp: MicroPrompt, answer: str) -> Value:
    """Turn a raw chat answer into a register value."""
    if mp.strategy is Strategy.VERDICT:
        return Number(float(mp.verdict(answer)))
    if mp.strategy is Strategy.SIMILARITY:
        try:
            score = float(clean_answer(answer))
        except ValueError as e:
            err = f"similarity answer {answer!r} is not a number"
            raise SemanticError(err) from e
        if not math.isfinite(score):
            err = f"similarity answer {answer!r} is not a finite number"
            raise SemanticError(err)
        return Number(float(round(min(max(score, 0.0), 100.0))))
    return Text(clean_answer(answer))


def cosine_score(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity clamped to 0..1 and scaled to a 0..100 integer score."""
    if not a or len(a) != len(b):
        err = f"embedding sizes differ ({len(a)} vs {len(b)})"
        raise SemanticError(err)
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        err = "zero-length embedding"
        raise SemanticError(err)
    cos = dot / norm
    if not math.isfinite(cos):
        err = "embedding contains non-finite values"
        raise SemanticError(err)
    return float(round(min(max(cos, 0.0), 1.0) * 100))


class OpenAISemanticAdapter(SemanticAdapter):
    """Adapter for any OpenAI-compatible server (llama.cpp, vLLM, OpenAI)."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        text_model: str,
        embedding_model: str,
        system_prompt: str,
        temperature: float = 0.3,
        max_tokens: int | None = None,
        timeout: float | None = None,
        max_retries: int = 0,
        client: Any | None = None,
    ) -> None:
        self._client = client or OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=max_retries)
        self.text_model = text_model
        self.embedding_model = embedding_model
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_config(cls, cfg: dict[str, Any], client: Any | None = None) -> OpenAISemanticAdapter:
        return cls(
            base_url=cfg["base_url"],
            api_key=cfg["api_key"],
            text_model=cfg["text_model"],
            embedding_model=cfg["embedding_model"],
            system_prompt=cfg["system_prompt"],
            temperature=cfg["temperature"],
            max_tokens=cfg["max_tokens"],
            timeout=cfg["request_timeout"],
            max_retries=cfg["max_retries"],
            client=client,
        )

    def evaluate(self, opcode: OpCode, messages: Sequence[Message], operands: Sequence[Value]) -> Value:
        mp = micro_prompt(opcode)
        if mp.strategy is Strategy.SIMILARITY:
            a, b = self.embed([str(v) for v in operands])
            return Number(cosine_score(a, b))
        prompt = mp.render(*(str(v) for v in operands))
        answer = self.chat(messages, prompt)
        logging.debug("%s answer: %r", opcode.name, answer)
        return interpret(mp, answer)

    def chat(self, messages: Sequence[Message], prompt: str) -> str:
        history = [{"role": m.role.label, "content": m.content} for m in messages]
        params: dict[str, Any] = {
            "model": self.text_model,
            "messages": [
                {"role": "system", "content": self.system_prompt},
                *history,
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
        }
        if self.max_tokens is not None:
            params["max_tokens"] = self.max_tokens
        try:
            resp = self._client.chat.completions.create(**params)
        except openai.OpenAIError as e:
            err = f"chat request failed: {e}"
            raise SemanticError(err) from e
        choices = getattr(resp, "choices", None) or []
        if not choices:
            err = "chat response has no choices"
            raise SemanticError(err)
        content = getattr(choices[0].message, "content", None)
        if content is None:
            err = "chat response has no content"
            raise SemanticError(err)
        return str(content)

    def embed(self, texts: list[str]) -> list[list[float]]:
        try:
            resp = self._client.embeddings.create(model=self.embedding_model, input=texts)
        except openai.OpenAIError as e:
            err = f"embedding request failed: {e}"
            raise SemanticError(err) from e
        data = getattr(resp, "data", None) or []
        if len(data) != len(texts):
            err = f"expected {len(texts)} embeddings, got {len(data)}"
            raise SemanticError(err)
        vectors = [list(d.embedding) for d in data]
        if any(not v for v in vectors):
            err = "empty embedding in response"
            raise SemanticError(err)
        return vectors


class ScriptedAdapter(SemanticAdapter):
    """Replays canned raw answers in order, one per semantic instruction.

    Answers are interpreted through the micro-prompt table, so a verdict
    opcode fed "YES" yields 100. SIM answers are numeric scores. An answer
    of None stands for a backend failure.
    """

    def __init__(self, answers: Sequence[str | float | None]) -> None:
        self.answers = list(answers)
        self.calls: list[tuple[OpCode, list[Message], list[Value], str]] = []

    def evaluate(self, opcode: OpCode, messages: Sequence[Message], operands: Sequence[Value]) -> Value:
        mp = micro_prompt(opcode)
        prompt = mp.render(*(str(v) for v in operands))
        self.calls.append((opcode, list(messages), list(operands), prompt))
        if not self.answers:
            err = f"no scripted answer left for {opcode.name}"
            raise SemanticError(err)
        answer = self.answers.pop(0)
        if answer is None:
            err = f"scripted failure for {opcode.name}"
            raise SemanticError(err)
        return interpret(mp, str(answer))


class LocalFileReader:
    """Reads UTF-8 text files; relative paths resolve against `root`."""

    def __init__(self, root: str | Path = ".") -> None:
        self.root = Path(root)

    def read_file(self, path: str) -> Text:
        p = Path(path)
        if not p.is_absolute():
            p = self.root / p
        try:
            return Text(p.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            err = f"cannot read {p}: {e}"
            raise IoError(err) from e
