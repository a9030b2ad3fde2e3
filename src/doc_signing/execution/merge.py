"""
Placeholder substitution for contract templates.

Two grammars are recognised in a single tokenising pass:

- ``[ALL_CAPS]`` bracket placeholders, looked up lower-cased first and then
  verbatim.
- ``{identifier}`` brace placeholders, looked up verbatim first and then
  lower-cased.

Unresolved placeholders are kept verbatim and reported as warnings so that a
partially completed submission still produces a reviewable draft.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\[(?P<bracket>[A-Z_]+)\]|\{(?P<brace>[a-zA-Z_][a-zA-Z0-9_]*)\}")


@dataclass(frozen=True)
class Literal:
    text: str

    def raw(self) -> str:
        return self.text


@dataclass(frozen=True)
class BracketPlaceholder:
    name: str

    def raw(self) -> str:
        return f"[{self.name}]"

    def keys(self) -> tuple[str, ...]:
        return (self.name.lower(), self.name)


@dataclass(frozen=True)
class BracePlaceholder:
    name: str

    def raw(self) -> str:
        return "{" + self.name + "}"

    def keys(self) -> tuple[str, ...]:
        return (self.name, self.name.lower())


Token = Literal | BracketPlaceholder | BracePlaceholder


@dataclass
class MergeResult:
    text: str
    warnings: list[str] = field(default_factory=list)

    @property
    def unresolved(self) -> list[str]:
        return list(self.warnings)


def tokenize(template: str) -> Iterator[Token]:
    pos = 0
    for m in _PLACEHOLDER.finditer(template):
        if m.start() > pos:
            yield Literal(template[pos:m.start()])
        if m.group("bracket") is not None:
            yield BracketPlaceholder(m.group("bracket"))
        else:
            yield BracePlaceholder(m.group("brace"))
        pos = m.end()
    if pos < len(template):
        yield Literal(template[pos:])


def stringify(value: Any) -> str:
    """Render a submitted value the way it appears in the merged document."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _lookup(token: BracketPlaceholder | BracePlaceholder, values: Mapping[str, Any]) -> Any:
    for key in token.keys():
        value = values.get(key)
        if value is not None:
            return value
    return None


def merge(template: str, values: Mapping[str, Any]) -> MergeResult:
    """Substitute placeholders in ``template`` with entries from ``values``."""
    out: list[str] = []
    warnings: list[str] = []
    for token in tokenize(template):
        if isinstance(token, Literal):
            out.append(token.text)
            continue
        value = _lookup(token, values)
        if value is None:
            warnings.append(token.raw())
            out.append(token.raw())
            continue
        out.append(stringify(value))
    if warnings:
        logger.warning("Unresolved placeholders left in merge output: %s", ", ".join(sorted(set(warnings))))
    return MergeResult("".join(out), warnings)
