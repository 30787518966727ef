import os
import re
import functools
import dataclasses
from enum import Enum, auto
from typing import Iterator

from lark import Lark, Token, Tree

from .context import trace, Value

# Non-greedy and multiline: the first `}}` closes a directive, and stray or
# unterminated braces stay in the text.
DIRECTIVE = re.compile(r'\{\{(.*?)\}\}', re.S)

ASSIGN = re.compile(r'\$(\w+)\s*:=\s*(.*)', re.S)
CALL = re.compile(r'(\S+)\s*(.*)', re.S)
NUMBER = re.compile(r'[+-]?\d+(\.\d*)?([eE][+-]?\d+)?')

parser = Lark.open(
    os.path.join(os.path.dirname(__file__), 'args.lark'),
    parser='lalr',
    propagate_positions=True,
)


class Kind(Enum):
    ASSIGN = auto()
    REF = auto()
    CALL = auto()


@dataclasses.dataclass(frozen=True, slots=True)
class Directive:
    start: int
    end: int
    inner: str

    @property
    def kind(self) -> Kind:
        return classify(self.inner)


def scan(text: str) -> Iterator[Directive]:
    for m in DIRECTIVE.finditer(text):
        d = Directive(m.start(), m.end(), m[1].strip())
        trace('Directive at %s..%s: %r', d.start, d.end, d.inner)
        yield d


def classify(inner: str) -> Kind:
    if ':=' in inner and ASSIGN.match(inner):
        return Kind.ASSIGN
    if inner.startswith(('$', '.')):
        return Kind.REF
    return Kind.CALL


def split_assign(inner: str) -> tuple[str, str]:
    m = ASSIGN.match(inner)
    assert m is not None, inner
    return m[1], m[2].strip()


def split_call(inner: str) -> tuple[str, str]:
    if m := CALL.match(inner):
        return m[1], m[2]
    return '', ''


@functools.lru_cache(maxsize=256)
def parse_args(text: str) -> Tree:
    return parser.parse(text)


def coerce(text: str) -> Value:
    '''Bare tokens: numbers, then booleans, else the text itself.'''
    if NUMBER.fullmatch(text):
        if text.lstrip('+-').isdigit():
            return int(text)
        return float(text)
    if text == 'true':
        return True
    if text == 'false':
        return False
    return text


def literal(tok: Token) -> Value:
    if tok.type == 'STRING':
        return tok.value[1:-1]
    return coerce(tok.value)
