import os
import json
import logging
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping, Sequence, TypeAlias, TypeGuard
from collections.abc import MutableMapping

log = logging.getLogger('qft.template')

is_tracing = os.environ.get('TRACE') == '1' and log.isEnabledFor(logging.DEBUG)
trace = log.debug if is_tracing else lambda *_: None

# Values flowing between directives. Context trees are frozen into
# `MappingProxyType` and tuples, which are accepted wherever dicts and lists are.
Scalar: TypeAlias = str | int | float | bool | None
Value: TypeAlias = Scalar | list | tuple | dict | Mapping


class EngineError(Exception):
    '''Faults outside the template author's control. Escapes `evaluate`.'''


class MalformedContext(EngineError):
    pass


def is_scalar(v: Any) -> TypeGuard[Scalar]:
    return v is None or isinstance(v, (str, int, float, bool))


def _json_default(o):
    if isinstance(o, Mapping):
        return dict(o)
    return str(o)


def to_json(v: Value, indent: int | None = None) -> str:
    separators = None if indent else (',', ':')
    return json.dumps(
        v,
        ensure_ascii=False,
        indent=indent,
        separators=separators,
        default=_json_default,
    )


def to_str(v: Value) -> str:
    if v is None:
        return ''
    if isinstance(v, str):
        return v
    if isinstance(v, bool):
        return 'true' if v else 'false'
    if isinstance(v, int):
        return str(v)
    if isinstance(v, float):
        if v.is_integer():
            return str(int(v))
        return repr(v)
    if isinstance(v, (Mapping, list, tuple)):
        return to_json(v)
    return str(v)


def step(val: Value, seg: str) -> tuple[bool, Value]:
    '''One path segment. Returns `(False, None)` when `val` has nothing there.'''
    if isinstance(val, Mapping):
        if seg in val:
            return True, val[seg]
        return False, None
    if isinstance(val, (list, tuple)):
        try:
            return True, val[int(seg)]
        except (ValueError, IndexError):
            return False, None
    return False, None


def walk(val: Value, segs: Iterable[str], *, parse_json: bool = False) -> Value:
    for seg in segs:
        if parse_json and isinstance(val, str):
            val = parse_structured(val)
        ok, val = step(val, seg)
        if not ok or val is None:
            return ''
    return val


def parse_structured(s: str) -> Value:
    # Only strings shaped like objects or arrays are parsed, so `"123"` stays
    # a plain (non-indexable) string.
    if not s.lstrip().startswith(('{', '[')):
        return None
    try:
        return json.loads(s)
    except (ValueError, RecursionError):
        trace('Not structured: %r', s)
        return None


def _freeze(val: Any, path: str) -> Value:
    if is_scalar(val):
        return val
    if isinstance(val, Mapping):
        out = {}
        for k, v in val.items():
            if not isinstance(k, str):
                raise MalformedContext(f'non-string key at {path or "."}: {k!r}')
            out[k] = _freeze(v, f'{path}.{k}')
        return MappingProxyType(out)
    if isinstance(val, (list, tuple)):
        return tuple(_freeze(v, f'{path}.{i}') for i, v in enumerate(val))
    raise MalformedContext(f'bad value at {path or "."}: {type(val).__name__}')


class Context(Mapping[str, Value]):
    '''Read-only invocation data: `User`, `Member`, `Channel`, `Guild`,
    `Message`, `Args` and `Interaction`, plus the registry preload in `Reg`
    and `RegGuild`.'''

    GROUPS = (
        'User',
        'Member',
        'Channel',
        'Guild',
        'Message',
        'Args',
        'Interaction',
        'Reg',
        'RegGuild',
    )

    def __init__(self, data: Mapping[str, Any] | None = None, args: Sequence = ()):
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise MalformedContext(f'context must be a mapping: {type(data).__name__}')
        if isinstance(args, (str, bytes)) or not isinstance(args, Sequence):
            raise MalformedContext(f'args must be a sequence: {type(args).__name__}')

        root = dict(data)
        root['Args'] = [to_str(a) for a in args] if args else root.get('Args', [])
        for name in self.GROUPS:
            root.setdefault(name, None if name == 'Interaction' else {})

        frozen = _freeze(root, '')
        assert isinstance(frozen, Mapping)
        self._data: Mapping[str, Value] = frozen

    @classmethod
    def _of(cls, frozen: Mapping[str, Value]) -> 'Context':
        ctx = cls.__new__(cls)
        ctx._data = frozen
        return ctx

    def with_args(self, args: Sequence) -> 'Context':
        if isinstance(args, (str, bytes)):
            raise MalformedContext('args must be a sequence: str')
        return self.replace(Args=tuple(to_str(a) for a in args))

    def replace(self, **groups: Value) -> 'Context':
        data = dict(self._data)
        for name, val in groups.items():
            data[name] = _freeze(val, name)
        return self._of(MappingProxyType(data))

    def __getitem__(self, key: str) -> Value:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f'Context({", ".join(self._data)})'

    def resolve(self, path: str) -> Value:
        segs = path.removeprefix('.').split('.')
        r = walk(self._data, segs)
        trace('Context: %s -> %r', path, r)
        return r


class Variables(MutableMapping[str, Value]):
    '''Per-evaluation variable table. Names are stored without the sigil.'''

    def __init__(self):
        self._data: dict[str, Value] = {}

    def __getitem__(self, key: str) -> Value:
        return self._data[key]

    def __setitem__(self, key: str, value: Value) -> None:
        trace('Var set: $%s = %r', key, value)
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def resolve(self, path: str) -> Value:
        name, *segs = path.removeprefix('$').split('.')
        if name not in self._data:
            trace('Var not found: $%s', name)
            return ''
        val = self._data[name]
        if segs:
            val = walk(val, segs, parse_json=True)
        elif val is None:
            val = ''
        trace('Var: %s -> %r', path, val)
        return val

    def debug(self):
        for k, v in self._data.items():
            trace('  $%s = %r', k, v)
