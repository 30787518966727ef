import re
import math
import random
import inspect
import functools
import dataclasses
from enum import Enum, auto
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, Mapping

from prettytable import PrettyTable
from simpleeval import simple_eval

from .context import (
    trace,
    Value,
    Context,
    Variables,
    to_str,
    to_json,
    parse_structured,
)

if TYPE_CHECKING:
    from .engine import Engine
    from .interfaces import Platform, Store

MAX_SEQ = 10000
DEFAULT_EMBED_COLOR = 0x5865F2


class FuncError(Exception):
    pass


class Purity(Enum):
    PURE = auto()
    EFFECTING = auto()


@dataclasses.dataclass(slots=True)
class Call:
    '''Handed to bound functions as their first argument.'''

    engine: 'Engine'
    name: str
    # For each argument, the variable it was read from, if it was a plain `$name`.
    sources: tuple[str | None, ...] = ()

    @property
    def context(self) -> Context:
        return self.engine.context

    @property
    def variables(self) -> Variables:
        return self.engine.variables

    @property
    def platform(self) -> 'Platform':
        if (p := self.engine.platform) is None:
            raise FuncError('platform unavailable')
        return p

    @property
    def store(self) -> 'Store':
        if (s := self.engine.store) is None:
            raise FuncError('store unavailable')
        return s

    def source(self, i: int) -> str | None:
        return self.sources[i] if i < len(self.sources) else None


def _arity(impl: Callable, bound: bool) -> tuple[int, int | None]:
    params = list(inspect.signature(impl).parameters.values())
    if bound:
        params = params[1:]
    lo = hi = 0
    for p in params:
        match p.kind:
            case p.VAR_POSITIONAL:
                return lo, None
            case p.POSITIONAL_ONLY | p.POSITIONAL_OR_KEYWORD:
                hi += 1
                if p.default is p.empty:
                    lo += 1
    return lo, hi


@dataclasses.dataclass(frozen=True, slots=True)
class Func:
    name: str
    impl: Callable[..., Any]
    purity: Purity
    min_args: int = 0
    max_args: int | None = None
    bound: bool = False

    @classmethod
    def of(
        cls, name: str, impl: Callable, purity: Purity, *, bound: bool = False
    ) -> 'Func':
        lo, hi = _arity(impl, bound)
        return cls(name, impl, purity, lo, hi, bound)

    @property
    def effecting(self) -> bool:
        return self.purity is Purity.EFFECTING

    def check_arity(self, n: int):
        if n < self.min_args:
            raise FuncError(f'want at least {self.min_args} args, got {n}')
        if self.max_args is not None and n > self.max_args:
            raise FuncError(f'want at most {self.max_args} args, got {n}')


class Registry(Mapping[str, Func]):
    def __init__(self, funcs: Iterable[Func] = ()):
        self._funcs: dict[str, Func] = {f.name: f for f in funcs}

    def __getitem__(self, name: str) -> Func:
        return self._funcs[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._funcs)

    def __len__(self) -> int:
        return len(self._funcs)

    def _register(
        self, purity: Purity, names: tuple[str, ...], bound: bool
    ) -> Callable[[Callable], Callable]:
        def deco(impl: Callable) -> Callable:
            for name in names or (impl.__name__,):
                assert name not in self._funcs, name
                self._funcs[name] = Func.of(name, impl, purity, bound=bound)
            return impl

        return deco

    def pure(self, *names: str, bound: bool = False):
        return self._register(Purity.PURE, names, bound)

    def effecting(self, *names: str, bound: bool = False):
        return self._register(Purity.EFFECTING, names, bound)

    def union(self, extra: Mapping[str, 'Func | Callable']) -> 'Registry':
        '''A new table with `extra` on top. Plain callables are pure unless
        they are coroutine functions.'''
        r = Registry(self._funcs.values())
        for name, f in extra.items():
            if not isinstance(f, Func):
                purity = (
                    Purity.EFFECTING
                    if inspect.iscoroutinefunction(f)
                    else Purity.PURE
                )
                f = Func.of(name, f, purity)
            r._funcs[name] = f
        return r


BUILTINS = Registry()
pure = BUILTINS.pure


async def resolved(x):
    if inspect.isawaitable(x):
        return await x
    return x


def truthy(v: Value) -> bool:
    return bool(v)


def num(v: Value) -> int | float:
    if isinstance(v, bool):
        return int(v)
    if isinstance(v, (int, float)):
        return v
    if v is None:
        return 0
    if isinstance(v, str):
        s = v.strip()
        if not s:
            return 0
        try:
            return int(s)
        except ValueError:
            pass
        try:
            return float(s)
        except ValueError:
            pass
    raise FuncError(f'not a number: {shorten(to_str(v))}')


def shorten(s: str, max_len: int = 32) -> str:
    if len(s) <= max_len:
        return s
    return s[: max_len - 3] + '...'


# ===== strings =====


@pure()
def lower(s: Value) -> str:
    return to_str(s).lower()


@pure()
def upper(s: Value) -> str:
    return to_str(s).upper()


@pure()
def title(s: Value) -> str:
    return re.sub(r'\w\S*', lambda m: m[0][:1].upper() + m[0][1:].lower(), to_str(s))


@pure()
def split(s: Value, sep: Value = ' ') -> list[str]:
    s, sep = to_str(s), to_str(sep)
    if not sep:
        return list(s)
    return s.split(sep)


@pure('joinStr')
def join_str(sep: Value, *args: Value) -> str:
    if len(args) == 1 and isinstance(args[0], (list, tuple)):
        args = tuple(args[0])
    return to_str(sep).join(to_str(a) for a in args)


@pure()
def printf(fmt: Value, *args: Value) -> str:
    # `%v` as in Go templates.
    fmt = to_str(fmt).replace('%v', '%s')
    args = tuple(a if isinstance(a, (int, float)) else to_str(a) for a in args)
    return fmt % args


@pure('print')
def print_(*args: Value) -> str:
    return ' '.join(to_str(a) for a in args)


@pure('trimSpace')
def trim_space(s: Value) -> str:
    return to_str(s).strip()


@pure('hasPrefix')
def has_prefix(s: Value, prefix: Value) -> bool:
    return to_str(s).startswith(to_str(prefix))


@pure('hasSuffix')
def has_suffix(s: Value, suffix: Value) -> bool:
    return to_str(s).endswith(to_str(suffix))


@pure('reFind')
def re_find(pattern: Value, s: Value) -> str:
    m = re.search(to_str(pattern), to_str(s))
    return m[0] if m else ''


@pure('reReplace')
def re_replace(pattern: Value, s: Value, repl: Value) -> str:
    return re.sub(to_str(pattern), to_str(repl), to_str(s))


@pure('humanizeThousands')
def humanize_thousands(n: Value) -> str:
    return re.sub(r'\B(?=(\d{3})+(?!\d))', ',', to_str(n))


@pure('toString')
def to_string(v: Value) -> str:
    return to_str(v)


@pure('toInt')
def to_int(v: Value) -> int:
    if isinstance(v, (int, float)):
        return int(v)
    m = re.match(r'\s*([+-]?\d+)', to_str(v))
    return int(m[1]) if m else 0


@pure('toFloat')
def to_float(v: Value) -> float:
    if isinstance(v, (int, float)):
        return float(v)
    m = re.match(r'\s*([+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?)', to_str(v))
    return float(m[1]) if m else 0.0


@pure('json')
def json_(v: Value) -> str:
    return to_json(v, indent=2)


@pure('kindOf')
def kind_of(v: Value) -> str:
    if v is None:
        return 'nil'
    if isinstance(v, bool):
        return 'boolean'
    if isinstance(v, (int, float)):
        return 'number'
    if isinstance(v, str):
        return 'string'
    if isinstance(v, (list, tuple)):
        return 'slice'
    return 'struct'


# ===== math =====


@pure()
def add(*nums: Value) -> int | float:
    return sum((num(n) for n in nums), 0)


@pure()
def sub(first: Value, *rest: Value) -> int | float:
    return functools.reduce(lambda a, b: a - num(b), rest, num(first))


@pure()
def mult(*nums: Value) -> int | float:
    return functools.reduce(lambda a, b: a * num(b), nums, 1)


@pure()
def div(first: Value, *rest: Value) -> int | float:
    return functools.reduce(lambda a, b: a / num(b), rest, num(first))


@pure()
def mod(a: Value, b: Value) -> int | float:
    # Sign follows the dividend.
    x, y = num(a), num(b)
    r = math.fmod(x, y)
    return int(r) if isinstance(x, int) and isinstance(y, int) else r


@pure('randInt')
def rand_int(lo: Value, hi: Value = None) -> int:
    if hi is None:
        lo, hi = 0, lo
    return random.randrange(int(num(lo)), int(num(hi)))


@pure()
def calc(expr: Value) -> Value:
    r = simple_eval(to_str(expr))
    if r is None or isinstance(r, (str, int, float, bool)):
        return r
    raise FuncError(f'bad result type: {type(r).__name__}')


# ===== logic =====


@pure('if')
def if_(cond: Value, then: Value = None, otherwise: Value = None) -> Value:
    return then if truthy(cond) else otherwise


def _eq(a: Value, b: Value) -> bool:
    if a == b:
        return True
    # IDs from the context are strings, literals in templates are numbers.
    if isinstance(a, str) != isinstance(b, str) and is_plain(a) and is_plain(b):
        return to_str(a) == to_str(b)
    return False


def is_plain(v: Value) -> bool:
    return isinstance(v, (str, int, float, bool))


@pure()
def eq(a: Value, b: Value, *more: Value) -> bool:
    return any(_eq(a, x) for x in (b, *more))


@pure()
def ne(a: Value, b: Value) -> bool:
    return not _eq(a, b)


def _cmp(a: Value, b: Value) -> tuple[Any, Any]:
    try:
        return num(a), num(b)
    except FuncError:
        if isinstance(a, str) and isinstance(b, str):
            return a, b
        raise


@pure()
def lt(a: Value, b: Value) -> bool:
    x, y = _cmp(a, b)
    return x < y


@pure()
def le(a: Value, b: Value) -> bool:
    x, y = _cmp(a, b)
    return x <= y


@pure()
def gt(a: Value, b: Value) -> bool:
    x, y = _cmp(a, b)
    return x > y


@pure()
def ge(a: Value, b: Value) -> bool:
    x, y = _cmp(a, b)
    return x >= y


@pure('and')
def and_(*args: Value) -> bool:
    return all(truthy(a) for a in args)


@pure('or')
def or_(*args: Value) -> bool:
    return any(truthy(a) for a in args)


@pure('not')
def not_(v: Value) -> bool:
    return not truthy(v)


@pure('in')
def in_(seq: Value, v: Value) -> bool:
    if isinstance(seq, str):
        return to_str(v) in seq
    if isinstance(seq, (list, tuple)):
        return any(_eq(x, v) for x in seq)
    if isinstance(seq, Mapping):
        return to_str(v) in seq
    return False


# ===== collections =====


@pure()
def index(coll: Value, *keys: Value) -> Value:
    cur = coll
    for k in keys:
        try:
            if isinstance(cur, (str, list, tuple)):
                cur = cur[int(num(k))]
            elif isinstance(cur, Mapping):
                cur = cur[to_str(k)]
            else:
                return None
        except (IndexError, KeyError):
            return None
    return cur


@pure('slice')
def slice_(coll: Value, start: Value, end: Value = None) -> Value:
    if not isinstance(coll, (str, list, tuple)):
        return coll
    s = slice(int(num(start)), None if end is None else int(num(end)))
    r = coll[s]
    return list(r) if isinstance(r, tuple) else r


def _range(start: int, stop: int) -> list[int]:
    return list(range(start, min(stop, start + MAX_SEQ)))


@pure()
def seq(start: Value, stop: Value) -> list[int]:
    return _range(int(num(start)), int(num(stop)))


@pure('range')
def range_(start: Value, stop: Value = None) -> list[int]:
    if stop is None:
        return _range(0, int(num(start)))
    return _range(int(num(start)), int(num(stop)))


@pure()
def shuffle(coll: Value) -> Value:
    if not isinstance(coll, (list, tuple)):
        return coll
    return random.sample(list(coll), len(coll))


def _sort_key(v: Value) -> tuple[int, Any]:
    if isinstance(v, (int, float)):
        return 0, v
    if isinstance(v, str):
        return 1, v
    return 2, to_str(v)


@pure()
def sort(coll: Value, key: Value = None, reverse: Value = False) -> Value:
    if not isinstance(coll, (list, tuple)):
        return coll
    if isinstance(key, Mapping):
        reverse = key.get('reverse', reverse)
        key = key.get('key')
    if key not in (None, ''):
        field = to_str(key)

        def sort_key(v):
            return _sort_key(v.get(field) if isinstance(v, Mapping) else v)

    else:
        sort_key = _sort_key
    return sorted(coll, key=sort_key, reverse=truthy(reverse))


@pure('len')
def len_(v: Value) -> int:
    if isinstance(v, (str, list, tuple, Mapping)):
        return len(v)
    return 0


@pure()
def cslice(*items: Value) -> list:
    return list(items)


@pure('sdict', 'dict')
def sdict(*pairs: Value) -> dict[str, Value]:
    return {to_str(pairs[i]): pairs[i + 1] for i in range(0, len(pairs) - 1, 2)}


@pure()
def table(rows: Value, *columns: Value) -> str:
    if isinstance(rows, Mapping):
        rows = [rows]
    if not isinstance(rows, (list, tuple)) or not rows:
        return ''
    if not all(isinstance(r, Mapping) for r in rows):
        raise FuncError('rows must be mappings')
    fields = [to_str(c) for c in columns] or list(rows[0])
    t = PrettyTable(field_names=fields)
    for r in rows:
        t.add_row([to_str(r.get(f)) for f in fields])
    return t.get_string()


# ===== structures =====


def _color(v: Value) -> int:
    if v in (None, ''):
        return DEFAULT_EMBED_COLOR
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return int(v)
    return int(to_str(v).removeprefix('#'), 16)


@pure('createEmbed')
def create_embed(
    title: Value = '', description: Value = '', color: Value = None
) -> dict[str, Value]:
    return {
        'title': to_str(title),
        'description': to_str(description),
        'color': _color(color),
        'timestamp': current_time(),
        'fields': [],
    }


@pure('addField', bound=True)
def add_field(
    call: Call, embed: Value, name: Value, value: Value, inline: Value = False
) -> Value:
    if isinstance(embed, str):
        embed = parse_structured(embed)
    if not isinstance(embed, Mapping):
        raise FuncError('not an embed')

    embed = dict(embed)
    embed['fields'] = [
        *(embed.get('fields') or ()),
        {'name': to_str(name), 'value': to_str(value), 'inline': truthy(inline)},
    ]
    if var := call.source(0):
        trace('addField: writing back to $%s', var)
        call.variables[var] = embed
    return embed


def _var_name(call: Call, i: int, name: Value) -> str:
    # `setVar $x 1` names the variable itself, not its current value.
    if var := call.source(i):
        return var
    if not (s := to_str(name).removeprefix('$')):
        raise FuncError('empty variable name')
    return s


@pure('setVar', bound=True)
def set_var(call: Call, name: Value, value: Value) -> Value:
    call.variables[_var_name(call, 0, name)] = value
    return value


@pure('getVar', bound=True)
def get_var(call: Call, name: Value) -> Value:
    return call.variables.get(_var_name(call, 0, name))


# ===== time =====


@pure('currentTime')
def current_time() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


INVALID_DATE = 'Invalid Date'


def _parse_time(v: Value) -> datetime | None:
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        # Epoch milliseconds.
        try:
            return datetime.fromtimestamp(v / 1000, timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        return datetime.fromisoformat(to_str(v).strip())
    except ValueError:
        return None


@pure('formatTime')
def format_time(t: Value, fmt: Value = None) -> str:
    if (dt := _parse_time(t)) is None:
        return INVALID_DATE
    return dt.strftime(to_str(fmt) if fmt else '%c')


@pure('parseTime')
def parse_time(s: Value) -> str:
    if (dt := _parse_time(s)) is None:
        return INVALID_DATE
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


# ===== mentions and invocation data =====


def _ctx(call: Call, path: str) -> str:
    return to_str(call.context.resolve(path))


@pure('userMention', bound=True)
def user_mention(call: Call, user_id: Value = None) -> str:
    if i := to_str(user_id) or _ctx(call, 'User.ID'):
        return f'<@{i}>'
    return '@unknown'


@pure('channelMention', bound=True)
def channel_mention(call: Call, channel_id: Value = None) -> str:
    if i := to_str(channel_id) or _ctx(call, 'Channel.ID'):
        return f'<#{i}>'
    return '#unknown'


@pure('roleMention')
def role_mention(role_id: Value = None) -> str:
    if i := to_str(role_id):
        return f'<@&{i}>'
    return '@role'


@pure('userName', bound=True)
def user_name(call: Call, user_id: Value = None) -> str:
    # Other users need a platform lookup, see `getMember`.
    return _ctx(call, 'User.Username') or 'Unknown'


@pure('userID', bound=True)
def user_id_(call: Call) -> str:
    return _ctx(call, 'User.ID')


@pure('channelName', bound=True)
def channel_name(call: Call, channel_id: Value = None) -> str:
    return _ctx(call, 'Channel.Name') or 'unknown'


@pure('channelID', bound=True)
def channel_id_(call: Call) -> str:
    return _ctx(call, 'Channel.ID')


# ===== registry preload =====


@pure('reg', bound=True)
def reg(call: Call, key: Value) -> Value:
    entries = call.context['Reg']
    return entries.get(to_str(key), '') if isinstance(entries, Mapping) else ''


@pure('regGuild', bound=True)
def reg_guild(call: Call, key: Value, guild_id: Value = None) -> Value:
    # Only the current guild's entries are preloaded.
    guild = _ctx(call, 'Guild.ID')
    if not guild or to_str(guild_id) not in ('', guild):
        return ''
    entries = call.context['RegGuild']
    return entries.get(to_str(key), '') if isinstance(entries, Mapping) else ''
