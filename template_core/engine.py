import asyncio
import inspect
from contextlib import contextmanager
from typing import Any, Mapping, Sequence, TypeAlias

from lark import Token, Tree
from lark.exceptions import LarkError

from .lex import (
    Kind,
    scan,
    classify,
    split_assign,
    split_call,
    parse_args,
    literal,
)
from .context import (
    is_tracing,
    trace,
    log,
    Value,
    Context,
    Variables,
    EngineError,
    to_str,
)
from .funcs import BUILTINS, Call, Func, FuncError, resolved, shorten
from .interfaces import Platform, Store, StoreError

# Registers the effecting built-ins.
from . import effects  # noqa: F401

MAX_DEPTH = 20
MAX_GAS = 2000
REGISTRY_PRELOAD = 500


class OutOfGas(EngineError):
    pass


class StackOverflow(EngineError):
    pass


Args: TypeAlias = tuple[list[Value], tuple[str | None, ...]]


class Engine:
    def __init__(
        self,
        ctx: Context | Mapping[str, Any] | None = None,
        *,
        platform: Platform | None = None,
        store: Store | None = None,
        funcs: Mapping[str, Func | Any] | None = None,
    ):
        # Malformed invocation data is an engine fault, raised right here.
        self.context = ctx if isinstance(ctx, Context) else Context(ctx)
        self.platform = platform
        self.store = store
        self.funcs = BUILTINS.union(funcs) if funcs else BUILTINS

        self.variables = Variables()
        self.errors: list[str] = []

        self._gas: int = 0
        self._depth: int = 0
        self._preloaded = False

    def _consume_gas(self):
        if self._gas >= MAX_GAS:
            raise OutOfGas('out of gas')
        self._gas += 1

    def _error(self, msg: str):
        log.debug('Error: %s', msg)
        self.errors.append(msg)

    async def evaluate(self, text: str, args: Sequence | None = None) -> str:
        if args is not None:
            self.context = self.context.with_args(args)
        self.variables = Variables()
        self.errors = []
        self._gas = 0
        self._depth = 0

        await self._preload()
        r = await self._render(text)
        if is_tracing:
            trace('Evaluated: %r\nGas cost: %s', r, self._gas)
            self.variables.debug()
        return r

    async def execute(self, text: str, args: Sequence) -> str:
        '''Runs another template with its own variables and `args`. Gas, depth
        and errors carry over to this evaluation.'''
        with self._nested():
            child = Engine(
                self.context.with_args(args), platform=self.platform, store=self.store
            )
            child.funcs = self.funcs
            child._preloaded = True
            child._gas = self._gas
            child._depth = self._depth
            try:
                return await child._render(text)
            finally:
                self._gas = child._gas
                self.errors.extend(child.errors)

    async def _preload(self):
        # Registry entries show up as `.Reg` and, scoped to this guild, `.RegGuild`.
        if self._preloaded or self.store is None:
            return
        self._preloaded = True
        try:
            entries = await resolved(self.store.registry_entries(REGISTRY_PRELOAD))
        except StoreError as e:
            log.warning('Registry preload failed: %s', e)
            return

        guild = to_str(self.context.resolve('.Guild.ID'))
        reg: dict[str, Value] = {}
        reg_guild: dict[str, Value] = {}
        for r in entries:
            scope = r['type'] or ''
            if scope == 'guild' or scope.startswith('guild:'):
                target = scope.partition(':')[2] if ':' in scope else guild
                if guild and target == guild:
                    reg_guild[r['key']] = r['value']
            else:
                reg[r['key']] = r['value']
        self.context = self.context.replace(Reg=reg, RegGuild=reg_guild)

    async def _render(self, text: str) -> str:
        out: list[str] = []
        pos = 0
        try:
            for d in scan(text):
                self._consume_gas()
                out.append(text[pos : d.start])
                out.append(to_str(await self._expr(d.inner)))
                pos = d.end
        except EngineError:
            raise
        except Exception as e:
            log.exception('Engine fault at %s: %s', pos, shorten(text))
            raise EngineError(f'internal: {type(e).__name__}: {e}') from e
        out.append(text[pos:])
        return ''.join(out)

    async def _expr(self, text: str) -> Value:
        match classify(text):
            case Kind.ASSIGN:
                name, rhs = split_assign(text)
                with self._nested():
                    val = await self._expr(rhs)
                self.variables[name] = val
                return None
            case Kind.REF:
                return self._ref(text)
            case Kind.CALL:
                return await self._call(text)

    def _ref(self, path: str) -> Value:
        if path.startswith('$'):
            return self.variables.resolve(path)
        return self.context.resolve(path)

    async def _call(self, text: str) -> Value:
        name, rest = split_call(text)
        if (func := self.funcs.get(name)) is None:
            trace('Unknown function: %r', name)
            return text

        try:
            tree = parse_args(rest)
        except LarkError as e:
            self._error(f'parse: {shorten(text)}: {type(e).__name__}')
            return text

        args, sources = await self._args(tree.children, rest)
        return await self._invoke(func, args, sources)

    async def _args(self, nodes: list, src: str) -> Args:
        # Left to right, each argument fully evaluated before the next one.
        vals: list[Value] = []
        sources: list[str | None] = []
        for node in nodes:
            assert isinstance(node, Tree) and node.data == 'arg', node
            val, source = await self._arg(node.children[0], src)
            vals.append(val)
            sources.append(source)
        return vals, tuple(sources)

    async def _arg(self, node: Tree | Token, src: str) -> tuple[Value, str | None]:
        if isinstance(node, Token):
            match node.type:
                case 'VAR':
                    source = None if '.' in node.value else node.value[1:]
                    return self.variables.resolve(node.value), source
                case 'PATH':
                    return self.context.resolve(node.value), None
                case _:
                    return literal(node), None

        match node.data:
            case 'ref':
                return await self._arg(node.children[0], src)
            case 'call':
                with self._nested():
                    return await self._group(node, src), None
        raise NotImplementedError(node.data)

    async def _group(self, node: Tree, src: str) -> Value:
        self._consume_gas()
        head, *rest = node.children
        assert isinstance(head, Token), head
        if (func := self.funcs.get(head.value)) is None:
            text = src[node.meta.start_pos : node.meta.end_pos]
            trace('Unknown function in group: %r', text)
            return text
        args, sources = await self._args(rest, src)
        return await self._invoke(func, args, sources)

    # Depth of nested groups and assignments, not of Python frames.
    @contextmanager
    def _nested(self):
        if self._depth >= MAX_DEPTH:
            raise StackOverflow('stack overflow')
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1

    async def _invoke(
        self, func: Func, args: list[Value], sources: tuple[str | None, ...]
    ) -> Value:
        self._consume_gas()
        trace('Calling %s%r', func.name, tuple(args))
        try:
            func.check_arity(len(args))
            if func.bound:
                r = func.impl(Call(self, func.name, sources), *args)
            else:
                r = func.impl(*args)
            if inspect.isawaitable(r):
                # An effect already in flight completes even if we are cancelled.
                r = await (asyncio.shield(r) if func.effecting else r)
        except EngineError:
            raise
        except Exception as e:
            return self._fail(func, e)
        trace('Result %s -> %r', func.name, r)
        return r

    def _fail(self, func: Func, e: Exception) -> str:
        msg = str(e) if isinstance(e, FuncError) else f'{type(e).__name__}: {e}'
        if func.effecting:
            log.warning('Effect failed: %s: %s', func.name, msg)
        else:
            log.debug('Function failed: %s: %s', func.name, msg)
        self._error(f'{func.name}: {msg}')
        return f'[{func.name}: {msg}]'


async def evaluate(
    text: str,
    ctx: Context | Mapping[str, Any] | None = None,
    args: Sequence | None = None,
    **kwargs,
) -> str:
    return await Engine(ctx, **kwargs).evaluate(text, args)


def render(
    text: str,
    ctx: Context | Mapping[str, Any] | None = None,
    args: Sequence | None = None,
    **kwargs,
) -> str:
    '''Blocking `evaluate` for callers outside an event loop.'''
    return asyncio.run(evaluate(text, ctx, args, **kwargs))
