from .context import Value, Context, Variables, EngineError, MalformedContext, to_str
from .engine import Engine, OutOfGas, StackOverflow, evaluate, render, MAX_GAS
from .funcs import BUILTINS, Call, Func, FuncError, Purity, Registry
from .interfaces import Member, Platform, PlatformError, Store, StoreError

__all__ = [
    'Value',
    'Context',
    'Variables',
    'EngineError',
    'MalformedContext',
    'to_str',
    'Engine',
    'OutOfGas',
    'StackOverflow',
    'evaluate',
    'render',
    'MAX_GAS',
    'BUILTINS',
    'Call',
    'Func',
    'FuncError',
    'Purity',
    'Registry',
    'Member',
    'Platform',
    'PlatformError',
    'Store',
    'StoreError',
]
