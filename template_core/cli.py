import os
import sys
import json
import time
import asyncio
import argparse

if 'TRACE' in os.environ:
    import logging

    log = logging.getLogger('qft')
    log.setLevel(logging.DEBUG)
    log.addHandler(logging.FileHandler('template_core_cli.log', 'w', 'utf-8'))

from . import engine
from .engine import Engine
from .context import EngineError


def main():
    parser = argparse.ArgumentParser(description='Render a custom command template.')
    parser.add_argument('file', help='template file, or - for stdin')
    parser.add_argument(
        '-c', '--context', help='JSON file with User, Channel, Guild, ... groups'
    )
    parser.add_argument(
        '-g', '--gas', type=int, default=engine.MAX_GAS, help='gas limit'
    )
    parser.add_argument(
        '-v', '--dump-vars', action='store_true', help='Dump variables after rendering'
    )
    parser.add_argument('args', nargs='*')
    args = parser.parse_args()

    file = args.file
    if file == '-':
        text = sys.stdin.read()
    else:
        with open(file, encoding='utf-8') as fp:
            text = fp.read()

    data = {}
    if args.context:
        with open(args.context, encoding='utf-8') as fp:
            data = json.load(fp)

    engine.MAX_GAS = args.gas

    try:
        e = Engine(data)
        result, dt = asyncio.run(emit(e, text, args.args))
    except EngineError as err:
        print('Engine fault:', err, file=sys.stderr)
        sys.exit(2)

    print(result)

    for err in e.errors:
        print('Error:', err, file=sys.stderr)

    if args.dump_vars:
        for k, v in e.variables.items():
            print(' ', f'${k}', '=', repr(v), file=sys.stderr)

    print('Gas used:', e._gas, file=sys.stderr)
    print(f'Time cost: {dt:.3f} secs', file=sys.stderr)

    sys.exit(bool(e.errors))


async def emit(e: Engine, text: str, args: list[str]):
    t0 = time.perf_counter()
    result = await e.evaluate(text, args)
    dt = time.perf_counter() - t0
    return result, dt


if __name__ == '__main__':
    main()
