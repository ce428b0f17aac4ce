import os
import sys
import time
import logging
import argparse

from .context import TemplateContext
from .errors import ScriptRuntimeError
from .loader import FileSystemLoader
from .parser import ParserOptions
from .script_object import ScriptObject
from .template import Template
from .util import _get_logger


def try_to_value(s: str) -> int | float | str:
    try:
        return int(s)
    except ValueError:
        try:
            return float(s)
        except ValueError:
            return s


def parse_define(s: str) -> tuple[str, int | float | str]:
    name, sep, value = s.partition('=')
    if not sep or not name:
        raise argparse.ArgumentTypeError(f'expecting NAME=VALUE, got {s!r}')
    return name, try_to_value(value)


def main():
    parser = argparse.ArgumentParser(prog='stencil')
    parser.add_argument('file', help="Template file, or '-' for stdin")
    parser.add_argument('-p', '--profile', action='store_true', help='Enable cProfile')
    parser.add_argument(
        '-c', '--dump-ctx', action='store_true', help='Dump globals after rendering'
    )
    parser.add_argument(
        '-D',
        '--define',
        type=parse_define,
        action='append',
        default=[],
        metavar='NAME=VALUE',
        help='Set a global variable',
    )
    parser.add_argument('--loop-limit', type=int, default=1000000)
    parser.add_argument('--recursion-limit', type=int, default=100)
    parser.add_argument(
        '-t', '--trim-blocks', action='store_true', help='Drop a line break after each block'
    )
    parser.add_argument('args', nargs='*', help='Exposed to the template as `args`')
    args = parser.parse_args()

    log = _get_logger('stencil')
    if 'TRACE' in os.environ:
        log.setLevel(logging.DEBUG)
        log.addHandler(logging.FileHandler('stencil_cli.log', 'w', 'utf-8'))

    file = args.file
    if file == '-':
        text = sys.stdin.read()
        source_name = '<stdin>'
        root = os.getcwd()
    else:
        with open(file, encoding='utf-8') as fp:
            text = fp.read()
        source_name = file
        root = os.path.dirname(os.path.abspath(file))

    options = ParserOptions(trim_blocks=args.trim_blocks)
    context = TemplateContext(
        loop_limit=args.loop_limit,
        recursion_limit=args.recursion_limit,
        template_loader=FileSystemLoader(root),
        parser_options=options,
    )
    model = ScriptObject(args=[try_to_value(arg) for arg in args.args])
    model.update(args.define)

    try:
        template = Template.parse(text, source_name, options)
        if args.profile:
            import cProfile
            import pstats

            with cProfile.Profile() as pr:
                result, dt = emit(template, model, context)

            ps = pstats.Stats(pr, stream=sys.stderr).sort_stats('ncalls')
            ps.print_stats()
        else:
            result, dt = emit(template, model, context)
    except ScriptRuntimeError as e:
        print(e, file=sys.stderr)
        sys.exit(1)

    print(result, end='')

    for msg in template.messages:
        print('Warning:', msg, file=sys.stderr)

    if args.dump_ctx:
        for k, v in model.items():
            print(' ', k, '=', repr(v), file=sys.stderr)

    print('Loop steps:', context.loop_step, file=sys.stderr)
    print(f'Time cost: {dt:.3f} secs', file=sys.stderr)


def emit(template: Template, model: ScriptObject, context: TemplateContext):
    t0 = time.perf_counter()
    result = template.render(model, context=context)
    dt = time.perf_counter() - t0
    return result, dt


if __name__ == '__main__':
    main()
