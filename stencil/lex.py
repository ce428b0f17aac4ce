from typing import Iterator, NamedTuple

from .util import trace

OPEN = '{{'
CLOSE = '}}'


class Fragment(NamedTuple):
    is_code: bool
    text: str
    # Where `text` starts in the template, 1-based.
    line: int
    column: int


def _position(text: str, offset: int) -> tuple[int, int]:
    line = text.count('\n', 0, offset) + 1
    column = offset - (text.rfind('\n', 0, offset) + 1) + 1
    return line, column


def _find_close(text: str, start: int) -> int | None:
    '''
    Finds the `}}` closing the code block whose content starts at `start`.
    Quotes, `#` comments and the braces of object literals are skipped over.
    '''
    depth = 0
    quote = None
    escape = False
    comment = False

    for p in range(start, len(text)):
        c = text[p]
        if escape:
            escape = False
            continue

        if comment:
            # A comment runs until the end of the line or of the block.
            if c == '\n':
                comment = False
            elif depth == 0 and text.startswith(CLOSE, p):
                return p
            continue

        if quote:
            # The escaping `\` in string literals is handled by the parser later.
            if c == '\\':
                escape = True
            elif c == quote:
                quote = None
            continue

        match c:
            case "'" | '"':
                quote = c
            case '#':
                comment = True
            case '{':
                depth += 1
            case '}':
                if depth:
                    depth -= 1
                elif text.startswith(CLOSE, p):
                    return p

    return None


def lex(
    text: str, *, trim_blocks: bool = False, errors: list[str] | None = None
) -> Iterator[Fragment]:
    r'''
    Chunks `text` into text fragments and the code inside `{{ ... }}` blocks.

    `\{{` in text stands for a literal `{{`. With `trim_blocks`, a single line
    break right after a code block is dropped.

    An unclosed block is kept as text, and a message is appended to `errors`.
    '''
    trace('Lexing text: %r', text)

    buf: list[str] = []
    # Start of the text fragment being buffered.
    text_start = 0
    cursor = 0
    n = len(text)

    def flush_text(end: int) -> Iterator[Fragment]:
        buf.append(text[cursor:end])
        if chunk := ''.join(buf):
            yield Fragment(False, chunk, *_position(text, text_start))
        buf.clear()

    p = 0
    while p < n:
        if text.startswith('\\' + OPEN, p):
            buf.append(text[cursor:p])
            buf.append(OPEN)
            p = cursor = p + 1 + len(OPEN)
            continue

        if not text.startswith(OPEN, p):
            p += 1
            continue

        start = p + len(OPEN)
        end = _find_close(text, start)
        if end is None:
            msg = 'Unclosed code block starting at line {}, column {}'.format(
                *_position(text, p)
            )
            trace('%s', msg)
            if errors is not None:
                errors.append(msg)
            break

        yield from flush_text(p)

        code = text[start:end]
        trace('Lexed block: %r', code)
        yield Fragment(True, code, *_position(text, start))

        p = end + len(CLOSE)
        if trim_blocks:
            if text.startswith('\r\n', p):
                p += 2
            elif text.startswith('\n', p):
                p += 1
        cursor = text_start = p

    yield from flush_text(n)
