from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .nodes import SourceSpan


# Hosting-code defects: unmatched push/pop, missing required arguments.
# Template content should never be able to trigger these.
class InvalidUsageError(Exception):
    pass


class ScriptRuntimeError(Exception):
    '''
    An error raised while evaluating a template, always located at the node
    responsible for it. The host is expected to catch these at the render
    entry point and report them to the template author.
    '''

    def __init__(self, span: 'SourceSpan | None', message: str):
        super().__init__(message)
        self.span = span
        self.message = message

    def __str__(self) -> str:
        if self.span is None:
            return f'error : {self.message}'
        return f'{self.span} : error : {self.message}'


class ScriptParseError(ScriptRuntimeError):
    pass


class LoopLimitError(ScriptRuntimeError):
    pass


class RecursionLimitError(ScriptRuntimeError):
    pass
