import os
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Mapping, override

from .errors import ScriptRuntimeError
from .nodes import FlowState
from .parser import parse
from .util import log, trace

if TYPE_CHECKING:
    from .context import TemplateContext
    from .nodes import ScriptNode, SourceSpan


class TemplateLoader(ABC):
    '''
    Finds and reads the templates pulled in by `include`. Parsed templates are
    cached per context under the path returned by `resolve`.
    '''

    @abstractmethod
    def resolve(
        self, context: 'TemplateContext', span: 'SourceSpan', name: str
    ) -> str:
        pass

    @abstractmethod
    def load(self, path: str) -> str:
        pass


class FileSystemLoader(TemplateLoader):
    def __init__(self, root: str = '.', encoding: str = 'utf-8'):
        self.root = root
        self.encoding = encoding

    @override
    def resolve(
        self, context: 'TemplateContext', span: 'SourceSpan', name: str
    ) -> str:
        base = self.root
        # Relative to the including file when it is one.
        if context.source_file_depth and os.path.isfile(
            current := context.current_source_file
        ):
            base = os.path.dirname(current)

        path = os.path.normpath(os.path.join(base, name))
        if not os.path.isfile(path):
            raise ScriptRuntimeError(span, f'Template [{name}] not found at [{path}]')
        return path

    @override
    def load(self, path: str) -> str:
        with open(path, encoding=self.encoding) as fp:
            return fp.read()


class DictLoader(TemplateLoader):
    def __init__(self, templates: Mapping[str, str]):
        self.templates = templates

    @override
    def resolve(
        self, context: 'TemplateContext', span: 'SourceSpan', name: str
    ) -> str:
        if name not in self.templates:
            raise ScriptRuntimeError(span, f'Template [{name}] not found')
        return name

    @override
    def load(self, path: str) -> str:
        return self.templates[path]


def include_func(context: 'TemplateContext', caller: 'ScriptNode', name: Any = None) -> str:
    if name is None:
        raise ScriptRuntimeError(caller.span, 'include: expecting a template name')
    if (loader := context.template_loader) is None:
        raise ScriptRuntimeError(
            caller.span, f'Unable to include [{name}]: no template loader is configured'
        )

    name = context.to_text(caller.span, name)
    path = loader.resolve(context, caller.span, name)
    if (root := context.cached_templates.get(path)) is None:
        errors: list[str] = []
        root = parse(loader.load(path), path, context.parser_options, errors)
        for msg in errors:
            log.warning('include: %s: %s', path, msg)
        context.cached_templates[path] = root
    else:
        trace('include: cached %s', path)

    with context.source_file_scope(path), context.output_scope() as buf:
        try:
            context.evaluate(root)
        finally:
            # A top level `ret` only ends the included template.
            if context.flow_state is FlowState.RETURN:
                context.flow_state = FlowState.NONE
                context.return_value = None
    return ''.join(buf)
