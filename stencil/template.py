from collections.abc import Mapping
from typing import Any

from .context import TemplateContext
from .nodes import BlockStatement, FlowState
from .parser import ParserOptions, parse
from .script_object import ScriptObject, ScriptObjectProtocol
from .util import log


class Template:
    def __init__(self, root: BlockStatement, source_name: str, messages: list[str]):
        self.root = root
        self.source_name = source_name
        # Recoverable lexing problems, like an unclosed `{{`.
        self.messages = messages

    @classmethod
    def parse(
        cls,
        text: str,
        source_name: str = '<template>',
        options: ParserOptions | None = None,
    ) -> 'Template':
        messages: list[str] = []
        root = parse(text, source_name, options, messages)
        for msg in messages:
            log.warning('%s: %s', source_name, msg)
        return cls(root, source_name, messages)

    def render(self, model: Any = None, *, context: TemplateContext | None = None) -> str:
        '''
        Renders with `model` as the innermost global frame and returns the text.

        A mapping model is copied into a `ScriptObject`, and a plain object
        contributes its visible members. Template assignments to globals land
        in that frame, not in the host's object.
        '''
        if context is None:
            context = TemplateContext()
        return ''.join(self._run(context, model))

    def evaluate(self, model: Any = None, *, context: TemplateContext | None = None) -> Any:
        '''
        Runs with output disabled and returns the value of the last expression
        statement, so that `Template.parse('{{ 1 + 2 }}').evaluate()` is 3.
        '''
        if context is None:
            context = TemplateContext()
        enable_output = context.enable_output
        context.enable_output = False
        context.result = None
        try:
            self._run(context, model)
            return context.result
        finally:
            context.enable_output = enable_output
            context.result = None

    def _run(self, context: TemplateContext, model: Any) -> list[str]:
        model = self._to_script_object(context, model)
        with (
            context.global_scope(model),
            context.source_file_scope(self.source_name),
            context.output_scope() as buf,
        ):
            try:
                context.evaluate(self.root)
            finally:
                context.flow_state = FlowState.NONE
                context.return_value = None
        return buf

    @staticmethod
    def _to_script_object(context: TemplateContext, model: Any) -> ScriptObjectProtocol:
        if model is None:
            return ScriptObject()
        if isinstance(model, ScriptObjectProtocol):
            return model
        if isinstance(model, Mapping):
            return ScriptObject(model)
        accessor = context.get_member_accessor(model)
        return ScriptObject(
            {name: accessor.get_value(model, name) for name in accessor.members}
        )

    def __repr__(self) -> str:
        return f'<Template {self.source_name}>'
