from .errors import (
    InvalidUsageError,
    ScriptRuntimeError,
    ScriptParseError,
    LoopLimitError,
    RecursionLimitError,
)
from .script_object import ScriptObject, ScriptObjectProtocol
from .accessors import MemberRenamer, standard_member_renamer
from .functions import ScriptFunction, HostFunction
from .nodes import SourceSpan, ScopeKind, ScriptVariable
from .parser import ParserOptions
from .loader import TemplateLoader, FileSystemLoader, DictLoader
from .context import TemplateContext, DEFAULT_LOOP_LIMIT, DEFAULT_RECURSION_LIMIT
from .template import Template
