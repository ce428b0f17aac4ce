import unittest
from dataclasses import dataclass

from stencil.accessors import TypedMemberAccessor
from stencil.context import TemplateContext
from stencil.errors import (
    InvalidUsageError,
    LoopLimitError,
    RecursionLimitError,
    ScriptRuntimeError,
)
from stencil.functions import HostFunction, is_function
from stencil.nodes import (
    BinaryExpression,
    IndexerExpression,
    LiteralExpression,
    MemberExpression,
    ScopeKind,
    ScriptVariable,
    SourceSpan,
    WhileStatement,
    BlockStatement,
)
from stencil.script_object import ScriptObject


def var(name: str, scope: ScopeKind = ScopeKind.GLOBAL) -> ScriptVariable:
    return ScriptVariable(name, scope, span=SourceSpan('test', 1, 1))


def member(target, name: str) -> MemberExpression:
    return MemberExpression(target, name)


def index(target, i) -> IndexerExpression:
    return IndexerExpression(target, LiteralExpression(i))


@dataclass
class User:
    firstName: str
    age: int = 0


class Point:
    def __init__(self, x, y):
        self._x = x
        self.y = y

    @property
    def x(self):
        return self._x


class TestScopes(unittest.TestCase):
    def setUp(self):
        self.ctx = TemplateContext()

    def test_global_shadowing(self):
        a = ScriptObject(name='A', only_a=1)
        b = ScriptObject(name='B')
        self.ctx.push_global(a)
        self.ctx.push_global(b)
        self.assertEqual(self.ctx.get_value(var('name')), 'B')
        self.assertEqual(self.ctx.get_value(var('only_a')), 1)

        self.assertIs(self.ctx.pop_global(), b)
        self.assertEqual(self.ctx.get_value(var('name')), 'A')

        self.ctx.pop_global()
        with self.assertRaises(InvalidUsageError):
            self.ctx.pop_global()

    def test_global_set_targets_innermost(self):
        a = ScriptObject(name='A')
        b = ScriptObject()
        with self.ctx.global_scope(a), self.ctx.global_scope(b):
            self.ctx.set_value(var('name'), 'set')
            self.assertEqual(b['name'], 'set')
            self.assertEqual(a['name'], 'A')

    def test_push_global_requires_model(self):
        with self.assertRaises(InvalidUsageError):
            self.ctx.push_global(None)
        with self.assertRaises(InvalidUsageError):
            self.ctx.push_global({'a': 1})

    def test_locals_do_not_leak_out_of_global(self):
        local = var('x', ScopeKind.LOCAL)
        self.ctx.set_variable(local, 'outer')
        with self.ctx.global_scope(ScriptObject()):
            self.assertIsNone(self.ctx.get_value(local))
            self.ctx.set_variable(local, 'inner')
            self.assertEqual(self.ctx.get_value(local), 'inner')
        self.assertEqual(self.ctx.get_value(local), 'outer')

    def test_missing_variable_is_none(self):
        self.assertIsNone(self.ctx.get_value(var('nope')))
        self.assertIsNone(self.ctx.get_value(var('nope', ScopeKind.LOCAL)))

    def test_loop_variable_outside_loop(self):
        with self.assertRaises(ScriptRuntimeError) as cm:
            self.ctx.get_value(var('for.index', ScopeKind.LOOP))
        self.assertIn('Invalid usage of the loop variable [for.index]', str(cm.exception))
        self.assertEqual(cm.exception.span, SourceSpan('test', 1, 1))

    def test_loop_frames(self):
        loop = WhileStatement(LiteralExpression(False), BlockStatement())
        v = var('for.index', ScopeKind.LOOP)
        with self.ctx.loop_scope(loop):
            self.assertTrue(self.ctx.is_in_loop)
            self.ctx.set_variable(v, 1)
            with self.ctx.loop_scope(loop):
                self.assertIsNone(self.ctx.get_value(v))
                self.ctx.set_variable(v, 2)
            self.assertEqual(self.ctx.get_value(v), 1)
        self.assertFalse(self.ctx.is_in_loop)
        with self.assertRaises(InvalidUsageError):
            self.ctx.exit_loop()
        with self.assertRaises(InvalidUsageError):
            self.ctx.enter_loop(None)

    def test_loops_of_the_caller_are_hidden(self):
        loop = WhileStatement(LiteralExpression(False), BlockStatement())
        with self.ctx.loop_scope(loop):
            with self.ctx.function_scope(var('f')):
                self.assertFalse(self.ctx.is_in_loop)
                with self.ctx.loop_scope(loop):
                    self.assertTrue(self.ctx.is_in_loop)
            self.assertTrue(self.ctx.is_in_loop)

    def test_frames_are_reused_and_cleared(self):
        caller = var('f')
        local = var('x', ScopeKind.LOCAL)
        self.ctx.enter_function(caller)
        self.ctx.set_variable(local, 1, read_only=True)
        frame = self.ctx._locals[-1]
        self.ctx.exit_function()

        self.ctx.enter_function(caller)
        self.assertIs(self.ctx._locals[-1], frame)
        self.assertIsNone(self.ctx.get_value(local))
        self.ctx.set_variable(local, 2)
        self.assertEqual(self.ctx.get_value(local), 2)
        self.ctx.exit_function()

    def test_root_local_frame_is_kept(self):
        with self.assertRaises(InvalidUsageError):
            self.ctx.exit_function()

    def test_unbalanced_scopes_are_restored_on_error(self):
        caller = var('f')
        with self.assertRaises(ValueError):
            with self.ctx.function_scope(caller):
                raise ValueError('boom')
        self.assertEqual(self.ctx.function_depth, 0)
        self.assertEqual(len(self.ctx._locals), 1)


class TestLimits(unittest.TestCase):
    def test_loop_limit(self):
        ctx = TemplateContext(loop_limit=3)
        loop = WhileStatement(LiteralExpression(True), BlockStatement(), span=SourceSpan('t', 4, 2))
        with ctx.loop_scope(loop):
            for _ in range(3):
                ctx.step_loop()
        # The budget is shared with later loops.
        with ctx.loop_scope(loop):
            with self.assertRaises(LoopLimitError) as cm:
                ctx.step_loop()
        self.assertEqual(cm.exception.span, SourceSpan('t', 4, 2))
        self.assertIn('Exceeding number of iteration limit [3]', str(cm.exception))

        ctx = TemplateContext(loop_limit=3)
        self.assertEqual(ctx.loop_step, 0)
        with ctx.loop_scope(loop):
            ctx.step_loop()

    def test_item_steps(self):
        ctx = TemplateContext(loop_limit=3)
        ctx.step_item(None, 'outside of a loop')
        self.assertEqual(ctx.loop_step, 1)
        ctx.write_value(None, [1, 2])
        self.assertEqual(ctx.output_text, '[1, 2]')
        with self.assertRaises(LoopLimitError) as cm:
            ctx.write_value(None, [1])
        self.assertIn('while converting a value to text', str(cm.exception))
        # Scalars are not walked.
        ctx = TemplateContext(loop_limit=1)
        ctx.write_value(None, 'abc')
        self.assertEqual(ctx.loop_step, 0)

    def test_step_loop_outside_loop(self):
        with self.assertRaises(InvalidUsageError):
            TemplateContext().step_loop()

    def test_recursion_limit(self):
        ctx = TemplateContext(recursion_limit=100)
        caller = var('f')
        for _ in range(100):
            ctx.enter_function(caller)
        with self.assertRaises(RecursionLimitError) as cm:
            ctx.enter_function(var('g'))
        self.assertIn('Exceeding number of recursive depth limit [100]', str(cm.exception))
        self.assertIn('[g]', str(cm.exception))
        self.assertEqual(ctx.function_depth, 100)

        for _ in range(100):
            ctx.exit_function()
        self.assertEqual(ctx.function_depth, 0)


class TestReadOnly(unittest.TestCase):
    def test_read_only_variable(self):
        ctx = TemplateContext()
        ctx.push_global(ScriptObject())
        x = var('x')
        ctx.set_value(x, 1)
        ctx.set_read_only(x)
        with self.assertRaises(ScriptRuntimeError) as cm:
            ctx.set_value(x, 2)
        self.assertIn('Cannot set value on the readonly variable [x]', str(cm.exception))
        self.assertEqual(ctx.get_value(x), 1)

        ctx.set_read_only(x, False)
        ctx.set_value(x, 3)
        self.assertEqual(ctx.get_value(x), 3)

    def test_builtins_are_read_only(self):
        ctx = TemplateContext()
        # The root frame is the built-in one while no model is pushed.
        with self.assertRaises(ScriptRuntimeError):
            ctx.set_value(var('size'), 1)
        # A model shadows built-ins.
        with ctx.global_scope(ScriptObject()):
            ctx.set_value(var('size'), 1)
            self.assertEqual(ctx.get_value(var('size')), 1)
        self.assertTrue(is_function(ctx.evaluate(var('size'), alias=True)))

    def test_read_only_member(self):
        ctx = TemplateContext()
        obj = ScriptObject(a=1)
        obj.set_read_only('a')
        ctx.push_global(ScriptObject(obj=obj))
        with self.assertRaises(ScriptRuntimeError) as cm:
            ctx.set_value(member(var('obj'), 'a'), 2)
        self.assertIn('readonly member [a]', str(cm.exception))
        self.assertEqual(obj['a'], 1)


class TestTraversal(unittest.TestCase):
    def setUp(self):
        self.ctx = TemplateContext()
        self.model = ScriptObject()
        self.ctx.push_global(self.model)

    def test_null_target(self):
        with self.assertRaises(ScriptRuntimeError) as cm:
            self.ctx.get_value(member(var('nothing'), 'member'))
        self.assertIn('Object [nothing] is null. Cannot access member: nothing.member', str(cm.exception))

        with self.assertRaises(ScriptRuntimeError) as cm:
            self.ctx.get_value(index(var('nothing'), 0))
        self.assertIn('Object [nothing] is null', str(cm.exception))

        with self.assertRaises(ScriptRuntimeError):
            self.ctx.set_value(member(var('nothing'), 'member'), 1)

    def test_primitive_target(self):
        self.model['s'] = 'text'
        self.model['n'] = 42
        for name in ('s', 'n'):
            with self.assertRaises(ScriptRuntimeError) as cm:
                self.ctx.get_value(member(var(name), 'length'))
            self.assertIn('Cannot get or set a member on the primitive', str(cm.exception))

    def test_null_indexer(self):
        self.model['items'] = [1, 2]
        expr = IndexerExpression(var('items'), var('missing'))
        with self.assertRaises(ScriptRuntimeError) as cm:
            self.ctx.get_value(expr)
        self.assertIn('with a null indexer', str(cm.exception))

    def test_list_index(self):
        self.model['items'] = [1, 2, 3]
        self.model['frozen'] = (1, 2, 3)
        self.assertEqual(self.ctx.get_value(index(var('items'), 1)), 2)
        self.assertEqual(self.ctx.get_value(index(var('items'), '2')), 3)

        self.ctx.set_value(index(var('items'), 0), 'a')
        self.assertEqual(self.model['items'], ['a', 2, 3])

        with self.assertRaises(ScriptRuntimeError) as cm:
            self.ctx.get_value(index(var('items'), 3))
        self.assertIn('Index [3] is out of bounds', str(cm.exception))

        self.assertEqual(self.ctx.get_value(index(var('frozen'), 2)), 3)
        with self.assertRaises(ScriptRuntimeError):
            self.ctx.set_value(index(var('frozen'), 0), 'a')

    def test_no_list_accessor(self):
        self.model['s'] = 'text'
        self.model['n'] = 42
        for name in ('s', 'n'):
            with self.assertRaises(ScriptRuntimeError) as cm:
                self.ctx.get_value(index(var(name), 0))
            self.assertIn('Expecting a list', str(cm.exception))

    def test_mapping_index(self):
        self.model['d'] = {'a': 1}
        self.model['o'] = ScriptObject(b=2)
        self.assertEqual(self.ctx.get_value(index(var('d'), 'a')), 1)
        self.assertEqual(self.ctx.get_value(index(var('o'), 'b')), 2)
        self.assertIsNone(self.ctx.get_value(index(var('d'), 'zzz')))

        self.ctx.set_value(index(var('d'), 'c'), 3)
        self.assertEqual(self.model['d'], {'a': 1, 'c': 3})

    def test_nested_set(self):
        self.model['a'] = ScriptObject(b=[ScriptObject()])
        target = member(index(member(var('a'), 'b'), 0), 'c')
        self.ctx.set_value(target, 'deep')
        self.assertEqual(self.ctx.get_value(target), 'deep')

    def test_unsupported_assignment(self):
        expr = BinaryExpression('+', LiteralExpression(1), LiteralExpression(2))
        with self.assertRaises(ScriptRuntimeError) as cm:
            self.ctx.set_value(expr, 3)
        self.assertIn('Unsupported expression for target for assignment: 1 + 2 = ...', str(cm.exception))
        self.assertEqual(self.ctx.get_value(expr), 3)

    def test_required_arguments(self):
        with self.assertRaises(InvalidUsageError):
            self.ctx.get_value(None)
        with self.assertRaises(InvalidUsageError):
            self.ctx.set_value(None, 1)
        with self.assertRaises(InvalidUsageError):
            self.ctx.set_variable(None, 1)
        self.assertIsNone(self.ctx.evaluate(None))

    def test_implicit_invocation(self):
        calls = []

        def fn():
            calls.append(1)
            return ScriptObject(n=5)

        self.model['fn'] = HostFunction(fn, 'fn')
        self.assertEqual(self.ctx.get_value(member(var('fn'), 'n')), 5)
        self.assertEqual(len(calls), 1)

        # Aliasing keeps the final function, but still calls intermediate ones.
        f = self.ctx.evaluate(var('fn'), alias=True)
        self.assertIs(f, self.model['fn'])
        self.assertEqual(len(calls), 1)
        self.assertEqual(self.ctx.evaluate(member(var('fn'), 'n'), alias=True), 5)
        self.assertEqual(len(calls), 2)

        self.assertIsInstance(self.ctx.get_value(var('fn')), ScriptObject)
        self.assertEqual(len(calls), 3)

    def test_alias_flag_is_restored(self):
        self.model['fn'] = HostFunction(lambda: 1, 'fn')
        with self.assertRaises(ScriptRuntimeError):
            self.ctx.evaluate(member(var('nothing'), 'x'), alias=True)
        self.assertEqual(self.ctx.get_value(var('fn')), 1)

    def test_plain_callables_are_data(self):
        self.model['f'] = len
        self.assertIs(self.ctx.get_value(var('f')), len)


class TestAccessorResolution(unittest.TestCase):
    def test_cached_per_type(self):
        ctx = TemplateContext()
        a = ctx.get_member_accessor(User('Ann'))
        b = ctx.get_member_accessor(User('Bob'))
        self.assertIsInstance(a, TypedMemberAccessor)
        self.assertIs(a, b)
        self.assertIsNot(a, ctx.get_member_accessor(Point(1, 2)))
        # Another context builds its own.
        self.assertIsNot(a, TemplateContext().get_member_accessor(User('Ann')))

        self.assertIs(ctx.get_list_accessor([1]), ctx.get_list_accessor([2]))
        self.assertIsNone(ctx.get_list_accessor('text'))

    def test_typed_members(self):
        ctx = TemplateContext()
        ctx.push_global(ScriptObject(user=User('Ann', 30), point=Point(1, 2)))
        self.assertEqual(ctx.get_value(member(var('user'), 'first_name')), 'Ann')
        self.assertIsNone(ctx.get_value(member(var('user'), 'firstName')))

        ctx.set_value(member(var('user'), 'age'), 31)
        self.assertEqual(ctx.get_value(member(var('user'), 'age')), 31)

        self.assertEqual(ctx.get_value(member(var('point'), 'x')), 1)
        with self.assertRaises(ScriptRuntimeError) as cm:
            ctx.set_value(member(var('point'), 'x'), 5)
        self.assertIn('readonly member [x]', str(cm.exception))

        with self.assertRaises(ScriptRuntimeError) as cm:
            ctx.set_value(member(var('point'), 'z'), 5)
        self.assertIn('missing member [z]', str(cm.exception))

        # Private attributes are hidden.
        self.assertIsNone(ctx.get_value(member(var('point'), '_x')))


class TestOutput(unittest.TestCase):
    def test_nesting(self):
        ctx = TemplateContext()
        ctx.write('A')
        ctx.push_output()
        ctx.write('B')
        self.assertEqual(ctx.pop_output(), 'B')
        self.assertEqual(ctx.output_text, 'A')

        with self.assertRaises(InvalidUsageError):
            ctx.pop_output()

    def test_output_scope(self):
        ctx = TemplateContext()
        with self.assertRaises(ValueError):
            with ctx.output_scope() as buf:
                ctx.write('x')
                raise ValueError()
        self.assertEqual(buf, ['x'])
        self.assertEqual(ctx.output_text, '')

    def test_write_value(self):
        ctx = TemplateContext()
        ctx.write(None)
        ctx.write('')
        ctx.write_value(None, None)
        ctx.write_value(None, True)
        ctx.write_value(None, [1, None, 'a'])
        ctx.write_value(None, {'k': 2})
        self.assertEqual(ctx.output_text, 'true[1, , a]{k: 2}')

    def test_disabled_output(self):
        ctx = TemplateContext(enable_output=False)
        ctx.write('A')
        ctx.write_value(None, 1)
        self.assertEqual(ctx.output_text, '')


class TestSourceFiles(unittest.TestCase):
    def test_stack(self):
        ctx = TemplateContext()
        self.assertEqual(ctx.source_file_depth, 0)
        with self.assertRaises(InvalidUsageError):
            ctx.pop_source_file()
        with self.assertRaises(InvalidUsageError):
            ctx.push_source_file(None)

        ctx.push_source_file('a')
        with ctx.source_file_scope('b'):
            self.assertEqual(ctx.current_source_file, 'b')
            self.assertEqual(ctx.source_file_depth, 2)
        self.assertEqual(ctx.pop_source_file(), 'a')

    def test_tags(self):
        ctx = TemplateContext()
        ctx.tags['request'] = 42
        self.assertEqual(ctx.tags, {'request': 42})
        self.assertEqual(ctx.cached_templates, {})


if __name__ == '__main__':
    unittest.main()
