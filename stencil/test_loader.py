import os
import tempfile
import unittest

from stencil import (
    DictLoader,
    FileSystemLoader,
    RecursionLimitError,
    ScriptRuntimeError,
    Template,
    TemplateContext,
)


class TestInclude(unittest.TestCase):
    def test_dict_loader(self):
        loader = DictLoader({
            'header': '<h1>{{ title }}</h1>',
            'item': '{{ ret }}never',
        })
        ctx = TemplateContext(template_loader=loader)
        text = "{{ include('header') }}|{{ include('item') }}|{{ include('header') }}"
        r = Template.parse(text, 'main').render({'title': 'T'}, context=ctx)
        self.assertEqual(r, '<h1>T</h1>||<h1>T</h1>')
        self.assertEqual(sorted(ctx.cached_templates), ['header', 'item'])
        self.assertEqual(ctx.source_file_depth, 0)

    def test_cache_is_reused(self):
        loads = []

        class CountingLoader(DictLoader):
            def load(self, path):
                loads.append(path)
                return super().load(path)

        ctx = TemplateContext(template_loader=CountingLoader({'a': 'A'}))
        text = "{{ for i in range(3) }}{{ include('a') }}{{ end }}"
        self.assertEqual(Template.parse(text).render(context=ctx), 'AAA')
        self.assertEqual(loads, ['a'])

    def test_source_file_stack(self):
        loader = DictLoader({'inner': '{{ 1 }}{{ x.y }}'})
        ctx = TemplateContext(template_loader=loader)
        with self.assertRaises(ScriptRuntimeError) as cm:
            Template.parse("{{ include('inner') }}", 'outer').render(context=ctx)
        self.assertEqual(cm.exception.span.file, 'inner')
        self.assertEqual(ctx.source_file_depth, 0)
        self.assertEqual(ctx.output_text, '')

    def test_missing(self):
        ctx = TemplateContext(template_loader=DictLoader({}))
        with self.assertRaises(ScriptRuntimeError) as cm:
            Template.parse("{{ include('nope') }}").render(context=ctx)
        self.assertIn('Template [nope] not found', str(cm.exception))

        with self.assertRaises(ScriptRuntimeError) as cm:
            Template.parse("{{ include('x') }}").render()
        self.assertIn('no template loader is configured', str(cm.exception))

        with self.assertRaises(ScriptRuntimeError) as cm:
            Template.parse('{{ include() }}').render()
        self.assertIn('expecting a template name', str(cm.exception))

    def test_self_include(self):
        ctx = TemplateContext(template_loader=DictLoader({'loop': "x{{ include('loop') }}"}))
        with self.assertRaises(RecursionLimitError):
            Template.parse("{{ include('loop') }}").render(context=ctx)
        self.assertEqual(ctx.function_depth, 0)

    def test_shared_scope(self):
        loader = DictLoader({'set': '{{ shared = 1; $private = 2 }}'})
        ctx = TemplateContext(template_loader=loader)
        r = Template.parse("{{ include('set'); shared; $private }}").render(context=ctx)
        self.assertEqual(r, '1')

    def test_file_system_loader(self):
        with tempfile.TemporaryDirectory() as root:
            os.makedirs(os.path.join(root, 'parts'))
            with open(os.path.join(root, 'main.txt'), 'w', encoding='utf-8') as fp:
                fp.write("[{{ include('parts/a.txt') }}]")
            with open(os.path.join(root, 'parts', 'a.txt'), 'w', encoding='utf-8') as fp:
                fp.write("a{{ include('b.txt') }}")
            with open(os.path.join(root, 'parts', 'b.txt'), 'w', encoding='utf-8') as fp:
                fp.write('b')

            main = os.path.join(root, 'main.txt')
            with open(main, encoding='utf-8') as fp:
                template = Template.parse(fp.read(), main)

            # Relative to the including file.
            ctx = TemplateContext(template_loader=FileSystemLoader(root))
            self.assertEqual(template.render(context=ctx), '[ab]')
            self.assertIn(os.path.join(root, 'parts', 'b.txt'), ctx.cached_templates)

            # Falls back to the root without a file to be relative to.
            ctx = TemplateContext(template_loader=FileSystemLoader(root))
            r = Template.parse("{{ include('parts/b.txt') }}").render(context=ctx)
            self.assertEqual(r, 'b')

            with self.assertRaises(ScriptRuntimeError):
                Template.parse("{{ include('b.txt') }}").render(context=ctx)


if __name__ == '__main__':
    unittest.main()
