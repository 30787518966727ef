import os
import sys
import asyncio
import unittest
from typing import Any

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from template_core import (
    Context,
    Engine,
    EngineError,
    MalformedContext,
    OutOfGas,
    StackOverflow,
    Purity,
    render,
    to_str,
)

CTX = {
    'User': {'ID': '42', 'Username': 'Nova'},
    'Channel': {'ID': '7', 'Name': 'general'},
    'Guild': {'ID': '1', 'Name': 'QFT', 'Stats': {'Members': 12}},
}


class TestEngine(unittest.TestCase):
    def render_it(
        self,
        text: str,
        ctx: dict[str, Any] | None = None,
        args: list | None = None,
        *,
        e: str | tuple[str, ...] = '',
        eq: str | None = None,
        **kwargs,
    ) -> str:
        engine = Engine(CTX if ctx is None else ctx, **kwargs)
        r = asyncio.run(engine.evaluate(text, args))
        dump = f'Render: {text}\nResult: {r}\nerrors: {engine.errors}'

        if e:
            if isinstance(e, str):
                e = (e,)
            for e in e:
                self.assertTrue(
                    any(e in err for err in engine.errors),
                    f'{dump}\nexpected error: {e}',
                )
        else:
            self.assertFalse(engine.errors, f'{dump}\nexpected no errors')
        if eq is not None:
            self.assertEqual(r, eq, dump)
        return r

    def test_plain(self):
        for text in ('', 'hello', 'a { b } }} {c', '{ {x} }', '{{ unterminated'):
            self.render_it(text, eq=text)

    def test_context_path(self):
        self.render_it('Hello {{ .User.Username }}!', eq='Hello Nova!')
        self.render_it('{{ .Guild.Stats.Members }}', eq='12')
        self.render_it('{{ .Nope.Deep.Path }}', eq='')
        self.render_it('[{{ .User.Nope }}]', eq='[]')
        self.render_it('{{ .Interaction }}', eq='')

    def test_assignment(self):
        self.render_it('{{ $x := add 2 3 }}Result: {{ $x }}', eq='Result: 5')
        self.render_it('{{$x:=add 2 3}}{{$x}}', eq='5')
        # Not hoisted.
        self.render_it('[{{ $x }}]{{ $x := 1 }}[{{ $x }}]', eq='[][1]')
        self.render_it('{{ $x := 1 }}{{ $x := add $x 1 }}{{ $x }}', eq='2')

    def test_if(self):
        self.render_it('{{ if (eq 1 1) "yes" "no" }}', eq='yes')
        self.render_it('{{ if (eq 1 2) "yes" "no" }}', eq='no')
        self.render_it('{{ if (eq .User.ID 42) "me" "other" }}', eq='me')
        self.render_it('{{ if false "yes" }}', eq='')
        self.render_it('{{ if "" "yes" "no" }}', eq='no')

    def test_unknown_function(self):
        self.render_it('{{ fooBar 1 2 }}', eq='fooBar 1 2')
        self.render_it('a {{   fooBar   }} b', eq='a fooBar b')
        self.render_it('{{ upper (nope 1) }}', eq='NOPE 1')

    def test_quoting(self):
        self.render_it('{{ joinStr "-" "a b" "c" }}', eq='a b-c')
        self.render_it("{{ joinStr '' 'x' \"y\" }}", eq='xy')
        self.render_it('{{ print "{not a directive" }}', eq='{not a directive')

    def test_native_values(self):
        self.render_it('{{ add 1 2.5 }}', eq='3.5')
        self.render_it('{{ div 6 2 }}', eq='3')
        self.render_it('{{ div 7 2 }}', eq='3.5')
        self.render_it('{{ mod -7 3 }}', eq='-1')
        self.render_it('{{ eq 1 1 }}', eq='true')
        self.render_it('{{ not true }}', eq='false')
        self.render_it('{{ cslice 1 "a" true }}', eq='[1,"a",true]')
        self.render_it('{{ sdict "a" 1 "b" (cslice) }}', eq='{"a":1,"b":[]}')
        self.render_it(
            '{{ kindOf 1 }} {{ kindOf "1" }} {{ kindOf (cslice) }}',
            eq='number string slice',
        )
        self.render_it('{{ getVar "nope" }}', eq='')

    def test_nested_groups(self):
        self.render_it('{{ add (mult 2 3) (sub 10 4) }}', eq='12')
        self.render_it('{{ len (split "a,b,c" ",") }}', eq='3')
        self.render_it('{{ index (split "a,b,c" ",") 1 }}', eq='b')
        self.render_it('{{ upper ($x) }}', eq='')
        self.render_it('{{ $s := lower "ABC" }}{{ upper (index (cslice $s) 0) }}', eq='ABC')

    def test_args(self):
        self.render_it('{{ index .Args 0 }}-{{ .Args.1 }}', args=['a', 'b'], eq='a-b')
        self.render_it('{{ len .Args }}', args=[], eq='0')
        self.render_it('{{ .Args.0 }}', {'Args': ['x']}, eq='x')
        self.render_it('{{ add .Args.0 1 }}', args=[41], eq='42')

    def test_json_fallback(self):
        self.render_it(
            '{{ $j := toString (sdict "a" (sdict "b" 2)) }}{{ $j.a.b }}', eq='2'
        )
        self.render_it('{{ $j := toString (cslice 5 6) }}{{ $j.1 }}', eq='6')
        # Only object- and array-shaped strings are parsed.
        self.render_it('{{ $n := toString 123 }}[{{ $n.0 }}]', eq='[]')
        self.render_it('{{ $j := "{broken" }}[{{ $j.a }}]', eq='[]')
        self.render_it('{{ $m := sdict "a" (cslice 1 2) }}{{ $m.a.0 }}', eq='1')
        # Nesting too deep for the JSON decoder reads as a plain string.
        deep = '[' * 100000
        self.render_it(
            '{{ $j := print "' + deep + '" }}[{{ $j.0 }}] after {{ upper "x" }}',
            eq='[] after X',
        )

    def test_registry_groups(self):
        # Without a store, the groups are whatever the caller passed in.
        ctx = {**CTX, 'Reg': {'motd': 'hi'}, 'RegGuild': {'rules': 'be nice'}}
        self.render_it(
            '{{ reg "motd" }} {{ regGuild "rules" }} [{{ reg "x" }}]',
            ctx,
            eq='hi be nice []',
        )
        self.render_it('{{ .Reg }} [{{ reg "motd" }}]', eq='{} []')
        self.render_it('{{ execCC "x" }}', CTX, e='store unavailable')

    def test_eager_order(self):
        self.render_it(
            '{{ $a := 1 }}{{ print $a (setVar "a" 2) $a }}', eq='1 2 2'
        )

    def test_set_var(self):
        self.render_it('{{ $_ := setVar "x" 5 }}{{ $x }}', eq='5')
        self.render_it('{{ $x := 1 }}{{ $_ := setVar $x 9 }}{{ $x }}', eq='9')
        self.render_it('{{ $x := 3 }}{{ getVar $x }}', eq='3')

    def test_embed_writeback(self):
        r = self.render_it(
            '{{ $e := createEmbed "T" "D" "#ff0000" }}'
            '{{ $_ := addField $e "n" "v" }}'
            '{{ $_ := addField $e "m" "w" true }}'
            '{{ len $e.fields }} {{ $e.color }} {{ index $e.fields 1 "inline" }}'
        )
        self.assertEqual(r, '2 16711680 true')

    def test_pure_failure(self):
        r = self.render_it('{{ div 1 0 }} after', e='div: ZeroDivisionError')
        self.assertEqual(r, '[div: ZeroDivisionError: division by zero] after')

        r = self.render_it('{{ reFind "(" "x" }} ok {{ upper "y" }}', e='reFind')
        self.assertTrue(r.startswith('[reFind: '), r)
        self.assertTrue(r.endswith(' ok Y'), r)

        self.render_it(
            '{{ upper }}',
            e='upper: want at least 1 args',
            eq='[upper: want at least 1 args, got 0]',
        )
        self.render_it('{{ not 1 2 }}', e='want at most 1 args')
        self.render_it('{{ add "x" 1 }}', e='add: not a number: x')

    def test_parse_failure(self):
        self.render_it('{{ add (1 2 }} ok', e='parse', eq='add (1 2 ok')
        self.render_it('{{ add 1 2) }}', e='parse', eq='add 1 2)')

    def test_functions(self):
        self.render_it('{{ upper "abc" }}{{ lower "DEF" }}', eq='ABCdef')
        self.render_it('{{ title "hello wORLD" }}', eq='Hello World')
        self.render_it('{{ printf "%v-%d" "a" 3 }}', eq='a-3')
        self.render_it('{{ trimSpace "  x " }}', eq='x')
        self.render_it('{{ hasPrefix "abc" "ab" }} {{ hasSuffix "abc" "x" }}', eq='true false')
        self.render_it('{{ reReplace "a+" "caaab" "x" }}', eq='cxb')
        self.render_it('{{ humanizeThousands 1234567 }}', eq='1,234,567')
        self.render_it('{{ toInt "12px" }} {{ toFloat "1.5e1" }}', eq='12 15')
        self.render_it('{{ calc "2 * (3 + 4)" }}', eq='14')
        self.render_it('{{ sort (cslice 3 1 2) }}', eq='[1,2,3]')
        self.render_it('{{ sort (cslice 3 1 2) "" true }}', eq='[3,2,1]')
        self.render_it(
            '{{ $l := cslice (sdict "n" 2) (sdict "n" 1) }}{{ sort $l (sdict "key" "n") }}',
            eq='[{"n":1},{"n":2}]',
        )
        self.render_it('{{ seq 1 4 }} {{ range 3 }}', eq='[1,2,3] [0,1,2]')
        self.render_it('{{ len (seq 0 100000) }}', eq='10000')
        self.render_it('{{ slice "hello" 1 3 }}', eq='el')
        self.render_it('{{ index (cslice 1 2 3) 5 }}', eq='')
        self.render_it('{{ in (cslice 1 2) "2" }} {{ in "team" "ea" }}', eq='true true')
        self.render_it('{{ and 1 "x" }} {{ or 0 "" }}', eq='true false')
        self.render_it('{{ lt 2 10 }} {{ gt "b" "a" }}', eq='true true')
        self.render_it('{{ ne 1 2 }} {{ eq 1 2 1 }}', eq='true true')
        self.render_it('{{ json (sdict "a" 1) }}', eq='{\n  "a": 1\n}')

        r = self.render_it('{{ randInt 10 }}')
        self.assertIn(int(r), range(10))
        r = self.render_it('{{ len (shuffle (seq 0 5)) }}', eq='5')

        r = self.render_it('{{ table (cslice (sdict "a" 1 "b" "x")) }}')
        self.assertIn('| a | b |', r)
        self.assertIn('| 1 | x |', r)

    def test_time(self):
        self.render_it(
            '{{ parseTime "2024-01-02T03:04:05+00:00" }}',
            eq='2024-01-02T03:04:05.000Z',
        )
        self.render_it('{{ formatTime "2024-01-02" "%Y/%m/%d" }}', eq='2024/01/02')
        self.render_it('{{ parseTime "garbage" }}', eq='Invalid Date')
        self.render_it('{{ formatTime 0 "%Y" }}', eq='1970')
        r = self.render_it('{{ currentTime }}')
        self.assertTrue(r.endswith('Z'), r)

    def test_mentions(self):
        self.render_it('{{ userMention }} {{ userMention 5 }}', eq='<@42> <@5>')
        self.render_it('{{ channelMention }} {{ roleMention 3 }}', eq='<#7> <@&3>')
        self.render_it('{{ userName }} {{ userID }}', eq='Nova 42')
        self.render_it('{{ channelName }} {{ channelID }}', eq='general 7')
        self.render_it('{{ userMention }}', {}, eq='@unknown')

    def test_custom_funcs(self):
        async def fetch(x):
            return f'got {x}'

        funcs = {'twice': lambda x: x * 2, 'fetch': fetch}
        engine = Engine(funcs=funcs)
        self.assertIs(engine.funcs['twice'].purity, Purity.PURE)
        self.assertIs(engine.funcs['fetch'].purity, Purity.EFFECTING)
        self.render_it('{{ twice 4 }} {{ fetch "a" }}', funcs=funcs, eq='8 got a')

    def test_gas(self):
        with self.assertRaises(OutOfGas):
            self.render_it('{{ add 1 1 }}' * 1001)
        self.render_it('{{ add 1 1 }}' * 1000, eq='2' * 1000)

    def test_depth(self):
        ok = '{{ add ' + '(add ' * 20 + '1' + ')' * 20 + ' }}'
        self.render_it(ok, eq='1')

        deep = '{{ add ' + '(add ' * 21 + '1' + ')' * 21 + ' }}'
        with self.assertRaises(StackOverflow):
            self.render_it(deep)

    def test_malformed_context(self):
        with self.assertRaises(MalformedContext):
            Engine(['User'])
        with self.assertRaises(MalformedContext):
            Engine({'User': {'ID': object()}})
        with self.assertRaises(MalformedContext):
            Engine({'User': {1: 'x'}})
        with self.assertRaises(MalformedContext):
            Context({}, args='abc')
        self.assertTrue(issubclass(MalformedContext, EngineError))

    def test_context_read_only(self):
        ctx = Context(CTX, ['a'])
        with self.assertRaises(TypeError):
            ctx['User']['ID'] = '1'  # type: ignore[index]
        self.assertEqual(ctx.resolve('Args.0'), 'a')
        self.assertEqual(ctx.with_args(['b']).resolve('Args.0'), 'b')
        self.assertEqual(ctx.resolve('Args.0'), 'a')

    def test_state_reset(self):
        engine = Engine(CTX)
        asyncio.run(engine.evaluate('{{ $x := 1 }}{{ div 1 0 }}'))
        self.assertEqual(len(engine.errors), 1)
        r = asyncio.run(engine.evaluate('[{{ $x }}]'))
        self.assertEqual(r, '[]')
        self.assertEqual(engine.errors, [])

    def test_render(self):
        self.assertEqual(render('{{ upper .User.Username }}', CTX), 'NOVA')
        self.assertEqual(render('{{ .Args.0 }}', None, ['z']), 'z')

    def test_to_str(self):
        self.assertEqual(to_str(None), '')
        self.assertEqual(to_str(True), 'true')
        self.assertEqual(to_str(2.0), '2')
        self.assertEqual(to_str(0.1), '0.1')
        self.assertEqual(to_str({'a': [1, None]}), '{"a":[1,null]}')
        self.assertEqual(to_str(('x',)), '["x"]')


if __name__ == '__main__':
    unittest.main()
