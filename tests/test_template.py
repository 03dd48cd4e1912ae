import pytest

from multi_bario import (
    ADAPTIVE_PLACEHOLDER,
    AdaptiveElement,
    Colors,
    ConfigurationError,
    ElementRegistry,
    RenderError,
)


def test_literal_text_and_elements(registry, make_state):
    template = registry.compile('done: {{percent . }} ({{counters . }})')
    text, pending = template.execute(make_state(total=200, current=50))
    assert text == 'done: 25.00% (50 / 200)'
    assert pending == []


def test_counters_format_pattern(registry, make_state):
    template = registry.compile('{{counters . "%.3s/%s"}}')
    assert template.execute(make_state(total=100, current=7))[0] == '7/100'
    assert template.execute(make_state(total=100, current=1234))[0] == '123/100'


def test_unknown_total(registry, make_state):
    template = registry.compile('{{counters . }} {{percent . }}')
    assert template.execute(make_state(total=0, current=3))[0] == '3 / ? ?%'


def test_filters_chain_left_to_right(registry, make_state):
    registry.register_filter('upper', lambda value: value.upper())
    registry.register_filter('brackets', lambda value: f'[{value}]')
    template = registry.compile('{{string . "name" | upper | brackets}}')

    state = make_state()
    state.bar.set('name', 'job')
    assert template.execute(state)[0] == '[JOB]'


def test_piped_value_is_last_argument(registry, make_state):
    registry.register_filter('join', lambda *values: '-'.join(values))
    template = registry.compile('{{"a" | join "b" "c"}}')
    assert template.execute(make_state())[0] == 'b-c-a'


def test_string_literals(registry, make_state):
    template = registry.compile(r'{{"say \"hi\"\té"}}|{{`raw \n`}}')
    assert template.execute(make_state())[0] == 'say "hi"\té|raw \\n'


def test_color_filters(make_state):
    template = ElementRegistry(use_color=True).compile('{{red "x"}}')
    text, _ = template.execute(make_state())
    assert text == f'{Colors.RED}x{Colors.RESET}'


def test_color_filters_disabled(registry, make_state):
    template = registry.compile('{{green "ok"}}{{rndcolor "!"}}')
    assert template.execute(make_state())[0] == 'ok!'


def test_cycle_uses_render_id(registry, make_state):
    template = registry.compile('{{cycle . "a" "b" "c"}}')
    frames = [template.execute(make_state(render_id=i))[0] for i in range(1, 6)]
    assert frames == ['a', 'b', 'c', 'a', 'b']


def test_rnd_picks_an_alternative(registry, make_state):
    template = registry.compile('{{rnd "x" "y"}}')
    assert template.execute(make_state())[0] in ('x', 'y')


def test_string_element_reads_variables(registry, make_state):
    template = registry.compile('<{{string . "status"}}>')
    state = make_state()
    assert template.execute(state)[0] == '<>'
    state.bar.set('status', 'OK')
    assert template.execute(state)[0] == '<OK>'
    state.bar.set('status', 3)
    assert template.execute(state)[0] == '<3>'


def test_time_elements(registry, make_state):
    template = registry.compile('{{speed . }}|{{rtime . "ETA %s"}}|{{etime . }}')
    assert template.execute(make_state(total=100, current=0))[0] == '? p/s|?|0s'
    assert template.execute(make_state(total=100, current=50, elapsed=10))[0] == '5.0 p/s|ETA 10s|10s'
    assert template.execute(make_state(total=100, current=100, elapsed=65, finished=True))[0] == '1.5 p/s|1m5s|1m5s'


def test_speed_in_bytes(registry, make_state):
    template = registry.compile('{{speed . }} {{counters . }}')
    state = make_state(total=4096, current=2048, elapsed=1)
    state.bar.set('bytes', True)
    assert template.execute(state)[0] == '2.00 KiB/s 2.00 KiB / 4.00 KiB'


def test_adaptive_element_leaves_placeholder(registry, make_state):
    template = registry.compile('[{{bar . | red}}]')
    state = make_state(total=10, current=5)
    text, pending = template.execute(state)
    assert text == f'[{ADAPTIVE_PLACEHOLDER}]'
    assert len(pending) == 1
    assert pending[0](state.with_adaptive_width(6)) == '[->__]'


def test_register_adaptive(registry, make_state):
    registry.register_adaptive('fill', lambda state, char='#': char * state.adaptive_width)
    template = registry.compile('{{fill . "="}}')
    text, pending = template.execute(make_state())
    assert text == ADAPTIVE_PLACEHOLDER
    assert pending[0](make_state().with_adaptive_width(3)) == '==='


def test_compile_cache_hit(registry):
    first = registry.compile('{{percent . }}')
    assert registry.compile('{{percent . }}') is first
    assert registry.compile('{{percent .}}') is not first


def test_cached_template_keeps_original_bindings(registry, make_state):
    registry.register('greet', lambda state: 'hello')
    template = registry.compile('{{greet .}}')

    registry.register('greet', lambda state: 'bye')
    assert registry.compile('{{greet .}}') is template
    assert template.execute(make_state())[0] == 'hello'

    refreshed = registry.compile('{{greet .}}', refresh=True)
    assert refreshed.execute(make_state())[0] == 'bye'


def test_clear_cache(registry):
    template = registry.compile('{{percent . }}')
    registry.clear_cache()
    assert registry.compile('{{percent . }}') is not template


def test_parse_errors_are_not_cached(registry):
    with pytest.raises(ConfigurationError):
        registry.compile('{{later .}}')
    registry.register('later', lambda state: 'now')
    assert registry.compile('{{later .}}') is not None


@pytest.mark.parametrize('text, message', [
    ('{{percent .', 'unclosed action'),
    ('{{nope .}}', 'function "nope" not defined'),
    ('{{percent . "abc}}', 'unterminated string'),
    ('{{}}', 'missing command'),
    ('{{percent . | }}', 'missing command'),
    ('{{percent . | "x"}}', 'non executable command'),
    ('{{.}}', 'nothing to call'),
    ('{{percent . total}}', 'unexpected identifier'),
    ('{{percent . #}}', "unexpected '#'"),
    ('{{"a" "b"}}', 'unexpected argument after literal'),
    (r'{{"\q"}}', 'unknown escape sequence'),
])
def test_parse_errors(registry, text, message):
    with pytest.raises(ConfigurationError, match=message):
        registry.compile(text)


def test_element_without_state_fails_at_render(registry, make_state):
    template = registry.compile('{{percent "x"}}')
    with pytest.raises(RenderError, match='expects "."'):
        template.execute(make_state())


def test_filter_given_state_fails_at_render(registry, make_state):
    template = registry.compile('{{red .}}')
    with pytest.raises(RenderError, match='does not take'):
        template.execute(make_state())


def test_element_fault_becomes_render_error(registry, make_state):
    template = registry.compile('{{counters . "%d %d %d"}}')
    with pytest.raises(RenderError, match='error calling counters') as exc_info:
        template.execute(make_state())
    assert isinstance(exc_info.value.__cause__, TypeError)


def test_registration_validation(registry):
    with pytest.raises(ValueError):
        registry.register('not a name', lambda state: '')
    with pytest.raises(TypeError):
        registry.register('thing', 'not callable')
    with pytest.raises(TypeError):
        registry.register_filter('thing', AdaptiveElement(lambda state: ''))


def test_isolated_registries(registry):
    registry.register('only_here', lambda state: '')
    assert 'only_here' in registry
    assert 'only_here' not in ElementRegistry(use_color=False)
    assert 'bar' not in ElementRegistry(use_color=False, builtins=False)
