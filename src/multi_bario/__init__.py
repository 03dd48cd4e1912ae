# -*- coding: utf-8 -*-
"""
Multi Bario – Template driven multi-line progress bars for Python.
Copyright (c) 2025 Igor Iatsenko
Licensed under the MIT License.
"""

import os
import re
import sys
import math
import random
import threading
import dataclasses
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import (
        Optional,
        Tuple,
        List,
        Dict,
        Callable,
        Any,
        Union,
        TextIO,
)
from abc import ABC, abstractmethod
from enum import Enum
import logging

from rich.cells import cell_len

__all__ = [
    'DEFAULT_BAR_WIDTH',
    'DEFAULT_REFRESH_INTERVAL',
    'BarioError',
    'ConfigurationError',
    'RenderError',
    'TerminalQueryError',
    'Colors',
    'LineWriter',
    'terminal_width',
    'cell_count',
    'strip_string',
    'pad_string',
    'format_bytes',
    'format_duration',
    'State',
    'RenderResult',
    'Element',
    'ElementFunc',
    'AdaptiveElement',
    'Template',
    'ElementRegistry',
    'default_registry',
    'resolve_adaptive',
    'ADAPTIVE_PLACEHOLDER',
    'Bar',
    'ProxyReader',
    'ProxyWriter',
    'BYTES',
    'SI_BYTES_PREFIX',
    'new_bar',
    'start_new',
    'ProgressBarTemplate',
    'FULL',
    'DEFAULT',
    'BUILDING',
    'Progress',
    'add_bar',
    'start',
    'finish_all',
]

logger = logging.getLogger('multi-bario')

DEFAULT_BAR_WIDTH = 100
DEFAULT_REFRESH_INTERVAL = 0.2  # seconds


# ============================================================================
# Errors
# ============================================================================

class BarioError(Exception):
    """Base class for progress bar errors"""


class ConfigurationError(BarioError):
    """Template text could not be parsed or bound to elements"""


class RenderError(BarioError):
    """Template execution or an element failed during a render"""


class TerminalQueryError(BarioError):
    """Terminal width could not be determined"""


# ============================================================================
# Terminal utilities
# ============================================================================

class TerminalCapability(Enum):
    """Terminal capability levels"""
    MINIMAL = 1  # No ANSI support
    BASIC = 2    # Basic ANSI colors
    ADVANCED = 3 # Full Unicode and colors


class Colors:
    """ANSI color codes"""
    RESET = '\033[0m'

    BLACK = '\033[30m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    MAGENTA = '\033[35m'
    CYAN = '\033[36m'
    WHITE = '\033[37m'


def _detect_terminal_capability() -> TerminalCapability:
    """Detect terminal capabilities"""
    term = os.environ.get('TERM', '')
    colorterm = os.environ.get('COLORTERM', '')

    # Advanced terminals (kitty, alacritty, etc.)
    if any(x in term.lower() for x in ['kitty', 'alacritty', 'iterm', 'wezterm']):
        return TerminalCapability.ADVANCED
    if 'truecolor' in colorterm or '24bit' in colorterm:
        return TerminalCapability.ADVANCED

    # Basic ANSI support
    if term and term != 'dumb' and sys.stdout.isatty():
        return TerminalCapability.BASIC

    return TerminalCapability.MINIMAL


def terminal_width() -> int:
    """Return the column count of the terminal attached to stdout"""
    try:
        columns = os.get_terminal_size(sys.stdout.fileno()).columns
    except (AttributeError, ValueError, OSError) as e:
        # cron, IDEs, CI and redirected stdout have no TTY
        raise TerminalQueryError(f'terminal width unavailable: {e}') from e
    if columns <= 0:
        raise TerminalQueryError('terminal reported zero columns')
    return columns


class LineWriter:
    """Redraws a block of lines in place, overwriting the previous frame"""

    def __init__(self, out: Optional[TextIO] = None):
        """
        Create a line writer.

        Args:
            out: Text stream to draw on (stdout when None, resolved at write time)
        """
        self.out = out
        self._last_lines_drawn_count = 0
        self._last_lines: List[str] = []

    @property
    def stream(self) -> TextIO:
        return self.out if self.out is not None else sys.stdout

    @property
    def last_lines(self) -> List[str]:
        """Lines of the most recently written frame"""
        return list(self._last_lines)

    def write_frame(self, lines: List[str], final: bool = False):
        """Replace the previous frame with the given lines"""
        stream = self.stream
        try:
            # Hide cursor during update
            stream.write('\033[?25l')
            self._clear_internal(stream)

            output = '\r' + '\n'.join(lines)
            if final:
                # A final frame stays on screen
                output += '\n'
            stream.write(output)

            self._last_lines = list(lines)
            self._last_lines_drawn_count = 0 if final else len(lines)
        finally:
            # Show cursor again
            stream.write('\033[?25h')
            stream.flush()

    def _clear_internal(self, stream: TextIO):
        if self._last_lines_drawn_count == 0:
            return

        # Clear each drawn line bottom-up, ending at the start of the first one
        lines_to_clear = self._last_lines_drawn_count
        stream.write('\033[F'.join(['\r\033[K'] * lines_to_clear) + '\r')
        self._last_lines_drawn_count = 0


# ============================================================================
# Cell width utilities
# ============================================================================

# CSI sequences (colors, cursor movement) and two-character escapes
_ESCAPE_SEQUENCE = r'\x1b(?:\[[0-?]*[ -/]*[@-~]|[@-Z\\-_])'
_ESCAPE_SEQUENCE_RE = re.compile(_ESCAPE_SEQUENCE)
_SEQUENCE_OR_CHAR_RE = re.compile(f'({_ESCAPE_SEQUENCE})|(.)', re.DOTALL)


def _char_width(char: str) -> int:
    code = ord(char)
    if code < 32 or 0x7f <= code < 0xa0:
        return 0
    return cell_len(char)


def cell_count(s: str) -> int:
    """Number of terminal columns the string occupies"""
    visible = _ESCAPE_SEQUENCE_RE.sub('', s)
    return sum(_char_width(char) for char in visible)


def strip_string(s: str, max_width: int) -> str:
    """
    Truncate a string to at most max_width terminal columns.

    Escape sequences are kept even past the cut so trailing color resets
    still apply. A wide character that does not fit is dropped and the
    gap is filled with spaces, so a truncated result is exactly max_width
    columns wide.
    """
    max_width = max(0, max_width)
    if cell_count(s) <= max_width:
        return s

    parts = []
    remaining = max_width
    width_reached = False
    for match in _SEQUENCE_OR_CHAR_RE.finditer(s):
        sequence, char = match.groups()
        if sequence is not None:
            parts.append(sequence)
            continue
        if width_reached:
            continue
        char_width = _char_width(char)
        if char_width > remaining:
            width_reached = True
            continue
        remaining -= char_width
        parts.append(char)

    parts.append(' ' * remaining)
    return ''.join(parts)


def pad_string(s: str, width: int) -> str:
    """Append spaces until the string is width columns wide"""
    gap = width - cell_count(s)
    return s + ' ' * gap if gap > 0 else s


# ============================================================================
# Formatting helpers
# ============================================================================

_IEC_UNITS = [(1 << 40, 'TiB'), (1 << 30, 'GiB'), (1 << 20, 'MiB'), (1 << 10, 'KiB')]
_SI_UNITS = [(10 ** 12, 'TB'), (10 ** 9, 'GB'), (10 ** 6, 'MB'), (10 ** 3, 'kB')]


def format_bytes(value: int, si_prefix: bool = False) -> str:
    """Format a byte count as KiB/MiB/... (or kB/MB/... with si_prefix)"""
    for size, unit in (_SI_UNITS if si_prefix else _IEC_UNITS):
        if value >= size:
            return '%.02f %s' % (value / size, unit)
    return '%d B' % value


def format_duration(duration: Union[timedelta, float]) -> str:
    """Format a duration rounded to whole seconds, e.g. 1h2m3s"""
    seconds = duration.total_seconds() if isinstance(duration, timedelta) else float(duration)
    sign = '-' if seconds < 0 else ''
    hours, remainder = divmod(int(round(abs(seconds))), 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f'{sign}{hours}h{minutes}m{seconds}s'
    if minutes:
        return f'{sign}{minutes}m{seconds}s'
    return f'{sign}{seconds}s'


# ============================================================================
# Render snapshot
# ============================================================================

@dataclass(frozen=True)
class State:
    """Immutable view of a bar taken for a single render"""
    bar: 'Bar' = field(repr=False)
    id: int
    total: int
    current: int
    width: int
    finished: bool
    time: datetime
    start_time: datetime
    adaptive: bool = False
    adaptive_width: int = 0

    @property
    def value(self) -> int:
        return self.current

    def is_first(self) -> bool:
        """True only for the first render after (re)start"""
        return self.id == 1

    def is_finished(self) -> bool:
        return self.finished

    def is_adaptive_width(self) -> bool:
        """True while adaptive elements are being resolved"""
        return self.adaptive

    def elapsed(self) -> timedelta:
        return max(self.time - self.start_time, timedelta(0))

    def with_adaptive_width(self, width: int) -> 'State':
        return dataclasses.replace(self, adaptive=True, adaptive_width=width)


@dataclass(frozen=True)
class RenderResult:
    """Outcome of rendering a bar: padded text on success, the error otherwise"""
    text: str = ''
    width: int = 0
    error: Optional[BarioError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ============================================================================
# Element System
# ============================================================================

ADAPTIVE_PLACEHOLDER = '%_ad_el_%'
ADAPTIVE_PLACEHOLDER_WIDTH = len(ADAPTIVE_PLACEHOLDER)

# Width of an adaptive bar rendered outside of the adaptive pass
_DETACHED_BAR_WIDTH = 30


class Element(ABC):
    """Base class for template elements"""
    adaptive: bool = False

    @abstractmethod
    def render(self, state: State, *args: str) -> str:
        """Render the element for the given state"""
        pass


class ElementFunc(Element):
    """Element backed by a plain function taking the state and string arguments"""

    def __init__(self, fn: Callable[..., str]):
        self.fn = fn

    def render(self, state: State, *args: str) -> str:
        return self.fn(state, *args)

    def __repr__(self):
        return f'{type(self).__name__}({getattr(self.fn, "__name__", self.fn)!r})'


class AdaptiveElement(ElementFunc):
    """
    Element that fills the width left over by the rest of the line.

    During the first pass the template emits a placeholder for it. Once the
    static width of the line is known the element is rendered with
    state.adaptive set and state.adaptive_width holding its share.
    """
    adaptive = True


def _arg(args: Tuple[str, ...], index: int, default: str) -> str:
    return args[index] if len(args) > index else default


def _element_counters(state: State, *args: str) -> str:
    bar = state.bar
    if state.total > 0:
        return _arg(args, 0, '%s / %s') % (bar.format(state.current), bar.format(state.total))
    return _arg(args, 1, '%s / ?') % (bar.format(state.current),)


def _element_percent(state: State, *args: str) -> str:
    if state.total > 0:
        return _arg(args, 0, '%.02f%%') % (state.current / state.total * 100)
    return _arg(args, 1, '?%')


def _repeat_to_width(pattern: str, width: int) -> str:
    if width <= 0:
        return ''
    pattern_width = cell_count(pattern)
    if pattern_width <= 0:
        return ' ' * width
    return strip_string(pattern * (width // pattern_width + 1), width)


def _element_bar(state: State, *args: str) -> str:
    left, filler, tip, empty, right = (_arg(args, i, default) for i, default in enumerate('[->_]'))

    width = state.adaptive_width if state.adaptive else _DETACHED_BAR_WIDTH
    if width <= 0:
        return ''

    left_width = cell_count(left)
    if left_width >= width:
        return strip_string(left, width)
    width -= left_width

    right_width = cell_count(right)
    if right_width >= width:
        return left + strip_string(right, width)
    inner_width = width - right_width

    total, current = abs(state.total), abs(state.current)
    filled_width = 0
    if total > 0:
        filled_width = min(inner_width, math.ceil(current / total * inner_width))

    body = _repeat_to_width(filler, filled_width)
    tip_width = cell_count(tip)
    if 0 < filled_width < inner_width and 0 < tip_width <= filled_width:
        body = _repeat_to_width(filler, filled_width - tip_width) + tip

    body += _repeat_to_width(empty, inner_width - cell_count(body))
    return left + body + right


def _element_speed(state: State, *args: str) -> str:
    bar = state.bar
    in_bytes = bar.get_bool(BYTES)
    elapsed = state.elapsed().total_seconds()
    if elapsed <= 0:
        return _arg(args, 1, '? p/s')

    speed = state.current / elapsed
    if in_bytes:
        return _arg(args, 0, '%s/s') % format_bytes(int(speed), bar.get_bool(SI_BYTES_PREFIX))
    return _arg(args, 0, '%s p/s') % f'{speed:.1f}'


def _element_rtime(state: State, *args: str) -> str:
    if state.finished:
        return _arg(args, 1, '%s') % format_duration(state.elapsed())

    elapsed = state.elapsed().total_seconds()
    if state.total <= 0 or state.current <= 0 or elapsed <= 0:
        return _arg(args, 2, '?')

    remaining = elapsed / state.current * (state.total - state.current)
    return _arg(args, 0, '%s') % format_duration(max(0.0, remaining))


def _element_etime(state: State, *args: str) -> str:
    return _arg(args, 0, '%s') % format_duration(state.elapsed())


def _element_string(state: State, *args: str) -> str:
    if not args:
        return ''
    value = state.bar.get(args[0])
    if value is None:
        return ''
    if isinstance(value, timedelta):
        return format_duration(value)
    return str(value)


def _element_cycle(state: State, *args: str) -> str:
    if not args:
        return ''
    return args[(state.id - 1) % len(args)]


_COLOR_CODES = {
    'black': Colors.BLACK,
    'red': Colors.RED,
    'green': Colors.GREEN,
    'yellow': Colors.YELLOW,
    'blue': Colors.BLUE,
    'magenta': Colors.MAGENTA,
    'cyan': Colors.CYAN,
    'white': Colors.WHITE,
    'resetcolor': Colors.RESET,
}

_RANDOM_COLORS = [Colors.RED, Colors.GREEN, Colors.YELLOW, Colors.BLUE, Colors.MAGENTA, Colors.CYAN]


def _color_filter(code: str, enabled: bool) -> Callable[..., str]:
    def colorize(*values: str) -> str:
        text = ''.join(values)
        if not enabled:
            return text
        return f'{code}{text}{Colors.RESET}'
    return colorize


def _random_color_filter(enabled: bool) -> Callable[..., str]:
    def colorize(*values: str) -> str:
        return _color_filter(random.choice(_RANDOM_COLORS), enabled)(*values)
    return colorize


def _filter_rnd(*values: str) -> str:
    return random.choice(values) if values else ''


def _register_builtins(registry: 'ElementRegistry', use_color: bool):
    registry.register('counters', _element_counters)
    registry.register('percent', _element_percent)
    registry.register_adaptive('bar', _element_bar)
    registry.register('speed', _element_speed)
    registry.register('rtime', _element_rtime)
    registry.register('etime', _element_etime)
    registry.register('string', _element_string)
    registry.register('cycle', _element_cycle)

    for name, code in _COLOR_CODES.items():
        registry.register_filter(name, _color_filter(code, use_color))
    registry.register_filter('rndcolor', _random_color_filter(use_color))
    registry.register_filter('rnd', _filter_rnd)


# ============================================================================
# Template Engine
# ============================================================================

PendingElement = Callable[[State], str]

_NAME_RE = re.compile(r'[A-Za-z_][A-Za-z0-9_]*\Z')

_ACTION_TOKEN_RE = re.compile(r'''
    (?P<space>\s+)
  | (?P<close>\}\})
  | (?P<pipe>\|)
  | (?P<dot>\.)
  | (?P<string>"(?:[^"\\\n]|\\.)*")
  | (?P<raw>`[^`]*`)
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
''', re.VERBOSE)

_ESCAPE_RE = re.compile(r'\\(u[0-9a-fA-F]{4}|.)', re.DOTALL)
_ESCAPES = {'\\': '\\', '"': '"', 'n': '\n', 't': '\t', 'r': '\r'}


class _Dot:
    """Operand standing for the render state"""

    def __repr__(self):
        return '.'


_DOT = _Dot()


@dataclass(frozen=True)
class _Command:
    name: Optional[str]  # None for a literal
    function: Any
    operands: Tuple[Any, ...]
    offset: int


def _unquote(literal: str, offset: int) -> str:
    def replace(match):
        code = match.group(1)
        if len(code) == 5:
            return chr(int(code[1:], 16))
        try:
            return _ESCAPES[code]
        except KeyError:
            raise ConfigurationError(f'unknown escape sequence \\{code} in string at offset {offset}') from None
    return _ESCAPE_RE.sub(replace, literal[1:-1])


def _parse_operand(kind: str, value: str, offset: int) -> Any:
    if kind == 'dot':
        return _DOT
    if kind == 'string':
        return _unquote(value, offset)
    if kind == 'raw':
        return value[1:-1]
    raise ConfigurationError(f'unexpected identifier "{value}" at offset {offset}: only "." and strings can be arguments')


def _build_command(words: List[Tuple[str, str, int]], stage: int, functions: Dict[str, Any], offset: int) -> _Command:
    if not words:
        raise ConfigurationError(f'missing command in action at offset {offset}')

    kind, value, word_offset = words[0]
    if kind == 'name':
        function = functions.get(value)
        if function is None:
            raise ConfigurationError(f'function "{value}" not defined (offset {word_offset})')
        operands = tuple(_parse_operand(*word) for word in words[1:])
        return _Command(value, function, operands, word_offset)

    if stage > 0:
        raise ConfigurationError(f'non executable command in pipeline stage {stage + 1} at offset {word_offset}')
    if kind == 'dot':
        raise ConfigurationError(f'nothing to call on "." at offset {word_offset}')
    if len(words) > 1:
        raise ConfigurationError(f'unexpected argument after literal at offset {words[1][2]}')
    return _Command(None, None, (_parse_operand(kind, value, word_offset),), word_offset)


def _parse_action(text: str, pos: int, functions: Dict[str, Any]) -> Tuple[Tuple[_Command, ...], int]:
    action_offset = pos - 2
    commands: List[_Command] = []
    words: List[Tuple[str, str, int]] = []

    while True:
        if pos >= len(text):
            raise ConfigurationError(f'unclosed action at offset {action_offset}')

        match = _ACTION_TOKEN_RE.match(text, pos)
        if match is None:
            char = text[pos]
            if char in '"`':
                raise ConfigurationError(f'unterminated string at offset {pos}')
            raise ConfigurationError(f'unexpected {char!r} in action at offset {pos}')

        kind = match.lastgroup
        pos = match.end()
        if kind == 'space':
            continue
        if kind in ('pipe', 'close'):
            commands.append(_build_command(words, len(commands), functions, match.start()))
            words = []
            if kind == 'close':
                return tuple(commands), pos
            continue
        words.append((kind, match.group(), match.start()))


def _parse(text: str, functions: Dict[str, Any]) -> List[Union[str, Tuple[_Command, ...]]]:
    """Split template text into literal chunks and pipelines"""
    nodes: List[Union[str, Tuple[_Command, ...]]] = []
    pos = 0
    while True:
        start = text.find('{{', pos)
        if start < 0:
            if pos < len(text):
                nodes.append(text[pos:])
            return nodes
        if start > pos:
            nodes.append(text[pos:start])
        pipeline, pos = _parse_action(text, start + 2, functions)
        nodes.append(pipeline)


class Template:
    """Compiled template bound to the functions registered when it was compiled"""

    def __init__(self, source: str, nodes: List[Union[str, Tuple[_Command, ...]]]):
        self.source = source
        self._nodes = nodes

    def __repr__(self):
        return f'{type(self).__name__}({self.source!r})'

    def execute(self, state: State) -> Tuple[str, List[PendingElement]]:
        """
        Run the first render pass.

        Returns the rendered text, where every adaptive element left a
        placeholder, together with the adaptive elements in the order they
        were reached.
        """
        pending: List[PendingElement] = []
        parts = []
        for node in self._nodes:
            if isinstance(node, str):
                parts.append(node)
            else:
                parts.append(self._run_pipeline(node, state, pending))
        return ''.join(parts), pending

    def _run_pipeline(self, pipeline: Tuple[_Command, ...], state: State, pending: List[PendingElement]) -> str:
        value = ''
        for stage, command in enumerate(pipeline):
            args = [state if operand is _DOT else operand for operand in command.operands]
            if stage > 0:
                args.append(value)
            value = self._call(command, args, pending)
        return value

    @staticmethod
    def _call(command: _Command, args: List[Any], pending: List[PendingElement]) -> str:
        if command.function is None:
            return args[0]

        function = command.function
        try:
            if isinstance(function, Element):
                result = Template._call_element(command.name, function, args, pending)
            else:
                if any(isinstance(arg, State) for arg in args):
                    raise RenderError(f'filter "{command.name}" does not take "." as an argument')
                result = function(*args)
        except RenderError:
            raise
        except Exception as e:
            raise RenderError(f'error calling {command.name}: {e}') from e

        return result if isinstance(result, str) else str(result)

    @staticmethod
    def _call_element(name: str, element: Element, args: List[Any], pending: List[PendingElement]) -> str:
        if not args or not isinstance(args[0], State):
            raise RenderError(f'element "{name}" expects "." as its first argument')
        state = args[0]
        element_args = tuple(args[1:])
        if any(not isinstance(arg, str) for arg in element_args):
            raise RenderError(f'element "{name}" takes "." only as its first argument')

        if element.adaptive and not state.adaptive:
            pending.append(lambda adaptive_state: element.render(adaptive_state, *element_args))
            return ADAPTIVE_PLACEHOLDER
        return element.render(state, *element_args)


class ElementRegistry:
    """Named elements and filters available to templates, plus the compiled template cache"""

    def __init__(self, use_color: Optional[bool] = None, builtins: bool = True):
        """
        Create an element registry.

        Args:
            use_color: Whether color filters emit ANSI codes (detected from the terminal when None)
            builtins: Register the built-in elements and filters
        """
        self._lock = threading.Lock()
        self._functions: Dict[str, Union[Element, Callable[..., str]]] = {}
        self._cache: Dict[str, Template] = {}

        if use_color is None:
            use_color = _detect_terminal_capability() != TerminalCapability.MINIMAL
        self.use_color = use_color

        if builtins:
            _register_builtins(self, use_color)

    @staticmethod
    def _check_name(name: str):
        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise ValueError(f"invalid element name {name!r}")

    def register(self, name: str, element: Union[Element, Callable[..., str]]):
        """Register an element under name; plain callables get wrapped in ElementFunc"""
        self._check_name(name)
        if not isinstance(element, Element):
            if not callable(element):
                raise TypeError("element must be an Element or a callable")
            element = ElementFunc(element)
        with self._lock:
            self._functions[name] = element

    def register_adaptive(self, name: str, fn: Callable[..., str]):
        """Register a function as an adaptive element"""
        self._check_name(name)
        if not callable(fn):
            raise TypeError("adaptive element must be callable")
        with self._lock:
            self._functions[name] = AdaptiveElement(fn)

    def register_filter(self, name: str, fn: Callable[..., str]):
        """Register a filter taking string arguments"""
        self._check_name(name)
        if not callable(fn) or isinstance(fn, Element):
            raise TypeError("filter must be a plain callable")
        with self._lock:
            self._functions[name] = fn

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._functions)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._functions

    def compile(self, text: str, refresh: bool = False) -> Template:
        """
        Compile template text, reusing a cached template for identical text.

        A cached template keeps the functions bound when it was first
        compiled; pass refresh=True to recompile against the current
        registrations.
        """
        with self._lock:
            if not refresh:
                template = self._cache.get(text)
                if template is not None:
                    return template

            template = Template(text, _parse(text, dict(self._functions)))
            self._cache[text] = template
            logger.debug('Compiled template %r', text)
            return template

    def clear_cache(self):
        with self._lock:
            self._cache.clear()


default_registry = ElementRegistry()


# ============================================================================
# Adaptive width resolution
# ============================================================================

def resolve_adaptive(text: str, pending: List[PendingElement], state: State) -> str:
    """
    Replace adaptive placeholders with content sized to the remaining width.

    Every pending element gets the same share of the columns left over by
    the static content, in the order the elements were reached. When no
    columns are left the placeholders are dropped and the line is truncated
    to the bar width.
    """
    count = len(pending)
    if count == 0:
        return text

    static_width = cell_count(text) - count * ADAPTIVE_PLACEHOLDER_WIDTH
    if state.width - static_width <= 0:
        return strip_string(text.replace(ADAPTIVE_PLACEHOLDER, ''), state.width)

    adaptive_state = state.with_adaptive_width((state.width - static_width) // count)
    for element in pending:
        text = text.replace(ADAPTIVE_PLACEHOLDER, element(adaptive_state), 1)
    return text


# ============================================================================
# Progress Bar
# ============================================================================

# Variable keys understood by the built-in elements
BYTES = 'bytes'
SI_BYTES_PREFIX = 'si_bytes_prefix'

VarValue = Union[int, str, bool, timedelta]
_VAR_TYPES = (int, str, bool, timedelta)


class _RWLock:
    """Lock allowing many concurrent readers or a single writer"""

    def __init__(self):
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self):
        with self._condition:
            while self._writer:
                self._condition.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._condition:
                self._readers -= 1
                if self._readers == 0:
                    self._condition.notify_all()

    @contextmanager
    def write(self):
        with self._condition:
            while self._writer or self._readers:
                self._condition.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._condition:
                self._writer = False
                self._condition.notify_all()


class Bar:
    """Individual progress bar rendered through a template"""

    def __init__(self, total: int = 0, registry: Optional[ElementRegistry] = None):
        """
        Create a progress bar.

        Args:
            total: Total number of items; a bar with total 0 starts out finished
            registry: Elements available to the bar's template (default_registry when None)
        """
        self._registry = registry if registry is not None else default_registry

        # Counters, configuration and rendering are guarded separately so
        # producers never wait on a render in progress
        self._counter_lock = threading.Lock()
        self._config_lock = _RWLock()
        self._render_lock = threading.Lock()

        self._current = 0
        self._total = 0
        self._width = 0
        self._max_width = 0
        self._vars: Dict[str, VarValue] = {}
        self._template: Optional[Template] = None
        self._err: Optional[BarioError] = None
        self._start_time: Optional[datetime] = None
        self._render_id = 0
        self._started = False
        self._finished = False

        self.set_total(total)

    def __repr__(self):
        return f'<{type(self).__name__} {self.current()}/{self.total()}>'

    def __str__(self):
        return self.string()

    # Counters

    def total(self) -> int:
        return self._total

    def current(self) -> int:
        return self._current

    def set_total(self, value: int) -> 'Bar':
        with self._counter_lock:
            self._total = value
            reached = self._reached_total()
        if reached:
            self.finish()
        return self

    def set_current(self, value: int) -> 'Bar':
        with self._counter_lock:
            self._current = value
            reached = self._reached_total()
        if reached:
            self.finish()
        return self

    def add(self, value: int = 1) -> 'Bar':
        """Add value to the current count"""
        with self._counter_lock:
            self._current += value
            reached = self._reached_total()
        if reached:
            self.finish()
        return self

    def inc(self) -> 'Bar':
        return self.add(1)

    def _reached_total(self) -> bool:
        return self._current >= self._total

    # Lifecycle

    def start(self) -> 'Bar':
        """Start (or restart) the bar; a finished bar stays finished"""
        with self._config_lock.write():
            if self._finished:
                self._configure_internal()
                return self
            self._err = None
            self._configure_internal()
            self._render_id = 0
            self._start_time = datetime.now()
            self._started = True
        logger.debug('Bar started with total %d', self.total())
        return self

    def finish(self) -> 'Bar':
        with self._config_lock.write():
            if self._finished:
                return self
            self._finished = True
        logger.debug('Bar finished at %d/%d', self.current(), self.total())
        return self

    def is_started(self) -> bool:
        """True once the bar was started or rendered"""
        with self._config_lock.read():
            return self._started

    def is_finished(self) -> bool:
        with self._config_lock.read():
            return self._finished

    def start_time(self) -> Optional[datetime]:
        with self._config_lock.read():
            return self._start_time

    def _configure_internal(self):
        if self._template is not None or self._err is not None:
            return
        try:
            self._template = self._registry.compile(BUILDING)
        except ConfigurationError as e:
            self._set_err_internal(e)

    # Configuration

    def set_template_string(self, template: str) -> 'Bar':
        """Compile and bind template text; a failure becomes the bar's error"""
        try:
            compiled = self._registry.compile(template)
        except ConfigurationError as e:
            with self._config_lock.write():
                self._template = None
                self._set_err_internal(e)
            return self
        return self.set_template(compiled)

    def set_template(self, template: Union[str, Template]) -> 'Bar':
        if not isinstance(template, Template):
            return self.set_template_string(str(template))
        with self._config_lock.write():
            self._template = template
            self._err = None
        return self

    def set_width(self, width: int) -> 'Bar':
        """Set the bar width; 0 or less uses the terminal width"""
        with self._config_lock.write():
            self._width = width
        return self

    def set_max_width(self, max_width: int) -> 'Bar':
        """Set the maximum bar width; 0 or less means no limit"""
        with self._config_lock.write():
            self._max_width = max_width
        return self

    def width(self) -> int:
        """Configured width, or the terminal width when none is set"""
        with self._config_lock.read():
            width = self._width
            max_width = self._max_width

        if width <= 0:
            try:
                width = terminal_width()
            except TerminalQueryError:
                width = DEFAULT_BAR_WIDTH

        if 0 < max_width < width:
            width = max_width
        return width

    def set(self, key: str, value: VarValue) -> 'Bar':
        """Store a variable for elements to read"""
        if not isinstance(key, str):
            raise TypeError("variable key must be a string")
        if not isinstance(value, _VAR_TYPES):
            raise TypeError(f"unsupported variable type {type(value).__name__}, expected int, str, bool or timedelta")
        with self._config_lock.write():
            self._vars[key] = value
        return self

    def get(self, key: str) -> Optional[VarValue]:
        with self._config_lock.read():
            return self._vars.get(key)

    def get_bool(self, key: str) -> bool:
        value = self.get(key)
        return value if isinstance(value, bool) else False

    def get_int(self, key: str) -> int:
        value = self.get(key)
        return value if isinstance(value, int) and not isinstance(value, bool) else 0

    def get_str(self, key: str) -> str:
        value = self.get(key)
        return value if isinstance(value, str) else ''

    def get_duration(self, key: str) -> timedelta:
        value = self.get(key)
        return value if isinstance(value, timedelta) else timedelta(0)

    def format(self, value: int) -> str:
        """Format a count according to the bar's settings"""
        if self.get_bool(BYTES):
            return format_bytes(value, self.get_bool(SI_BYTES_PREFIX))
        return str(value)

    def err(self) -> Optional[BarioError]:
        with self._config_lock.read():
            return self._err

    def set_err(self, err: Optional[BarioError]) -> 'Bar':
        with self._config_lock.write():
            self._set_err_internal(err)
        return self

    def _set_err_internal(self, err: Optional[BarioError]):
        self._err = err
        if err is not None:
            logger.warning('Progress bar error: %s', err)

    # Streams

    def new_proxy_reader(self, stream) -> 'ProxyReader':
        """Wrap a readable stream; bytes read are added to the bar"""
        self.set(BYTES, True)
        return ProxyReader(stream, self)

    def new_proxy_writer(self, stream) -> 'ProxyWriter':
        """Wrap a writable stream; bytes written are added to the bar"""
        self.set(BYTES, True)
        return ProxyWriter(stream, self)

    # Rendering

    def render(self) -> RenderResult:
        """Render one line for this bar, recording any failure as the bar's error"""
        with self._render_lock:
            try:
                return self._render_internal()
            except RenderError as e:
                return self._render_failed(e)
            except Exception as e:
                error = RenderError(f'render failed: {e}')
                error.__cause__ = e
                return self._render_failed(error)

    def _render_failed(self, error: RenderError) -> RenderResult:
        self.set_err(error)
        return RenderResult(error=error)

    def _render_internal(self) -> RenderResult:
        with self._config_lock.write():
            self._configure_internal()
            if self._err is not None:
                return RenderResult(error=self._err)

            now = datetime.now()
            if self._start_time is None:
                self._start_time = now
            self._started = True
            self._render_id += 1

            render_id = self._render_id
            finished = self._finished
            start_time = self._start_time
            template = self._template

        width = self.width()
        state = State(bar=self,
                      id=render_id,
                      total=self.total(),
                      current=self.current(),
                      width=width,
                      finished=finished,
                      time=now,
                      start_time=start_time)

        text, pending = template.execute(state)
        text = resolve_adaptive(text, pending, state)

        return RenderResult(text=pad_string(text, width), width=width)

    def string(self) -> str:
        """Rendered line, empty when rendering fails"""
        return self.render().text

    def line(self, final: bool = False) -> str:
        """Rendered line prefixed with a carriage return, ready to overwrite the terminal line"""
        result = self.render()
        if not result.ok:
            return ''
        return '\r' + result.text + ('\n' if final else '')

    def progress_element(self, state: State, *args: str) -> str:
        """
        Render this bar inside another bar's line.

        Register it with ElementRegistry.register_adaptive to size the
        nested bar to the share of the line it is given.
        """
        if state.adaptive:
            if state.adaptive_width <= 0:
                return ''
            self.set_width(state.adaptive_width)
        return self.string()


class ProxyReader:
    """Readable stream wrapper adding the bytes read to a bar"""

    def __init__(self, stream, bar: Bar):
        self.stream = stream
        self.bar = bar

    def read(self, size: int = -1):
        data = self.stream.read(size)
        self.bar.add(len(data))
        return data

    def readline(self, size: int = -1):
        data = self.stream.readline(size)
        self.bar.add(len(data))
        return data

    def readinto(self, buffer) -> Optional[int]:
        count = self.stream.readinto(buffer)
        if count:
            self.bar.add(count)
        return count

    def __iter__(self):
        return self

    def __next__(self):
        line = self.readline()
        if not line:
            raise StopIteration
        return line

    def close(self):
        try:
            self.stream.close()
        finally:
            self.bar.finish()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __getattr__(self, name):
        return getattr(self.stream, name)


class ProxyWriter:
    """Writable stream wrapper adding the bytes written to a bar"""

    def __init__(self, stream, bar: Bar):
        self.stream = stream
        self.bar = bar

    def write(self, data) -> Optional[int]:
        count = self.stream.write(data)
        self.bar.add(count if count is not None else len(data))
        return count

    def writelines(self, lines):
        for data in lines:
            self.write(data)

    def close(self):
        try:
            self.stream.close()
        finally:
            self.bar.finish()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __getattr__(self, name):
        return getattr(self.stream, name)


def new_bar(total: int = 0, registry: Optional[ElementRegistry] = None) -> Bar:
    return Bar(total, registry=registry)


def start_new(total: int = 0, registry: Optional[ElementRegistry] = None) -> Bar:
    """Create and start a bar with the default template"""
    return Bar(total, registry=registry).start()


# ============================================================================
# Templates
# ============================================================================

class ProgressBarTemplate(str):
    """Template text that can create bars bound to it"""

    def new(self, total: int = 0, registry: Optional[ElementRegistry] = None) -> Bar:
        return Bar(total, registry=registry).set_template(self)

    def start(self, total: int = 0, registry: Optional[ElementRegistry] = None) -> Bar:
        return self.new(total, registry=registry).start()


# Spinners
WHEEL = r'{{cycle . "|" "/" "-" "\\" | rndcolor}}'
BOUNCING = '{{cycle . "⠁" "⠂" "⠄" "⠂" | rndcolor}}'
CLOCK = '{{cycle . "🕐" "🕑" "🕒" "🕓" "🕔" "🕕" "🕖" "🕗" "🕘" "🕙" "🕚"}}'
DOTS = '{{cycle . "⠋" "⠙" "⠹" "⠸" "⠼" "⠴" "⠦" "⠧" "⠇" "⠏" | rndcolor}}'
EMOJI = '{{cycle . "😀" "😂" "😁" "😝"}}'

RESULT = '{{string . "success" | green}}{{string . "fail" | red}}'

# Example: 'Prefix 20 / 100 [-->______] 20.00% 1.0 p/s ETA 1m0s Suffix'
FULL = ProgressBarTemplate('{{string . "prefix"}}{{counters . }} {{bar . }} {{percent . }} {{speed . }} {{rtime . "ETA %s"}}{{string . "suffix"}}')

# Example: 'Prefix 20 / 100 [-->______] 20.00% 1.0 p/s Suffix'
DEFAULT = ProgressBarTemplate('{{string . "prefix"}}{{counters . }} {{bar . }} {{percent . }} {{speed . }}{{string . "suffix"}}')

BUILDING = ProgressBarTemplate(DOTS + ' {{cyan "building"}} {{bar .}} {{counters . "%.3s/%s"}} ' + RESULT)


# ============================================================================
# Progress - Managing multiple progress bars
# ============================================================================

class Progress:
    """Periodically redraws a group of bars in place"""

    def __init__(self,
                 out: Optional[TextIO] = None,
                 refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
                 width: int = DEFAULT_BAR_WIDTH,
                 template: str = BUILDING,
                 registry: Optional[ElementRegistry] = None):
        """
        Create a progress container.

        Args:
            out: Text stream to draw on (stdout when None)
            refresh_interval: Seconds between redraws
            width: Width given to bars created by add_bar
            template: Template for bars created by add_bar
            registry: Elements available to the bars' templates
        """
        if refresh_interval <= 0:
            raise ValueError("refresh_interval must be positive")
        if width < 0:
            raise ValueError("width must be non-negative")

        self._lock = threading.Lock()
        self._writer = LineWriter(out)
        self._interval = refresh_interval
        self._width = width
        self._template = ProgressBarTemplate(template)
        self._registry = registry if registry is not None else default_registry

        self._bars: List[Bar] = []

        self._finish = threading.Event()
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    @contextmanager
    def lock(self):
        """Context manager for thread-safe operations"""
        with self._lock:
            yield self._lock

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.finish_all()
        return False

    @property
    def width(self) -> int:
        return self._width

    @property
    def refresh_interval(self) -> float:
        return self._interval

    @property
    def bars(self) -> List[Bar]:
        with self.lock():
            return list(self._bars)

    @property
    def is_running(self) -> bool:
        with self.lock():
            return self._thread is not None and not self._done.is_set()

    @property
    def last_frame(self) -> List[str]:
        """Lines of the most recently drawn frame"""
        return self._writer.last_lines

    def set_out(self, out: Optional[TextIO]):
        with self.lock():
            self._writer.out = out

    def set_refresh_interval(self, interval: float):
        """Set seconds between redraws; applies from the next tick"""
        if interval <= 0:
            raise ValueError("refresh_interval must be positive")
        with self.lock():
            self._interval = interval

    def add_bar(self, total: int) -> Bar:
        """Create a bar and add it to the container"""
        bar = self._template.new(total, registry=self._registry)
        bar.set_width(self._width)

        with self.lock():
            self._bars.append(bar)
            if self._thread is not None:
                bar.start()
        return bar

    def start(self):
        """Start every bar and the background redraw"""
        with self.lock():
            if self._thread is not None:
                logger.warning('Progress is already running')
                return

            for bar in self._bars:
                bar.start()

            self._finish.clear()
            self._done.clear()
            self._closed = False
            self._thread = threading.Thread(target=self._listen, name='multi-bario-redraw', daemon=True)
            self._thread.start()
            bar_count = len(self._bars)

        logger.debug('Progress started with %d bars', bar_count)

    def finish_all(self):
        """Finish every bar and block until the final frame is written"""
        with self.lock():
            thread = self._thread
            if thread is None and self._closed:
                return
            self._closed = True

        if thread is None:
            # Never started, draw the final frame from here
            self._finish_bars_and_print()
            return

        self._finish.set()
        self._done.wait()
        thread.join()

        with self.lock():
            if self._thread is thread:
                self._thread = None
        logger.debug('Progress finished')

    def render(self) -> List[str]:
        """Render every bar to a line"""
        with self.lock():
            return self._render_internal()

    def _listen(self):
        try:
            while not self._finish.wait(self._interval):
                self._print()
            self._finish_bars_and_print()
        finally:
            self._done.set()

    def _finish_bars_and_print(self):
        # Bars added concurrently wait until the final frame is written
        with self.lock():
            for bar in self._bars:
                bar.finish()
            self._print_internal(final=True)

    def _print(self):
        with self.lock():
            self._print_internal()

    def _print_internal(self, final: bool = False):
        try:
            self._writer.write_frame(self._render_internal(), final=final)
        except Exception:
            logger.exception('Display progress failed')

    def _render_internal(self) -> List[str]:
        lines = []
        for bar in self._bars:
            result = bar.render()
            lines.append(result.text if result.ok else '')
        return lines


# ============================================================================
# Default progress container
# ============================================================================

_default_progress: Optional[Progress] = None
_default_progress_lock = threading.Lock()


def default_progress() -> Progress:
    """Shared progress container used by the module level helpers"""
    global _default_progress
    with _default_progress_lock:
        if _default_progress is None:
            _default_progress = Progress()
        return _default_progress


def add_bar(total: int) -> Bar:
    """Create a bar in the default progress container"""
    return default_progress().add_bar(total)


def start():
    """Start redrawing the default progress container"""
    default_progress().start()


def finish_all():
    """Finish the default progress container and wait for its final frame"""
    default_progress().finish_all()
