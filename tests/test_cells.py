import pytest

from multi_bario import cell_count, strip_string, pad_string, format_bytes, format_duration
from datetime import timedelta


def test_cell_count_plain_and_wide():
    assert cell_count('') == 0
    assert cell_count('hello') == 5
    assert cell_count('日本語') == 6
    assert cell_count('a😀b') == 4


def test_cell_count_ignores_escape_sequences_and_combining_marks():
    assert cell_count('\033[31mred\033[0m') == 3
    assert cell_count('e\u0301') == 1
    assert cell_count('\r') == 0


SAMPLES = [
    'plain text',
    '日本語のテキスト',
    '\033[32mgreen\033[0m and 日本',
    'mixed😀emoji😂line',
    'e\u0301e\u0301e\u0301',
]


@pytest.mark.parametrize('text', SAMPLES)
@pytest.mark.parametrize('width', [0, 1, 2, 3, 5, 8, 40])
def test_strip_string_never_exceeds_width(text, width):
    stripped = strip_string(text, width)
    assert cell_count(stripped) <= width
    if cell_count(text) > width:
        assert cell_count(stripped) == width


def test_strip_string_keeps_short_strings():
    assert strip_string('abc', 3) == 'abc'
    assert strip_string('abc', 10) == 'abc'


def test_strip_string_does_not_split_wide_characters():
    # '本' would need two columns, only one is left
    assert strip_string('日本語', 3) == '日 '
    assert strip_string('日本語', 4) == '日本'


def test_strip_string_keeps_escape_sequences_whole():
    assert strip_string('\033[31mhello\033[0m', 2) == '\033[31mhe\033[0m'
    assert strip_string('ab\033[1;32mcd', 2) == 'ab\033[1;32m'


def test_strip_string_negative_width():
    assert strip_string('abc', -1) == ''


def test_pad_string():
    assert pad_string('ab', 5) == 'ab   '
    assert pad_string('日', 4) == '日  '
    assert pad_string('abcdef', 3) == 'abcdef'
    assert pad_string('\033[31mab\033[0m', 3) == '\033[31mab\033[0m '


def test_format_bytes():
    assert format_bytes(512) == '512 B'
    assert format_bytes(1536) == '1.50 KiB'
    assert format_bytes(3 * 1024 ** 3) == '3.00 GiB'
    assert format_bytes(1500, si_prefix=True) == '1.50 kB'
    assert format_bytes(2 * 10 ** 6, si_prefix=True) == '2.00 MB'


def test_format_duration():
    assert format_duration(0) == '0s'
    assert format_duration(59.4) == '59s'
    assert format_duration(65) == '1m5s'
    assert format_duration(timedelta(hours=2, seconds=3)) == '2h0m3s'
