from .plan_constants import Hz, kHz, MHz, GHz

from fractions import Fraction
from typing import Any

class PlanningFailed(RuntimeError):
    # Planning stage at which we failed, if known.
    stage: Any = None

class InputFrequencyOutOfRange(PlanningFailed):
    pass

class OutputFrequencyOutOfRange(PlanningFailed):
    pass

class NoValidDividerFound(PlanningFailed):
    pass

class FeedbackSearchExhausted(PlanningFailed):
    pass

class UnusableDeviceSettings(PlanningFailed):
    '''Register settings read back from a device do not make a working
    plan.  A blank device gives this.'''

class FieldOverflow(PlanningFailed):
    '''A computed value does not fit its register field.  This is a bug, not
    something a caller should attempt to recover from.'''
    field: str
    value: int

    def __init__(self, field: str, value: int, width: int):
        super().__init__(f'{field} = {value} does not fit in {width} bits')
        self.field = field
        self.value = value

def ceil_div(a: int, b: int) -> int:
    assert b > 0
    return -(-a // b)

def round_div(a: int, b: int) -> int:
    '''Round half up integer division, for non-negative a.'''
    assert a >= 0 and b > 0
    return (2 * a + b) // (2 * b)

def check_width(field: str, value: int, width: int) -> int:
    if not 0 <= value < 1 << width:
        raise FieldOverflow(field, value, width)
    return value

def str_to_freq(s: str) -> int:
    '''Parse a frequency to integer Hz.  The unit defaults to MHz.'''
    s = s.lower()
    for suffix, scale in ('khz', kHz), ('mhz', MHz), ('ghz', GHz), ('hz', Hz):
        if s.endswith(suffix):
            break
        if suffix != 'hz' and s.endswith(suffix[0]):
            suffix = suffix[0]
            break
    else:
        suffix = ''
        scale = MHz

    value = Fraction(s.removesuffix(suffix)) * scale
    if value.denominator != 1:
        raise ValueError(f'{s} is not a whole number of Hz')
    return int(value)

# Set the name of str_to_freq to give sensible argparse help test.
str_to_freq.__name__ = 'frequency'

def freq_to_str(freq: Fraction|int, precision: int = 0) -> str:
    if abs(freq) >= 10_000 * MHz:
        scaled = Fraction(freq, GHz)
        suffix = 'GHz'
    elif abs(freq) >= MHz:
        scaled = Fraction(freq, MHz)
        suffix = 'MHz'
    elif abs(freq) >= kHz:
        scaled = Fraction(freq, kHz)
        suffix = 'kHz'
    else:
        scaled = Fraction(freq)
        suffix = 'Hz'

    if scaled * 1000_000 % 1 == 0:
        # Exact in decimal; strip trailing zeros.
        text = f'{float(scaled):.6f}'.rstrip('0').rstrip('.')
        return f'{text} {suffix}'
    elif precision == 0:
        return f'{float(scaled)} {suffix}'
    else:
        return f'{float(scaled):.{precision}g} {suffix}'

def fraction_to_str(f: Fraction, paren: bool = True) -> str:
    if f.denominator == 1 or f < 1:
        return str(f)
    d = f.denominator
    i = f.numerator // d
    n = f.numerator % d
    if paren:
        return f'({i} + {n}/{d})'
    else:
        return f'{i} + {n}/{d}'

def test_ceil_round() -> None:
    assert ceil_div(21, 12) == 2
    assert ceil_div(24, 12) == 2
    assert ceil_div(0, 5) == 0
    assert round_div(5, 2) == 3
    assert round_div(4, 3) == 1
    assert round_div(0, 7) == 0

def test_check_width() -> None:
    assert check_width('X', (1 << 9) - 1, 9) == 511
    try:
        check_width('DSM_INT', 512, 9)
        assert False, 'Expected overflow'
    except FieldOverflow as e:
        assert e.field == 'DSM_INT'
        assert e.value == 512
        assert isinstance(e, PlanningFailed)

def test_str_to_freq() -> None:
    assert str_to_freq('148.5') == 148_500_000
    assert str_to_freq('148.5MHz') == 148_500_000
    assert str_to_freq('40m') == 40_000_000
    assert str_to_freq('8khz') == 8_000
    assert str_to_freq('3.5G') == 3_500_000_000
    assert str_to_freq('1000hz') == 1000
    assert str_to_freq('297/2') == 148_500_000
    try:
        str_to_freq('0.5hz')
        assert False, 'Expected ValueError'
    except ValueError:
        pass

def test_freq_to_str() -> None:
    assert freq_to_str(148_500_000) == '148.5 MHz'
    assert freq_to_str(40 * MHz) == '40 MHz'
    assert freq_to_str(3_564_000_000) == '3564 MHz'
    assert freq_to_str(12_500_000_000) == '12.5 GHz'
    assert freq_to_str(8 * kHz) == '8 kHz'
    assert freq_to_str(Fraction(1, 3), 4) == '0.3333 Hz'
