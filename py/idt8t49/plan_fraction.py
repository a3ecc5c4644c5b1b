'''Fixed point register fields: the upper loop ΣΔ feedback divider, the
fractional output divider, and the loss of signal monitor.'''

from .plan_constants import DSM_FRAC_BITS, NFRAC_BITS
from .plan_tools import check_width, round_div

from dataclasses import dataclass
from fractions import Fraction

__all__ = 'DsmSplit', 'OutputDivSplit', 'dsm_split', 'output_div_split', \
    'los_divider'

DSM_INT_BITS = 9
NINT_BITS = 18
LOS_BITS = 17
LOS_MIN = 6

@dataclass(frozen=True)
class DsmSplit:
    integer: int
    fraction: int

    def value(self) -> Fraction:
        return self.integer + Fraction(self.fraction, 1 << DSM_FRAC_BITS)

@dataclass(frozen=True)
class OutputDivSplit:
    integer: int
    fraction: int

    def total_ratio(self) -> int:
        '''The integer divide that this split encodes.'''
        if self.fraction == 0:
            return self.integer * 2
        assert self.fraction == 1 << NFRAC_BITS - 1
        return self.integer * 2 - 1

def dsm_split(vco: int, reference: int) -> DsmSplit:
    '''The upper loop runs at twice the reference, so the ΣΔ divider is
    vco / (2 * reference) in 9.21 fixed point.'''
    quotient, remainder = divmod(vco, 2 * reference)
    fraction = round_div(remainder << DSM_FRAC_BITS, 2 * reference)
    if fraction == 1 << DSM_FRAC_BITS:
        # Rounded up to the next integer.
        quotient += 1
        fraction = 0
    check_width('DSM_INT', quotient, DSM_INT_BITS)
    return DsmSplit(quotient, fraction)

def output_div_split(total_ratio: int) -> OutputDivSplit:
    '''The output divider divides by twice N_Q.  Odd ratios need half in the
    fractional part.'''
    assert total_ratio > 0
    if total_ratio & 1:
        split = OutputDivSplit((total_ratio + 1) >> 1, 1 << NFRAC_BITS - 1)
    else:
        split = OutputDivSplit(total_ratio >> 1, 0)
    check_width('N_Q', split.integer, NINT_BITS)
    return split

def los_divider(vco: int, reference: int) -> int:
    los = max(LOS_MIN, vco // 8 // reference + 3)
    return check_width('LOS', los, LOS_BITS)

def test_dsm_148_5() -> None:
    d = dsm_split(3_564_000_000, 40_000_000)
    assert d == DsmSplit(44, 1153434)
    assert abs(d.value() - Fraction(3564, 80)) < Fraction(1, 1 << 22)

def test_dsm_integer() -> None:
    assert dsm_split(4_000_000_000, 40_000_000) == DsmSplit(50, 0)

def test_dsm_carry() -> None:
    # A remainder within half an LSB of 2 * reference rounds up into the
    # integer part.
    d = dsm_split(2 * 40_000_000 * 44 - 1, 40_000_000)
    assert d == DsmSplit(44, 0)

def test_dsm_overflow() -> None:
    from .plan_tools import FieldOverflow
    try:
        dsm_split(3_000_000_000, 1_000_000)
        assert False, 'Expected FieldOverflow'
    except FieldOverflow as e:
        assert e.field == 'DSM_INT'
        assert e.value == 1500

def test_output_div() -> None:
    assert output_div_split(24) == OutputDivSplit(12, 0)
    assert output_div_split(25) == OutputDivSplit(13, 1 << 27)
    assert output_div_split(5) == OutputDivSplit(3, 1 << 27)
    for ratio in 1, 4, 5, 24, 25, 500_000:
        assert output_div_split(ratio).total_ratio() == ratio

def test_los() -> None:
    assert los_divider(3_564_000_000, 40_000_000) == 14
    # Clamped to a minimum of 6.
    assert los_divider(3_000_000_000, 875_000_000) == 6
    assert los_divider(4_000_000_000, 8_000) == 62_503
