'''Search for the pre-divider and feedback multiplier.

The lower loop compares the reference divided by P against the VCO divided by
M1, so M1 / P approximates the VCO to reference ratio.'''

from .plan_constants import FPD_MAX, M_MAX, P_MAX
from .plan_tools import FeedbackSearchExhausted, ceil_div, round_div

import dataclasses

from dataclasses import dataclass
from fractions import Fraction

__all__ = 'FeedbackSolution', 'feedback_solve'

@dataclass(frozen=True)
class FeedbackSolution:
    pre_divider: int
    feedback_mult: int
    # Error is informational, it is not programmed to the device.
    error_ppm: int = dataclasses.field(default=0, compare=False)

    def ratio(self) -> Fraction:
        return Fraction(self.feedback_mult, self.pre_divider)

def p_min(reference: int) -> int:
    '''Smallest pre-divider keeping the PFD at or below FPD_MAX.'''
    return max(1, ceil_div(reference, FPD_MAX))

def feedback_solve(vco: int, reference: int) -> FeedbackSolution:
    '''Scan the pre-divider upwards from its minimum and keep the M1 / P with
    the smallest error, in whole ppm rounded down.  Anything under 1ppm counts
    as exact and finishes the search.  On equal errors the smaller
    pre-divider wins.'''
    assert vco > 0 and reference > 0
    best: FeedbackSolution|None = None
    for p in range(p_min(reference), P_MAX + 1):
        m = round_div(vco * p, reference)
        if m >= M_MAX:
            break                       # m only grows with p.
        error_ppm = abs(vco * p - m * reference) * 1000_000 // (p * reference)
        if best is None or error_ppm < best.error_ppm:
            best = FeedbackSolution(p, m, error_ppm)
            if error_ppm == 0:
                break

    if best is None:
        raise FeedbackSearchExhausted(
            f'No feedback multiplier below {M_MAX} for VCO {vco} Hz '
            f'from reference {reference} Hz')
    return best

def test_exact() -> None:
    # 3564 / 40 = 89.1, first multiple of 10 at or above 313.
    s = feedback_solve(3_564_000_000, 40_000_000)
    assert p_min(40_000_000) == 313
    assert s == FeedbackSolution(320, 28512)
    assert s.error_ppm == 0
    assert s.ratio() == Fraction(3564, 40)

def test_small_reference() -> None:
    s = feedback_solve(4_000_000_000, 8_000)
    assert s.pre_divider == 1
    assert s.feedback_mult == 500_000
    assert s.error_ppm == 0

def test_sub_ppm_is_exact() -> None:
    # The first pre-divider already gets within 1ppm, so the search stops
    # there rather than hunting for a zero remainder.
    s = feedback_solve(3_000_000_001, 40_000_000)
    assert s.pre_divider == 313
    assert s.feedback_mult == 313 * 75
    assert s.error_ppm == 0
    # 148.500001MHz * 24.  The smallest P within 1ppm is the one that is
    # exact for 148.5MHz.
    assert feedback_solve(3_564_000_024, 40_000_000) \
        == FeedbackSolution(320, 28512)

def test_high_reference() -> None:
    s = feedback_solve(3_564_000_024, 874_999_999)
    assert p_min(874_999_999) == 6836
    assert s == FeedbackSolution(6836, 27844)
    assert s.error_ppm == 0

def test_inexact() -> None:
    vco = 3_000_000_007
    reference = 27_000_000
    s = feedback_solve(vco, reference)
    # 111.11... * 9 is nearly integer; 216 is the first multiple of 9 at or
    # above p_min = 211.
    assert p_min(reference) == 211
    assert s == FeedbackSolution(216, 24000)
    assert s.error_ppm == 0
    # Everything before it is at least 1ppm out.
    for p in range(211, 216):
        m = round_div(vco * p, reference)
        assert abs(vco * p - m * reference) * 1000_000 >= p * reference

def test_first_smallest_error_kept() -> None:
    # 3564 / 40 is 89.1, no P below 320 gets within 1ppm, and 320 is exact.
    s = feedback_solve(3_564_000_000, 40_000_000)
    assert s.pre_divider == 320
    s = feedback_solve(3_564_000_000, 27_000_000)
    assert s.error_ppm == 0
    assert p_min(27_000_000) <= s.pre_divider < 1 << 21

def test_saturated() -> None:
    # VCO / reference is above M_MAX for any pre-divider.
    try:
        feedback_solve(3_000_000_000, 100)
        assert False, 'Expected FeedbackSearchExhausted'
    except FeedbackSearchExhausted:
        pass

def test_deterministic() -> None:
    a = feedback_solve(3_712_500_000, 40_000_000)
    b = feedback_solve(3_712_500_000, 40_000_000)
    assert a == b and a.error_ppm == b.error_ppm
    assert a.pre_divider == 320
