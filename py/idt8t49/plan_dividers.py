'''Integer output divider table for the 8T49N24x.

The integer output divider is two stages.  NS1 is one of a small set of
ratios, and NS2 multiplies that by twice its value.  An NS2 of zero bypasses
the second stage.'''

from .plan_constants import FVCO_MAX, FVCO_MIN, NS1_BYPASS, NS1_RATIOS
from .plan_tools import NoValidDividerFound, OutputFrequencyOutOfRange, \
    ceil_div

from dataclasses import dataclass

__all__ = 'DividerCandidate', 'divider_table', 'max_divider'

@dataclass(frozen=True)
class DividerCandidate:
    ns1_ratio: int
    ns2: int

    @property
    def total_ratio(self) -> int:
        if self.ns2 == 0:
            return self.ns1_ratio
        return self.ns1_ratio * self.ns2 * 2

    def vco(self, freq_out: int) -> int:
        return freq_out * self.total_ratio

def divider_table(freq_out: int, bypass: bool = False) \
        -> list[DividerCandidate]:
    '''Return all the divider combinations that put the VCO in range for the
    given output frequency.'''
    if freq_out <= 0:
        raise OutputFrequencyOutOfRange(
            f'Output frequency {freq_out} Hz must be positive')

    outdiv_min = ceil_div(FVCO_MIN, freq_out)
    outdiv_max = FVCO_MAX // freq_out

    ns1_opts = (NS1_BYPASS,) + NS1_RATIOS if bypass else NS1_RATIOS

    if any(ns1 in (outdiv_min, outdiv_max) for ns1 in ns1_opts):
        # NS1 on its own does it, bypass NS2.
        ns2_min = 0
        ns2_max = 0
    else:
        ns2_min = ceil_div(outdiv_min, max(ns1_opts) * 2)
        # Rounding down may give zero, but NS2 has to be at least one.
        ns2_max = max(1, outdiv_max // min(ns1_opts) // 2)

    result: list[DividerCandidate] = []
    for ns2 in range(ns2_min, ns2_max + 1):
        for ns1 in ns1_opts:
            candidate = DividerCandidate(ns1, ns2)
            if FVCO_MIN <= candidate.vco(freq_out) <= FVCO_MAX:
                result.append(candidate)

    if not result:
        raise NoValidDividerFound(
            f'No output divider puts {freq_out} Hz into the VCO range')
    return result

def max_divider(candidates: list[DividerCandidate]) -> DividerCandidate:
    '''Pick the largest total ratio, giving the highest VCO frequency.  Ties
    go to the first in the table.'''
    assert candidates
    best = candidates[0]
    for c in candidates[1:]:
        if c.total_ratio > best.total_ratio:
            best = c
    return best

def test_148_5() -> None:
    table = divider_table(148_500_000)
    assert table == [DividerCandidate(6, 2), DividerCandidate(4, 3)]
    assert [c.total_ratio for c in table] == [24, 24]
    best = max_divider(table)
    assert best.total_ratio == 24
    assert best.vco(148_500_000) == 3_564_000_000

def test_297() -> None:
    table = divider_table(297_000_000)
    assert [c.total_ratio for c in table] == [12]

def test_low() -> None:
    table = divider_table(8_000)
    best = max_divider(table)
    assert best.total_ratio == 500_000
    assert best.vco(8_000) == FVCO_MAX
    for c in table:
        assert FVCO_MIN <= c.vco(8_000) <= FVCO_MAX

def test_ns2_bypass() -> None:
    # 700MHz needs a total divide of exactly 5.
    table = divider_table(700_000_000)
    assert table == [DividerCandidate(5, 0)]
    assert table[0].total_ratio == 5

def test_ns1_bypass() -> None:
    assert divider_table(3_500_000_000, bypass=True) == \
        [DividerCandidate(1, 0)]
    try:
        divider_table(3_500_000_000)
        assert False, 'Expected NoValidDividerFound'
    except NoValidDividerFound:
        pass

def test_no_divider() -> None:
    try:
        divider_table(1_200_000_000)
        assert False, 'Expected NoValidDividerFound'
    except NoValidDividerFound:
        pass

def test_zero() -> None:
    try:
        divider_table(0)
        assert False, 'Expected OutputFrequencyOutOfRange'
    except OutputFrequencyOutOfRange:
        pass
