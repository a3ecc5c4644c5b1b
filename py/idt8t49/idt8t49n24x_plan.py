'''Frequency planning for the 8T49N24x, and conversion of plans to and from
register settings.'''

from __future__ import annotations

from .board import BOARDS, DEFAULT_BOARD, Board
from .idt8t49n24x import MaskedBytes, REGISTERS, RegisterWrite, bracket, \
    encode_field, mode_writes
from .plan_constants import *
from .plan_dividers import DividerCandidate, divider_table, max_divider
from .plan_feedback import FeedbackSolution, feedback_solve, p_min
from .plan_fraction import DsmSplit, OutputDivSplit, dsm_split, los_divider, \
    output_div_split
from .plan_tools import InputFrequencyOutOfRange, \
    OutputFrequencyOutOfRange, PlanningFailed, UnusableDeviceSettings, \
    fraction_to_str, freq_to_str

import enum
import logging

from collections.abc import Iterable
from dataclasses import dataclass
from fractions import Fraction

__all__ = 'ClockRequest', 'ClockPlanSettings', 'ClockPlan', 'Stage', \
    'ClockPlanCalculator', 'plan', 'freq_program', 'decode_settings'

log = logging.getLogger(__name__)

@dataclass(frozen=True)
class ClockRequest:
    reference_hz: int
    target_hz: int

    def validate(self) -> None:
        if not FIN_MIN <= self.reference_hz <= FIN_MAX:
            raise InputFrequencyOutOfRange(
                f'Reference {freq_to_str(self.reference_hz)} is outside '
                f'{freq_to_str(FIN_MIN)} to {freq_to_str(FIN_MAX)}')
        if not FOUT_MIN <= self.target_hz <= FOUT_MAX:
            raise OutputFrequencyOutOfRange(
                f'Output {freq_to_str(self.target_hz)} is outside '
                f'{freq_to_str(FOUT_MIN)} to {freq_to_str(FOUT_MAX)}')

@dataclass(frozen=True)
class ClockPlanSettings:
    feedback: FeedbackSolution
    dsm: DsmSplit
    outdiv: OutputDivSplit
    los_divider: int

@dataclass(frozen=True)
class ClockPlan:
    request: ClockRequest
    # Output divider chosen from the table.
    divider: DividerCandidate
    # Target VCO frequency.
    vco: int
    settings: ClockPlanSettings
    # The upper loop runs from the crystal, not the reference.
    xtal_hz: int
    # The register program, in the order it must be written.
    writes: tuple[RegisterWrite, ...]

    def vco_actual(self) -> Fraction:
        return 2 * self.xtal_hz * self.settings.dsm.value()

    def freq(self) -> Fraction:
        return self.vco_actual() / self.settings.outdiv.total_ratio()

    def error(self) -> Fraction:
        return self.freq() - self.request.target_hz

class Stage(enum.Enum):
    VALIDATE_INPUT = enum.auto()
    BUILD_DIVIDER_TABLE = enum.auto()
    SELECT_MAX_DIVIDER = enum.auto()
    SOLVE_FEEDBACK = enum.auto()
    COMPUTE_DSM_AND_OUTPUT_FRACTION = enum.auto()
    COMPUTE_LOS = enum.auto()
    ENCODE = enum.auto()
    DONE = enum.auto()
    ERROR = enum.auto()

class ClockPlanCalculator:
    '''Turn a ClockRequest into a ClockPlan for a board.  Each calculation
    runs through the stages once, in order.  Nothing is shared between
    calculations, so one calculator may be used from several threads.'''
    board: Board

    def __init__(self, board: Board|None = None):
        self.board = board if board is not None else BOARDS[DEFAULT_BOARD]

    def request(self, target_hz: int,
                reference_hz: int|None = None) -> ClockRequest:
        if reference_hz is None:
            reference_hz = self.board.xtal_hz
        return ClockRequest(reference_hz=reference_hz, target_hz=target_hz)

    def calculate(self, request: ClockRequest) -> ClockPlan:
        stage = Stage.VALIDATE_INPUT
        try:
            log.debug('%s: %s', stage.name, request)
            request.validate()

            stage = Stage.BUILD_DIVIDER_TABLE
            candidates = divider_table(request.target_hz,
                                       self.board.allow_bypass)
            log.debug('%s: %s', stage.name,
                      [c.total_ratio for c in candidates])

            stage = Stage.SELECT_MAX_DIVIDER
            divider = max_divider(candidates)
            vco = divider.vco(request.target_hz)
            assert FVCO_MIN <= vco <= FVCO_MAX
            log.debug('%s: %s vco %d', stage.name, divider, vco)

            stage = Stage.SOLVE_FEEDBACK
            feedback = feedback_solve(vco, request.reference_hz)
            log.debug('%s: %s', stage.name, feedback)

            stage = Stage.COMPUTE_DSM_AND_OUTPUT_FRACTION
            dsm = dsm_split(vco, self.board.xtal_hz)
            outdiv = output_div_split(divider.total_ratio)
            log.debug('%s: %s %s', stage.name, dsm, outdiv)

            stage = Stage.COMPUTE_LOS
            los = los_divider(vco, request.reference_hz)
            log.debug('%s: %d', stage.name, los)

            stage = Stage.ENCODE
            settings = ClockPlanSettings(feedback, dsm, outdiv, los)
            writes = freq_program(settings, self.board)
            log.debug('%s: %d writes', stage.name, len(writes))

        except PlanningFailed as e:
            log.debug('%s: %s failed: %s', Stage.ERROR.name, stage.name, e)
            e.stage = stage
            raise

        log.debug('%s: %s', Stage.DONE.name, freq_to_str(request.target_hz))
        return ClockPlan(request, divider, vco, settings, self.board.xtal_hz,
                         tuple(writes))

def plan(request: ClockRequest, board: Board|None = None) -> ClockPlan:
    return ClockPlanCalculator(board).calculate(request)

def freq_program(settings: ClockPlanSettings,
                 board: Board) -> list[RegisterWrite]:
    '''The complete register program for a plan, bracketed by disabling and
    re-enabling calibration.'''
    writes: list[RegisterWrite] = []
    def add(name: str, value: int) -> None:
        writes.extend(encode_field(REGISTERS[name], value))

    writes.extend(mode_writes(board.synthesizer))
    for i in board.inputs:
        add(f'PRE{i}', settings.feedback.pre_divider)
    for i in board.inputs:
        add(f'M1_{i}', settings.feedback.feedback_mult)
    add('DSM_INT', settings.dsm.integer)
    add('DSM_FRAC', settings.dsm.fraction)
    for q in board.outputs:
        add(f'N_Q{q}', settings.outdiv.integer)
    for q in board.outputs:
        add(f'NFRAC_Q{q}', settings.outdiv.fraction)
    for i in board.inputs:
        add(f'LOS{i}', settings.los_divider)
    return bracket(writes)

def input_in_use(data: MaskedBytes, board: Board) -> int:
    '''The reference input that the DPLL follows.  In synthesizer mode both
    are disabled, and we program the same settings into each.'''
    for i in board.inputs:
        if not data.extract(f'REF{i}_DIS'):
            return i
    return board.inputs[0]

def decode_settings(data: MaskedBytes|Iterable[RegisterWrite],
                    board: Board) -> ClockPlanSettings:
    '''Recover the settings from a register image or program.  Only the
    input in use and the board's first output are decoded.'''
    if not isinstance(data, MaskedBytes):
        image = MaskedBytes()
        image.apply(data)
        data = image
    i = input_in_use(data, board)
    q = board.outputs[0]
    feedback = FeedbackSolution(data.extract(f'PRE{i}'),
                                data.extract(f'M1_{i}'))
    dsm = DsmSplit(data.DSM_INT, data.DSM_FRAC)
    outdiv = OutputDivSplit(data.extract(f'N_Q{q}'),
                            data.extract(f'NFRAC_Q{q}'))
    if feedback.pre_divider == 0:
        raise UnusableDeviceSettings(f'PRE{i} is zero')
    if outdiv.integer == 0:
        raise UnusableDeviceSettings(f'N_Q{q} is zero')
    if outdiv.fraction not in (0, 1 << NFRAC_BITS - 1):
        raise UnusableDeviceSettings(
            f'NFRAC_Q{q} = {outdiv.fraction:#x} is not an integer divide')
    return ClockPlanSettings(feedback, dsm, outdiv, data.extract(f'LOS{i}'))

def reverse_plan(data: MaskedBytes, board: Board,
                 reference_hz: int|None = None) -> ClockPlan:
    '''Rebuild a plan from a device read-back.  The target is taken to be
    whatever the settings actually produce.'''
    if reference_hz is None:
        reference_hz = board.xtal_hz
    settings = decode_settings(data, board)
    total_ratio = settings.outdiv.total_ratio()
    vco = 2 * board.xtal_hz * settings.dsm.value()
    freq = vco / total_ratio
    request = ClockRequest(reference_hz, round(freq))
    # Report the divider as though it was NS2 bypassed.
    divider = DividerCandidate(total_ratio, 0)
    return ClockPlan(request, divider, round(vco), settings, board.xtal_hz, ())

def report_plan(plan: ClockPlan, verbose: bool = False) -> None:
    request = plan.request
    settings = plan.settings
    ref = freq_to_str(request.reference_hz)
    f = plan.freq()
    print(f'Output: {freq_to_str(f)} = VCO / {settings.outdiv.total_ratio()}',
          end='')
    if f != request.target_hz:
        print(f' error {freq_to_str(f - request.target_hz, 4)}', end='')
    print()
    print(f'VCO: {freq_to_str(plan.vco_actual())} = '
          f'{freq_to_str(plan.xtal_hz)} * 2 * '
          f'{fraction_to_str(settings.dsm.value())}')
    if plan.vco_actual() != plan.vco:
        print(f'    target {freq_to_str(plan.vco)}, '
              f'error {freq_to_str(plan.vco_actual() - plan.vco, 4)}')
    fb = settings.feedback
    feedback = f'Feedback: {ref} / {fb.pre_divider} * {fb.feedback_mult}'
    # Read-backs have no error to report.
    if plan.writes:
        feedback += f' error {fb.error_ppm} ppm'
    print(feedback)
    print(f'LOS: {settings.los_divider}')

    if verbose:
        print()
        for w in plan.writes:
            print(w)

def test_148_5() -> None:
    request = ClockRequest(40_000_000, 148_500_000)
    p = plan(request)
    assert p.divider.total_ratio == 24
    assert p.vco == 3_564_000_000
    assert p.settings == ClockPlanSettings(
        FeedbackSolution(320, 28512), DsmSplit(44, 1153434),
        OutputDivSplit(12, 0), 14)
    assert p.settings.feedback.error_ppm == 0
    assert abs(p.error()) < 1

def test_program_layout() -> None:
    p = plan(ClockRequest(40_000_000, 148_500_000))
    w = p.writes
    assert w[0] == RegisterWrite(0x70, 0x05)
    assert w[-1] == RegisterWrite(0x70, 0x00)
    assert all(x.address != 0x70 for x in w[1:-1])
    # Mode first, then PRE0 = 320 = 0x000140.
    assert w[1] == RegisterWrite(0x0a, 0x31, 0x33)
    assert w[2] == RegisterWrite(0x69, 0x08, 0x08)
    assert w[3:6] == (RegisterWrite(0x0b, 0x00), RegisterWrite(0x0c, 0x01),
                      RegisterWrite(0x0d, 0x40))
    # No address is written twice.
    addresses = [x.address for x in w[1:-1]]
    assert len(addresses) == len(set(addresses))
    # Two of each 3 byte PRE, M1, N_Q, LOS; DSM 2 + 3; two 4 byte NFRAC.
    assert len(w) == 2 + 2 + 4 * 2 * 3 + 5 + 2 * 4

def test_idempotent() -> None:
    request = ClockRequest(40_000_000, 74_250_000)
    assert plan(request).writes == plan(request).writes

def test_round_trip() -> None:
    board = BOARDS[DEFAULT_BOARD]
    for target in 8_000, 13_500_000, 27_000_000, 74_250_000, 148_500_000, \
            297_000_000, 400_000_000:
        p = plan(ClockRequest(40_000_000, target), board)
        assert decode_settings(p.writes, board) == p.settings

def test_vco_range() -> None:
    for target in 8_000, 13_500_000, 25_000_000, 27_000_000, 74_250_000, \
            148_500_000, 297_000_000, 400_000_000:
        p = plan(ClockRequest(40_000_000, target))
        assert FVCO_MIN <= p.vco <= FVCO_MAX
        assert p.vco == target * p.divider.total_ratio
        fb = p.settings.feedback
        assert fb.feedback_mult < M_MAX
        assert 313 <= fb.pre_divider <= P_MAX

def test_out_of_range() -> None:
    for target in 0, 7_999, 400_000_001:
        try:
            plan(ClockRequest(40_000_000, target))
            assert False, 'Expected OutputFrequencyOutOfRange'
        except OutputFrequencyOutOfRange as e:
            assert e.stage == Stage.VALIDATE_INPUT
    for reference in 7_999, 875_000_001:
        try:
            plan(ClockRequest(reference, 148_500_000))
            assert False, 'Expected InputFrequencyOutOfRange'
        except InputFrequencyOutOfRange as e:
            assert e.stage == Stage.VALIDATE_INPUT

def test_low_reference() -> None:
    # The upper loop runs from the crystal, so a low reference only affects
    # the pre-divider, feedback multiplier and LOS.
    p = plan(ClockRequest(1_000_000, 148_500_001))
    assert p.settings.dsm == DsmSplit(44, 1153434)
    assert p.settings.feedback.pre_divider >= 8
    assert p.settings.los_divider == 448
    assert abs(p.error()) < 1

def test_reference_sweep() -> None:
    board = BOARDS[DEFAULT_BOARD]
    for reference in FIN_MIN, 1_000_000, 27_000_000, 40_000_000, \
            874_999_999, FIN_MAX:
        for target in FOUT_MIN, 13_500_000, 148_500_001, FOUT_MAX:
            p = plan(ClockRequest(reference, target), board)
            assert FVCO_MIN <= p.vco <= FVCO_MAX
            fb = p.settings.feedback
            assert p_min(reference) <= fb.pre_divider < 1 << 21
            assert fb.feedback_mult < M_MAX
            assert decode_settings(p.writes, board) == p.settings

def test_decode_unusable() -> None:
    board = BOARDS[DEFAULT_BOARD]
    try:
        reverse_plan(MaskedBytes(), board)
        assert False, 'Expected UnusableDeviceSettings'
    except UnusableDeviceSettings:
        pass
    data = MaskedBytes()
    data.apply(plan(ClockRequest(40_000_000, 148_500_000)).writes)
    data.NFRAC_Q2 = 1234
    try:
        decode_settings(data, board)
        assert False, 'Expected UnusableDeviceSettings'
    except UnusableDeviceSettings as e:
        assert 'NFRAC_Q2' in str(e)

def test_decode_input_in_use() -> None:
    # Jitter attenuator mode follows input 0; input 1 is left alone.
    board = BOARDS[DEFAULT_BOARD]
    data = MaskedBytes()
    data.apply(plan(ClockRequest(40_000_000, 148_500_000)).writes)
    data.REF0_DIS = 0
    data.PRE1 = 1
    assert input_in_use(data, board) == 0
    assert decode_settings(data, board).feedback.pre_divider == 320
    data.REF0_DIS = 1
    data.REF1_DIS = 0
    assert input_in_use(data, board) == 1
    assert decode_settings(data, board).feedback.pre_divider == 1

def test_single_output_board() -> None:
    board = BOARDS['xfmc-q2']
    p = plan(ClockRequest(40_000_000, 148_500_000), board)
    assert not any(w.address in range(0x48, 0x4b) for w in p.writes)
    assert not any(w.address in range(0x5f, 0x63) for w in p.writes)
    assert decode_settings(p.writes, board) == p.settings

def test_reverse_plan() -> None:
    board = BOARDS[DEFAULT_BOARD]
    p = plan(ClockRequest(40_000_000, 297_000_000), board)
    data = MaskedBytes()
    data.apply(p.writes)
    r = reverse_plan(data, board)
    assert r.settings == p.settings
    assert r.freq() == p.freq()
    assert abs(r.request.target_hz - 297_000_000) <= 2
    assert r.settings.outdiv.total_ratio() == 12

def test_report(capsys) -> None:
    p = plan(ClockRequest(40_000_000, 148_500_000))
    report_plan(p, verbose=True)
    out = capsys.readouterr().out
    assert 'Output: 148.5' in out
    assert ' = VCO / 24 error ' in out
    assert '40 MHz / 320 * 28512' in out
    assert '0x0070 = 0x05' in out

def test_report_read_back(capsys) -> None:
    board = BOARDS[DEFAULT_BOARD]
    data = MaskedBytes()
    data.apply(plan(ClockRequest(40_000_000, 148_500_000)).writes)
    report_plan(reverse_plan(data, board))
    lines = capsys.readouterr().out.splitlines()
    assert 'Feedback: 40 MHz / 320 * 28512' in lines
