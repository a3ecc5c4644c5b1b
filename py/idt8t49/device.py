from .board import BOARDS, DEFAULT_BOARD, Board
from .idt8t49n24x import LOL_GPIO_WRITES, MaskedBytes, REGISTER_LIST, \
    Register, RegisterWrite, bracket, default_config
from .idt8t49n24x_plan import ClockPlan, ClockPlanCalculator, reverse_plan
from .plan_tools import freq_to_str
from .transport import MemoryTransport, Transport

import logging
import threading

from collections.abc import Iterable

log = logging.getLogger(__name__)

class RegisterWriteFailed(RuntimeError):
    address: int
    def __init__(self, address: int):
        super().__init__(f'Register write to {address:#06x} failed')
        self.address = address

class ClockDevice:
    '''One physical 8T49N24x.  All programming of the chip goes through
    here, and each sequence is issued start to finish under the lock.  The
    first write that fails stops the sequence; later writes are not
    attempted.'''
    transport: Transport
    board: Board
    calculator: ClockPlanCalculator
    lock: threading.Lock

    def __init__(self, transport: Transport, board: Board|None = None):
        self.transport = transport
        self.board = board if board is not None else BOARDS[DEFAULT_BOARD]
        self.calculator = ClockPlanCalculator(self.board)
        self.lock = threading.Lock()

    def __enter__(self) -> 'ClockDevice':
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        self.transport.close()

    def _write(self, w: RegisterWrite) -> None:
        try:
            value = w.value
            if w.mask != 0xff:
                old = self.transport.read_register(w.address)
                value = old & ~w.mask | w.value & w.mask
            log.debug('Write %s', w)
            self.transport.write_register(w.address, value)
        except OSError as e:
            log.error('Write %s failed: %s', w, e)
            raise RegisterWriteFailed(w.address) from e

    def _verify(self, writes: list[RegisterWrite]) -> int:
        bad = 0
        for w in writes:
            got = self.transport.read_register(w.address)
            if got & w.mask != w.value & w.mask:
                log.warning('Readback %#06x = %#04x, expected %s',
                            w.address, got, w)
                bad += 1
        return bad

    def _program(self, writes: Iterable[RegisterWrite],
                 verify: bool = False) -> int:
        writes = list(writes)
        for w in writes:
            self._write(w)
        log.info('Programmed %d registers', len(writes))
        return self._verify(writes) if verify else 0

    def program(self, writes: Iterable[RegisterWrite],
                verify: bool = False) -> int:
        '''Issue writes in order.  Returns the number of readback mismatches
        when verifying, otherwise zero.'''
        with self.lock:
            return self._program(writes, verify)

    def set_clock(self, target_hz: int, reference_hz: int|None = None,
                  verify: bool = False) -> ClockPlan:
        with self.lock:
            request = self.calculator.request(target_hz, reference_hz)
            plan = self.calculator.calculate(request)
            self._program(plan.writes, verify)
        log.info('Output set to %s', freq_to_str(plan.freq()))
        return plan

    def init(self) -> None:
        '''Load the jitter attenuator defaults and route loss of lock to the
        GPIO pins.'''
        with self.lock:
            self._program(bracket(default_config().writes()))
            self._program(LOL_GPIO_WRITES)

    def upload(self, image: MaskedBytes, verify: bool = False) -> int:
        return self.program(bracket(image.writes()), verify)

    def read_image(self, registers: Iterable[Register|str|int]|None = None
                   ) -> MaskedBytes:
        if registers is None:
            registers = REGISTER_LIST
        addresses: set[int] = set()
        for r in registers:
            if isinstance(r, int):
                addresses.add(r)
            else:
                if isinstance(r, str):
                    r = Register.get(r)
                addresses.update(r.addresses())
        data = MaskedBytes()
        with self.lock:
            for a in sorted(addresses):
                data.data[a] = self.transport.read_register(a)
                data.mask[a] = 0xff
        return data

    def read_plan(self, reference_hz: int|None = None) -> ClockPlan:
        return reverse_plan(self.read_image(), self.board, reference_hz)

def test_program_order() -> None:
    t = MemoryTransport()
    dev = ClockDevice(t)
    plan = dev.set_clock(148_500_000)
    assert [(w.address, w.value) for w in plan.writes] == t.writes
    assert t.writes[0] == (0x70, 0x05)
    assert t.writes[-1] == (0x70, 0x00)

def test_masked_write() -> None:
    image = bytearray(0x100)
    image[0x0a] = 0xcc
    t = MemoryTransport(image)
    ClockDevice(t).program([RegisterWrite(0x0a, 0x31, 0x33)])
    assert t.writes == [(0x0a, 0xfd)]

def test_first_failure_aborts() -> None:
    t = MemoryTransport(fail_at=0x0b)
    dev = ClockDevice(t)
    try:
        dev.set_clock(148_500_000)
        assert False, 'Expected RegisterWriteFailed'
    except RegisterWriteFailed as e:
        assert e.address == 0x0b
        assert isinstance(e.__cause__, OSError)
    # Calibration off and the mode registers, then nothing.
    assert [a for a, v in t.writes] == [0x70, 0x0a, 0x69]

def test_verify() -> None:
    class Stuck(MemoryTransport):
        def read_register(self, address: int) -> int:
            return 0 if address == 0x2a else self.image[address]
    dev = ClockDevice(Stuck())
    assert dev.program([RegisterWrite(0x29, 1), RegisterWrite(0x2a, 1)],
                       verify=True) == 1

def test_concurrent_set_clock() -> None:
    class Slow(MemoryTransport):
        def write_register(self, address: int, value: int) -> None:
            # Give other threads a chance to get in.
            threading.Event().wait(0.0001)
            super().write_register(address, value)
    t = Slow()
    dev = ClockDevice(t)
    freqs = [148_500_000, 297_000_000, 100_000_000, 156_250_000]
    threads = [threading.Thread(target=dev.set_clock, args=(f,))
               for f in freqs]
    for th in threads:
        th.start()
    for th in threads:
        th.join()
    n = len(dev.calculator.calculate(dev.calculator.request(freqs[0])).writes)
    assert len(t.writes) == n * len(freqs)
    for i in range(0, len(t.writes), n):
        block = [a for a, v in t.writes[i : i + n]]
        assert t.writes[i] == (0x70, 0x05)
        assert t.writes[i + n - 1] == (0x70, 0x00)
        assert 0x70 not in block[1:-1]

def test_init() -> None:
    from .idt8t49n24x import DEFAULT_CONFIG
    t = MemoryTransport()
    ClockDevice(t).init()
    assert t.writes[0] == (0x70, 0x05)
    assert t.writes[-5] == (0x70, 0x00)
    assert t.writes[-4:] == [(0x30, 0x0f), (0x34, 0), (0x35, 0), (0x36, 0x0f)]
    assert t.image[0x0b:0x0e] == DEFAULT_CONFIG[0x0b:0x0e]
    assert t.image[0x08] == DEFAULT_CONFIG[0x08]
    assert t.image[0x07] == 0

def test_read_plan() -> None:
    t = MemoryTransport()
    dev = ClockDevice(t)
    plan = dev.set_clock(148_500_000)
    back = dev.read_plan()
    assert back.settings == plan.settings
    assert back.freq() == plan.freq()

def test_read_plan_after_init() -> None:
    # The defaults are jitter attenuator mode from input 0, with input 1
    # left unprogrammed.
    dev = ClockDevice(MemoryTransport())
    dev.init()
    back = dev.read_plan()
    assert back.settings.feedback.pre_divider == 1161
    assert back.settings.outdiv.total_ratio() == 22
    assert abs(back.freq() - 148_500_000) < 1

def test_read_plan_blank() -> None:
    from .plan_tools import UnusableDeviceSettings
    try:
        ClockDevice(MemoryTransport()).read_plan()
        assert False, 'Expected UnusableDeviceSettings'
    except UnusableDeviceSettings:
        pass
