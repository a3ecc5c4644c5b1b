from __future__ import annotations

from .plan_constants import CAL_DISABLE, CAL_ENABLE
from .plan_tools import check_width

import difflib
import struct

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Tuple

# Registers are big endian, with the most significant byte at the lowest
# address.  Sub-byte fields have a shift and live in a single byte.

@dataclass(frozen=True)
class Register:
    name: str
    address: int
    width: int
    shift: int = 0

    def __str__(self) -> str:
        return self.name

    @property
    def byte_span(self) -> int:
        return (self.shift + self.width + 7) // 8

    def owns_bytes(self) -> bool:
        '''Multi-byte fields are written a whole byte at a time.  Anything
        smaller than a byte shares it with other fields.'''
        return self.width >= 8

    def mask(self) -> int:
        return (1 << self.width) - 1 << self.shift

    def addresses(self) -> range:
        return range(self.address, self.address + self.byte_span)

    def extract(self, bb: bytes|bytearray) -> int:
        b = bytes(bb[self.address : self.address + self.byte_span])
        value = struct.unpack('>Q', (b'\0\0\0\0\0\0\0' + b)[-8:])[0]
        value = value >> self.shift
        value &= (1 << self.width) - 1
        return value

    @staticmethod
    def get(key: str) -> Register:
        key = key.upper().replace('-', '_')
        try:
            return REGISTERS[key]
        except KeyError:
            prompt = ' '.join(difflib.get_close_matches(key, REGISTERS))
            if prompt:
                raise KeyError(f'{key}: did you mean {prompt}?') from None
            raise

@dataclass(frozen=True)
class RegisterWrite:
    address: int
    value: int
    # Bits of value to apply.  Anything other than 0xff needs a
    # read-modify-write.
    mask: int = 0xff

    def __str__(self) -> str:
        if self.mask == 0xff:
            return f'{self.address:#06x} = {self.value:#04x}'
        return f'{self.address:#06x} = {self.value:#04x} mask {self.mask:#04x}'

def _instances(basename: str, addresses: Iterable[Tuple[int, int]],
               width: int) -> list[Register]:
    return [Register(f'{basename}{n}', a, width) for n, a in addresses]

REGISTER_LIST: list[Register] = [
    # Digital PLL state, 0 = run automatically, 1 = force free-run.
    Register('DPLL_STATE', 0x0a, 2),
    Register('REF0_DIS', 0x0a, 1, 4),
    Register('REF1_DIS', 0x0a, 1, 5),
    *_instances('PRE', ((0, 0x0b), (1, 0x0e)), 21),
    *_instances('M1_', ((1, 0x11), (0, 0x14)), 24),
    Register('DSM_INT', 0x25, 9),
    Register('DSM_FRAC', 0x28, 21),
    *_instances('N_Q', ((0, 0x3f), (1, 0x42), (2, 0x45), (3, 0x48)), 18),
    *_instances('NFRAC_Q', ((1, 0x57), (2, 0x5b), (3, 0x5f)), 28),
    # Analog PLL, 1 = synthesizer, 0 = jitter attenuator.
    Register('SYN_MODE', 0x69, 1, 3),
    # DPLL and APLL calibration.
    Register('CAL_CTRL', 0x70, 8),
    *_instances('LOS', ((0, 0x71), (1, 0x74)), 17),
]

REGISTERS: dict[str, Register] = {r.name: r for r in REGISTER_LIST}

DATA_SIZE = 0x200

def validate_registers(registers: Iterable[Register]) -> None:
    '''Check that no two registers share a bit.'''
    used = bytearray(DATA_SIZE)
    for r in registers:
        assert r.address + r.byte_span <= DATA_SIZE, r
        if r.byte_span > 1:
            assert r.shift == 0, r
        mask = struct.pack('>Q', r.mask())[-r.byte_span:]
        for a, m in zip(r.addresses(), mask):
            assert used[a] & m == 0, f'{r} overlaps at {a:#x}'
            used[a] |= m

validate_registers(REGISTER_LIST)

class MaskedBytes:
    data: bytearray
    mask: bytearray
    def __init__(self):
        self.data = bytearray(DATA_SIZE)
        self.mask = bytearray(DATA_SIZE)

    def extract(self, r: Register|str) -> int:
        if isinstance(r, str):
            r = Register.get(r)
        return r.extract(self.data)

    def insert(self, r: Register|str, value: int) -> None:
        if isinstance(r, str):
            r = Register.get(r)
        check_width(r.name, value, r.width)
        data = struct.pack('>Q', value << r.shift)[-r.byte_span:]
        if r.owns_bytes():
            mask = b'\xff' * r.byte_span
        else:
            mask = struct.pack('>Q', r.mask())[-r.byte_span:]
        for i, j in enumerate(r.addresses()):
            self.data[j] = (self.data[j] & ~mask[i]) | (data[i] & mask[i])
            self.mask[j] |= mask[i]

    def apply(self, writes: Iterable[RegisterWrite]) -> None:
        for w in writes:
            a = w.address
            self.data[a] = self.data[a] & ~w.mask | w.value & w.mask
            self.mask[a] |= w.mask

    def writes(self) -> list[RegisterWrite]:
        '''Everything with a mask, in address order.'''
        return [RegisterWrite(a, self.data[a], self.mask[a])
                for a in range(DATA_SIZE) if self.mask[a]]

    def __getattr__(self, key: str) -> int:
        try:
            reg = REGISTERS[key]
        except KeyError:
            raise AttributeError(key)
        return self.extract(reg)

    def __setattr__(self, key: str, value: Any) -> None:
        if key in ('data', 'mask'):
            super().__setattr__(key, value)
            return
        try:
            reg = REGISTERS[key]
        except KeyError:
            raise AttributeError(key)
        self.insert(reg, int(value))

def encode_field(r: Register|str, value: int) -> list[RegisterWrite]:
    '''Encode a single register, most significant byte first.'''
    data = MaskedBytes()
    data.insert(r, value)
    return data.writes()

def mode_writes(synthesizer: bool) -> list[RegisterWrite]:
    data = MaskedBytes()
    if synthesizer:
        # Free-run, with both reference inputs off.
        data.DPLL_STATE = 1
        data.REF0_DIS = 1
        data.REF1_DIS = 1
        data.SYN_MODE = 1
    else:
        # Jitter attenuate from reference input 0.
        data.DPLL_STATE = 0
        data.REF0_DIS = 0
        data.REF1_DIS = 1
        data.SYN_MODE = 0
    return data.writes()

def calibration(enable: bool) -> RegisterWrite:
    return RegisterWrite(REGISTERS['CAL_CTRL'].address,
                         CAL_ENABLE if enable else CAL_DISABLE)

def bracket(writes: list[RegisterWrite]) -> list[RegisterWrite]:
    '''Wrap writes with calibration off and back on again.  Any write to
    the calibration register itself is dropped.'''
    cal = REGISTERS['CAL_CTRL'].address
    return [calibration(False)] \
        + [w for w in writes if w.address != cal] \
        + [calibration(True)]

# Timing Commander configuration for jitter attenuator mode, producing
# 148.5MHz on Q2 and Q3 from a 148.5MHz reference.  Only addresses from
# 0x08 upwards are loaded.
DEFAULT_CONFIG = bytes.fromhex('''
    ff ff ff ff ff fe ef 00 03 00 20 00  04 89 00 00 01 00 63 c6 07 00 00 77
    6d 00 00 00 00 00 00 ff ff ff ff 01  3f 00 28 00 1a cc cd 00 01 00 00 d0
    08 00 00 00 00 00 08 00 00 0c 00 00  00 44 44 00 00 00 00 00 00 00 00 0b
    00 00 0b 00 00 00 00 00 00 00 00 00  00 00 00 00 00 00 00 00 00 00 00 00
    00 00 00 00 00 00 00 00 89 02 2b 20  00 00 00 03 00 00 00 06 00 00 00 00
    00 00 27 00 00 00 00 00 00 00 00 00''')
DEFAULT_CONFIG_START = 0x08

def default_config() -> MaskedBytes:
    data = MaskedBytes()
    for a in range(DEFAULT_CONFIG_START, len(DEFAULT_CONFIG)):
        data.data[a] = DEFAULT_CONFIG[a]
        data.mask[a] = 0xff
    return data

# Route loss of lock onto the GPIO pins.
LOL_GPIO_WRITES = [RegisterWrite(0x30, 0x0f), RegisterWrite(0x34, 0x00),
                   RegisterWrite(0x35, 0x00), RegisterWrite(0x36, 0x0f)]

def read_hex_txt_file(path: str) -> MaskedBytes:
    '''Read a register dump, one "ADDRESS VALUE" pair per line.'''
    result = MaskedBytes()
    with open(path) as f:
        for line in f:
            line = line.split('#', 1)[0].strip()
            if not line:
                continue
            a_str, v_str = line.replace('=', ' ').split()
            address = int(a_str, 0)
            value = int(v_str, 0)
            if not 0 <= address < DATA_SIZE or not 0 <= value <= 0xff:
                raise ValueError(f'Bad register line: {line}')
            result.data[address] = value
            result.mask[address] = 0xff
    return result

def test_layout() -> None:
    r = REGISTERS['PRE0']
    assert r.byte_span == 3 and list(r.addresses()) == [0x0b, 0x0c, 0x0d]
    assert REGISTERS['DSM_INT'].byte_span == 2
    assert REGISTERS['NFRAC_Q2'].byte_span == 4
    assert REGISTERS['N_Q3'].byte_span == 3
    assert REGISTERS['LOS1'].byte_span == 3
    assert REGISTERS['REF1_DIS'].mask() == 0x20

def test_encode_field() -> None:
    assert encode_field('PRE0', 0x1abcde) == [
        RegisterWrite(0x0b, 0x1a), RegisterWrite(0x0c, 0xbc),
        RegisterWrite(0x0d, 0xde)]
    assert encode_field('DSM_INT', 0x123) == [
        RegisterWrite(0x25, 0x01), RegisterWrite(0x26, 0x23)]
    assert encode_field('NFRAC_Q3', 1 << 27) == [
        RegisterWrite(0x5f, 0x08), RegisterWrite(0x60, 0),
        RegisterWrite(0x61, 0), RegisterWrite(0x62, 0)]
    assert encode_field('REF0_DIS', 1) == [RegisterWrite(0x0a, 0x10, 0x10)]

def test_encode_overflow() -> None:
    from .plan_tools import FieldOverflow
    try:
        encode_field('PRE1', 1 << 21)
        assert False, 'Expected FieldOverflow'
    except FieldOverflow as e:
        assert e.field == 'PRE1'

def test_masked_round_trip() -> None:
    data = MaskedBytes()
    data.M1_0 = 28512
    data.LOS1 = 0x1ffff
    data.apply(encode_field('DSM_FRAC', 1153434))
    assert data.M1_0 == 28512
    assert data.LOS1 == 0x1ffff
    assert data.DSM_FRAC == 1153434

def test_mode_writes() -> None:
    assert mode_writes(True) == [
        RegisterWrite(0x0a, 0x31, 0x33), RegisterWrite(0x69, 0x08, 0x08)]
    assert mode_writes(False) == [
        RegisterWrite(0x0a, 0x20, 0x33), RegisterWrite(0x69, 0x00, 0x08)]

def test_bracket() -> None:
    w = bracket([RegisterWrite(0x70, 0x33), RegisterWrite(0x30, 0x0f)])
    assert w == [RegisterWrite(0x70, 0x05), RegisterWrite(0x30, 0x0f),
                 RegisterWrite(0x70, 0x00)]

def test_default_config() -> None:
    assert len(DEFAULT_CONFIG) == 132
    data = default_config()
    assert data.mask[0x07] == 0 and data.mask[0x08] == 0xff
    assert data.DSM_INT == 40
    assert data.DSM_FRAC == 0x1acccd
    assert data.N_Q2 == 0x0b

def test_register_get() -> None:
    assert Register.get('los0') is REGISTERS['LOS0']
    try:
        Register.get('DSM_INTEGER')
        assert False, 'Expected KeyError'
    except KeyError as e:
        assert 'DSM_INT' in str(e)
