'''Board level parameters.  These say how the 8T49N24x is wired up, and
which of its instances get programmed.'''

from .plan_constants import XTAL_FREQ

import configparser
import dataclasses

from dataclasses import dataclass
from typing import Tuple

@dataclass(frozen=True)
class Board:
    name: str
    # Reference used when a request doesn't give one.
    xtal_hz: int = XTAL_FREQ
    # Reference input instances to program.
    inputs: Tuple[int, ...] = (0, 1)
    # Output channels with fractional dividers to program.
    outputs: Tuple[int, ...] = (2, 3)
    # Allow the NS1 divide by 1.
    allow_bypass: bool = False
    # Program synthesizer mode (free-run off the crystal).
    synthesizer: bool = True
    i2c_bus: int = 1
    i2c_address: int = 0x7c

    def validate(self) -> None:
        if not self.inputs or any(i not in (0, 1) for i in self.inputs):
            raise ValueError(f'{self.name}: inputs must be 0 and/or 1')
        if not self.outputs or any(q not in (1, 2, 3) for q in self.outputs):
            raise ValueError(f'{self.name}: outputs must be from 1, 2, 3')
        if not 0 <= self.i2c_address < 0x80:
            raise ValueError(f'{self.name}: bad I2C address')

BOARDS = {
    # The HDMI 2.1 FMC card.  Q2 and Q3 drive the TX TMDS/FRL clock.
    'xfmc': Board('xfmc'),
    'xfmc-q2': Board('xfmc-q2', outputs=(2,)),
}

DEFAULT_BOARD = 'xfmc'

def _int_tuple(s: str) -> Tuple[int, ...]:
    return tuple(int(x, 0) for x in s.replace(',', ' ').split())

def load_board_file(path: str, section: str = 'board') -> Board:
    '''Read a board from an INI file.  A "base" key names the preset that
    supplies anything not given.'''
    config = configparser.ConfigParser()
    if not config.read((path,)):
        raise FileNotFoundError(path)
    return board_from_config(config, section)

def board_from_config(config: configparser.ConfigParser,
                      section: str = 'board') -> Board:
    s = config[section]
    base = BOARDS[s.get('base', DEFAULT_BOARD)]
    changes: dict = {'name': s.get('name', base.name)}
    for key in 'xtal_hz', 'i2c_bus', 'i2c_address':
        if key in s:
            changes[key] = int(s[key], 0)
    for key in 'inputs', 'outputs':
        if key in s:
            changes[key] = _int_tuple(s[key])
    for key in 'allow_bypass', 'synthesizer':
        if key in s:
            changes[key] = s.getboolean(key)
    board = dataclasses.replace(base, **changes)
    board.validate()
    return board

def test_presets() -> None:
    for b in BOARDS.values():
        b.validate()
    assert BOARDS['xfmc'].xtal_hz == 40_000_000
    assert BOARDS['xfmc'].outputs == (2, 3)

def test_board_config() -> None:
    config = configparser.ConfigParser()
    config.read_string('''
[board]
name = custom
xtal_hz = 50000000
outputs = 1, 3
allow_bypass = yes
i2c_address = 0x6c
''')
    b = board_from_config(config)
    assert b == Board('custom', xtal_hz=50_000_000, outputs=(1, 3),
                      allow_bypass=True, i2c_address=0x6c)

def test_board_invalid() -> None:
    config = configparser.ConfigParser()
    config.read_string('[board]\noutputs = 0\n')
    try:
        board_from_config(config)
        assert False, 'Expected ValueError'
    except ValueError:
        pass
