'''Ways of getting register writes to the chip.  Nothing here retries; a
failure is raised to the caller as it happens.'''

from .idt8t49n24x import DATA_SIZE

import logging

from smbus2 import SMBus, i2c_msg
from typing import Protocol

log = logging.getLogger(__name__)

class Transport(Protocol):
    def write_register(self, address: int, value: int) -> None: ...
    def read_register(self, address: int) -> int: ...
    def close(self) -> None: ...

class MemoryTransport:
    '''A register image in memory.  Every write is also logged, in order.
    Setting fail_at makes writes to that address raise OSError.'''
    image: bytearray
    writes: list[tuple[int, int]]
    fail_at: int|None

    def __init__(self, image: bytes|None = None, fail_at: int|None = None):
        self.image = bytearray(DATA_SIZE)
        if image is not None:
            self.image[:len(image)] = image
        self.writes = []
        self.fail_at = fail_at

    def write_register(self, address: int, value: int) -> None:
        if address == self.fail_at:
            raise OSError(f'Simulated failure writing {address:#06x}')
        self.image[address] = value
        self.writes.append((address, value))

    def read_register(self, address: int) -> int:
        return self.image[address]

    def close(self) -> None:
        pass

class SMBusTransport:
    '''Direct I2C from Linux.  The chip takes a 16 bit register address,
    high byte first, which is more than the plain SMBus calls do.'''
    bus: SMBus
    address: int

    def __init__(self, bus: int|SMBus, address: int):
        self.bus = bus if isinstance(bus, SMBus) else SMBus(bus)
        self.address = address

    def write_register(self, address: int, value: int) -> None:
        msg = i2c_msg.write(self.address, [address >> 8, address & 0xff, value])
        self.bus.i2c_rdwr(msg)

    def read_register(self, address: int) -> int:
        setup = i2c_msg.write(self.address, [address >> 8, address & 0xff])
        result = i2c_msg.read(self.address, 1)
        self.bus.i2c_rdwr(setup, result)
        return list(result)[0]

    def close(self) -> None:
        self.bus.close()

def test_memory_transport() -> None:
    t = MemoryTransport(fail_at=0x70)
    t.write_register(0x0b, 0x12)
    assert t.read_register(0x0b) == 0x12
    assert t.writes == [(0x0b, 0x12)]
    try:
        t.write_register(0x70, 0x05)
        assert False, 'Expected OSError'
    except OSError:
        pass
    assert t.writes == [(0x0b, 0x12)]

