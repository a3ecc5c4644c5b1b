#!/usr/bin/python3

from .board import BOARDS, DEFAULT_BOARD, Board, load_board_file
from .device import ClockDevice, RegisterWriteFailed
from .idt8t49n24x import MaskedBytes, REGISTER_LIST, Register, \
    read_hex_txt_file
from .idt8t49n24x_plan import ClockPlanCalculator, report_plan
from .plan_tools import PlanningFailed, str_to_freq
from .transport import MemoryTransport, SMBusTransport, Transport

import argparse
import logging
import sys

from typing import Tuple

def register_lookup(name: str) -> Register:
    try:
        return Register.get(name)
    except KeyError:
        raise ValueError
register_lookup.__name__ = 'register name'

def reg_key_value(s: str) -> Tuple[Register, int]:
    if not '=' in s:
        raise ValueError('Key/value pairs must be in the form KEY=VALUE')
    K, V = s.split('=', 1)
    return register_lookup(K), int(V, 0)
reg_key_value.__name__ = 'register key=value pair'

def get_board(args: argparse.Namespace) -> Board:
    if args.board_file is not None:
        return load_board_file(args.board_file)
    return BOARDS[args.board]

def get_transport(args: argparse.Namespace, board: Board) -> Transport:
    if args.dry_run:
        return MemoryTransport()
    bus = args.i2c if args.i2c is not None else board.i2c_bus
    return SMBusTransport(bus, board.i2c_address)

def print_registers(data: MaskedBytes, registers: list[Register]) -> None:
    for r in registers:
        value = data.extract(r)
        print(f'{r}={value} ({value:#x})')

def do_get(dev: ClockDevice, registers: list[Register]) -> None:
    print_registers(dev.read_image(registers), registers)

def do_dump(dev: ClockDevice, path: str|None) -> None:
    if path is None:
        data = dev.read_image()
    else:
        data = read_hex_txt_file(path)
    print_registers(data, REGISTER_LIST)

def do_set(dev: ClockDevice, key_values: list[Tuple[Register, int]]) -> None:
    data = MaskedBytes()
    for r, v in key_values:
        data.insert(r, v)
    # Sub-byte fields come out as masked writes.
    dev.program(data.writes())

def add_to_argparse(argp: argparse.ArgumentParser,
                    dest: str = 'command', metavar: str = 'COMMAND') -> None:
    argp.add_argument('-v', '--verbose', action='store_true',
                      help='Debug logging')

    boardg = argp.add_mutually_exclusive_group()
    boardg.add_argument('-b', '--board', choices=sorted(BOARDS),
                        default=DEFAULT_BOARD, help='Board preset')
    boardg.add_argument('--board-file', metavar='FILE',
                        help='Board description (INI [board] section)')

    trans = argp.add_mutually_exclusive_group()
    trans.add_argument('-n', '--dry-run', action='store_true',
                       help='Write to an in-memory image only')
    trans.add_argument('--i2c', type=int, metavar='BUS',
                       help='Linux I2C bus number (default from the board)')

    subp = argp.add_subparsers(
        dest=dest, metavar=metavar, required=True, help='Sub-command')

    epilog = '''The frequency can be specified as either a fraction (297/2)
    or a decimal number (148.5), with an optional unit that defaults to MHz.
    It must come to a whole number of Hz.'''
    freq = subp.add_parser(
        'freq', aliases=['frequency'], help='Program/report frequency',
        description='''Program or report the output frequency.  With no
        frequency given, read back the device and report what it is set
        to.''', epilog=epilog)
    freq.add_argument('FREQ', nargs='?', type=str_to_freq,
                      help='Output frequency')
    freq.add_argument('--verify', action='store_true',
                      help='Read back registers after writing')
    plan = subp.add_parser(
        'plan', help='Frequency planning', epilog=epilog,
        description='''Compute and print a frequency plan without programming
        it to the device.''')
    plan.add_argument('FREQ', type=str_to_freq, help='Output frequency')
    plan.add_argument('--regs', action='store_true',
                      help='Print the register writes')
    for p in freq, plan:
        p.add_argument('-r', '--reference', metavar='REF', type=str_to_freq,
                       help='Reference frequency (default from the board)')

    subp.add_parser(
        'init', help='Load default configuration',
        description='''Load the jitter attenuator default configuration and
        route loss of lock to the GPIO pins.''')

    upload = subp.add_parser(
        'upload', help='Upload register file',
        description='''Upload a register file, one ADDRESS VALUE pair per
        line.''')
    upload.add_argument('FILE', help='Name of register file')
    upload.add_argument('--verify', action='store_true',
                        help='Read back registers after writing')

    valget = subp.add_parser(
        'get', help='Get registers', description='Get registers')
    valget.add_argument('KEY', type=register_lookup, nargs='+', help='KEYs')

    dump = subp.add_parser(
        'dump', help='Get all registers', description='Get all registers')
    dump.add_argument('-f', '--file',
                      help='Read register file instead of device')

    valset = subp.add_parser(
        'set', help='Set registers', description='Set registers')
    valset.add_argument('KV', type=reg_key_value, nargs='+',
                        metavar='KEY=VALUE', help='KEY=VALUE pairs')

def run_command(args: argparse.Namespace, board: Board,
                dev: ClockDevice|None, command: str) -> None:
    if command == 'plan':
        calculator = ClockPlanCalculator(board)
        plan = calculator.calculate(
            calculator.request(args.FREQ, args.reference))
        report_plan(plan, verbose=args.regs)
        return

    assert dev is not None
    if command in ('freq', 'frequency'):
        if args.FREQ is not None:
            plan = dev.set_clock(args.FREQ, args.reference, args.verify)
        else:
            plan = dev.read_plan(args.reference)
        report_plan(plan)

    elif command == 'init':
        dev.init()

    elif command == 'upload':
        dev.upload(read_hex_txt_file(args.FILE), args.verify)

    elif command == 'get':
        do_get(dev, args.KEY)

    elif command == 'dump':
        do_dump(dev, args.file)

    elif command == 'set':
        do_set(dev, args.KV)

    else:
        print(args)
        assert None, f'This should never happen: {command}'

def main(argv: list[str]|None = None) -> None:
    argp = argparse.ArgumentParser(description='8T49N24x clock utility')
    add_to_argparse(argp)
    args = argp.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s')

    board = get_board(args)
    try:
        if args.command == 'plan':
            run_command(args, board, None, args.command)
            return
        with ClockDevice(get_transport(args, board), board) as dev:
            run_command(args, board, dev, args.command)
    except (PlanningFailed, RegisterWriteFailed) as e:
        print(f'Error: {e}', file=sys.stderr)
        sys.exit(1)

def test_plan_command(capsys) -> None:
    main(['plan', '148.5', '--regs'])
    out = capsys.readouterr().out
    assert 'Output: 148.5' in out
    assert '0x0070 = 0x05' in out

def test_plan_out_of_range(capsys) -> None:
    try:
        main(['plan', '500'])
        assert False, 'Expected exit'
    except SystemExit as e:
        assert e.code == 1
    assert 'Error:' in capsys.readouterr().err

def test_dry_run_freq(capsys) -> None:
    main(['--dry-run', 'freq', '297MHz', '-r', '40'])
    assert 'Output: 297' in capsys.readouterr().out

def test_set_get(capsys) -> None:
    argp = argparse.ArgumentParser()
    add_to_argparse(argp)
    board = BOARDS[DEFAULT_BOARD]
    t = MemoryTransport()
    dev = ClockDevice(t, board)
    args = argp.parse_args(['set', 'dsm_int=300', 'syn_mode=1'])
    run_command(args, board, dev, args.command)
    assert t.image[0x25:0x27] == b'\x01\x2c'
    assert t.image[0x69] == 0x08
    args = argp.parse_args(['get', 'DSM_INT'])
    run_command(args, board, dev, args.command)
    assert capsys.readouterr().out == 'DSM_INT=300 (0x12c)\n'

def test_freq_read_back_blank(capsys) -> None:
    try:
        main(['--dry-run', 'freq'])
        assert False, 'Expected exit'
    except SystemExit as e:
        assert e.code == 1
    assert 'Error: PRE0 is zero' in capsys.readouterr().err

if __name__ == '__main__':
    main()
