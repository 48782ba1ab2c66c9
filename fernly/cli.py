"""Command line loader: boots a Fernvale device over its USB serial port."""

from __future__ import annotations

import argparse
import os
import select
import sys
import termios
import time
import tty

import serial

from fernly.bootrom import Bootrom
from fernly.factory import run_factory_test
from fernly.protocol import (
    FERNLY_USB_LOADER_ADDR,
    MTK_CONFIG_OFFSET,
    PROMPT,
    MtkCommand,
    ProtocolError,
    format_hex,
)

BAUDRATE = 115200
READ_TIMEOUT = 10.0

_EPILOG = (
    "If you don't want a stage 2 bootloader, you may omit it, and this program "
    "will jump straight to the payload, loaded at offset "
    f"0x{FERNLY_USB_LOADER_ADDR:08x}.  "
    "The boot shell allows you to interact directly with the stage 2 bootloader.  "
    "If you omit -s, then this program will exit after loading either the stage 2 "
    "bootloader or the payload."
)

_INFO_REGISTERS = (
    ("Getting hardware version", MTK_CONFIG_OFFSET),
    ("Getting chip ID", MTK_CONFIG_OFFSET + 8),
    ("Getting boot config (low)", 0xA0000000 + 0x10),
    ("Getting boot config (high)", 0xA0000000 + 0x14),
    ("Getting hardware subcode", MTK_CONFIG_OFFSET + 12),
    ("Getting hardware version (again)", MTK_CONFIG_OFFSET),
    ("Getting chip firmware version", MTK_CONFIG_OFFSET + 4),
)

_RTC_POWER_UP = 0xA0710000
_PSRAM_MAPPING = 0xA0510000


def _parse_number(text: str) -> int:
    """Parse an unsigned number with C-style base prefixes."""
    value = text.strip().lower()
    negative = value.startswith("-")
    if negative:
        value = value[1:]
    try:
        if value.startswith("0x"):
            number = int(value[2:], 16)
        elif len(value) > 1 and value.startswith("0"):
            number = int(value[1:], 8)
        else:
            number = int(value, 10)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {text!r}") from None
    return (-number if negative else number) & 0xFFFFFFFF


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fernly-usb-loader",
        usage="%(prog)s [-a address] [-l logfile] [-s] [serial port] "
        "[stage 1 bootloader] [[stage 2 bootloader]] [payload]",
        epilog=_EPILOG,
        add_help=False,
    )
    parser.add_argument(
        "-a",
        dest="address",
        type=_parse_number,
        default=FERNLY_USB_LOADER_ADDR,
        help="Set load address for stage 1 bootloader "
        f"(default: 0x{FERNLY_USB_LOADER_ADDR:x})",
    )
    parser.add_argument("-l", dest="log", help="Log boot output to the specified file")
    parser.add_argument("-w", dest="wait", action="store_true", help="Wait for serial port to appear")
    parser.add_argument("-s", dest="shell", action="store_true", help="Enter boot shell")
    parser.add_argument("-t", dest="factory_test", action="store_true", help="Run fernly factory test")
    parser.add_argument("-h", dest="help", action="store_true", help="Print this help")
    parser.add_argument("files", nargs="*", help=argparse.SUPPRESS)
    return parser


def parse_args(argv):
    """Parse the command line into a namespace of options and file names."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    args.port = args.stage1 = args.stage2 = args.payload = None
    if args.help:
        args.usage = parser.format_help()
        return args
    if not 2 <= len(args.files) <= 4:
        parser.error(f"expected 2 to 4 file arguments, got {len(args.files)}")
    names = list(args.files) + [None] * (4 - len(args.files))
    args.port, args.stage1, args.stage2, args.payload = names
    return args


def open_serial(path, wait=False):
    """Open the serial port, retrying every second while ``wait`` is set."""
    if wait:
        print("Waiting for serial port to connect: .", end="", flush=True)
    while True:
        try:
            port = serial.Serial(path)
        except serial.SerialException:
            if not wait:
                raise
            print(".", end="", flush=True)
            time.sleep(1)
            continue
        break
    if wait:
        print()
    return port


def _relay(port, in_fd: int, out_fd: int, log) -> None:
    port_fd = port.fileno()
    while True:
        readable, _, _ = select.select([port_fd, in_fd], [], [])
        if port_fd in readable:
            byte = port.read(1)
            if len(byte) != 1:
                return
            if byte == b"\x7f":
                os.write(out_fd, b" \b")
            else:
                os.write(out_fd, byte)
                if log is not None:
                    log.write(byte)
                    log.flush()
        if in_fd in readable:
            byte = os.read(in_fd, 1)
            if len(byte) != 1 or byte == b"\x03":
                return
            port.write(byte)


def run_shell(bootrom, log_path=None) -> None:
    """Relay the terminal to the device shell until Ctrl-C or end of input."""
    port = bootrom._port
    in_fd = sys.stdin.fileno()
    out_fd = sys.stdout.fileno()
    saved = termios.tcgetattr(in_fd) if os.isatty(in_fd) else None
    log = None
    try:
        if saved is not None:
            tty.setraw(in_fd)
        if log_path:
            try:
                log = open(log_path, "ab")
            except OSError as exc:
                print(f"Warning: could not open logfile: {exc}", file=sys.stderr)
        _relay(port, in_fd, out_fd, log)
    finally:
        if saved is not None:
            termios.tcsetattr(in_fd, termios.TCSANOW, saved)
        if log is not None:
            log.close()


def _begin(msg: str) -> None:
    print(f"{msg}... ", end="", flush=True)


def _end(text: str = "Ok") -> None:
    print(text, flush=True)


def _soft(action, *args) -> None:
    try:
        action(*args)
    except ProtocolError as exc:
        print(f"({exc}) ", end="")
    _end()


def _read_file(path: str, what: str) -> bytes:
    try:
        with open(path, "rb") as handle:
            return handle.read()
    except OSError as exc:
        raise OSError(f"Unable to open {what}: {exc}") from exc


def _echo(data: bytes) -> None:
    sys.stdout.write(data.decode("latin-1"))
    sys.stdout.flush()


def _boot(bootrom: Bootrom, port, args, stage1, stage2, payload) -> int:
    _begin("Setting serial port parameters")
    port.baudrate = BAUDRATE
    port.timeout = READ_TIMEOUT
    _end()

    _begin("Initiating communication")
    bootrom.hello()
    _end()

    for label, addr in _INFO_REGISTERS:
        _begin(label)
        _end(f"0x{bootrom.read_reg16(addr):04x}")

    _begin("Getting security version")
    _end(f"v {bootrom.security_version()}")

    _begin("Enabling security (?!)")
    bootrom.do_security()
    _end()

    _begin("Reading ME")
    print(format_hex(bootrom.read_me()), end="")

    _begin("Disabling WDT")
    _soft(bootrom.write16, 0xA0030000, 0x2200)

    for addr, name in (
        (0xA0710000, "RTC Baseband Power Up"),
        (0xA0710050, "RTC Power Key 1"),
        (0xA0710054, "RTC Power Key 2"),
    ):
        _begin(f"Reading {name} (0x{addr:08x})")
        _end(f"0x{bootrom.read16(addr):04x}")

    for label, addr, value in (
        ("Setting seconds", 0xA0710010, 0),
        ("Disabling alarm IRQs", 0xA0710008, 0),
        ("Disabling RTC IRQ interval", 0xA071000C, 0),
        ("Enabling transfers from core to RTC", 0xA0710074, 1),
    ):
        _begin(label)
        _soft(bootrom.write16, addr, value)

    _begin(f"Reading RTC Baseband Power Up (0x{_RTC_POWER_UP:08x})")
    _end(f"0x{bootrom.read16(_RTC_POWER_UP):04x}")

    _begin("Getting security configuration")
    sec_conf = bootrom.read_sec_conf()
    print(format_hex(sec_conf) if sec_conf else "None.\n", end="")

    _begin("Getting PSRAM mapping")
    _end(f"0x{bootrom.read32(_PSRAM_MAPPING):04x}")

    _begin("Disabling PSRAM -> ROM remapping")
    _soft(bootrom.write32, _PSRAM_MAPPING, 2)
    time.sleep(0.02)

    _begin("Checking PSRAM mapping")
    _end(f"0x{bootrom.read32(_PSRAM_MAPPING):04x}")

    _begin("Checking on PSRAM mapping again")
    _end(f"0x{bootrom.read32(_PSRAM_MAPPING):04x}")

    _begin("Updating PSRAM mapping again for some reason")
    _soft(bootrom.write32, _PSRAM_MAPPING, 2)
    time.sleep(0.05)

    _begin("Reading some fuses")
    bootrom.send_cmd(MtkCommand.GET_SEC_CONF)
    _end(f"0x{bootrom.read_u32():08x}")
    bootrom.read_u16()

    _begin("Enabling UART")
    bootrom.send_cmd(MtkCommand.ENABLE_UART)
    bootrom.send_u32(BAUDRATE)
    status = bootrom.read_u16()
    if status:
        raise ProtocolError(f"enabling UART returned 0x{status:04x}")
    _end(f"0x{status:04x}")

    _begin("Loading Fernly USB loader")
    device, calculated = bootrom.send_data(args.address, stage1)
    if device == calculated:
        print(f"checksum matches 0x{device:04x} ", end="")
    else:
        print(f"device checksum 0x{device:04x}, but we calculated 0x{calculated:04x} ", end="")
    _end()

    _begin("Executing Fernly USB loader")
    bootrom.jump(args.address)
    _end()

    _begin("Waiting for Fernly USB loader banner")
    _echo(bootrom.wait_banner(b">"))
    _end()

    if stage2 is None:
        return 0

    _begin("Writing stage 2")
    print(f"{len(stage2)} bytes... ", end="", flush=True)
    bootrom.write_stage2(stage2)
    print(f"{len(stage2):6d} / {len(stage2):6d} ", end="")
    _end()

    if args.factory_test:
        _begin("Starting factory test")
        run_factory_test(bootrom)
        _end()
        return 0

    if payload is not None:
        _begin("Entering download mode")
        _echo(bootrom.wait_banner(PROMPT))
        _end()

        _begin("Writing payload")
        print(f"{len(payload)} bytes... ", end="", flush=True)
        bootrom.write_stage3(payload)
        print(f"{len(payload):6d} / {len(payload):6d} ", end="")
        _end()

    if args.shell:
        _begin("Start Fernly shell")
        run_shell(bootrom, args.log)
    else:
        _begin("Waiting for ready prompt")
        _echo(bootrom.wait_banner(PROMPT))
        _end()
    return 0


def main(argv=None) -> int:
    """Run the loader; return the process exit status."""
    args = parse_args(sys.argv[1:] if argv is None else argv)
    if args.help:
        print(args.usage)
        return 1

    try:
        port = open_serial(args.port, args.wait)
    except serial.SerialException as exc:
        print(f"Unable to open serial port: {exc}", file=sys.stderr)
        return 1

    try:
        try:
            stage1 = _read_file(args.stage1, "stage 1 bootloader")
            stage2 = _read_file(args.stage2, "firmware file") if args.stage2 else None
            payload = _read_file(args.payload, "payload file") if args.payload else None
        except OSError as exc:
            print(exc, file=sys.stderr)
            return 1
        return _boot(Bootrom(port), port, args, stage1, stage2, payload)
    except (ProtocolError, serial.SerialException, OSError) as exc:
        print(f"Failed: {exc}")
        return 1
    finally:
        port.close()


if __name__ == "__main__":
    sys.exit(main())