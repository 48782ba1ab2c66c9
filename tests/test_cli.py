import os
from unittest import mock

import pytest
import serial

from fernly.bootrom import Bootrom
from fernly.cli import main, open_serial, parse_args, run_shell
from fernly.protocol import FERNLY_USB_LOADER_ADDR


class FakePort:
    def __init__(self, replies=b""):
        self.replies = bytearray(replies)
        self.sent = bytearray()
        self.closed = False

    def read(self, count):
        data = bytes(self.replies[:count])
        del self.replies[:count]
        return data

    def write(self, data):
        self.sent += data
        return len(data)

    def flush(self):
        pass

    def close(self):
        self.closed = True


class PipePort:
    def __init__(self, fd):
        self.fd = fd
        self.sent = bytearray()

    def fileno(self):
        return self.fd

    def read(self, count):
        return os.read(self.fd, count)

    def write(self, data):
        self.sent += data
        return len(data)


class FdStream:
    def __init__(self, fd):
        self.fd = fd

    def fileno(self):
        return self.fd


def test_parse_args_defaults():
    args = parse_args(["/dev/ttyACM0", "loader.bin"])
    assert args.port == "/dev/ttyACM0"
    assert args.stage1 == "loader.bin"
    assert args.stage2 is None
    assert args.payload is None
    assert args.address == FERNLY_USB_LOADER_ADDR
    assert (args.shell, args.wait, args.factory_test) == (False, False, False)


def test_parse_args_all_options():
    args = parse_args(
        ["-s", "-w", "-t", "-l", "boot.log", "-a", "0x1000", "p", "s1", "s2", "pl"]
    )
    assert args.address == 0x1000
    assert args.log == "boot.log"
    assert (args.shell, args.wait, args.factory_test) == (True, True, True)
    assert (args.stage2, args.payload) == ("s2", "pl")


def test_parse_args_octal_address():
    assert parse_args(["-a", "010", "p", "s1"]).address == 8


@pytest.mark.parametrize(
    "argv",
    [["only-port"], ["p", "a", "b", "c", "d"], ["-a", "zz", "p", "s1"]],
)
def test_parse_args_rejects_bad_command_lines(argv):
    with pytest.raises(SystemExit):
        parse_args(argv)


def test_help_returns_one(capsys):
    assert main(["-h"]) == 1
    assert "usage:" in capsys.readouterr().out


def test_open_serial_fails_without_wait():
    with mock.patch("serial.Serial", side_effect=serial.SerialException("gone")):
        with pytest.raises(serial.SerialException):
            open_serial("/dev/none", False)


def test_open_serial_waits_for_port(capsys):
    port = FakePort()
    with mock.patch(
        "serial.Serial", side_effect=[serial.SerialException("gone"), port]
    ), mock.patch("time.sleep") as sleep:
        assert open_serial("/dev/none", True) is port
    assert sleep.call_count == 1
    assert capsys.readouterr().out.count(".") == 2


def test_main_reports_unopenable_port():
    with mock.patch("serial.Serial", side_effect=serial.SerialException("gone")):
        assert main(["/dev/none", "loader.bin"]) == 1


def test_main_reports_missing_stage1(tmp_path):
    port = FakePort()
    with mock.patch("serial.Serial", return_value=port):
        assert main(["/dev/none", str(tmp_path / "missing.bin")]) == 1
    assert port.closed


def test_main_fails_on_bad_banner(tmp_path, capsys):
    stage1 = tmp_path / "loader.bin"
    stage1.write_bytes(b"\x00" * 16)
    port = FakePort(b"\x00")
    with mock.patch("serial.Serial", return_value=port):
        assert main(["/dev/none", str(stage1)]) == 1
    assert port.sent == b"\xa0"
    assert port.closed
    assert "Failed" in capsys.readouterr().out


def test_run_shell_relays_device_output(tmp_path):
    dev_r, dev_w = os.pipe()
    in_r, in_w = os.pipe()
    out_r, out_w = os.pipe()
    os.write(dev_w, b"hi\x7f")
    os.close(dev_w)
    log_path = tmp_path / "shell.log"
    try:
        with mock.patch("sys.stdin", FdStream(in_r)), mock.patch(
            "sys.stdout", FdStream(out_w)
        ):
            run_shell(Bootrom(PipePort(dev_r)), str(log_path))
        assert os.read(out_r, 100) == b"hi \b"
        assert log_path.read_bytes() == b"hi"
    finally:
        for fd in (dev_r, in_r, in_w, out_r, out_w):
            os.close(fd)


def test_run_shell_forwards_input_until_ctrl_c():
    dev_r, dev_w = os.pipe()
    in_r, in_w = os.pipe()
    out_r, out_w = os.pipe()
    os.write(in_w, b"ab\x03cd")
    port = PipePort(dev_r)
    try:
        with mock.patch("sys.stdin", FdStream(in_r)), mock.patch(
            "sys.stdout", FdStream(out_w)
        ):
            run_shell(Bootrom(port), None)
        assert bytes(port.sent) == b"ab"
    finally:
        for fd in (dev_r, dev_w, in_r, in_w, out_r, out_w):
            os.close(fd)