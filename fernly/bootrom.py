"""Conversation with the MediaTek boot ROM and the Fernly stage loaders over a serial port."""

from __future__ import annotations

import logging
import struct

from fernly.protocol import (
    MTK_BANNER,
    MTK_BANNER_RESPONSE,
    MtkCommand,
    ProtocolError,
    format_hex,
    parse_gfh_file_info,
    swap_byte_pairs,
    xor_checksum,
)

log = logging.getLogger(__name__)

_SIGNATURE_LEN = 2
_SUSPECT_LOAD_RANGE = range(0x70000000, 0x70006598)


class Bootrom:
    """Drives the boot ROM protocol over a port with ``read``, ``write`` and ``flush``."""

    def __init__(self, port):
        self._port = port

    def _write(self, data: bytes) -> None:
        data = bytes(data)
        written = self._port.write(data)
        if written is not None and written != len(data):
            raise ProtocolError(
                f"wanted to write {len(data)} bytes, but wrote {written}"
            )

    def _read(self, count: int) -> bytes:
        data = bytes(self._port.read(count))
        if len(data) != count:
            raise ProtocolError(f"wanted to read {count} bytes, but read {len(data)}")
        return data

    def txrx(self, data: bytes) -> None:
        """Send ``data`` and check that the device echoes it back unchanged."""
        data = bytes(data)
        self._write(data)
        response = self._read(len(data))
        if response != data:
            raise ProtocolError(
                "response differs from command: "
                f"expected {data.hex(' ')}, received {response.hex(' ')}"
            )

    def send_cmd(self, cmd: int) -> None:
        """Send a single command byte and check its echo."""
        self.txrx(bytes((cmd & 0xFF,)))

    def send_u16(self, value: int) -> None:
        """Send a big-endian 16-bit word and check its echo."""
        self.txrx(struct.pack(">H", value & 0xFFFF))

    def send_u32(self, value: int) -> None:
        """Send a big-endian 32-bit word and check its echo."""
        self.txrx(struct.pack(">I", value & 0xFFFFFFFF))

    def read_u8(self) -> int:
        """Read one byte."""
        return self._read(1)[0]

    def read_u16(self) -> int:
        """Read a big-endian 16-bit word."""
        return struct.unpack(">H", self._read(2))[0]

    def read_u32(self) -> int:
        """Read a big-endian 32-bit word."""
        return struct.unpack(">I", self._read(4))[0]

    def hello(self) -> None:
        """Exchange the start-up banner with the boot ROM."""
        for index, (sent, wanted) in enumerate(zip(MTK_BANNER, MTK_BANNER_RESPONSE)):
            self._write(bytes((sent,)))
            got = self._read(1)[0]
            if got != wanted:
                raise ProtocolError(
                    f"invalid banner response for character {index}: "
                    f"0x{got:02x} (wanted 0x{wanted:02x})"
                )

    def security_version(self) -> int:
        """Ask the boot ROM for its security version byte."""
        self._write(bytes((MtkCommand.FIRMWARE_VERSION,)))
        return self._read(1)[0]

    def do_security(self) -> None:
        """Send the security command."""
        self.send_cmd(MtkCommand.DO_SECURITY)

    def _read_sized_block(self, cmd: MtkCommand) -> bytes:
        self.send_cmd(cmd)
        size = self.read_u32()
        data = self._read(size)
        self.read_u16()
        return data

    def read_me(self) -> bytes:
        """Return the ME block reported by the boot ROM."""
        return self._read_sized_block(MtkCommand.GET_ME)

    def read_sec_conf(self) -> bytes:
        """Return the security configuration block, empty if there is none."""
        return self._read_sized_block(MtkCommand.GET_SEC_CONF)

    def memory_read(self, addr: int, count: int) -> bytes:
        """Read ``count`` bytes starting at ``addr`` with the 16-bit read command."""
        self.send_cmd(MtkCommand.OLD_READ16)
        self.send_u32(addr)
        self.send_u32(count // 2)
        return swap_byte_pairs(self._read(count))

    def memory_write(self, addr: int, data: bytes) -> None:
        """Write ``data`` at ``addr`` with the 16-bit write command.

        Data goes out in groups of four bytes, each group reversed; a
        trailing group shorter than four bytes is not sent.
        """
        data = bytes(data)
        if len(data) % 2:
            data += b"\0"
        self.send_cmd(MtkCommand.OLD_WRITE16)
        self.send_u32(addr)
        self.send_u32(len(data) // 2)
        for offset in range(0, len(data) - 3, 4):
            group = data[offset:offset + 4]
            self.txrx(bytes((group[3], group[2])))
            self.txrx(bytes((group[1], group[0])))

    def write_reg16(self, addr: int, value: int) -> None:
        """Write a 16-bit register with the old write command."""
        self.send_cmd(MtkCommand.OLD_WRITE16)
        self.send_u32(addr)
        self.send_u32(1)
        self.send_u16(value)

    def write_reg32(self, addr: int, value: int) -> None:
        """Write a 32-bit register as two 16-bit words, high word first."""
        self.send_cmd(MtkCommand.OLD_WRITE16)
        self.send_u32(addr)
        self.send_u32(2)
        self.send_u16(value >> 16)
        self.send_u16(value)

    def read_reg16(self, addr: int) -> int:
        """Read a 16-bit register with the old read command."""
        return int.from_bytes(self.memory_read(addr, 2), "little")

    def read_reg32(self, addr: int) -> int:
        """Read a 32-bit register with the old read command."""
        return int.from_bytes(self.memory_read(addr, 4), "little")

    def _expect_status(self, what: str, wanted: int) -> None:
        status = self.read_u16()
        if status != wanted:
            log.warning("response %s was not %d, was 0x%04x", what, wanted, status)

    def read16(self, addr: int) -> int:
        """Read a 16-bit value with the newer read command."""
        self.send_cmd(MtkCommand.NEW_READ16)
        self.send_u32(addr)
        self.send_u32(1)
        self._expect_status("read16 (1)", 0)
        value = self.read_u16()
        self._expect_status("read16 (3)", 0)
        return value

    def read32(self, addr: int) -> int:
        """Read a 32-bit value with the newer read command."""
        self.send_cmd(MtkCommand.NEW_READ32)
        self.send_u32(addr)
        self.send_u32(1)
        self._expect_status("read32 (1)", 0)
        value = self.read_u32()
        self._expect_status("read32 (3)", 0)
        return value

    def _new_write(self, cmd: MtkCommand, name: str, addr: int, send_value) -> None:
        self.send_cmd(cmd)
        self.send_u32(addr)
        self.send_u32(1)
        failures = []
        status = self.read_u16()
        if status != 1:
            failures.append(f"response {name} (1) was not 1, was 0x{status:04x}")
        send_value()
        status = self.read_u16()
        if status != 1:
            failures.append(f"response {name} (2) was not 1, was 0x{status:04x}")
        if failures:
            raise ProtocolError("; ".join(failures))

    def write16(self, addr: int, value: int) -> None:
        """Write a 16-bit value with the newer write command."""
        self._new_write(
            MtkCommand.NEW_WRITE16, "write16", addr, lambda: self.send_u16(value)
        )

    def write32(self, addr: int, value: int) -> None:
        """Write a 32-bit value with the newer write command."""
        self._new_write(
            MtkCommand.NEW_WRITE32, "write32", addr, lambda: self.send_u32(value)
        )

    def send_data(self, addr: int, data: bytes) -> tuple[int, int]:
        """Upload ``data`` to ``addr``; return the device and computed checksums."""
        if not data:
            raise ProtocolError("cannot send an empty image")
        if addr in _SUSPECT_LOAD_RANGE:
            log.warning("address 0x%08x is probably invalid", addr)

        payload = bytearray(data)
        self.send_cmd(MtkCommand.SEND_DATA)
        self.send_u32(addr)
        self.send_u32(len(payload))
        self.send_u32(_SIGNATURE_LEN)

        response = self.read_u16()
        if response != 0:
            log.warning("first response is 0x%04x, not 0", response)

        payload[-1] ^= 0xFF
        self._write(payload)

        device = self.read_u16()
        calculated = xor_checksum(payload)
        if device != calculated:
            log.warning(
                "device checksum 0x%04x, but we calculated 0x%04x", device, calculated
            )

        response = self.read_u16()
        if response != 0:
            log.warning("final response is 0x%04x, not 0", response)
        return device, calculated

    def jump(self, addr: int) -> None:
        """Tell the boot ROM to jump to ``addr``."""
        self.send_cmd(MtkCommand.JUMP)
        self.send_u32(addr)
        status = self.read_u16()
        if status:
            raise ProtocolError(f"error while jumping: 0x{status:04x}")

    def send_bootloader(self, addr: int, stack: int, unk: int, data: bytes) -> tuple[int, int]:
        """Upload a bootloader image; return the device and computed checksums."""
        data = bytes(data)
        info = parse_gfh_file_info(data)
        for line in info.describe():
            log.info("%s", line)
        log.info("Hash:\n%s", format_hex(info.signature(data)))

        failures = []
        self.send_cmd(MtkCommand.SEND_BOOTLOADER)
        self.send_u32(addr)
        self.send_u32(len(data))
        self.send_u32(stack)
        self.send_u32(unk)
        status = self.read_u16()
        if status != 0:
            failures.append(f"response 0xd9 (1) was not 0, was 0x{status:04x}")

        self._write(data)
        calculated = xor_checksum(data)
        device = self.read_u16()
        if device != calculated:
            log.warning(
                "checksum differs: received 0x%04x, calculated 0x%04x",
                device,
                calculated,
            )

        status = self.read_u16()
        if status != 0:
            failures.append(f"response 0xd9 (2) was not 0, was 0x{status:04x}")
        status = self.read_u32()
        if status != 0:
            failures.append(f"response 0xd9 (4) was not 0, was 0x{status:08x}")
        if failures:
            raise ProtocolError("; ".join(failures))
        return device, calculated

    def wait_banner(self, banner: bytes) -> bytes:
        """Read until ``banner`` arrives; return everything read, banner included."""
        banner = bytes(banner)
        self._port.flush()
        received = bytearray()
        while True:
            byte = self._port.read(1)
            if len(byte) != 1:
                raise ProtocolError(
                    f"timed out waiting for banner {banner!r}"
                )
            received += byte
            if received.endswith(banner):
                return bytes(received)

    def write_stage2(self, data: bytes) -> None:
        """Send a stage 2 image: its length as a little-endian word, then its bytes."""
        data = bytes(data)
        self._write(struct.pack("<I", len(data)))
        self._write(data)
        self._port.flush()

    def write_stage3(self, data: bytes) -> None:
        """Send a payload through the stage 2 shell's ``loadjmp`` command."""
        data = bytes(data)
        command = f"loadjmp 0 {len(data)}\n".encode("ascii")
        self._write(command)
        self._port.read(len(command))
        self._write(data)
        self._port.flush()