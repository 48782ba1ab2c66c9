"""Wire-level constants, file headers and helpers for the MediaTek boot ROM protocol."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

FERNLY_USB_LOADER_ADDR = 0x70009000
MTK_CONFIG_OFFSET = 0x80000000
PROMPT = b"fernly>"

MTK_BANNER = bytes((0xA0, 0x0A, 0x50, 0x05))
MTK_BANNER_RESPONSE = bytes((0x5F, 0xF5, 0xAF, 0xFA))


class MtkCommand(IntEnum):
    """Command bytes understood by the boot ROM."""

    OLD_WRITE16 = 0xA1
    OLD_READ16 = 0xA2
    CHECKSUM16 = 0xA4
    REMAP_BEFORE_JUMP_TO_DA = 0xA7
    JUMP_TO_DA = 0xA8
    SEND_DA = 0xAD
    JUMP_TO_MAUI = 0xB7
    GET_VERSION = 0xB8
    CLOSE_USB_AND_RESET = 0xB9
    NEW_READ16 = 0xD0
    NEW_READ32 = 0xD1
    NEW_WRITE16 = 0xD2
    NEW_WRITE32 = 0xD4
    JUMP = 0xD5
    JUMP_TO_BL = 0xD6
    SEND_DATA = 0xD7
    GET_SEC_CONF = 0xD8
    SEND_BOOTLOADER = 0xD9
    ENABLE_UART = 0xDC
    SEND_CERT = 0xE0
    GET_ME = 0xE1
    SEND_AUTH = 0xE2
    SLA_FLOW = 0xE3
    SEND_ROOT_CERT = 0xE5
    DO_SECURITY = 0xFE
    FIRMWARE_VERSION = 0xFF


class ProtocolError(Exception):
    """Raised when the device or a file does not follow the expected protocol."""


_GFH_FORMAT = struct.Struct("<IHH12sIHBBIIIIIII")


@dataclass
class GfhFileInfo:
    """The "general file header" of type FILE_INFO that leads a bootloader image."""

    magic_ver: int
    size: int
    type: int
    id: bytes
    file_ver: int
    file_type: int
    flash_dev: int
    sig_type: int
    load_addr: int
    file_len: int
    max_size: int
    content_offset: int
    sig_len: int
    jump_offset: int
    attr: int

    HEADER_SIZE = _GFH_FORMAT.size

    @property
    def name(self) -> str:
        """The identifier with its zero padding removed."""
        return self.id.rstrip(b"\0").decode("latin-1")

    def to_bytes(self) -> bytes:
        """Serialise the header in its on-disk layout."""
        return _GFH_FORMAT.pack(
            self.magic_ver,
            self.size,
            self.type,
            self.id,
            self.file_ver,
            self.file_type,
            self.flash_dev,
            self.sig_type,
            self.load_addr,
            self.file_len,
            self.max_size,
            self.content_offset,
            self.sig_len,
            self.jump_offset,
            self.attr,
        )

    def signature(self, image: bytes) -> bytes:
        """Return the trailing signature bytes of ``image``."""
        if self.sig_len > len(image):
            raise ProtocolError(
                f"signature length {self.sig_len} exceeds image size {len(image)}"
            )
        return image[len(image) - self.sig_len:]

    def describe(self) -> list[str]:
        """Human-readable lines describing the header."""
        return [
            f"Id: {self.name}",
            f"Version: {self.file_ver}",
            f"Type: {self.file_type}",
            f"Flash device: {self.flash_dev}",
            f"File size: {self.file_len}",
            f"Max size: {self.max_size}",
            f"Signature type: {self.sig_type}",
            f"Signature length: {self.sig_len}",
            f"Load address: 0x{self.load_addr:08x}",
            f"Content offset: {self.content_offset}",
            f"Jump offset: {self.jump_offset}",
            f"Attributes: {self.attr}",
        ]


def parse_gfh_file_info(data: bytes) -> GfhFileInfo:
    """Parse the FILE_INFO header at the start of a bootloader image."""
    if len(data) < _GFH_FORMAT.size:
        raise ProtocolError(
            f"image of {len(data)} bytes is too short for a file header"
        )
    return GfhFileInfo(*_GFH_FORMAT.unpack_from(data))


def _printable(byte: int) -> str:
    return chr(byte) if 0x20 <= byte < 0x7F else "."


def format_hex(block: bytes, start: int = 0) -> str:
    """Render ``block`` as a hex dump, labelling lines from address ``start``."""
    lines = []
    for offset in range(0, len(block), 16):
        row = block[offset:offset + 16]
        parts = [f"{(start + offset) & 0xFFFFFFFF:08x}"]
        for index in range(16):
            if index == 8:
                parts.append(" ")
            parts.append(f" {row[index]:02x}" if index < len(row) else "   ")
        ascii_text = "".join(_printable(b) for b in row)
        parts.append(f"  |{ascii_text}|\n")
        lines.append("".join(parts))
    return "".join(lines)


def xor_checksum(data: bytes) -> int:
    """XOR of the image taken as little-endian 16-bit words, zero-padded."""
    if len(data) % 2:
        data = bytes(data) + b"\0"
    checksum = 0
    for (word,) in struct.iter_unpack("<H", data):
        checksum ^= word
    return checksum


def swap_byte_pairs(data: bytes) -> bytes:
    """Swap every pair of bytes; a trailing odd byte is kept as is."""
    result = bytearray(data)
    even = len(result) - len(result) % 2
    result[0:even:2], result[1:even:2] = result[1:even:2], result[0:even:2]
    return bytes(result)