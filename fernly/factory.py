"""Factory test: light the LED, draw the keypad on the LCD and wait for every key."""

from __future__ import annotations

import sys
from array import array

from fernly.protocol import PROMPT, ProtocolError

SCREEN_WIDTH = 240
SCREEN_HEIGHT = 320
KEYS = "LRUDAB123456789*0#"
ALL_KEYS_MASK = 0x3FFFF
BUTTON_RADIUS = 16
BUTTON_COLOR = 0xFFFF
BITMAP_ADDR = 0x40000

_LETTER_BITS = {
    "L": 10,
    "R": 11,
    "U": 12,
    "D": 13,
    "A": 14,
    "B": 15,
    "*": 16,
    "#": 17,
}

_BUTTONS = (
    (64, 32, "A"),
    (192, 32, "B"),
    (128, 64 + 8, "U"),
    (64, 80 + 8, "L"),
    (192, 80 + 8, "R"),
    (128, 96 + 8, "D"),
    (64, 128 + 16, "1"),
    (128, 128 + 16, "2"),
    (196, 128 + 16, "3"),
    (64, 176 + 16, "4"),
    (128, 176 + 16, "5"),
    (196, 176 + 16, "6"),
    (64, 224 + 16, "7"),
    (128, 224 + 16, "8"),
    (196, 224 + 16, "9"),
    (64, 272 + 16, "*"),
    (128, 272 + 16, "0"),
    (196, 272 + 16, "#"),
)


def key_mask(char) -> int:
    """Bit that stands for a key character; 0 for characters that are not keys."""
    if isinstance(char, (bytes, bytearray)):
        char = char.decode("latin-1")
    elif isinstance(char, int):
        char = chr(char)
    if len(char) != 1:
        return 0
    if "0" <= char <= "9":
        return 1 << (ord(char) - ord("0"))
    bit = _LETTER_BITS.get(char)
    return 0 if bit is None else 1 << bit


def new_screen() -> array:
    """A blank 240x320 frame of 16-bit pixels."""
    return array("H", bytes(2 * SCREEN_WIDTH * SCREEN_HEIGHT))


def put_pixel(screen, x: int, y: int, color: int) -> None:
    """Set one pixel, ignoring coordinates off the screen."""
    if x < 0 or y < 0 or x > SCREEN_WIDTH or y > SCREEN_HEIGHT:
        return
    index = y * SCREEN_WIDTH + x
    if index < len(screen):
        screen[index] = color & 0xFFFF


def draw_circle(screen, x: int, y: int, radius: int, color: int) -> None:
    """Draw a circle outline with the midpoint algorithm."""
    a = 1
    b = radius
    p = 4 - radius

    put_pixel(screen, x, y + b, color)
    put_pixel(screen, x, y - b, color)
    put_pixel(screen, x + b, y, color)
    put_pixel(screen, x - b, y, color)
    while True:
        for dx, dy in ((a, b), (a, -b), (b, a), (-b, a), (-a, b), (-a, -b), (b, -a), (-b, -a)):
            put_pixel(screen, x + dx, y + dy, color)
        if p < 0:
            p += 3 + 2 * a
            a += 1
        else:
            p += 5 + 2 * (a - b)
            a += 1
            b -= 1
        if a >= b:
            break
    put_pixel(screen, x + a, y + b, color)
    put_pixel(screen, x + a, y - b, color)
    put_pixel(screen, x - a, y + b, color)
    put_pixel(screen, x - a, y - b, color)


def draw_circle_filled(screen, x: int, y: int, radius: int, color: int) -> None:
    """Fill a disc by drawing every smaller circle."""
    for r in range(radius):
        draw_circle(screen, x, y, r, color)


def draw_button(screen, x: int, y: int, color: int, keymask: int, key) -> None:
    """Draw a key: filled while it is still waited for, an outline once pressed."""
    if keymask & key_mask(key):
        draw_circle_filled(screen, x, y, BUTTON_RADIUS, color)
    else:
        draw_circle(screen, x, y, BUTTON_RADIUS, color)


def render_keypad(keymask: int) -> array:
    """A frame showing every key, filled for those still in ``keymask``."""
    screen = new_screen()
    for x, y, key in _BUTTONS:
        draw_button(screen, x, y, BUTTON_COLOR, keymask, key)
    return screen


def screen_bytes(screen) -> bytes:
    """The frame as little-endian 16-bit pixels, as the LCD expects them."""
    pixels = array("H", screen)
    if sys.byteorder == "big":
        pixels.byteswap()
    return pixels.tobytes()


def _port_of(bootrom):
    return bootrom._port


def _send_command(bootrom, line: str) -> None:
    port = _port_of(bootrom)
    bootrom.wait_banner(PROMPT)
    command = line.encode("ascii")
    port.write(command)
    port.read(len(command))


def _skip_line(port) -> None:
    while True:
        byte = port.read(1)
        if len(byte) != 1 or byte == b"\n":
            return


def _draw_to_screen(bootrom, bitmap: bytes) -> None:
    port = _port_of(bootrom)
    _send_command(bootrom, f"load 0x{BITMAP_ADDR:x} {len(bitmap)}\n")
    port.write(bitmap)
    _send_command(bootrom, "lcd run\n")


def _begin(msg: str) -> None:
    print(f"    {msg}: ", end="", flush=True)


def _ok() -> None:
    print("Ok", flush=True)


def run_factory_test(bootrom) -> None:
    """Run the factory test through the stage 2 shell; raise ProtocolError on failure."""
    port = _port_of(bootrom)
    print()

    _begin("Turn on LED")
    _send_command(bootrom, "led 1\n")
    _ok()

    _begin("Keypad")
    keymask = ALL_KEYS_MASK
    needs_rerun = True
    light_is_on = True
    _draw_to_screen(bootrom, screen_bytes(render_keypad(keymask)))

    while keymask:
        if needs_rerun:
            _send_command(bootrom, "keypad 1\n")
            for _ in range(3):
                _skip_line(port)
            needs_rerun = False

        key = port.read(1)
        if len(key) != 1:
            print("Failed: Unable to read from port", flush=True)
            raise ProtocolError("unable to read from port")

        print(f"\nGot key: {key[0]} ({key.decode('latin-1')})", end="", flush=True)
        keymask &= ~key_mask(key) & ALL_KEYS_MASK
        print(f"Keymask: 0x{keymask:5x}")

        if keymask:
            needs_rerun = True
        else:
            port.write(b"\n")

        _draw_to_screen(bootrom, screen_bytes(render_keypad(keymask)))

        if light_is_on:
            _send_command(bootrom, "led 0\n")
            light_is_on = False

    port.write(b"\n")
    port.read(128)
    _ok()