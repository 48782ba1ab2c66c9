import pytest

from fernly.bootrom import Bootrom
from fernly.factory import (
    ALL_KEYS_MASK,
    KEYS,
    SCREEN_WIDTH,
    draw_button,
    draw_circle,
    draw_circle_filled,
    key_mask,
    new_screen,
    put_pixel,
    render_keypad,
    run_factory_test,
    screen_bytes,
)
from fernly.protocol import PROMPT, ProtocolError


def pixel(screen, x, y):
    return screen[y * SCREEN_WIDTH + x]


def test_key_mask_digits_and_letters():
    assert key_mask("0") == 1
    assert key_mask("L") == 1 << 10
    assert key_mask(ord("#")) == 1 << 17
    assert key_mask(b"B") == key_mask("B")


def test_key_mask_unknown_is_zero():
    assert key_mask("x") == 0
    assert key_mask("\n") == 0


def test_all_keys_cover_mask_with_distinct_bits():
    combined = 0
    for key in KEYS:
        bit = key_mask(key)
        assert bit & combined == 0
        combined |= bit
    assert combined == ALL_KEYS_MASK


def test_new_screen_is_blank():
    screen = new_screen()
    assert len(screen_bytes(screen)) == 2 * len(screen)
    assert not any(screen)


def test_put_pixel_sets_and_ignores_offscreen():
    screen = new_screen()
    put_pixel(screen, 3, 2, 0xABCD)
    assert pixel(screen, 3, 2) == 0xABCD
    before = screen_bytes(screen)
    put_pixel(screen, 241, 0, 1)
    put_pixel(screen, -1, 5, 1)
    put_pixel(screen, 5, 321, 1)
    assert screen_bytes(screen) == before


def test_draw_circle_is_symmetric_and_hollow():
    screen = new_screen()
    draw_circle(screen, 100, 100, 16, 1)
    assert pixel(screen, 100, 116) == 1
    assert pixel(screen, 116, 100) == 1
    assert pixel(screen, 100, 100) == 0
    lit = {(i % SCREEN_WIDTH, i // SCREEN_WIDTH) for i, v in enumerate(screen) if v}
    for x, y in lit:
        assert (200 - x, y) in lit
        assert (x, 200 - y) in lit


def test_filled_circle_contains_outline_centre():
    screen = new_screen()
    draw_circle_filled(screen, 50, 60, 16, 7)
    assert pixel(screen, 50, 60) == 7
    assert pixel(screen, 50, 70) == 7


def test_draw_button_fills_only_pending_keys():
    pending = new_screen()
    draw_button(pending, 64, 32, 0xFFFF, key_mask("A"), "A")
    pressed = new_screen()
    draw_button(pressed, 64, 32, 0xFFFF, 0, "A")
    assert pixel(pending, 64, 32) == 0xFFFF
    assert pixel(pressed, 64, 32) == 0
    assert pixel(pressed, 64, 48) == 0xFFFF


def test_render_keypad_shows_pending_keys():
    full = render_keypad(ALL_KEYS_MASK)
    empty = render_keypad(0)
    assert pixel(full, 64, 32) == 0xFFFF
    assert pixel(empty, 64, 32) == 0
    assert sum(1 for v in full if v) > sum(1 for v in empty if v)


def test_screen_bytes_little_endian():
    screen = new_screen()
    screen[0] = 0x1234
    assert screen_bytes(screen)[:2] == b"\x34\x12"


class FakeShell:
    """Behaves like the stage 2 shell as far as the factory test needs."""

    def __init__(self, keys):
        self.keys = list(keys)
        self.rx = bytearray(PROMPT)
        self.written = []
        self.bitmaps = []
        self._bitmap = bytearray()
        self._bitmap_left = 0

    def flush(self):
        pass

    def read(self, count):
        data = bytes(self.rx[:count])
        del self.rx[:count]
        return data

    def write(self, data):
        data = bytes(data)
        if self._bitmap_left:
            self._bitmap += data
            self._bitmap_left -= len(data)
            if self._bitmap_left <= 0:
                self.bitmaps.append(bytes(self._bitmap))
                self._bitmap = bytearray()
                self.rx += PROMPT
            return len(data)
        self.written.append(data)
        self.rx += data
        if data.startswith(b"load "):
            self._bitmap_left = int(data.split()[2])
        elif data == b"keypad 1\n":
            self.rx += b"\nPress # on keypad\n\n"
            if self.keys:
                self.rx += self.keys.pop(0).encode() + b"\n" + PROMPT
        else:
            self.rx += PROMPT
        return len(data)


def test_factory_test_runs_through_all_keys():
    shell = FakeShell(KEYS)
    run_factory_test(Bootrom(shell))
    assert len(shell.bitmaps) == len(KEYS) + 1
    assert shell.bitmaps[0] == screen_bytes(render_keypad(ALL_KEYS_MASK))
    assert shell.bitmaps[-1] == screen_bytes(render_keypad(0))
    assert shell.written[0] == b"led 1\n"
    assert shell.written.count(b"led 0\n") == 1
    size = len(screen_bytes(new_screen()))
    assert f"load 0x40000 {size}\n".encode() in shell.written


def test_factory_test_ignores_unknown_keys():
    shell = FakeShell("x" + KEYS)
    run_factory_test(Bootrom(shell))
    assert len(shell.bitmaps) == len(KEYS) + 2
    assert shell.bitmaps[1] == shell.bitmaps[0]


def test_factory_test_fails_when_keys_stop():
    shell = FakeShell("LR")
    with pytest.raises(ProtocolError):
        run_factory_test(Bootrom(shell))
    assert shell.written.count(b"keypad 1\n") == 3