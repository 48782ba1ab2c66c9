# fernly

This is a host-side loader for boards built around the MT6260 family of chips.
It speaks the chip's USB boot ROM protocol over a serial port. It uploads a
stage 1 loader and starts it. It can then send a stage 2 bootloader and a
payload, and can drop you into an interactive shell on the device.

## Installation

```
pip install .
```

The loader needs a POSIX system, because the shell uses `termios`, `tty` and
`select`.

## Usage

```
fernly-usb-loader [-a address] [-l logfile] [-w] [-s] [-t] \
    SERIAL_PORT STAGE1 [STAGE2] [PAYLOAD]
```

Options:

- `-a ADDRESS` sets the load address for the stage 1 loader. The default is
  `0x70009000`. Decimal, `0x` hex and leading-`0` octal are accepted.
- `-l LOGFILE` appends everything the device prints in the shell to this file.
- `-w` makes the loader wait for the serial port to appear, retrying every
  second, instead of failing at once.
- `-s` enters an interactive shell on the device after loading. Press Ctrl-C,
  or end the input, to leave it.
- `-t` runs the factory test. The loader lights the LED and draws the keypad
  on the LCD. Keys that are still waited for are drawn filled. The test ends
  when every key has been pressed.
- `-h` prints help.

Before uploading, the loader does the following:

1. Greets the boot ROM.
2. Prints the hardware version, chip ID, boot config and security information.
3. Disables the watchdog.
4. Programs the RTC.
5. Turns off PSRAM-to-ROM remapping.
6. Enables the UART.

Then it sends the stage 1 image with `send_data` and jumps to it.

If you leave out the stage 2 image, the loader exits as soon as stage 1 prints
its `>` banner. If you give stage 2, it is sent as its length (a little-endian
32-bit word) followed by its bytes. If you also give a payload, the loader waits
for the `fernly>` prompt and sends the payload with `loadjmp 0 SIZE`. Without
`-s`, the loader waits for the `fernly>` prompt and exits.

The exit status is 0 on success and 1 on any error. Errors include a port or
file that cannot be opened and a protocol failure.

Example:

```
fernly-usb-loader -s /dev/fernvale build/usb-loader.bin build/firmware.bin
```

## Library use

- `fernly.bootrom.Bootrom` wraps any object with `read`, `write` and `flush`,
  such as an open `serial.Serial`. It offers these methods:
  - `hello`, `security_version` and `do_security`.
  - `read_me` and `read_sec_conf`.
  - `memory_read` and `memory_write`.
  - `read_reg16`, `read_reg32`, `write_reg16` and `write_reg32`.
  - `read16`, `read32`, `write16` and `write32`.
  - `send_data`, `send_bootloader` and `jump`.
  - `wait_banner`, `write_stage2` and `write_stage3`.

  Protocol failures, such as a wrong echo, a short read or a bad status word,
  raise `fernly.protocol.ProtocolError`.
- `fernly.protocol` defines `MtkCommand`, the boot ROM's command bytes. It also
  provides these helpers:
  - `parse_gfh_file_info` parses the header at the start of a bootloader image
    into a `GfhFileInfo`.
  - `xor_checksum` computes the checksum the ROM reports.
  - `format_hex` formats a hex dump.
  - `swap_byte_pairs` swaps each pair of bytes.
- `fernly.factory` draws the keypad test screen. `render_keypad` gives a
  240×320 frame of 16-bit pixels and `screen_bytes` serialises it. The module
  also provides `key_mask`, the drawing primitives, and `run_factory_test`.

## What it does not do

This package has only the host-side tools. It does not include the device-side
images (the stage 1 loader, the stage 2 shell, or any payload); you supply those
as files. It does not reset the board for you either. Power-cycle or reset the
device into its boot ROM before running the loader.

## Running the tests

```
pip install .[test]
pytest
```