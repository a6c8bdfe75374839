#!/usr/bin/env python3
"""
pic32_hid_flasher.py — PIC32 USB-HID Bootloader Flash Tool
============================================================

Host-side flash tool for the Microchip Harmony bootloader (AN1388 framing)
running on PIC32MX / PIC32MZ parts, reachable over USB HID or a UART.

Takes an Intel-HEX image, erases the application region, streams every hex
record to the bootloader as a PROGRAM command, then re-reads a device-side
CRC16 for each contiguous flash region and compares it with the CRC computed
locally. Only a fully verified image is ever allowed to boot; any failure
erases the device again so no half-written application is left armed.

Target Hardware:
    MCU:      PIC32MX250F128B (default window), any Harmony bootloader part
    Link:     USB HID 64-byte reports (VID 0x04D8 / PID 0x003F) or UART
    Flash:    Application window $9D008000-$9D01FFFF (KSEG0 addresses)

Architecture:
    Single-file module with a CLI backend.
    CRC16 engine → frame codec → transaction manager → programming state
    machine, with pluggable transports (HID / pyserial / loopback).
    Virtual bootloader transport for offline testing with real hex files.

Wire format:
    SOH [DLE-stuffed opcode + payload + crc_lo + crc_hi] EOT
    SOH=0x01  EOT=0x04  DLE=0x10

WARNING:
    An interrupted flash leaves the device erased, never half-programmed.
    Keep the bootloader entry method (button / jumper) reachable.

Requires: Python 3.9+, pyserial, rich
Optional: hid (+ the hidapi shared library) for the USB transport

MIT License

Copyright (c) 2026 The pic32-hid-flasher authors

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
"""




# ═══════════════════════════════════════════════════════════════════════
# SECTION 0 — IMPORTS & GLOBALS
# ═══════════════════════════════════════════════════════════════════════

from __future__ import annotations

import sys
import time
import string
import struct
import logging
import argparse
import threading
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, field
from enum import IntEnum, Enum, auto
from typing import Optional, Callable, List, Tuple, Dict, Iterable, Iterator, Union
from concurrent.futures import Future

import serial
import serial.tools.list_ports
from rich.logging import RichHandler

# USB HID is optional (needs the hidapi shared library at import time)
try:
    import hid
    HID_AVAILABLE = True
except ImportError:
    HID_AVAILABLE = False

# ── Version & Metadata ──
__version__ = "0.1.0"
__app_name__ = "PIC32 HID Flasher"
__target__ = "Microchip Harmony bootloader (USB HID / UART)"

LOGGER_NAME = "pic32_hid_flasher"
LOG_DIR = Path(__file__).resolve().parent / "logs"


def setup_logging(
    name: str = LOGGER_NAME,
    level: int = logging.DEBUG,
    console_level: int = logging.WARNING,
    log_dir: Optional[Path] = None,
    rich_console: bool = True,
) -> logging.Logger:
    """
    Configure and return a logger.

    Args:
        name:          Logger name and log-file prefix.
        level:         Logger level (DEBUG captures every TX/RX frame to file).
        console_level: Level for console output (WARNING+ by default,
                       DEBUG when the CLI runs with --verbose).
        log_dir:       Override log directory (default: logs/ next to this file).
        rich_console:  Use Rich handler for the console.

    Returns:
        Configured ``logging.Logger`` instance.

    Log files: ``<log_dir>/<name>_YYYYMMDD_HHMMSS.log``
    """
    log_dir = log_dir or LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(level)

    # ── File handler: captures everything (DEBUG+) ──
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"{name}_{ts}.log"
    file_fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(name)s | %(funcName)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(file_fmt)
    logger.addHandler(fh)

    # ── Console handler ──
    if rich_console:
        ch = RichHandler(
            level=console_level,
            show_time=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )
    else:
        ch = logging.StreamHandler(sys.stderr)
        ch.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S",
        ))
    ch.setLevel(console_level)
    logger.addHandler(ch)

    logger.info("=" * 60)
    logger.info("Logger initialized: %s", name)
    logger.info("Log file: %s", log_file)
    logger.info("Console level: %s", logging.getLevelName(console_level))
    logger.info("=" * 60)

    return logger

# Named but unconfigured; setup_logging() attaches handlers when the CLI runs.
log = logging.getLogger(LOGGER_NAME)


def hexdump(data: bytes) -> str:
    """Format bytes as spaced upper-case hex."""
    return bytes(data).hex(" ").upper()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 1 — CONSTANTS & PROTOCOL DEFINITIONS
# ═══════════════════════════════════════════════════════════════════════

class ControlChar(IntEnum):
    """Link-layer control characters."""
    SOH = 0x01   # start of frame
    EOT = 0x04   # end of frame
    DLE = 0x10   # escape: next byte is literal data

class Command(IntEnum):
    """Bootloader command opcodes (first byte of every frame payload)."""
    VERSION = 0x01
    ERASE = 0x02
    PROGRAM = 0x03
    READ = 0x04
    APPLICATION = 0x05

class RecordType(IntEnum):
    """Intel-HEX record types."""
    DATA = 0x00
    EOF = 0x01
    EXT_SEGMENT_ADDRESS = 0x02
    START_SEGMENT_ADDRESS = 0x03
    EXT_LINEAR_ADDRESS = 0x04
    START_LINEAR_ADDRESS = 0x05

CONTROL_BYTES = frozenset(int(c) for c in ControlChar)

# Minimum response payload per command (after opcode, before CRC)
RESPONSE_LENGTHS: Dict[Command, int] = {
    Command.VERSION: 2,       # minor, major
    Command.ERASE: 0,
    Command.PROGRAM: 0,
    Command.READ: 2,          # crc_lo, crc_hi
    Command.APPLICATION: 0,   # device resets, never answers
}

# Physical → KSEG0 (cached virtual) address offset used by READ
KSEG0_OFFSET = 0x80000000

# PIC32MX250F128B application window (linker script / system_config.h)
DEFAULT_APP_FLASH_BASE = 0x9D008000
DEFAULT_APP_FLASH_END = 0x9D01FFFF

# USB identifiers of the Harmony HID bootloader
DEFAULT_VENDOR_ID = 0x04D8
DEFAULT_PRODUCT_ID = 0x003F

# Default comm settings
HID_REPORT_SIZE = 64
DEFAULT_BAUD = 115200
DEFAULT_TICK_MS = 100
READ_POLL_MS = 50
CLI_DEFAULT_TIMEOUT_MS = 10000
NO_TIMEOUT = -1
ERASED_BYTE = 0xFF


# ═══════════════════════════════════════════════════════════════════════
# SECTION 2 — ERRORS
# ═══════════════════════════════════════════════════════════════════════

class BootloaderError(Exception):
    """Base class for every failure raised by this module."""

class TransportError(BootloaderError):
    """Raised when the transport fails to open, send, or close."""

class FrameError(BootloaderError):
    """Link-layer decode failure. Logged and dropped, never fatal by itself."""

class MalformedFrame(FrameError):
    """Unescaped SOH mid-frame, unknown opcode, or a short payload."""

class TruncatedFrame(FrameError):
    """Input ended before an unescaped EOT."""

class CrcMismatch(FrameError):
    """Frame CRC does not match its content."""

    def __init__(self, received: int, expected: int):
        super().__init__(f"frame CRC 0x{received:04X} != computed 0x{expected:04X}")
        self.received = received
        self.expected = expected

class CommandTimeout(BootloaderError):
    """No matching response arrived within the command's timeout."""

    def __init__(self, command: int, timeout_ms: int):
        super().__init__(f"{_command_name(command)} timed out after {timeout_ms} ms")
        self.command = command
        self.timeout_ms = timeout_ms

class CommandPending(BootloaderError):
    """A command with the same opcode is still waiting for its response."""

class SessionClosed(BootloaderError):
    """The session was closed while the command was outstanding."""

class OperationCancelled(BootloaderError):
    """The operator cancelled the running operation."""

class ParseFailure(BootloaderError):
    """Malformed Intel-HEX input."""

    def __init__(self, line_no: int, reason: str):
        super().__init__(f"line {line_no}: {reason}" if line_no else reason)
        self.line_no = line_no
        self.reason = reason

class VerificationMismatch(BootloaderError):
    """Device-computed flash CRC differs from the CRC of the hex data."""

    def __init__(self, group: "FlashGroup", device_crc: int, local_crc: int):
        super().__init__(
            f"CRC check failed for ${group.address:08X} (+{group.length} bytes, "
            f"from line {group.line_no}): device 0x{device_crc:04X}, "
            f"expected 0x{local_crc:04X}"
        )
        self.group = group
        self.device_crc = device_crc
        self.local_crc = local_crc

class EraseRecoveryError(BootloaderError):
    """The operation failed and the recovery erase failed as well."""

    def __init__(self, original: BaseException, erase_error: BaseException):
        super().__init__(f"{original}; recovery erase also failed: {erase_error}")
        self.original = original
        self.erase_error = erase_error


def _command_name(opcode: int) -> str:
    try:
        return Command(opcode).name
    except ValueError:
        return f"0x{opcode:02X}"


# ═══════════════════════════════════════════════════════════════════════
# SECTION 3 — CRC16 ENGINE
# ═══════════════════════════════════════════════════════════════════════

# Remainders of 0x1021 for every nibble value
CRC16_TABLE = (
    0x0000, 0x1021, 0x2042, 0x3063, 0x4084, 0x50A5, 0x60C6, 0x70E7,
    0x8108, 0x9129, 0xA14A, 0xB16B, 0xC18C, 0xD1AD, 0xE1CE, 0xF1EF,
)


def crc16(data: Iterable[int]) -> int:
    """
    Nibble-wise CRC16 (poly 0x1021, init 0), as computed by the bootloader.

    High nibble first, then low nibble, for each byte. Numerically identical
    to CRC-16/XMODEM. Used for frame integrity and for the flash READ check.
    """
    crc = 0
    for byte in data:
        i = (crc >> 12) ^ (byte >> 4)
        crc = (CRC16_TABLE[i & 0x0F] ^ (crc << 4)) & 0xFFFF
        i = (crc >> 12) ^ (byte & 0x0F)
        crc = (CRC16_TABLE[i & 0x0F] ^ (crc << 4)) & 0xFFFF
    return crc


def crc16_hex(text: str) -> int:
    """CRC16 of a hex string such as the data field of a hex record."""
    return crc16(bytes.fromhex(text))


# ═══════════════════════════════════════════════════════════════════════
# SECTION 4 — FRAME CODEC
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Response:
    """A decoded, CRC-verified response frame."""
    command: Command
    payload: bytes = b""

    @property
    def version(self) -> Tuple[int, int]:
        """(major, minor). The device sends minor first."""
        return self.payload[1], self.payload[0]

    @property
    def crc(self) -> int:
        """Flash CRC reported by a READ response."""
        return self.payload[0] | (self.payload[1] << 8)


class FrameCodec:
    """
    Frame building, byte stuffing and CRC validation.

    All frames: SOH [stuffed: opcode, payload..., crc_lo, crc_hi] EOT
    Any stuffed byte equal to SOH, EOT or DLE is preceded by DLE.
    The CRC covers opcode + payload, never the control characters.
    """

    @staticmethod
    def stuff(data: bytes) -> bytearray:
        """Escape every control byte in *data* with a DLE prefix."""
        out = bytearray()
        for b in data:
            if b in CONTROL_BYTES:
                out.append(ControlChar.DLE)
            out.append(b)
        return out

    @staticmethod
    def build(data: bytes, crc: int) -> bytes:
        """Frame *data* with an explicit CRC value."""
        frame = bytearray([ControlChar.SOH])
        frame += FrameCodec.stuff(data)
        frame += FrameCodec.stuff(bytes([crc & 0xFF, (crc >> 8) & 0xFF]))
        frame.append(ControlChar.EOT)
        return bytes(frame)

    @staticmethod
    def encode(command_and_payload: bytes) -> bytes:
        """Frame an opcode + payload for the wire."""
        data = bytes(command_and_payload)
        return FrameCodec.build(data, crc16(data))

    @staticmethod
    def decode(raw: bytes, opcode: int) -> bytes:
        """
        Un-stuff the part of a frame that follows its opcode.

        The two bytes before the first unescaped EOT are the little-endian
        CRC of (opcode + payload). Returns the payload, or raises a
        FrameError; a payload with a bad CRC is never returned.
        """
        data = bytearray()
        escaped = False
        for b in raw:
            if escaped:
                data.append(b)
                escaped = False
            elif b == ControlChar.SOH:
                raise MalformedFrame("unescaped SOH inside frame")
            elif b == ControlChar.DLE:
                escaped = True
            elif b == ControlChar.EOT:
                if len(data) < 2:
                    raise MalformedFrame(f"frame too short for CRC ({len(data)} bytes)")
                payload = bytes(data[:-2])
                received = data[-2] | (data[-1] << 8)
                expected = crc16(bytes([opcode]) + payload)
                if received != expected:
                    raise CrcMismatch(received, expected)
                return payload
            else:
                data.append(b)
        raise TruncatedFrame(f"no EOT after {len(data)} data bytes")

    @staticmethod
    def split_opcode(frame: bytes) -> Tuple[int, bytes]:
        """Return (opcode, rest) from a frame starting at SOH."""
        if not frame or frame[0] != ControlChar.SOH:
            raise MalformedFrame("frame does not start with SOH")
        if len(frame) < 2:
            raise TruncatedFrame("frame ends after SOH")
        if frame[1] == ControlChar.DLE:
            if len(frame) < 3:
                raise TruncatedFrame("frame ends after escaped opcode marker")
            return frame[2], bytes(frame[3:])
        return frame[1], bytes(frame[2:])

    @staticmethod
    def unframe(frame: bytes) -> bytes:
        """Inverse of encode(): opcode + payload of a valid frame."""
        opcode, rest = FrameCodec.split_opcode(frame)
        return bytes([opcode]) + FrameCodec.decode(rest, opcode)

    @staticmethod
    def read_frame(frame: bytes) -> Response:
        """Decode a device response into a typed Response."""
        opcode, rest = FrameCodec.split_opcode(frame)
        try:
            command = Command(opcode)
        except ValueError:
            raise MalformedFrame(f"unknown command 0x{opcode:02X}") from None
        payload = FrameCodec.decode(rest, opcode)
        need = RESPONSE_LENGTHS[command]
        if len(payload) < need:
            raise MalformedFrame(
                f"{command.name} response carries {len(payload)} bytes, expected {need}")
        return Response(command, payload)


class FrameAssembler:
    """
    Reassembles frames from a byte stream.

    UART delivers frames in arbitrary chunks; HID delivers 64-byte reports
    zero-padded after EOT. Bytes outside SOH..EOT are discarded. An
    unescaped SOH inside a frame abandons the partial frame (it is emitted
    as-is so the decoder reports it truncated) and starts a new one.
    """

    def __init__(self):
        self._buf = bytearray()
        self._in_frame = False
        self._escaped = False

    def reset(self) -> None:
        self._buf.clear()
        self._in_frame = False
        self._escaped = False

    def feed(self, chunk: bytes) -> List[bytes]:
        frames: List[bytes] = []
        for b in chunk:
            if not self._in_frame:
                if b == ControlChar.SOH:
                    self._buf = bytearray([b])
                    self._in_frame = True
                    self._escaped = False
                continue

            if self._escaped:
                self._buf.append(b)
                self._escaped = False
            elif b == ControlChar.SOH:
                frames.append(bytes(self._buf))
                self._buf = bytearray([b])
            elif b == ControlChar.EOT:
                self._buf.append(b)
                frames.append(bytes(self._buf))
                self.reset()
            else:
                self._buf.append(b)
                self._escaped = b == ControlChar.DLE
        return frames


# ═══════════════════════════════════════════════════════════════════════
# SECTION 5 — INTEL-HEX RECORDS & FLASH GROUPS
# ═══════════════════════════════════════════════════════════════════════

_HEX_DIGITS = frozenset(string.hexdigits)


@dataclass(frozen=True)
class HexRecord:
    """One Intel-HEX line: ':' count(1) offset(2) type(1) data(count) checksum(1)."""
    byte_count: int
    offset: int
    record_type: int
    data: bytes
    checksum: int
    line_no: int = 0

    @property
    def raw(self) -> bytes:
        """Binary record (no ':'), exactly as sent in a PROGRAM command."""
        head = bytes([self.byte_count, (self.offset >> 8) & 0xFF, self.offset & 0xFF,
                      self.record_type])
        return head + self.data + bytes([self.checksum])

    @property
    def is_eof(self) -> bool:
        return self.record_type == RecordType.EOF

    @staticmethod
    def compute_checksum(body: bytes) -> int:
        """Two's complement of the byte sum of everything before the checksum."""
        return (-sum(body)) & 0xFF

    @classmethod
    def parse_line(cls, line: str, line_no: int = 0) -> "HexRecord":
        """Parse one hex line by fixed field positions. Raises ParseFailure."""
        text = line.strip()
        if not text.startswith(":"):
            raise ParseFailure(line_no, "record does not start with ':'")
        body = text[1:]
        if len(body) < 10 or len(body) % 2:
            raise ParseFailure(line_no, f"bad record length ({len(body)} hex chars)")
        if not _HEX_DIGITS.issuperset(body):
            raise ParseFailure(line_no, "non-hex characters in record")

        raw = bytes.fromhex(body)
        byte_count = raw[0]
        if len(raw) != byte_count + 5:
            raise ParseFailure(
                line_no, f"byte count {byte_count} does not match {len(raw) - 5} data bytes")

        expected = cls.compute_checksum(raw[:-1])
        if raw[-1] != expected:
            raise ParseFailure(
                line_no, f"record checksum 0x{raw[-1]:02X}, computed 0x{expected:02X}")

        record_type = raw[3]
        if record_type in (RecordType.EXT_LINEAR_ADDRESS, RecordType.EXT_SEGMENT_ADDRESS) \
                and byte_count != 2:
            raise ParseFailure(line_no, f"extended address record with {byte_count} data bytes")

        return cls(
            byte_count=byte_count,
            offset=(raw[1] << 8) | raw[2],
            record_type=record_type,
            data=raw[4:-1],
            checksum=raw[-1],
            line_no=line_no,
        )


class AddressState:
    """
    Rolling extended-address state for one pass over a hex file.

    Type 04 sets the linear base (data << 16), type 02 the segment base
    (data << 4); setting one clears the other and any other non-data
    record clears both.
    """

    def __init__(self):
        self.linear_base = 0
        self.segment_base = 0

    def apply(self, record: HexRecord) -> Optional[int]:
        """Advance state; return the absolute address for Data records."""
        rtype = record.record_type
        if rtype == RecordType.DATA:
            return record.offset + self.linear_base + self.segment_base
        if rtype == RecordType.EXT_LINEAR_ADDRESS:
            self.linear_base = (record.data[0] << 24) | (record.data[1] << 16)
            self.segment_base = 0
        elif rtype == RecordType.EXT_SEGMENT_ADDRESS:
            self.segment_base = ((record.data[0] << 8) | record.data[1]) << 4
            self.linear_base = 0
        else:
            self.linear_base = 0
            self.segment_base = 0
        return None


def flash_address(physical: int) -> int:
    """Physical address → KSEG0 address the bootloader READ command expects."""
    return (physical + KSEG0_OFFSET) & 0xFFFFFFFF


@dataclass(frozen=True)
class FlashWindow:
    """Inclusive application flash range."""
    base: int
    end: int

    def contains(self, address: int) -> bool:
        return self.base <= address <= self.end


@dataclass(frozen=True)
class FlashRecord:
    """A Data record with its resolved KSEG0 address."""
    index: int
    line_no: int
    address: int
    data: bytes

    @property
    def end(self) -> int:
        return self.address + len(self.data)


@dataclass(frozen=True)
class FlashGroup:
    """A contiguous in-window flash region, checked with one READ."""
    address: int
    data: bytes
    line_no: int
    index: int

    @property
    def length(self) -> int:
        return len(self.data)


def resolve_addresses(records: Iterable[HexRecord]) -> List[FlashRecord]:
    """Walk the records in file order and place every Data record."""
    state = AddressState()
    placed: List[FlashRecord] = []
    for index, record in enumerate(records):
        physical = state.apply(record)
        if physical is None:
            continue
        placed.append(FlashRecord(index, record.line_no, flash_address(physical), record.data))
    return placed


def group_records(flash_records: Iterable[FlashRecord], window: FlashWindow) -> List[FlashGroup]:
    """Coalesce physically contiguous in-window records into verification groups."""
    groups: List[FlashGroup] = []
    start: Optional[FlashRecord] = None
    buf = bytearray()
    end = 0

    for rec in flash_records:
        if not window.contains(rec.address):
            continue
        if start is not None and rec.address == end:
            buf += rec.data
        else:
            if start is not None:
                groups.append(FlashGroup(start.address, bytes(buf), start.line_no, start.index))
            start = rec
            buf = bytearray(rec.data)
        end = rec.end

    if start is not None:
        groups.append(FlashGroup(start.address, bytes(buf), start.line_no, start.index))
    return groups


def fold(records: Iterable[HexRecord], window: FlashWindow) -> Tuple[List[FlashRecord], List[FlashGroup]]:
    """Resolve addresses and build verification groups in one call."""
    placed = resolve_addresses(records)
    return placed, group_records(placed, window)


def read_crc_payload(address: int, length: int) -> bytes:
    """READ command arguments: address and length, each 32-bit little-endian."""
    return struct.pack("<II", address & 0xFFFFFFFF, length & 0xFFFFFFFF)


def iter_hex_lines(path: Union[str, Path]) -> Iterator[str]:
    """Lazily yield the lines of a hex file. Each call reopens the file."""
    # Non-ASCII bytes decode to U+FFFD and fail the record's hex-digit check.
    with open(path, "r", encoding="ascii", errors="replace") as f:
        for line in f:
            yield line.rstrip("\r\n")


@dataclass
class HexImage:
    """A fully parsed hex file; the last record is always the EOF sentinel."""
    records: List[HexRecord]
    source: str = "<lines>"

    @classmethod
    def from_lines(cls, lines: Iterable[str], source: str = "<lines>") -> "HexImage":
        records: List[HexRecord] = []
        numbered = enumerate(lines, 1)
        for line_no, line in numbered:
            if not line.strip():
                continue
            record = HexRecord.parse_line(line, line_no)
            records.append(record)
            if record.is_eof:
                trailing = sum(1 for _, rest in numbered if rest.strip())
                if trailing:
                    log.warning("%s: ignoring %d line(s) after end-of-file record",
                                source, trailing)
                break

        if not records or not records[-1].is_eof:
            raise ParseFailure(0, f"{source}: missing end-of-file record")
        return cls(records, source)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "HexImage":
        """Parse a hex file from disk."""
        return cls.from_lines(iter_hex_lines(path), source=str(path))

    @property
    def program_records(self) -> List[HexRecord]:
        """Every record sent as a PROGRAM command (all but the EOF sentinel)."""
        return self.records[:-1]

    @property
    def data_bytes(self) -> int:
        return sum(len(r.data) for r in self.records if r.record_type == RecordType.DATA)

    def fold(self, window: FlashWindow) -> Tuple[List[FlashRecord], List[FlashGroup]]:
        return fold(self.records, window)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 6 — TRANSPORT LAYER (HID / Serial / Loopback)
# ═══════════════════════════════════════════════════════════════════════

class BaseTransport:
    """
    Abstract duplex byte transport.

    Inbound bytes and transport errors are pushed to the registered
    callbacks from the transport's own reader context.
    """

    def __init__(self):
        self._receive_callback: Optional[Callable[[bytes], None]] = None
        self._error_callback: Optional[Callable[[BaseException], None]] = None

    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def transmit(self, data: bytes) -> None:
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    def on_receive(self, callback: Callable[[bytes], None]) -> None:
        self._receive_callback = callback

    def on_transport_error(self, callback: Callable[[BaseException], None]) -> None:
        self._error_callback = callback

    def _deliver(self, data: bytes) -> None:
        if self._receive_callback:
            self._receive_callback(bytes(data))

    def _report_error(self, error: BaseException) -> None:
        if self._error_callback:
            self._error_callback(error)
        else:
            log.error("Transport error: %s", error)


class PollingTransport(BaseTransport):
    """Transport whose inbound side is a background polling thread."""

    def __init__(self):
        super().__init__()
        self._stop = threading.Event()
        self._reader: Optional[threading.Thread] = None

    def _poll(self) -> bytes:
        raise NotImplementedError

    def _start_reader(self) -> None:
        self._stop.clear()
        self._reader = threading.Thread(target=self._reader_loop,
                                        name=f"{type(self).__name__}-reader", daemon=True)
        self._reader.start()

    def _stop_reader(self) -> None:
        self._stop.set()
        reader, self._reader = self._reader, None
        if reader and reader is not threading.current_thread():
            reader.join(timeout=1.0)

    def _reader_loop(self) -> None:
        while not self._stop.is_set():
            try:
                data = self._poll()
            except TransportError as e:
                if not self._stop.is_set():
                    self._report_error(e)
                break
            if data:
                self._deliver(data)


class HIDTransport(PollingTransport):
    """USB HID transport (64-byte interrupt reports) via the ``hid`` package."""

    def __init__(self, vendor_id: int = DEFAULT_VENDOR_ID, product_id: int = DEFAULT_PRODUCT_ID,
                 report_size: int = HID_REPORT_SIZE):
        super().__init__()
        self.vendor_id = vendor_id
        self.product_id = product_id
        self.report_size = report_size
        self._device = None

    def open(self) -> None:
        if not HID_AVAILABLE:
            raise TransportError("hid not available — pip install hid (and the hidapi library)")
        try:
            self._device = hid.Device(vid=self.vendor_id, pid=self.product_id)
        except hid.HIDException as e:
            raise TransportError(
                f"Failed to open HID device {self.vendor_id:04X}:{self.product_id:04X}: {e}") from e
        log.info("Opened HID device %04X:%04X (%s)",
                 self.vendor_id, self.product_id, self._device.product)
        self._start_reader()

    def close(self) -> None:
        self._stop_reader()
        if self._device:
            try:
                self._device.close()
            except hid.HIDException as e:
                log.warning("HID close failed: %s", e)
            self._device = None
            log.info("Closed HID device %04X:%04X", self.vendor_id, self.product_id)

    def transmit(self, data: bytes) -> None:
        if not self._device:
            raise TransportError("HID device not open")
        # One frame may span several OUT reports; report ID 0 goes first.
        for start in range(0, len(data), self.report_size):
            chunk = data[start:start + self.report_size]
            report = b"\x00" + chunk + bytes(self.report_size - len(chunk))
            try:
                self._device.write(report)
            except hid.HIDException as e:
                raise TransportError(f"HID write failed: {e}") from e

    def _poll(self) -> bytes:
        try:
            return self._device.read(self.report_size, timeout=READ_POLL_MS)
        except hid.HIDException as e:
            raise TransportError(f"HID read failed: {e}") from e

    @property
    def is_open(self) -> bool:
        return self._device is not None

    @staticmethod
    def list_devices(vendor_id: int = DEFAULT_VENDOR_ID,
                     product_id: int = DEFAULT_PRODUCT_ID) -> List[dict]:
        """Enumerate matching HID devices."""
        if not HID_AVAILABLE:
            return []
        return list(hid.enumerate(vendor_id, product_id))


class PySerialTransport(PollingTransport):
    """PySerial (UART bootloader / ``socket://`` URL) transport."""

    def __init__(self, port: str, baud: int = DEFAULT_BAUD):
        super().__init__()
        self.port = port
        self.baud = baud
        self._serial: Optional[serial.SerialBase] = None

    def open(self) -> None:
        try:
            self._serial = serial.serial_for_url(
                self.port,
                baudrate=self.baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=READ_POLL_MS / 1000.0,
                write_timeout=1.0,
            )
        except serial.SerialException as e:
            raise TransportError(f"Failed to open {self.port}: {e}") from e
        self._serial.reset_input_buffer()
        log.info("Opened %s at %d baud", self.port, self.baud)
        self._start_reader()

    def close(self) -> None:
        self._stop_reader()
        if self._serial and self._serial.is_open:
            self._serial.close()
            log.info("Closed %s", self.port)
        self._serial = None

    def transmit(self, data: bytes) -> None:
        if not self._serial or not self._serial.is_open:
            raise TransportError("Port not open")
        try:
            self._serial.write(data)
        except serial.SerialException as e:
            raise TransportError(f"Write to {self.port} failed: {e}") from e

    def _poll(self) -> bytes:
        try:
            return self._serial.read(self._serial.in_waiting or 1)
        except serial.SerialException as e:
            raise TransportError(f"Read from {self.port} failed: {e}") from e

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    @staticmethod
    def list_ports() -> List[str]:
        """List available serial ports."""
        return [p.device for p in serial.tools.list_ports.comports()]


class VirtualBootloader:
    """
    Simulated Harmony bootloader with an in-memory PIC32 flash.

    Interprets PROGRAM records the way the device firmware does (it keeps
    its own extended-address state), answers READ with the CRC16 of the
    requested KSEG0 range, and records every command it receives.

    Fault injection:
        silent:           opcodes that never get a response
        corrupt_read_crc: report a wrong flash CRC for every READ
        corrupt_frames:   opcodes answered with a frame whose CRC is wrong
    """

    def __init__(self, version: Tuple[int, int] = (1, 11)):
        self.major, self.minor = version
        self.flash: Dict[int, int] = {}
        self.commands: List[int] = []
        self.jumped = False
        self.silent: set = set()
        self.corrupt_frames: set = set()
        self.corrupt_read_crc = False
        self._address = AddressState()
        self._assembler = FrameAssembler()

    def process(self, chunk: bytes) -> List[bytes]:
        """Feed raw inbound bytes; return the response frames to send back."""
        responses = []
        for frame in self._assembler.feed(chunk):
            try:
                opcode, rest = FrameCodec.split_opcode(frame)
                payload = FrameCodec.decode(rest, opcode)
            except FrameError as e:
                log.warning("[vBL] Dropped bad frame (%s): %s", e, hexdump(frame))
                continue
            resp = self.handle(opcode, payload)
            if resp is not None:
                responses.append(resp)
        return responses

    def handle(self, opcode: int, payload: bytes) -> Optional[bytes]:
        """Execute one command; return the framed response or None."""
        self.commands.append(opcode)
        if opcode in self.silent:
            log.debug("[vBL] %s ignored (silent)", _command_name(opcode))
            return None

        if opcode == Command.VERSION:
            body = bytes([self.minor, self.major])
        elif opcode == Command.ERASE:
            self.erase()
            body = b""
        elif opcode == Command.PROGRAM:
            self.program(payload)
            body = b""
        elif opcode == Command.READ:
            address, length = struct.unpack("<II", payload[:8])
            crc = self.read_crc(address, length)
            if self.corrupt_read_crc:
                crc ^= 0xFFFF
            body = struct.pack("<H", crc)
        elif opcode == Command.APPLICATION:
            self.jumped = True
            log.debug("[vBL] Jump to application")
            return None
        else:
            log.warning("[vBL] Unknown command 0x%02X", opcode)
            return None

        data = bytes([opcode]) + body
        crc = crc16(data)
        if opcode in self.corrupt_frames:
            crc ^= 0x0001
        return FrameCodec.build(data, crc)

    def erase(self) -> None:
        self.flash.clear()
        self._address = AddressState()
        log.debug("[vBL] Flash erased")

    def program(self, raw: bytes) -> None:
        record = HexRecord(raw[0], (raw[1] << 8) | raw[2], raw[3], raw[4:4 + raw[0]], raw[-1])
        physical = self._address.apply(record)
        if physical is None:
            return
        base = flash_address(physical)
        for i, b in enumerate(record.data):
            self.flash[base + i] = b

    def read(self, address: int, length: int) -> bytes:
        return bytes(self.flash.get(a, ERASED_BYTE) for a in range(address, address + length))

    def read_crc(self, address: int, length: int) -> int:
        return crc16(self.read(address, length))


class LoopbackTransport(BaseTransport):
    """
    In-memory transport wired to a VirtualBootloader.

    Responses are delivered synchronously from transmit(). Opcodes listed
    in *fail_transmit* make transmit() raise TransportError.
    """

    def __init__(self, device: Optional[VirtualBootloader] = None):
        super().__init__()
        self.device = device or VirtualBootloader()
        self.fail_transmit: set = set()
        self.tx_log: List[bytes] = []
        self._opened = False

    def open(self) -> None:
        self._opened = True
        log.info("Loopback transport opened (virtual bootloader)")

    def close(self) -> None:
        self._opened = False

    def transmit(self, data: bytes) -> None:
        if not self._opened:
            raise TransportError("Loopback transport not open")
        self.tx_log.append(bytes(data))
        if self.fail_transmit:
            opcode, _ = FrameCodec.split_opcode(data)
            if opcode in self.fail_transmit:
                raise TransportError(f"Simulated transmit failure for {_command_name(opcode)}")
        for resp in self.device.process(data):
            self._deliver(resp)

    @property
    def is_open(self) -> bool:
        return self._opened


# ═══════════════════════════════════════════════════════════════════════
# SECTION 7 — TRANSACTION MANAGER
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class PendingTransaction:
    """A sent command waiting for its response."""
    command: int
    created: float
    timeout_ms: Optional[int]
    future: Future = field(default_factory=Future)

    def expired(self, now: float) -> bool:
        return self.timeout_ms is not None and (now - self.created) * 1000.0 >= self.timeout_ms


class TransactionManager:
    """
    Turns the duplex byte stream into request/response transactions.

    Each send() registers a PendingTransaction keyed by opcode and returns
    its Future. Responses complete the most recent pending entry with the
    same opcode; the sweep thread fails entries whose timeout elapsed.
    Completion is always claim-then-resolve under one lock, so a response
    and a timeout can never both complete the same transaction.
    """

    def __init__(self, transport: BaseTransport, timeout_ms: Optional[int] = None,
                 tick_ms: int = DEFAULT_TICK_MS, logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.transport = transport
        self.timeout_ms = self._normalize_timeout(timeout_ms)
        self.tick_ms = tick_ms
        self.log = logger or logging.getLogger(LOGGER_NAME)
        self._clock = clock
        self._pending: List[PendingTransaction] = []
        self._lock = threading.Lock()
        self._assembler = FrameAssembler()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        self._closed = False
        transport.on_receive(self.on_response)
        transport.on_transport_error(self.on_transport_error)

    @staticmethod
    def _normalize_timeout(timeout_ms: Optional[int]) -> Optional[int]:
        if timeout_ms is None or timeout_ms <= 0:
            return None
        return int(timeout_ms)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # ── Outbound ──

    def send(self, command_and_payload: bytes, timeout_ms: Optional[int] = None,
             expect_response: bool = True) -> Future:
        """
        Frame and transmit a command.

        timeout_ms: None → configured default, NO_TIMEOUT (or ≤ 0) → wait forever.
        expect_response=False resolves the Future as soon as the frame is sent.
        """
        data = bytes(command_and_payload)
        if not data:
            raise ValueError("command must contain at least an opcode")
        opcode = data[0]
        frame = FrameCodec.encode(data)
        self.log.debug("TX %s [%d]: %s", _command_name(opcode), len(frame), hexdump(frame))

        if not expect_response:
            if self._closed:
                raise SessionClosed("session is closed")
            future: Future = Future()
            try:
                self.transport.transmit(frame)
            except TransportError as e:
                future.set_exception(e)
            else:
                future.set_result(None)
            return future

        timeout = self.timeout_ms if timeout_ms is None else self._normalize_timeout(timeout_ms)
        entry = PendingTransaction(opcode, self._clock(), timeout)
        with self._lock:
            if self._closed:
                raise SessionClosed("session is closed")
            if any(p.command == opcode for p in self._pending):
                raise CommandPending(f"{_command_name(opcode)} already awaiting a response")
            self._pending.append(entry)

        try:
            self.transport.transmit(frame)
        except TransportError as e:
            if self._claim(entry):
                self.log.error("%s transmit failed: %s", _command_name(opcode), e)
                entry.future.set_exception(e)
        return entry.future

    def request(self, command_and_payload: bytes, timeout_ms: Optional[int] = None,
                expect_response: bool = True) -> Optional[Response]:
        """send() and block until the transaction resolves; re-raises its failure."""
        return self.send(command_and_payload, timeout_ms, expect_response).result()

    # ── Inbound ──

    def on_response(self, raw: bytes) -> None:
        """Transport receive callback: decode, then complete or drop. Never blocks."""
        for frame in self._assembler.feed(raw):
            try:
                response = FrameCodec.read_frame(frame)
            except FrameError as e:
                self.log.warning("Dropped frame (%s: %s): %s", type(e).__name__, e, hexdump(frame))
                continue
            self.log.debug("RX %s [%d]: %s", response.command.name, len(frame), hexdump(frame))

            entry = self._claim_opcode(response.command)
            if entry is None:
                self.log.warning("Unmatched %s response dropped", response.command.name)
                continue
            entry.future.set_result(response)

    def on_transport_error(self, error: BaseException) -> None:
        """Transport error callback: the link is gone, fail every pending command."""
        self.log.error("Transport error: %s", error)
        with self._lock:
            failed, self._pending = self._pending, []
        for p in failed:
            p.future.set_exception(
                TransportError(f"{_command_name(p.command)} abandoned: {error}"))
        self._assembler.reset()

    # ── Timeouts ──

    def tick(self) -> int:
        """Fail every pending transaction whose timeout has elapsed. Returns the count."""
        now = self._clock()
        with self._lock:
            expired = [p for p in self._pending if p.expired(now)]
            for p in expired:
                self._pending.remove(p)
        for p in expired:
            self.log.warning("%s timed out after %d ms", _command_name(p.command), p.timeout_ms)
            p.future.set_exception(CommandTimeout(p.command, p.timeout_ms))
        return len(expired)

    def start(self) -> None:
        """Start the periodic timeout sweep."""
        if self._sweeper is not None:
            return
        with self._lock:
            self._closed = False
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="timeout-sweep", daemon=True)
        self._sweeper.start()

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.tick_ms / 1000.0):
            self.tick()

    def close(self) -> None:
        """Stop the sweep and fail every outstanding transaction with SessionClosed."""
        self._stop.set()
        sweeper, self._sweeper = self._sweeper, None
        if sweeper and sweeper is not threading.current_thread():
            sweeper.join(timeout=1.0)
        with self._lock:
            self._closed = True
            leftover, self._pending = self._pending, []
        for p in leftover:
            p.future.set_exception(SessionClosed(f"{_command_name(p.command)} abandoned: session closed"))
        self._assembler.reset()

    # ── Claim helpers (atomic remove) ──

    def _claim(self, entry: PendingTransaction) -> bool:
        with self._lock:
            for i, p in enumerate(self._pending):
                if p is entry:
                    del self._pending[i]
                    return True
        return False

    def _claim_opcode(self, opcode: int) -> Optional[PendingTransaction]:
        with self._lock:
            for i in range(len(self._pending) - 1, -1, -1):
                if self._pending[i].command == opcode:
                    return self._pending.pop(i)
        return None


# ═══════════════════════════════════════════════════════════════════════
# SECTION 8 — FLASH OPERATIONS (PROGRAMMING STATE MACHINE)
# ═══════════════════════════════════════════════════════════════════════

def parse_address(value: Union[int, str]) -> int:
    """Accept 0x9D008000, "9D008000" or "0x9D008000"."""
    address = int(value, 16) if isinstance(value, str) else int(value)
    if not 0 <= address <= 0xFFFFFFFF:
        raise ValueError(f"address out of 32-bit range: {value!r}")
    return address


@dataclass
class BootloaderConfig:
    """Session configuration."""
    app_flash_base: Union[int, str] = DEFAULT_APP_FLASH_BASE
    app_flash_end: Union[int, str] = DEFAULT_APP_FLASH_END
    timeout_ms: Optional[int] = None
    tick_ms: int = DEFAULT_TICK_MS
    vendor_id: int = DEFAULT_VENDOR_ID
    product_id: int = DEFAULT_PRODUCT_ID
    verbose: bool = False

    def __post_init__(self):
        self.app_flash_base = parse_address(self.app_flash_base)
        self.app_flash_end = parse_address(self.app_flash_end)
        if self.app_flash_base > self.app_flash_end:
            raise ValueError(
                f"flash base ${self.app_flash_base:08X} above end ${self.app_flash_end:08X}")
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            self.timeout_ms = None

    @property
    def window(self) -> FlashWindow:
        return FlashWindow(self.app_flash_base, self.app_flash_end)


class FlashState(Enum):
    """Programming state machine."""
    IDLE = auto()
    ERASING = auto()
    PROGRAMMING = auto()
    VERIFYING = auto()
    ABORTING = auto()
    JUMP_PENDING = auto()
    DONE = auto()
    FAILED = auto()

TERMINAL_STATES = (FlashState.DONE, FlashState.FAILED)


@dataclass
class FlashContext:
    """Everything one erase-and-write run carries between states."""
    image: HexImage
    groups: List[FlashGroup]
    jump: bool
    state: FlashState = FlashState.IDLE
    record_index: int = 0
    group_index: int = 0
    bytes_verified: int = 0
    jumped: bool = False
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class FlashReport:
    """Summary of a successful erase-and-write."""
    records_programmed: int
    groups_verified: int
    bytes_verified: int
    jumped: bool
    elapsed: float


class Bootloader:
    """
    Host side of one bootloader session.

    Sequence: erase → program every record → verify every flash group →
    optional jump. Any failure after the first erase triggers one more
    erase so the device is left blank, then the failure is raised.
    """

    def __init__(self, transport: BaseTransport, config: Optional[BootloaderConfig] = None,
                 logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.transport = transport
        self.config = config or BootloaderConfig()
        self.log = logger or logging.getLogger(LOGGER_NAME)
        self.transactions = TransactionManager(
            transport,
            timeout_ms=self.config.timeout_ms,
            tick_ms=self.config.tick_ms,
            logger=self.log,
            clock=clock,
        )
        self.state = FlashState.IDLE
        self._cancel = threading.Event()
        self._callbacks: Dict[str, List[Callable]] = {}
        self._handlers: Dict[FlashState, Callable[[FlashContext], FlashState]] = {
            FlashState.IDLE: self._on_idle,
            FlashState.ERASING: self._on_erasing,
            FlashState.PROGRAMMING: self._on_programming,
            FlashState.VERIFYING: self._on_verifying,
            FlashState.ABORTING: self._on_aborting,
            FlashState.JUMP_PENDING: self._on_jump_pending,
        }

    # ── Event System ──

    def on(self, event: str, callback: Callable) -> None:
        """Register an event callback. Events: progress, state."""
        self._callbacks.setdefault(event, []).append(callback)

    def emit(self, event: str, **kwargs) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._callbacks.get(event, []):
            try:
                cb(**kwargs)
            except Exception as e:
                self.log.error("Event callback error: %s", e)

    def cancel(self) -> None:
        """Cancel the current operation at the next step boundary."""
        self._cancel.set()
        self.log.warning("Operation cancelled by user")

    def reset_cancel(self) -> None:
        self._cancel.clear()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ── Session ──

    def open(self) -> None:
        """Open the transport and start the timeout sweep."""
        self.transport.open()
        self.transactions.start()

    def close(self) -> None:
        """Fail outstanding commands, stop the sweep and release the transport."""
        self.transactions.close()
        if self.transport.is_open:
            self.transport.close()

    def __enter__(self) -> "Bootloader":
        self.open()
        return self

    def __exit__(self, exc_type, exc_value, exc_traceback) -> None:
        self.close()

    # ── Single commands ──

    def _request(self, command: Command, payload: bytes = b"") -> Response:
        return self.transactions.request(bytes([command]) + payload)

    def read_version(self) -> Tuple[int, int]:
        """Bootloader version as (major, minor)."""
        major, minor = self._request(Command.VERSION).version
        self.log.info("Bootloader version %d.%d", major, minor)
        return major, minor

    def erase(self) -> None:
        """Erase the whole application region."""
        self._request(Command.ERASE)
        self.log.info("Application flash erased")

    def read_crc(self, address: int, length: int) -> int:
        """Device-computed CRC16 of *length* bytes at KSEG0 *address*."""
        crc = self._request(Command.READ, read_crc_payload(address, length)).crc
        self.log.debug("Flash CRC $%08X+%d = 0x%04X", address, length, crc)
        return crc

    def jump_to_application(self) -> None:
        """Start the application. The device resets; no response is awaited."""
        self.transactions.send(bytes([Command.APPLICATION]), expect_response=False).result()
        self.log.info("Jump to application sent")

    # ── Erase & write ──

    def erase_and_write(self, path: Union[str, Path], jump_to_application: bool = False) -> FlashReport:
        """
        Flash an Intel-HEX file.

        The whole file is parsed first, so a malformed line fails before any
        command reaches the device. Raises the failure cause (or an
        EraseRecoveryError) on failure.
        """
        image = HexImage.load(path)
        return self.write_image(image, jump_to_application)

    def write_image(self, image: HexImage, jump_to_application: bool = False) -> FlashReport:
        """Run the programming state machine over an already parsed image."""
        _, groups = image.fold(self.config.window)
        if not groups:
            self.log.warning("%s: no data inside flash window $%08X-$%08X, nothing to verify",
                             image.source, self.config.app_flash_base, self.config.app_flash_end)
        self.log.info("═══ WRITE STARTED: %s ═══", image.source)
        self.log.info("  Records: %d, data bytes: %d, verify groups: %d",
                      len(image.program_records), image.data_bytes, len(groups))

        ctx = FlashContext(image=image, groups=groups, jump=jump_to_application)
        self.reset_cancel()
        start_time = time.monotonic()
        try:
            while ctx.state not in TERMINAL_STATES:
                self._step(ctx)
        except KeyboardInterrupt:
            # Past the first erase the device may hold a partial image.
            if ctx.state in (FlashState.PROGRAMMING, FlashState.VERIFYING):
                ctx.error = OperationCancelled("interrupted by user")
                ctx.state = self._on_aborting(ctx)
                self.state = ctx.state
                self.emit("state", state=ctx.state)
            raise

        elapsed = time.monotonic() - start_time
        if ctx.state is FlashState.FAILED:
            self.log.error("═══ WRITE FAILED (%.1fs): %s ═══", elapsed, ctx.error)
            raise ctx.error

        self.log.info("═══ WRITE COMPLETE (%.1fs) ═══", elapsed)
        return FlashReport(
            records_programmed=ctx.record_index,
            groups_verified=ctx.group_index,
            bytes_verified=ctx.bytes_verified,
            jumped=ctx.jumped,
            elapsed=elapsed,
        )

    def _step(self, ctx: FlashContext) -> None:
        """Run the handler for the current state and apply its transition."""
        next_state = self._handlers[ctx.state](ctx)
        if next_state is not ctx.state:
            self.log.debug("State %s → %s", ctx.state.name, next_state.name)
            ctx.state = next_state
            self.state = next_state
            self.emit("state", state=next_state)

    def _on_idle(self, ctx: FlashContext) -> FlashState:
        return FlashState.ERASING

    def _on_erasing(self, ctx: FlashContext) -> FlashState:
        # Nothing written yet: a failed first erase needs no recovery.
        try:
            self.erase()
        except BootloaderError as e:
            self.log.error("Initial erase failed: %s", e)
            ctx.error = e
            return FlashState.FAILED
        return FlashState.PROGRAMMING

    def _on_programming(self, ctx: FlashContext) -> FlashState:
        records = ctx.image.program_records
        if self.cancelled:
            ctx.error = OperationCancelled("cancelled while programming")
            return FlashState.ABORTING
        if ctx.record_index >= len(records):
            self.log.info("Application write end (%d records)", len(records))
            return FlashState.VERIFYING

        record = records[ctx.record_index]
        try:
            self._request(Command.PROGRAM, record.raw)
        except BootloaderError as e:
            self.log.error("Write of line %d failed: %s", record.line_no, e)
            ctx.error = e
            return FlashState.ABORTING

        ctx.record_index += 1
        self.emit("progress", current=ctx.record_index, total=len(records), label="Programming")
        return FlashState.PROGRAMMING

    def _on_verifying(self, ctx: FlashContext) -> FlashState:
        if self.cancelled:
            ctx.error = OperationCancelled("cancelled while verifying")
            return FlashState.ABORTING
        if ctx.group_index >= len(ctx.groups):
            return FlashState.JUMP_PENDING if ctx.jump else FlashState.DONE

        group = ctx.groups[ctx.group_index]
        try:
            device_crc = self.read_crc(group.address, group.length)
        except BootloaderError as e:
            self.log.error("Read CRC of $%08X failed: %s", group.address, e)
            ctx.error = e
            return FlashState.ABORTING

        local_crc = crc16(group.data)
        if device_crc != local_crc:
            ctx.error = VerificationMismatch(group, device_crc, local_crc)
            self.log.error("%s", ctx.error)
            return FlashState.ABORTING

        ctx.group_index += 1
        ctx.bytes_verified += group.length
        self.emit("progress", current=ctx.group_index, total=len(ctx.groups), label="Verifying")
        return FlashState.VERIFYING

    def _on_aborting(self, ctx: FlashContext) -> FlashState:
        self.log.error("Aborting (%s) — erasing device", ctx.error)
        try:
            self.erase()
        except BootloaderError as e:
            self.log.error("Recovery erase failed: %s", e)
            ctx.error = EraseRecoveryError(ctx.error, e)
            return FlashState.FAILED
        self.log.warning("Recovery erase ok — device is blank, restart the flash")
        return FlashState.FAILED

    def _on_jump_pending(self, ctx: FlashContext) -> FlashState:
        try:
            self.jump_to_application()
            ctx.jumped = True
        except BootloaderError as e:
            # The device resets on APPLICATION; a failed send is not fatal.
            self.log.warning("Jump to application not acknowledged: %s", e)
        return FlashState.DONE


# ═══════════════════════════════════════════════════════════════════════
# SECTION 9 — CLI INTERFACE
# ═══════════════════════════════════════════════════════════════════════

def cli_progress_callback(current: int, total: int, label: str = "") -> None:
    """Print progress to console."""
    if total > 0:
        pct = (current / total) * 100
        bar_len = 40
        filled = int(bar_len * current / total)
        bar = "█" * filled + "░" * (bar_len - filled)
        print(f"\r  {label:<12} [{bar}] {pct:.0f}%", end="", flush=True)
        if current >= total:
            print()

def make_config(args: argparse.Namespace) -> BootloaderConfig:
    """Map CLI options onto a BootloaderConfig."""
    return BootloaderConfig(
        app_flash_base=args.flash_base,
        app_flash_end=args.flash_end,
        timeout_ms=args.timeout,
        vendor_id=int(args.vid, 16),
        product_id=int(args.pid, 16),
        verbose=args.verbose,
    )

def make_transport(args: argparse.Namespace, config: BootloaderConfig) -> BaseTransport:
    """Create the transport selected on the command line."""
    if args.transport == "loopback":
        return LoopbackTransport()
    if args.transport == "serial":
        return PySerialTransport(args.port, args.baud)
    return HIDTransport(config.vendor_id, config.product_id)

def print_groups(image: HexImage, config: BootloaderConfig) -> None:
    """Offline summary of a hex image against the flash window."""
    placed, groups = image.fold(config.window)
    print(f"  File:     {image.source}")
    print(f"  Records:  {len(image.records)} ({len(placed)} data, {image.data_bytes} bytes)")
    print(f"  Window:   ${config.app_flash_base:08X}-${config.app_flash_end:08X}")
    print(f"  Groups:   {len(groups)}")
    for g in groups:
        print(f"    ${g.address:08X}  {g.length:6d} bytes  crc=0x{crc16(g.data):04X}  line {g.line_no}")

def run_cli(args: argparse.Namespace) -> int:
    """Run the CLI interface."""
    print(f"\n{__app_name__} v{__version__}")
    print(f"Target: {__target__}\n")

    try:
        config = make_config(args)
    except ValueError as e:
        print(f"✗ Bad configuration: {e}")
        return 1

    # ── Offline commands ──
    if args.command == "inspect":
        try:
            image = HexImage.load(args.input)
        except (ParseFailure, OSError) as e:
            print(f"✗ {e}")
            return 1
        print_groups(image, config)
        return 0

    if args.command == "devices":
        devices = HIDTransport.list_devices(config.vendor_id, config.product_id)
        if not HID_AVAILABLE:
            print("hid not installed — only serial ports listed")
        for d in devices:
            print(f"  {d.get('vendor_id', 0):04X}:{d.get('product_id', 0):04X}  "
                  f"{d.get('product_string') or ''}  {d.get('path')!r}")
        for p in PySerialTransport.list_ports():
            print(f"  serial  {p}")
        if not devices:
            print(f"No HID bootloader found at {config.vendor_id:04X}:{config.product_id:04X}")
        return 0

    # ── Device commands ──
    transport = make_transport(args, config)
    bootloader = Bootloader(transport, config)
    bootloader.on("progress", cli_progress_callback)

    try:
        bootloader.open()
    except TransportError as e:
        print(f"✗ Connection failed: {e}")
        return 1

    try:
        if args.command == "write":
            report = bootloader.erase_and_write(args.input, args.jump)
            print(f"\n✓ Wrote {report.records_programmed} records, verified "
                  f"{report.groups_verified} group(s) / {report.bytes_verified} bytes "
                  f"in {report.elapsed:.1f}s")
            if report.jumped:
                print("✓ Application started")
            return 0

        elif args.command == "erase":
            bootloader.erase()
            print("✓ Application flash erased")
            return 0

        elif args.command == "version":
            major, minor = bootloader.read_version()
            print(f"  Bootloader version: {major}.{minor}")
            return 0

        elif args.command == "jump":
            bootloader.jump_to_application()
            print("✓ Jump to application sent")
            return 0

        else:
            print(f"Unknown command: {args.command}")
            return 1

    except KeyboardInterrupt:
        print("\n\nCancelled by user")
        return 130
    except BootloaderError as e:
        print(f"\n✗ {type(e).__name__}: {e}")
        log.debug("CLI failure", exc_info=True)
        return 1
    except OSError as e:
        print(f"\n✗ Error: {e}")
        return 1
    finally:
        bootloader.close()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 10 — ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pic32-hid-flasher",
        description=f"{__app_name__} v{__version__} — Harmony bootloader flash tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s write --input app.hex --jump              # Flash over USB HID, then boot
  %(prog)s write --input app.hex --transport serial --port COM5
  %(prog)s write --input app.hex --transport serial --port socket://127.0.0.1:7070
  %(prog)s erase                                     # Erase application region
  %(prog)s version                                   # Read bootloader version
  %(prog)s inspect --input app.hex                   # Show verify groups (offline)
  %(prog)s devices                                   # List HID bootloaders / ports
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    write_p = subparsers.add_parser("write", help="Erase, program and verify a hex file")
    write_p.add_argument("--input", "-i", required=True, help="Intel-HEX file")
    write_p.add_argument("--jump", dest="jump", action="store_true", default=True,
                         help="Jump to the application after a verified write (default: on)")
    write_p.add_argument("--no-jump", dest="jump", action="store_false",
                         help="Stay in the bootloader after writing")

    erase_p = subparsers.add_parser("erase", help="Erase the application region")
    version_p = subparsers.add_parser("version", help="Read the bootloader version")
    jump_p = subparsers.add_parser("jump", help="Jump to the application")

    inspect_p = subparsers.add_parser("inspect", help="Parse a hex file and list verify groups")
    inspect_p.add_argument("--input", "-i", required=True, help="Intel-HEX file")

    devices_p = subparsers.add_parser("devices", help="List HID bootloaders and serial ports")

    # Global options
    for sub in [write_p, erase_p, version_p, jump_p, inspect_p, devices_p]:
        sub.add_argument("--transport", choices=["hid", "serial", "loopback"], default="hid",
                         help="Transport type (loopback = virtual bootloader)")
        sub.add_argument("--vid", default=f"{DEFAULT_VENDOR_ID:04X}",
                         help=f"USB vendor ID hex (default: {DEFAULT_VENDOR_ID:04X})")
        sub.add_argument("--pid", default=f"{DEFAULT_PRODUCT_ID:04X}",
                         help=f"USB product ID hex (default: {DEFAULT_PRODUCT_ID:04X})")
        sub.add_argument("--port", "-p", default="COM3", help="Serial port or URL (default: COM3)")
        sub.add_argument("--baud", type=int, default=DEFAULT_BAUD,
                         help=f"Baud rate (default: {DEFAULT_BAUD})")
        sub.add_argument("--flash-base", default=f"{DEFAULT_APP_FLASH_BASE:08X}",
                         help=f"Application flash start, hex (default: {DEFAULT_APP_FLASH_BASE:08X})")
        sub.add_argument("--flash-end", default=f"{DEFAULT_APP_FLASH_END:08X}",
                         help=f"Application flash end, hex (default: {DEFAULT_APP_FLASH_END:08X})")
        sub.add_argument("--timeout", type=int, default=CLI_DEFAULT_TIMEOUT_MS,
                         help=f"Per-command timeout in ms, 0 = none (default: {CLI_DEFAULT_TIMEOUT_MS})")
        sub.add_argument("--verbose", "-v", action="store_true", help="Log every frame to the console")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    setup_logging(console_level=logging.DEBUG if args.verbose else logging.WARNING)
    return run_cli(args)


if __name__ == "__main__":
    sys.exit(main())
