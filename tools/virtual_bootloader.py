#!/usr/bin/env python3
"""
virtual_bootloader.py — Virtual Harmony Bootloader + Frame Tool
=================================================================

A standalone TCP bridge that acts as a PIC32 Harmony bootloader. It speaks
the SOH/DLE/EOT framed protocol over a socket, so the flash tool can be
pointed at it with the serial transport:

    pic32-hid-flasher write --input app.hex --transport serial \\
        --port socket://127.0.0.1:7070

Useful for:
    - Testing the flash tool without a PIC32 board
    - Reproducing verify failures (--corrupt-crc) and timeouts (--silent)
    - Building / decoding frames by hand while debugging captures

Usage:
    # Start the virtual bootloader
    python virtual_bootloader.py --mode vbl --port 7070

    # Frame a command (opcode + payload hex)
    python virtual_bootloader.py --mode encode --frame "04 00 80 00 9D 06 00 00 00"

    # Decode a captured response frame
    python virtual_bootloader.py --mode decode --frame "01 02 42 20 04"

MIT License — Copyright (c) 2026 The pic32-hid-flasher authors
"""

from __future__ import annotations
import sys
import socket
import argparse
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pic32_hid_flasher import (  # noqa: E402
    Command, FrameCodec, FrameError, HexImage, VirtualBootloader, hexdump,
)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 7070


def parse_hex_bytes(text: str) -> bytes:
    """'01 02', '0x01,0x02' or '0102' → bytes."""
    clean = text.replace(",", " ").replace("0x", "").replace("0X", "")
    return bytes.fromhex(clean.replace(" ", ""))


def describe_frame(frame: bytes) -> str:
    """One-line decode of a response frame, or the reason it is invalid."""
    try:
        resp = FrameCodec.read_frame(frame)
    except FrameError as e:
        return f"INVALID ({type(e).__name__}: {e})"
    if resp.command is Command.VERSION:
        return "VERSION %d.%d" % resp.version
    if resp.command is Command.READ:
        return f"READ crc=0x{resp.crc:04X}"
    return f"{resp.command.name} ack"


# ═══════════════════════════════════════════════════════════════════════
# TCP SERVER (for vbl mode)
# ═══════════════════════════════════════════════════════════════════════

def run_vbl_tcp(vbl: VirtualBootloader, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT):
    """Run the virtual bootloader as a TCP server."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind((host, port))
    server.listen(1)
    print(f"[vBL] TCP server listening on {host}:{port}")
    print(f"[vBL] Flash with: --transport serial --port socket://{host}:{port}")

    try:
        while True:
            conn, addr = server.accept()
            print(f"[vBL] Client connected from {addr}")
            handle_client(vbl, conn)
    except KeyboardInterrupt:
        print("\n[vBL] Shutting down")
    finally:
        server.close()


def handle_client(vbl: VirtualBootloader, conn: socket.socket):
    """Serve one client until it disconnects."""
    try:
        while True:
            data = conn.recv(1024)
            if not data:
                break
            print(f"[vBL] RX: {hexdump(data[:24])}{'...' if len(data) > 24 else ''}")
            for resp in vbl.process(data):
                conn.sendall(resp)
                print(f"[vBL] TX: {hexdump(resp)}  ({describe_frame(resp)})")
            if vbl.jumped:
                print("[vBL] Jump to application — closing connection")
                break
    except (ConnectionResetError, BrokenPipeError):
        print("[vBL] Client disconnected")
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════════════════

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Virtual Harmony bootloader + frame tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Modes:
  vbl     Run as a virtual bootloader (TCP server)
  encode  Frame an opcode + payload
  decode  Decode a response frame
        """,
    )
    parser.add_argument("--mode", choices=["vbl", "encode", "decode"], default="vbl",
                        help="Operating mode (default: vbl)")
    parser.add_argument("--host", default=DEFAULT_HOST,
                        help=f"TCP host for vbl mode (default: {DEFAULT_HOST})")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT,
                        help=f"TCP port for vbl mode (default: {DEFAULT_PORT})")
    parser.add_argument("--hex", default=None,
                        help="Intel-HEX file to preload into virtual flash")
    parser.add_argument("--version", default="1.11",
                        help="Reported bootloader version MAJOR.MINOR (default: 1.11)")
    parser.add_argument("--silent", action="append", default=[],
                        choices=[c.name for c in Command],
                        help="Never answer this command (repeatable)")
    parser.add_argument("--corrupt-crc", action="store_true",
                        help="Report a wrong flash CRC for every READ")
    parser.add_argument("--frame", default=None, help="Hex bytes for encode/decode modes")
    args = parser.parse_args(argv)

    if args.mode in ("encode", "decode"):
        if not args.frame:
            print("ERROR: --frame is required for encode/decode mode")
            return 1
        raw = parse_hex_bytes(args.frame)
        if args.mode == "encode":
            print(hexdump(FrameCodec.encode(raw)))
        else:
            print(describe_frame(raw))
        return 0

    major, minor = (int(p) for p in args.version.split("."))
    vbl = VirtualBootloader(version=(major, minor))
    vbl.silent.update(Command[name] for name in args.silent)
    vbl.corrupt_read_crc = args.corrupt_crc
    if args.hex:
        image = HexImage.load(args.hex)
        for record in image.program_records:
            vbl.program(record.raw)
        print(f"[vBL] Preloaded {image.data_bytes} bytes from {args.hex}")

    run_vbl_tcp(vbl, args.host, args.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
