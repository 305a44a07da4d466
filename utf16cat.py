"""Print UTF-8 files, stdin or https URLs after converting them to UTF-16.

Every input goes through the strict converter in utf8to16.py, so this refuses
to print anything that isn't valid UTF-8. Without arguments, it prints the
Japanese name of Japan, which is a handy way to check that your terminal can
display it.
"""

from __future__ import annotations

import argparse
import array
import os
import sys
from typing import Iterator

import requests

import utf8to16

# Incremented by each -v flag. Messages go to stderr, stdout is for the text.
VERBOSITY: int = 0

DEMO_INPUTS = [
    ("Japan", b"Japan"),
    # Japanese name for Japan
    ("Nihon", bytes([0xE6, 0x97, 0xA5, 0xE6, 0x9C, 0xAC])),
]


def log(message: str) -> None:
    if VERBOSITY >= 1:
        print(message, file=sys.stderr)


def fetch_url(url: str, timeout: float) -> bytes:
    # Let server owners know who is doing the requests
    headers = {"User-Agent": "utf16cat/1.0"}
    try:
        response = requests.get(url, timeout=timeout, headers=headers)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        sys.exit(f"Error: fetching {url} failed: {e}")
    return response.content


def read_source(source: str, timeout: float) -> bytes:
    if source == "-":
        return sys.stdin.buffer.read()
    if source.startswith("http://"):
        sys.exit(f"Error: {source}: use https:// instead of http://")
    if source.startswith("https://"):
        return fetch_url(source, timeout)

    try:
        with open(source, "rb") as file:
            return file.read()
    except OSError as e:
        sys.exit(f"Error: cannot read {source}: {e.strerror}")


def read_sources(sources: list[str], timeout: float) -> Iterator[tuple[str, bytes]]:
    # Lazily, so that output of earlier sources gets printed even if a later
    # source can't be read
    for source in sources:
        yield (source, read_source(source, timeout))


def configure_output_sink(stream) -> None:
    # Pipes and files get the locale's encoding, which may not be able to
    # represent everything we print.
    encoding = (getattr(stream, "encoding", None) or "").lower().replace("-", "")
    if encoding != "utf8" and hasattr(stream, "reconfigure"):
        stream.reconfigure(encoding="utf-8")


def write_raw(units: array.array) -> None:
    # Always little endian, regardless of what the CPU uses
    if sys.byteorder == "big":
        units = array.array("H", units)
        units.byteswap()
    sys.stdout.flush()
    sys.stdout.buffer.write(units.tobytes() + b"\n\x00")
    sys.stdout.buffer.flush()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Convert UTF-8 input to UTF-16 and print it."
    )
    parser.add_argument(
        "sources",
        nargs="*",
        metavar="SOURCE",
        help="file, https:// URL or '-' for stdin (default: print demo text)",
    )
    parser.add_argument(
        "--backend",
        default=os.environ.get("UTF8TO16_BACKEND", "codec"),
        help=f"conversion backend, one of: {', '.join(utf8to16.BACKENDS)}"
        + " (default: $UTF8TO16_BACKEND or codec)",
    )
    parser.add_argument(
        "--raw",
        action="store_true",
        help="write UTF-16-LE bytes instead of text",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=10,
        help="timeout for https requests, in seconds (default: 10)",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)
    args = parser.parse_args(argv)

    global VERBOSITY
    VERBOSITY = args.verbose

    try:
        converter = utf8to16.Utf8ToUtf16Converter(args.backend)
    except (ValueError, RuntimeError) as e:
        sys.exit(f"Error: {e}")
    log(f"Using {converter.backend.name} backend")

    if not args.raw:
        configure_output_sink(sys.stdout)

    if args.sources:
        inputs = read_sources(args.sources, args.timeout)
    else:
        log("No sources given, printing demo text")
        inputs = iter(DEMO_INPUTS)

    for source, utf8 in inputs:
        log(f"{source}: read {len(utf8)} bytes")
        try:
            units = converter.convert(utf8)
        except utf8to16.ConversionError as e:
            code = "" if e.diagnostic_code is None else f", code {e.diagnostic_code}"
            sys.exit(f"Error: {source}: {e} [{e.kind.name}{code}]")
        log(f"{source}: converted to {len(units)} UTF-16 code units")

        if args.raw:
            write_raw(units)
        else:
            print(utf8to16.utf16_to_text(units), flush=True)


if __name__ == "__main__":
    main()
