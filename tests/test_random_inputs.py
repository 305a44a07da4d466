from __future__ import annotations

import random
import struct

import pytest

from utf8to16 import ConversionError, Utf8ToUtf16Converter

codec = Utf8ToUtf16Converter("codec")
scalar = Utf8ToUtf16Converter("scalar")


def outcome(converter, utf8):
    try:
        return list(converter.convert(utf8))
    except ConversionError as e:
        return (e.kind, e.diagnostic_code)


@pytest.mark.parametrize("seed", range(5))
def test_backends_agree_on_random_bytes(seed):
    rng = random.Random(seed)
    for i in range(500):
        # About half of the bytes are >= 0x80, lots of almost valid sequences
        length = rng.randint(1, 8)
        utf8 = bytes(
            rng.choice([rng.randint(0x80, 0xFF), rng.randint(0, 0x7F)])
            for _ in range(length)
        )
        assert outcome(codec, utf8) == outcome(scalar, utf8), utf8


@pytest.mark.parametrize("seed", range(5))
def test_random_valid_text(seed):
    rng = random.Random(seed)
    for i in range(200):
        # Ignoring errors gives a valid string with characters from all planes
        string = rng.randbytes(100).decode("utf-16-le", errors="ignore")
        string += rng.randbytes(100).decode("utf-8", errors="ignore")
        u16_bytes = string.encode("utf-16-le")
        expected = list(struct.unpack("<" + "H" * (len(u16_bytes) // 2), u16_bytes))

        utf8 = string.encode("utf-8")
        assert list(codec.convert(utf8)) == expected
        assert list(scalar.convert(utf8)) == expected


def test_code_points_near_encoding_boundaries():
    boundaries = [0x80, 0x800, 0xD800, 0xE000, 0x10000, 0x110000]
    code_points = set(range(0, 0x110000, 251))
    for boundary in boundaries:
        code_points.update(range(boundary - 3, min(boundary + 3, 0x110000)))

    for cp in sorted(code_points):
        if 0xD800 <= cp <= 0xDFFF:
            continue
        utf8 = chr(cp).encode("utf-8")
        result = outcome(scalar, utf8)
        assert isinstance(result, list), hex(cp)
        assert result == outcome(codec, utf8)
