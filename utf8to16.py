"""Strict conversion from UTF-8 bytes to UTF-16 code units.

The result is an array of 16-bit code units in native byte order, which is
what Windows APIs and many file formats want. Invalid UTF-8 is never replaced
with U+FFFD or skipped: you either get the exact result or ConversionError.

The actual decoding is done by a "backend". The converter asks the backend how
many code units the result needs, allocates exactly that much, and then asks
the backend to fill it. This is the same dance you would do with Windows
MultiByteToWideChar(), and the win32 backend does exactly that.
"""

from __future__ import annotations

import array
import codecs
import ctypes
import enum
import sys
from typing import Iterator, Sequence


# Largest value of a signed 32-bit int. MultiByteToWideChar() takes the input
# length as an int, so anything longer would wrap around to a negative number.
MAX_INPUT_LENGTH = 2**31 - 1

# Win32 error codes. The pure Python backends report these too, so that
# diagnostic codes mean the same thing no matter which backend is used.
ERROR_INSUFFICIENT_BUFFER = 122
ERROR_NO_UNICODE_TRANSLATION = 1113

_NATIVE_UTF16 = "utf-16-le" if sys.byteorder == "little" else "utf-16-be"


class ErrorKind(enum.Enum):
    INPUT_TOO_LARGE = "input too large"
    INVALID_UTF8_SEQUENCE = "invalid UTF-8 sequence"
    MEASUREMENT_FAILED = "measurement failed"
    CONVERSION_FAILED = "conversion failed"


class ConversionError(ValueError):
    """Converting from UTF-8 to UTF-16 failed.

    The diagnostic code comes from the backend (a Win32 error code), and is
    None when the converter itself detected the problem.
    """

    def __init__(self, kind: ErrorKind, message: str, diagnostic_code: int | None = None):
        super().__init__(message)
        self._kind = kind
        self._diagnostic_code = diagnostic_code

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def diagnostic_code(self) -> int | None:
        return self._diagnostic_code

    def __repr__(self) -> str:
        return f"ConversionError({self._kind}, {str(self)!r}, {self._diagnostic_code!r})"

    def __reduce__(self):
        # args only holds the message, so the default would lose kind and code
        return (type(self), (self._kind, str(self), self._diagnostic_code))


class BackendFailure(Exception):
    """Raised by backends. The converter turns these into ConversionError."""

    def __init__(self, code: int | None, detail: str = ""):
        super().__init__(detail or f"error code {code}")
        self.code = code
        self.detail = detail


class Backend:
    name = ""

    def measure(self, utf8: bytes) -> int:
        """Return the number of UTF-16 code units needed for the UTF-8 input."""
        raise NotImplementedError

    def fill(self, utf8: bytes, units: array.array) -> int:
        """Decode into units and return how many code units were written.

        The length of units is whatever measure() returned.
        """
        raise NotImplementedError


class CodecBackend(Backend):
    """Uses Python's own strict UTF-8 codec."""

    name = "codec"

    def _decode(self, utf8: bytes) -> str:
        try:
            return codecs.decode(utf8, "utf-8", "strict")
        except UnicodeDecodeError as e:
            raise BackendFailure(
                ERROR_NO_UNICODE_TRANSLATION, f"{e.reason} at byte {e.start}"
            ) from e

    def measure(self, utf8: bytes) -> int:
        return len(self._decode(utf8).encode(_NATIVE_UTF16)) // 2

    def fill(self, utf8: bytes, units: array.array) -> int:
        encoded = self._decode(utf8).encode(_NATIVE_UTF16)
        if len(encoded) > 2 * len(units):
            raise BackendFailure(ERROR_INSUFFICIENT_BUFFER, "output buffer is too small")
        memoryview(units).cast("B")[: len(encoded)] = encoded
        return len(encoded) // 2


# Valid range of the second byte, for lead bytes where it isn't 0x80-0xBF.
# This is what rules out overlong forms, surrogates and values above U+10FFFF.
_SECOND_BYTE_RANGES = {
    0xE0: (0xA0, 0xBF),
    0xED: (0x80, 0x9F),
    0xF0: (0x90, 0xBF),
    0xF4: (0x80, 0x8F),
}


def _invalid(message: str) -> BackendFailure:
    return BackendFailure(ERROR_NO_UNICODE_TRANSLATION, message)


def _scalar_values(utf8: bytes) -> Iterator[int]:
    i = 0
    while i < len(utf8):
        byte = utf8[i]
        if byte < 0x80:
            yield byte
            i += 1
            continue

        if 0xC2 <= byte <= 0xDF:
            size = 2
        elif 0xE0 <= byte <= 0xEF:
            size = 3
        elif 0xF0 <= byte <= 0xF4:
            size = 4
        else:
            raise _invalid(f"invalid start byte 0x{byte:02x} at byte {i}")

        tail = utf8[i + 1 : i + size]
        for index, continuation in enumerate(tail):
            if index == 0:
                lo, hi = _SECOND_BYTE_RANGES.get(byte, (0x80, 0xBF))
            else:
                lo, hi = 0x80, 0xBF
            if not lo <= continuation <= hi:
                raise _invalid(f"invalid continuation byte at byte {i + 1 + index}")
        if len(tail) < size - 1:
            raise _invalid(f"unexpected end of data at byte {i}")

        codepoint = byte & (0x7F >> size)
        for continuation in tail:
            codepoint = (codepoint << 6) | (continuation & 0x3F)
        yield codepoint
        i += size


class ScalarBackend(Backend):
    """Decodes one scalar value at a time, without help from Python's codecs."""

    name = "scalar"

    def measure(self, utf8: bytes) -> int:
        return sum(2 if cp > 0xFFFF else 1 for cp in _scalar_values(utf8))

    def fill(self, utf8: bytes, units: array.array) -> int:
        count = 0
        for cp in _scalar_values(utf8):
            if cp > 0xFFFF:
                # Surrogate pair
                cp -= 0x10000
                new_units = [0xD800 + (cp >> 10), 0xDC00 + (cp & 0x3FF)]
            else:
                new_units = [cp]

            if count + len(new_units) > len(units):
                raise BackendFailure(ERROR_INSUFFICIENT_BUFFER, "output buffer is too small")
            for unit in new_units:
                units[count] = unit
                count += 1
        return count


class Win32Backend(Backend):
    """Calls MultiByteToWideChar() from kernel32.dll. Windows only."""

    name = "win32"

    CP_UTF8 = 65001
    MB_ERR_INVALID_CHARS = 0x08

    def __init__(self) -> None:
        if sys.platform != "win32":
            raise RuntimeError("the win32 backend only works on Windows")

        kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)  # type: ignore[attr-defined]
        self._func = kernel32.MultiByteToWideChar
        self._func.argtypes = [
            ctypes.c_uint,  # CodePage
            ctypes.c_uint32,  # dwFlags
            ctypes.c_char_p,  # lpMultiByteStr
            ctypes.c_int,  # cbMultiByte
            ctypes.c_void_p,  # lpWideCharStr
            ctypes.c_int,  # cchWideChar
        ]
        self._func.restype = ctypes.c_int

    def _call(self, utf8: bytes, address: int | None, size: int) -> int:
        result = self._func(
            self.CP_UTF8, self.MB_ERR_INVALID_CHARS, utf8, len(utf8), address, size
        )
        if result == 0:
            code = ctypes.get_last_error()  # type: ignore[attr-defined]
            raise BackendFailure(code, f"MultiByteToWideChar failed with error {code}")
        return result

    def measure(self, utf8: bytes) -> int:
        # No output buffer, just ask for the size
        return self._call(utf8, None, 0)

    def fill(self, utf8: bytes, units: array.array) -> int:
        if not units:
            raise BackendFailure(ERROR_INSUFFICIENT_BUFFER, "output buffer is empty")
        address, length = units.buffer_info()
        return self._call(utf8, address, length)


BACKENDS: dict[str, type[Backend]] = {
    "codec": CodecBackend,
    "scalar": ScalarBackend,
    "win32": Win32Backend,
}


def get_backend(name: str) -> Backend:
    try:
        backend_class = BACKENDS[name]
    except KeyError:
        raise ValueError(
            f"unknown backend {name!r} (should be one of: {', '.join(BACKENDS)})"
        ) from None
    return backend_class()


def available_backends() -> list[str]:
    return [name for name in BACKENDS if name != "win32" or sys.platform == "win32"]


def _classify(
    failure: BackendFailure, otherwise: ErrorKind, message: str
) -> ConversionError:
    if failure.code == ERROR_NO_UNICODE_TRANSLATION:
        message = "Invalid UTF-8 sequence found in input string"
        if failure.detail:
            message += f" ({failure.detail})"
        return ConversionError(ErrorKind.INVALID_UTF8_SEQUENCE, message, failure.code)
    return ConversionError(otherwise, f"{message} ({failure})", failure.code)


class Utf8ToUtf16Converter:
    def __init__(
        self, backend: Backend | str = "codec", max_input_length: int = MAX_INPUT_LENGTH
    ):
        if isinstance(backend, str):
            backend = get_backend(backend)
        self.backend = backend
        if not 0 <= max_input_length <= MAX_INPUT_LENGTH:
            raise ValueError(
                f"max_input_length must be between 0 and {MAX_INPUT_LENGTH}, "
                f"not {max_input_length}"
            )
        self.max_input_length = max_input_length

    def __repr__(self) -> str:
        return (
            f"Utf8ToUtf16Converter(backend={self.backend.name!r}, "
            f"max_input_length={self.max_input_length})"
        )

    def convert(self, utf8: bytes | bytearray | memoryview) -> array.array:
        """Convert UTF-8 bytes to an array of UTF-16 code units ("H" typecode).

        Raises ConversionError if the input is too long or isn't valid UTF-8.
        Zero bytes in the input are data, not terminators.
        """
        # Raises TypeError for str and other things that aren't bytes
        with memoryview(utf8) as view:
            length = view.nbytes
        if length == 0:
            return array.array("H")

        if length > self.max_input_length:
            raise ConversionError(
                ErrorKind.INPUT_TOO_LARGE,
                f"Input string too long: {length} bytes, "
                f"at most {self.max_input_length} are supported",
            )

        # Copy, so that the caller can't change it while we are decoding
        data = bytes(utf8)

        try:
            unit_count = self.backend.measure(data)
        except BackendFailure as e:
            raise _classify(
                e,
                ErrorKind.MEASUREMENT_FAILED,
                "Cannot get result string length when converting from UTF-8 to UTF-16",
            ) from e
        if unit_count <= 0:
            raise ConversionError(
                ErrorKind.MEASUREMENT_FAILED,
                "Cannot get result string length when converting from UTF-8 to UTF-16"
                + f" ({self.backend.name} backend returned {unit_count})",
            )

        units = array.array("H", bytes(2 * unit_count))

        try:
            written = self.backend.fill(data, units)
        except BackendFailure as e:
            raise _classify(
                e, ErrorKind.CONVERSION_FAILED, "Cannot convert from UTF-8 to UTF-16"
            ) from e
        if written != unit_count:
            raise ConversionError(
                ErrorKind.CONVERSION_FAILED,
                "Cannot convert from UTF-8 to UTF-16"
                + f" ({self.backend.name} backend wrote {written} of {unit_count} code units)",
            )
        # array.array can be resized, so don't trust the count alone
        if len(units) != unit_count:
            raise ConversionError(
                ErrorKind.CONVERSION_FAILED,
                "Cannot convert from UTF-8 to UTF-16"
                + f" ({self.backend.name} backend resized the buffer from"
                + f" {unit_count} to {len(units)} code units)",
            )

        return units


_default_converter = Utf8ToUtf16Converter()


def convert(utf8: bytes | bytearray | memoryview) -> array.array:
    return _default_converter.convert(utf8)


def utf16_to_text(units: Sequence[int]) -> str:
    if not isinstance(units, array.array) or units.typecode != "H":
        units = array.array("H", units)
    return units.tobytes().decode(_NATIVE_UTF16)
