"""Shared pytest fixtures: fake process runner, synthetic archives and binaries."""

import asyncio
import io
import logging
import pathlib
import struct
import tarfile
import zipfile

import pytest

from fossilize.process import ProcessError


class FakeRunner:
    """Records invocations instead of spawning processes.

    ``responder`` receives ``(command, args)`` and returns stdout, or raises.
    """

    def __init__(self, responder=None) -> None:
        self.logger: logging.Logger = logging.getLogger("fossilize.tests")
        self.calls: list[tuple[str, tuple[str, ...], tuple[str, ...]]] = []
        self.responder = responder

    async def run(self, command: str, *args: str, cwd=None, secrets: tuple[str, ...] = ()) -> str:
        self.calls.append((command, args, secrets))
        if self.responder is None:
            return ""
        return self.responder(command, args)


def failing_responder(stderr: str):
    def respond(command: str, args: tuple[str, ...]) -> str:
        raise ProcessError([command, *args], 1, "", stderr)

    return respond


def build_tar_xz(members: dict[str, bytes], *, symlinks: dict[str, str] | None = None) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:xz") as tf:
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tf.addfile(info)
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def build_zip(members: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return buf.getvalue()


PE_OFFSET: int = 0x40
PE_BODY_SIZE: int = 0x400
PE_CERT_SIZE: int = 0x80


def build_signed_pe() -> bytes:
    """A minimal PE32+ image with a certificate table appended at the end."""

    data = bytearray(PE_BODY_SIZE)
    data[0:2] = b"MZ"
    struct.pack_into("<I", data, 0x3C, PE_OFFSET)
    data[PE_OFFSET : PE_OFFSET + 4] = b"PE\x00\x00"
    # COFF header: machine (amd64), one section, optional header size.
    struct.pack_into("<HH", data, PE_OFFSET + 4, 0x8664, 1)
    struct.pack_into("<H", data, PE_OFFSET + 20, 240)

    opt_off = PE_OFFSET + 24
    struct.pack_into("<H", data, opt_off, 0x20B)
    struct.pack_into("<I", data, opt_off + 64, 0xDEADBEEF)
    struct.pack_into("<I", data, opt_off + 108, 16)
    struct.pack_into("<II", data, opt_off + 112 + 4 * 8, PE_BODY_SIZE, PE_CERT_SIZE)
    return bytes(data) + b"\xab" * PE_CERT_SIZE


MACHO_LINKEDIT_OFF: int = 0x1000
MACHO_SIG_OFF: int = 0x1100
MACHO_SIG_SIZE: int = 0x100


def build_signed_macho() -> bytes:
    """A minimal thin 64-bit Mach-O with ``__LINKEDIT`` ending in a code signature."""

    linkedit_size = MACHO_SIG_OFF + MACHO_SIG_SIZE - MACHO_LINKEDIT_OFF
    segment = struct.pack(
        "<II16sQQQQiiII",
        0x19,  # LC_SEGMENT_64
        72,
        b"__LINKEDIT",
        0x100000000,
        0x1000,
        MACHO_LINKEDIT_OFF,
        linkedit_size,
        1,
        1,
        0,
        0,
    )
    signature = struct.pack("<IIII", 0x1D, 16, MACHO_SIG_OFF, MACHO_SIG_SIZE)
    header = struct.pack(
        "<IiiIIIII",
        0xFEEDFACF,
        0x01000007,
        3,
        2,
        2,
        len(segment) + len(signature),
        0,
        0,
    )
    data = bytearray(MACHO_SIG_OFF + MACHO_SIG_SIZE)
    blob = header + segment + signature
    data[0 : len(blob)] = blob
    data[MACHO_SIG_OFF:] = b"\xcd" * MACHO_SIG_SIZE
    return bytes(data)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def test_logger() -> logging.Logger:
    """A logger that propagates to the root so ``caplog`` sees it."""

    logger = logging.getLogger("fossilize_tests")
    logger.setLevel(logging.DEBUG)
    logger.propagate = True
    return logger


@pytest.fixture
def sample_script(tmp_path: pathlib.Path) -> pathlib.Path:
    path = tmp_path / "sample.cjs"
    path.write_text('console.log("hello");\n', encoding="utf-8")
    return path


@pytest.fixture
def thread_calls(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    """Names of the callables handed to ``asyncio.to_thread``."""

    calls: list[str] = []
    real_to_thread = asyncio.to_thread

    async def recording_to_thread(func, /, *args, **kwargs):
        calls.append(getattr(func, "__name__", repr(func)))
        return await real_to_thread(func, *args, **kwargs)

    monkeypatch.setattr(asyncio, "to_thread", recording_to_thread)
    return calls
