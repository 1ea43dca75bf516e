"""Code signature stripping for runtime binaries.

macOS and Windows Node.js releases ship signed. Injecting a blob invalidates
that signature, so the cached copy is unsigned once, right after download,
and can be re-signed after injection.
"""

import array
import os
import struct
import sys

from macholib.MachO import MachO
from macholib.mach_o import LC_CODE_SIGNATURE, LC_SEGMENT, LC_SEGMENT_64

from fossilize.target import is_darwin, is_windows


class UnsignError(RuntimeError):
    """Raised when a binary's signature cannot be stripped."""


def unsign_file(path: str | os.PathLike[str], platform: str) -> bool:
    """Strip the code signature of a runtime binary in place.

    :param path: Binary path.
    :param platform: Platform identifier the binary was built for.
    :returns: ``True`` if the platform needed unsigning, ``False`` otherwise.
    :raises UnsignError: If the binary is malformed or carries no signature.
    """

    if is_darwin(platform) is True:
        unsign_macho(path)
        return True
    if is_windows(platform) is True:
        unsign_pe(path)
        return True
    return False


def unsign_macho(path: str | os.PathLike[str]) -> None:
    """Remove ``LC_CODE_SIGNATURE`` from every slice of a Mach-O file.

    Thin binaries are truncated at the signature; in fat binaries the
    signature bytes are zeroed so slice offsets stay valid.

    :param path: Mach-O file (thin or fat).
    :raises UnsignError: If the file is not Mach-O or is not signed.
    """

    try:
        macho: MachO = MachO(os.fspath(path))
    except (ValueError, struct.error) as e:
        raise UnsignError(f"Failed to unsign macOS binary {path}: {e}") from e

    # (absolute offset, size) of every signature blob removed.
    removed: list[tuple[int, int]] = []
    for header in macho.headers:
        signature = None
        for command in header.commands:
            if command[0].cmd == LC_CODE_SIGNATURE:
                signature = command
                break
        if signature is None:
            continue

        load_cmd, sig_cmd, _ = signature
        header.commands.remove(signature)
        header.header.ncmds -= 1
        header.changedHeaderSizeBy(-load_cmd.cmdsize)

        for lc, seg, _ in header.commands:
            if lc.cmd not in (LC_SEGMENT, LC_SEGMENT_64):
                continue
            if seg.segname.rstrip(b"\x00") != b"__LINKEDIT":
                continue
            if seg.fileoff + seg.filesize == sig_cmd.dataoff + sig_cmd.datasize:
                seg.filesize = sig_cmd.dataoff - seg.fileoff

        removed.append((header.offset + sig_cmd.dataoff, sig_cmd.datasize))

    if len(removed) == 0:
        raise UnsignError(f"Failed to unsign macOS binary {path}: no code signature found")

    with open(path, "r+b") as f:
        macho.write(f)
        if macho.fat is None:
            f.truncate(removed[0][0])
        else:
            for offset, size in removed:
                f.seek(offset)
                f.write(b"\x00" * size)


_PE32_MAGIC: int = 0x10B
_PE32_PLUS_MAGIC: int = 0x20B
_SECURITY_DIRECTORY: int = 4


def unsign_pe(path: str | os.PathLike[str]) -> None:
    """Remove the Authenticode certificate table from a PE file.

    Clears the security data directory, drops the certificate table and
    recomputes the optional header checksum.

    :param path: PE (``.exe``) file.
    :raises UnsignError: If the file is not PE or is not signed.
    """

    with open(path, "rb") as f:
        data: bytearray = bytearray(f.read())

    if data[0:2] != b"MZ" or len(data) < 0x40:
        raise UnsignError(f"Failed to unsign Windows binary {path}: not a PE file")

    pe_off: int = struct.unpack_from("<I", data, 0x3C)[0]
    if data[pe_off : pe_off + 4] != b"PE\x00\x00":
        raise UnsignError(f"Failed to unsign Windows binary {path}: missing PE signature")

    opt_off: int = pe_off + 24
    magic: int = struct.unpack_from("<H", data, opt_off)[0]
    dirs_off: int
    if magic == _PE32_MAGIC:
        dirs_off = opt_off + 96
    elif magic == _PE32_PLUS_MAGIC:
        dirs_off = opt_off + 112
    else:
        raise UnsignError(f"Failed to unsign Windows binary {path}: unknown optional header magic 0x{magic:x}")

    num_dirs: int = struct.unpack_from("<I", data, dirs_off - 4)[0]
    if num_dirs <= _SECURITY_DIRECTORY:
        raise UnsignError(f"Failed to unsign Windows binary {path}: no security directory")

    sec_off: int = dirs_off + _SECURITY_DIRECTORY * 8
    cert_addr, cert_size = struct.unpack_from("<II", data, sec_off)
    if cert_addr == 0 or cert_size == 0:
        raise UnsignError(f"Failed to unsign Windows binary {path}: no code signature found")
    if cert_addr + cert_size > len(data):
        raise UnsignError(f"Failed to unsign Windows binary {path}: certificate table out of bounds")

    struct.pack_into("<II", data, sec_off, 0, 0)
    if cert_addr + cert_size == len(data):
        del data[cert_addr:]
    else:
        data[cert_addr : cert_addr + cert_size] = bytes(cert_size)

    checksum_off: int = opt_off + 64
    struct.pack_into("<I", data, checksum_off, 0)
    struct.pack_into("<I", data, checksum_off, pe_checksum(data))

    with open(path, "wb") as f:
        f.write(data)


def pe_checksum(data: bytes | bytearray) -> int:
    """Compute the PE image checksum.

    The checksum field itself must already be zeroed.

    :param data: Whole PE image.
    :returns: Checksum value.
    """

    words: array.array = array.array("H")
    words.frombytes(bytes(data) + b"\x00" * (len(data) % 2))
    if sys.byteorder == "big":
        words.byteswap()

    total: int = sum(words)
    while total > 0xFFFF:
        total = (total & 0xFFFF) + (total >> 16)
    return (total + len(data)) & 0xFFFFFFFF
