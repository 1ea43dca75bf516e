"""Single-entry extraction from Node.js release archives.

Only one file (the runtime executable) is ever needed from a release
archive, so these helpers pull exactly one entry out and keep nothing else
in memory.
"""

import lzma
import os
import tarfile
from typing import BinaryIO
import zipfile


_CHUNK: int = 1024 * 1024


class EntryNotFoundError(LookupError):
    """Raised when an archive ends without containing the requested entry."""


def extract_zip_entry(archive_path: str | os.PathLike[str], entry_name: str) -> bytes:
    """Extract one entry from a ZIP archive on disk.

    The central directory is read first; only the matching entry is ever
    decompressed.

    :param archive_path: ZIP file path.
    :param entry_name: ``/``-separated entry name, matched exactly.
    :returns: Entry contents.
    :raises EntryNotFoundError: If no entry has that name.
    :raises zipfile.BadZipFile: If the archive is corrupt.
    """

    with zipfile.ZipFile(archive_path, "r") as zf:
        for info in zf.infolist():
            if info.filename != entry_name:
                continue
            with zf.open(info, "r") as f:
                return f.read()

    raise EntryNotFoundError(f'File "{entry_name}" not found in zip archive: {archive_path}')


def extract_tar_xz_entry(stream: BinaryIO, entry_name: str) -> bytes:
    """Extract one entry from a forward-only TAR+XZ byte stream.

    The stream is piped through an XZ decompressor into a streaming TAR
    reader. Every member body is drained, and the whole stream is consumed
    before returning, so the decompressor always reaches its end-of-stream
    marker (a truncated download surfaces as an error instead of a short
    read).

    :param stream: Readable binary stream positioned at the start of the archive.
    :param entry_name: ``/``-separated entry name, matched exactly.
    :returns: Entry contents.
    :raises EntryNotFoundError: If the archive ends without that entry.
    :raises lzma.LZMAError: If the XZ data is corrupt.
    :raises EOFError: If the XZ stream is truncated.
    :raises tarfile.TarError: If the TAR data is corrupt.
    """

    result: bytes | None = None
    with lzma.LZMAFile(stream, "rb") as xz:
        with tarfile.open(fileobj=xz, mode="r|") as archive:
            for member in archive:
                # Links cannot be opened from a stream; they carry no body anyway.
                if member.isfile() is False:
                    continue
                body = archive.extractfile(member)
                if body is None:
                    continue
                if member.name == entry_name:
                    result = body.read()
                    continue
                while len(body.read(_CHUNK)) > 0:
                    pass

        # Trailing record padding after the end-of-archive blocks.
        while len(xz.read(_CHUNK)) > 0:
            pass

    if result is None:
        raise EntryNotFoundError(f'File "{entry_name}" not found in tar archive.')
    return result
