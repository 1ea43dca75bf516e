"""Tests for single-entry archive extraction."""

import io
import lzma
import pathlib

import pytest

from conftest import build_tar_xz, build_zip
from fossilize.archive import EntryNotFoundError, extract_tar_xz_entry, extract_zip_entry


ENTRY = "node-v22.11.0-linux-x64/bin/node"
PAYLOAD = b"\x7fELF" + bytes(range(256)) * 64


class CountingStream(io.BytesIO):
    def __init__(self, data: bytes) -> None:
        super().__init__(data)
        self.size = len(data)


def test_tar_xz_entry_is_extracted() -> None:
    archive = build_tar_xz(
        {
            "node-v22.11.0-linux-x64/README.md": b"readme",
            ENTRY: PAYLOAD,
            "node-v22.11.0-linux-x64/lib/node_modules/npm/index.js": b"x" * 5000,
        }
    )
    stream = CountingStream(archive)
    assert extract_tar_xz_entry(stream, ENTRY) == PAYLOAD
    # The whole stream is consumed even after the entry was found.
    assert stream.tell() == stream.size


def test_tar_xz_missing_entry_reads_whole_stream() -> None:
    stream = CountingStream(build_tar_xz({"node-v22.11.0-linux-x64/README.md": b"readme"}))
    with pytest.raises(EntryNotFoundError):
        extract_tar_xz_entry(stream, ENTRY)
    assert stream.tell() == stream.size


def test_tar_xz_skips_links() -> None:
    archive = build_tar_xz(
        {ENTRY: PAYLOAD},
        symlinks={"node-v22.11.0-linux-x64/bin/npm": "../lib/node_modules/npm/bin/npm-cli.js"},
    )
    assert extract_tar_xz_entry(io.BytesIO(archive), ENTRY) == PAYLOAD


def test_tar_xz_match_is_exact() -> None:
    archive = build_tar_xz({"prefix/" + ENTRY: PAYLOAD})
    with pytest.raises(EntryNotFoundError):
        extract_tar_xz_entry(io.BytesIO(archive), ENTRY)


def test_tar_xz_corrupt_stream_fails() -> None:
    with pytest.raises(lzma.LZMAError):
        extract_tar_xz_entry(io.BytesIO(b"definitely not xz data"), ENTRY)


def test_zip_entry_is_extracted(tmp_path: pathlib.Path) -> None:
    entry = "node-v22.11.0-win-x64/node.exe"
    archive = tmp_path / "node.zip"
    archive.write_bytes(build_zip({"node-v22.11.0-win-x64/npm.cmd": b"@echo off", entry: PAYLOAD}))
    assert extract_zip_entry(archive, entry) == PAYLOAD


def test_zip_missing_entry(tmp_path: pathlib.Path) -> None:
    archive = tmp_path / "node.zip"
    archive.write_bytes(build_zip({"node-v22.11.0-win-x64/npm.cmd": b"@echo off"}))
    with pytest.raises(EntryNotFoundError):
        extract_zip_entry(archive, "node-v22.11.0-win-x64/node.exe")


def test_same_bytes_from_either_format(tmp_path: pathlib.Path) -> None:
    zip_path = tmp_path / "node.zip"
    zip_path.write_bytes(build_zip({ENTRY: PAYLOAD}))
    from_zip = extract_zip_entry(zip_path, ENTRY)
    from_tar = extract_tar_xz_entry(io.BytesIO(build_tar_xz({ENTRY: PAYLOAD})), ENTRY)
    assert from_zip == from_tar == PAYLOAD
