"""Blob injection into runtime binaries via postject."""

import asyncio
import os
import pathlib
from typing import Protocol

from fossilize.process import ProcessRunner


POSTJECT_COMMAND: tuple[str, ...] = ("npx", "--yes", "postject")


class Injector(Protocol):
    async def inject(
        self,
        binary: pathlib.Path,
        blob_name: str,
        blob: bytes,
        *,
        sentinel_fuse: str,
        macho_segment_name: str | None = None,
    ) -> None: ...


class PostjectInjector:
    """Embed a named blob into a binary in place using the postject CLI.

    :param runner: Process runner.
    :param command: Command used to invoke postject.
    """

    def __init__(self, *, runner: ProcessRunner, command: tuple[str, ...] = POSTJECT_COMMAND) -> None:
        self.runner: ProcessRunner = runner
        self.command: tuple[str, ...] = command

    async def inject(
        self,
        binary: pathlib.Path,
        blob_name: str,
        blob: bytes,
        *,
        sentinel_fuse: str,
        macho_segment_name: str | None = None,
    ) -> None:
        """Inject ``blob`` into ``binary`` as resource ``blob_name``.

        :param binary: Binary to modify in place.
        :param blob_name: Resource name.
        :param blob: Resource bytes.
        :param sentinel_fuse: Fuse string postject flips inside the binary.
        :param macho_segment_name: Mach-O segment for the resource (macOS only).
        :raises ProcessError: If postject fails.
        """

        # One resource file per binary; pipelines for different platforms run concurrently.
        resource: pathlib.Path = binary.with_name(f"{binary.name}.{blob_name.lower()}")
        await asyncio.to_thread(resource.write_bytes, blob)
        args: list[str] = [
            *self.command[1:],
            str(binary),
            blob_name,
            str(resource),
            "--sentinel-fuse",
            sentinel_fuse,
        ]
        if macho_segment_name is not None:
            args.extend(["--macho-segment-name", macho_segment_name])
        try:
            await self.runner.run(self.command[0], *args)
        finally:
            try:
                await asyncio.to_thread(os.remove, resource)
            except OSError as e:
                self.runner.logger.warning(f"fossilize: failed to remove {resource}: {e}")
