"""External process runner.

Every external tool (blob generator, bundler, injector, signing and
notarization) is invoked through :class:`ProcessRunner` so failure formatting
and logging are the same everywhere.
"""

import asyncio
import logging
import os


class ProcessError(RuntimeError):
    """Raised when an external process exits non-zero or cannot be spawned.

    :ivar command: Full command line (executable + arguments), secrets redacted.
    :ivar returncode: Exit code, or ``None`` if the process never ran.
    :ivar stdout: Captured standard output.
    :ivar stderr: Captured standard error (or the spawn error text).
    """

    def __init__(self, command: list[str], returncode: int | None, stdout: str, stderr: str) -> None:
        self.command: list[str] = command
        self.returncode: int | None = returncode
        self.stdout: str = stdout
        self.stderr: str = stderr

        joined: str = " ".join(command)
        if returncode is None:
            message: str = f"Failed to run `{joined}`: {stderr.strip()}"
        else:
            message = f"Failed to run `{joined}` (exit={returncode})"
            details: str = (stderr.strip() or stdout.strip())[-2000:]
            if len(details) > 0:
                message = f"{message}\n{details}"
        super().__init__(message)


def _redact(cmd: list[str], secrets: tuple[str, ...]) -> list[str]:
    if len(secrets) == 0:
        return cmd
    return ["***" if part in secrets else part for part in cmd]


class ProcessRunner:
    """Run external executables asynchronously and capture their output.

    :param logger: Logger for invocation output.
    :param env: Optional environment for child processes (defaults to ours).
    """

    def __init__(self, *, logger: logging.Logger | None = None, env: dict[str, str] | None = None) -> None:
        if logger is None:
            logger = logging.getLogger("fossilize")
        self.logger: logging.Logger = logger
        self.env: dict[str, str] | None = env

    async def run(
        self,
        command: str,
        *args: str,
        cwd: str | os.PathLike[str] | None = None,
        secrets: tuple[str, ...] = (),
    ) -> str:
        """Run ``command`` with ``args`` and return its standard output.

        :param command: Executable name or path.
        :param args: Arguments.
        :param cwd: Optional working directory.
        :param secrets: Argument values to mask in logs and errors.
        :returns: Captured stdout (decoded as UTF-8).
        :raises ProcessError: If the process cannot be spawned or exits non-zero.
        """

        cmd: list[str] = [command, *args]
        shown: list[str] = _redact(cmd, secrets)
        if self.logger.isEnabledFor(logging.DEBUG) is True:
            self.logger.debug(f"fossilize: running {' '.join(shown)}")

        try:
            proc: asyncio.subprocess.Process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=self.env,
            )
        except OSError as e:
            raise ProcessError(shown, None, "", str(e)) from e

        try:
            out_bytes, err_bytes = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        stdout: str = out_bytes.decode("utf-8", errors="replace")
        stderr: str = err_bytes.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            raise ProcessError(shown, proc.returncode, stdout, stderr)

        if len(stdout.strip()) > 0:
            self.logger.info(stdout.rstrip())
        else:
            self.logger.info(f"> {' '.join(shown)}")
        return stdout
