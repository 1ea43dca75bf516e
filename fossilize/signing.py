"""macOS signing and notarization.

Signing is done with ``rcodesign`` using credentials from the environment:

- ``APPLE_TEAM_ID``, ``APPLE_CERT_PATH``, ``APPLE_CERT_PASSWORD``: required
  once signing is requested.
- ``APPLE_API_KEY_PATH``: optional; enables notarization.
"""

from collections.abc import Mapping
from dataclasses import dataclass
import asyncio
import logging
import os
import pathlib
import zipfile

from fossilize.process import ProcessRunner
from fossilize.target import is_darwin, is_windows


RCODESIGN: str = "rcodesign"
ENTITLEMENTS_PLIST: pathlib.Path = pathlib.Path(__file__).parent / "data" / "entitlements.plist"


class MissingCredentialsError(RuntimeError):
    """Raised when signing is requested but required secrets are absent."""


@dataclass(frozen=True, slots=True)
class SigningCredentials:
    """Apple signing and notarization secrets.

    :ivar team_id: Apple team identifier.
    :ivar cert_path: Path to the ``.p12`` signing certificate.
    :ivar cert_password: Password of the certificate.
    :ivar api_key_path: Path to the App Store Connect API key (notarization).
    """

    team_id: str | None = None
    cert_path: str | None = None
    cert_password: str | None = None
    api_key_path: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SigningCredentials":
        if environ is None:
            environ = os.environ
        return cls(
            team_id=environ.get("APPLE_TEAM_ID") or None,
            cert_path=environ.get("APPLE_CERT_PATH") or None,
            cert_password=environ.get("APPLE_CERT_PASSWORD") or None,
            api_key_path=environ.get("APPLE_API_KEY_PATH") or None,
        )

    def missing_for_signing(self) -> list[str]:
        missing: list[str] = []
        if self.team_id is None:
            missing.append("APPLE_TEAM_ID")
        if self.cert_path is None:
            missing.append("APPLE_CERT_PATH")
        if self.cert_password is None:
            missing.append("APPLE_CERT_PASSWORD")
        return missing


def _zip_binary(binary: pathlib.Path, zip_path: pathlib.Path) -> None:
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.write(binary, arcname=binary.name)


async def sign_binary(
    *,
    runner: ProcessRunner,
    binary: pathlib.Path,
    platform: str,
    credentials: SigningCredentials,
    logger: logging.Logger,
    command: str = RCODESIGN,
) -> None:
    """Sign (and, with an API key, notarize) a fabricated binary.

    Windows signing is not supported and only warns. Platforms other than
    macOS and Windows need no signing.

    :param runner: Process runner.
    :param binary: Binary to sign in place.
    :param platform: Platform identifier.
    :param credentials: Signing secrets.
    :param logger: Logger for progress output.
    :param command: Signing tool executable.
    :raises MissingCredentialsError: If macOS signing secrets are missing.
    :raises ProcessError: If signing or notarization fails.
    """

    if is_windows(platform) is True:
        logger.warning(
            f"fossilize: [{platform}] signing is not supported on Windows, you will need to sign the binary yourself."
        )
        return

    if is_darwin(platform) is False:
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"fossilize: [{platform}] no signing needed")
        return

    missing: list[str] = credentials.missing_for_signing()
    if len(missing) > 0:
        raise MissingCredentialsError(
            f"Missing required environment variables for macOS signing: {', '.join(missing)}"
        )

    logger.info(f"fossilize: [{platform}] signing {binary}")
    await runner.run(
        command,
        "sign",
        "--team-name",
        str(credentials.team_id),
        "--p12-file",
        str(credentials.cert_path),
        "--p12-password",
        str(credentials.cert_password),
        "--for-notarization",
        "-e",
        str(ENTITLEMENTS_PLIST),
        str(binary),
        secrets=(str(credentials.cert_password),),
    )

    if credentials.api_key_path is None:
        logger.warning(
            f"fossilize: [{platform}] APPLE_API_KEY_PATH is not set, skipping notarization; "
            "people running this binary will get Gatekeeper warnings."
        )
        return

    zip_path: pathlib.Path = binary.with_name(f"{binary.name}.zip")
    await asyncio.to_thread(_zip_binary, binary, zip_path)
    try:
        logger.info(f"fossilize: [{platform}] submitting {zip_path} for notarization")
        await runner.run(command, "notary-submit", "--api-key-file", credentials.api_key_path, "--wait", str(zip_path))
    finally:
        try:
            zip_path.unlink()
        except OSError as e:
            logger.warning(f"fossilize: [{platform}] failed to remove {zip_path}: {e}")
