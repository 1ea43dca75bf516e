"""Target platform helpers.

Platform identifiers are plain ``<os>-<arch>`` strings in the form Node.js
uses for its release archives (e.g. ``linux-x64``, ``darwin-arm64``,
``win-x64``). They are treated as opaque keys: the only inspection done on
them is a ``darwin`` / ``win`` prefix check that selects platform specific
behavior (archive format, unsigning, signing eligibility).
"""

import platform as _platform
import sys


class TargetResolutionError(ValueError):
    """Raised when a requested platform identifier is unusable."""


ZIP: str = "zip"
TAR_XZ: str = "tar.xz"

_ARCH_MAP: dict[str, str] = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "armv7l",
    "i386": "x86",
    "i686": "x86",
    "x86": "x86",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}


def host_platform(*, system: str | None = None, machine: str | None = None) -> str:
    """Return the platform identifier of the running host.

    :param system: Raw OS identifier override (defaults to ``sys.platform``).
    :param machine: Raw machine identifier override (defaults to ``platform.machine()``).
    :returns: Platform identifier such as ``linux-x64``.
    """

    os_name: str = system if system is not None else sys.platform
    if os_name == "win32":
        os_name = "win"

    raw_arch: str = machine if machine is not None else _platform.machine()
    arch: str = _ARCH_MAP.get(raw_arch.lower(), raw_arch.lower())
    return f"{os_name}-{arch}"


def resolve_platforms(platforms: list[str] | None) -> list[str]:
    """Resolve the user-requested platform list.

    Defaults to the host platform. Duplicates are dropped, first occurrence wins.

    :param platforms: Requested platform identifiers (may be ``None`` or empty).
    :returns: Ordered list of unique platform identifiers.
    :raises TargetResolutionError: If an identifier is not of the form ``<os>-<arch>``.
    """

    if platforms is None or len(platforms) == 0:
        return [host_platform()]

    resolved: list[str] = []
    for p in platforms:
        value: str = p.strip()
        os_part, sep, arch_part = value.partition("-")
        if sep == "" or len(os_part) == 0 or len(arch_part) == 0:
            raise TargetResolutionError(
                f"Invalid platform {p!r}; expected '<os>-<arch>' (e.g. linux-x64, darwin-arm64, win-x64)."
            )
        if value not in resolved:
            resolved.append(value)
    return resolved


def is_darwin(platform: str) -> bool:
    return platform.startswith("darwin")


def is_windows(platform: str) -> bool:
    return platform.startswith("win")


def archive_format(platform: str) -> str:
    """Return the release archive format used for a platform.

    Windows runtimes ship as ZIP, everything else as TAR+XZ.

    :param platform: Platform identifier.
    :returns: :data:`ZIP` or :data:`TAR_XZ`.
    """

    if is_windows(platform) is True:
        return ZIP
    return TAR_XZ


def executable_suffix(platform: str) -> str:
    if is_windows(platform) is True:
        return ".exe"
    return ""


def runtime_dir_name(version: str, platform: str) -> str:
    return f"node-v{version}-{platform}"


def runtime_archive_name(version: str, platform: str) -> str:
    """Return the release archive file name for a version/platform.

    :param version: Resolved ``major.minor.patch`` version.
    :param platform: Platform identifier.
    :returns: File name like ``node-v22.11.0-linux-x64.tar.xz``.
    """

    return f"{runtime_dir_name(version, platform)}.{archive_format(platform)}"


def runtime_entry_name(version: str, platform: str) -> str:
    """Return the path of the runtime executable inside the release archive.

    Archive entry names always use ``/`` regardless of the host separator.

    :param version: Resolved ``major.minor.patch`` version.
    :param platform: Platform identifier.
    :returns: Entry name like ``node-v22.11.0-linux-x64/bin/node``.
    """

    root: str = runtime_dir_name(version, platform)
    if is_windows(platform) is True:
        return f"{root}/node.exe"
    return f"{root}/bin/node"


def cache_file_name(version: str, platform: str) -> str:
    return f"{runtime_dir_name(version, platform)}{executable_suffix(platform)}"
