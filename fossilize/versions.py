"""Node.js version resolution.

Turns a loose version alias (``lts``, ``latest``, ``local``, ``22``,
``v20.3``, ``22.11.0``) into an exact ``major.minor.patch`` string, using the
public release index when needed.
"""

from dataclasses import dataclass
import asyncio
import logging
import re
from typing import Any

import httpx

from fossilize.process import ProcessError, ProcessRunner


NODE_VERSIONS_INDEX_URL: str = "https://nodejs.org/download/release/index.json"
SEA_DOCS_URL: str = "https://nodejs.org/api/single-executable-applications.html"

EXACT: str = "exact"
PARTIAL: str = "partial"
ALIAS: str = "alias"
UNRECOGNIZED: str = "unrecognized"

_ALIASES: tuple[str, ...] = ("latest", "lts", "local")
_VERSION_RE: re.Pattern[str] = re.compile(
    r"^v?(?P<maj>\d+)(?:\.(?P<min>\d+))?(?:\.(?P<patch>\d+))?$",
    re.IGNORECASE,
)


class ResolutionError(RuntimeError):
    """Raised when a version alias cannot be resolved to a usable version."""


@dataclass(frozen=True, slots=True)
class VersionSpec:
    """Parsed form of a user-supplied version alias.

    :ivar kind: One of ``exact``, ``partial``, ``alias`` or ``unrecognized``.
    :ivar value: Normalized value (version without ``v``, prefix, alias name, or the raw text).
    """

    kind: str
    value: str


def parse_version_spec(text: str) -> VersionSpec:
    """Classify a version alias.

    :param text: Raw alias from the command line.
    :returns: Parsed :class:`VersionSpec`.
    """

    value: str = text.strip()
    lowered: str = value.lower()
    if lowered in _ALIASES:
        return VersionSpec(kind=ALIAS, value=lowered)

    m = _VERSION_RE.match(value)
    if m is None:
        return VersionSpec(kind=UNRECOGNIZED, value=value)

    bits: list[str] = [g for g in (m.group("maj"), m.group("min"), m.group("patch")) if g is not None]
    if len(bits) == 3:
        return VersionSpec(kind=EXACT, value=".".join(bits))
    return VersionSpec(kind=PARTIAL, value=".".join(bits))


def check_sea_support(version: str) -> None:
    """Reject versions that predate single executable application support.

    SEA landed in 18.16 and 19.7, so anything older is unusable.

    :param version: Exact ``major.minor.patch`` version.
    :raises ResolutionError: If the version is too old or malformed.
    """

    m = _VERSION_RE.match(version)
    if m is None or m.group("min") is None:
        raise ResolutionError(f"Malformed Node.js version: {version!r}")

    major: int = int(m.group("maj"))
    minor: int = int(m.group("min"))
    if major < 18 or (major == 18 and minor < 16) or (major == 19 and minor < 7):
        raise ResolutionError(f"Node.js version {version} does not support SEA.\nSee {SEA_DOCS_URL}")


class VersionResolver:
    """Resolve and memoize Node.js version aliases for one build run.

    Each distinct alias string is resolved at most once; concurrent callers
    asking for the same alias share the in-flight resolution, and the release
    index is fetched at most once per resolver.

    :param client: HTTP client used for the release index.
    :param runner: Process runner used to query the local ``node``.
    :param index_url: Release index URL.
    :param logger: Logger for progress output.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        runner: ProcessRunner,
        index_url: str = NODE_VERSIONS_INDEX_URL,
        logger: logging.Logger | None = None,
    ) -> None:
        if logger is None:
            logger = logging.getLogger("fossilize")
        self.client: httpx.AsyncClient = client
        self.runner: ProcessRunner = runner
        self.index_url: str = index_url
        self.logger: logging.Logger = logger
        self._resolutions: dict[str, asyncio.Future[str]] = {}
        self._index: asyncio.Future[list[dict[str, Any]]] | None = None

    async def resolve(self, alias: str) -> str:
        """Resolve ``alias`` to an exact ``major.minor.patch`` version.

        :param alias: Version alias.
        :returns: Exact version without a ``v`` prefix.
        :raises ResolutionError: If no usable version matches.
        """

        pending: asyncio.Future[str] | None = self._resolutions.get(alias)
        if pending is None:
            pending = asyncio.ensure_future(self._resolve(alias))
            self._resolutions[alias] = pending
        # A caller being cancelled (e.g. a platform deadline) must not cancel
        # the resolution other pipelines are waiting on.
        return await asyncio.shield(pending)

    async def _resolve(self, alias: str) -> str:
        spec: VersionSpec = parse_version_spec(alias)
        resolved: str
        if spec.kind == UNRECOGNIZED:
            raise ResolutionError(f"Unrecognized Node.js version: {alias!r}")
        if spec.kind == EXACT:
            resolved = spec.value
        elif spec.kind == ALIAS and spec.value == "local":
            resolved = await self._local_version()
        else:
            resolved = self._select(spec, await self._fetch_index())

        self.logger.info(f"fossilize: resolved Node.js version {alias!r} to {resolved}")
        check_sea_support(resolved)
        return resolved

    async def _local_version(self) -> str:
        try:
            out: str = await self.runner.run("node", "--version")
        except ProcessError as e:
            raise ResolutionError(f"Cannot determine the local Node.js version: {e}") from e

        spec: VersionSpec = parse_version_spec(out)
        if spec.kind != EXACT:
            raise ResolutionError(f"Unexpected `node --version` output: {out.strip()!r}")
        return spec.value

    def _fetch_index(self) -> asyncio.Future[list[dict[str, Any]]]:
        if self._index is None:
            self._index = asyncio.ensure_future(self._download_index())
        return asyncio.shield(self._index)

    async def _download_index(self) -> list[dict[str, Any]]:
        if self.logger.isEnabledFor(logging.DEBUG) is True:
            self.logger.debug(f"fossilize: fetching Node.js release index {self.index_url}")

        try:
            response: httpx.Response = await self.client.get(self.index_url)
        except httpx.HTTPError as e:
            raise ResolutionError(f"Failed to fetch {self.index_url}: {e}") from e

        if response.is_success is False:
            raise ResolutionError(
                f"Failed to fetch {self.index_url}: {response.status_code} {response.reason_phrase}"
            )

        try:
            payload: Any = response.json()
        except ValueError as e:
            raise ResolutionError(f"Malformed Node.js release index from: {self.index_url}") from e

        if isinstance(payload, list) is False or len(payload) == 0:
            raise ResolutionError(f"No available Node.js versions found from: {self.index_url}")

        entries: list[dict[str, Any]] = []
        for item in payload:
            if isinstance(item, dict) is False or isinstance(item.get("version"), str) is False:
                raise ResolutionError(f"Malformed Node.js release index from: {self.index_url}")
            entries.append(item)
        return entries

    def _select(self, spec: VersionSpec, entries: list[dict[str, Any]]) -> str:
        found: str | None = None
        if spec.kind == ALIAS and spec.value == "latest":
            found = entries[0]["version"]
        elif spec.kind == ALIAS and spec.value == "lts":
            for entry in entries:
                if bool(entry.get("lts")) is True:
                    found = entry["version"]
                    break
        else:
            prefix: str = f"v{spec.value}."
            for entry in entries:
                if entry["version"].startswith(prefix) is True:
                    found = entry["version"]
                    break

        if found is None:
            raise ResolutionError(f"No matching Node.js version found for: {spec.value} from: {self.index_url}")

        exact: VersionSpec = parse_version_spec(found)
        if exact.kind != EXACT:
            raise ResolutionError(f"Malformed version {found!r} in: {self.index_url}")
        return exact.value
