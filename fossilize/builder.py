"""Build orchestration.

A build run:

- resolves the entrypoint and the Node.js version (failing fast before any
  platform work),
- bundles the app with esbuild (unless ``--no-bundle``) and turns it into a
  SEA blob,
- fabricates one executable per platform concurrently: obtain the runtime
  binary, inject the blob, mark it executable, optionally sign/notarize.

Platform pipelines are isolated: a failure on one platform is recorded and
never cancels the others, but makes the run as a whole fail.
"""

from dataclasses import dataclass, field
import asyncio
import logging
import pathlib
import shutil
import time

import httpx

from fossilize.bundle import (
    SEA_BLOB,
    SEA_CONFIG_JSON,
    AppManifest,
    bundle_app,
    collect_assets,
    generate_blob,
    load_app_manifest,
    write_sea_config,
)
from fossilize.inject import POSTJECT_COMMAND, Injector, PostjectInjector
from fossilize.process import ProcessRunner
from fossilize.runtime import NODE_DIST_URL, RuntimeBinaryCache, make_executable
from fossilize.signing import SigningCredentials, sign_binary
from fossilize.target import host_platform, is_darwin, resolve_platforms
from fossilize.versions import NODE_VERSIONS_INDEX_URL, VersionResolver


SEA_BLOB_NAME: str = "NODE_SEA_BLOB"
NODE_SEA_FUSE: str = "fce680ab2cc467b6e072b8b5df1996b2"
MACHO_SEGMENT_NAME: str = "NODE_SEA"
ESBUILD_COMMAND: tuple[str, ...] = ("npx", "--yes", "esbuild")
DEFAULT_CONCURRENCY: int = 4


class BuildError(RuntimeError):
    """Raised when one or more platforms failed to build.

    :ivar report: Full report, including the platforms that succeeded.
    """

    def __init__(self, report: "BuildReport") -> None:
        self.report: BuildReport = report
        lines: list[str] = [f"{r.platform}: {r.error}" for r in report.failures]
        super().__init__("Build failed for:\n" + "\n".join(lines))


class PlatformTimeoutError(TimeoutError):
    """Raised when a platform pipeline exceeds its deadline."""


@dataclass(frozen=True, slots=True)
class BuildOptions:
    """Everything a build run needs.

    :ivar entrypoint: Script file or project directory (with ``package.json``).
    :ivar node_version: Node.js version alias.
    :ivar platforms: Target platforms (empty means the host platform).
    :ivar assets: Extra files to embed as SEA assets.
    :ivar asset_manifest: Optional Vite ``manifest.json`` to embed with its files.
    :ivar out_dir: Output directory (cleared at the start of the run).
    :ivar cache_dir: Runtime cache directory (defaults to ``.node-cache`` under the cwd).
    :ivar no_cache: Do not use a persistent runtime cache.
    :ivar no_bundle: Embed the entrypoint as is instead of bundling it.
    :ivar sign: Sign (and notarize) macOS binaries.
    :ivar concurrency: Maximum number of platform pipelines in flight.
    :ivar platform_timeout: Optional per-platform deadline in seconds.
    :ivar node_path: Node.js executable used to generate the blob.
    :ivar dist_url: Node.js distribution base URL.
    :ivar index_url: Node.js release index URL.
    :ivar esbuild_command: Command used to invoke esbuild.
    :ivar postject_command: Command used to invoke postject.
    :ivar node_env: Value substituted for ``process.env.NODE_ENV`` when bundling.
    :ivar http_timeout: Timeout in seconds for each HTTP operation.
    """

    entrypoint: pathlib.Path
    node_version: str = "lts"
    platforms: tuple[str, ...] = ()
    assets: tuple[pathlib.Path, ...] = ()
    asset_manifest: pathlib.Path | None = None
    out_dir: pathlib.Path = pathlib.Path("dist-bin")
    cache_dir: pathlib.Path | None = None
    no_cache: bool = False
    no_bundle: bool = False
    sign: bool = False
    concurrency: int = DEFAULT_CONCURRENCY
    platform_timeout: float | None = None
    node_path: pathlib.Path | None = None
    dist_url: str = NODE_DIST_URL
    index_url: str = NODE_VERSIONS_INDEX_URL
    esbuild_command: tuple[str, ...] = ESBUILD_COMMAND
    postject_command: tuple[str, ...] = POSTJECT_COMMAND
    node_env: str = "development"
    http_timeout: float = 30.0


@dataclass(frozen=True, slots=True)
class PlatformResult:
    """Outcome of one platform pipeline.

    :ivar platform: Platform identifier.
    :ivar output_path: Fabricated binary (``None`` on failure).
    :ivar error: Failure, if any.
    """

    platform: str
    output_path: pathlib.Path | None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class BuildReport:
    results: tuple[PlatformResult, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def failures(self) -> list[PlatformResult]:
        return [r for r in self.results if r.ok is False]


class PlatformBuildOrchestrator:
    """Run the per-platform fabrication pipeline across platforms.

    :param cache: Runtime binary cache.
    :param injector: Blob injector.
    :param runner: Process runner (signing).
    :param credentials: Signing secrets.
    :param logger: Logger for progress output.
    """

    def __init__(
        self,
        *,
        cache: RuntimeBinaryCache,
        injector: Injector,
        runner: ProcessRunner,
        credentials: SigningCredentials,
        logger: logging.Logger | None = None,
    ) -> None:
        if logger is None:
            logger = logging.getLogger("fossilize")
        self.cache: RuntimeBinaryCache = cache
        self.injector: Injector = injector
        self.runner: ProcessRunner = runner
        self.credentials: SigningCredentials = credentials
        self.logger: logging.Logger = logger

    async def build_platforms(
        self,
        platforms: list[str],
        blob: bytes,
        *,
        node_version: str,
        output_base: pathlib.Path,
        cache_dir: pathlib.Path | None,
        sign: bool,
        concurrency: int = DEFAULT_CONCURRENCY,
        platform_timeout: float | None = None,
    ) -> BuildReport:
        """Fabricate a binary for every platform.

        At most ``concurrency`` pipelines run at once; the rest wait in
        submission order. Returns only after every pipeline has finished.

        :param platforms: Platform identifiers.
        :param blob: SEA blob shared by all platforms.
        :param node_version: Node.js version alias.
        :param output_base: Output path prefix; binaries are ``<output_base>-<platform>[.exe]``.
        :param cache_dir: Runtime cache directory, or ``None`` for no persistent cache.
        :param sign: Whether signing was requested.
        :param concurrency: Maximum pipelines in flight.
        :param platform_timeout: Optional per-platform deadline in seconds.
        :returns: Per-platform results in the order of ``platforms``.
        """

        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")

        limiter: asyncio.Semaphore = asyncio.Semaphore(concurrency)

        async def guarded(platform: str) -> pathlib.Path:
            async with limiter:
                pipeline = self._fabricate(
                    platform,
                    blob,
                    node_version=node_version,
                    output_base=output_base,
                    cache_dir=cache_dir,
                    sign=sign,
                )
                if platform_timeout is None:
                    return await pipeline
                try:
                    return await asyncio.wait_for(pipeline, timeout=platform_timeout)
                except asyncio.TimeoutError as e:
                    raise PlatformTimeoutError(
                        f"{platform} did not finish within {platform_timeout:g}s"
                    ) from e

        outcomes: list[pathlib.Path | BaseException] = await asyncio.gather(
            *(guarded(p) for p in platforms),
            return_exceptions=True,
        )

        results: list[PlatformResult] = []
        for platform, outcome in zip(platforms, outcomes):
            if isinstance(outcome, BaseException) is True:
                self.logger.error(f"fossilize: [{platform}] failed: {outcome}")
                results.append(PlatformResult(platform=platform, output_path=None, error=outcome))
            else:
                results.append(PlatformResult(platform=platform, output_path=outcome))
        return BuildReport(results=tuple(results))

    async def _fabricate(
        self,
        platform: str,
        blob: bytes,
        *,
        node_version: str,
        output_base: pathlib.Path,
        cache_dir: pathlib.Path | None,
        sign: bool,
    ) -> pathlib.Path:
        self.logger.info(f"fossilize: [{platform}] creating binary ({output_base})")
        binary: pathlib.Path = await self.cache.obtain(node_version, platform, cache_dir, output_base)

        self.logger.info(f"fossilize: [{platform}] injecting blob into {binary}")
        await self.injector.inject(
            binary,
            SEA_BLOB_NAME,
            blob,
            # Split in two: postject searches for this exact string and would
            # otherwise find it inside fossilize's own code when bundling it.
            sentinel_fuse="NODE_SEA_FUSE_" + NODE_SEA_FUSE,
            macho_segment_name=MACHO_SEGMENT_NAME if is_darwin(platform) is True else None,
        )
        self.logger.info(f"fossilize: [{platform}] created executable {binary}")
        make_executable(binary)

        if sign is False:
            self.logger.info(f"fossilize: [{platform}] skipping signing, add --sign to sign the binary")
            if is_darwin(platform) is True:
                self.logger.warning(
                    f"fossilize: [{platform}] macOS binaries must be signed to run. You can run "
                    f"`spctl --add {binary}` to add the binary to your system's trusted binaries for testing."
                )
            return binary

        await sign_binary(
            runner=self.runner,
            binary=binary,
            platform=platform,
            credentials=self.credentials,
            logger=self.logger,
        )
        return binary


def _resolve_cache_root(cache_dir: pathlib.Path | None, no_cache: bool) -> pathlib.Path | None:
    """Resolve the runtime cache directory.

    With ``no_cache`` the result is ``None``: runtimes are then staged by
    :class:`RuntimeBinaryCache` in a scratch directory that lives only for
    this run and is removed when the cache is closed. Otherwise the
    directory is ``cache_dir``, or ``.node-cache`` under the current working
    directory, and is created if it is missing.

    :param cache_dir: Optional cache directory override.
    :param no_cache: Disable the persistent cache.
    :returns: Existing cache root directory, or ``None`` for a run-scoped cache.
    """

    if no_cache is True:
        return None

    if cache_dir is not None:
        root: pathlib.Path = cache_dir
    else:
        root = pathlib.Path.cwd() / ".node-cache"

    root.mkdir(parents=True, exist_ok=True)
    return root


def _clean_out_dir(out_dir: pathlib.Path, logger: logging.Logger) -> None:
    logger.info(f"fossilize: cleaning up {out_dir}")
    try:
        shutil.rmtree(out_dir)
    except OSError as e:
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"fossilize: could not remove {out_dir}: {e}")
    out_dir.mkdir(parents=True, exist_ok=True)


def _remove_quietly(path: pathlib.Path, logger: logging.Logger) -> None:
    try:
        path.unlink()
    except OSError as e:
        logger.warning(f"fossilize: failed to remove {path}: {e}")


async def _blob_runtime(
    *,
    options: BuildOptions,
    cache: RuntimeBinaryCache,
    cache_root: pathlib.Path | None,
    logger: logging.Logger,
) -> str:
    """Pick the Node.js executable that generates the SEA blob.

    An explicit ``node_path`` wins. ``local`` and macOS hosts use ``node`` from
    ``PATH`` (the cached macOS runtime is unsigned and cannot run there).
    Otherwise the cached runtime for the host platform is used so the blob
    matches the target version.
    """

    if options.node_path is not None:
        return str(options.node_path)

    host: str = host_platform()
    if options.node_version.strip().lower() == "local" or is_darwin(host) is True:
        return "node"

    runtime: pathlib.Path = await cache.obtain(options.node_version, host, cache_root, None)
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"fossilize: generating blob with {runtime}")
    return str(runtime)


async def build_executables(
    options: BuildOptions,
    *,
    client: httpx.AsyncClient | None = None,
    runner: ProcessRunner | None = None,
    injector: Injector | None = None,
    credentials: SigningCredentials | None = None,
    logger: logging.Logger | None = None,
) -> BuildReport:
    """Build standalone executables for every requested platform.

    :param options: Build options.
    :param client: Optional HTTP client (one is created and closed otherwise).
    :param runner: Optional process runner.
    :param injector: Optional blob injector (postject by default).
    :param credentials: Optional signing secrets (read from the environment by default).
    :param logger: Optional logger for progress output.
    :returns: Report with one result per platform.
    :raises ManifestError: If the entrypoint or assets are unusable.
    :raises TargetResolutionError: If a platform identifier is invalid.
    :raises ResolutionError: If the Node.js version cannot be resolved.
    :raises BundleError: If bundling fails.
    :raises ProcessError: If blob generation fails.
    :raises BuildError: If any platform failed.
    """

    if logger is None:
        logger = logging.getLogger("fossilize")
    if runner is None:
        runner = ProcessRunner(logger=logger)
    if injector is None:
        injector = PostjectInjector(runner=runner, command=options.postject_command)
    if credentials is None:
        credentials = SigningCredentials.from_env()

    t_total0: float = time.perf_counter()
    manifest: AppManifest = load_app_manifest(options.entrypoint)
    platforms: list[str] = resolve_platforms(list(options.platforms))
    assets: dict[str, str] = collect_assets(list(options.assets), options.asset_manifest)
    logger.info(f"fossilize: platforms: {', '.join(platforms)}")

    owns_client: bool = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=httpx.Timeout(options.http_timeout), follow_redirects=True)

    resolver: VersionResolver = VersionResolver(
        client=client,
        runner=runner,
        index_url=options.index_url,
        logger=logger,
    )
    cache: RuntimeBinaryCache = RuntimeBinaryCache(
        resolver=resolver,
        client=client,
        dist_url=options.dist_url,
        logger=logger,
    )
    try:
        version: str = await resolver.resolve(options.node_version)
        cache_root: pathlib.Path | None = _resolve_cache_root(options.cache_dir, options.no_cache)

        out_dir: pathlib.Path = options.out_dir.resolve()
        _clean_out_dir(out_dir, logger)

        main_script: pathlib.Path
        if options.no_bundle is True:
            main_script = manifest.entry_path.resolve()
        else:
            main_script = await bundle_app(
                runner=runner,
                manifest=manifest,
                out_dir=out_dir,
                node_major=int(version.split(".")[0]),
                esbuild_command=options.esbuild_command,
                node_env=options.node_env,
                logger=logger,
            )

        config_path: pathlib.Path = out_dir / SEA_CONFIG_JSON
        blob_path: pathlib.Path = out_dir / SEA_BLOB
        write_sea_config(config_path=config_path, main=main_script, blob_path=blob_path, assets=assets)
        node: str = await _blob_runtime(options=options, cache=cache, cache_root=cache_root, logger=logger)
        blob: bytes = await generate_blob(runner=runner, node=node, config_path=config_path, blob_path=blob_path)
        logger.info(f"fossilize: blob ready ({len(blob) / (1024 * 1024):.1f} MiB)")

        orchestrator: PlatformBuildOrchestrator = PlatformBuildOrchestrator(
            cache=cache,
            injector=injector,
            runner=runner,
            credentials=credentials,
            logger=logger,
        )
        report: BuildReport = await orchestrator.build_platforms(
            platforms,
            blob,
            node_version=options.node_version,
            output_base=out_dir / manifest.name,
            cache_dir=cache_root,
            sign=options.sign,
            concurrency=options.concurrency,
            platform_timeout=options.platform_timeout,
        )

        _remove_quietly(config_path, logger)
        _remove_quietly(blob_path, logger)
    finally:
        cache.close()
        if owns_client is True:
            await client.aclose()

    t_total1: float = time.perf_counter()
    if report.ok is False:
        raise BuildError(report)
    logger.info(f"fossilize: done in {t_total1 - t_total0:.2f}s")
    return report


def build(options: BuildOptions, *, logger: logging.Logger | None = None) -> BuildReport:
    """Synchronous entry point around :func:`build_executables`."""

    return asyncio.run(build_executables(options, logger=logger))
