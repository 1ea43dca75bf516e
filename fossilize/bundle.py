"""Application payload preparation.

Resolves the application entrypoint, bundles it into one CommonJS script
with esbuild, writes the Node.js SEA configuration and generates the blob
that gets injected into every target binary.
"""

from dataclasses import dataclass
import asyncio
import json
import logging
import os
import pathlib
from typing import Any

from fossilize.process import ProcessError, ProcessRunner


PACKAGE_JSON: str = "package.json"
SEA_CONFIG_JSON: str = "sea-config.json"
SEA_BLOB: str = "sea.blob"

DATA_DIR: pathlib.Path = pathlib.Path(__file__).parent / "data"
IMPORT_META_URL_SHIM: pathlib.Path = DATA_DIR / "import-meta-url.js"


class ManifestError(ValueError):
    """Raised when the entrypoint, package.json or asset manifest is unusable."""


class BundleError(RuntimeError):
    """Raised when the bundler reports errors.

    :ivar errors: Human-readable error messages reported by the bundler.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors: list[str] = errors
        super().__init__("\n".join(errors))


@dataclass(frozen=True, slots=True)
class AppManifest:
    """Resolved application entrypoint.

    :ivar entry_path: Script to bundle (or embed as is).
    :ivar name: Output executable base name.
    :ivar version: Application version string.
    """

    entry_path: pathlib.Path
    name: str
    version: str


def load_app_manifest(entrypoint: pathlib.Path) -> AppManifest:
    """Resolve an entrypoint file or project directory.

    For a directory, ``package.json`` supplies the version, the name (last
    ``/`` segment of ``name``) and the entry file (``bin`` for that name, a
    string ``bin``, or ``main``).

    :param entrypoint: File or directory.
    :returns: Resolved manifest.
    :raises ManifestError: If the entrypoint cannot be resolved.
    """

    if entrypoint.exists() is False:
        raise ManifestError(f"Entrypoint does not exist: {entrypoint}")

    if entrypoint.is_dir() is False:
        name: str = entrypoint.name.split(".")[0]
        return AppManifest(entry_path=entrypoint, name=name or "bundled", version="0.0.0")

    package_json: pathlib.Path = entrypoint / PACKAGE_JSON
    try:
        package: Any = json.loads(package_json.read_text(encoding="utf-8"))
    except OSError as e:
        raise ManifestError(f"Cannot read {package_json}: {e}") from e
    except ValueError as e:
        raise ManifestError(f"Invalid JSON in {package_json}: {e}") from e
    if isinstance(package, dict) is False:
        raise ManifestError(f"Expected an object in {package_json}")

    version: str = str(package.get("version") or "0.0.0")
    pkg_name: str = str(package.get("name") or "").split("/")[-1]

    entry_rel: Any = None
    bin_field: Any = package.get("bin")
    if isinstance(bin_field, dict) is True and len(pkg_name) > 0:
        entry_rel = bin_field.get(pkg_name)
    elif isinstance(bin_field, str) is True:
        entry_rel = bin_field
    if entry_rel is None:
        entry_rel = package.get("main")
    if isinstance(entry_rel, str) is False or len(entry_rel) == 0:
        raise ManifestError(f"{package_json} has no usable 'bin' or 'main' entry")

    return AppManifest(
        entry_path=entrypoint / entry_rel,
        name=pkg_name or "bundled",
        version=version,
    )


def collect_assets(assets: list[pathlib.Path], asset_manifest: pathlib.Path | None) -> dict[str, str]:
    """Build the SEA ``assets`` mapping.

    Plain assets are keyed by their file name. A Vite ``manifest.json``
    contributes itself, every entry's ``file`` and the key flagged
    ``isEntry``.

    :param assets: Individual asset files.
    :param asset_manifest: Optional Vite manifest path.
    :returns: Mapping of asset key to absolute file path.
    :raises ManifestError: If an asset is missing or the manifest is invalid.
    """

    mapping: dict[str, str] = {}
    for asset in assets:
        if asset.is_file() is False:
            raise ManifestError(f"Asset does not exist: {asset}")
        mapping[asset.name] = str(asset.resolve())

    if asset_manifest is None:
        return mapping

    try:
        manifest: Any = json.loads(asset_manifest.read_text(encoding="utf-8"))
    except OSError as e:
        raise ManifestError(f"Cannot read asset manifest {asset_manifest}: {e}") from e
    except ValueError as e:
        raise ManifestError(f"Invalid JSON in asset manifest {asset_manifest}: {e}") from e
    if isinstance(manifest, dict) is False:
        raise ManifestError(f"Expected an object in asset manifest {asset_manifest}")

    assets_dir: pathlib.Path = asset_manifest.resolve().parent
    mapping[asset_manifest.name] = str(asset_manifest.resolve())
    entry_key: str | None = None
    for key, entry in manifest.items():
        if isinstance(entry, dict) is False or isinstance(entry.get("file"), str) is False:
            raise ManifestError(f"Asset manifest entry {key!r} has no 'file' in {asset_manifest}")
        mapping[entry["file"]] = str(assets_dir / entry["file"])
        if entry_key is None and entry.get("isEntry") is True:
            entry_key = key
    if entry_key is not None:
        mapping[entry_key] = str(assets_dir / entry_key)
    return mapping


def _bundler_errors(stderr: str) -> list[str]:
    errors: list[str] = [line.strip() for line in stderr.splitlines() if "[ERROR]" in line]
    if len(errors) == 0 and len(stderr.strip()) > 0:
        errors = [stderr.strip()]
    return errors


async def bundle_app(
    *,
    runner: ProcessRunner,
    manifest: AppManifest,
    out_dir: pathlib.Path,
    node_major: int,
    esbuild_command: tuple[str, ...],
    node_env: str,
    logger: logging.Logger,
) -> pathlib.Path:
    """Bundle the entrypoint into one minified CommonJS script.

    :param runner: Process runner.
    :param manifest: Resolved app manifest.
    :param out_dir: Output directory for the bundle.
    :param node_major: Target Node.js major version.
    :param esbuild_command: Command used to invoke esbuild.
    :param node_env: Value substituted for ``process.env.NODE_ENV``.
    :param logger: Logger for progress output.
    :returns: Path of the bundled script.
    :raises BundleError: If esbuild fails.
    """

    bundle_path: pathlib.Path = out_dir / f"{manifest.name}.cjs"
    logger.info(f"fossilize: bundling {manifest.entry_path}")
    args: list[str] = [
        *esbuild_command[1:],
        str(manifest.entry_path),
        "--bundle",
        "--minify",
        "--platform=node",
        f"--target=node{node_major}",
        "--format=cjs",
        "--tree-shaking=true",
        f"--inject:{IMPORT_META_URL_SHIM}",
        "--define:import.meta.url=import_meta_url",
        f"--define:process.env.npm_package_version={json.dumps(manifest.version)}",
        f"--define:process.env.NODE_ENV={json.dumps(node_env)}",
        f"--outfile={bundle_path}",
        "--allow-overwrite",
        "--log-level=warning",
    ]
    try:
        await runner.run(esbuild_command[0], *args)
    except ProcessError as e:
        raise BundleError(_bundler_errors(e.stderr) or [str(e)]) from e
    return bundle_path


def write_sea_config(
    *,
    config_path: pathlib.Path,
    main: pathlib.Path,
    blob_path: pathlib.Path,
    assets: dict[str, str],
) -> None:
    """Write the Node.js SEA configuration file.

    Code cache and snapshots are disabled because the blob is used for
    every target, not just the host.

    :param config_path: Output ``sea-config.json`` path.
    :param main: Script to embed.
    :param blob_path: Where Node.js writes the blob.
    :param assets: Asset mapping (may be empty).
    """

    config: dict[str, Any] = {
        "main": str(main),
        "output": str(blob_path),
        "disableExperimentalSEAWarning": True,
        "useSnapshot": False,
        "useCodeCache": False,
    }
    if len(assets) > 0:
        config["assets"] = assets
    config_path.write_text(json.dumps(config), encoding="utf-8")


async def generate_blob(
    *,
    runner: ProcessRunner,
    node: str | os.PathLike[str],
    config_path: pathlib.Path,
    blob_path: pathlib.Path,
) -> bytes:
    """Run Node.js to turn the SEA configuration into a blob.

    :param runner: Process runner.
    :param node: Node.js executable used to generate the blob.
    :param config_path: SEA configuration path.
    :param blob_path: Blob output path named in the configuration.
    :returns: Blob bytes.
    :raises ProcessError: If Node.js fails.
    """

    await runner.run(os.fspath(node), "--experimental-sea-config", str(config_path))
    return await asyncio.to_thread(blob_path.read_bytes)
