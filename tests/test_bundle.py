"""Tests for entrypoint resolution, assets, bundling and blob generation."""

import asyncio
import json
import logging
import pathlib

import pytest

from conftest import FakeRunner, failing_responder
from fossilize.bundle import (
    IMPORT_META_URL_SHIM,
    AppManifest,
    BundleError,
    ManifestError,
    bundle_app,
    collect_assets,
    generate_blob,
    load_app_manifest,
    write_sea_config,
)


def _write_package(root: pathlib.Path, package: dict) -> None:
    root.mkdir(parents=True, exist_ok=True)
    (root / "package.json").write_text(json.dumps(package), encoding="utf-8")


def test_file_entrypoint_uses_stem(sample_script: pathlib.Path) -> None:
    manifest = load_app_manifest(sample_script)
    assert manifest == AppManifest(entry_path=sample_script, name="sample", version="0.0.0")


def test_missing_entrypoint_fails(tmp_path: pathlib.Path) -> None:
    with pytest.raises(ManifestError, match="does not exist"):
        load_app_manifest(tmp_path / "nope.js")


def test_directory_uses_bin_for_scoped_name(tmp_path: pathlib.Path) -> None:
    _write_package(
        tmp_path / "app",
        {"name": "@acme/tool", "version": "1.2.3", "bin": {"tool": "cli.js"}, "main": "index.js"},
    )
    manifest = load_app_manifest(tmp_path / "app")
    assert manifest.name == "tool"
    assert manifest.version == "1.2.3"
    assert manifest.entry_path == tmp_path / "app" / "cli.js"


def test_directory_falls_back_to_main(tmp_path: pathlib.Path) -> None:
    _write_package(tmp_path / "app", {"name": "tool", "main": "index.js"})
    manifest = load_app_manifest(tmp_path / "app")
    assert manifest.entry_path == tmp_path / "app" / "index.js"
    assert manifest.version == "0.0.0"


def test_directory_without_entry_fails(tmp_path: pathlib.Path) -> None:
    _write_package(tmp_path / "app", {"name": "tool"})
    with pytest.raises(ManifestError, match="'bin' or 'main'"):
        load_app_manifest(tmp_path / "app")


def test_directory_with_invalid_package_json_fails(tmp_path: pathlib.Path) -> None:
    (tmp_path / "app").mkdir()
    (tmp_path / "app" / "package.json").write_text("{", encoding="utf-8")
    with pytest.raises(ManifestError, match="Invalid JSON"):
        load_app_manifest(tmp_path / "app")


def test_collect_assets_keys_by_file_name(tmp_path: pathlib.Path) -> None:
    asset = tmp_path / "data" / "asset.txt"
    asset.parent.mkdir()
    asset.write_text("payload", encoding="utf-8")
    assert collect_assets([asset], None) == {"asset.txt": str(asset.resolve())}


def test_collect_assets_missing_file_fails(tmp_path: pathlib.Path) -> None:
    with pytest.raises(ManifestError, match="Asset does not exist"):
        collect_assets([tmp_path / "missing.txt"], None)


def test_collect_assets_from_vite_manifest(tmp_path: pathlib.Path) -> None:
    dist = tmp_path / "dist"
    dist.mkdir()
    manifest_path = dist / "manifest.json"
    manifest_path.write_text(
        json.dumps(
            {
                "index.html": {"file": "assets/index-abc.js", "isEntry": True},
                "style.css": {"file": "assets/style-def.css"},
            }
        ),
        encoding="utf-8",
    )

    assets = collect_assets([], manifest_path)

    root = manifest_path.resolve().parent
    assert assets == {
        "manifest.json": str(manifest_path.resolve()),
        "assets/index-abc.js": str(root / "assets/index-abc.js"),
        "assets/style-def.css": str(root / "assets/style-def.css"),
        "index.html": str(root / "index.html"),
    }


def test_write_sea_config(tmp_path: pathlib.Path) -> None:
    config_path = tmp_path / "sea-config.json"
    write_sea_config(
        config_path=config_path,
        main=tmp_path / "app.cjs",
        blob_path=tmp_path / "sea.blob",
        assets={"asset.txt": "/abs/asset.txt"},
    )
    config = json.loads(config_path.read_text(encoding="utf-8"))
    assert config["main"] == str(tmp_path / "app.cjs")
    assert config["output"] == str(tmp_path / "sea.blob")
    assert config["disableExperimentalSEAWarning"] is True
    assert config["useSnapshot"] is False
    assert config["useCodeCache"] is False
    assert config["assets"] == {"asset.txt": "/abs/asset.txt"}


def test_write_sea_config_omits_empty_assets(tmp_path: pathlib.Path) -> None:
    config_path = tmp_path / "sea-config.json"
    write_sea_config(config_path=config_path, main=tmp_path / "a.cjs", blob_path=tmp_path / "b", assets={})
    assert "assets" not in json.loads(config_path.read_text(encoding="utf-8"))


def _bundle(runner: FakeRunner, tmp_path: pathlib.Path) -> pathlib.Path:
    manifest = AppManifest(entry_path=tmp_path / "src" / "main.ts", name="tool", version="1.2.3")
    return asyncio.run(
        bundle_app(
            runner=runner,
            manifest=manifest,
            out_dir=tmp_path / "dist-bin",
            node_major=22,
            esbuild_command=("npx", "--yes", "esbuild"),
            node_env="production",
            logger=logging.getLogger("fossilize_tests"),
        )
    )


def test_bundle_app_invokes_esbuild(tmp_path: pathlib.Path) -> None:
    runner = FakeRunner()
    bundle_path = _bundle(runner, tmp_path)

    assert bundle_path == tmp_path / "dist-bin" / "tool.cjs"
    [(command, args, _)] = runner.calls
    assert command == "npx"
    assert args[:3] == ("--yes", "esbuild", str(tmp_path / "src" / "main.ts"))
    assert "--platform=node" in args
    assert "--format=cjs" in args
    assert "--target=node22" in args
    assert f"--inject:{IMPORT_META_URL_SHIM}" in args
    assert "--define:import.meta.url=import_meta_url" in args
    assert '--define:process.env.npm_package_version="1.2.3"' in args
    assert '--define:process.env.NODE_ENV="production"' in args
    assert f"--outfile={bundle_path}" in args


def test_bundle_app_reports_esbuild_errors(tmp_path: pathlib.Path) -> None:
    runner = FakeRunner(
        responder=failing_responder(
            "✘ [ERROR] Could not resolve \"left-pad\"\n\n    src/main.ts:1:7:\n"
        )
    )
    with pytest.raises(BundleError) as excinfo:
        _bundle(runner, tmp_path)
    assert excinfo.value.errors == ['✘ [ERROR] Could not resolve "left-pad"']


def test_import_meta_url_shim_is_shipped() -> None:
    assert "import_meta_url" in IMPORT_META_URL_SHIM.read_text(encoding="utf-8")


def test_generate_blob_reads_node_output(tmp_path: pathlib.Path) -> None:
    config_path = tmp_path / "sea-config.json"
    blob_path = tmp_path / "sea.blob"

    def respond(command: str, args: tuple[str, ...]) -> str:
        blob_path.write_bytes(b"BLOB")
        return ""

    runner = FakeRunner(responder=respond)
    blob = asyncio.run(generate_blob(runner=runner, node="/opt/node", config_path=config_path, blob_path=blob_path))

    assert blob == b"BLOB"
    assert runner.calls[0][:2] == ("/opt/node", ("--experimental-sea-config", str(config_path)))


def test_generate_blob_reads_in_worker_thread(tmp_path: pathlib.Path, thread_calls: list[str]) -> None:
    blob_path = tmp_path / "sea.blob"
    blob_path.write_bytes(b"BLOB")

    blob = asyncio.run(
        generate_blob(runner=FakeRunner(), node="node", config_path=tmp_path / "sea-config.json", blob_path=blob_path)
    )

    assert blob == b"BLOB"
    assert thread_calls == ["read_bytes"]
