"""Tests for the proxyguard CLI (proxyguard/cli/main.py).

Covers:
- Argument parsing (validate, compare, erc7201, manifest, config, version)
- Table and JSON output, exit codes
- Address references through the network manifest
- Error handling and banner suppression
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from conftest import build_layout, make_build_info, var
from proxyguard import __version__
from proxyguard.cli.main import BANNER, build_parser, main
from proxyguard.core.types import ProxyKind
from proxyguard.manifest.models import ImplDeployment, ProxyDeployment
from proxyguard.manifest.store import Manifest

IMPL = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture
def build_dir(tmp_path) -> Path:
    path = tmp_path / "build-info"
    path.mkdir()
    (path / "build.json").write_text(json.dumps(make_build_info()))
    return path


@pytest.fixture
def layout_files(tmp_path) -> dict[str, Path]:
    v1 = build_layout([var("a", "t_uint256", 0), var("b", "t_uint256", 1)])
    v2 = build_layout([var("a", "t_uint256", 0), var("b", "t_uint256", 1), var("c", "t_uint256", 2)])
    bad = build_layout([var("a", "t_uint256", 0)])
    raw = {
        "storage": [
            {"astId": 1, "contract": "x.sol:X", "label": "a", "offset": 0, "slot": "0", "type": "t_uint256"},
        ],
        "types": {"t_uint256": {"encoding": "inplace", "label": "uint256", "numberOfBytes": "32"}},
    }
    files = {}
    for name, data in (("v1", v1.to_json_dict()), ("v2", v2.to_json_dict()), ("bad", bad.to_json_dict()), ("raw", raw)):
        files[name] = tmp_path / f"{name}.json"
        files[name].write_text(json.dumps(data))
    return files


# ── Parser ───────────────────────────────────────────────────────────────


class TestParser:
    def test_validate_defaults(self):
        args = build_parser().parse_args(["validate", "Box"])
        assert args.contract == "Box"
        assert args.reference is None
        assert args.unsafe_allow == []
        assert args.format == "table"
        assert args.kind is None

    def test_validate_flags(self):
        args = build_parser().parse_args(
            [
                "validate",
                "BoxV2",
                "-r",
                "BoxV1",
                "--kind",
                "uups",
                "--unsafe-allow",
                "constructor",
                "--unsafe-allow",
                "delegatecall",
                "--strict-renames",
                "-f",
                "json",
            ]
        )
        assert args.reference == "BoxV1"
        assert args.kind == "uups"
        assert args.unsafe_allow == ["constructor", "delegatecall"]
        assert args.strict_renames
        assert args.format == "json"

    def test_unknown_unsafe_allow(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["validate", "Box", "--unsafe-allow", "everything"])

    def test_manifest_show_requires_chain_id(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["manifest", "show"])


# ── Commands ─────────────────────────────────────────────────────────────


class TestMain:
    def test_version(self, capsys):
        assert main(["--version"]) == 0
        assert capsys.readouterr().out.strip() == f"proxyguard {__version__}"

    def test_no_command_prints_help(self, capsys):
        assert main(["--no-banner"]) == 0
        assert "usage:" in capsys.readouterr().out

    def test_banner_goes_to_stderr(self, capsys):
        main(["erc7201", "example.main"])
        captured = capsys.readouterr()
        assert "proxyguard" in captured.err
        assert BANNER.strip() not in captured.out

    def test_quiet_suppresses_banner(self, capsys):
        main(["--quiet", "erc7201", "example.main"])
        assert capsys.readouterr().err == ""

    def test_config(self, capsys, tmp_path):
        assert main(["--no-banner", "config"]) == 0
        out = capsys.readouterr().out
        assert "manifest_dir" in out
        assert str(tmp_path / "manifests") in out


class TestErc7201Command:
    @pytest.mark.parametrize("namespace_id", ["example.main", "erc7201:example.main"])
    def test_prints_root(self, capsys, namespace_id):
        assert main(["--no-banner", "erc7201", namespace_id]) == 0
        assert capsys.readouterr().out.strip() == "0x183a6125c38840424c4a85fa12bab2ab606c4b6d0e7cc73c0c06ba5300eab500"


class TestCompareCommand:
    def test_compatible(self, capsys, layout_files):
        assert main(["--no-banner", "compare", str(layout_files["v1"]), str(layout_files["v2"])]) == 0
        assert "Storage layout is compatible" in capsys.readouterr().out

    def test_incompatible(self, capsys, layout_files):
        assert main(["--no-banner", "compare", str(layout_files["v1"]), str(layout_files["bad"])]) == 1
        out = capsys.readouterr().out
        assert "storage layout error(s)" in out
        assert "Deleted `b`" in out

    def test_json(self, capsys, layout_files):
        code = main(["--no-banner", "compare", str(layout_files["v1"]), str(layout_files["bad"]), "--format", "json"])
        assert code == 1
        data = json.loads(capsys.readouterr().out)
        assert data["ok"] is False
        assert data["errors"][0]["kind"] == "delete"
        assert data["errors"][0]["path"] == ["Box.b"]

    def test_raw_compiler_layout(self, capsys, layout_files):
        assert main(["--no-banner", "compare", str(layout_files["raw"]), str(layout_files["v1"])]) == 0

    def test_strict_renames_from_settings(self, capsys, tmp_path, monkeypatch, layout_files):
        from proxyguard.core.config import get_settings

        renamed = tmp_path / "renamed.json"
        renamed.write_text(json.dumps(build_layout([var("a", "t_uint256", 0), var("c", "t_uint256", 1)]).to_json_dict()))
        argv = ["--no-banner", "compare", str(layout_files["v1"]), str(renamed)]
        assert main(argv) == 0

        monkeypatch.setenv("PROXYGUARD_STRICT_RENAMES", "true")
        get_settings.cache_clear()
        assert main(argv) == 1
        assert "Renamed `b` to `c`" in capsys.readouterr().out

    def test_invalid_file(self, capsys, tmp_path, layout_files):
        broken = tmp_path / "broken.json"
        broken.write_text("{")
        assert main(["--no-banner", "compare", str(broken), str(layout_files["v1"])]) == 1
        assert "Error:" in capsys.readouterr().err


class TestValidateCommand:
    def test_compatible_upgrade(self, capsys, build_dir):
        code = main(["--no-banner", "validate", "Box", "--reference", "Base", "--build-info", str(build_dir)])
        out = capsys.readouterr().out
        assert code == 0
        assert "No upgrade safety errors" in out
        assert "Storage layout is compatible" in out

    def test_unsafe_contract(self, capsys, build_dir):
        assert main(["--no-banner", "validate", "Unsafe", "-b", str(build_dir)]) == 1
        out = capsys.readouterr().out
        assert "4 upgrade safety error(s)" in out
        assert "Use of selfdestruct is not allowed" in out

    def test_unsafe_allow(self, capsys, build_dir):
        argv = ["--no-banner", "validate", "Unsafe", "-b", str(build_dir)]
        for kind in ("constructor", "selfdestruct", "state-variable-immutable", "state-variable-assignment"):
            argv += ["--unsafe-allow", kind]
        assert main(argv) == 0

    def test_uups_kind(self, capsys, build_dir):
        assert main(["--no-banner", "validate", "Box", "-b", str(build_dir), "--kind", "uups"]) == 1
        assert "upgradeTo(address)" in capsys.readouterr().out

    def test_skip_storage_check(self, capsys, build_dir):
        argv = ["--no-banner", "validate", "Unsafe", "-r", "Box", "-b", str(build_dir), "--unsafe-skip-storage-check"]
        main(argv)
        assert "Storage layout check skipped" in capsys.readouterr().out

    def test_json(self, capsys, build_dir):
        code = main(["--no-banner", "validate", "Box", "-r", "Base", "-b", str(build_dir), "--format", "json"])
        assert code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["contract"] == "contracts/Box.sol:Box"
        assert data["reference"] == "contracts/Box.sol:Base"
        assert data["ok"] is True

    def test_unknown_contract(self, capsys, build_dir):
        assert main(["--no-banner", "validate", "Nope", "-b", str(build_dir)]) == 1
        assert "Could not find contract Nope" in capsys.readouterr().err

    def test_build_info_dirs_from_settings(self, capsys, build_dir, monkeypatch):
        from proxyguard.core.config import get_settings

        monkeypatch.setenv("PROXYGUARD_BUILD_INFO_DIRS", f"does/not/exist, {build_dir}")
        get_settings.cache_clear()
        assert main(["--no-banner", "validate", "Box", "-r", "Base"]) == 0

    def test_no_build_info(self, capsys, tmp_path):
        assert main(["--no-banner", "validate", "Box", "-b", str(tmp_path / "empty")]) == 1
        assert "No build info files found" in capsys.readouterr().err

    def test_address_reference(self, capsys, build_dir):
        base = build_layout([var("value", "t_uint256", 0, contract="Base")])
        Manifest(1).add_deployment("0xversion", ImplDeployment(address=IMPL, layout=base))

        code = main(["--no-banner", "validate", "Box", "-r", IMPL, "-b", str(build_dir), "--chain-id", "1"])
        assert code == 0
        assert IMPL in capsys.readouterr().out

    def test_address_reference_needs_chain(self, capsys, build_dir):
        assert main(["--no-banner", "validate", "Box", "-r", IMPL, "-b", str(build_dir)]) == 1
        assert "without a manifest" in capsys.readouterr().err


class TestManifestCommand:
    def test_show(self, capsys):
        Manifest(11155111).add_proxy(ProxyDeployment(address=IMPL, kind=ProxyKind.UUPS))
        assert main(["--no-banner", "manifest", "show", "--chain-id", "11155111"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["proxies"] == [{"address": IMPL, "kind": "uups"}]

    def test_show_empty(self, capsys):
        assert main(["--no-banner", "manifest", "show", "--chain-id", "1"]) == 0
        assert json.loads(capsys.readouterr().out)["proxies"] == []

    def test_logs_carry_network(self, capsys):
        assert main(["--no-banner", "manifest", "show", "--chain-id", "11155111"]) == 0
        logging.getLogger("proxyguard.test").warning("checking")
        assert "[sepolia] checking" in capsys.readouterr().err

    def test_show_dir_override(self, capsys, tmp_path):
        Manifest(1, manifest_dir=tmp_path / "custom").add_proxy(ProxyDeployment(address=IMPL, kind=ProxyKind.BEACON))
        assert main(["--no-banner", "manifest", "show", "--chain-id", "1", "--dir", str(tmp_path / "custom")]) == 0
        assert json.loads(capsys.readouterr().out)["proxies"][0]["kind"] == "beacon"

    def test_corrupted(self, capsys):
        manifest = Manifest(1)
        manifest.file.parent.mkdir(parents=True)
        manifest.file.write_text("nope")
        assert main(["--no-banner", "manifest", "show", "--chain-id", "1"]) == 1
        assert "could not be read" in capsys.readouterr().err

    def test_missing_subcommand(self, capsys):
        assert main(["--no-banner", "manifest"]) == 1
