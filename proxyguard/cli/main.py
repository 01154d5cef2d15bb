"""proxyguard CLI: storage layout upgrade checks and deployment manifests.

Usage:
    proxyguard validate <contract> --reference <name|address>   Check an upgrade
    proxyguard compare <old.json> <new.json>                     Compare two layout files
    proxyguard erc7201 <namespace-id>                            Print an ERC-7201 root slot
    proxyguard manifest show --chain-id <id>                     Print a network manifest
    proxyguard config                                            Show current configuration

Examples:
    proxyguard validate contracts/BoxV2.sol:BoxV2 --reference BoxV1
    proxyguard validate BoxV2 --reference 0x5FbDB2315678afecb367f032d93F642f64180aa3 --chain-id 11155111
    proxyguard compare old-layout.json new-layout.json --format json
    proxyguard erc7201 example.main
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from proxyguard import __version__
from proxyguard.core.errors import UpgradesError
from proxyguard.core.types import ProxyKind, SafetyErrorKind, ValidationOptions


# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


# ── Banner ───────────────────────────────────────────────────────────────────

BANNER = f"""
{_BOLD}{_CYAN}proxyguard{_RESET}
  {_DIM}Upgrade-safe storage layouts and deployment manifests (v{__version__}){_RESET}
"""


# ── CLI argument parser ─────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proxyguard",
        description="proxyguard: storage layout upgrade checker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--no-banner", action="store_true", help="Suppress the startup banner")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")

    sub = parser.add_subparsers(dest="command")

    # ── validate ─────────────────────────────────────────────────────────────
    validate_p = sub.add_parser("validate", help="Check that a contract can safely replace a previous version")
    validate_p.add_argument("contract", help="Contract name or fully qualified name (path/File.sol:Name)")
    validate_p.add_argument("--reference", "-r", help="Previous contract name, or implementation/proxy address")
    validate_p.add_argument(
        "--build-info",
        "-b",
        action="append",
        help="Build-info directory (repeatable; default from PROXYGUARD_BUILD_INFO_DIRS)",
    )
    validate_p.add_argument("--chain-id", type=int, help="Network whose manifest resolves address references")
    validate_p.add_argument("--kind", choices=[k.value for k in ProxyKind], help="Proxy kind of the deployment")
    validate_p.add_argument(
        "--unsafe-allow",
        action="append",
        default=[],
        choices=[k.value for k in SafetyErrorKind],
        help="Allow a specific unsafe pattern (repeatable)",
    )
    validate_p.add_argument("--unsafe-skip-storage-check", action="store_true", help="Skip the storage layout check")
    validate_p.add_argument(
        "--unsafe-allow-custom-types", action="store_true", help="Accept structs and enums without member data"
    )
    validate_p.add_argument("--strict-renames", action="store_true", help="Report renamed variables as errors")
    validate_p.add_argument("--format", "-f", default="table", choices=["table", "json"], help="Output format")

    # ── compare ──────────────────────────────────────────────────────────────
    compare_p = sub.add_parser("compare", help="Compare two storage layout JSON files")
    compare_p.add_argument("original", help="Layout of the deployed version")
    compare_p.add_argument("updated", help="Layout of the new version")
    compare_p.add_argument("--unsafe-allow-custom-types", action="store_true")
    compare_p.add_argument("--strict-renames", action="store_true")
    compare_p.add_argument("--format", "-f", default="table", choices=["table", "json"], help="Output format")

    # ── erc7201 ──────────────────────────────────────────────────────────────
    erc_p = sub.add_parser("erc7201", help="Compute an ERC-7201 namespaced storage location")
    erc_p.add_argument("namespace_id", help="Namespace id, with or without the erc7201: prefix")

    # ── manifest ─────────────────────────────────────────────────────────────
    manifest_p = sub.add_parser("manifest", help="Inspect network manifests")
    manifest_sub = manifest_p.add_subparsers(dest="manifest_command")
    show_p = manifest_sub.add_parser("show", help="Print a network manifest as JSON")
    show_p.add_argument("--chain-id", type=int, required=True)
    show_p.add_argument("--dir", help="Manifest directory (default from PROXYGUARD_MANIFEST_DIR)")

    # ── config ───────────────────────────────────────────────────────────────
    sub.add_parser("config", help="Show current configuration")

    return parser


# ── Layout loading ───────────────────────────────────────────────────────────


def _load_layout_file(path: str) -> Any:
    """A persisted layout, or a raw compiler ``storageLayout`` object."""
    from proxyguard.core.errors import LayoutImportError
    from proxyguard.storage.importer import import_storage_layout
    from proxyguard.storage.layout import load_layout

    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise LayoutImportError(f"{path} is not valid JSON", str(exc)) from exc
    if isinstance(data, dict) and "layoutVersion" in data:
        return load_layout(data)
    return import_storage_layout(data)


def _print_storage_report(report: Any, quiet: bool) -> None:
    if report.ok:
        print(_c("  ✓ Storage layout is compatible.", _GREEN))
    else:
        print(_c(f"  ✗ {len(report.errors)} storage layout error(s):", _RED))
        print()
        print("    " + report.explain(color=True).replace("\n", "\n    "))
    if report.notes and not quiet:
        print()
        print(_c(f"  {len(report.notes)} note(s):", _DIM))
        print("    " + report.explain_notes(color=True).replace("\n", "\n    "))


# ── Network log context ──────────────────────────────────────────────────────


def _attach_network_context(manifest: Any) -> None:
    log_filter = manifest.log_filter()
    for handler in logging.getLogger().handlers:
        handler.addFilter(log_filter)


# ── Validate command ─────────────────────────────────────────────────────────


def _run_validate(args: argparse.Namespace) -> int:
    from proxyguard.core.config import get_settings
    from proxyguard.manifest.store import Manifest
    from proxyguard.validation.orchestrator import UpgradeValidator
    from proxyguard.validation.run import ValidationData

    settings = get_settings()
    dirs = args.build_info or [d.strip() for d in settings.build_info_dirs.split(",") if d.strip()]
    validations = ValidationData.from_directories(dirs)

    manifest = None
    if args.chain_id is not None:
        manifest = Manifest.for_network(args.chain_id, update_layout=validations.find_updated_layout)
        _attach_network_context(manifest)

    opts = ValidationOptions(
        kind=ProxyKind(args.kind) if args.kind else None,
        unsafe_allow=[SafetyErrorKind(k) for k in args.unsafe_allow],
        unsafe_allow_custom_types=args.unsafe_allow_custom_types or settings.unsafe_allow_custom_types,
        unsafe_skip_storage_check=args.unsafe_skip_storage_check,
        strict_renames=args.strict_renames or settings.strict_renames,
    )

    report = UpgradeValidator(validations, manifest).validate(args.contract, args.reference, opts)

    if args.format == "json":
        print(json.dumps(report.to_dict(), indent=2))
        return 0 if report.ok else 1

    if not args.quiet:
        target = f" against {_c(report.reference, _CYAN)}" if report.reference else ""
        print(f"\n{_BOLD}Validating{_RESET} {_c(report.contract, _CYAN)}{target}\n")

    if report.errors:
        print(_c(f"  ✗ {len(report.errors)} upgrade safety error(s):", _RED))
        print()
        for error in report.errors:
            print("    " + error.describe().replace("\n", "\n    "))
            print()
    else:
        print(_c("  ✓ No upgrade safety errors.", _GREEN))

    if report.storage is not None:
        _print_storage_report(report.storage, args.quiet)
    elif report.storage_skipped:
        print(_c("  ! Storage layout check skipped.", _YELLOW))
    print()
    return 0 if report.ok else 1


# ── Compare command ──────────────────────────────────────────────────────────


def _run_compare(args: argparse.Namespace) -> int:
    from proxyguard.core.config import get_settings
    from proxyguard.validation.orchestrator import compare_layouts

    settings = get_settings()

    original = _load_layout_file(args.original)
    updated = _load_layout_file(args.updated)
    opts = ValidationOptions(
        unsafe_allow_custom_types=args.unsafe_allow_custom_types or settings.unsafe_allow_custom_types,
        strict_renames=args.strict_renames or settings.strict_renames,
    )
    report = compare_layouts(original, updated, opts)

    if args.format == "json":
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_storage_report(report, args.quiet)
    return 0 if report.ok else 1


# ── erc7201 command ──────────────────────────────────────────────────────────


def _run_erc7201(args: argparse.Namespace) -> int:
    from proxyguard.storage.namespace import ERC7201_FORMULA_PREFIX, calculate_erc7201_storage_location

    namespace_id = args.namespace_id
    if namespace_id.startswith(ERC7201_FORMULA_PREFIX):
        namespace_id = namespace_id[len(ERC7201_FORMULA_PREFIX):]
    print(calculate_erc7201_storage_location(namespace_id))
    return 0


# ── Manifest command ─────────────────────────────────────────────────────────


def _run_manifest(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    from proxyguard.manifest.store import Manifest

    if args.manifest_command != "show":
        parser.print_help()
        return 1

    manifest = Manifest.for_network(args.chain_id, manifest_dir=args.dir)
    _attach_network_context(manifest)
    print(json.dumps(manifest.read().to_json_dict(), indent=2))
    return 0


# ── Config command ───────────────────────────────────────────────────────────


def _run_config() -> int:
    """Print current settings."""
    from proxyguard.core.config import get_settings

    s = get_settings()
    print(f"\n{_BOLD}proxyguard Configuration{_RESET}\n")
    for field_name in sorted(s.model_fields.keys()):
        print(f"  {_DIM}{field_name}:{_RESET}  {getattr(s, field_name, '')}")
    print()
    return 0


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    from proxyguard.core.config import get_settings
    from proxyguard.core.logging import setup_logging

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"proxyguard {__version__}")
        return 0

    settings = get_settings()
    setup_logging(settings.app_env, "WARNING" if args.quiet else settings.log_level)

    if not args.no_banner and not args.quiet:
        print(BANNER, file=sys.stderr)

    if not args.command:
        parser.print_help()
        return 0

    try:
        if args.command == "config":
            return _run_config()
        if args.command == "validate":
            return _run_validate(args)
        if args.command == "compare":
            return _run_compare(args)
        if args.command == "erc7201":
            return _run_erc7201(args)
        if args.command == "manifest":
            return _run_manifest(args, parser)
    except UpgradesError as exc:
        print(_c(f"\nError: {exc}", _RED), file=sys.stderr)
        return 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
