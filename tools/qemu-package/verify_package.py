#!/usr/bin/env python3
# SPDX-License-Identifier: MIT OR Apache-2.0
"""
Verify a packaged qemu-system archive before it is published.

The packaging job produces one tarball per (architecture, host OS) pair, named
`qemu-system-<arch>-<os>.tar`, laid out as:

  bin/qemu-system-<arch>
  share/qemu/<firmware blobs>

This tool checks that:
  - the archive contains the emulator binary,
  - the firmware set matches `manifest.json` for the architecture, and
  - the locally built binary is linked the way we ship it (statically on Linux, only
    against system libraries on macOS).

When the archive contents do not match, a diff-style report of expected vs. actual
entries is printed.
"""

from __future__ import annotations

import argparse
import enum
import functools
import json
import subprocess
import sys
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence


SCRIPT_DIR = Path(__file__).resolve().parent
DEFAULT_MANIFEST = SCRIPT_DIR / "manifest.json"

ARCHIVE_KIND = "qemu-system"
HOST_OS_LABELS = {"darwin": "macos", "linux": "linux"}

DEFAULT_BINARY_PREFIX = "bin/qemu"
DEFAULT_FIRMWARE_DIRECTORY = "share/qemu/"
DEFAULT_QEMU_BUILD_DIR = Path("qemu/build")
DEFAULT_ALLOWED_LIBRARY_PREFIXES = ("/System/Library/Frameworks", "/usr/lib", "/usr/local")

STATIC_LINK_MARKERS = ("static-pie linked", "statically linked")


class UnsupportedPlatformError(RuntimeError):
    pass


class CommandError(RuntimeError):
    pass


class FirmwarePolicy(enum.Enum):
    # Archive firmware set must equal the expected set.
    STRICT = "strict"
    # Every expected firmware must be present; extra entries are tolerated.
    SUBSET = "subset"


@functools.lru_cache(maxsize=None)
def detect_host_os() -> str:
    """Return the archive label (`macos` or `linux`) for the running platform."""

    label = HOST_OS_LABELS.get(sys.platform)
    if label is None:
        raise UnsupportedPlatformError(f"Unsupported platform: {sys.platform}")
    return label


def archive_filename(archive_kind: str, architecture: str, host_os: str) -> str:
    return f"{archive_kind}-{architecture}-{host_os}.tar"


def _normalize_entry_path(name: str) -> str:
    return name.removeprefix("./")


@dataclass(frozen=True)
class PackageLayout:
    binary_prefix: str = DEFAULT_BINARY_PREFIX
    firmware_directory: str = DEFAULT_FIRMWARE_DIRECTORY

    def firmware_path(self, name: str) -> str:
        return self.firmware_directory + name


class TarFile:
    """
    Read-only index over one package archive.

    Every listing is computed on first access and cached for the lifetime of the
    instance, so the archive is opened exactly once no matter how often it is queried.
    """

    def __init__(self, path: Path, layout: PackageLayout | None = None) -> None:
        self.path = Path(path)
        self.layout = layout or PackageLayout()

    @classmethod
    def for_package(
        cls,
        *,
        architecture: str,
        host_os: str,
        archive_kind: str = ARCHIVE_KIND,
        directory: Path | None = None,
        layout: PackageLayout | None = None,
    ) -> "TarFile":
        filename = archive_filename(archive_kind, architecture, host_os)
        path = Path(directory) / filename if directory is not None else Path(filename)
        return cls(path, layout)

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def firmware_directory(self) -> str:
        return self.layout.firmware_directory

    @functools.cached_property
    def paths(self) -> tuple[str, ...]:
        # Plain tar only; links and directories are not part of the package contents.
        with tarfile.open(self.path, mode="r:") as tar:
            names = [_normalize_entry_path(member.name) for member in tar if member.isfile()]
        return tuple(sorted(names))

    @functools.cached_property
    def binary_paths(self) -> tuple[str, ...]:
        return tuple(p for p in self.paths if p.startswith(self.layout.binary_prefix))

    @functools.cached_property
    def firmware_paths(self) -> tuple[str, ...]:
        return tuple(p for p in self.paths if p.startswith(self.firmware_directory))

    @functools.cached_property
    def firmware_names(self) -> tuple[str, ...]:
        return tuple(p.removeprefix(self.firmware_directory) for p in self.firmware_paths)


class QemuSystemValidator:
    """Compare one package archive against the firmware expected for an architecture."""

    def __init__(
        self,
        architecture: str,
        firmwares: Iterable[str],
        *,
        policy: FirmwarePolicy | str = FirmwarePolicy.STRICT,
        host_os: str | None = None,
        archive_dir: Path | None = None,
        archive_kind: str = ARCHIVE_KIND,
        layout: PackageLayout | None = None,
    ) -> None:
        self.architecture = architecture
        self.firmwares = tuple(sorted(firmwares))
        self.policy = FirmwarePolicy(policy)
        self.archive_dir = archive_dir
        self.archive_kind = archive_kind
        self.layout = layout
        self._host_os = host_os

    @property
    def host_os(self) -> str:
        if self._host_os is None:
            return detect_host_os()
        return self._host_os

    @functools.cached_property
    def tar_file(self) -> TarFile:
        return TarFile.for_package(
            architecture=self.architecture,
            host_os=self.host_os,
            archive_kind=self.archive_kind,
            directory=self.archive_dir,
            layout=self.layout,
        )

    @functools.cached_property
    def missing(self) -> tuple[str, ...]:
        actual = set(self.tar_file.firmware_names)
        return tuple(name for name in self.firmwares if name not in actual)

    @functools.cached_property
    def extra(self) -> tuple[str, ...]:
        if self.policy is FirmwarePolicy.SUBSET:
            return ()
        expected = set(self.firmwares)
        return tuple(name for name in self.tar_file.firmware_names if name not in expected)

    @functools.cached_property
    def valid(self) -> bool:
        return self._has_qemu_binary() and self._firmware_matching()

    @property
    def message(self) -> str:
        return MessageFormatter(self).format()

    def _has_qemu_binary(self) -> bool:
        return bool(self.tar_file.binary_paths)

    def _firmware_matching(self) -> bool:
        if self.policy is FirmwarePolicy.SUBSET:
            return not self.missing
        return not self.missing and not self.extra


class MessageFormatter:
    """Render the expected/actual/diff report shown when a validator fails."""

    def __init__(self, validator: QemuSystemValidator) -> None:
        self.validator = validator

    @property
    def tar_file(self) -> TarFile:
        return self.validator.tar_file

    def format(self) -> str:
        blocks = [self._expected(), self._actual()]
        if self.validator.policy is FirmwarePolicy.STRICT:
            blocks.append(self._diff())
        return "\n\n".join("\n".join(block) for block in blocks)

    def _expected(self) -> list[str]:
        return [
            f"Expected '{self.tar_file.filename}' to contain:",
            *self.tar_file.binary_paths,
            *self._full_paths(self.validator.firmwares),
        ]

    def _actual(self) -> list[str]:
        return ["Actual:", *self.tar_file.paths]

    def _diff(self) -> list[str]:
        missing = set(self._full_paths(self.validator.missing))
        extra = set(self._full_paths(self.validator.extra))
        union = dict.fromkeys(
            [*self._full_paths(self.validator.firmwares), *self._full_paths(self.tar_file.firmware_names)]
        )

        lines = ["Diff:"]
        for path in union:
            if path in missing:
                lines.append(f"-{path}")
            elif path in extra:
                lines.append(f"+{path}")
            else:
                lines.append(path)
        return lines

    def _full_paths(self, names: Iterable[str]) -> list[str]:
        return [self.tar_file.layout.firmware_path(name) for name in names]


@dataclass(frozen=True)
class CheckResult:
    passed: bool
    message: str = ""


def execute(command: str, *args: str) -> str:
    cmd = [command, *args]
    proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
    if proc.returncode != 0:
        raise CommandError(
            f"Failed to execute command: {' '.join(cmd)}\n"
            f"{proc.stderr.strip() or proc.stdout.strip() or '<no output>'}"
        )
    return proc.stdout


def qemu_path(architecture: str, build_dir: Path = DEFAULT_QEMU_BUILD_DIR) -> Path:
    return Path(build_dir) / f"{ARCHIVE_KIND}-{architecture}"


def non_system_dependencies(otool_output: str, allowed_prefixes: Sequence[str]) -> list[str]:
    """
    Parse `otool -L` output and return linked libraries outside `allowed_prefixes`.

    The first line of the output names the inspected binary; every following line is
    `<library path> (compatibility version ..., current version ...)`.
    """

    deps: list[str] = []
    for line in otool_output.splitlines()[1:]:
        entry = line.strip()
        if not entry:
            continue
        if any(entry.startswith(prefix) for prefix in allowed_prefixes):
            continue
        deps.append(entry.split()[0])
    return deps


def is_statically_linked(file_output: str) -> bool:
    return any(marker in file_output for marker in STATIC_LINK_MARKERS)


def check_only_system_dependencies(
    architecture: str,
    *,
    build_dir: Path = DEFAULT_QEMU_BUILD_DIR,
    allowed_prefixes: Sequence[str] = DEFAULT_ALLOWED_LIBRARY_PREFIXES,
) -> CheckResult | None:
    """macOS only; returns None on other hosts."""

    if detect_host_os() != "macos":
        return None

    path = qemu_path(architecture, build_dir)
    deps = non_system_dependencies(execute("otool", "-L", str(path)), allowed_prefixes)
    if deps:
        formatted = "\n".join(deps)
        return CheckResult(False, f'"{path}" is linked with the following non-system dependencies:\n{formatted}')
    return CheckResult(True)


def check_statically_linked(architecture: str, *, build_dir: Path = DEFAULT_QEMU_BUILD_DIR) -> CheckResult | None:
    """Linux only; returns None on other hosts."""

    if detect_host_os() != "linux":
        return None

    path = qemu_path(architecture, build_dir)
    result = execute("file", str(path))
    if not is_statically_linked(result):
        return CheckResult(False, f'"{path}" is not statically linked:\n{result}')
    return CheckResult(True)


@dataclass(frozen=True)
class ArchitectureSpec:
    name: str
    firmwares: tuple[str, ...]
    policy: FirmwarePolicy


@dataclass(frozen=True)
class PackageManifest:
    archive_kind: str
    layout: PackageLayout
    qemu_build_dir: Path
    allowed_library_prefixes: tuple[str, ...]
    architectures: Mapping[str, ArchitectureSpec]

    def validator(
        self,
        architecture: str,
        *,
        policy: FirmwarePolicy | str | None = None,
        host_os: str | None = None,
        archive_dir: Path | None = None,
    ) -> QemuSystemValidator:
        try:
            arch = self.architectures[architecture]
        except KeyError:
            raise SystemExit(f"manifest has no entry for architecture: {architecture}")
        return QemuSystemValidator(
            arch.name,
            arch.firmwares,
            policy=policy or arch.policy,
            host_os=host_os,
            archive_dir=archive_dir,
            archive_kind=self.archive_kind,
            layout=self.layout,
        )


def _string_field(raw: Mapping[str, object], key: str, default: str, *, source: Path) -> str:
    value = raw.get(key, default)
    if not isinstance(value, str) or not value:
        raise SystemExit(f"manifest field '{key}' must be a non-empty string: {source}")
    return value


def _string_list(value: object, what: str, *, source: Path) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
        raise SystemExit(f"manifest field '{what}' must be a list of non-empty strings: {source}")
    return tuple(value)


def _parse_architecture(name: str, raw: object, *, source: Path) -> ArchitectureSpec:
    if not isinstance(raw, dict):
        raise SystemExit(f"manifest architecture '{name}' must be an object: {source}")

    firmwares = _string_list(raw.get("firmwares"), f"architectures.{name}.firmwares", source=source)
    dupes = sorted({f for f in firmwares if firmwares.count(f) > 1})
    if dupes:
        formatted = "\n".join(f"- {f}" for f in dupes)
        raise SystemExit(f"manifest architecture '{name}' lists duplicate firmwares:\n{formatted}")

    policy_raw = raw.get("policy", FirmwarePolicy.STRICT.value)
    try:
        policy = FirmwarePolicy(policy_raw)
    except ValueError:
        choices = ", ".join(p.value for p in FirmwarePolicy)
        raise SystemExit(
            f"manifest architecture '{name}' has invalid policy {policy_raw!r} (expected one of: {choices}): {source}"
        )

    return ArchitectureSpec(name=name, firmwares=tuple(sorted(firmwares)), policy=policy)


def parse_manifest(raw: object, *, source: Path) -> PackageManifest:
    if not isinstance(raw, dict):
        raise SystemExit(f"manifest must be a JSON object: {source}")

    firmware_directory = _string_field(raw, "firmware_directory", DEFAULT_FIRMWARE_DIRECTORY, source=source)
    if not firmware_directory.endswith("/"):
        firmware_directory += "/"

    layout = PackageLayout(
        binary_prefix=_string_field(raw, "binary_prefix", DEFAULT_BINARY_PREFIX, source=source),
        firmware_directory=firmware_directory,
    )

    allowed = raw.get("allowed_library_prefixes", list(DEFAULT_ALLOWED_LIBRARY_PREFIXES))
    architectures_raw = raw.get("architectures")
    if not isinstance(architectures_raw, dict) or not architectures_raw:
        raise SystemExit(f"manifest field 'architectures' must be a non-empty object: {source}")

    return PackageManifest(
        archive_kind=_string_field(raw, "archive_kind", ARCHIVE_KIND, source=source),
        layout=layout,
        qemu_build_dir=Path(_string_field(raw, "qemu_build_dir", str(DEFAULT_QEMU_BUILD_DIR), source=source)),
        allowed_library_prefixes=_string_list(allowed, "allowed_library_prefixes", source=source),
        architectures={
            name: _parse_architecture(name, spec, source=source) for name, spec in architectures_raw.items()
        },
    )


def load_manifest(path: Path) -> PackageManifest:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise SystemExit(f"manifest not found: {path}")
    except json.JSONDecodeError as e:
        raise SystemExit(f"failed to parse manifest JSON ({path}): {e}")
    return parse_manifest(raw, source=path)


def _verify_architecture(
    manifest: PackageManifest,
    architecture: str,
    *,
    policy: str | None,
    host_os: str,
    archive_dir: Path,
    build_dir: Path,
    link_checks: bool,
) -> list[str]:
    failures: list[str] = []

    validator = manifest.validator(architecture, policy=policy, host_os=host_os, archive_dir=archive_dir)
    try:
        if validator.valid:
            print(f"ok: {validator.tar_file.filename}")
        else:
            failures.append(validator.message)
    except (OSError, tarfile.TarError) as e:
        failures.append(f"error: failed to read {validator.tar_file.path}: {e}")

    if not link_checks:
        return failures

    only_system = functools.partial(
        check_only_system_dependencies,
        build_dir=build_dir,
        allowed_prefixes=manifest.allowed_library_prefixes,
    )
    statically_linked = functools.partial(check_statically_linked, build_dir=build_dir)

    for label, check in (("only system dependencies", only_system), ("statically linked", statically_linked)):
        try:
            result = check(architecture)
        except (OSError, CommandError) as e:
            failures.append(f"error: {e}")
            continue
        if result is None:
            continue
        if result.passed:
            print(f"ok: {qemu_path(architecture, build_dir)} ({label})")
        else:
            failures.append(result.message)

    return failures


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Verify packaged qemu-system archives and binaries.")
    parser.add_argument(
        "--manifest",
        type=Path,
        default=DEFAULT_MANIFEST,
        help="Path to the package manifest (default: manifest.json next to this script)",
    )
    parser.add_argument(
        "--archive-dir",
        type=Path,
        default=Path("."),
        help="Directory containing qemu-system-<arch>-<os>.tar (default: current directory)",
    )
    parser.add_argument(
        "--arch",
        action="append",
        dest="architectures",
        help="Architecture to verify; may be repeated (default: every architecture in the manifest)",
    )
    parser.add_argument(
        "--policy",
        choices=[p.value for p in FirmwarePolicy],
        default=None,
        help="Override the firmware comparison policy from the manifest",
    )
    parser.add_argument(
        "--host-os",
        choices=sorted(set(HOST_OS_LABELS.values())),
        default=None,
        help="Verify the archive built for another host OS (disables link checks)",
    )
    parser.add_argument(
        "--qemu-build-dir",
        type=Path,
        default=None,
        help="Directory containing the built qemu-system-<arch> binaries (default: from manifest)",
    )
    parser.add_argument("--skip-link-checks", action="store_true", help="Only verify archive contents")
    args = parser.parse_args(argv)

    manifest = load_manifest(args.manifest)

    link_checks = not args.skip_link_checks
    host_os = args.host_os
    if host_os is None:
        try:
            host_os = detect_host_os()
        except UnsupportedPlatformError as e:
            raise SystemExit(str(e))
    else:
        link_checks = False

    architectures = args.architectures or list(manifest.architectures)
    build_dir = args.qemu_build_dir or manifest.qemu_build_dir

    failures: list[str] = []
    for architecture in architectures:
        failures += _verify_architecture(
            manifest,
            architecture,
            policy=args.policy,
            host_os=host_os,
            archive_dir=args.archive_dir,
            build_dir=build_dir,
            link_checks=link_checks,
        )

    if failures:
        print("\n\n".join(failures), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
