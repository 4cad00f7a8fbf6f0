#!/usr/bin/env python3
# SPDX-License-Identifier: MIT OR Apache-2.0
"""
Release checks for the qemu-system packages produced by the build.

Run from the directory holding `qemu-system-<arch>-<os>.tar` and the `qemu/build`
tree. Checks whose artifacts are not present are skipped.
"""

from __future__ import annotations

import importlib.util
import sys
import unittest
from pathlib import Path


def _load_verify_package():
    script_path = Path(__file__).resolve().parents[1] / "verify_package.py"
    spec = importlib.util.spec_from_file_location("verify_package", script_path)
    assert spec and spec.loader

    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)
    return module


verify_package = _load_verify_package()
MANIFEST = verify_package.load_manifest(verify_package.DEFAULT_MANIFEST)


class _QemuSystemResourceChecks:
    architecture: str

    def _assert_qemu_system(self) -> None:
        validator = MANIFEST.validator(self.architecture)
        if not validator.tar_file.path.is_file():
            self.skipTest(f"{validator.tar_file.filename} not found; build the package first")
        self.assertTrue(validator.valid, validator.message)

    def _assert_link_check(self, check, **kwargs) -> None:
        binary = verify_package.qemu_path(self.architecture, MANIFEST.qemu_build_dir)
        if not binary.is_file():
            self.skipTest(f"{binary} not found; build qemu first")
        result = check(self.architecture, build_dir=MANIFEST.qemu_build_dir, **kwargs)
        if result is None:
            self.skipTest(f"not applicable on {verify_package.detect_host_os()}")
        self.assertTrue(result.passed, result.message)

    def test_contains_the_correct_file_structure(self) -> None:
        self._assert_qemu_system()

    def test_is_only_linked_with_system_dependencies(self) -> None:
        self._assert_link_check(
            verify_package.check_only_system_dependencies,
            allowed_prefixes=MANIFEST.allowed_library_prefixes,
        )

    def test_is_statically_linked(self) -> None:
        self._assert_link_check(verify_package.check_statically_linked)


class QemuSystemX8664Tests(_QemuSystemResourceChecks, unittest.TestCase):
    architecture = "x86_64"


class QemuSystemArm64Tests(_QemuSystemResourceChecks, unittest.TestCase):
    architecture = "aarch64"


if __name__ == "__main__":
    unittest.main()
