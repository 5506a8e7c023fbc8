"""Tests for builds/fingerprint.py module.

Tests determinism, sensitivity to every input, and independence from
absolute paths.
"""

import shutil
from dataclasses import replace
from pathlib import Path

from bundlesmith.builds.fingerprint import (
    FINGERPRINT_SCHEMA_VERSION,
    compute_source_digest,
    create_fingerprint_inputs,
    fingerprint,
    fingerprint_hex,
    iter_tree_files,
)
from bundlesmith.builds.options import BuildOptions
from bundlesmith.types import ProductKind


class TestComputeSourceDigest:
    """Tests for compute_source_digest function."""

    def test_stable(self, tmp_path: Path) -> None:
        """Same tree produces the same digest."""
        (tmp_path / "a.swift").write_text("let a = 1\n")
        assert compute_source_digest(tmp_path) == compute_source_digest(tmp_path)

    def test_content_change(self, tmp_path: Path) -> None:
        """Changing file content changes the digest."""
        source = tmp_path / "a.swift"
        source.write_text("let a = 1\n")
        before = compute_source_digest(tmp_path)
        source.write_text("let a = 2\n")
        assert compute_source_digest(tmp_path) != before

    def test_rename_changes_digest(self, tmp_path: Path) -> None:
        """Relative paths are part of the digest."""
        (tmp_path / "a.swift").write_text("x\n")
        before = compute_source_digest(tmp_path)
        (tmp_path / "a.swift").rename(tmp_path / "b.swift")
        assert compute_source_digest(tmp_path) != before

    def test_ignored_directories(self, tmp_path: Path) -> None:
        """Build and VCS directories do not contribute."""
        (tmp_path / "a.swift").write_text("x\n")
        before = compute_source_digest(tmp_path)
        (tmp_path / ".build").mkdir()
        (tmp_path / ".build" / "output.o").write_text("object")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref")
        assert compute_source_digest(tmp_path) == before

    def test_missing_directory(self, tmp_path: Path) -> None:
        """A missing directory hashes like an empty one."""
        empty = tmp_path / "empty"
        empty.mkdir()
        assert compute_source_digest(tmp_path / "missing") == compute_source_digest(
            empty
        )

    def test_iteration_sorted(self, tmp_path: Path) -> None:
        """Files are visited in sorted relative-path order."""
        for name in ["b.swift", "a/z.swift", "a/a.swift"]:
            path = tmp_path / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(name)
        rel = [p.relative_to(tmp_path).as_posix() for p in iter_tree_files(tmp_path)]
        assert rel == ["a/a.swift", "a/z.swift", "b.swift"]


class TestFingerprint:
    """Tests for fingerprint function."""

    def test_format(self, make_product) -> None:
        """Fingerprints are sha256:<64 hex chars>."""
        value = fingerprint(make_product(), BuildOptions(), "6.0")
        assert value.startswith("sha256:")
        assert len(fingerprint_hex(value)) == 64

    def test_deterministic(self, make_product) -> None:
        """Identical inputs give identical fingerprints."""
        product = make_product()
        assert fingerprint(product, BuildOptions(), "6.0") == fingerprint(
            product, BuildOptions(), "6.0"
        )

    def test_option_change(self, make_product) -> None:
        """Any option change produces a different fingerprint."""
        product = make_product()
        base = fingerprint(product, BuildOptions(), "6.0")
        variants = [
            BuildOptions(simulator_supported=True),
            BuildOptions(platforms=["ios", "macos"]),
            BuildOptions(build_configuration="debug"),
            BuildOptions(library_evolution=False),
            BuildOptions(framework_type="static"),
            BuildOptions(debug_symbols_embedded=True),
            BuildOptions(extra_flags=["-Osize"]),
            BuildOptions(extra_build_parameters={"SWIFT_VERSION": "5"}),
        ]
        values = {fingerprint(product, options, "6.0") for options in variants}
        assert base not in values
        assert len(values) == len(variants)

    def test_toolchain_change(self, make_product) -> None:
        """A new toolchain invalidates the fingerprint."""
        product = make_product()
        assert fingerprint(product, BuildOptions(), "6.0") != fingerprint(
            product, BuildOptions(), "6.1"
        )

    def test_source_change(self, make_product) -> None:
        """Editing a source file changes the fingerprint."""
        product = make_product()
        before = fingerprint(product, BuildOptions(), "6.0")
        (product.source_dir / "Extra.swift").write_text("struct Extra {}\n")
        assert fingerprint(product, BuildOptions(), "6.0") != before

    def test_revision_change(self, make_product) -> None:
        """A different pinned revision changes the fingerprint."""
        product = make_product(revision="1.0.0")
        assert fingerprint(product, BuildOptions(), "6.0") != fingerprint(
            replace(product, revision="1.0.1"), BuildOptions(), "6.0"
        )

    def test_independent_of_location(self, make_product, tmp_path: Path) -> None:
        """Moving the checkout keeps the fingerprint."""
        product = make_product()
        moved_dir = tmp_path / "elsewhere" / "Lib"
        shutil.copytree(product.source_dir, moved_dir)
        moved = replace(product, source_dir=moved_dir)
        assert fingerprint(product, BuildOptions(), "6.0") == fingerprint(
            moved, BuildOptions(), "6.0"
        )

    def test_binary_hashes_prebuilt_bundle(self, make_product, tmp_path: Path) -> None:
        """Binary products hash the prebuilt bundle, not the source dir."""
        bundle = tmp_path / "Bin.xcframework"
        (bundle / "ios-arm64").mkdir(parents=True)
        (bundle / "Info.plist").write_text("v1")
        product = make_product("Bin", kind=ProductKind.BINARY, binary_path=bundle)

        before = fingerprint(product, BuildOptions(), "6.0")
        (bundle / "Info.plist").write_text("v2")
        assert fingerprint(product, BuildOptions(), "6.0") != before


    def test_resource_outside_source_dir(self, make_product, tmp_path: Path) -> None:
        """Editing a resource declared outside the source dir changes it."""
        shared = tmp_path / "sources" / "Shared"
        shared.mkdir(parents=True)
        (shared / "logo.png").write_text("v1")
        product = make_product(resources=("../../Shared/logo.png",))

        before = fingerprint(product, BuildOptions(), "6.0")
        (shared / "logo.png").write_text("v2")
        assert fingerprint(product, BuildOptions(), "6.0") != before

    def test_module_map_header_outside_source_dir(
        self, make_product, tmp_path: Path
    ) -> None:
        """Headers referenced by a custom module map are hashed."""
        common = tmp_path / "sources" / "LibPackage" / "common"
        common.mkdir(parents=True)
        (common / "shared.h").write_text("int a;\n")
        product = make_product(
            "CLib",
            kind=ProductKind.FOREIGN_MODULE,
            files={
                "calc.c": "int add(int a, int b) { return a + b; }\n",
                "include/module.modulemap": (
                    'module CLib {\n  header "../../common/shared.h"\n}\n'
                ),
            },
            module_map="include/module.modulemap",
        )

        before = fingerprint(product, BuildOptions(), "6.0")
        (common / "shared.h").write_text("int b;\n")
        assert fingerprint(product, BuildOptions(), "6.0") != before


    def test_colliding_module_map_still_fingerprinted(self, make_product) -> None:
        """A module map assembly would reject does not break fingerprinting."""
        product = make_product(
            "CLib",
            kind=ProductKind.FOREIGN_MODULE,
            files={
                "include/module.modulemap": (
                    'module CLib {\n  header "a/x.h"\n  header "b/x.h"\n}\n'
                ),
            },
            module_map="include/module.modulemap",
        )
        inputs = create_fingerprint_inputs(product, BuildOptions(), "6.0")
        assert list(inputs.declared_inputs) == ["module_map:include/module.modulemap"]


class TestFingerprintInputs:
    """Tests for create_fingerprint_inputs function."""

    def test_inputs_snapshot(self, make_product) -> None:
        """Inputs carry schema version, identity and options, no paths."""
        product = make_product()
        inputs = create_fingerprint_inputs(product, BuildOptions(), "6.0")
        data = inputs.to_dict()

        assert data["schema_version"] == FINGERPRINT_SCHEMA_VERSION
        assert data["product"]["target"] == "Lib"
        assert data["toolchain_version"] == "6.0"
        assert data["build_options"]["platforms"] == ["ios"]
        assert str(product.source_dir) not in str(data)
        assert data["declared_inputs"] == {}

    def test_declared_inputs_keyed_by_declared_path(
        self, make_product, tmp_path: Path
    ) -> None:
        """Declared inputs use the declared relative path as key."""
        product = make_product(
            files={"Lib.swift": "x", "logo.png": "png"}, resources=("logo.png",)
        )
        data = create_fingerprint_inputs(product, BuildOptions(), "6.0").to_dict()
        assert list(data["declared_inputs"]) == ["resource:logo.png"]
        assert str(tmp_path) not in str(data)
