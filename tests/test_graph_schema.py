"""Tests for graph/schema.py module."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from bundlesmith.graph.schema import Product, RunDocument, TargetSchema
from bundlesmith.types import Platform, ProductKind, RunMode


def _document(**overrides) -> dict:
    data = {
        "root": "App",
        "packages": [
            {
                "package_id": "example.com/app",
                "name": "App",
                "path": "app",
                "targets": [{"name": "AppCore", "dependencies": ["Lib"]}],
            },
            {
                "package_id": "example.com/lib",
                "name": "LibPackage",
                "path": "lib",
                "revision": "1.2.0",
                "targets": [
                    {"name": "Lib", "resources": ["Resources/logo.png"]},
                    {
                        "name": "CLib",
                        "kind": "foreign-module",
                        "path": "Sources/CLib",
                        "module_map": "include/module.modulemap",
                    },
                    {
                        "name": "Prebuilt",
                        "kind": "binary",
                        "binary_path": "Artifacts/Prebuilt.xcframework",
                    },
                ],
            },
        ],
    }
    data.update(overrides)
    return data


class TestProduct:
    """Tests for Product value."""

    def test_names(self, tmp_path: Path) -> None:
        """Bundle, framework and resource bundle names follow the target."""
        product = Product(
            package_id="example.com/lib",
            package_name="LibPackage",
            target_name="Lib",
            kind=ProductKind.LIBRARY,
            source_dir=tmp_path,
        )
        assert product.display_name == "Lib"
        assert product.bundle_name == "Lib.xcframework"
        assert product.framework_name == "Lib.framework"
        assert product.resource_bundle_name == "LibPackage_Lib.bundle"

    def test_identity_excludes_paths(self, tmp_path: Path) -> None:
        """Identity must not carry machine-specific paths."""
        product = Product(
            package_id="example.com/lib",
            package_name="LibPackage",
            target_name="Lib",
            kind=ProductKind.LIBRARY,
            source_dir=tmp_path,
        )
        identity = product.identity()
        assert identity == {
            "package_id": "example.com/lib",
            "target": "Lib",
            "kind": "library",
        }
        assert str(tmp_path) not in str(identity)


class TestTargetSchema:
    """Tests for TargetSchema validation."""

    def test_invalid_name_rejected(self) -> None:
        """Target names must be usable as file names."""
        with pytest.raises(ValidationError):
            TargetSchema(name="../evil")

    def test_binary_requires_path(self) -> None:
        """Binary targets need a prebuilt bundle path."""
        with pytest.raises(ValidationError, match="binary_path"):
            TargetSchema(name="Bin", kind="binary")

    def test_module_map_only_for_foreign_modules(self) -> None:
        """Module maps are rejected on library targets."""
        with pytest.raises(ValidationError, match="module_map"):
            TargetSchema(name="Lib", module_map="module.modulemap")

    def test_unknown_field_rejected(self) -> None:
        """Unknown fields should be rejected."""
        with pytest.raises(ValidationError):
            TargetSchema(name="Lib", flavor="spicy")

    def test_absolute_resource_rejected(self) -> None:
        """Resources must be relative to the target directory."""
        with pytest.raises(ValidationError, match="must be relative"):
            TargetSchema(name="Lib", resources=["/etc/logo.png"])

    def test_absolute_module_map_rejected(self) -> None:
        """Module maps must be relative to the target directory."""
        with pytest.raises(ValidationError, match="must be relative"):
            TargetSchema(
                name="CLib", kind="foreign-module", module_map="/tmp/module.modulemap"
            )

    def test_parent_relative_resource_allowed(self) -> None:
        """Resources may live next to the target directory."""
        target = TargetSchema(name="Lib", resources=["../../Shared/logo.png"])
        assert target.resources == ["../../Shared/logo.png"]


class TestRunDocument:
    """Tests for RunDocument validation and product selection."""

    def test_valid_document(self) -> None:
        """A well-formed document validates with default options."""
        doc = RunDocument.model_validate(_document())
        assert doc.root == "App"
        assert doc.build_options.platforms == [Platform.IOS]
        assert doc.build_options_matrix == {}

    def test_missing_root_rejected(self) -> None:
        """The root package must be part of the graph."""
        with pytest.raises(ValidationError, match="root package"):
            RunDocument.model_validate(_document(root="Missing"))

    def test_duplicate_targets_rejected(self) -> None:
        """Target names must be unique across packages."""
        data = _document()
        data["packages"][0]["targets"].append({"name": "Lib"})
        with pytest.raises(ValidationError, match="duplicate target"):
            RunDocument.model_validate(data)

    def test_unknown_dependency_rejected(self) -> None:
        """Dependencies must name targets of the graph."""
        data = _document()
        data["packages"][0]["targets"][0]["dependencies"] = ["Ghost"]
        with pytest.raises(ValidationError, match="Ghost"):
            RunDocument.model_validate(data)

    def test_products_resolve_paths(self, tmp_path: Path) -> None:
        """Relative paths resolve against the base directory."""
        doc = RunDocument.model_validate(_document())
        products = {p.target_name: p for p in doc.products(tmp_path)}

        lib_dir = (tmp_path / "lib").resolve()
        assert products["Lib"].source_dir == lib_dir / "Sources" / "Lib"
        assert products["Lib"].resources == ("Resources/logo.png",)
        assert products["Lib"].revision == "1.2.0"
        assert products["CLib"].source_dir == lib_dir / "Sources" / "CLib"
        assert products["CLib"].module_map == "include/module.modulemap"
        assert products["Prebuilt"].binary_path == (
            lib_dir / "Artifacts" / "Prebuilt.xcframework"
        )
        assert products["AppCore"].dependencies == ("Lib",)

    def test_select_prepare_skips_root(self, tmp_path: Path) -> None:
        """Prepare mode selects only dependency packages."""
        doc = RunDocument.model_validate(_document())
        names = [
            p.target_name
            for p in doc.select_products(tmp_path, RunMode.PREPARE_DEPENDENCIES)
        ]
        assert names == ["Lib", "CLib", "Prebuilt"]

    def test_select_create_only_root(self, tmp_path: Path) -> None:
        """Create mode selects the root package's targets."""
        doc = RunDocument.model_validate(_document())
        names = [
            p.target_name for p in doc.select_products(tmp_path, RunMode.CREATE_PACKAGE)
        ]
        assert names == ["AppCore"]

    def test_summary(self) -> None:
        """Summary counts packages and targets."""
        data = _document(build_options_matrix={"Lib": {"platforms": ["ios"]}})
        summary = RunDocument.model_validate(data).summary()
        assert summary == {
            "root": "App",
            "packages": 2,
            "targets": 4,
            "overrides": ["Lib"],
        }
