"""Pydantic models for the resolved dependency graph.

The graph is produced by an external manifest resolver and handed to
bundlesmith as a YAML/JSON run document. These models validate that
document at the boundary and turn it into immutable Product values.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from bundlesmith.builds.options import BuildOptions, BuildOptionsOverride
from bundlesmith.types import ProductKind, RunMode

TARGET_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


@dataclass(frozen=True)
class Product:
    """One compilation unit to be built and packaged.

    Attributes:
        package_id: Identity of the owning package.
        package_name: Display name of the owning package.
        target_name: Target name; also the bundle display name.
        kind: Product kind.
        source_dir: Absolute source directory (never part of the fingerprint).
        revision: Pinned package revision, if known.
        resources: Resource paths relative to source_dir.
        module_map: Custom module map path relative to source_dir.
        binary_path: Prebuilt bundle for binary products.
        dependencies: Names of targets this product depends on.
    """

    package_id: str
    package_name: str
    target_name: str
    kind: ProductKind
    source_dir: Path
    revision: str | None = None
    resources: tuple[str, ...] = ()
    module_map: str | None = None
    binary_path: Path | None = None
    dependencies: tuple[str, ...] = field(default_factory=tuple)

    @property
    def display_name(self) -> str:
        return self.target_name

    @property
    def bundle_name(self) -> str:
        return f"{self.display_name}.xcframework"

    @property
    def framework_name(self) -> str:
        return f"{self.target_name}.framework"

    @property
    def resource_bundle_name(self) -> str:
        return f"{self.package_name}_{self.target_name}.bundle"

    def identity(self) -> dict[str, str]:
        """Return the machine-independent identity of this product."""
        return {
            "package_id": self.package_id,
            "target": self.target_name,
            "kind": self.kind.value,
        }


class TargetSchema(BaseModel):
    """Schema for one target of a resolved package.

    Attributes:
        name: Target name, unique across the whole graph.
        kind: Product kind.
        path: Source directory relative to the package path.
        resources: Resource files relative to the target source directory.
        module_map: Custom module map relative to the target source directory.
        binary_path: Prebuilt bundle relative to the package path.
        dependencies: Target names this target depends on.
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    kind: ProductKind = ProductKind.LIBRARY
    path: str | None = None
    resources: list[str] = Field(default_factory=list)
    module_map: str | None = None
    binary_path: str | None = None
    dependencies: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate the target name is usable as a file name."""
        if not TARGET_NAME_PATTERN.match(v):
            raise ValueError(f"invalid target name '{v}'")
        return v

    @field_validator("resources")
    @classmethod
    def validate_resources(cls, v: list[str]) -> list[str]:
        """Validate resources are relative paths."""
        for resource in v:
            if Path(resource).is_absolute():
                raise ValueError(f"resource path must be relative: '{resource}'")
        return v

    @field_validator("module_map")
    @classmethod
    def validate_module_map(cls, v: str | None) -> str | None:
        """Validate the module map is a relative path."""
        if v is not None and Path(v).is_absolute():
            raise ValueError(f"module_map path must be relative: '{v}'")
        return v

    @model_validator(mode="after")
    def validate_kind_fields(self) -> TargetSchema:
        """Check fields that only make sense for some kinds."""
        if self.kind is ProductKind.BINARY and not self.binary_path:
            raise ValueError(f"binary target '{self.name}' requires binary_path")
        if self.module_map and self.kind is not ProductKind.FOREIGN_MODULE:
            raise ValueError(
                f"module_map is only valid for foreign-module targets ('{self.name}')"
            )
        return self


class PackageSchema(BaseModel):
    """Schema for one resolved package."""

    model_config = ConfigDict(extra="forbid")

    package_id: str
    name: str
    path: str
    revision: str | None = None
    targets: list[TargetSchema] = Field(default_factory=list)


class RunDocument(BaseModel):
    """Resolved graph plus the build options of a run.

    Attributes:
        root: Name of the root package.
        packages: All resolved packages, root included.
        build_options: Global build options.
        build_options_matrix: Per-product overrides keyed by target name.
    """

    model_config = ConfigDict(extra="forbid")

    root: str
    packages: list[PackageSchema]
    build_options: BuildOptions = Field(default_factory=BuildOptions)
    build_options_matrix: dict[str, BuildOptionsOverride] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_graph(self) -> RunDocument:
        """Check the root exists, target names are unique and deps resolve."""
        if not any(p.name == self.root for p in self.packages):
            raise ValueError(f"root package '{self.root}' is not in packages")

        names: set[str] = set()
        for package in self.packages:
            for target in package.targets:
                if target.name in names:
                    raise ValueError(f"duplicate target name '{target.name}'")
                names.add(target.name)

        for package in self.packages:
            for target in package.targets:
                unknown = [d for d in target.dependencies if d not in names]
                if unknown:
                    raise ValueError(
                        f"target '{target.name}' depends on unknown targets: "
                        f"{', '.join(unknown)}"
                    )
        return self

    def products(self, base_dir: Path) -> list[Product]:
        """Build Product values for every target in the graph.

        Args:
            base_dir: Directory that relative package paths are resolved against.

        Returns:
            Products in document order.
        """
        products: list[Product] = []
        for package in self.packages:
            package_dir = (base_dir / package.path).resolve()
            for target in package.targets:
                source_dir = package_dir / (target.path or f"Sources/{target.name}")
                binary_path = (
                    package_dir / target.binary_path if target.binary_path else None
                )
                products.append(
                    Product(
                        package_id=package.package_id,
                        package_name=package.name,
                        target_name=target.name,
                        kind=target.kind,
                        source_dir=source_dir,
                        revision=package.revision,
                        resources=tuple(target.resources),
                        module_map=target.module_map,
                        binary_path=binary_path,
                        dependencies=tuple(target.dependencies),
                    )
                )
        return products

    def select_products(self, base_dir: Path, mode: RunMode) -> list[Product]:
        """Return the products in scope for a run mode.

        Args:
            base_dir: Directory that relative package paths are resolved against.
            mode: PREPARE_DEPENDENCIES selects non-root packages,
                CREATE_PACKAGE selects the root package.

        Returns:
            Products in scope, in document order.
        """
        products = self.products(base_dir)
        if mode is RunMode.CREATE_PACKAGE:
            return [p for p in products if p.package_name == self.root]
        return [p for p in products if p.package_name != self.root]

    def summary(self) -> dict[str, Any]:
        """Return a short description for logging."""
        return {
            "root": self.root,
            "packages": len(self.packages),
            "targets": sum(len(p.targets) for p in self.packages),
            "overrides": sorted(self.build_options_matrix),
        }


__all__ = [
    "PackageSchema",
    "Product",
    "RunDocument",
    "TargetSchema",
]
