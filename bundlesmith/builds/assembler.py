"""Bundle assembly.

This module handles:
- Ordering per-slice frameworks deterministically
- Normalizing module declarations of foreign-language modules
- Embedding resource bundles identically into every slice
- Invoking the external merge tool to produce the final bundle
- Copying prebuilt binary bundles

Everything is written below a staging directory; publishing the result is
the caller's job and only happens after assemble() returns.
"""

from __future__ import annotations

import logging
import plistlib
import shlex
import shutil
import subprocess
from pathlib import Path

from bundlesmith.builds.fingerprint import compute_source_digest
from bundlesmith.builds.modulemap import ModuleMapError, normalize_framework_module_map
from bundlesmith.builds.platforms import PlatformTask, platform_sort_key
from bundlesmith.graph.schema import Product
from bundlesmith.types import ProductKind

logger = logging.getLogger(__name__)

INPUTS_DIRNAME = "inputs"

# Number of trailing merge tool output lines kept in error messages
ERROR_TAIL_LINES = 20


class AssemblyError(Exception):
    """Raised when a bundle cannot be assembled."""

    def __init__(self, message: str, code: str = "assembly_error") -> None:
        super().__init__(message)
        self.code = code


def order_slices(
    slices: list[tuple[PlatformTask, Path]],
) -> list[tuple[PlatformTask, Path]]:
    """Sort slices by platform order, device before simulator."""
    return sorted(
        slices,
        key=lambda item: (platform_sort_key(item[0].platform), item[0].simulator),
    )


def resource_bundle_info(product: Product) -> dict[str, str]:
    """Return the Info.plist contents of a product's resource bundle."""
    identifier = f"{product.package_name}.{product.target_name}.resources"
    return {
        "CFBundleDevelopmentRegion": "en",
        "CFBundleIdentifier": identifier.replace("_", "-"),
        "CFBundleInfoDictionaryVersion": "6.0",
        "CFBundleName": f"{product.package_name}_{product.target_name}",
        "CFBundlePackageType": "BNDL",
    }


def embed_resources(product: Product, framework: Path) -> str | None:
    """Package the product's resources into a sub-bundle of a framework.

    Files are copied to the bundle root, directories keep their name and
    layout. An Info.plist is generated for the bundle.

    Args:
        product: Product owning the resources.
        framework: Framework directory of one slice.

    Returns:
        Content digest of the resource bundle, or None without resources.

    Raises:
        AssemblyError: If a declared resource does not exist or cannot be
            copied.
    """
    if not product.resources:
        return None

    bundle = framework / product.resource_bundle_name
    try:
        if bundle.exists():
            shutil.rmtree(bundle)
        bundle.mkdir(parents=True)

        for resource in product.resources:
            source = product.source_dir / resource
            if source.is_dir():
                shutil.copytree(source, bundle / source.name)
            elif source.is_file():
                shutil.copy2(source, bundle / source.name)
            else:
                raise AssemblyError(
                    f"Resource '{resource}' of {product.display_name} not found "
                    f"in {product.source_dir}",
                    code="missing_resource",
                )

        with (bundle / "Info.plist").open("wb") as f:
            plistlib.dump(resource_bundle_info(product), f, sort_keys=True)

        return compute_source_digest(bundle)
    except OSError as e:
        raise AssemblyError(
            f"Failed to embed resources of {product.display_name}: {e}",
            code="io_error",
        ) from e


def run_merge_tool(
    merge_command: list[str],
    frameworks: list[Path],
    output: Path,
    timeout: float | None = None,
) -> None:
    """Invoke the external merge tool.

    Args:
        merge_command: Base merge command.
        frameworks: Framework directories in bundle order.
        output: Bundle path to create.
        timeout: Timeout in seconds.

    Raises:
        AssemblyError: If the tool fails, times out or produces nothing.
    """
    cmd = [*merge_command, "-create-xcframework"]
    for framework in frameworks:
        cmd.extend(["-framework", str(framework)])
    cmd.extend(["-output", str(output)])

    cmd_str = shlex.join(cmd)
    logger.info("Executing merge: %s", cmd_str)
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise AssemblyError(
            f"Merge tool timed out after {timeout} seconds", code="merge_timeout"
        ) from e
    except OSError as e:
        raise AssemblyError(
            f"Failed to execute merge tool: {e}", code="merge_failed"
        ) from e

    if result.returncode != 0:
        tail = "\n".join((result.stderr or result.stdout).splitlines()[-ERROR_TAIL_LINES:])
        raise AssemblyError(
            f"Merge tool failed with exit code {result.returncode}: {tail}",
            code="merge_failed",
        )
    if not output.is_dir() or not any(output.iterdir()):
        raise AssemblyError(
            f"Merge tool produced no bundle at {output}", code="merge_failed"
        )


class BundleAssembler:
    """Assembles per-slice frameworks into one bundle.

    Args:
        merge_command: Base command of the external merge tool.
        timeout: Timeout in seconds for one merge invocation.
    """

    def __init__(self, merge_command: list[str], timeout: float | None = None) -> None:
        self.merge_command = merge_command
        self.timeout = timeout

    def assemble(
        self,
        product: Product,
        slices: list[tuple[PlatformTask, Path]],
        staging_dir: Path,
    ) -> Path:
        """Assemble a product's bundle below a staging directory.

        Args:
            product: Product to assemble.
            slices: (task, framework) pairs from the build executor; ignored
                for binary products.
            staging_dir: Empty staging directory owned by the caller.

        Returns:
            Path of the assembled bundle inside ``staging_dir``.

        Raises:
            AssemblyError: If any step fails.
        """
        if product.kind is ProductKind.BINARY:
            return self._copy_binary(product, staging_dir)
        if product.kind is ProductKind.RESOURCES and not product.resources:
            raise AssemblyError(
                f"Resource product {product.display_name} declares no resources",
                code="missing_resource",
            )
        if not slices:
            raise AssemblyError(
                f"No slices to assemble for {product.display_name}",
                code="no_slices",
            )

        inputs = self._prepare_inputs(product, order_slices(slices), staging_dir)
        bundle = staging_dir / product.bundle_name
        run_merge_tool(self.merge_command, inputs, bundle, timeout=self.timeout)
        logger.info(
            "Assembled %s from %d slice(s)", product.bundle_name, len(inputs)
        )
        return bundle

    def _prepare_inputs(
        self,
        product: Product,
        slices: list[tuple[PlatformTask, Path]],
        staging_dir: Path,
    ) -> list[Path]:
        custom_module_map = (
            product.source_dir / product.module_map if product.module_map else None
        )
        frameworks: list[Path] = []
        resource_digests: dict[str, str | None] = {}

        for task, built in slices:
            framework = (
                staging_dir / INPUTS_DIRNAME / task.slice_id / product.framework_name
            )
            try:
                shutil.copytree(built, framework, symlinks=True)
                if product.kind is ProductKind.FOREIGN_MODULE:
                    normalize_framework_module_map(
                        framework, product.target_name, custom_module_map
                    )
            except ModuleMapError as e:
                raise AssemblyError(
                    f"{product.display_name} ({task.slice_id}): {e}", code=e.code
                ) from e
            except OSError as e:
                raise AssemblyError(
                    f"Failed to stage {task.slice_id} of {product.display_name}: {e}",
                    code="io_error",
                ) from e

            resource_digests[task.slice_id] = embed_resources(product, framework)
            frameworks.append(framework)

        if len(set(resource_digests.values())) > 1:
            raise AssemblyError(
                f"Resource bundles of {product.display_name} differ between "
                f"slices: {resource_digests}",
                code="resource_mismatch",
            )
        return frameworks

    def _copy_binary(self, product: Product, staging_dir: Path) -> Path:
        source = product.binary_path
        if source is None or not source.is_dir():
            raise AssemblyError(
                f"Prebuilt bundle of {product.display_name} not found: {source}",
                code="missing_binary",
            )
        bundle = staging_dir / product.bundle_name
        try:
            shutil.copytree(source, bundle, symlinks=True)
        except OSError as e:
            raise AssemblyError(
                f"Failed to copy prebuilt {product.bundle_name}: {e}",
                code="io_error",
            ) from e
        logger.info("Copied prebuilt %s", product.bundle_name)
        return bundle


__all__ = [
    "AssemblyError",
    "BundleAssembler",
    "embed_resources",
    "order_slices",
    "resource_bundle_info",
    "run_merge_tool",
]
