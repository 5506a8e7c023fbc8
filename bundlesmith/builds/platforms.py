"""Platform matrix resolution.

This module handles:
- The static platform capability table
- Merging global options with per-product overrides (once, up front)
- Expanding resolved options into concrete platform slice tasks
- Rejecting capability requests a platform cannot satisfy

Configuration errors are raised before any compiler is invoked.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from bundlesmith.builds.options import BuildOptions, BuildOptionsOverride
from bundlesmith.graph.schema import Product
from bundlesmith.types import Platform, ProductKind


class ConfigurationError(Exception):
    """Raised when build options cannot be satisfied."""

    def __init__(self, message: str, code: str = "configuration_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class PlatformCapability:
    """What one platform can build.

    Attributes:
        device_archs: Architectures of the device slice.
        simulator_archs: Architectures of the simulator slice (empty = none).
        supports_library_evolution: Whether binary-interface stability works.
    """

    device_archs: tuple[str, ...]
    simulator_archs: tuple[str, ...] = ()
    supports_library_evolution: bool = True

    @property
    def supports_simulator(self) -> bool:
        return bool(self.simulator_archs)


# Iteration order for tasks and bundle slices, independent of declaration order
PLATFORM_ORDER: tuple[Platform, ...] = (
    Platform.IOS,
    Platform.MACOS,
    Platform.TVOS,
    Platform.WATCHOS,
    Platform.VISIONOS,
)

DEFAULT_CAPABILITIES: Mapping[Platform, PlatformCapability] = {
    Platform.IOS: PlatformCapability(
        device_archs=("arm64",),
        simulator_archs=("arm64", "x86_64"),
    ),
    Platform.MACOS: PlatformCapability(
        device_archs=("arm64", "x86_64"),
    ),
    Platform.TVOS: PlatformCapability(
        device_archs=("arm64",),
        simulator_archs=("arm64", "x86_64"),
    ),
    Platform.WATCHOS: PlatformCapability(
        device_archs=("arm64", "arm64_32", "armv7k"),
        simulator_archs=("arm64", "i386", "x86_64"),
    ),
    Platform.VISIONOS: PlatformCapability(
        device_archs=("arm64",),
        simulator_archs=("arm64",),
    ),
}


@dataclass(frozen=True)
class PlatformTask:
    """One concrete (platform, architecture set) build unit for a product."""

    product: Product
    platform: Platform
    archs: tuple[str, ...]
    simulator: bool = False

    @property
    def slice_id(self) -> str:
        """Directory name of this slice inside the bundle (e.g. ios-arm64)."""
        slice_id = f"{self.platform.value}-{'_'.join(self.archs)}"
        if self.simulator:
            slice_id += "-simulator"
        return slice_id

    @property
    def sdk_variant(self) -> str:
        return "simulator" if self.simulator else "device"


def platform_sort_key(platform: Platform) -> int:
    """Return the stable sort position of a platform."""
    return PLATFORM_ORDER.index(platform)


def validate_overrides(
    overrides: Mapping[str, BuildOptionsOverride],
    products: Iterable[Product],
) -> None:
    """Ensure every override names a known product.

    Args:
        overrides: Per-product overrides keyed by target name.
        products: All products of the graph.

    Raises:
        ConfigurationError: If an override names an unknown product.
    """
    known = {p.target_name for p in products}
    unknown = sorted(name for name in overrides if name not in known)
    if unknown:
        raise ConfigurationError(
            f"Build options override for unknown product(s): {', '.join(unknown)}",
            code="unknown_override",
        )


def resolve_options(
    global_options: BuildOptions,
    overrides: Mapping[str, BuildOptionsOverride],
    product: Product,
) -> BuildOptions:
    """Merge the global options with the product's override, if any."""
    return global_options.merged(overrides.get(product.target_name))


def expand_tasks(
    product: Product,
    options: BuildOptions,
    capabilities: Mapping[Platform, PlatformCapability] = DEFAULT_CAPABILITIES,
) -> list[PlatformTask]:
    """Expand resolved options into the platform tasks of one product.

    Platforms are visited in PLATFORM_ORDER; each yields a device task and,
    when simulator support is on, a simulator task.

    Args:
        product: Product to expand.
        options: Fully resolved options for the product.
        capabilities: Platform capability table.

    Returns:
        Ordered list of PlatformTask. Binary products yield no tasks.

    Raises:
        ConfigurationError: If a platform is unknown or cannot satisfy a
            requested capability.
    """
    # Validate first so misconfigured binary products still fail fast
    for platform in options.platforms:
        capability = capabilities.get(platform)
        if capability is None:
            raise ConfigurationError(
                f"Platform '{platform.value}' is not supported "
                f"(product {product.display_name})",
                code="unknown_platform",
            )
        if options.simulator_supported and not capability.supports_simulator:
            raise ConfigurationError(
                f"Platform '{platform.value}' has no simulator but simulator "
                f"support was requested for {product.display_name}",
                code="unsupported_simulator",
            )
        if options.library_evolution and not capability.supports_library_evolution:
            raise ConfigurationError(
                f"Platform '{platform.value}' does not support library evolution "
                f"requested for {product.display_name}",
                code="unsupported_library_evolution",
            )

    # Prebuilt binaries are copied by the assembler, never compiled
    if product.kind is ProductKind.BINARY:
        return []

    tasks: list[PlatformTask] = []
    for platform in sorted(options.platforms, key=platform_sort_key):
        capability = capabilities[platform]
        tasks.append(
            PlatformTask(
                product=product,
                platform=platform,
                archs=capability.device_archs,
            )
        )
        if options.simulator_supported:
            tasks.append(
                PlatformTask(
                    product=product,
                    platform=platform,
                    archs=capability.simulator_archs,
                    simulator=True,
                )
            )
    return tasks


__all__ = [
    "DEFAULT_CAPABILITIES",
    "PLATFORM_ORDER",
    "ConfigurationError",
    "PlatformCapability",
    "PlatformTask",
    "expand_tasks",
    "platform_sort_key",
    "resolve_options",
    "validate_overrides",
]
