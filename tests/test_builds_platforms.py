"""Tests for builds/platforms.py module."""

import pytest

from bundlesmith.builds.options import BuildOptions, BuildOptionsOverride
from bundlesmith.builds.platforms import (
    DEFAULT_CAPABILITIES,
    ConfigurationError,
    PlatformCapability,
    PlatformTask,
    expand_tasks,
    resolve_options,
    validate_overrides,
)
from bundlesmith.types import Platform, ProductKind


class TestPlatformTask:
    """Tests for PlatformTask slice naming."""

    def test_device_slice_id(self, make_product) -> None:
        """Device slices are <platform>-<archs>."""
        task = PlatformTask(make_product(), Platform.IOS, ("arm64",))
        assert task.slice_id == "ios-arm64"
        assert task.sdk_variant == "device"

    def test_simulator_slice_id(self, make_product) -> None:
        """Simulator slices carry the -simulator suffix."""
        task = PlatformTask(
            make_product(), Platform.IOS, ("arm64", "x86_64"), simulator=True
        )
        assert task.slice_id == "ios-arm64_x86_64-simulator"
        assert task.sdk_variant == "simulator"


class TestExpandTasks:
    """Tests for expand_tasks function."""

    def test_single_platform_device_only(self, make_product) -> None:
        """One platform without simulator yields exactly one device task."""
        tasks = expand_tasks(make_product(), BuildOptions(platforms=["ios"]))

        assert len(tasks) == 1
        assert tasks[0].platform is Platform.IOS
        assert tasks[0].archs == ("arm64",)
        assert tasks[0].simulator is False

    def test_simulator_follows_device(self, make_product) -> None:
        """Each platform yields device then simulator."""
        options = BuildOptions(platforms=["ios", "watchos"], simulator_supported=True)
        slice_ids = [t.slice_id for t in expand_tasks(make_product(), options)]
        assert slice_ids == [
            "ios-arm64",
            "ios-arm64_x86_64-simulator",
            "watchos-arm64_arm64_32_armv7k",
            "watchos-arm64_i386_x86_64-simulator",
        ]

    def test_order_independent_of_declaration(self, make_product) -> None:
        """Task order follows the platform order, not the option order."""
        product = make_product()
        forward = expand_tasks(product, BuildOptions(platforms=["ios", "tvos"]))
        backward = expand_tasks(product, BuildOptions(platforms=["tvos", "ios"]))
        assert [t.slice_id for t in forward] == [t.slice_id for t in backward]

    def test_simulator_on_macos_rejected(self, make_product) -> None:
        """A platform without simulator cannot satisfy simulator support."""
        options = BuildOptions(platforms=["macos"], simulator_supported=True)
        with pytest.raises(ConfigurationError) as exc_info:
            expand_tasks(make_product(), options)
        assert exc_info.value.code == "unsupported_simulator"

    def test_library_evolution_unsupported(self, make_product) -> None:
        """Capability mismatches are errors, never silently dropped."""
        table = {
            **DEFAULT_CAPABILITIES,
            Platform.TVOS: PlatformCapability(
                device_archs=("arm64",), supports_library_evolution=False
            ),
        }
        options = BuildOptions(platforms=["ios", "tvos"], library_evolution=True)
        with pytest.raises(ConfigurationError) as exc_info:
            expand_tasks(make_product(), options, table)
        assert exc_info.value.code == "unsupported_library_evolution"

    def test_unknown_platform(self, make_product) -> None:
        """Platforms missing from the table are configuration errors."""
        table = {Platform.IOS: DEFAULT_CAPABILITIES[Platform.IOS]}
        with pytest.raises(ConfigurationError) as exc_info:
            expand_tasks(make_product(), BuildOptions(platforms=["visionos"]), table)
        assert exc_info.value.code == "unknown_platform"

    def test_binary_products_expand_to_nothing(self, make_product) -> None:
        """Prebuilt binaries are never compiled."""
        product = make_product("Bin", kind=ProductKind.BINARY)
        assert expand_tasks(product, BuildOptions(platforms=["ios"])) == []

    def test_binary_products_still_validated(self, make_product) -> None:
        """Bad options fail even for products that compile nothing."""
        product = make_product("Bin", kind=ProductKind.BINARY)
        options = BuildOptions(platforms=["macos"], simulator_supported=True)
        with pytest.raises(ConfigurationError):
            expand_tasks(product, options)


class TestOverrides:
    """Tests for override validation and resolution."""

    def test_override_restricts_only_named_product(self, make_product) -> None:
        """Sibling products keep the global platform set."""
        lib = make_product("Lib")
        sibling = make_product("Other")
        global_options = BuildOptions(platforms=["ios", "watchos"])
        overrides = {"Lib": BuildOptionsOverride(platforms=["ios"])}

        lib_tasks = expand_tasks(lib, resolve_options(global_options, overrides, lib))
        sibling_tasks = expand_tasks(
            sibling, resolve_options(global_options, overrides, sibling)
        )

        assert {t.platform for t in lib_tasks} == {Platform.IOS}
        assert {t.platform for t in sibling_tasks} == {Platform.IOS, Platform.WATCHOS}

    def test_unknown_override_rejected(self, make_product) -> None:
        """Overrides must name a product of the graph."""
        with pytest.raises(ConfigurationError) as exc_info:
            validate_overrides(
                {"Ghost": BuildOptionsOverride(platforms=["ios"])}, [make_product()]
            )
        assert exc_info.value.code == "unknown_override"

    def test_known_override_accepted(self, make_product) -> None:
        """Overrides naming known products pass validation."""
        validate_overrides({"Lib": BuildOptionsOverride()}, [make_product("Lib")])
