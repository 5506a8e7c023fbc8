"""Build options and per-product overrides.

Options come in two layers: a global default and an optional per-product
override. Override fields that are set replace the global value field by
field; unset fields fall back to the global value. Both layers are
immutable once validated.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bundlesmith.types import BuildConfiguration, FrameworkType, Platform


def _dedupe_platforms(value: list[Platform] | None) -> list[Platform] | None:
    if value is None:
        return None
    seen: list[Platform] = []
    for platform in value:
        if platform not in seen:
            seen.append(platform)
    return seen


class BuildOptions(BaseModel):
    """Fully resolved build configuration for one product.

    Attributes:
        build_configuration: Debug or release.
        platforms: Requested platforms, duplicates removed.
        simulator_supported: Also build simulator slices.
        library_evolution: Enable binary-interface stability.
        framework_type: Dynamic or static frameworks.
        debug_symbols_embedded: Embed debug symbols into the binaries.
        extra_flags: Flags passed through to the compiler verbatim.
        extra_build_parameters: KEY=VALUE build settings for the compiler.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    build_configuration: BuildConfiguration = BuildConfiguration.RELEASE
    platforms: list[Platform] = Field(default_factory=lambda: [Platform.IOS])
    simulator_supported: bool = False
    library_evolution: bool = True
    framework_type: FrameworkType = FrameworkType.DYNAMIC
    debug_symbols_embedded: bool = False
    extra_flags: list[str] = Field(default_factory=list)
    extra_build_parameters: dict[str, str] = Field(default_factory=dict)

    @field_validator("platforms")
    @classmethod
    def validate_platforms(cls, v: list[Platform]) -> list[Platform]:
        """Require at least one platform and drop duplicates."""
        deduped = _dedupe_platforms(v) or []
        if not deduped:
            raise ValueError("at least one platform is required")
        return deduped

    def merged(self, override: BuildOptionsOverride | None) -> BuildOptions:
        """Return a copy with the fields set on ``override`` applied.

        Args:
            override: Per-product override, or None.

        Returns:
            New BuildOptions instance.
        """
        if override is None:
            return self
        update = override.model_dump(exclude_none=True)
        if not update:
            return self
        return BuildOptions.model_validate({**self.model_dump(), **update})

    def summary(self) -> dict[str, Any]:
        """Return a JSON-ready snapshot used for fingerprints and records."""
        return {
            "build_configuration": self.build_configuration.value,
            "platforms": [p.value for p in self.platforms],
            "simulator_supported": self.simulator_supported,
            "library_evolution": self.library_evolution,
            "framework_type": self.framework_type.value,
            "debug_symbols_embedded": self.debug_symbols_embedded,
            "extra_flags": list(self.extra_flags),
            "extra_build_parameters": dict(sorted(self.extra_build_parameters.items())),
        }


class BuildOptionsOverride(BaseModel):
    """Per-product override; every field is optional."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    build_configuration: BuildConfiguration | None = None
    platforms: list[Platform] | None = None
    simulator_supported: bool | None = None
    library_evolution: bool | None = None
    framework_type: FrameworkType | None = None
    debug_symbols_embedded: bool | None = None
    extra_flags: list[str] | None = None
    extra_build_parameters: dict[str, str] | None = None

    @field_validator("platforms")
    @classmethod
    def validate_platforms(cls, v: list[Platform] | None) -> list[Platform] | None:
        """Reject an explicitly empty platform list."""
        if v is not None and not v:
            raise ValueError("platforms override must not be empty")
        return _dedupe_platforms(v)


__all__ = ["BuildOptions", "BuildOptionsOverride"]
