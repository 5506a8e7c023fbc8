"""Module declaration normalization for foreign-language modules.

Custom module maps reference headers by paths relative to the source tree.
Inside a framework those headers live in ``Headers/``, so the declaration
is rewritten into a framework module with framework-relative paths. Only
the path form changes; umbrella versus explicit header lists, exports and
submodules are kept as written.
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

MODULE_MAP_NAME = "module.modulemap"

# Top-level "module Foo {" that is not yet a framework module
_TOP_LEVEL_MODULE = re.compile(r"^module(\s+)", re.MULTILINE)

# Header declarations: [private|textual|exclude] [umbrella] header "path"
_HEADER_DECL = re.compile(
    r'(?P<prefix>\b(?:(?:private|textual|exclude)\s+)*(?:umbrella\s+)?header\s+)'
    r'"(?P<path>[^"]+)"'
)

# Umbrella directory declarations: umbrella "dir"
_UMBRELLA_DIR_DECL = re.compile(r'(?P<prefix>\bumbrella\s+)"(?P<path>[^"]+)"')

HEADER_SUFFIXES = (".h", ".hh", ".hpp")


class ModuleMapError(Exception):
    """Raised when a module declaration cannot be normalized."""

    def __init__(self, message: str, code: str = "module_map_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class ModuleMapConversion:
    """A module map rewritten for framework layout.

    Attributes:
        contents: The rewritten declaration.
        headers: Header paths as referenced by the input declaration.
        umbrella_dirs: Umbrella directories referenced by the input.
    """

    contents: str
    headers: list[str] = field(default_factory=list)
    umbrella_dirs: list[str] = field(default_factory=list)


def convert_module_map(text: str) -> ModuleMapConversion:
    """Rewrite a module map into a framework module declaration.

    Args:
        text: Module map contents as declared by the package.

    Returns:
        ModuleMapConversion with the rewritten contents.

    Raises:
        ModuleMapError: If two different header paths share a file name.
    """
    headers: list[str] = []
    umbrella_dirs: list[str] = []
    by_name: dict[str, str] = {}

    def _header(match: re.Match[str]) -> str:
        path = match.group("path")
        name = PurePosixPath(path).name
        if by_name.setdefault(name, path) != path:
            raise ModuleMapError(
                f"Headers '{by_name[name]}' and '{path}' both map to "
                f"Headers/{name}",
                code="header_collision",
            )
        headers.append(path)
        return f'{match.group("prefix")}"{name}"'

    def _umbrella_dir(match: re.Match[str]) -> str:
        path = match.group("path")
        umbrella_dirs.append(path)
        return f'{match.group("prefix")}"Headers"'

    contents = _HEADER_DECL.sub(_header, text)
    # Header declarations were already rewritten; what remains are directories
    contents = _UMBRELLA_DIR_DECL.sub(
        lambda m: m.group(0) if m.group("path") == "Headers" else _umbrella_dir(m),
        contents,
    )
    contents = _TOP_LEVEL_MODULE.sub(r"framework module\1", contents)
    return ModuleMapConversion(
        contents=contents, headers=headers, umbrella_dirs=umbrella_dirs
    )


def generate_module_map(module_name: str, headers: list[str]) -> str:
    """Generate a framework module map for a module without one.

    Uses ``<module>.h`` as umbrella header when present, otherwise lists
    every header explicitly in sorted order.

    Args:
        module_name: Module (target) name.
        headers: Header paths relative to the framework's Headers directory.

    Returns:
        Module map contents.
    """
    umbrella = f"{module_name}.h"
    lines = [f"framework module {module_name} {{"]
    if umbrella in headers:
        lines.append(f'    umbrella header "{umbrella}"')
    else:
        lines.extend(f'    header "{h}"' for h in sorted(headers))
    lines.append("    export *")
    lines.append("}")
    return "\n".join(lines) + "\n"


def list_headers(headers_dir: Path) -> list[str]:
    """List header files under a Headers directory, relative and sorted."""
    if not headers_dir.is_dir():
        return []
    return sorted(
        path.relative_to(headers_dir).as_posix()
        for path in headers_dir.rglob("*")
        if path.is_file() and path.suffix in HEADER_SUFFIXES
    )


def _copy_missing_header(source: Path, headers_dir: Path, declared: str) -> None:
    dest = headers_dir / PurePosixPath(declared).name
    if dest.exists():
        return
    if not source.is_file():
        raise ModuleMapError(
            f"Header '{declared}' referenced by the module map was not found",
            code="missing_header",
        )
    headers_dir.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, dest)


def _copy_umbrella_dir(source_dir: Path, headers_dir: Path, declared: str) -> None:
    if not source_dir.is_dir():
        raise ModuleMapError(
            f"Umbrella directory '{declared}' referenced by the module map "
            "was not found",
            code="missing_header",
        )
    for path in source_dir.rglob("*"):
        if not path.is_file() or path.suffix not in HEADER_SUFFIXES:
            continue
        dest = headers_dir / path.relative_to(source_dir)
        if not dest.exists():
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, dest)


def normalize_framework_module_map(
    framework: Path,
    module_name: str,
    custom_module_map: Path | None = None,
) -> Path:
    """Write a framework-relative module map into a framework.

    With a custom module map, the declaration is converted and any header
    it references that is missing from ``Headers/`` is copied from the
    source tree. Without one, an existing framework module map is kept and
    otherwise a new one is generated from the headers present.

    Args:
        framework: Framework directory of one slice.
        module_name: Module (target) name.
        custom_module_map: Module map shipped with the sources, if any.

    Returns:
        Path to the written module map.

    Raises:
        ModuleMapError: If the module map or a referenced header is missing.
    """
    headers_dir = framework / "Headers"
    module_map_path = framework / "Modules" / MODULE_MAP_NAME

    if custom_module_map is not None:
        if not custom_module_map.is_file():
            raise ModuleMapError(
                f"Module map not found: {custom_module_map}",
                code="missing_module_map",
            )
        try:
            text = custom_module_map.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ModuleMapError(
                f"Module map {custom_module_map} is not valid UTF-8: {e}",
                code="invalid_module_map",
            ) from e
        conversion = convert_module_map(text)
        base = custom_module_map.parent
        for declared in conversion.headers:
            _copy_missing_header(base / declared, headers_dir, declared)
        for declared in conversion.umbrella_dirs:
            _copy_umbrella_dir(base / declared, headers_dir, declared)
        contents = conversion.contents
    else:
        if module_map_path.is_file():
            existing = module_map_path.read_text(encoding="utf-8")
            if existing.lstrip().startswith("framework module"):
                return module_map_path
        headers = list_headers(headers_dir)
        if not headers:
            raise ModuleMapError(
                f"No headers found in {headers_dir} to declare module {module_name}",
                code="missing_header",
            )
        contents = generate_module_map(module_name, headers)

    module_map_path.parent.mkdir(parents=True, exist_ok=True)
    module_map_path.write_text(contents, encoding="utf-8")
    logger.debug("Wrote module map %s", module_map_path)
    return module_map_path


__all__ = [
    "MODULE_MAP_NAME",
    "ModuleMapConversion",
    "ModuleMapError",
    "convert_module_map",
    "generate_module_map",
    "list_headers",
    "normalize_framework_module_map",
]
