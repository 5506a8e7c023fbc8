"""Shared fixtures for bundlesmith tests.

Provides fake compiler and merge tools written as small Python scripts
executed via sys.executable, plus factories for products and settings.
"""

import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

from bundlesmith.config import Settings
from bundlesmith.graph.schema import Product
from bundlesmith.types import ProductKind

FAKE_COMPILER = textwrap.dedent(
    '''
    """Fake compiler: writes one <Target>.framework per invocation."""
    import argparse
    import hashlib
    import os
    import shutil
    import sys
    import time
    from pathlib import Path

    if sys.argv[1:] == ["--version"]:
        print(os.environ.get("FAKE_TOOLCHAIN_VERSION", "fake-toolchain 1.0"))
        sys.exit(0)

    parser = argparse.ArgumentParser()
    parser.add_argument("command")
    parser.add_argument("--target", required=True)
    parser.add_argument("--kind", required=True)
    parser.add_argument("--source-dir", required=True)
    parser.add_argument("--configuration", required=True)
    parser.add_argument("--platform", required=True)
    parser.add_argument("--archs", required=True)
    parser.add_argument("--sdk-variant", required=True)
    parser.add_argument("--framework-type", required=True)
    parser.add_argument("--library-evolution", action="store_true")
    parser.add_argument("--embed-debug-symbols", action="store_true")
    parser.add_argument("--output", required=True)
    args, extra = parser.parse_known_args()

    log = os.environ.get("FAKE_COMPILER_LOG")
    if log:
        with open(log, "a", encoding="utf-8") as f:
            f.write(f"{args.target} {args.platform} {args.sdk_variant} {args.archs}\\n")

    source = Path(args.source_dir)
    print(f"compiling {args.target} for {args.platform} ({args.archs})")
    if (source / "SLOW_BUILD").exists():
        started = os.environ.get("FAKE_COMPILER_STARTED")
        if started:
            Path(started).write_text(args.target)
        time.sleep(60)
    if (source / "BUILD_FAILS").exists():
        print("error: simulated compiler failure", file=sys.stderr)
        sys.exit(3)
    if (source / "NO_FRAMEWORK").exists():
        sys.exit(0)

    digest = hashlib.sha256()
    for path in sorted(p for p in source.rglob("*") if p.is_file()):
        digest.update(path.relative_to(source).as_posix().encode())
        digest.update(path.read_bytes())

    framework = Path(args.output) / f"{args.target}.framework"
    framework.mkdir(parents=True)
    (framework / args.target).write_text(
        f"{args.platform} {args.archs} {args.sdk_variant} "
        f"{args.configuration} {digest.hexdigest()} {' '.join(extra)}\\n"
    )
    if args.library_evolution:
        modules = framework / "Modules" / f"{args.target}.swiftmodule"
        modules.mkdir(parents=True)
        (modules / f"{args.archs}.swiftinterface").write_text("// interface\\n")
    include = source / "include"
    if args.kind == "foreign-module" and include.is_dir():
        shutil.copytree(include, framework / "Headers")
    '''
)

FAKE_MERGE = textwrap.dedent(
    '''
    """Fake merge tool: copies each input framework into a slice directory."""
    import os
    import shutil
    import sys
    from pathlib import Path

    args = sys.argv[1:]
    log = os.environ.get("FAKE_MERGE_LOG")
    if log:
        with open(log, "a", encoding="utf-8") as f:
            f.write(" ".join(args) + "\\n")
    if os.environ.get("FAKE_MERGE_FAIL"):
        print("error: simulated merge failure", file=sys.stderr)
        sys.exit(1)

    assert args[0] == "-create-xcframework"
    frameworks = [args[i + 1] for i, a in enumerate(args) if a == "-framework"]
    output = Path(args[args.index("-output") + 1])
    output.mkdir(parents=True)
    slices = []
    for framework in frameworks:
        path = Path(framework)
        slice_id = path.parent.name
        slices.append(slice_id)
        shutil.copytree(path, output / slice_id / path.name)
    (output / "Info.plist").write_text("\\n".join(slices) + "\\n")
    '''
)


@pytest.fixture(scope="session")
def fake_tools(tmp_path_factory: pytest.TempPathFactory) -> tuple[list[str], list[str]]:
    """Write the fake compiler and merge tool; return their commands."""
    tools = tmp_path_factory.mktemp("tools")
    compiler = tools / "fake_compiler.py"
    compiler.write_text(FAKE_COMPILER)
    merge = tools / "fake_merge.py"
    merge.write_text(FAKE_MERGE)
    return [sys.executable, str(compiler)], [sys.executable, str(merge)]


@pytest.fixture
def compiler_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Record every fake compiler invocation to a file."""
    log = tmp_path / "compiler.log"
    monkeypatch.setenv("FAKE_COMPILER_LOG", str(log))
    return log


@pytest.fixture
def settings(tmp_path: Path, fake_tools: tuple[list[str], list[str]]) -> Settings:
    """Create settings pointing every directory into tmp_path."""
    compiler_command, merge_command = fake_tools
    return Settings(
        output_dir=tmp_path / "XCFrameworks",
        cache_dir=tmp_path / "storage",
        work_dir=tmp_path / "work",
        db_url=f"sqlite:///{tmp_path}/history.sqlite",
        compiler_command=compiler_command,
        merge_command=merge_command,
        toolchain_version="fake-toolchain 1.0",
        build_timeout=120,
        merge_timeout=60,
        lock_timeout=30.0,
    )


@pytest.fixture
def make_product(tmp_path: Path) -> Callable[..., Product]:
    """Factory creating a product with a small source tree."""

    def _make(
        target_name: str = "Lib",
        kind: ProductKind = ProductKind.LIBRARY,
        package_name: str = "LibPackage",
        files: dict[str, str] | None = None,
        **kwargs: object,
    ) -> Product:
        source_dir = tmp_path / "sources" / package_name / target_name
        source_dir.mkdir(parents=True, exist_ok=True)
        for rel, content in (files or {f"{target_name}.swift": "struct Lib {}\n"}).items():
            path = source_dir / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        return Product(
            package_id=f"example.com/{package_name.lower()}",
            package_name=package_name,
            target_name=target_name,
            kind=kind,
            source_dir=source_dir,
            **kwargs,
        )

    return _make
