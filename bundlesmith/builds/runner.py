"""Build executor for the external compiler.

This module handles:
- Composing compiler invocations from platform tasks and options
- Executing the compiler with subprocess, output captured to log files
- Enforcing timeouts and honoring cancellation
- Collecting per-slice frameworks and classifying failures

Compiler failures are returned as result values; only the low-level
run_compiler() raises BuildExecutionError, and compile_task() converts
it into a failed CompileResult.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import shutil
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from bundlesmith.builds.options import BuildOptions
from bundlesmith.builds.platforms import PlatformTask
from bundlesmith.graph.schema import Product

logger = logging.getLogger(__name__)

# Seconds between checks for cancellation and timeout
POLL_INTERVAL = 0.2

# Seconds to wait after terminate() before kill()
TERMINATE_GRACE = 5.0


class BuildExecutionError(Exception):
    """Raised when a compiler invocation fails to run to completion."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class CompileResult:
    """Result of compiling one platform task.

    Attributes:
        task: The platform task.
        success: Whether the slice was produced.
        exit_code: Process exit code (None if it never ran).
        framework_path: Produced framework, when successful.
        build_dir: Workspace directory of this slice.
        log_path: Path to the compiler log.
        command: The command that was executed.
        started_at: Invocation start time.
        finished_at: Invocation finish time.
        error_code: Machine-readable failure code.
        error_message: Failure description.
    """

    task: PlatformTask
    success: bool
    exit_code: int | None
    framework_path: Path | None
    build_dir: Path
    log_path: Path
    command: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass
class ProductBuildResult:
    """Result of compiling every task of one product."""

    product: Product
    results: list[CompileResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def first_failure(self) -> CompileResult | None:
        return next((r for r in self.results if not r.success), None)

    def slices(self) -> list[tuple[PlatformTask, Path]]:
        """Return (task, framework) pairs of the successful slices."""
        return [
            (r.task, r.framework_path)
            for r in self.results
            if r.success and r.framework_path is not None
        ]


def safe_path_component(value: str) -> str:
    """Turn an identifier such as a package id into one path component."""
    return re.sub(r"[^A-Za-z0-9._\-]+", "_", value).strip("._") or "_"


def task_workspace(work_dir: Path, task: PlatformTask) -> Path:
    """Return the product-scoped workspace directory of a task."""
    product = task.product
    return (
        work_dir
        / safe_path_component(product.package_id)
        / product.target_name
        / task.slice_id
    )


def compose_compile_command(
    compiler_command: list[str],
    task: PlatformTask,
    options: BuildOptions,
    output_dir: Path,
) -> list[str]:
    """Compose the compiler invocation for one platform task.

    Args:
        compiler_command: Base compiler command.
        task: Platform task to compile.
        options: Resolved build options of the product.
        output_dir: Directory the compiler writes the framework into.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    product = task.product
    cmd = [
        *compiler_command,
        "build",
        "--target",
        product.target_name,
        "--kind",
        product.kind.value,
        "--source-dir",
        str(product.source_dir),
        "--configuration",
        options.build_configuration.value,
        "--platform",
        task.platform.value,
        "--archs",
        ",".join(task.archs),
        "--sdk-variant",
        task.sdk_variant,
        "--framework-type",
        options.framework_type.value,
    ]

    if options.library_evolution:
        cmd.append("--library-evolution")
    if options.debug_symbols_embedded:
        cmd.append("--embed-debug-symbols")

    cmd.extend(["--output", str(output_dir)])

    # Pass-through flags, then build settings in stable order
    cmd.extend(options.extra_flags)
    for key, value in sorted(options.extra_build_parameters.items()):
        cmd.append(f"{key}={value}")

    return cmd


def _terminate(process: subprocess.Popen[bytes]) -> None:
    process.terminate()
    try:
        process.wait(timeout=TERMINATE_GRACE)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def run_compiler(
    cmd: list[str],
    build_dir: Path,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
    env_override: dict[str, str] | None = None,
) -> tuple[int, Path]:
    """Run one compiler invocation.

    Args:
        cmd: Command to execute.
        build_dir: Working directory; receives build.log.
        timeout: Timeout in seconds (None = no timeout).
        cancel_event: Event that, when set, terminates the process.
        env_override: Optional environment variable overrides.

    Returns:
        Tuple of (exit code, log path).

    Raises:
        BuildExecutionError: If the process cannot start, times out or is
            cancelled.
    """
    build_dir.mkdir(parents=True, exist_ok=True)
    log_path = build_dir / "build.log"

    cmd_str = shlex.join(cmd)
    logger.info("Executing compiler: %s", cmd_str)
    logger.debug("Working directory: %s", build_dir)

    started_at = datetime.now(timezone.utc)

    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    with log_path.open("w") as log_file:
        log_file.write(f"# Command: {cmd_str}\n")
        log_file.write(f"# Started: {started_at.isoformat()}\n")
        log_file.write(f"# CWD: {build_dir}\n")
        log_file.write("# " + "=" * 70 + "\n\n")
        log_file.flush()

        try:
            process = subprocess.Popen(
                cmd,
                cwd=build_dir,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                env=env,
            )
        except OSError as e:
            message = f"Failed to execute compiler: {e}"
            logger.error(message)
            raise BuildExecutionError(message, code="execution_error") from e

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                exit_code = process.wait(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    _terminate(process)
                    log_file.write("\n# CANCELLED\n")
                    raise BuildExecutionError(
                        "Compiler invocation cancelled",
                        exit_code=process.returncode,
                        code="cancelled",
                    ) from None
                if deadline is not None and time.monotonic() >= deadline:
                    _terminate(process)
                    log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
                    message = f"Compiler timed out after {timeout} seconds"
                    logger.error("%s. See log: %s", message, log_path)
                    raise BuildExecutionError(
                        message, exit_code=-1, code="build_timeout"
                    ) from None

        finished_at = datetime.now(timezone.utc)
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return exit_code, log_path


def compile_task(
    task: PlatformTask,
    options: BuildOptions,
    compiler_command: list[str],
    work_dir: Path,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
    toolchain_lock: threading.Lock | None = None,
) -> CompileResult:
    """Compile one platform task and collect its framework.

    Never raises for compiler failures; they are reported in the result.

    Args:
        task: Platform task to compile.
        options: Resolved build options of the product.
        compiler_command: Base compiler command.
        work_dir: Root of the build workspaces.
        timeout: Timeout in seconds for the invocation.
        cancel_event: Event signalling cancellation.
        toolchain_lock: Global lock when the toolchain is exclusive.

    Returns:
        CompileResult.
    """
    build_dir = task_workspace(work_dir, task)
    output_dir = build_dir / "products"
    log_path = build_dir / "build.log"
    cmd = compose_compile_command(compiler_command, task, options, output_dir)
    result = CompileResult(
        task=task,
        success=False,
        exit_code=None,
        framework_path=None,
        build_dir=build_dir,
        log_path=log_path,
        command=shlex.join(cmd),
    )

    if cancel_event is not None and cancel_event.is_set():
        result.error_code = "cancelled"
        result.error_message = "Cancelled before the compiler started"
        return result

    # Stale slices from a previous invocation must not be collected
    shutil.rmtree(output_dir, ignore_errors=True)

    result.started_at = datetime.now(timezone.utc)
    try:
        with toolchain_lock if toolchain_lock is not None else nullcontext():
            exit_code, log_path = run_compiler(
                cmd,
                build_dir,
                timeout=timeout,
                cancel_event=cancel_event,
            )
    except BuildExecutionError as e:
        result.finished_at = datetime.now(timezone.utc)
        result.exit_code = e.exit_code
        result.error_code = e.code
        result.error_message = str(e)
        return result

    result.finished_at = datetime.now(timezone.utc)
    result.exit_code = exit_code
    result.log_path = log_path

    if exit_code != 0:
        result.error_code = "compiler_failed"
        result.error_message = f"Compiler failed with exit code {exit_code}"
        logger.error(
            "%s for %s (%s). See log: %s",
            result.error_message,
            task.product.display_name,
            task.slice_id,
            log_path,
        )
        return result

    framework = output_dir / task.product.framework_name
    if not framework.is_dir():
        result.error_code = "missing_framework"
        result.error_message = (
            f"Compiler succeeded but produced no {task.product.framework_name}"
        )
        logger.error("%s in %s", result.error_message, output_dir)
        return result

    result.success = True
    result.framework_path = framework
    logger.info("Built %s (%s)", task.product.display_name, task.slice_id)
    return result


def build_product(
    product: Product,
    tasks: list[PlatformTask],
    options: BuildOptions,
    compiler_command: list[str],
    work_dir: Path,
    timeout: float | None = None,
    max_workers: int = 1,
    cancel_event: threading.Event | None = None,
    toolchain_lock: threading.Lock | None = None,
) -> ProductBuildResult:
    """Compile every platform task of a product.

    Tasks run concurrently up to ``max_workers``. Once one task fails,
    tasks that have not started yet are skipped. Workspaces are left in
    place for inspection.

    Args:
        product: Product being built.
        tasks: Its platform tasks.
        options: Resolved build options of the product.
        compiler_command: Base compiler command.
        work_dir: Root of the build workspaces.
        timeout: Timeout in seconds per invocation.
        max_workers: Maximum concurrent invocations for this product.
        cancel_event: Event signalling cancellation of the whole run.
        toolchain_lock: Global lock when the toolchain is exclusive.

    Returns:
        ProductBuildResult with results in task order.
    """
    product_failed = threading.Event()

    def _run(task: PlatformTask) -> CompileResult:
        if product_failed.is_set():
            build_dir = task_workspace(work_dir, task)
            return CompileResult(
                task=task,
                success=False,
                exit_code=None,
                framework_path=None,
                build_dir=build_dir,
                log_path=build_dir / "build.log",
                error_code="skipped",
                error_message="Skipped after another slice failed",
            )
        result = compile_task(
            task,
            options,
            compiler_command,
            work_dir,
            timeout=timeout,
            cancel_event=cancel_event,
            toolchain_lock=toolchain_lock,
        )
        if not result.success:
            product_failed.set()
        return result

    logger.info(
        "Building %s: %s",
        product.display_name,
        ", ".join(t.slice_id for t in tasks),
    )
    with ThreadPoolExecutor(
        max_workers=max(1, min(max_workers, len(tasks) or 1)),
        thread_name_prefix=f"compile-{product.target_name}",
    ) as pool:
        results = list(pool.map(_run, tasks))

    return ProductBuildResult(product=product, results=results)


def detect_toolchain_version(compiler_command: list[str], timeout: int = 60) -> str:
    """Ask the compiler for its version string.

    Args:
        compiler_command: Base compiler command.
        timeout: Command timeout in seconds.

    Returns:
        The stripped version output.

    Raises:
        BuildExecutionError: If the command fails.
    """
    cmd = [*compiler_command, "--version"]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except subprocess.TimeoutExpired as e:
        raise BuildExecutionError(
            f"{shlex.join(cmd)} timed out after {timeout}s",
            exit_code=-1,
            code="timeout",
        ) from e
    except subprocess.CalledProcessError as e:
        raise BuildExecutionError(
            f"{shlex.join(cmd)} failed: {e.stderr}",
            exit_code=e.returncode,
            code="version_error",
        ) from e
    except OSError as e:
        raise BuildExecutionError(
            f"Failed to run {shlex.join(cmd)}: {e}",
            code="execution_error",
        ) from e
    return result.stdout.strip()


__all__ = [
    "BuildExecutionError",
    "CompileResult",
    "ProductBuildResult",
    "build_product",
    "compile_task",
    "compose_compile_command",
    "detect_toolchain_version",
    "run_compiler",
    "safe_path_component",
    "task_workspace",
]
