"""Run orchestration.

This module provides the high-level run API:
- Runner.run(): main entry point, build or reuse every product in scope
- Up-front planning (override validation, option merging, task expansion)
- Dependency-level scheduling on a thread pool
- Stop-on-first-error and cancellation
- Build history persistence and listing

Configuration errors are raised before any product is processed. Per
product failures never raise; they are reported in the RunReport.
"""

from __future__ import annotations

import logging
import shutil
import threading
import uuid
from collections.abc import Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from bundlesmith.builds.assembler import AssemblyError, BundleAssembler
from bundlesmith.builds.cache import CacheSystem, publish_bundle
from bundlesmith.builds.fingerprint import fingerprint
from bundlesmith.builds.models import BuildRecord
from bundlesmith.builds.options import BuildOptions
from bundlesmith.builds.platforms import (
    DEFAULT_CAPABILITIES,
    ConfigurationError,
    PlatformCapability,
    PlatformTask,
    expand_tasks,
    resolve_options,
    validate_overrides,
)
from bundlesmith.builds.runner import (
    CompileResult,
    build_product,
    detect_toolchain_version,
)
from bundlesmith.builds.storage import StorageBinding
from bundlesmith.config import get_settings
from bundlesmith.db import get_session
from bundlesmith.graph.schema import Product, RunDocument
from bundlesmith.types import (
    CacheMode,
    CacheSource,
    Platform,
    ProductOutcome,
    RunMode,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import sessionmaker

    from bundlesmith.config import Settings

logger = logging.getLogger(__name__)


class ProductReport(BaseModel):
    """Outcome of one product in a run.

    Attributes:
        package_id: Identity of the owning package.
        target_name: Target name of the product.
        outcome: reused, rebuilt or failed.
        fingerprint: Fingerprint computed for the product.
        cache_source: Where a reused bundle came from.
        bundle_path: Published bundle path (absent on failure).
        slices: Slice directories built for the bundle.
        log_path: Compiler log of the failing slice.
        exit_code: Compiler exit status of a failed invocation.
        error_code: Machine-readable failure code.
        error_message: Failure description.
        started_at: When processing of the product started.
        finished_at: When processing of the product finished.
    """

    package_id: str
    target_name: str
    outcome: ProductOutcome
    fingerprint: str | None = None
    cache_source: CacheSource | None = None
    bundle_path: str | None = None
    slices: list[str] = Field(default_factory=list)
    log_path: str | None = None
    exit_code: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class RunReport(BaseModel):
    """Outcome of a whole run."""

    run_id: str
    mode: RunMode
    cache_mode: CacheMode
    toolchain_version: str = ""
    products: list[ProductReport] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        """True when no product in scope failed."""
        return all(p.outcome is not ProductOutcome.FAILED for p in self.products)

    def report_for(self, target_name: str) -> ProductReport | None:
        """Return the report of one product, if it was in scope."""
        return next((p for p in self.products if p.target_name == target_name), None)

    def counts(self) -> dict[str, int]:
        """Return the number of products per outcome."""
        counts = {outcome.value: 0 for outcome in ProductOutcome}
        for product in self.products:
            counts[product.outcome.value] += 1
        return counts


@dataclass(frozen=True)
class ProductPlan:
    """A product with its resolved options and platform tasks."""

    product: Product
    options: BuildOptions
    tasks: list[PlatformTask]


def plan_products(
    document: RunDocument,
    base_dir: Path,
    mode: RunMode,
    capabilities: Mapping[Platform, PlatformCapability] = DEFAULT_CAPABILITIES,
) -> list[ProductPlan]:
    """Resolve options and expand tasks for every product in scope.

    Args:
        document: Validated run document.
        base_dir: Directory relative package paths are resolved against.
        mode: Run mode selecting the products in scope.
        capabilities: Platform capability table.

    Returns:
        Plans in document order.

    Raises:
        ConfigurationError: If an override or option cannot be satisfied.
    """
    validate_overrides(document.build_options_matrix, document.products(base_dir))

    plans: list[ProductPlan] = []
    for product in document.select_products(base_dir, mode):
        options = resolve_options(
            document.build_options, document.build_options_matrix, product
        )
        tasks = expand_tasks(product, options, capabilities)
        plans.append(ProductPlan(product=product, options=options, tasks=tasks))
    return plans


def dependency_levels(products: Sequence[Product]) -> list[list[Product]]:
    """Group products into levels that only depend on earlier levels.

    Dependencies on products outside ``products`` are assumed satisfied.

    Args:
        products: Products in scope.

    Returns:
        Levels in build order; each level keeps the input order.

    Raises:
        ConfigurationError: If the dependencies form a cycle.
    """
    in_scope = {p.target_name for p in products}
    remaining = list(products)
    done: set[str] = set()
    levels: list[list[Product]] = []

    while remaining:
        ready = [
            p
            for p in remaining
            if all(d in done or d not in in_scope for d in p.dependencies)
        ]
        if not ready:
            names = ", ".join(p.target_name for p in remaining)
            raise ConfigurationError(
                f"Dependency cycle between: {names}", code="dependency_cycle"
            )
        levels.append(ready)
        done.update(p.target_name for p in ready)
        remaining = [p for p in remaining if p.target_name not in done]
    return levels


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _primary_failure(results: list[CompileResult]) -> CompileResult | None:
    failures = [r for r in results if not r.success]
    return next((r for r in failures if r.error_code != "skipped"), None) or next(
        iter(failures), None
    )


class Runner:
    """Builds or reuses the bundles of every product in a run.

    Args:
        settings: Application settings (defaults loaded from environment).
        cache_mode: Cache mode override.
        output_dir: Output directory override.
        storages: Storage bindings, used in storage mode.
        force_rebuild: Ignore cache hits while still recording results.
        stop_on_first_error: Override of settings.stop_on_first_error.
        session_factory: When given, every product report is persisted.
        capabilities: Platform capability table.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        cache_mode: CacheMode | None = None,
        output_dir: Path | None = None,
        storages: Sequence[StorageBinding] = (),
        force_rebuild: bool = False,
        stop_on_first_error: bool | None = None,
        session_factory: sessionmaker[Session] | None = None,
        capabilities: Mapping[Platform, PlatformCapability] = DEFAULT_CAPABILITIES,
    ) -> None:
        if settings is None:
            settings = get_settings()
        self.settings = settings
        self.cache_mode = cache_mode or settings.cache_mode
        self.output_dir = output_dir or settings.output_dir
        self.storages = list(storages)
        self.force_rebuild = force_rebuild
        self.stop_on_first_error = (
            settings.stop_on_first_error
            if stop_on_first_error is None
            else stop_on_first_error
        )
        self.session_factory = session_factory
        self.capabilities = capabilities

        self.cancel_event = threading.Event()
        self.toolchain_lock = threading.Lock() if settings.toolchain_exclusive else None
        self.assembler = BundleAssembler(
            settings.merge_command, timeout=settings.merge_timeout
        )

    def cancel(self) -> None:
        """Cancel the run; in-flight compiler invocations are terminated."""
        logger.warning("Cancellation requested")
        self.cancel_event.set()

    def resolve_toolchain_version(self) -> str:
        """Return the configured toolchain version, detecting it if unset."""
        if self.settings.toolchain_version:
            return self.settings.toolchain_version
        return detect_toolchain_version(self.settings.compiler_command)

    def run(
        self,
        document: RunDocument,
        base_dir: Path,
        mode: RunMode,
    ) -> RunReport:
        """Build or reuse every product in scope.

        Args:
            document: Validated run document.
            base_dir: Directory relative package paths are resolved against.
            mode: Run mode selecting the products in scope.

        Returns:
            RunReport with one ProductReport per product, in document order.

        Raises:
            ConfigurationError: If the options cannot be satisfied.
            BuildExecutionError: If the toolchain version cannot be detected.
        """
        self.cancel_event.clear()
        plans = plan_products(document, base_dir, mode, self.capabilities)
        levels = dependency_levels([plan.product for plan in plans])
        toolchain_version = self.resolve_toolchain_version()

        cache = CacheSystem(
            self.output_dir,
            mode=self.cache_mode,
            toolchain_version=toolchain_version,
            storages=self.storages,
            force_rebuild=self.force_rebuild,
        )
        report = RunReport(
            run_id=uuid.uuid4().hex,
            mode=mode,
            cache_mode=self.cache_mode,
            toolchain_version=toolchain_version,
        )
        logger.info(
            "Run %s (%s): %d product(s) in %d level(s), cache %s",
            report.run_id[:8],
            mode.value,
            len(plans),
            len(levels),
            self.cache_mode.value,
        )

        plans_by_name = {plan.product.target_name: plan for plan in plans}
        reports: dict[str, ProductReport] = {}
        for level in levels:
            self._run_level([plans_by_name[p.target_name] for p in level], cache, reports)

        report.products = [reports[plan.product.target_name] for plan in plans]
        report.cancelled = self.cancel_event.is_set()
        self._record_history(report)

        counts = report.counts()
        logger.info(
            "Run %s finished: %d reused, %d rebuilt, %d failed",
            report.run_id[:8],
            counts[ProductOutcome.REUSED.value],
            counts[ProductOutcome.REBUILT.value],
            counts[ProductOutcome.FAILED.value],
        )
        return report

    def _run_level(
        self,
        level: list[ProductPlan],
        cache: CacheSystem,
        reports: dict[str, ProductReport],
    ) -> None:
        failed = {
            name
            for name, r in reports.items()
            if r.outcome is ProductOutcome.FAILED
        }
        runnable: list[ProductPlan] = []
        for plan in level:
            product = plan.product
            if self.cancel_event.is_set():
                reports[product.target_name] = self._failed(
                    product, "cancelled", "Run cancelled before the product started"
                )
                continue
            broken = [d for d in product.dependencies if d in failed]
            if broken:
                self._finish(
                    reports,
                    self._failed(
                        product,
                        "dependency_failed",
                        f"Dependency failed: {', '.join(broken)}",
                    ),
                )
                continue
            runnable.append(plan)

        if not runnable:
            return

        with ThreadPoolExecutor(
            max_workers=min(self.settings.max_concurrent_builds, len(runnable)),
            thread_name_prefix="product",
        ) as pool:
            futures: dict[Future[ProductReport], ProductPlan] = {
                pool.submit(self._process, plan, cache): plan for plan in runnable
            }
            try:
                for future in as_completed(futures):
                    self._finish(reports, future.result())
            except KeyboardInterrupt:
                self.cancel()
                raise

    def _finish(self, reports: dict[str, ProductReport], report: ProductReport) -> None:
        reports[report.target_name] = report
        if report.outcome is ProductOutcome.FAILED:
            logger.error(
                "%s failed (%s): %s",
                report.target_name,
                report.error_code,
                report.error_message,
            )
            if self.stop_on_first_error and not self.cancel_event.is_set():
                logger.warning("Stopping after first failure")
                self.cancel_event.set()
        else:
            logger.info("%s %s", report.target_name, report.outcome.value)

    def _failed(
        self,
        product: Product,
        code: str,
        message: str,
        **fields: object,
    ) -> ProductReport:
        return ProductReport(
            package_id=product.package_id,
            target_name=product.target_name,
            outcome=ProductOutcome.FAILED,
            error_code=code,
            error_message=message,
            finished_at=_now(),
            **fields,
        )

    def _process(self, plan: ProductPlan, cache: CacheSystem) -> ProductReport:
        """Run the cache state machine for one product."""
        product = plan.product
        started_at = _now()
        if self.cancel_event.is_set():
            return self._failed(
                product,
                "cancelled",
                "Run cancelled before the product started",
                started_at=started_at,
            )

        current: str | None = None
        try:
            current = fingerprint(product, plan.options, cache.toolchain_version)
            logger.debug("Fingerprint of %s: %s", product.display_name, current)
            with cache.lock(product, timeout=self.settings.lock_timeout):
                decision = cache.lookup(product, current, plan.options)
                if decision.hit:
                    return ProductReport(
                        package_id=product.package_id,
                        target_name=product.target_name,
                        outcome=ProductOutcome.REUSED,
                        fingerprint=current,
                        cache_source=decision.source,
                        bundle_path=str(cache.bundle_path(product)),
                        started_at=started_at,
                        finished_at=_now(),
                    )
                logger.info(
                    "Rebuilding %s: %s", product.display_name, decision.reason
                )
                return self._rebuild(plan, current, cache, started_at)
        except TimeoutError as e:
            return self._failed(
                product,
                "lock_timeout",
                str(e),
                fingerprint=current,
                started_at=started_at,
            )
        except OSError as e:
            logger.exception("I/O error while processing %s", product.display_name)
            return self._failed(
                product,
                "io_error",
                f"I/O error: {e}",
                fingerprint=current,
                started_at=started_at,
            )

    def _rebuild(
        self,
        plan: ProductPlan,
        current: str,
        cache: CacheSystem,
        started_at: datetime,
    ) -> ProductReport:
        product = plan.product
        slices: list[tuple[PlatformTask, Path]] = []

        if plan.tasks:
            result = build_product(
                product,
                plan.tasks,
                plan.options,
                self.settings.compiler_command,
                self.settings.work_dir,
                timeout=self.settings.build_timeout,
                max_workers=self.settings.max_concurrent_tasks,
                cancel_event=self.cancel_event,
                toolchain_lock=self.toolchain_lock,
            )
            failure = _primary_failure(result.results)
            if failure is not None:
                return self._failed(
                    product,
                    failure.error_code or "compiler_failed",
                    f"{failure.task.slice_id}: {failure.error_message}",
                    fingerprint=current,
                    exit_code=failure.exit_code,
                    log_path=str(failure.log_path),
                    started_at=started_at,
                )
            slices = result.slices()

        staging = cache.new_staging_dir(product)
        try:
            bundle = self.assembler.assemble(product, slices, staging)
            if self.cancel_event.is_set():
                return self._failed(
                    product,
                    "cancelled",
                    "Run cancelled before the bundle was published",
                    fingerprint=current,
                    started_at=started_at,
                )
            cache.invalidate(product)
            published = publish_bundle(bundle, cache.bundle_path(product))
        except AssemblyError as e:
            return self._failed(
                product, e.code, str(e), fingerprint=current, started_at=started_at
            )
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        cache.commit(product, current, plan.options)
        return ProductReport(
            package_id=product.package_id,
            target_name=product.target_name,
            outcome=ProductOutcome.REBUILT,
            fingerprint=current,
            bundle_path=str(published),
            slices=[task.slice_id for task, _ in slices],
            started_at=started_at,
            finished_at=_now(),
        )

    def _record_history(self, report: RunReport) -> None:
        if self.session_factory is None:
            return
        with get_session(self.session_factory) as session:
            for product in report.products:
                session.add(
                    BuildRecord(
                        run_id=report.run_id,
                        run_mode=report.mode.value,
                        package_id=product.package_id,
                        target_name=product.target_name,
                        fingerprint=product.fingerprint,
                        outcome=product.outcome.value,
                        cache_source=(
                            product.cache_source.value if product.cache_source else None
                        ),
                        bundle_path=product.bundle_path,
                        log_path=product.log_path,
                        started_at=product.started_at,
                        finished_at=product.finished_at,
                        error_type=product.error_code,
                        error_message=product.error_message,
                        exit_code=product.exit_code,
                    )
                )
        logger.debug("Recorded %d history row(s)", len(report.products))


def list_history(
    session: Session,
    target_name: str | None = None,
    outcome: ProductOutcome | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build history records with optional filters.

    Args:
        session: Database session.
        target_name: Filter by target name.
        outcome: Filter by outcome.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances, newest first.
    """
    stmt = select(BuildRecord)

    if target_name is not None:
        stmt = stmt.where(BuildRecord.target_name == target_name)
    if outcome is not None:
        stmt = stmt.where(BuildRecord.outcome == outcome.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = [
    "ProductPlan",
    "ProductReport",
    "RunReport",
    "Runner",
    "dependency_levels",
    "list_history",
    "plan_products",
]
