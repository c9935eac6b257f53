"""Bundle builder.

This module drives the whole pipeline for one output tree:

- It stages the source tree's ``bin/`` and ``lib/`` (and any extra
  directories) into the output directory.
- It traces every staged binary through the candidate roots, copying what has
  to be bundled, and loops auxiliary plugin discovery until nothing new turns
  up.
- It rebuilds framework layouts, repairs symlinks that lead back into the
  build store, rewrites every binary's linkage metadata, and finally verifies
  the result from a fresh copy.

Failures inside the pipeline are accumulated rather than raised; the returned
:class:`BundleResult` says whether the bundle is portable.
"""

from dataclasses import dataclass
import logging
import pathlib
import time

from portable_bundle.config import BundleConfig
from portable_bundle.frameworks import reconstruct_frameworks
from portable_bundle.layout import CopyStats, OutputLayout, output_layout, stage_source, staged_files
from portable_bundle.plugins import AuxiliaryDiscovery
from portable_bundle.policy import ExclusionPolicy, build_exclusion_policy
from portable_bundle.registry import FrameworkMapping, LibraryRegistry
from portable_bundle.rewriter import (
    ElfLinkEditor,
    LinkRewriter,
    MachOLinkEditor,
    RewriteStats,
    repair_absolute_symlinks,
)
from portable_bundle.tracer import ClosureTracer, UnresolvedEdge
from portable_bundle.verify import VerificationReport, verify_tree


class BuildError(RuntimeError):
    """Raised when bundling cannot start."""


@dataclass(frozen=True, slots=True)
class BundleResult:
    """Outcome of one bundle build.

    :ivar layout: Output tree layout.
    :ivar stage_stats: What staging copied.
    :ivar libraries_copied: Libraries the tracer copied into ``lib/``.
    :ivar unresolved: Dependency edges that could not be located.
    :ivar rewrite_stats: Rewrite pass counters.
    :ivar report: Verification report.
    :ivar qt_conf: Runtime config written for merged plugins, if any.
    """

    layout: OutputLayout
    stage_stats: CopyStats
    libraries_copied: tuple[pathlib.Path, ...]
    unresolved: tuple[UnresolvedEdge, ...]
    rewrite_stats: RewriteStats
    report: VerificationReport
    qt_conf: pathlib.Path | None

    @property
    def ok(self) -> bool:
        return self.report.ok

    @property
    def exit_code(self) -> int:
        return 0 if self.report.ok is True else 1


def failure_message(report: VerificationReport) -> str:
    """Summary line for a failed verification.

    :param report: Verification report.
    :returns: ``FAILED: Found N non-portable reference(s)``.
    """

    return f"FAILED: Found {report.error_count} non-portable reference(s)"


def _validate_config(config: BundleConfig) -> None:
    """Check the inputs before anything is written.

    :param config: Bundle config.
    :raises BuildError: If the inputs are unusable.
    """

    if config.source_root.exists() is False:
        raise BuildError(f"Source root does not exist: {config.source_root}")
    if config.source_root.is_dir() is False:
        raise BuildError(f"Source root is not a directory: {config.source_root}")

    src_resolved: pathlib.Path = config.source_root.resolve()
    out_resolved: pathlib.Path = config.output_dir.resolve()
    if out_resolved == src_resolved or out_resolved.is_relative_to(src_resolved) is True:
        raise BuildError(f"Output directory must be outside the source root: {config.output_dir}")
    if config.output_dir.exists() is True and config.output_dir.is_dir() is False:
        raise BuildError(f"Output path exists and is not a directory: {config.output_dir}")


def build_bundle(
    config: BundleConfig,
    *,
    logger: logging.Logger | None = None,
    macho_editor: MachOLinkEditor | None = None,
    elf_editor: ElfLinkEditor | None = None,
) -> BundleResult:
    """Build a portable bundle.

    :param config: Resolved bundle config.
    :param logger: Optional logger for realtime progress output.
    :param macho_editor: Mach-O editor override (defaults to ``install_name_tool``).
    :param elf_editor: ELF editor override (defaults to ``patchelf``).
    :returns: Result; check :attr:`BundleResult.ok`.
    :raises BuildError: If the inputs are unusable.
    """

    if logger is None:
        logger = logging.getLogger("portable_bundle")

    _validate_config(config)

    t_total0: float = time.perf_counter()
    logger.info(f"portable-bundle: source={config.source_root}")
    logger.info(f"portable-bundle: output={config.output_dir}")
    logger.info(f"portable-bundle: platform={config.platform} candidate roots={len(config.closure_paths)}")
    if logger.isEnabledFor(logging.DEBUG) is True:
        for root in config.closure_paths:
            if root.is_dir() is False:
                logger.debug(f"portable-bundle: candidate root missing: {root}")

    policy: ExclusionPolicy = build_exclusion_policy(
        system_patterns=config.system_patterns,
        host_patterns=config.host_patterns,
        platform=config.platform,
        use_defaults=config.use_default_system_libs,
    )
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"portable-bundle: system patterns={list(policy.system_patterns)}")
        logger.debug(f"portable-bundle: host patterns={list(policy.host_patterns)}")

    layout: OutputLayout = output_layout(config.output_dir, config.extra_dirs)
    layout.root.mkdir(parents=True, exist_ok=True)

    t_stage0: float = time.perf_counter()
    stage_stats: CopyStats = stage_source(
        source_root=config.source_root,
        layout=layout,
        extra_dirs=config.extra_dirs,
        logger=logger,
    )
    t_stage1: float = time.perf_counter()
    logger.info(
        f"portable-bundle: staged {stage_stats.files_copied} files "
        f"({stage_stats.bytes_copied / (1024 * 1024):.1f} MiB) in {t_stage1 - t_stage0:.2f}s"
    )

    registry: LibraryRegistry = LibraryRegistry()
    frameworks: FrameworkMapping = FrameworkMapping()
    tracer: ClosureTracer = ClosureTracer(
        lib_dir=layout.lib_dir,
        closure=config.closure_paths,
        policy=policy,
        registry=registry,
        frameworks=frameworks,
        output_root=layout.root,
        logger=logger,
    )

    t_trace0: float = time.perf_counter()
    logger.info("portable-bundle: tracing dependencies")
    tracer.trace_all(staged_files(layout))
    reconstruct_frameworks(lib_dir=layout.lib_dir, frameworks=frameworks, logger=logger)

    discovery: AuxiliaryDiscovery = AuxiliaryDiscovery(
        layout=layout,
        closure=config.closure_paths,
        logger=logger,
    )
    while True:
        new_binaries: list[pathlib.Path] = discovery.run(set(tracer.ui_libraries))
        if len(new_binaries) == 0:
            break
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"portable-bundle: retracing {len(new_binaries)} auxiliary binaries")
        tracer.trace_all(new_binaries)

    reconstruct_frameworks(lib_dir=layout.lib_dir, frameworks=frameworks, logger=logger)
    qt_conf: pathlib.Path | None = discovery.write_config()
    t_trace1: float = time.perf_counter()
    logger.info(
        f"portable-bundle: traced {len(registry)} libraries, copied {len(tracer.copied)} "
        f"in {t_trace1 - t_trace0:.2f}s"
    )

    registry.freeze()
    frameworks.freeze()

    repaired: int = repair_absolute_symlinks(
        root=layout.root,
        lib_dir=layout.lib_dir,
        prefixes=(config.store_prefix, *(str(p) for p in config.closure_paths)),
        logger=logger,
    )
    if repaired > 0:
        logger.info(f"portable-bundle: repaired {repaired} absolute symlinks")

    t_rewrite0: float = time.perf_counter()
    logger.info("portable-bundle: rewriting linkage")
    rewriter: LinkRewriter = LinkRewriter(
        layout=layout,
        policy=policy,
        frameworks=frameworks,
        registry=registry,
        macho_editor=macho_editor,
        elf_editor=elf_editor,
        logger=logger,
    )
    rewrite_stats: RewriteStats = rewriter.rewrite_tree()
    t_rewrite1: float = time.perf_counter()
    logger.info(
        f"portable-bundle: rewrote {rewrite_stats.binaries} binaries ({rewrite_stats.edits} edits, "
        f"{rewrite_stats.failures} failed) in {t_rewrite1 - t_rewrite0:.2f}s"
    )

    logger.info("portable-bundle: verifying portability")
    report: VerificationReport = verify_tree(
        layout.root,
        store_prefix=config.store_prefix,
        warn_on_binary_data=config.warn_on_binary_data,
        logger=logger,
    )

    if len(tracer.unresolved) > 0:
        logger.warning(f"portable-bundle: {len(tracer.unresolved)} dependencies could not be resolved:")
        for edge in tracer.unresolved:
            logger.warning(f"portable-bundle:   {edge.reference} (from {edge.binary.name})")

    if report.ok is False:
        logger.error(f"portable-bundle: {failure_message(report)}")

    t_total1: float = time.perf_counter()
    logger.info(f"portable-bundle: done in {t_total1 - t_total0:.2f}s")

    return BundleResult(
        layout=layout,
        stage_stats=stage_stats,
        libraries_copied=tuple(tracer.copied),
        unresolved=tuple(tracer.unresolved),
        rewrite_stats=rewrite_stats,
        report=report,
        qt_conf=qt_conf,
    )
