"""Portability verification.

Copies the finished tree to a scratch directory, away from the build
context, and re-reads every binary there. Any linkage reference that would not
survive relocation is a violation, as is any printable string in a binary that
still names the build store (unless that is configured to be tolerated).

Violations are collected across the whole tree; the caller decides the
outcome from the final report.
"""

from dataclasses import dataclass, field
import logging
import pathlib
import re
import shutil
import tempfile

from portable_bundle.binary import FORMAT_ELF, FORMAT_MACHO, BinaryInfo, iter_binaries
from portable_bundle.policy import is_portable_elf_run_path, is_portable_ref


# Same threshold as strings(1).
MIN_STRING_LENGTH: int = 4

_PRINTABLE_RUN_RE: re.Pattern[bytes] = re.compile(rb"[\x20-\x7e\t]{%d,}" % MIN_STRING_LENGTH)

KIND_LOAD_COMMAND: str = "load command"
KIND_NEEDED: str = "needed entry"
KIND_INSTALL_NAME: str = "install name"
KIND_RPATH: str = "rpath"
KIND_INTERPRETER: str = "interpreter"
KIND_EMBEDDED: str = "embedded reference"


@dataclass(frozen=True, slots=True)
class Violation:
    """One non-portable finding.

    :ivar path: Binary path relative to the tree root (POSIX).
    :ivar kind: What was checked (``rpath``, ``install name``, ...).
    :ivar detail: The offending reference, or a count for embedded references.
    :ivar matches: Unique embedded strings (embedded references only).
    """

    path: str
    kind: str
    detail: str
    matches: tuple[str, ...] = ()

    def describe(self) -> str:
        if self.kind == KIND_EMBEDDED:
            return f"{self.path} contains {self.detail} embedded build-store reference(s) in binary data"
        return f"{self.path} has non-portable {self.kind}: {self.detail}"


@dataclass(slots=True)
class VerificationReport:
    """Accumulated verification outcome.

    :ivar errors: Hard violations.
    :ivar warnings: Tolerated violations.
    :ivar binaries_checked: Number of binaries inspected.
    """

    errors: list[Violation] = field(default_factory=list)
    warnings: list[Violation] = field(default_factory=list)
    binaries_checked: int = 0

    @property
    def ok(self) -> bool:
        return len(self.errors) == 0

    @property
    def error_count(self) -> int:
        return len(self.errors)


def embedded_references(data: bytes, prefix: str) -> list[str]:
    """Find printable strings in binary data that contain ``prefix``.

    :param data: Raw file bytes.
    :param prefix: Build-store path prefix.
    :returns: Every matching printable run, in file order (duplicates kept).
    """

    needle: bytes = prefix.encode("utf-8")
    if len(needle) == 0 or needle not in data:
        return []
    found: list[str] = []
    for m in _PRINTABLE_RUN_RE.finditer(data):
        run: bytes = m.group(0)
        if needle in run:
            found.append(run.decode("ascii", errors="replace"))
    return found


def check_binary(info: BinaryInfo, *, rel: str, store_prefix: str) -> list[Violation]:
    """Check one binary's linkage metadata.

    :param info: Binary metadata.
    :param rel: Display path relative to the tree root.
    :param store_prefix: Build-store path prefix.
    :returns: Violations found (possibly empty).
    """

    out: list[Violation] = []
    dep_kind: str = KIND_LOAD_COMMAND if info.format == FORMAT_MACHO else KIND_NEEDED
    for dep in info.dependencies:
        if is_portable_ref(dep) is False:
            out.append(Violation(path=rel, kind=dep_kind, detail=dep))

    if info.identity is not None and is_portable_ref(info.identity) is False:
        out.append(Violation(path=rel, kind=KIND_INSTALL_NAME, detail=info.identity))

    for rpath in info.run_paths:
        portable: bool = is_portable_elf_run_path(rpath) if info.format == FORMAT_ELF else is_portable_ref(rpath)
        if portable is False:
            out.append(Violation(path=rel, kind=KIND_RPATH, detail=rpath))

    if info.interpreter is not None and len(store_prefix) > 0 and info.interpreter.startswith(store_prefix) is True:
        out.append(Violation(path=rel, kind=KIND_INTERPRETER, detail=info.interpreter))

    return out


def verify_tree(
    root: pathlib.Path,
    *,
    store_prefix: str = "/nix/store",
    warn_on_binary_data: bool = False,
    logger: logging.Logger | None = None,
) -> VerificationReport:
    """Verify a finished tree from a fresh copy.

    :param root: Output tree.
    :param store_prefix: Build-store path prefix to look for.
    :param warn_on_binary_data: Tolerate embedded store strings (warn instead of fail).
    :param logger: Optional logger.
    :returns: Report with all violations.
    """

    if logger is None:
        logger = logging.getLogger("portable_bundle")

    report: VerificationReport = VerificationReport()
    with tempfile.TemporaryDirectory(prefix="portable_bundle_verify_") as td:
        test_root: pathlib.Path = pathlib.Path(td) / "tree"
        shutil.copytree(root, test_root, symlinks=True)

        for info in iter_binaries(test_root):
            report.binaries_checked += 1
            rel: str = info.path.relative_to(test_root).as_posix()

            for v in check_binary(info, rel=rel, store_prefix=store_prefix):
                logger.error(f"portable-bundle:   ERROR: {v.describe()}")
                report.errors.append(v)

            try:
                data: bytes = info.path.read_bytes()
            except OSError as e:
                logger.warning(f"portable-bundle: cannot read {rel} for embedded references: {e}")
                continue

            refs: list[str] = embedded_references(data, store_prefix)
            if len(refs) == 0:
                continue
            v2: Violation = Violation(
                path=rel,
                kind=KIND_EMBEDDED,
                detail=str(len(refs)),
                matches=tuple(sorted(set(refs))),
            )
            if warn_on_binary_data is True:
                logger.warning(f"portable-bundle:   WARNING: {v2.describe()}")
                report.warnings.append(v2)
            else:
                logger.error(f"portable-bundle:   ERROR: {v2.describe()}")
                report.errors.append(v2)
            for ref in v2.matches:
                logger.warning(f"portable-bundle:     {ref}")

    if report.ok is True:
        logger.info("portable-bundle: all references are portable")
    return report
