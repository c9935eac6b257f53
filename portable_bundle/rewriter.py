"""Link metadata rewriting.

After tracing, every binary in the output tree still points at the build
store: absolute load commands and install names (Mach-O), absolute run-paths,
and possibly an absolute loader interpreter (ELF). This pass rewrites each of
them to a relative-root token, a canonical system path, or a bare name.

The actual edits are delegated to ``install_name_tool`` and ``patchelf``. A
failing edit is logged and the pass moves on; it never aborts the bundle.
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import shutil
import subprocess

from portable_bundle.binary import FORMAT_ELF, FORMAT_MACHO, BinaryInfo, iter_binaries
from portable_bundle.layout import OutputLayout, make_writable
from portable_bundle.policy import (
    HOST,
    OTHER,
    SYSTEM,
    SYSTEM_PATH_PREFIXES,
    ExclusionPolicy,
    is_portable_ref,
    system_interpreter_path,
    system_library_path,
)
from portable_bundle.registry import BUNDLED, FrameworkMapping, LibraryRegistry


RPATH_TOKEN: str = "@rpath"
LOADER_TOKEN: str = "@loader_path"
ORIGIN_TOKEN: str = "$ORIGIN"


def _run_tool(cmd: list[str], *, logger: logging.Logger) -> bool:
    """Run an external link-editing tool.

    :param cmd: Command line.
    :param logger: Logger for debug and warning output.
    :returns: ``True`` if the tool exited with status zero.
    """

    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"portable-bundle: running: {' '.join(cmd)}")

    try:
        proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
    except OSError as e:
        logger.warning(f"portable-bundle: {cmd[0]} could not be run: {e}")
        return False

    if proc.returncode != 0:
        detail: str = proc.stderr.strip()
        logger.warning(
            f"portable-bundle: {cmd[0]} failed (exit={proc.returncode}): {' '.join(cmd[1:])}"
            + (f": {detail}" if len(detail) > 0 else "")
        )
        return False
    return True


class MachOLinkEditor:
    """Edits Mach-O load commands with ``install_name_tool``."""

    def __init__(self, *, tool: str = "install_name_tool", logger: logging.Logger | None = None) -> None:
        self.tool: str = tool
        self.logger: logging.Logger = logger or logging.getLogger("portable_bundle")

    def change_dependency(self, path: pathlib.Path, old: str, new: str) -> bool:
        return _run_tool([self.tool, "-change", old, new, str(path)], logger=self.logger)

    def set_identity(self, path: pathlib.Path, new: str) -> bool:
        return _run_tool([self.tool, "-id", new, str(path)], logger=self.logger)

    def delete_rpath(self, path: pathlib.Path, rpath: str) -> bool:
        return _run_tool([self.tool, "-delete_rpath", rpath, str(path)], logger=self.logger)

    def add_rpath(self, path: pathlib.Path, rpath: str) -> bool:
        return _run_tool([self.tool, "-add_rpath", rpath, str(path)], logger=self.logger)


class ElfLinkEditor:
    """Edits ELF dynamic sections and interpreters with ``patchelf``."""

    def __init__(self, *, tool: str = "patchelf", logger: logging.Logger | None = None) -> None:
        self.tool: str = tool
        self.logger: logging.Logger = logger or logging.getLogger("portable_bundle")

    def set_rpath(self, path: pathlib.Path, rpath: str) -> bool:
        return _run_tool([self.tool, "--set-rpath", rpath, str(path)], logger=self.logger)

    def replace_needed(self, path: pathlib.Path, old: str, new: str) -> bool:
        return _run_tool([self.tool, "--replace-needed", old, new, str(path)], logger=self.logger)

    def set_interpreter(self, path: pathlib.Path, interpreter: str) -> bool:
        return _run_tool([self.tool, "--set-interpreter", interpreter, str(path)], logger=self.logger)


@dataclass(slots=True)
class RewriteStats:
    """Counters for one rewrite pass.

    :ivar binaries: Binaries visited.
    :ivar edits: Successful edits.
    :ivar failures: Edits whose tool call failed.
    :ivar left_as_is: Non-portable references with no rewrite target.
    """

    binaries: int = 0
    edits: int = 0
    failures: int = 0
    left_as_is: int = 0


def relative_lib_path(binary_dir: pathlib.Path, lib_dir: pathlib.Path) -> str:
    """Path from a binary's directory to the shared-library area.

    :param binary_dir: Directory containing the binary.
    :param lib_dir: Shared-library area.
    :returns: Relative path (``.`` when they are the same directory).
    """

    return os.path.relpath(lib_dir, binary_dir)


def _join_token(token: str, rel: str) -> str:
    if rel == ".":
        return token
    return f"{token}/{rel}"


class LinkRewriter:
    """Rewrites linkage metadata of every binary in the output tree.

    Reads only frozen state: the policy, the framework mapping, the tracer's
    registry (for cached classifications) and a listing of the tree taken when
    the pass starts.
    """

    def __init__(
        self,
        *,
        layout: OutputLayout,
        policy: ExclusionPolicy,
        frameworks: FrameworkMapping,
        registry: LibraryRegistry | None = None,
        macho_editor: MachOLinkEditor | None = None,
        elf_editor: ElfLinkEditor | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if logger is None:
            logger = logging.getLogger("portable_bundle")
        self.layout: OutputLayout = layout
        self.policy: ExclusionPolicy = policy
        self.frameworks: FrameworkMapping = frameworks
        self.registry: LibraryRegistry | None = registry
        self.macho_editor: MachOLinkEditor = macho_editor or MachOLinkEditor(logger=logger)
        self.elf_editor: ElfLinkEditor = elf_editor or ElfLinkEditor(logger=logger)
        self.logger: logging.Logger = logger
        self.stats: RewriteStats = RewriteStats()
        self._name_index: dict[str, pathlib.Path] = {}

    def rewrite_tree(self) -> RewriteStats:
        """Rewrite every binary under the output root.

        :returns: Counters for the pass.
        """

        self._name_index = self._index_tree()
        infos: list[BinaryInfo] = list(iter_binaries(self.layout.root))
        for info in infos:
            self.rewrite(info)
        return self.stats

    def rewrite(self, info: BinaryInfo) -> None:
        """Rewrite one binary.

        :param info: Metadata read before any edit.
        """

        if len(self._name_index) == 0:
            self._name_index = self._index_tree()

        self.stats.binaries += 1
        make_writable(info.path)
        if self.logger.isEnabledFor(logging.DEBUG) is True:
            self.logger.debug(f"portable-bundle:   {self._display(info.path)}")

        if info.format == FORMAT_MACHO:
            self._rewrite_macho(info)
        elif info.format == FORMAT_ELF:
            self._rewrite_elf(info)

    def classify(self, name: str) -> str:
        """Classify a bare library name, preferring what the tracer already decided.

        :param name: Bare library name.
        :returns: ``system``, ``host`` or ``other``.
        """

        if self.registry is not None:
            cached: str | None = self.registry.classification_for(name)
            if cached == BUNDLED:
                return OTHER
            if cached is not None:
                return cached
        return self.policy.classify(name)

    def macho_target(self, ref: str, binary_dir: pathlib.Path) -> str | None:
        """Compute the portable replacement for a Mach-O reference.

        :param ref: Dependency or identity reference.
        :param binary_dir: Directory of the binary holding the reference.
        :returns: New reference, or ``None`` to leave it unchanged.
        """

        name: str = os.path.basename(ref)
        lib_prefix: str = _join_token(LOADER_TOKEN, relative_lib_path(binary_dir, self.layout.lib_dir))

        fragment: str | None = self.frameworks.get(name)
        if fragment is not None:
            return f"{RPATH_TOKEN}/{fragment}"

        in_lib: pathlib.Path = self.layout.lib_dir / name
        if in_lib.exists() is True or in_lib.is_symlink() is True:
            return f"{lib_prefix}/{name}"

        classification: str = self.classify(name)
        if classification == SYSTEM:
            return system_library_path(name)
        if classification == HOST:
            return f"{RPATH_TOKEN}/{name}"

        if is_portable_ref(ref) is True:
            return None

        local: pathlib.Path | None = self._name_index.get(name)
        if local is not None:
            return _join_token(LOADER_TOKEN, os.path.relpath(local, binary_dir))
        return None

    def _rewrite_macho(self, info: BinaryInfo) -> None:
        path: pathlib.Path = info.path
        binary_dir: pathlib.Path = path.parent
        lib_prefix: str = _join_token(LOADER_TOKEN, relative_lib_path(binary_dir, self.layout.lib_dir))

        for dep in info.dependencies:
            if dep.startswith(SYSTEM_PATH_PREFIXES) is True:
                continue
            new: str | None = self.macho_target(dep, binary_dir)
            if new is None:
                if is_portable_ref(dep) is False:
                    self._leave(info, dep)
                continue
            if new == dep:
                continue
            self._count(self.macho_editor.change_dependency(path, dep, new))

        if info.identity is not None and is_portable_ref(info.identity) is False:
            new_id: str | None = self.macho_target(info.identity, binary_dir)
            if new_id is None:
                self._leave(info, info.identity)
            elif new_id != info.identity:
                self._count(self.macho_editor.set_identity(path, new_id))

        kept: list[str] = []
        for rpath in info.run_paths:
            if rpath.startswith("/") is True:
                self._count(self.macho_editor.delete_rpath(path, rpath))
            else:
                kept.append(rpath)
        if lib_prefix not in kept:
            self._count(self.macho_editor.add_rpath(path, lib_prefix))

    def _rewrite_elf(self, info: BinaryInfo) -> None:
        path: pathlib.Path = info.path
        origin: str = _join_token(ORIGIN_TOKEN, relative_lib_path(path.parent, self.layout.lib_dir))

        is_dynamic: bool = len(info.dependencies) > 0 or len(info.run_paths) > 0
        if is_dynamic is True and tuple(info.run_paths) != (origin,):
            self._count(self.elf_editor.set_rpath(path, origin))

        for dep in info.dependencies:
            if is_portable_ref(dep) is True:
                continue
            self._count(self.elf_editor.replace_needed(path, dep, os.path.basename(dep)))

        interp: str | None = info.interpreter
        if interp is None or interp.startswith("/") is False:
            return
        if interp.startswith(SYSTEM_PATH_PREFIXES) is True:
            return

        interp_name: str = os.path.basename(interp)
        in_lib: pathlib.Path = self.layout.lib_dir / interp_name
        new_interp: str
        if self.classify(interp_name) == SYSTEM:
            new_interp = system_interpreter_path(interp_name)
        elif in_lib.exists() is True:
            new_interp = str(in_lib.absolute())
        else:
            self._leave(info, interp)
            return
        self._count(self.elf_editor.set_interpreter(path, new_interp))

    def _count(self, ok: bool) -> None:
        if ok is True:
            self.stats.edits += 1
        else:
            self.stats.failures += 1

    def _leave(self, info: BinaryInfo, ref: str) -> None:
        self.stats.left_as_is += 1
        self.logger.warning(
            f"portable-bundle: no portable target for {ref} in {self._display(info.path)}; left as-is"
        )

    def _display(self, path: pathlib.Path) -> str:
        try:
            return path.relative_to(self.layout.root).as_posix()
        except ValueError:
            return str(path)

    def _index_tree(self) -> dict[str, pathlib.Path]:
        """Map each bare file name in the tree to its first location.

        :returns: Name index.
        """

        index: dict[str, pathlib.Path] = {}
        if self.layout.root.is_dir() is False:
            return index
        for root_str, dirs, files in os.walk(self.layout.root):
            dirs.sort()
            for name in sorted(files):
                if name not in index:
                    index[name] = pathlib.Path(root_str) / name
        return index


def repair_absolute_symlinks(
    *,
    root: pathlib.Path,
    lib_dir: pathlib.Path,
    prefixes: tuple[str, ...],
    logger: logging.Logger | None = None,
) -> int:
    """Repoint symlinks that lead back into the build store.

    A link whose absolute target starts with one of ``prefixes`` becomes a
    relative link to the same-named file in the shared-library area if there is
    one; otherwise it is replaced with a copy of its target.

    :param root: Output root.
    :param lib_dir: Shared-library area.
    :param prefixes: Absolute path prefixes of the build store / candidate roots.
    :param logger: Optional logger.
    :returns: Number of links repaired.
    """

    if logger is None:
        logger = logging.getLogger("portable_bundle")

    norm_prefixes: tuple[str, ...] = tuple(p.rstrip("/") + "/" for p in prefixes if len(p) > 0)
    repaired: int = 0
    if root.is_dir() is False:
        return repaired

    for root_str, dirs, files in os.walk(root):
        for name in sorted([*dirs, *files]):
            link: pathlib.Path = pathlib.Path(root_str) / name
            if link.is_symlink() is False:
                continue
            target: str = os.readlink(link)
            if target.startswith("/") is False or target.startswith(norm_prefixes) is False:
                continue

            local: pathlib.Path = lib_dir / os.path.basename(target)
            if (local.exists() is True or local.is_symlink() is True) and local != link:
                link.unlink()
                os.symlink(os.path.relpath(local, link.parent), link)
            elif os.path.isfile(target) is True:
                link.unlink()
                shutil.copy2(target, link)
                make_writable(link)
            else:
                logger.warning(f"portable-bundle: cannot repair symlink {link} -> {target}")
                continue
            repaired += 1

    return repaired
