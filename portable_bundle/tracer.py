"""Dependency closure tracer.

Starting from the binaries already in the output tree, follows every declared
dependency into the candidate roots, classifies it, and copies what has to be
bundled into the shared-library area. Copies are traced in turn until the
closure is exhausted.

Each canonical source path is visited at most once; :class:`LibraryRegistry`
owns that guarantee. Files already in the output tree are never copied again:
an edge that reaches one hands it back to be traced where it lies.
"""

from collections import deque
from dataclasses import dataclass
import logging
import os
import pathlib
import shutil

from portable_bundle.binary import FORMAT_ELF, BinaryInfo, inspect_binary
from portable_bundle.layout import make_writable
from portable_bundle.policy import HOST, SYSTEM, ExclusionPolicy
from portable_bundle.registry import BUNDLED, FrameworkMapping, LibraryRegistry, framework_fragment


# Bare-name prefixes of UI framework libraries (ELF ``libQt6Core.so.6``, Mach-O ``QtCore``).
UI_FRAMEWORK_PREFIXES: tuple[str, ...] = ("libQt", "Qt")

_LOADER_TOKENS: tuple[str, ...] = ("@loader_path", "@executable_path", "${ORIGIN}", "$ORIGIN")


@dataclass(frozen=True, slots=True)
class UnresolvedEdge:
    """A dependency reference that could not be located.

    :ivar binary: Referencing binary.
    :ivar reference: The reference as embedded in the binary.
    """

    binary: pathlib.Path
    reference: str


def expand_loader_tokens(entry: str, binary_dir: pathlib.Path) -> str:
    """Replace loader-relative tokens in a run-path entry with ``binary_dir``.

    :param entry: Run-path entry.
    :param binary_dir: Directory of the referencing binary.
    :returns: Expanded, normalized path.
    """

    expanded: str = entry
    for token in _LOADER_TOKENS:
        if token in expanded:
            expanded = expanded.replace(token, str(binary_dir))
    return os.path.normpath(expanded)


class ClosureTracer:
    """Recursive, visit-once dependency discovery and copy engine.

    :ivar copied: Files this tracer copied into the shared-library area.
    :ivar unresolved: Dependency edges that could not be located.
    :ivar ui_libraries: Bundled or host library names with a UI-framework prefix.
    """

    def __init__(
        self,
        *,
        lib_dir: pathlib.Path,
        closure: tuple[pathlib.Path, ...] | list[pathlib.Path],
        policy: ExclusionPolicy,
        registry: LibraryRegistry,
        frameworks: FrameworkMapping,
        output_root: pathlib.Path | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if logger is None:
            logger = logging.getLogger("portable_bundle")
        self.lib_dir: pathlib.Path = lib_dir
        self.output_root: pathlib.Path = output_root if output_root is not None else lib_dir.parent
        self.closure: tuple[pathlib.Path, ...] = tuple(pathlib.Path(p) for p in closure)
        self.policy: ExclusionPolicy = policy
        self.registry: LibraryRegistry = registry
        self.frameworks: FrameworkMapping = frameworks
        self.logger: logging.Logger = logger

        self.copied: list[pathlib.Path] = []
        self.unresolved: list[UnresolvedEdge] = []
        self.ui_libraries: set[str] = set()

        self._closure_prefixes: tuple[str, ...] = tuple(
            os.path.normpath(str(p)) for p in self.closure
        )

    def trace_all(self, roots: list[pathlib.Path]) -> None:
        """Trace a set of root binaries.

        :param roots: Binaries in the output tree.
        """

        for root in roots:
            self.trace(root)

    def trace(self, binary: pathlib.Path) -> None:
        """Trace one binary and everything it transitively pulls in.

        Non-binary files are claimed and ignored.

        :param binary: File to trace.
        """

        queue: deque[pathlib.Path] = deque([binary])
        while len(queue) > 0:
            cur: pathlib.Path = queue.popleft()
            real: str = os.path.realpath(cur)
            if self.registry.claim(real) is False:
                continue
            self.registry.settle(real, BUNDLED, copied=False)

            info: BinaryInfo | None = inspect_binary(cur)
            if info is None:
                continue

            if self.logger.isEnabledFor(logging.DEBUG) is True:
                self.logger.debug(f"portable-bundle: tracing {cur} ({len(info.dependencies)} deps)")

            edges: list[str] = list(info.dependencies)
            if info.format == FORMAT_ELF and info.interpreter is not None and self.in_closure(info.interpreter) is True:
                edges.append(info.interpreter)

            for dep in edges:
                nxt: pathlib.Path | None = self._follow(info, dep)
                if nxt is not None:
                    queue.append(nxt)

    def in_output(self, path: str) -> bool:
        """Check whether a path (after resolving symlinks) lies in the output tree.

        :param path: Absolute path.
        :returns: ``True`` if it is inside the output root.
        """

        real: str = os.path.realpath(path)
        out: str = os.path.realpath(self.output_root)
        return real == out or real.startswith(out + "/") is True

    def in_closure(self, path: str) -> bool:
        """Check whether a path lies inside one of the candidate roots.

        :param path: Absolute path.
        :returns: ``True`` if it is a root or below one.
        """

        norm: str = os.path.normpath(path)
        for prefix in self._closure_prefixes:
            if norm == prefix or norm.startswith(prefix + "/") is True:
                return True
        return False

    def resolve(self, info: BinaryInfo, dep: str) -> str | None:
        """Resolve a dependency reference to an existing file.

        :param info: Referencing binary.
        :param dep: Dependency reference.
        :returns: Resolved path, or ``None``.
        """

        binary_dir: pathlib.Path = info.path.parent

        if dep.startswith("@rpath/") is True:
            rest: str = dep[len("@rpath/") :]
            for entry in info.run_paths:
                candidate: str = os.path.join(expand_loader_tokens(entry, binary_dir), rest)
                if os.path.isfile(candidate) is True:
                    return candidate
            return None

        for token in ("@loader_path/", "@executable_path/"):
            if dep.startswith(token) is True:
                candidate2: str = os.path.normpath(os.path.join(binary_dir, dep[len(token) :]))
                if os.path.isfile(candidate2) is True:
                    return candidate2
                return None

        if dep.startswith("/") is True:
            if self.in_closure(dep) is True and os.path.isfile(dep) is True:
                return dep
            return None

        if "/" in dep or info.format != FORMAT_ELF:
            return None

        for entry in info.run_paths:
            base: str = expand_loader_tokens(entry, binary_dir)
            if self.in_closure(base) is False:
                continue
            candidate3: str = os.path.join(base, dep)
            if os.path.isfile(candidate3) is True:
                return candidate3

        for root in self.closure:
            candidate4: pathlib.Path = root / "lib" / dep
            if candidate4.is_file() is True:
                return str(candidate4)

        return None

    def _follow(self, info: BinaryInfo, dep: str) -> pathlib.Path | None:
        """Handle one dependency edge.

        :param info: Referencing binary.
        :param dep: Dependency reference.
        :returns: A file to trace next, or ``None``.
        """

        resolved: str | None = self.resolve(info, dep)
        if resolved is None:
            self._drop(info, dep)
            return None

        name: str = os.path.basename(resolved)
        if self.in_output(resolved) is True:
            # Staged or merged earlier; trace() claims it.
            if name.startswith(UI_FRAMEWORK_PREFIXES) is True:
                self.ui_libraries.add(name)
            if os.path.realpath(resolved) in self.registry:
                return None
            return pathlib.Path(resolved)

        real: str = os.path.realpath(resolved)
        if self.registry.claim(real) is False:
            return None

        classification: str = self.policy.classify(name)
        if classification == SYSTEM:
            self.registry.settle(real, SYSTEM, name=name)
            if self.logger.isEnabledFor(logging.DEBUG) is True:
                self.logger.debug(f"portable-bundle: skipping (system): {name}")
            return None

        fragment: str | None = framework_fragment(real) or framework_fragment(resolved)
        if fragment is not None:
            self.frameworks.record(name, fragment)

        if name.startswith(UI_FRAMEWORK_PREFIXES) is True:
            self.ui_libraries.add(name)

        if classification == HOST:
            self.registry.settle(real, HOST, name=name)
            if self.logger.isEnabledFor(logging.DEBUG) is True:
                self.logger.debug(f"portable-bundle: skipping (host): {name}")
            return None

        dest: pathlib.Path | None = self._copy_into_lib(src=resolved, real=real, name=name)
        self.registry.settle(real, BUNDLED, copied=dest is not None, name=name)
        return dest

    def _drop(self, info: BinaryInfo, dep: str) -> None:
        """Record a dependency edge that will not be followed.

        :param info: Referencing binary.
        :param dep: Dependency reference.
        """

        if dep.startswith("/") is True and self.in_closure(dep) is False:
            if self.logger.isEnabledFor(logging.DEBUG) is True:
                self.logger.debug(f"portable-bundle: leaving to host: {dep} (from {info.path.name})")
            return

        name: str = os.path.basename(dep)
        if self.policy.classify(name) == SYSTEM:
            if self.logger.isEnabledFor(logging.DEBUG) is True:
                self.logger.debug(f"portable-bundle: unresolved system dependency {dep} (from {info.path.name})")
            return

        self.logger.warning(f"portable-bundle: could not resolve {dep} (from {info.path})")
        self.unresolved.append(UnresolvedEdge(binary=info.path, reference=dep))

    def _copy_into_lib(self, *, src: str, real: str, name: str) -> pathlib.Path | None:
        """Copy a library into the shared-library area (first writer wins).

        A symlinked source also brings its resolved target under the target's
        own name, and the bare name becomes a relative symlink to it.

        :param src: Resolved source path (may be a symlink).
        :param real: Canonical source path.
        :param name: Bare name the dependency was referenced by.
        :returns: The file to trace next, or ``None`` if nothing was copied.
        """

        dest: pathlib.Path = self.lib_dir / name
        if dest.exists() is True or dest.is_symlink() is True:
            if self.logger.isEnabledFor(logging.DEBUG) is True:
                self.logger.debug(f"portable-bundle: already present: {name}")
            return None

        self.lib_dir.mkdir(parents=True, exist_ok=True)
        target_name: str = os.path.basename(real)
        to_trace: pathlib.Path | None
        try:
            if os.path.islink(src) is True and target_name != name:
                target_dest: pathlib.Path = self.lib_dir / target_name
                to_trace = None
                if target_dest.exists() is False and target_dest.is_symlink() is False:
                    shutil.copy2(real, target_dest)
                    make_writable(target_dest)
                    to_trace = target_dest
                os.symlink(target_name, dest)
            else:
                shutil.copy2(src, dest)
                make_writable(dest)
                to_trace = dest
        except OSError as e:
            self.logger.warning(f"portable-bundle: failed to copy {src} into {self.lib_dir}: {e}")
            return None

        self.logger.info(f"portable-bundle:   {name}")
        if to_trace is not None:
            self.copied.append(to_trace)
        return to_trace
