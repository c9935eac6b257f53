"""Auxiliary plugin and import-tree discovery.

UI frameworks load part of their code at runtime from plugin directories
(platform integrations, image formats, ...) and, for the declarative UI
family, from an import tree of modules. None of that shows up in any binary's
dependency list, so once the tracer has seen a UI framework library, the
candidate roots are searched for those directories, merged into the output
tree, pruned of build-only content, and the new shared libraries are handed
back to the tracer.
"""

import logging
import os
import pathlib
import re
import shutil
import textwrap

from portable_bundle.binary import FORMAT_OTHER, sniff_format
from portable_bundle.layout import OutputLayout, make_writable
from portable_bundle.policy import compile_glob


PLUGIN_DIR_GLOBS: tuple[str, ...] = ("lib/qt-*/plugins", "lib/qt*/plugins", "lib/plugins", "plugins")
IMPORT_DIR_GLOBS: tuple[str, ...] = ("lib/qt-*/qml", "lib/qt*/qml", "lib/qml", "qml")

# A plugin directory qualifies when it has at least one of these.
PLUGIN_MARKERS: frozenset[str] = frozenset(
    {
        "platforms",
        "imageformats",
        "iconengines",
        "styles",
        "platforminputcontexts",
        "platformthemes",
        "xcbglintegrations",
        "wayland-shell-integration",
        "tls",
        "sqldrivers",
        "generic",
        "egldeviceintegrations",
        "networkinformation",
    }
)

# Substrings of library names that pull in the declarative UI import tree.
DECLARATIVE_MARKERS: tuple[str, ...] = ("Qml", "Quick")

MODULE_MARKER: str = "qmldir"

NON_RUNTIME_SUFFIXES: tuple[str, ...] = (".debug", ".prl", ".la", ".a", ".pri", ".cmake", ".h", ".pdb")
BUILD_ARTIFACT_DIRS: tuple[str, ...] = ("cmake", "pkgconfig", "__pycache__", "*.dSYM", ".qt")
IMPORT_NON_RUNTIME_DIRS: tuple[str, ...] = ("QtTest", "Qt/test", "designer")

QT_CONF_NAME: str = "qt.conf"

_MODULE_LINE_RE: re.Pattern[str] = re.compile(r"^\s*module\s+([A-Za-z_][\w.]*)\s*$")


def find_candidate_dirs(
    closure: tuple[pathlib.Path, ...] | list[pathlib.Path],
    patterns: tuple[str, ...],
) -> list[pathlib.Path]:
    """Find directories matching any of ``patterns`` under each candidate root.

    :param closure: Candidate roots, in priority order.
    :param patterns: Glob patterns relative to a root.
    :returns: Existing directories, deduplicated, in root order.
    """

    found: list[pathlib.Path] = []
    seen: set[str] = set()
    for root in closure:
        for pat in patterns:
            for d in sorted(pathlib.Path(root).glob(pat)):
                if d.is_dir() is False:
                    continue
                key: str = os.path.realpath(d)
                if key in seen:
                    continue
                seen.add(key)
                found.append(d)
    return found


def merge_tree(*, src: pathlib.Path, dst: pathlib.Path) -> list[pathlib.Path]:
    """Copy a directory tree into ``dst`` without overwriting existing entries.

    :param src: Source directory.
    :param dst: Destination directory.
    :returns: Files created by this call.
    """

    created: list[pathlib.Path] = []
    for root_str, dirs, files in os.walk(src, followlinks=True):
        dirs.sort()
        rel: pathlib.Path = pathlib.Path(root_str).relative_to(src)
        out_dir: pathlib.Path = dst / rel
        out_dir.mkdir(parents=True, exist_ok=True)
        make_writable(out_dir)
        for name in sorted(files):
            src_path: pathlib.Path = pathlib.Path(root_str) / name
            dest_path: pathlib.Path = out_dir / name
            if dest_path.exists() is True or dest_path.is_symlink() is True:
                continue
            if src_path.exists() is False:
                continue
            shutil.copy2(src_path, dest_path)
            make_writable(dest_path)
            created.append(dest_path)
    return created


def prune_tree(
    root: pathlib.Path,
    *,
    suffixes: tuple[str, ...] = NON_RUNTIME_SUFFIXES,
    artifact_dirs: tuple[str, ...] = BUILD_ARTIFACT_DIRS,
    relpaths: tuple[str, ...] = (),
) -> int:
    """Delete non-runtime content from a merged tree, then empty directories.

    :param root: Tree to prune.
    :param suffixes: File suffixes to delete.
    :param artifact_dirs: Directory-name globs to delete wherever they occur.
    :param relpaths: Directories (relative to ``root``) to delete.
    :returns: Number of files removed.
    """

    removed: int = 0
    if root.is_dir() is False:
        return removed

    for rel in relpaths:
        target: pathlib.Path = root / rel
        if target.is_dir() is True and target.is_symlink() is False:
            removed += sum(1 for p in target.rglob("*") if p.is_file() is True)
            shutil.rmtree(target)

    dir_regexes: list[re.Pattern[str]] = [compile_glob(p) for p in artifact_dirs]
    for root_str, dirs, files in os.walk(root, topdown=True):
        keep: list[str] = []
        for d in dirs:
            p: pathlib.Path = pathlib.Path(root_str) / d
            if p.is_symlink() is False and any(rx.match(d) is not None for rx in dir_regexes):
                removed += sum(1 for q in p.rglob("*") if q.is_file() is True)
                shutil.rmtree(p)
                continue
            keep.append(d)
        dirs[:] = keep
        for name in files:
            if name.endswith(suffixes) is True:
                (pathlib.Path(root_str) / name).unlink()
                removed += 1

    for root_str, dirs, files in os.walk(root, topdown=False):
        p2: pathlib.Path = pathlib.Path(root_str)
        if p2 == root:
            continue
        if p2.is_symlink() is False and len(os.listdir(p2)) == 0:
            p2.rmdir()

    return removed


def module_relpath(qmldir: pathlib.Path) -> str | None:
    """Read the module identifier of a ``qmldir`` file as a relative path.

    ``module Foo.Bar`` yields ``Foo/Bar``.

    :param qmldir: Path to a ``qmldir`` file.
    :returns: Relative import path, or ``None`` if there is no module line.
    """

    try:
        text: str = qmldir.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    for line in text.splitlines():
        m = _MODULE_LINE_RE.match(line)
        if m is not None:
            return m.group(1).replace(".", "/")
    return None


def render_qt_conf(*, layout: OutputLayout, has_imports: bool) -> str:
    """Render the runtime configuration that points at the merged trees.

    :param layout: Output layout.
    :param has_imports: Whether an import tree was merged.
    :returns: File contents.
    """

    prefix: str = os.path.relpath(layout.root, layout.bin_dir)
    plugins: str = os.path.relpath(layout.plugins_dir, layout.root)
    imports_line: str = ""
    if has_imports is True:
        imports_line = f"Qml2Imports = {os.path.relpath(layout.qml_dir, layout.root)}\n"

    conf: str = _QT_CONF_TEMPLATE
    conf = conf.replace("__PREFIX__", prefix)
    conf = conf.replace("__PLUGINS__", plugins)
    conf = conf.replace("__IMPORTS__\n", imports_line)
    return conf


_QT_CONF_TEMPLATE: str = textwrap.dedent(
    """\
    [Paths]
    Prefix = __PREFIX__
    Plugins = __PLUGINS__
    __IMPORTS__
    """
)


class AuxiliaryDiscovery:
    """Finds, merges and prunes UI plugin and import directories.

    Each sub-search runs at most once; :meth:`run` may be called repeatedly as
    the tracer discovers more UI libraries.

    :ivar plugin_dirs: Source plugin directories that were merged.
    :ivar import_dirs: Source import directories that were merged.
    """

    def __init__(
        self,
        *,
        layout: OutputLayout,
        closure: tuple[pathlib.Path, ...] | list[pathlib.Path],
        logger: logging.Logger | None = None,
    ) -> None:
        if logger is None:
            logger = logging.getLogger("portable_bundle")
        self.layout: OutputLayout = layout
        self.closure: tuple[pathlib.Path, ...] = tuple(pathlib.Path(p) for p in closure)
        self.logger: logging.Logger = logger

        self.plugin_dirs: list[pathlib.Path] = []
        self.import_dirs: list[pathlib.Path] = []
        self._plugins_searched: bool = False
        self._imports_searched: bool = False

    def run(self, ui_libraries: set[str]) -> list[pathlib.Path]:
        """Run whichever sub-searches the given UI libraries trigger.

        :param ui_libraries: Bundled/host library names with a UI prefix.
        :returns: Newly copied binaries, to be traced.
        """

        if len(ui_libraries) == 0:
            return []

        new_files: list[pathlib.Path] = []
        if self._plugins_searched is False:
            self._plugins_searched = True
            new_files.extend(self._merge_plugins())

        wants_imports: bool = any(
            marker in name for name in ui_libraries for marker in DECLARATIVE_MARKERS
        )
        if wants_imports is True and self._imports_searched is False:
            self._imports_searched = True
            new_files.extend(self._merge_imports())

        binaries: list[pathlib.Path] = []
        for p in new_files:
            if p.is_file() is True and sniff_format(p) != FORMAT_OTHER:
                binaries.append(p)
        return binaries

    def _merge_plugins(self) -> list[pathlib.Path]:
        """Merge qualifying plugin directories into the output tree.

        :returns: Files that were copied and survived pruning.
        """

        created: list[pathlib.Path] = []
        for d in find_candidate_dirs(self.closure, PLUGIN_DIR_GLOBS):
            if any((d / marker).is_dir() for marker in PLUGIN_MARKERS) is False:
                continue
            self.logger.info(f"portable-bundle: merging plugins from {d}")
            self.plugin_dirs.append(d)
            created.extend(merge_tree(src=d, dst=self.layout.plugins_dir))

        if len(self.plugin_dirs) > 0:
            removed: int = prune_tree(self.layout.plugins_dir)
            if self.logger.isEnabledFor(logging.DEBUG) is True:
                self.logger.debug(f"portable-bundle: pruned {removed} non-runtime plugin files")
        return [p for p in created if p.exists() is True]

    def _merge_imports(self) -> list[pathlib.Path]:
        """Merge import trees and link application-authored modules into them.

        :returns: Files that were copied and survived pruning.
        """

        created: list[pathlib.Path] = []
        for d in find_candidate_dirs(self.closure, IMPORT_DIR_GLOBS):
            self.logger.info(f"portable-bundle: merging imports from {d}")
            self.import_dirs.append(d)
            created.extend(merge_tree(src=d, dst=self.layout.qml_dir))

        if len(self.import_dirs) > 0:
            removed: int = prune_tree(self.layout.qml_dir, relpaths=IMPORT_NON_RUNTIME_DIRS)
            if self.logger.isEnabledFor(logging.DEBUG) is True:
                self.logger.debug(f"portable-bundle: pruned {removed} non-runtime import files")
            self._link_app_modules()
        return [p for p in created if p.exists() is True]

    def _link_app_modules(self) -> list[pathlib.Path]:
        """Symlink application modules already in the tree into the import tree.

        :returns: Symlinks created.
        """

        links: list[pathlib.Path] = []
        skip: set[pathlib.Path] = {self.layout.qml_dir, self.layout.plugins_dir}
        for root_str, dirs, files in os.walk(self.layout.root, topdown=True):
            here: pathlib.Path = pathlib.Path(root_str)
            dirs[:] = sorted(d for d in dirs if (here / d) not in skip)
            if MODULE_MARKER not in files:
                continue
            rel: str | None = module_relpath(here / MODULE_MARKER)
            if rel is None:
                continue
            link: pathlib.Path = self.layout.qml_dir / rel
            if link.exists() is True or link.is_symlink() is True:
                continue
            link.parent.mkdir(parents=True, exist_ok=True)
            os.symlink(os.path.relpath(here, link.parent), link)
            self.logger.info(f"portable-bundle: linked module {rel}")
            links.append(link)
        return links

    def write_config(self) -> pathlib.Path | None:
        """Write ``qt.conf`` into the executables area if plugins were found.

        :returns: Path written, or ``None``.
        """

        if len(self.plugin_dirs) == 0:
            return None
        self.layout.bin_dir.mkdir(parents=True, exist_ok=True)
        conf_path: pathlib.Path = self.layout.bin_dir / QT_CONF_NAME
        has_imports: bool = self.layout.qml_dir.is_dir() is True
        conf_path.write_text(render_qt_conf(layout=self.layout, has_imports=has_imports), encoding="utf-8")
        self.logger.info(f"portable-bundle: wrote {conf_path}")
        return conf_path
