"""Output tree layout and staging.

The output tree has an executables area (``bin/``), a shared-library area
(``lib/``), the plugin and import trees created by auxiliary discovery, and any
extra directories the caller asked to copy verbatim.
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import shutil
import stat


@dataclass(frozen=True, slots=True)
class OutputLayout:
    """Well-known locations inside the output tree.

    :ivar root: Output root directory.
    :ivar bin_dir: Executables area.
    :ivar lib_dir: Shared-library area.
    :ivar plugins_dir: Merged UI plugin directory.
    :ivar qml_dir: Merged declarative-UI import directory.
    :ivar extra_dirs: Caller-specified auxiliary directories.
    """

    root: pathlib.Path
    bin_dir: pathlib.Path
    lib_dir: pathlib.Path
    plugins_dir: pathlib.Path
    qml_dir: pathlib.Path
    extra_dirs: tuple[pathlib.Path, ...]


@dataclass(frozen=True, slots=True)
class CopyStats:
    """Stats collected while staging.

    :ivar files_copied: Number of files copied.
    :ivar bytes_copied: Total bytes copied (best-effort).
    """

    files_copied: int
    bytes_copied: int


def output_layout(root: pathlib.Path, extra_dirs: tuple[str, ...] | list[str] = ()) -> OutputLayout:
    """Describe the output tree rooted at ``root``.

    :param root: Output directory.
    :param extra_dirs: Names of auxiliary directories (relative to ``root``).
    :returns: Layout.
    """

    return OutputLayout(
        root=root,
        bin_dir=root / "bin",
        lib_dir=root / "lib",
        plugins_dir=root / "plugins",
        qml_dir=root / "qml",
        extra_dirs=tuple(root / d for d in extra_dirs),
    )


def make_writable(path: pathlib.Path) -> None:
    """Add owner write permission to a file (store copies are read-only).

    :param path: File or directory.
    """

    try:
        mode: int = path.stat().st_mode
        if mode & stat.S_IWUSR == 0:
            os.chmod(path, mode | stat.S_IWUSR)
    except OSError:
        pass


def make_tree_writable(root: pathlib.Path) -> None:
    """Apply :func:`make_writable` to a directory tree (symlinks untouched).

    :param root: Directory.
    """

    make_writable(root)
    for root_str, dirs, files in os.walk(root):
        for name in [*dirs, *files]:
            p: pathlib.Path = pathlib.Path(root_str) / name
            if p.is_symlink() is False:
                make_writable(p)


def stage_source(
    *,
    source_root: pathlib.Path,
    layout: OutputLayout,
    extra_dirs: tuple[str, ...] | list[str],
    logger: logging.Logger,
) -> CopyStats:
    """Copy the source tree's ``bin/`` and ``lib/`` (dereferenced) and extra directories.

    ``bin/`` and ``lib/`` entries are copied with symlinks resolved. Extra
    directories are copied verbatim, symlinks included.

    :param source_root: Pre-built source tree.
    :param layout: Output layout.
    :param extra_dirs: Extra directory names relative to ``source_root``.
    :param logger: Logger for progress output.
    :returns: Copy statistics.
    """

    files_copied: int = 0
    bytes_copied: int = 0

    for src_area, dst_area in ((source_root / "bin", layout.bin_dir), (source_root / "lib", layout.lib_dir)):
        if src_area.is_dir() is False:
            continue
        dst_area.mkdir(parents=True, exist_ok=True)
        for child in sorted(src_area.iterdir()):
            if child.exists() is False:
                logger.debug(f"portable-bundle: skipping dangling symlink {child}")
                continue
            dest: pathlib.Path = dst_area / child.name
            if child.is_dir() is True:
                shutil.copytree(child, dest, symlinks=False, ignore_dangling_symlinks=True, dirs_exist_ok=True)
                for p in dest.rglob("*"):
                    if p.is_file() is True:
                        files_copied += 1
                        bytes_copied += p.stat().st_size
            else:
                shutil.copy2(child, dest)
                files_copied += 1
                bytes_copied += dest.stat().st_size
        make_tree_writable(dst_area)

    for name, dst_extra in zip(extra_dirs, layout.extra_dirs):
        src_extra: pathlib.Path = source_root / name
        if src_extra.is_dir() is False:
            logger.warning(f"portable-bundle: extra directory not found in source: {name}")
            continue
        shutil.copytree(src_extra, dst_extra, symlinks=True, dirs_exist_ok=True)
        for p in dst_extra.rglob("*"):
            if p.is_file() is True and p.is_symlink() is False:
                files_copied += 1
                bytes_copied += p.stat().st_size
        make_tree_writable(dst_extra)

    return CopyStats(files_copied=files_copied, bytes_copied=bytes_copied)


def staged_files(layout: OutputLayout) -> list[pathlib.Path]:
    """List every regular (non-symlink) file currently in the output tree.

    :param layout: Output layout.
    :returns: Sorted file paths.
    """

    out: list[pathlib.Path] = []
    if layout.root.is_dir() is False:
        return out
    for root_str, dirs, files in os.walk(layout.root):
        dirs.sort()
        for name in sorted(files):
            p: pathlib.Path = pathlib.Path(root_str) / name
            if p.is_symlink() is False and p.is_file() is True:
                out.append(p)
    return out
