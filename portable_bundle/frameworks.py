"""Framework layout reconstruction.

Tracing copies framework binaries flat into the shared-library area
(``lib/QtCore``). Once tracing is complete, each one is moved back under its
recorded ``<Name>.framework/Versions/<V>/<Name>`` fragment, with the usual
``Versions/Current`` alias and top-level symlink.
"""

import logging
import os
import pathlib

from portable_bundle.registry import FrameworkMapping


def _version_parts(fragment: str) -> tuple[str, str | None]:
    """Split a fragment into its framework directory and version name.

    :param fragment: e.g. ``QtCore.framework/Versions/A/QtCore``.
    :returns: ``("QtCore.framework", "A")``; the version is ``None`` for
        shallow bundles.
    """

    parts: list[str] = fragment.split("/")
    version: str | None = None
    if len(parts) >= 4 and parts[1] == "Versions":
        version = parts[2]
    return (parts[0], version)


def reconstruct_frameworks(
    *,
    lib_dir: pathlib.Path,
    frameworks: FrameworkMapping,
    logger: logging.Logger | None = None,
) -> list[pathlib.Path]:
    """Rebuild nested framework directories from flat copies.

    Only entries that are still a flat regular file, and whose framework
    directory does not exist yet, are touched; calling this again is a no-op.

    :param lib_dir: Shared-library area.
    :param frameworks: Recorded name to fragment mapping.
    :param logger: Optional logger.
    :returns: The framework directories that were created.
    """

    if logger is None:
        logger = logging.getLogger("portable_bundle")

    rebuilt: list[pathlib.Path] = []
    for name, fragment in frameworks.items():
        flat: pathlib.Path = lib_dir / name
        if flat.is_symlink() is True or flat.is_file() is False:
            continue

        top_name, version = _version_parts(fragment)
        top: pathlib.Path = lib_dir / top_name
        if top.exists() is True or top.is_symlink() is True:
            continue

        dest: pathlib.Path = lib_dir / fragment
        dest.parent.mkdir(parents=True, exist_ok=True)
        os.replace(flat, dest)

        if version is not None:
            versions_dir: pathlib.Path = top / "Versions"
            current: pathlib.Path = versions_dir / "Current"
            if current.is_symlink() is False and current.exists() is False:
                os.symlink(version, current)

            binary_name: str = dest.name
            top_link: pathlib.Path = top / binary_name
            if top_link.is_symlink() is False and top_link.exists() is False:
                os.symlink(f"Versions/Current/{binary_name}", top_link)

        logger.info(f"portable-bundle: rebuilt framework {top_name}")
        rebuilt.append(top)

    return rebuilt
