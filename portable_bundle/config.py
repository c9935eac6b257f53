"""Bundle configuration.

Settings come from one of two places: explicit arguments (the CLI or a
caller) or the environment variables the Nix derivation exports before it
runs the bundler. Either way they end up in one frozen :class:`BundleConfig`,
which every phase reads and none modifies.
"""

from dataclasses import dataclass
import os
import pathlib
import sys
from typing import Mapping

from portable_bundle.policy import PLATFORM_DARWIN, PLATFORM_LINUX


class ConfigError(ValueError):
    """Raised when bundle settings cannot be resolved."""


@dataclass(frozen=True, slots=True)
class BundleConfig:
    """Bundle configuration.

    :ivar source_root: Pre-built tree with ``bin/`` and ``lib/``.
    :ivar output_dir: Directory to create the bundle in.
    :ivar closure_paths: Candidate roots, in priority order.
    :ivar platform: ``linux`` or ``darwin``.
    :ivar system_patterns: Extra system library globs.
    :ivar host_patterns: Host-provided library globs.
    :ivar use_default_system_libs: Union the built-in system globs.
    :ivar extra_dirs: Source-relative directories to copy verbatim.
    :ivar warn_on_binary_data: Tolerate embedded store paths in binary data.
    :ivar store_prefix: Build-store path prefix that must not leak.
    """

    source_root: pathlib.Path
    output_dir: pathlib.Path
    closure_paths: tuple[pathlib.Path, ...]
    platform: str
    system_patterns: tuple[str, ...] = ()
    host_patterns: tuple[str, ...] = ()
    use_default_system_libs: bool = True
    extra_dirs: tuple[str, ...] = ()
    warn_on_binary_data: bool = False
    store_prefix: str = "/nix/store"


def resolve_bundle_config(
    *,
    source_root: pathlib.Path,
    output_dir: pathlib.Path,
    closure_paths: list[pathlib.Path] | tuple[pathlib.Path, ...],
    platform: str = "native",
    system_patterns: list[str] | tuple[str, ...] = (),
    host_patterns: list[str] | tuple[str, ...] = (),
    use_default_system_libs: bool = True,
    extra_dirs: list[str] | tuple[str, ...] = (),
    warn_on_binary_data: bool = False,
    store_prefix: str = "/nix/store",
) -> BundleConfig:
    """Resolve user-supplied settings into a :class:`~BundleConfig`.

    :param source_root: Pre-built source tree.
    :param output_dir: Output directory.
    :param closure_paths: Candidate roots.
    :param platform: ``native``, ``linux`` or ``darwin``.
    :param system_patterns: Extra system globs.
    :param host_patterns: Host globs.
    :param use_default_system_libs: Include the built-in system globs.
    :param extra_dirs: Extra directories to copy verbatim.
    :param warn_on_binary_data: Tolerate embedded store references.
    :param store_prefix: Build-store prefix.
    :returns: Resolved config.
    :raises ConfigError: If a value is invalid.
    """

    for name in extra_dirs:
        if pathlib.PurePosixPath(name).is_absolute() is True or ".." in pathlib.PurePosixPath(name).parts:
            raise ConfigError(f"Extra directory must be relative to the source root: {name!r}")

    prefix: str = store_prefix.rstrip("/")
    if len(prefix) > 0 and prefix.startswith("/") is False:
        raise ConfigError(f"Store prefix must be absolute: {store_prefix!r}")

    return BundleConfig(
        source_root=pathlib.Path(source_root).absolute(),
        output_dir=pathlib.Path(output_dir).absolute(),
        closure_paths=tuple(pathlib.Path(p) for p in closure_paths),
        platform=resolve_platform(platform),
        system_patterns=_clean_list(system_patterns),
        host_patterns=_clean_list(host_patterns),
        use_default_system_libs=use_default_system_libs,
        extra_dirs=_clean_list(extra_dirs),
        warn_on_binary_data=warn_on_binary_data,
        store_prefix=prefix,
    )


def resolve_platform(platform: str) -> str:
    """Normalize a platform flag.

    :param platform: ``native``, ``linux``, ``darwin`` (or ``macos``).
    :returns: ``linux`` or ``darwin``.
    :raises ConfigError: If the platform is not supported.
    """

    value: str = platform.strip().lower()
    if value == "native":
        value = sys.platform
    if value.startswith("linux") is True:
        return PLATFORM_LINUX
    if value == "darwin" or value == "macos":
        return PLATFORM_DARWIN
    raise ConfigError(f"Unsupported platform {platform!r}; expected native, linux or darwin.")


def parse_list(text: str) -> tuple[str, ...]:
    """Parse a newline-delimited list, dropping blank lines.

    :param text: List text.
    :returns: Entries, stripped.
    """

    return _clean_list(text.splitlines())


def read_list_file(path: pathlib.Path) -> tuple[str, ...]:
    """Read a newline-delimited list file.

    :param path: File to read.
    :returns: Entries.
    :raises ConfigError: If the file cannot be read.
    """

    try:
        text: str = pathlib.Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read list file {path}: {e}") from e
    return parse_list(text)


def config_from_environ(environ: Mapping[str, str] | None = None) -> BundleConfig:
    """Build a config from the variables exported by the surrounding build.

    ``DRV_PATH`` (source root), ``out`` (output), ``CLOSURE_PATHS`` (file
    listing candidate roots) are required; ``IS_DARWIN``, ``SYSTEM_LIBS``,
    ``HOST_LIBS``, ``EXTRA_DIRS``, ``WARN_ON_BINARY_DATA``,
    ``USE_DEFAULT_SYSTEM_LIBS`` and ``STORE_PREFIX`` are optional.

    :param environ: Environment mapping (defaults to ``os.environ``).
    :returns: Resolved config.
    :raises ConfigError: If a required variable is missing.
    """

    env: Mapping[str, str] = os.environ if environ is None else environ

    def required(name: str) -> str:
        value: str | None = env.get(name)
        if value is None or len(value) == 0:
            raise ConfigError(f"Missing required environment variable ${name}")
        return value

    source_root: str = required("DRV_PATH")
    output_dir: str = required("out")
    closure_file: str = required("CLOSURE_PATHS")

    platform: str = "native"
    if "IS_DARWIN" in env:
        platform = PLATFORM_DARWIN if _env_flag(env.get("IS_DARWIN")) is True else PLATFORM_LINUX

    return resolve_bundle_config(
        source_root=pathlib.Path(source_root),
        output_dir=pathlib.Path(output_dir),
        closure_paths=[pathlib.Path(p) for p in read_list_file(pathlib.Path(closure_file))],
        platform=platform,
        system_patterns=parse_list(env.get("SYSTEM_LIBS", "")),
        host_patterns=parse_list(env.get("HOST_LIBS", "")),
        use_default_system_libs=_env_flag(env.get("USE_DEFAULT_SYSTEM_LIBS", "1")),
        extra_dirs=parse_list(env.get("EXTRA_DIRS", "")),
        warn_on_binary_data=_env_flag(env.get("WARN_ON_BINARY_DATA", "0")),
        store_prefix=env.get("STORE_PREFIX", "/nix/store"),
    )


def _env_flag(value: str | None) -> bool:
    """Interpret a ``0``/``1`` style environment flag.

    :param value: Raw value.
    :returns: ``True`` for ``1``, ``true``, ``yes``, ``on``.
    """

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _clean_list(items: list[str] | tuple[str, ...]) -> tuple[str, ...]:
    out: list[str] = []
    for item in items:
        s: str = item.strip()
        if len(s) > 0:
            out.append(s)
    return tuple(out)
