"""Library classification policy.

Decides, from a bare library file name alone, whether a dependency belongs to
the host operating system (``system``), is expected to be provided by the host
installation (``host``), or is a candidate for bundling (``other``).

Patterns are shell-style globs where ``*`` is the only wildcard. Matching is
case-sensitive and always against the whole file name.
"""

from dataclasses import dataclass
import os
import re


SYSTEM: str = "system"
HOST: str = "host"
OTHER: str = "other"

PLATFORM_LINUX: str = "linux"
PLATFORM_DARWIN: str = "darwin"

# macOS system libraries, provided by the OS at /usr/lib.
DEFAULT_SYSTEM_LIBS_DARWIN: tuple[str, ...] = (
    "libSystem.B.dylib",
    "libc++.*.dylib",
)

# Based on the AppImage exclude list.
DEFAULT_SYSTEM_LIBS_LINUX: tuple[str, ...] = (
    # glibc; kernel interface, must match the host
    "ld-linux*.so*",
    "libanl.so*",
    "libBrokenLocale.so*",
    "libc.so*",
    "libdl.so*",
    "libm.so*",
    "libmvec.so*",
    "libnss_compat.so*",
    "libnss_dns.so*",
    "libnss_files.so*",
    "libnss_hesiod.so*",
    "libnss_nisplus.so*",
    "libnss_nis.so*",
    "libpthread.so*",
    "libresolv.so*",
    "librt.so*",
    "libthread_db.so*",
    "libutil.so*",
    # C++ runtime
    "libstdc++.so*",
    "libgcc_s.so*",
    # GPU / graphics driver interface; must match host hardware
    "libGL.so*",
    "libEGL.so*",
    "libGLX.so*",
    "libGLdispatch.so*",
    "libOpenGL.so*",
    "libGLESv2.so*",
    "libdrm.so*",
    "libglapi.so*",
    "libgbm.so*",
    "libvulkan.so*",
    # Display server protocol
    "libX11.so*",
    "libX11-xcb.so*",
    "libxcb.so*",
    "libxcb-dri2.so*",
    "libxcb-dri3.so*",
    "libwayland-client.so*",
    # Audio
    "libasound.so*",
    "libjack.so*",
    "libpipewire-*.so*",
    # Font rendering; needs the host font config/cache
    "libfontconfig.so*",
    "libfreetype.so*",
    "libharfbuzz.so*",
    "libfribidi.so*",
)

# Locations that exist on every host of the target platform.
SYSTEM_PATH_PREFIXES: tuple[str, ...] = (
    "/System/Library/",
    "/usr/lib/",
    "/lib/",
    "/lib64/",
    "/usr/lib64/",
)

# Tokens the dynamic loader resolves relative to the binary (or its search path).
RELATIVE_ROOT_TOKENS: tuple[str, ...] = (
    "@executable_path/",
    "@loader_path/",
    "@rpath/",
    "$ORIGIN",
    "${ORIGIN}",
)

_MINOR_PATCH_RE: re.Pattern[str] = re.compile(r"(\.[0-9]+)\.[0-9.]+(\.[A-Za-z][A-Za-z0-9]*)$")


def compile_glob(pattern: str) -> re.Pattern[str]:
    """Compile a ``*``-only glob into an anchored regular expression.

    :param pattern: Glob pattern (e.g. ``libGL.so*``).
    :returns: Compiled pattern matching whole names.
    """

    pieces: list[str] = [re.escape(piece) for piece in pattern.split("*")]
    return re.compile("^" + ".*".join(pieces) + "$", re.DOTALL)


def default_system_patterns(platform: str) -> tuple[str, ...]:
    """Return the built-in system library patterns for a platform.

    :param platform: ``linux`` or ``darwin``.
    :returns: Default patterns.
    """

    if platform == PLATFORM_DARWIN:
        return DEFAULT_SYSTEM_LIBS_DARWIN
    return DEFAULT_SYSTEM_LIBS_LINUX


@dataclass(frozen=True, slots=True)
class ExclusionPolicy:
    """Compiled classification patterns.

    :ivar system_patterns: System glob patterns, in order.
    :ivar host_patterns: Host glob patterns, in order.
    :ivar system_regexes: Compiled ``system_patterns``.
    :ivar host_regexes: Compiled ``host_patterns``.
    """

    system_patterns: tuple[str, ...]
    host_patterns: tuple[str, ...]
    system_regexes: tuple[re.Pattern[str], ...]
    host_regexes: tuple[re.Pattern[str], ...]

    def classify(self, name: str) -> str:
        """Classify a bare library name.

        System patterns are checked first and a hit is final, so a name matching
        both lists is always ``system``.

        :param name: Bare file name (no directory part).
        :returns: ``system``, ``host`` or ``other``.
        """

        for rx in self.system_regexes:
            if rx.match(name) is not None:
                return SYSTEM
        for rx in self.host_regexes:
            if rx.match(name) is not None:
                return HOST
        return OTHER


def build_exclusion_policy(
    *,
    system_patterns: tuple[str, ...] | list[str] = (),
    host_patterns: tuple[str, ...] | list[str] = (),
    platform: str = PLATFORM_LINUX,
    use_defaults: bool = True,
) -> ExclusionPolicy:
    """Build an :class:`ExclusionPolicy`, compiling every pattern once.

    :param system_patterns: Caller-supplied system patterns.
    :param host_patterns: Caller-supplied host patterns.
    :param platform: Target platform, selects the built-in defaults.
    :param use_defaults: Union the built-in system defaults ahead of the caller's.
    :returns: Compiled policy.
    """

    all_system: list[str] = []
    if use_defaults is True:
        all_system.extend(default_system_patterns(platform))
    for pat in system_patterns:
        if len(pat) > 0 and pat not in all_system:
            all_system.append(pat)

    all_host: list[str] = [pat for pat in host_patterns if len(pat) > 0]

    return ExclusionPolicy(
        system_patterns=tuple(all_system),
        host_patterns=tuple(all_host),
        system_regexes=tuple(compile_glob(p) for p in all_system),
        host_regexes=tuple(compile_glob(p) for p in all_host),
    )


def is_portable_ref(ref: str) -> bool:
    """Check whether a linkage reference survives relocation of the tree.

    Portable references are relative-root tokens, canonical system paths,
    empty strings, and bare names without a path separator.

    :param ref: Dependency, identity or run-path entry.
    :returns: ``True`` if portable.
    """

    if len(ref) == 0:
        return True
    if ref.startswith(RELATIVE_ROOT_TOKENS) is True:
        return True
    if ref.startswith(SYSTEM_PATH_PREFIXES) is True:
        return True
    return "/" not in ref


def is_portable_elf_run_path(entry: str) -> bool:
    """Check whether an ELF run-path entry survives relocation of the tree.

    Only origin-relative entries, canonical system directories and empty
    entries qualify. A bare relative entry resolves against the working
    directory, not the binary.

    :param entry: One colon-separated run-path entry.
    :returns: ``True`` if portable.
    """

    if len(entry) == 0:
        return True
    for token in ("$ORIGIN", "${ORIGIN}"):
        if entry == token or entry.startswith(token + "/") is True:
            return True
    return entry.startswith(SYSTEM_PATH_PREFIXES) is True


def normalize_system_name(name: str) -> str:
    """Strip a trailing minor/patch version from a library name.

    ``libc++.1.0.dylib`` becomes ``libc++.1.dylib``; ``libSystem.B.dylib`` is
    returned unchanged.

    :param name: Bare library name.
    :returns: Normalized name.
    """

    return _MINOR_PATCH_RE.sub(r"\1\2", name)


def system_library_path(name: str) -> str:
    """Map a library name to its canonical macOS system path.

    :param name: Bare library name.
    :returns: Absolute path under ``/usr/lib``.
    """

    return f"/usr/lib/{normalize_system_name(name)}"


def system_interpreter_path(name: str) -> str:
    """Map an ELF loader name to the standard host location.

    :param name: Bare loader name (e.g. ``ld-linux-x86-64.so.2``).
    :returns: ``/lib64/<name>`` when that exists on this machine, else ``/lib/<name>``.
    """

    lib64: str = f"/lib64/{name}"
    if os.path.exists(lib64) is True:
        return lib64
    return f"/lib/{name}"
