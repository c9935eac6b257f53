"""Binary format inspection.

Identifies ELF and Mach-O files by content and extracts the linkage metadata
the tracer, rewriter and verifier work with. ELF files are parsed directly from
their program headers and dynamic section; Mach-O files (thin or fat) are read
with :mod:`macholib`.

Nothing here raises for bad input: a file that cannot be read or parsed is
reported as not inspectable by returning ``None``.
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import struct
from typing import Iterator

from macholib.MachO import MachO
from macholib.mach_o import (
    LC_ID_DYLIB,
    LC_LAZY_LOAD_DYLIB,
    LC_LOAD_DYLIB,
    LC_LOAD_UPWARD_DYLIB,
    LC_LOAD_WEAK_DYLIB,
    LC_REEXPORT_DYLIB,
    LC_RPATH,
    load_command,
)
from macholib.ptypes import sizeof


FORMAT_ELF: str = "elf"
FORMAT_MACHO: str = "macho"
FORMAT_OTHER: str = "other"

_ELF_MAGIC: bytes = b"\x7fELF"
_MACHO_THIN_MAGICS: frozenset[bytes] = frozenset(
    {
        b"\xfe\xed\xfa\xce",
        b"\xce\xfa\xed\xfe",
        b"\xfe\xed\xfa\xcf",
        b"\xcf\xfa\xed\xfe",
    }
)
_MACHO_FAT_MAGIC: bytes = b"\xca\xfe\xba\xbe"
_MACHO_FAT_MAGIC_64: bytes = b"\xca\xfe\xba\xbf"

# Java class files share the fat magic; their "arch count" is the class file
# version, which is always well above any real slice count.
_MAX_FAT_ARCHS: int = 30

_PT_LOAD: int = 1
_PT_DYNAMIC: int = 2
_PT_INTERP: int = 3

_DT_NULL: int = 0
_DT_NEEDED: int = 1
_DT_STRTAB: int = 5
_DT_STRSZ: int = 10
_DT_SONAME: int = 14
_DT_RPATH: int = 15
_DT_RUNPATH: int = 29

_DYLIB_LOAD_COMMANDS: frozenset[int] = frozenset(
    {
        LC_LOAD_DYLIB,
        LC_LOAD_WEAK_DYLIB,
        LC_REEXPORT_DYLIB,
        LC_LOAD_UPWARD_DYLIB,
        LC_LAZY_LOAD_DYLIB,
    }
)

_logger: logging.Logger = logging.getLogger("portable_bundle")


@dataclass(frozen=True, slots=True)
class BinaryInfo:
    """Linkage metadata of one binary.

    :ivar path: File the metadata was read from.
    :ivar format: ``elf`` or ``macho``.
    :ivar dependencies: Declared dependency references, in load order.
    :ivar run_paths: Embedded run-path entries, in order.
    :ivar identity: Mach-O install name (``LC_ID_DYLIB``), if any.
    :ivar interpreter: ELF loader path (``PT_INTERP``), if any.
    :ivar soname: ELF ``DT_SONAME``, if any.
    """

    path: pathlib.Path
    format: str
    dependencies: tuple[str, ...]
    run_paths: tuple[str, ...]
    identity: str | None = None
    interpreter: str | None = None
    soname: str | None = None


def sniff_format(path: pathlib.Path) -> str:
    """Identify a file's binary format from its leading bytes.

    :param path: File to check.
    :returns: ``elf``, ``macho`` or ``other`` (also for unreadable files).
    """

    try:
        with open(path, "rb") as f:
            head: bytes = f.read(8)
    except OSError:
        return FORMAT_OTHER

    return _format_from_head(head)


def _format_from_head(head: bytes) -> str:
    """Identify a binary format from the first (up to) eight bytes.

    :param head: Leading file bytes.
    :returns: ``elf``, ``macho`` or ``other``.
    """

    if len(head) < 4:
        return FORMAT_OTHER
    magic: bytes = head[0:4]
    if magic == _ELF_MAGIC:
        return FORMAT_ELF
    if magic in _MACHO_THIN_MAGICS:
        return FORMAT_MACHO
    if magic == _MACHO_FAT_MAGIC or magic == _MACHO_FAT_MAGIC_64:
        if len(head) < 8:
            return FORMAT_OTHER
        nfat_arch: int = struct.unpack_from(">I", head, 4)[0]
        if nfat_arch > 0 and nfat_arch < _MAX_FAT_ARCHS:
            return FORMAT_MACHO
    return FORMAT_OTHER


def inspect_binary(path: pathlib.Path) -> BinaryInfo | None:
    """Read the linkage metadata of an ELF or Mach-O file.

    :param path: File to inspect.
    :returns: Metadata, or ``None`` if the file is not an inspectable binary.
    """

    fmt: str = sniff_format(path)
    if fmt == FORMAT_ELF:
        return _inspect_elf(path)
    if fmt == FORMAT_MACHO:
        return _inspect_macho(path)
    return None


def iter_binaries(root: pathlib.Path) -> Iterator[BinaryInfo]:
    """Yield metadata for every inspectable regular file under ``root``.

    Symlinks are skipped so each binary is seen once. Order is deterministic.

    :param root: Directory to walk.
    :returns: Iterator of :class:`BinaryInfo`.
    """

    for root_str, dirs, files in os.walk(root):
        dirs.sort()
        for name in sorted(files):
            p: pathlib.Path = pathlib.Path(root_str) / name
            if p.is_symlink() is True or p.is_file() is False:
                continue
            info: BinaryInfo | None = inspect_binary(p)
            if info is not None:
                yield info


def _inspect_elf(path: pathlib.Path) -> BinaryInfo | None:
    """Parse an ELF file's interpreter and dynamic section.

    :param path: ELF file.
    :returns: Metadata, or ``None`` if the file is truncated or malformed.
    """

    try:
        data: bytes = path.read_bytes()
    except OSError as e:
        _logger.debug(f"portable-bundle: cannot read {path}: {e}")
        return None

    try:
        return _parse_elf(path, data)
    except (struct.error, IndexError, ValueError) as e:
        _logger.debug(f"portable-bundle: malformed ELF {path}: {e}")
        return None


def _parse_elf(path: pathlib.Path, data: bytes) -> BinaryInfo | None:
    """Extract ELF linkage metadata from raw bytes.

    Supports 32- and 64-bit files in either byte order.

    :param path: Source path (recorded in the result).
    :param data: File bytes.
    :returns: Metadata, or ``None`` for an unsupported ELF class/encoding.
    :raises struct.error: If a header or table lies outside ``data``.
    """

    if len(data) < 52:
        return None

    ei_class: int = data[4]
    ei_data: int = data[5]
    if ei_data == 1:
        end: str = "<"
    elif ei_data == 2:
        end = ">"
    else:
        return None

    is64: bool
    if ei_class == 2:
        is64 = True
        e_phoff: int = struct.unpack_from(end + "Q", data, 32)[0]
        e_phentsize: int = struct.unpack_from(end + "H", data, 54)[0]
        e_phnum: int = struct.unpack_from(end + "H", data, 56)[0]
    elif ei_class == 1:
        is64 = False
        e_phoff = struct.unpack_from(end + "I", data, 28)[0]
        e_phentsize = struct.unpack_from(end + "H", data, 42)[0]
        e_phnum = struct.unpack_from(end + "H", data, 44)[0]
    else:
        return None

    load_segs: list[tuple[int, int, int]] = []
    dyn_off: int | None = None
    dyn_size: int | None = None
    interpreter: str | None = None

    for i in range(e_phnum):
        ph_base: int = e_phoff + i * e_phentsize
        p_type: int = struct.unpack_from(end + "I", data, ph_base)[0]
        if is64 is True:
            p_offset: int = struct.unpack_from(end + "Q", data, ph_base + 8)[0]
            p_vaddr: int = struct.unpack_from(end + "Q", data, ph_base + 16)[0]
            p_filesz: int = struct.unpack_from(end + "Q", data, ph_base + 32)[0]
        else:
            p_offset = struct.unpack_from(end + "I", data, ph_base + 4)[0]
            p_vaddr = struct.unpack_from(end + "I", data, ph_base + 8)[0]
            p_filesz = struct.unpack_from(end + "I", data, ph_base + 16)[0]

        if p_type == _PT_LOAD:
            load_segs.append((p_vaddr, p_filesz, p_offset))
        elif p_type == _PT_DYNAMIC:
            dyn_off = p_offset
            dyn_size = p_filesz
        elif p_type == _PT_INTERP:
            raw: bytes = data[p_offset : p_offset + p_filesz]
            interpreter = raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")

    if dyn_off is None or dyn_size is None:
        # Statically linked.
        return BinaryInfo(
            path=path,
            format=FORMAT_ELF,
            dependencies=(),
            run_paths=(),
            interpreter=interpreter,
        )

    dt_strtab: int | None = None
    dt_strsz: int | None = None
    soname_off: int | None = None
    needed_offs: list[int] = []
    rpath_offs: list[int] = []

    dyn_fmt: str = end + ("qQ" if is64 is True else "iI")
    dyn_entsize: int = struct.calcsize(dyn_fmt)
    pos: int = dyn_off
    dyn_end: int = min(dyn_off + dyn_size, len(data))
    while pos + dyn_entsize <= dyn_end:
        d_tag, d_val = struct.unpack_from(dyn_fmt, data, pos)
        if d_tag == _DT_NULL:
            break
        if d_tag == _DT_NEEDED:
            needed_offs.append(int(d_val))
        elif d_tag == _DT_STRTAB:
            dt_strtab = int(d_val)
        elif d_tag == _DT_STRSZ:
            dt_strsz = int(d_val)
        elif d_tag == _DT_SONAME:
            soname_off = int(d_val)
        elif d_tag == _DT_RPATH or d_tag == _DT_RUNPATH:
            rpath_offs.append(int(d_val))
        pos += dyn_entsize

    if dt_strtab is None or dt_strsz is None:
        return BinaryInfo(
            path=path,
            format=FORMAT_ELF,
            dependencies=(),
            run_paths=(),
            interpreter=interpreter,
        )

    strtab_off: int | None = None
    for vaddr, filesz, off0 in load_segs:
        if dt_strtab >= vaddr and dt_strtab < vaddr + filesz:
            strtab_off = off0 + (dt_strtab - vaddr)
            break
    if strtab_off is None or strtab_off < 0 or strtab_off >= len(data):
        return None

    strtab: bytes = data[strtab_off : min(strtab_off + dt_strsz, len(data))]

    def read_cstr(off: int) -> str:
        if off < 0 or off >= len(strtab):
            return ""
        stop: int = strtab.find(b"\x00", off)
        if stop < 0:
            stop = len(strtab)
        return strtab[off:stop].decode("utf-8", errors="replace")

    needed: list[str] = []
    for off in needed_offs:
        s: str = read_cstr(off)
        if len(s) > 0:
            needed.append(s)

    run_paths: list[str] = []
    for off in rpath_offs:
        for entry in read_cstr(off).split(":"):
            if len(entry) > 0:
                run_paths.append(entry)

    soname: str | None = None
    if soname_off is not None:
        soname = read_cstr(soname_off) or None

    return BinaryInfo(
        path=path,
        format=FORMAT_ELF,
        dependencies=tuple(needed),
        run_paths=tuple(run_paths),
        interpreter=interpreter,
        soname=soname,
    )


def _lc_string(cmd: object, data: bytes, offset: int) -> str:
    """Decode a load-command string (``lc_str``) from a command's trailing data.

    :param cmd: The specific command structure.
    :param data: Bytes following the command structure.
    :param offset: The ``lc_str`` offset, relative to the start of the command.
    :returns: Decoded string.
    """

    ofs: int = offset - sizeof(load_command) - sizeof(cmd.__class__)
    if ofs < 0:
        ofs = 0
    raw: bytes = data[ofs:]
    return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace")


def _inspect_macho(path: pathlib.Path) -> BinaryInfo | None:
    """Read Mach-O dependencies, install name and run-paths with macholib.

    Fat binaries list the same references once per architecture slice; those
    are collapsed, keeping first-seen order.

    :param path: Mach-O file.
    :returns: Metadata, or ``None`` if macholib cannot parse the file.
    """

    try:
        macho: MachO = MachO(str(path))
    except (OSError, ValueError, struct.error, EOFError) as e:
        _logger.debug(f"portable-bundle: malformed Mach-O {path}: {e}")
        return None

    deps: list[str] = []
    rpaths: list[str] = []
    identity: str | None = None

    for header in macho.headers:
        for lc, cmd, data in header.commands:
            if lc.cmd in _DYLIB_LOAD_COMMANDS:
                dep: str = _lc_string(cmd, data, int(cmd.name))
                if dep not in deps:
                    deps.append(dep)
            elif lc.cmd == LC_ID_DYLIB:
                if identity is None:
                    identity = _lc_string(cmd, data, int(cmd.name))
            elif lc.cmd == LC_RPATH:
                rpath: str = _lc_string(cmd, data, int(cmd.path))
                if rpath not in rpaths:
                    rpaths.append(rpath)

    return BinaryInfo(
        path=path,
        format=FORMAT_MACHO,
        dependencies=tuple(deps),
        run_paths=tuple(rpaths),
        identity=identity,
    )
