"""Synthetic ELF / Mach-O files and fake link editors for tests.

The byte layouts are minimal but well-formed enough for both the built-in ELF
parser and macholib: no sections, one load segment covering the whole file.
"""

import os
import pathlib
import struct

from portable_bundle.binary import inspect_binary

# ELF
_PT_LOAD = 1
_PT_DYNAMIC = 2
_PT_INTERP = 3
_DT_NULL = 0
_DT_NEEDED = 1
_DT_STRTAB = 5
_DT_STRSZ = 10
_DT_SONAME = 14
_DT_RUNPATH = 29

_EHDR_FMT = "<16sHHIQQQIHHHHHH"
_PHDR_FMT = "<IIQQQQQQ"
_DYN_FMT = "<qQ"

# Mach-O
MH_EXECUTE = 0x2
MH_DYLIB = 0x6
_MH_MAGIC_64 = 0xFEEDFACF
_CPU_TYPE_X86_64 = 0x01000007
_CPU_TYPE_ARM64 = 0x0100000C
_LC_LOAD_DYLIB = 0xC
_LC_ID_DYLIB = 0xD
_LC_RPATH = 0x8000001C
_MACH_HEADER_64_FMT = "<IiiIIIII"


def elf_bytes(needed=(), runpath=None, interpreter=None, soname=None, payload=b"", static=False):
    """Build a 64-bit little-endian ELF image."""

    strtab = bytearray(b"\x00")

    def add_str(s):
        off = len(strtab)
        strtab.extend(s.encode("utf-8") + b"\x00")
        return off

    dyn_entries = []
    if static is False:
        for name in needed:
            dyn_entries.append((_DT_NEEDED, add_str(name)))
        if soname is not None:
            dyn_entries.append((_DT_SONAME, add_str(soname)))
        if runpath is not None:
            dyn_entries.append((_DT_RUNPATH, add_str(runpath)))

    phnum = 1 + (1 if interpreter is not None else 0) + (0 if static is True else 1)
    ehdr_size = struct.calcsize(_EHDR_FMT)
    phdr_size = struct.calcsize(_PHDR_FMT)

    strtab_off = ehdr_size + phnum * phdr_size
    interp_bytes = b"" if interpreter is None else interpreter.encode("utf-8") + b"\x00"
    interp_off = strtab_off + len(strtab)
    dyn_off = interp_off + len(interp_bytes)

    dyn = b""
    if static is False:
        dyn_entries.append((_DT_STRTAB, strtab_off))
        dyn_entries.append((_DT_STRSZ, len(strtab)))
        dyn_entries.append((_DT_NULL, 0))
        dyn = b"".join(struct.pack(_DYN_FMT, tag, val) for tag, val in dyn_entries)

    payload_off = dyn_off + len(dyn)
    total = payload_off + len(payload)

    ident = b"\x7fELF" + bytes([2, 1, 1]) + b"\x00" * 9
    ehdr = struct.pack(
        _EHDR_FMT, ident, 3, 0x3E, 1, 0, ehdr_size, 0, 0, ehdr_size, phdr_size, phnum, 0, 0, 0
    )

    phdrs = [struct.pack(_PHDR_FMT, _PT_LOAD, 5, 0, 0, 0, total, total, 0x1000)]
    if interpreter is not None:
        phdrs.append(
            struct.pack(_PHDR_FMT, _PT_INTERP, 4, interp_off, interp_off, interp_off, len(interp_bytes), len(interp_bytes), 1)
        )
    if static is False:
        phdrs.append(struct.pack(_PHDR_FMT, _PT_DYNAMIC, 6, dyn_off, dyn_off, dyn_off, len(dyn), len(dyn), 8))

    return ehdr + b"".join(phdrs) + bytes(strtab) + interp_bytes + dyn + payload


def elf_payload(data):
    """Return the trailing payload of an image built by :func:`elf_bytes`."""

    phoff = struct.unpack_from("<Q", data, 32)[0]
    phentsize = struct.unpack_from("<H", data, 54)[0]
    phnum = struct.unpack_from("<H", data, 56)[0]
    end = len(data)
    for i in range(phnum):
        fields = struct.unpack_from(_PHDR_FMT, data, phoff + i * phentsize)
        if fields[0] == _PT_DYNAMIC:
            end = fields[2] + fields[5]
    return data[end:]


def _pad8(b):
    return b + b"\x00" * ((8 - len(b) % 8) % 8)


def _dylib_command(cmd, name):
    s = _pad8(name.encode("utf-8") + b"\x00")
    return struct.pack("<IIIIII", cmd, 24 + len(s), 24, 2, 0x10000, 0x10000) + s


def _rpath_command(path):
    s = path.encode("utf-8") + b"\x00"
    # 12-byte fixed part; keep the whole command 8-byte aligned
    s += b"\x00" * ((8 - (12 + len(s)) % 8) % 8)
    return struct.pack("<III", _LC_RPATH, 12 + len(s), 12) + s


def macho_bytes(dependencies=(), identity=None, rpaths=(), filetype=None, payload=b"", cputype=_CPU_TYPE_X86_64):
    """Build a thin 64-bit little-endian Mach-O image."""

    if filetype is None:
        filetype = MH_DYLIB if identity is not None else MH_EXECUTE
    cmds = []
    if identity is not None:
        cmds.append(_dylib_command(_LC_ID_DYLIB, identity))
    for dep in dependencies:
        cmds.append(_dylib_command(_LC_LOAD_DYLIB, dep))
    for rpath in rpaths:
        cmds.append(_rpath_command(rpath))
    body = b"".join(cmds)
    header = struct.pack(_MACH_HEADER_64_FMT, _MH_MAGIC_64, cputype, 3, filetype, len(cmds), len(body), 0, 0)
    return header + body + payload


def fat_bytes(slices):
    """Wrap thin Mach-O images into a fat (universal) file."""

    align = 12
    header = struct.pack(">II", 0xCAFEBABE, len(slices))
    offset = 1 << align
    arch_entries = []
    blobs = []
    for i, blob in enumerate(slices):
        cputype = _CPU_TYPE_ARM64 if i % 2 == 1 else _CPU_TYPE_X86_64
        arch_entries.append(struct.pack(">iiIII", cputype, 0, offset, len(blob), align))
        blobs.append((offset, blob))
        offset += ((len(blob) >> align) + 1) << align
    out = bytearray(header + b"".join(arch_entries))
    for off, blob in blobs:
        out.extend(b"\x00" * (off - len(out)))
        out.extend(blob)
    return bytes(out)


def macho_filetype(data):
    return struct.unpack_from("<I", data, 12)[0]


def macho_payload(data):
    sizeofcmds = struct.unpack_from("<I", data, 20)[0]
    return data[struct.calcsize(_MACH_HEADER_64_FMT) + sizeofcmds:]


def write_file(path, data, mode=0o755):
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    os.chmod(path, mode)
    return path


class RecordingEditor:
    """Link editor that only records the calls it receives."""

    def __init__(self, ok=True):
        self.ok = ok
        self.calls = []

    def _record(self, *call):
        self.calls.append(call)
        return self.ok

    # Mach-O
    def change_dependency(self, path, old, new):
        return self._record("change", pathlib.Path(path).name, old, new)

    def set_identity(self, path, new):
        return self._record("id", pathlib.Path(path).name, new)

    def delete_rpath(self, path, rpath):
        return self._record("delete_rpath", pathlib.Path(path).name, rpath)

    def add_rpath(self, path, rpath):
        return self._record("add_rpath", pathlib.Path(path).name, rpath)

    # ELF
    def set_rpath(self, path, rpath):
        return self._record("set_rpath", pathlib.Path(path).name, rpath)

    def replace_needed(self, path, old, new):
        return self._record("replace_needed", pathlib.Path(path).name, old, new)

    def set_interpreter(self, path, interpreter):
        return self._record("set_interpreter", pathlib.Path(path).name, interpreter)

    def named(self, op):
        return [c for c in self.calls if c[0] == op]


class RewritingElfEditor(RecordingEditor):
    """ELF editor that regenerates fixture images with the requested change."""

    def _rebuild(self, path, needed=None, runpath=None, interpreter=None):
        path = pathlib.Path(path)
        info = inspect_binary(path)
        data = path.read_bytes()
        if runpath is None:
            runpath = ":".join(info.run_paths) if len(info.run_paths) > 0 else None
        path.write_bytes(
            elf_bytes(
                needed=info.dependencies if needed is None else needed,
                runpath=runpath,
                interpreter=info.interpreter if interpreter is None else interpreter,
                soname=info.soname,
                payload=elf_payload(data),
            )
        )

    def set_rpath(self, path, rpath):
        self._rebuild(path, runpath=rpath)
        return super().set_rpath(path, rpath)

    def replace_needed(self, path, old, new):
        info = inspect_binary(pathlib.Path(path))
        self._rebuild(path, needed=tuple(new if d == old else d for d in info.dependencies))
        return super().replace_needed(path, old, new)

    def set_interpreter(self, path, interpreter):
        self._rebuild(path, interpreter=interpreter)
        return super().set_interpreter(path, interpreter)


class RewritingMachOEditor(RecordingEditor):
    """Mach-O editor that regenerates thin fixture images with the requested change."""

    def _rebuild(self, path, dependencies=None, identity=None, rpaths=None):
        path = pathlib.Path(path)
        info = inspect_binary(path)
        data = path.read_bytes()
        path.write_bytes(
            macho_bytes(
                dependencies=info.dependencies if dependencies is None else dependencies,
                identity=info.identity if identity is None else identity,
                rpaths=info.run_paths if rpaths is None else rpaths,
                filetype=macho_filetype(data),
                payload=macho_payload(data),
            )
        )

    def change_dependency(self, path, old, new):
        info = inspect_binary(pathlib.Path(path))
        self._rebuild(path, dependencies=tuple(new if d == old else d for d in info.dependencies))
        return super().change_dependency(path, old, new)

    def set_identity(self, path, new):
        self._rebuild(path, identity=new)
        return super().set_identity(path, new)

    def delete_rpath(self, path, rpath):
        info = inspect_binary(pathlib.Path(path))
        self._rebuild(path, rpaths=tuple(r for r in info.run_paths if r != rpath))
        return super().delete_rpath(path, rpath)

    def add_rpath(self, path, rpath):
        info = inspect_binary(pathlib.Path(path))
        self._rebuild(path, rpaths=(*info.run_paths, rpath))
        return super().add_rpath(path, rpath)
