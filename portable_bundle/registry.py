"""Shared tracing state.

:class:`LibraryRegistry` guarantees that each canonical library path is
visited (classified, copied and traced) at most once. :class:`FrameworkMapping`
remembers where framework-style libraries came from so their nested layout can
be rebuilt and referenced later.

Both are plain objects passed by reference between phases. They are guarded
by a lock so that independent roots may be traced from several threads, and
are frozen before rewriting starts.
"""

from dataclasses import dataclass
import threading


class RegistryFrozenError(RuntimeError):
    """Raised when tracing state is mutated after it was frozen."""


@dataclass(slots=True)
class LibraryRecord:
    """What the tracer decided about one real library path.

    :ivar real_path: Canonical (symlink-free) source path.
    :ivar classification: ``system``, ``host``, ``bundled`` or ``pending``.
    :ivar copied: Whether the file was copied into the shared-library area.
    :ivar name: Bare name the library was first referenced by.
    """

    real_path: str
    classification: str
    copied: bool = False
    name: str = ""


PENDING: str = "pending"
BUNDLED: str = "bundled"


class LibraryRegistry:
    """Map of canonical real path to :class:`LibraryRecord`."""

    def __init__(self) -> None:
        self._lock: threading.Lock = threading.Lock()
        self._records: dict[str, LibraryRecord] = {}
        self._by_name: dict[str, str] = {}
        self._frozen: bool = False

    def claim(self, real_path: str) -> bool:
        """Atomically check-and-mark a real path as visited.

        :param real_path: Canonical path.
        :returns: ``True`` for the first caller only.
        :raises RegistryFrozenError: If the registry is frozen.
        """

        with self._lock:
            if self._frozen is True:
                raise RegistryFrozenError(f"registry is frozen; cannot claim {real_path}")
            if real_path in self._records:
                return False
            self._records[real_path] = LibraryRecord(real_path=real_path, classification=PENDING)
            return True

    def settle(
        self,
        real_path: str,
        classification: str,
        *,
        copied: bool = False,
        name: str | None = None,
    ) -> None:
        """Record the outcome for a claimed path.

        :param real_path: Canonical path previously passed to :meth:`claim`.
        :param classification: Final classification.
        :param copied: Whether the library was copied.
        :param name: Bare name the library was referenced by, if any.
        """

        with self._lock:
            if self._frozen is True:
                raise RegistryFrozenError(f"registry is frozen; cannot settle {real_path}")
            rec: LibraryRecord | None = self._records.get(real_path)
            if rec is None:
                rec = LibraryRecord(real_path=real_path, classification=classification)
                self._records[real_path] = rec
            rec.classification = classification
            rec.copied = copied
            if name is not None:
                if len(rec.name) == 0:
                    rec.name = name
                self._by_name.setdefault(name, real_path)

    def get(self, real_path: str) -> LibraryRecord | None:
        with self._lock:
            return self._records.get(real_path)

    def classification_for(self, name: str) -> str | None:
        """Look up the cached classification of a library by the name it was referenced by.

        :param name: Bare library name.
        :returns: The settled classification, or ``None`` if the name was never traced.
        """

        with self._lock:
            real_path: str | None = self._by_name.get(name)
            if real_path is None:
                return None
            rec: LibraryRecord = self._records[real_path]
            if rec.classification == PENDING:
                return None
            return rec.classification

    def __contains__(self, real_path: object) -> bool:
        with self._lock:
            return real_path in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def records(self) -> list[LibraryRecord]:
        """Return a snapshot of all records, sorted by path."""

        with self._lock:
            return [self._records[k] for k in sorted(self._records)]

    def copied_paths(self) -> list[str]:
        """Return the real paths that were copied, sorted."""

        return [r.real_path for r in self.records() if r.copied is True]

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen


class FrameworkMapping:
    """Bare library name to its ``<Name>.framework/...`` relative fragment.

    The first recording for a name wins.
    """

    def __init__(self) -> None:
        self._lock: threading.Lock = threading.Lock()
        self._fragments: dict[str, str] = {}
        self._frozen: bool = False

    def record(self, name: str, fragment: str) -> bool:
        """Remember the fragment for ``name``.

        :param name: Bare library name (e.g. ``QtCore``).
        :param fragment: Relative fragment (e.g. ``QtCore.framework/Versions/A/QtCore``).
        :returns: ``True`` if this call added the entry.
        :raises RegistryFrozenError: If the mapping is frozen.
        """

        with self._lock:
            if self._frozen is True:
                raise RegistryFrozenError(f"framework mapping is frozen; cannot record {name}")
            if name in self._fragments:
                return False
            self._fragments[name] = fragment
            return True

    def get(self, name: str) -> str | None:
        with self._lock:
            return self._fragments.get(name)

    def items(self) -> list[tuple[str, str]]:
        with self._lock:
            return sorted(self._fragments.items())

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._fragments

    def __len__(self) -> int:
        with self._lock:
            return len(self._fragments)

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True


def framework_fragment(path: str) -> str | None:
    """Extract the ``<Name>.framework/...`` fragment from a library path.

    ``/opt/qt/lib/QtCore.framework/Versions/A/QtCore`` yields
    ``QtCore.framework/Versions/A/QtCore``.

    :param path: Library path.
    :returns: The fragment, or ``None`` if no component ends in ``.framework``.
    """

    parts: list[str] = path.split("/")
    for i, part in enumerate(parts[:-1]):
        if part.endswith(".framework") is True and len(part) > len(".framework"):
            return "/".join(parts[i:])
    return None
