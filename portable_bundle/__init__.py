"""portable-bundle.

A small build utility that turns a pre-built executable/library tree into a
relocatable directory: it traces shared-library dependencies across a known set
of candidate roots, copies what must ship, and rewrites every binary's linkage
metadata to relative references.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
