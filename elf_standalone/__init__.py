"""elf-standalone.

A small build utility that bundles a dynamically linked ELF executable, its
shared libraries and the dynamic loader into a single self-extracting file.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
