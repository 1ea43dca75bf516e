"""fossilize.

A build utility that turns a Node.js application into standalone executables
for one or more ``<os>-<arch>`` targets by injecting an application blob into
prebuilt Node.js runtime binaries.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.4.1"
