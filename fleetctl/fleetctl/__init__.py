"""Update-Fleet CLI package.

This package contains the ``update-fleet`` command-line interface.
"""

from importlib.metadata import version as get_package_version

__version__ = get_package_version("update-fleet")

__all__ = ["__version__"]
