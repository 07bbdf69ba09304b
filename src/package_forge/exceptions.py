"""Root exception for package_forge.

Note: Each subpackage defines its own family in its exceptions module; all of
them derive from ForgeError so callers can catch one type.
"""


class ForgeError(Exception):
    """Base exception for all package_forge operations."""
