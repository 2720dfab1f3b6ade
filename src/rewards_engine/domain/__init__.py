"""Contracts consumed from collaborators outside the rewards core."""

from .auth import AuthContext  # noqa: F401
from .catalog import CatalogLookup, ProductSnapshot, SqlCatalogLookup  # noqa: F401
