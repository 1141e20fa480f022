from .entries import Entry  # noqa: F401
from .exceptions import (  # noqa: F401
    LdapPagerError,
    PageControlError,
    SearchExecutionError,
)
from .search import SearchInterface, SearchIterator, SearchPreloaded  # noqa: F401

__version__ = "1.0.0"
