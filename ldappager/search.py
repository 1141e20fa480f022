"""
Search result iterators.

:py:class:`SearchIterator` walks the results of an LDAP search one page at a
time using the Simple Paged Results control (RFC 2696), so that only one page
of entries is ever held in memory.  :py:class:`SearchPreloaded` offers the same
interface over a result list that has already been fetched.
"""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from ldap_filter import Filter

from .entries import Entry
from .exceptions import LdapPagerError, SearchExecutionError
from .typing import LDAPData, PageToken

if TYPE_CHECKING:
    from .connection import DirectoryConnection


logger = logging.getLogger(__name__)

#: The page size used when the caller does not ask for one
DEFAULT_PAGE_SIZE: int = 1000


class SearchInterface(ABC):
    """
    The interface shared by all search result iterators.

    Callers pull entries with :py:meth:`next` until it returns ``None``, or use
    the object as a regular Python iterator.
    """

    @abstractmethod
    def next(self) -> Entry | None:
        """
        Return the next entry in the result set.

        Returns:
            The next :py:class:`Entry`, or ``None`` once the results are
            exhausted.

        """

    @abstractmethod
    def reset(self) -> None:
        """
        Start over from the first entry of the result set.
        """

    @abstractmethod
    def free(self) -> None:
        """
        Release the buffered results now rather than at garbage collection.
        """

    def __iter__(self) -> "SearchInterface":
        return self

    def __next__(self) -> Entry:
        entry = self.next()
        if entry is None:
            raise StopIteration
        return entry


class SearchPreloaded(SearchInterface):
    """
    A search iterator over results that were loaded all at once.

    Args:
        entries: the raw ``(dn, attrs)`` tuples to iterate over

    """

    def __init__(self, entries: list[LDAPData]) -> None:
        self.entries: list[LDAPData] = list(entries)
        self.entries_position: int = 0

    def next(self) -> Entry | None:
        if self.entries_position >= len(self.entries):
            return None
        entry = self.entries[self.entries_position]
        self.entries_position += 1
        return Entry(entry)

    def reset(self) -> None:
        self.entries_position = 0

    def free(self) -> None:
        self.entries = []
        self.entries_position = 0

    def __len__(self) -> int:
        return len(self.entries)


class SearchIterator(SearchInterface):
    """
    Iterate over the results of an LDAP search without loading all of them.

    Entries are fetched from ``connection`` in pages of ``page_size``.  A new
    page is requested only when the previous one has been fully consumed, and
    constructing the iterator does not talk to the server at all: the first
    page is loaded on the first call to :py:meth:`next`.

    The iterator holds mutable paging state and is not safe to share between
    threads.  ``connection`` is borrowed: the caller keeps it open for as long
    as the iterator is in use.

    Example:
        .. code-block:: python

            search = SearchIterator(
                conn, "ou=people,dc=example,dc=com", "(objectClass=person)",
                attributes=["uid", "cn"], page_size=500
            )
            for entry in search:
                print(entry.dn, entry.get_first("cn"))

    Args:
        connection: the connection that performs each page request
        basedn: the base DN of the search
        searchfilter: the search filter, as a string or a
            :py:class:`ldap_filter.Filter`

    Keyword Args:
        attributes: the attributes to retrieve; ``None`` means all of them
        page_size: the number of entries to ask for in each page

    """

    def __init__(
        self,
        connection: "DirectoryConnection",
        basedn: str,
        searchfilter: str | Filter,
        attributes: list[str] | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self.connection = connection
        self.basedn = basedn
        if isinstance(searchfilter, Filter):
            searchfilter = searchfilter.to_string()
        self.searchfilter: str = searchfilter
        self.attributes = attributes
        self.page_size = page_size

        #: The cookie the server gave us for the next page
        self.page_token: PageToken = None
        #: True once a page came back without a cookie
        self.is_last_page: bool = False
        #: The 0-based number of the page in ``entries``
        self.current_page: int = 0
        self.entries: list[LDAPData] = []
        self.entries_position: int = 0
        # True while ``entries`` holds a page we fetched.  After a reset that
        # keeps the first page, this is what tells us a page with no cookie
        # was the whole result set.
        self._page_loaded: bool = False

    def __repr__(self) -> str:
        return (
            f'<SearchIterator: basedn="{self.basedn}" '
            f'filter="{self.searchfilter}" page={self.current_page}>'
        )

    def _load_page(self) -> None:
        """
        Fetch the next page from the server and make it the current page.

        Nothing on ``self`` changes until the whole fetch has succeeded, so a
        failure leaves the iterator as it was before the call, and calling
        :py:meth:`next` again retries the same page.

        Raises:
            PageControlError: the connection rejected our page size or cookie
            SearchExecutionError: the search failed, or returned no entries

        """
        token = self.page_token
        self.connection.set_paged_control(self.page_size, True, token)  # noqa: FBT003
        try:
            handle = self.connection.search(
                self.basedn, self.searchfilter, self.attributes or []
            )
        except LdapPagerError:
            raise
        except Exception as exc:
            raise SearchExecutionError(
                self.connection.last_error_code(),
                self.basedn,
                self.searchfilter,
                self.page_size,
                reason=str(exc),
            ) from exc
        entries = list(self.connection.get_entries(handle))
        if not entries:
            raise SearchExecutionError(
                self.connection.last_error_code(),
                self.basedn,
                self.searchfilter,
                self.page_size,
                reason="no entries returned",
            )
        page = 0 if token is None else self.current_page + 1
        next_token = self.connection.get_paged_control_response(handle) or None

        self.entries = entries
        self.entries_position = 0
        self.current_page = page
        self.page_token = next_token
        self._page_loaded = True
        if next_token is None:
            self.is_last_page = True
        logger.debug(
            "ldappager.search.page_loaded basedn=%s page=%d entries=%d last=%s",
            self.basedn,
            page,
            len(entries),
            self.is_last_page,
        )

    def _exhausted(self) -> bool:
        """
        Return ``True`` if there is no page left to fetch.
        """
        if self.page_token is not None:
            return False
        return self.is_last_page or self._page_loaded

    def next(self) -> Entry | None:
        """
        Return the next entry, fetching the next page from the server first if
        the current one has been used up.

        At most one page is fetched per call.  Once the last page has been
        consumed this returns ``None`` on every call, without talking to the
        server, until :py:meth:`reset` is called.

        Raises:
            PageControlError: the connection rejected our page size or cookie
            SearchExecutionError: the search failed, or returned no entries

        Returns:
            The next :py:class:`Entry`, or ``None`` when there are no more.

        """
        if self.entries_position >= len(self.entries):
            if self._exhausted():
                return None
            self._load_page()
        if self.entries_position < len(self.entries):
            entry = self.entries[self.entries_position]
            self.entries_position += 1
            return Entry(entry)
        return None

    def reset(self) -> None:
        """
        Rewind to the first entry of the result set.

        If pages past the first one have been fetched, the cookie and buffered
        page are thrown away, and the next call to :py:meth:`next` runs the
        search again from page one.  If only the first page has been fetched
        (or nothing yet), that page is kept and replayed from its start.
        """
        if self.current_page > 0:
            self.page_token = None
            self.entries = []
            self.current_page = 0
            self._page_loaded = False
        self.entries_position = 0
        self.is_last_page = False
        logger.debug("ldappager.search.reset basedn=%s", self.basedn)

    def free(self) -> None:
        """
        Drop the cookie and the buffered page right away.

        The iterator must be :py:meth:`reset` before being used again.
        """
        self.page_token = None
        self.entries = []
        self.entries_position = 0
        self._page_loaded = False

    @property
    def has_more(self) -> bool:
        """
        ``True`` unless the last page has been fetched and fully consumed.
        """
        return self.entries_position < len(self.entries) or not self._exhausted()
