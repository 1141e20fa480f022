"""
Exceptions raised while paging through LDAP search results.
"""


class LdapPagerError(Exception):
    """Base class for everything ldappager raises."""


class PageControlError(LdapPagerError):
    """
    The connection refused the Simple Paged Results parameters we asked it to
    use, e.g. a non-positive page size or a cookie that is not a byte string.
    """


class SearchExecutionError(LdapPagerError):
    """
    A paged search could not be run, or it ran and returned no entries at all.

    Args:
        error_code: the LDAP result code reported by the connection
        basedn: the base DN of the search
        searchfilter: the LDAP filter of the search
        page_size: the page size we asked for

    Keyword Args:
        reason: a short description of what went wrong, appended to the message

    """

    def __init__(
        self,
        error_code: int,
        basedn: str,
        searchfilter: str,
        page_size: int,
        reason: str | None = None,
    ) -> None:
        self.error_code = error_code
        self.basedn = basedn
        self.searchfilter = searchfilter
        self.page_size = page_size
        self.reason = reason
        msg = (
            f"LDAP search failed with error code {error_code}: "
            f'basedn="{basedn}" filter="{searchfilter}" page_size={page_size}'
        )
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)
