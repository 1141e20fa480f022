"""
Connections that can run one page of a Simple Paged Results search at a time.

:py:class:`DirectoryConnection` names what :py:class:`ldappager.search.SearchIterator`
needs from a connection; :py:class:`LdapConnection` implements it on top of a
python-ldap ``LDAPObject``.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, cast

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from ldap.controls import LDAPControl, SimplePagedResultsControl

from ldappager import ldap

from .exceptions import PageControlError, SearchExecutionError
from .search import SearchIterator
from .server_capabilities import LdapServerCapabilities
from .typing import LDAPData, PageToken

logger = logging.getLogger(__name__)


class DirectoryConnection(Protocol):
    """
    The operations a :py:class:`ldappager.search.SearchIterator` performs on
    its connection for each page.
    """

    def set_paged_control(
        self, page_size: int, send_control: bool, token: bytes | str | None
    ) -> None: ...

    def search(
        self, basedn: str, searchfilter: str, attributes: list[str]
    ) -> Any: ...

    def get_entries(self, handle: Any) -> list[LDAPData]: ...

    def get_paged_control_response(self, handle: Any) -> PageToken: ...

    def last_error_code(self) -> int: ...


@dataclass
class SearchHandle:
    """
    The outcome of one :py:meth:`LdapConnection.search` call.
    """

    msgid: int
    #: the raw result records, as returned by ``result3``
    data: list[Any] = field(default_factory=list)
    #: the server controls returned with the result
    serverctrls: list[LDAPControl] = field(default_factory=list)


class LdapConnection:
    """
    A :py:class:`DirectoryConnection` backed by a python-ldap ``LDAPObject``.

    The connection does not own any paging state of its own: the page size and
    cookie given to :py:meth:`set_paged_control` apply to the next
    :py:meth:`search` call only.

    Args:
        ldap_object: a bound ``LDAPObject``

    Keyword Args:
        scope: the LDAP search scope to use for every search
        sizelimit: the client-side size limit for every search
        server: the key of this server in ``settings.LDAP_SERVERS``, if any
        key: which block of the server config we connected with ("read" or
            "write")

    Raises:
        ImproperlyConfigured: ``server`` is not in ``settings.LDAP_SERVERS``

    """

    def __init__(
        self,
        ldap_object: ldap.ldapobject.LDAPObject,  # type: ignore[name-defined]
        scope: int = ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
        sizelimit: int = 0,
        server: str | None = None,
        key: str = "read",
    ) -> None:
        self.ldap_object = ldap_object
        self.scope = scope
        self.sizelimit = sizelimit
        self.server = server
        self.key = key
        self.basedn: str | None = None
        if server is not None:
            try:
                self.basedn = getattr(settings, "LDAP_SERVERS", {})[server].get("basedn")
            except KeyError as exc:
                msg = f'settings.LDAP_SERVERS has no server "{server}"'
                raise ImproperlyConfigured(msg) from exc
        self._controls: list[LDAPControl] = []
        self._last_error_code: int = 0

    def __enter__(self) -> "LdapConnection":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @classmethod
    def _connect(  # noqa: PLR0912
        cls,
        config: dict[str, Any],
        dn: str | None = None,
        password: str | None = None,
    ) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        Create, configure and bind a new ``LDAPObject``.

        Args:
            config: one "read" or "write" block from ``settings.LDAP_SERVERS``
            dn: bind as this DN instead of the configured user
            password: the password for ``dn``

        Raises:
            ValueError: If the ``tls_verify`` value in the configuration is invalid.
            OSError: If one of the TLS certificate or key files is configured
                but does not exist or is not a file.

        Returns:
            A bound ``LDAPObject``.

        """
        if not dn:
            dn = config["user"]
            password = config["password"]
        ldap_object = ldap.initialize(config["url"])  # type: ignore[attr-defined]
        if config.get("follow_referrals", False):
            ldap_object.set_option(ldap.OPT_REFERRALS, 1)  # type: ignore[attr-defined]
        else:
            ldap_object.set_option(ldap.OPT_REFERRALS, 0)  # type: ignore[attr-defined]
        timeout = config.get("timeout", 15.0)
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, float(timeout))  # type: ignore[attr-defined]
        tls_verify = config.get("tls_verify", "never")
        if tls_verify == "never":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)  # type: ignore[attr-defined]
        elif tls_verify == "always":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)  # type: ignore[attr-defined]
        else:
            msg = f"Invalid tls_verify value: {tls_verify}"
            raise ValueError(msg)
        for setting_name, option, label in (
            ("tls_ca_certfile", "OPT_X_TLS_CACERTFILE", "CA Certificate file"),
            ("tls_certfile", "OPT_X_TLS_CERTFILE", "TLS Certificate file"),
            ("tls_keyfile", "OPT_X_TLS_KEYFILE", "TLS Key file"),
        ):
            if path := config.get(setting_name, None):
                if not Path(path).exists():
                    msg = f"{label} does not exist: {path}"
                    raise OSError(msg)
                if not Path(path).is_file():
                    msg = f"{label} is not a file: {path}"
                    raise OSError(msg)
                ldap_object.set_option(getattr(ldap, option), path)
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]
        if config.get("use_starttls", True):
            ldap_object.start_tls_s()
        ldap_object.simple_bind_s(dn, password)
        return ldap_object

    @classmethod
    def from_settings(
        cls,
        server: str,
        key: str = "read",
        dn: str | None = None,
        password: str | None = None,
        scope: int = ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
    ) -> "LdapConnection":
        """
        Open a connection to one of the servers in ``settings.LDAP_SERVERS``.

        Args:
            server: the server's key in ``settings.LDAP_SERVERS``

        Keyword Args:
            key: which config block to use, "read" or "write"
            dn: bind as this DN instead of the configured user
            password: the password for ``dn``
            scope: the LDAP search scope for searches on this connection

        Raises:
            ImproperlyConfigured: ``server`` or ``key`` is not configured

        Returns:
            A bound :py:class:`LdapConnection`.

        """
        servers = getattr(settings, "LDAP_SERVERS", {})
        try:
            config = cast("dict[str, Any]", servers[server][key])
        except KeyError as exc:
            msg = f'settings.LDAP_SERVERS has no "{key}" config for server "{server}"'
            raise ImproperlyConfigured(msg) from exc
        ldap_object = cls._connect(config, dn=dn, password=password)
        logger.debug(
            "ldappager.connection.bound server=%s key=%s url=%s",
            server,
            key,
            config["url"],
        )
        return cls(
            ldap_object,
            scope=scope,
            sizelimit=int(config.get("sizelimit", 0) or 0),
            server=server,
            key=key,
        )

    def close(self) -> None:
        """
        Unbind from the server.
        """
        self.ldap_object.unbind_s()

    def _get_pctrls(self, serverctrls: list[LDAPControl] | None) -> list[LDAPControl]:
        """
        Lookup the paged results controls among the controls the server
        returned.
        """
        return [
            c
            for c in serverctrls or []
            if c.controlType == SimplePagedResultsControl.controlType
        ]

    def set_paged_control(
        self, page_size: int, send_control: bool, token: bytes | str | None  # noqa: FBT001
    ) -> None:
        """
        Set the Simple Paged Results parameters for the next :py:meth:`search`.

        Args:
            page_size: how many entries to ask for
            send_control: if ``False``, send no paged results control at all
            token: the cookie from the previous page, or ``None`` for the first
                page

        Raises:
            PageControlError: ``page_size`` is not a positive integer, or
                ``token`` is not a byte string

        """
        if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size < 1:
            msg = f"Unable to set paged control pageSize: {page_size!r}"
            raise PageControlError(msg)
        if token is not None and not isinstance(token, (bytes, str)):
            msg = f"Unable to set paged control cookie: {token!r}"
            raise PageControlError(msg)
        if not send_control:
            self._controls = []
            return
        self._controls = [
            SimplePagedResultsControl(True, size=page_size, cookie=token or "")  # noqa: FBT003
        ]

    def search(
        self, basedn: str, searchfilter: str, attributes: list[str]
    ) -> SearchHandle:
        """
        Run one search request with the controls set by
        :py:meth:`set_paged_control`, and wait for its result.

        Args:
            basedn: the base DN of the search
            searchfilter: the LDAP filter
            attributes: the attributes to return; an empty list means all

        Raises:
            SearchExecutionError: the server reported an error

        Returns:
            A :py:class:`SearchHandle` for :py:meth:`get_entries` and
            :py:meth:`get_paged_control_response`.

        """
        controls = self._controls
        self._controls = []
        page_size = controls[0].size if controls else 0
        try:
            msgid = self.ldap_object.search_ext(
                basedn,
                self.scope,
                searchfilter,
                attributes or None,
                serverctrls=controls,
                sizelimit=self.sizelimit,
            )
            _, rdata, rmsgid, serverctrls = self.ldap_object.result3(msgid)
        except ldap.LDAPError as exc:  # type: ignore[attr-defined]
            info = exc.args[0] if exc.args and isinstance(exc.args[0], dict) else {}
            self._last_error_code = info.get("result", -1)
            logger.warning(
                "ldappager.connection.search.failed basedn=%s filter=%s code=%s error=%s",
                basedn,
                searchfilter,
                self._last_error_code,
                info.get("desc", str(exc)),
            )
            raise SearchExecutionError(
                self._last_error_code,
                basedn,
                searchfilter,
                page_size,
                reason=info.get("desc", str(exc)),
            ) from exc
        self._last_error_code = 0
        return SearchHandle(
            msgid=rmsgid, data=list(rdata or []), serverctrls=list(serverctrls or [])
        )

    def get_entries(self, handle: SearchHandle) -> list[LDAPData]:
        # AD returns an rdata at the end that is a reference that we want to
        # ignore
        return [(dn, attrs) for dn, attrs in handle.data if isinstance(attrs, dict)]

    def get_paged_control_response(self, handle: SearchHandle) -> PageToken:
        """
        Return the cookie for the next page, or ``None`` if the server sent no
        paged results control or an empty cookie.
        """
        paged_controls = self._get_pctrls(handle.serverctrls)
        if not paged_controls or not paged_controls[0].cookie:
            return None
        return paged_controls[0].cookie

    def last_error_code(self) -> int:
        return self._last_error_code

    def paged_search(
        self,
        searchfilter: Any,
        attributes: list[str] | None = None,
        basedn: str | None = None,
        page_size: int | None = None,
    ) -> SearchIterator:
        """
        Return a :py:class:`ldappager.search.SearchIterator` over this
        connection.

        If ``page_size`` is not given, ask the server how big a page it allows
        (see :py:class:`ldappager.server_capabilities.LdapServerCapabilities`).

        Args:
            searchfilter: the filter, as a string or a ``ldap_filter.Filter``

        Keyword Args:
            attributes: the attributes to retrieve; ``None`` means all of them
            basedn: the base DN; defaults to the server's configured ``basedn``
            page_size: the number of entries per page

        Raises:
            ValueError: If no basedn is provided or configured.
            PageControlError: ``page_size`` was not given and the server's Root
                DSE does not list the Simple Paged Results control

        """
        if basedn is None:
            basedn = self.basedn
        if not basedn:
            msg = "basedn is required either as a parameter or in settings.LDAP_SERVERS"
            raise ValueError(msg)
        if page_size is None:
            info = LdapServerCapabilities.get_server_info(
                self.ldap_object, key=self.server or self.key
            )
            if info.paging is False:
                msg = (
                    f"LDAP server '{self.server or self.key}' does not support "
                    "the Simple Paged Results control"
                )
                raise PageControlError(msg)
            page_size = info.page_size
        return SearchIterator(
            self, basedn, searchfilter, attributes=attributes, page_size=page_size
        )
