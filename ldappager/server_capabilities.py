"""
What an LDAP server can do for paged searches.

:py:meth:`LdapConnection.paged_search
<ldappager.connection.LdapConnection.paged_search>` asks
:py:class:`LdapServerCapabilities` two things before it builds an iterator:
whether the server advertises the Simple Paged Results control, and how many
entries it will put in one page.  Both come from the Root DSE, which is read
once per server and cached for ``LDAPPAGER_CACHE_TTL`` seconds.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar

import ldap
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)

#: The Root DSE attribute holding the page size limit, per server flavor
PAGE_SIZE_ATTRIBUTES: dict[str, str] = {
    "active_directory": "MaxPageSize",
    "389": "nsslapd-sizelimit",
    "openldap": "sizelimit",
}

#: Substrings of ``vendorName`` that identify 389 Directory Server and its forks
VENDORS_389: tuple[str, ...] = ("Fedora Project", "Red Hat", "Oracle", "ForgeRock", "389")


@dataclass
class ServerInfo:
    """
    The paging-related facts we learned from one server's Root DSE.
    """

    flavor: str
    page_size: int
    #: ``True`` or ``False`` if the Root DSE told us, ``None`` if we could not
    #: read it
    paging: bool | None
    fetched_at: float = field(default_factory=time.time)


class LdapServerCapabilities:
    """
    Reads and caches :py:class:`ServerInfo` per server key.

    All methods are class methods; the cache is shared by every caller in the
    process and guarded by a lock.
    """

    PAGING_OID = "1.2.840.113556.1.4.319"

    _cache: ClassVar[dict[str, ServerInfo]] = {}
    _lock = threading.Lock()

    @staticmethod
    def setting(name: str, default: int) -> int:
        return getattr(settings, f"LDAPPAGER_{name}", default)

    @classmethod
    def validate_settings(cls) -> None:
        """
        Check that the LDAPPAGER_* page size and cache settings agree with
        each other.

        Raises:
            ImproperlyConfigured: the settings are inconsistent

        """
        low = cls.setting("MIN_PAGE_SIZE", 10)
        high = cls.setting("MAX_PAGE_SIZE", 10000)
        default = cls.setting("DEFAULT_PAGE_SIZE", 1000)
        if low < 1:
            msg = f"LDAPPAGER_MIN_PAGE_SIZE ({low}) must be positive"
            raise ImproperlyConfigured(msg)
        if low > high:
            msg = (
                f"LDAPPAGER_MIN_PAGE_SIZE ({low}) is larger than "
                f"LDAPPAGER_MAX_PAGE_SIZE ({high})"
            )
            raise ImproperlyConfigured(msg)
        if not low <= default <= high:
            msg = (
                f"LDAPPAGER_DEFAULT_PAGE_SIZE ({default}) is outside "
                f"[{low}, {high}]"
            )
            raise ImproperlyConfigured(msg)
        if cls.setting("CACHE_TTL", 3600) <= 0:
            msg = "LDAPPAGER_CACHE_TTL must be positive"
            raise ImproperlyConfigured(msg)

    @classmethod
    def _flavor(cls, root_dse: dict[str, list[bytes]]) -> str:
        if "forestFunctionality" in root_dse:
            return "active_directory"
        vendor = b"".join(root_dse.get("vendorName", [b""])[:1]).decode(
            "utf-8", errors="ignore"
        )
        if any(name in vendor for name in VENDORS_389):
            return "389"
        if "OpenLDAP Foundation" in vendor:
            return "openldap"
        return "unknown"

    @classmethod
    def _page_size(cls, flavor: str, root_dse: dict[str, list[bytes]]) -> int:
        default = cls.setting("DEFAULT_PAGE_SIZE", 1000)
        values = root_dse.get(PAGE_SIZE_ATTRIBUTES.get(flavor, ""), [])
        try:
            size = int(values[0].decode("utf-8"))
        except (IndexError, ValueError, UnicodeDecodeError):
            return default
        low = cls.setting("MIN_PAGE_SIZE", 10)
        high = cls.setting("MAX_PAGE_SIZE", 10000)
        return min(max(size, low), high)

    @classmethod
    def _read_root_dse(cls, connection: Any, key: str) -> ServerInfo:
        try:
            result = connection.search_s(
                "",
                ldap.SCOPE_BASE,  # type: ignore[attr-defined]
                "(objectClass=*)",
                ["vendorName", "forestFunctionality", "supportedControl"]
                + sorted(set(PAGE_SIZE_ATTRIBUTES.values())),
            )
        except (ldap.SERVER_DOWN, ldap.CONNECT_ERROR):  # type: ignore[attr-defined]
            raise
        except ldap.LDAPError as exc:  # type: ignore[attr-defined]
            logger.warning(
                "ldappager.capabilities.root_dse.failed server=%s error=%s", key, exc
            )
            result = None
        if not result:
            return ServerInfo(
                flavor="unknown",
                page_size=cls.setting("DEFAULT_PAGE_SIZE", 1000),
                paging=None,
            )
        root_dse = result[0][1]
        flavor = cls._flavor(root_dse)
        controls = {oid.decode("utf-8") for oid in root_dse.get("supportedControl", [])}
        info = ServerInfo(
            flavor=flavor,
            page_size=cls._page_size(flavor, root_dse),
            paging=cls.PAGING_OID in controls,
        )
        logger.info(
            "ldappager.capabilities.detected server=%s flavor=%s paging=%s page_size=%d",
            key,
            info.flavor,
            info.paging,
            info.page_size,
        )
        return info

    @classmethod
    def get_server_info(cls, connection: Any, key: str = "read") -> ServerInfo:
        """
        Return the :py:class:`ServerInfo` for the server behind ``connection``,
        reading its Root DSE if we have nothing cached for ``key`` or the
        cached copy is older than ``LDAPPAGER_CACHE_TTL``.

        If the Root DSE can't be read for any reason other than the server
        being unreachable, a :py:class:`ServerInfo` with ``paging=None`` and
        the default page size is returned and not cached.

        Args:
            connection: a python-ldap ``LDAPObject``
            key: the cache key for this server

        Raises:
            ImproperlyConfigured: the LDAPPAGER_* settings are inconsistent
            ldap.SERVER_DOWN, ldap.CONNECT_ERROR: the server is unreachable

        """
        cls.validate_settings()
        ttl = cls.setting("CACHE_TTL", 3600)
        with cls._lock:
            info = cls._cache.get(key)
            if info is not None and time.time() - info.fetched_at < ttl:
                return info
            info = cls._read_root_dse(connection, key)
            if info.paging is not None:
                cls._cache[key] = info
            return info

    @classmethod
    def check_server_paging_support(cls, connection: Any, key: str = "read") -> bool:
        """
        ``True`` if the server's Root DSE lists the Simple Paged Results
        control.
        """
        return bool(cls.get_server_info(connection, key).paging)

    @classmethod
    def get_server_page_size_limit(cls, connection: Any, key: str = "read") -> int:
        return cls.get_server_info(connection, key).page_size

    @classmethod
    def detect_server_flavor(cls, connection: Any, key: str = "read") -> str:
        """
        Return "active_directory", "389", "openldap" or "unknown".
        """
        return cls.get_server_info(connection, key).flavor

    @classmethod
    def clear_cache(cls, key: str | None = None) -> None:
        with cls._lock:
            if key is None:
                cls._cache.clear()
            else:
                cls._cache.pop(key, None)
