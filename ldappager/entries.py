"""
The value object handed out by search iterators.
"""

from typing import Any

from .typing import LDAPData


class Entry:
    """
    One directory entry, wrapping the raw ``(dn, attrs)`` tuple that
    python-ldap returns from a search.

    Attribute names are matched case-insensitively, as LDAP does.  Values are
    kept as the raw ``bytes`` python-ldap gave us; the accessors decode them as
    UTF-8.

    Args:
        data: the raw ``(dn, attrs)`` tuple

    """

    def __init__(self, data: LDAPData) -> None:
        self.raw = data
        self.dn: str = data[0]
        self.attributes: dict[str, list[bytes]] = data[1] or {}
        self._keys = {name.lower(): name for name in self.attributes}

    def __repr__(self) -> str:
        return f"<Entry: {self.dn}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entry):
            return NotImplemented
        return self.raw == other.raw

    def __hash__(self) -> int:
        return hash(self.dn)

    def get_dn(self) -> str:
        return self.dn

    def has_attribute(self, name: str) -> bool:
        return name.lower() in self._keys

    def get_raw_attribute(self, name: str) -> list[bytes]:
        """
        Return the undecoded values for the attribute ``name``.

        Args:
            name: the attribute name

        Returns:
            The list of values, or an empty list if the entry lacks ``name``.

        """
        key = self._keys.get(name.lower())
        if key is None:
            return []
        return self.attributes[key]

    def get_attribute(self, name: str) -> list[str]:
        """
        Return the values for the attribute ``name``, decoded as UTF-8.

        Args:
            name: the attribute name

        Returns:
            The list of decoded values, or an empty list if the entry lacks
            ``name``.

        """
        return [
            value.decode("utf-8") if isinstance(value, bytes) else value
            for value in self.get_raw_attribute(name)
        ]

    def get_first(self, name: str, default: Any = None) -> Any:
        values = self.get_attribute(name)
        if not values:
            return default
        return values[0]

    def as_dict(self) -> dict[str, Any]:
        """
        Return the entry as a plain dictionary of decoded values, with the DN
        under the ``dn`` key.
        """
        data: dict[str, Any] = {"dn": self.dn}
        for name in self.attributes:
            data[name] = self.get_attribute(name)
        return data
