"""
Type aliases for raw LDAP data as handed to us by python-ldap.
"""

#: One raw search result record: ``(dn, {attribute: [value, ...]})``
LDAPData = tuple[str, dict[str, list[bytes]]]
#: The opaque Simple Paged Results cookie.  ``None`` means "no cookie".
PageToken = bytes | None
