# This file is here so that we can patch the ldap module in our tests.
# python-ldap-faker doesn't support patching the ldap module itself, so every
# part of ldappager that opens a connection uses ``ldappager.ldap`` instead.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
