# All python-ldap access in ldapmapper goes through this module so that tests can
# swap the real client for python-ldap-faker by patching ``ldapmapper.ldap``.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
