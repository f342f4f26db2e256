import django
from django.conf import settings

SERVER = {
    "url": "ldap://localhost:389",
    "user": "cn=admin,dc=example,dc=com",
    "password": "admin",
    "use_starttls": False,
    "tls_verify": "never",
    "timeout": 15.0,
    "sizelimit": 1000,
    "follow_referrals": False,
}

# Configure Django settings before any model is defined
if not settings.configured:
    settings.configure(
        LDAP_SERVERS={
            "default": {
                "basedn": "dc=example,dc=com",
                "read": dict(SERVER),
                "write": dict(SERVER),
            },
        },
        CACHES={
            "default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"},
        },
        LDAPMAPPER_CACHE_TTL=300,
        LDAPMAPPER_PAGE_SIZE=1000,
    )
    django.setup()
