"""
Conversions between LDAP attribute values and Python values.

* :py:class:`Timestamp` converts between ``datetime`` objects and the three
  ways directories store times: LDAP generalized time (``20240101120000Z``),
  Active Directory generalized time (``20240101120000.0Z``) and Windows
  integer time (100 nanosecond intervals since 1601-01-01, as in
  ``pwdLastSet``).
* :py:class:`Guid` converts Active Directory ``objectGUID`` values between
  their 16 byte binary form and the usual string form.
"""

import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from .escaping import to_string

#: Seconds between 1601-01-01 and 1970-01-01
WINDOWS_EPOCH_OFFSET = 11644473600

_WINDOWS_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)

#: Windows integer times use this for "never", as in ``accountExpires``
NEVER = 0x7FFFFFFFFFFFFFFF


class Timestamp:
    """
    Convert times to and from one LDAP time format.

    Example:
        >>> Timestamp("ldap").from_datetime(datetime(2024, 1, 1, 12, tzinfo=timezone.utc))
        '20240101120000Z'
        >>> Timestamp("windows-int").to_datetime("0") is None
        True

    Args:
        type: ``ldap``, ``windows`` or ``windows-int``

    Raises:
        ValueError: ``type`` is not one of the above

    """

    TYPES = ("ldap", "windows", "windows-int")

    def __init__(self, type: str) -> None:  # noqa: A002
        if type not in self.TYPES:
            msg = f"Unrecognized date type '{type}'"
            raise ValueError(msg)
        self.type = type

    @staticmethod
    def _as_utc(value: Any) -> datetime:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = datetime.fromtimestamp(value, tz=timezone.utc)
        elif isinstance(value, str):
            value = datetime.fromisoformat(value)
        if not isinstance(value, datetime):
            msg = f"Cannot convert {value!r} to a date"
            raise ValueError(msg)
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(microsecond=0)

    def from_datetime(self, value: Any) -> str:
        """
        Return ``value`` in this format.

        ``value`` may be a ``datetime`` (naive ones are taken as UTC), a UNIX
        timestamp or an ISO 8601 string.  Microseconds are dropped.
        """
        value = self._as_utc(value)
        if self.type == "ldap":
            return value.strftime("%Y%m%d%H%M%SZ")
        if self.type == "windows":
            return value.strftime("%Y%m%d%H%M%S.0Z")
        return str((int(value.timestamp()) + WINDOWS_EPOCH_OFFSET) * 10_000_000)

    def to_datetime(self, value: Any) -> datetime | None:
        """
        Parse ``value`` into an aware UTC ``datetime``.

        Returns:
            The time, or ``None`` for a Windows integer time of ``0`` or the
            largest 64 bit value, which both mean "never"

        Raises:
            ValueError: ``value`` is not in this format

        """
        if isinstance(value, datetime):
            return value
        value = to_string(value).strip()
        if self.type == "windows-int":
            ticks = int(value)
            if ticks <= 0 or ticks >= NEVER:
                return None
            return _WINDOWS_EPOCH + timedelta(microseconds=ticks // 10)
        if self.type == "windows":
            value = re.sub(r"\.0Z$", "Z", value)
        return datetime.strptime(value, "%Y%m%d%H%M%SZ").replace(tzinfo=timezone.utc)


class Guid:
    """
    An Active Directory ``objectGUID``.

    The binary form stores the first three groups little-endian, so it is not
    the same as the bytes of the string form.

    Args:
        value: the binary value (as bytes, or as a string holding the raw
            bytes) or the string form

    Raises:
        ValueError: ``value`` is neither

    """

    def __init__(self, value: Any) -> None:
        if isinstance(value, uuid.UUID):
            self.uuid = value
        elif isinstance(value, bytes) and len(value) == 16:  # noqa: PLR2004
            self.uuid = uuid.UUID(bytes_le=value)
        else:
            text = to_string(value)
            try:
                self.uuid = uuid.UUID(text.strip("{}"))
            except ValueError:
                raw = text.encode("utf-8", "surrogateescape")
                if len(raw) != 16:  # noqa: PLR2004
                    msg = f"Invalid GUID: {value!r}"
                    raise ValueError(msg) from None
                self.uuid = uuid.UUID(bytes_le=raw)

    def get_value(self) -> str:
        return str(self.uuid)

    def get_binary(self) -> bytes:
        return self.uuid.bytes_le

    def get_encoded_hex(self) -> str:
        """
        Return the binary form as ``\\XX`` escapes, for use in a filter.
        """
        return "".join(f"\\{byte:02x}" for byte in self.get_binary())

    def __str__(self) -> str:
        return self.get_value()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Guid):
            return NotImplemented
        return self.uuid == other.uuid

    def __hash__(self) -> int:
        return hash(self.uuid)
