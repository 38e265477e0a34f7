"""Discovery of database engine instances on a host.

Service entries come back from the service manager with their *advanced
properties* in one of several shapes. When the collection survives
marshalling it is a mapping or a list of ``{Name, Value}`` objects and the
properties can be read by name. When it does not, all that is left is text
such as ``@{Name=REGROOT; Value=Software\\Microsoft\\...}`` and the values
have to be recovered from the ``Value=`` marker on the matching line.
:func:`extract_instance_metadata` hides both behind one call.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass

from .config import DEFAULT_DISPLAY_PATTERN
from .models import Credentials, ServiceEntry, ServiceInstance
from .providers.base import ServiceEnumerator, TransportError

LOGGER = logging.getLogger(__name__)

_NAME_KEYS = ("Name", "PropertyName")
_VALUE_KEYS = ("Value", "PropertyStrValue", "PropertyNumValue")
# Registry paths and instance names never contain "}" or ";".
_TEXT_VALUE = re.compile(r"Value=([^};\r\n]*)")
_PLACEHOLDER = "<unknown>"


class EnumerationError(RuntimeError):
    """Raised when the services of a host cannot be enumerated."""

    def __init__(self, host: str, message: str) -> None:
        """Attribute *message* to *host*."""
        super().__init__(message)
        self.host = host


@dataclass(slots=True, frozen=True)
class InstanceMetadata:
    """Values recovered from a service entry's advanced properties."""

    registry_root: str
    sql_instance: str


def extract_instance_metadata(
    advanced_properties: object,
    *,
    root_property: str = "REGROOT",
    address_property: str = "VSNAME",
) -> InstanceMetadata | None:
    """Return the registry root and logical address encoded in *advanced_properties*.

    The structured lookup is attempted first; the ``Value=`` text scan only
    runs when it yields no registry root. ``None`` means neither strategy
    produced a usable root. An empty ``sql_instance`` is left for the caller
    to default.
    """
    root = _structured_value(advanced_properties, root_property)
    address = _structured_value(advanced_properties, address_property)
    if not root:
        text = _flatten(advanced_properties)
        root = _text_value(text, root_property)
        address = address or _text_value(text, address_property)
    if not root:
        return None
    return InstanceMetadata(registry_root=root, sql_instance=address)


def _structured_value(collection: object, name: str) -> str:
    if isinstance(collection, Mapping):
        return _clean(collection.get(name))
    if isinstance(collection, Sequence) and not isinstance(collection, (str, bytes)):
        for item in collection:
            if not isinstance(item, Mapping):
                continue
            item_name = next((item[key] for key in _NAME_KEYS if key in item), None)
            if item_name != name:
                continue
            for key in _VALUE_KEYS:
                value = _clean(item.get(key))
                if value:
                    return value
            return ""
    return ""


def _recover_address(collection: object, name: str) -> str:
    return _structured_value(collection, name) or _text_value(_flatten(collection), name)


def _flatten(collection: object) -> str:
    if collection is None:
        return ""
    if isinstance(collection, bytes):
        return collection.decode("utf-8", errors="replace")
    if isinstance(collection, str):
        return collection
    if isinstance(collection, Sequence):
        return "\n".join(_flatten(item) for item in collection)
    return str(collection)


def _text_value(text: str, name: str) -> str:
    for line in text.splitlines():
        position = line.find(name)
        if position == -1:
            continue
        match = _TEXT_VALUE.search(line, position + len(name))
        if match is None:
            continue
        value = match.group(1).strip()
        if value:
            return value
    return ""


def _clean(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


class InstanceLocator:
    """Enumerate database engine instances through a :class:`ServiceEnumerator`."""

    def __init__(
        self,
        enumerator: ServiceEnumerator,
        *,
        display_pattern: str = DEFAULT_DISPLAY_PATTERN,
        root_property: str = "REGROOT",
        address_property: str = "VSNAME",
        on_warning: Callable[[str], None] | None = None,
    ) -> None:
        """Bind the locator to *enumerator* and the naming conventions to apply."""
        self._enumerator = enumerator
        self._pattern = re.compile(display_pattern)
        self._root_property = root_property
        self._address_property = address_property
        self._on_warning = on_warning

    def instance_name(self, display_name: str) -> str | None:
        """Return the instance name wrapped by *display_name*, if it is an engine service."""
        match = self._pattern.search(display_name or "")
        if match is None:
            return None
        return match.group("instance").strip() or None

    def locate(
        self,
        host: str,
        credentials: Credentials | None = None,
    ) -> Iterator[ServiceInstance]:
        """Yield the database engine instances installed on *host*.

        Raises :class:`EnumerationError` when the host cannot be queried.
        Instances whose metadata cannot be decoded are skipped with a warning.
        """
        try:
            entries = self._enumerator.enumerate_services(host, credentials)
        except TransportError as exc:
            raise EnumerationError(host, exc.detail) from exc

        for entry in entries:
            instance = self._build_instance(host, entry)
            if instance is not None:
                yield instance

    def _build_instance(self, host: str, entry: ServiceEntry) -> ServiceInstance | None:
        instance_name = self.instance_name(entry.display_name)
        if instance_name is None:
            return None

        metadata = extract_instance_metadata(
            entry.advanced_properties,
            root_property=self._root_property,
            address_property=self._address_property,
        )
        if metadata is None:
            address = _recover_address(entry.advanced_properties, self._address_property)
            self._warn(f"cannot find instance {address or _PLACEHOLDER} on {host}")
            return None

        return ServiceInstance(
            host=host,
            display_name=entry.display_name,
            instance_name=instance_name,
            registry_root=metadata.registry_root,
            sql_instance=metadata.sql_instance or host,
            service_account=entry.service_account or "",
        )

    def _warn(self, message: str) -> None:
        LOGGER.warning(message)
        if self._on_warning is not None:
            self._on_warning(message)


__all__ = [
    "EnumerationError",
    "InstanceLocator",
    "InstanceMetadata",
    "extract_instance_metadata",
]
