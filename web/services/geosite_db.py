from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterator, List, Optional, Tuple

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

from services.errors import GeositeGroupNotFound, GeositeParseError


logger = logging.getLogger(__name__)


# Domain.Type values from v2ray's routercommon.proto.
PLAIN = 0
REGEX = 1
DOMAIN = 2
FULL = 3

TYPE_NAMES = {
    PLAIN: "plain",
    REGEX: "regex",
    DOMAIN: "domain",
    FULL: "full",
}



@dataclass(frozen=True)
class DomainEntry:
    type: int
    value: str
    attributes: FrozenSet[str] = frozenset()

    def has_attribute(self, key: str) -> bool:
        return key in self.attributes


class GeositeIndex:
    """Read-only mapping of lower-cased group name -> entries in database order.

    A new index is built for every database load; nothing mutates an existing
    one, so a reference handed out earlier stays consistent.
    """

    __slots__ = ("_groups",)

    def __init__(self, groups: Optional[Dict[str, Tuple[DomainEntry, ...]]] = None):
        self._groups: Dict[str, Tuple[DomainEntry, ...]] = {}
        for name, entries in (groups or {}).items():
            self._groups[str(name).lower()] = tuple(entries)

    def get(self, group: str) -> Tuple[DomainEntry, ...]:
        try:
            return self._groups[(group or "").lower()]
        except KeyError:
            raise GeositeGroupNotFound(group) from None

    def groups(self) -> List[str]:
        return list(self._groups.keys())

    def __contains__(self, group: object) -> bool:
        return isinstance(group, str) and group.lower() in self._groups

    def __len__(self) -> int:
        return len(self._groups)

    def __iter__(self) -> Iterator[str]:
        return iter(self._groups)

    def __repr__(self) -> str:
        return f"GeositeIndex(groups={len(self._groups)})"


def _geosite_list_class():
    """Build the GeoSiteList message class from v2ray's routercommon layout.

    Domain.type is declared as int32 so types added upstream later still decode.
    """
    fd = descriptor_pb2.FileDescriptorProto(name="geosite_pac/routercommon.proto", package="geosite_pac", syntax="proto3")
    T = descriptor_pb2.FieldDescriptorProto

    attribute = fd.message_type.add(name="Attribute")
    attribute.field.add(name="key", number=1, type=T.TYPE_STRING, label=T.LABEL_OPTIONAL)
    attribute.field.add(name="bool_value", number=2, type=T.TYPE_BOOL, label=T.LABEL_OPTIONAL)
    attribute.field.add(name="int_value", number=3, type=T.TYPE_INT64, label=T.LABEL_OPTIONAL)

    domain = fd.message_type.add(name="Domain")
    domain.field.add(name="type", number=1, type=T.TYPE_INT32, label=T.LABEL_OPTIONAL)
    domain.field.add(name="value", number=2, type=T.TYPE_STRING, label=T.LABEL_OPTIONAL)
    domain.field.add(
        name="attribute", number=3, type=T.TYPE_MESSAGE, label=T.LABEL_REPEATED, type_name=".geosite_pac.Attribute"
    )

    geosite = fd.message_type.add(name="GeoSite")
    geosite.field.add(name="country_code", number=1, type=T.TYPE_STRING, label=T.LABEL_OPTIONAL)
    geosite.field.add(name="domain", number=2, type=T.TYPE_MESSAGE, label=T.LABEL_REPEATED, type_name=".geosite_pac.Domain")

    geosite_list = fd.message_type.add(name="GeoSiteList")
    geosite_list.field.add(name="entry", number=1, type=T.TYPE_MESSAGE, label=T.LABEL_REPEATED, type_name=".geosite_pac.GeoSite")

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(fd.SerializeToString())
    return message_factory.GetMessageClass(pool.FindMessageTypeByName("geosite_pac.GeoSiteList"))


GeoSiteList = _geosite_list_class()


def parse_geosite_list(raw: bytes) -> List[Tuple[str, List[DomainEntry]]]:
    """Decode a serialized GeoSiteList into (group name, entries) records."""
    msg = GeoSiteList()
    try:
        msg.ParseFromString(bytes(raw or b""))
    except (DecodeError, UnicodeDecodeError) as e:
        raise GeositeParseError(f"Malformed geosite database: {e}") from e

    records: List[Tuple[str, List[DomainEntry]]] = []
    for site in msg.entry:
        # bool_value / int_value are ignored: selectors match on the key only.
        domains = [
            DomainEntry(type=d.type, value=d.value, attributes=frozenset(a.key for a in d.attribute if a.key))
            for d in site.domain
        ]
        records.append((site.country_code, domains))
    return records


def load_geosite_index(raw: bytes) -> GeositeIndex:
    """Build a GeositeIndex from raw dlc.dat bytes.

    Raises GeositeParseError; the caller keeps whatever index it had before.
    """
    records = parse_geosite_list(raw)
    groups: Dict[str, Tuple[DomainEntry, ...]] = {}
    for name, domains in records:
        key = name.lower()
        if key in groups:
            logger.debug("Duplicate geosite group %r; later record wins", name)
        groups[key] = tuple(domains)
    index = GeositeIndex(groups)
    logger.info("Loaded geosite database: %d groups, %d bytes", len(index), len(raw or b""))
    return index
