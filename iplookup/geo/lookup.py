"""
Lookup engine: turns an IPv4 address into a GeoRecord using whatever
databases are currently published.
"""

import re
import time
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from ..errors import UnavailableError, ValidationError
from ..schemas.geo import GeoRecord
from ..services.prometheus_metrics import prometheus_metrics
from .store import DatabaseStore
from .types import DatabaseType

logger = logging.getLogger("geo.lookup")

_OCTET = r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)"
IPV4_RE = re.compile(rf"{_OCTET}(?:\.{_OCTET}){{3}}")


def validate_ipv4(ip: Any) -> str:
    """Return the canonical dotted quad for `ip` or raise ValidationError"""
    if not isinstance(ip, str) or not IPV4_RE.fullmatch(ip):
        raise ValidationError("Please provide a valid IPv4 address.")
    # "010.0.0.1" is accepted but queried as "10.0.0.1"
    return ".".join(str(int(octet)) for octet in ip.split("."))


def _name(node: Optional[Dict[str, Any]]) -> Optional[str]:
    if not node:
        return None
    return (node.get("names") or {}).get("en")


def _set(obj, attr: str, value):
    if value is not None:
        setattr(obj, attr, value)


def apply_country(record: Dict[str, Any], result: GeoRecord):
    country = record.get("country")
    if country:
        _set(result.location, "country", _name(country))
        _set(result.location, "country_code", country.get("iso_code"))


def apply_city(record: Dict[str, Any], result: GeoRecord):
    apply_country(record, result)

    subdivisions = record.get("subdivisions") or []
    if subdivisions:
        _set(result.location, "region", _name(subdivisions[0]))

    _set(result.location, "city", _name(record.get("city")))

    postal = record.get("postal")
    if postal:
        _set(result.location, "zip_code", postal.get("code"))

    location = record.get("location")
    if location:
        _set(result.location.coordinates, "latitude", location.get("latitude"))
        _set(result.location.coordinates, "longitude", location.get("longitude"))
        _set(result.location, "timezone", location.get("time_zone"))


def apply_network(record: Dict[str, Any], result: GeoRecord):
    number = record.get("autonomous_system_number")
    organization = record.get("autonomous_system_organization")
    # The ASN database has one organization field; it also serves as ISP
    _set(result.network, "organization", organization)
    _set(result.network, "isp", organization)
    if number is not None:
        result.network.asn = number
        result.network.as_name = f"AS{number}"


Resolver = Tuple[Tuple[DatabaseType, Callable[[Dict[str, Any], GeoRecord], None]], ...]

# Ordered sources per field group. The first type with a published handle
# answers for the whole group, hit or miss; later rows are consulted only
# when earlier handles are absent.
LOCATION_SOURCES: Resolver = (
    (DatabaseType.CITY, apply_city),
    (DatabaseType.COUNTRY, apply_country),
)

NETWORK_SOURCES: Resolver = (
    (DatabaseType.NETWORK, apply_network),
)


class LookupEngine:
    """Produces GeoRecords from the databases published in a store"""

    def __init__(self, store: DatabaseStore):
        self.store = store

    def lookup(self, ip: Any) -> GeoRecord:
        start = time.perf_counter()
        try:
            address = validate_ipv4(ip)
        except ValidationError:
            prometheus_metrics.increment_lookups("invalid")
            raise

        if not self.store.any_loaded():
            prometheus_metrics.increment_lookups("unavailable")
            raise UnavailableError("IP databases are not loaded. Please check server configuration.")

        # echo the address as sent; the reader gets the normalised form
        result = GeoRecord(ip=ip)
        self._resolve(address, LOCATION_SOURCES, result)
        self._resolve(address, NETWORK_SOURCES, result)

        prometheus_metrics.increment_lookups("success")
        prometheus_metrics.observe_lookup_latency(time.perf_counter() - start)
        return result

    def _resolve(self, ip: str, sources: Resolver, result: GeoRecord):
        for db_type, apply in sources:
            with self.store.borrow(db_type) as handle:
                if handle is None:
                    continue
                try:
                    record = handle.get(ip)
                except Exception as e:
                    logger.warning(f"{db_type.value} lookup failed for {ip}: {e}", extra={
                        "component": "geo.lookup",
                        "database": db_type.value,
                    })
                    return
                if record:
                    apply(record, result)
                return
