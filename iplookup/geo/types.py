"""
Database types and their on-disk / remote naming
"""

from enum import Enum
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

from .. import config


class DatabaseType(str, Enum):
    COUNTRY = "country"
    CITY = "city"
    NETWORK = "network"

    @property
    def edition(self) -> str:
        """MaxMind edition id, e.g. GeoLite2-City"""
        return config.GEOIP_EDITIONS[self.value]

    @property
    def filename(self) -> str:
        return f"{self.edition}{config.PAYLOAD_EXTENSION}"

    def canonical_path(self, data_dir: Optional[Path] = None) -> Path:
        return Path(data_dir or config.DATA_DIR) / self.filename

    def source_url(self, license_key: Optional[str] = None) -> str:
        """Download URL for this type's archive.

        An explicit GEOIP_URL_<TYPE> wins; otherwise the MaxMind download
        endpoint is used, which needs a license key.
        """
        override = config.GEOIP_URLS.get(self.value)
        if override:
            return override
        query = urlencode({
            "edition_id": self.edition,
            "license_key": license_key if license_key is not None else config.MAXMIND_LICENSE_KEY,
            "suffix": "tar.gz",
        })
        return f"{config.MAXMIND_DOWNLOAD_URL}?{query}"

    @classmethod
    def parse(cls, names):
        """Parse type names, accepting "asn" as an alias for network"""
        out = []
        for name in names:
            key = name.strip().lower()
            if key == "asn":
                key = cls.NETWORK.value
            out.append(cls(key))
        return out


ALL_TYPES = tuple(DatabaseType)
