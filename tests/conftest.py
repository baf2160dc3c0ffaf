# tests/conftest.py
import io
import json
import tarfile
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from iplookup.geo.store import DatabaseStore
from iplookup.geo.types import DatabaseType

GOOGLE_IP = "8.8.8.8"

CITY_RECORD = {
    "country": {"iso_code": "US", "names": {"en": "United States"}},
    "subdivisions": [{"iso_code": "CA", "names": {"en": "California"}}],
    "city": {"names": {"en": "Mountain View"}},
    "postal": {"code": "94043"},
    "location": {"latitude": 37.4056, "longitude": -122.0775, "time_zone": "America/Los_Angeles"},
}

COUNTRY_RECORD = {
    "country": {"iso_code": "US", "names": {"en": "United States"}},
}

ASN_RECORD = {
    "autonomous_system_number": 15169,
    "autonomous_system_organization": "GOOGLE",
}


class FakeReader:
    """Stands in for a maxminddb reader: a dict of ip -> record"""

    def __init__(self, records, path=None):
        self.records = records
        self.path = path
        self.closed = False
        self.calls = []

    def get(self, ip):
        if self.closed:
            raise ValueError("Attempt to read from a closed MaxMind DB.")
        self.calls.append(ip)
        return self.records.get(ip)

    def close(self):
        self.closed = True


class FakeOpener:
    """Reader factory that parses JSON 'databases' and remembers what it opened"""

    def __init__(self):
        self.readers = []
        self._lock = threading.Lock()

    def __call__(self, path):
        try:
            records = json.loads(Path(path).read_text())
        except ValueError as e:
            raise ValueError(f"Error opening database file ({path}). Is this a valid MaxMind DB file?") from e
        reader = FakeReader(records, path)
        with self._lock:
            self.readers.append(reader)
        return reader


def write_db(path, records) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(records))
    return path


def make_archive(records, edition="GeoLite2-City", extra_files=None, fmt="w:gz") -> bytes:
    """Build a MaxMind-style archive: <edition>_<date>/<edition>.mmdb plus extras"""
    buf = io.BytesIO()
    members = {f"{edition}_20240101/{edition}.mmdb": json.dumps(records).encode()}
    members[f"{edition}_20240101/COPYRIGHT.txt"] = b"Database and Contents Copyright (c) MaxMind, Inc."
    members.update(extra_files or {})
    with tarfile.open(fileobj=buf, mode=fmt) as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def fake_session(archives):
    """requests.Session double: edition id in URL -> archive bytes or exception"""
    session = MagicMock()

    def get(url, stream=False, timeout=None):
        for edition, payload in archives.items():
            if f"edition_id={edition}" in url:
                if isinstance(payload, Exception):
                    raise payload
                response = MagicMock()
                response.__enter__.return_value = response
                response.__exit__.return_value = False
                response.raise_for_status.return_value = None
                response.iter_content.return_value = [payload[:10], payload[10:]]
                return response
        raise requests.ConnectionError(f"no route to {url}")

    session.get.side_effect = get
    return session


@pytest.fixture
def opener():
    return FakeOpener()


@pytest.fixture
def data_dir(tmp_path):
    d = tmp_path / "data"
    d.mkdir()
    return d


@pytest.fixture
def store(opener, data_dir):
    return DatabaseStore(opener=opener, data_dir=data_dir)


@pytest.fixture
def publish(store, data_dir):
    """Write a fake database file and publish it"""
    def _publish(db_type: DatabaseType, records):
        path = write_db(db_type.canonical_path(data_dir), records)
        return store.publish(db_type, path)
    return _publish


@pytest.fixture
def client(store):
    """TestClient over an app without lifespan (no disk load, no watcher)"""
    from fastapi.testclient import TestClient
    from iplookup.main import create_app

    pipeline = MagicMock()
    application = create_app(store=store, pipeline=pipeline, load_on_startup=False, reload_interval=0)
    test_client = TestClient(application)
    test_client.pipeline = pipeline
    return test_client
