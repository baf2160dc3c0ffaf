"""
Tests for the refresh pipeline
"""

import io
import zipfile
from unittest.mock import MagicMock

import pytest
import requests

from iplookup import config
from iplookup.errors import (
    AmbiguousPayloadError,
    ExtractionError,
    PayloadNotFoundError,
)
from iplookup.geo.lookup import LookupEngine
from iplookup.geo.refresh import RefreshPipeline, extract_archive, find_payload, redact_url
from iplookup.geo.store import DatabaseStore
from iplookup.geo.types import DatabaseType
from tests.conftest import (
    ASN_RECORD,
    CITY_RECORD,
    COUNTRY_RECORD,
    GOOGLE_IP,
    FakeOpener,
    fake_session,
    make_archive,
    write_db,
)

ARCHIVES = {
    "GeoLite2-Country": make_archive({GOOGLE_IP: COUNTRY_RECORD}, edition="GeoLite2-Country"),
    "GeoLite2-City": make_archive({GOOGLE_IP: CITY_RECORD}, edition="GeoLite2-City"),
    "GeoLite2-ASN": make_archive({GOOGLE_IP: ASN_RECORD}, edition="GeoLite2-ASN"),
}


def make_pipeline(store, data_dir, archives=None, **kwargs):
    kwargs.setdefault("license_key", "test-key")
    return RefreshPipeline(
        store=store,
        data_dir=data_dir,
        session=fake_session(archives if archives is not None else ARCHIVES),
        **kwargs,
    )


class TestFindPayload:

    def test_nested_single_match(self, tmp_path):
        target = tmp_path / "GeoLite2-City_20240101" / "GeoLite2-City.mmdb"
        target.parent.mkdir()
        target.write_bytes(b"x")
        (target.parent / "LICENSE.txt").write_text("license")

        assert find_payload(tmp_path) == target

    def test_no_match(self, tmp_path):
        (tmp_path / "README.txt").write_text("nothing here")
        with pytest.raises(PayloadNotFoundError):
            find_payload(tmp_path)

    def test_multiple_matches(self, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "a" / "one.mmdb").write_bytes(b"1")
        (tmp_path / "two.mmdb").write_bytes(b"2")
        with pytest.raises(AmbiguousPayloadError) as exc_info:
            find_payload(tmp_path)
        assert "one.mmdb" in str(exc_info.value)

    def test_depth_is_bounded(self, tmp_path):
        deep = tmp_path / "a" / "b" / "c"
        deep.mkdir(parents=True)
        (deep / "GeoLite2-ASN.mmdb").write_bytes(b"x")

        assert find_payload(tmp_path, max_depth=3) == deep / "GeoLite2-ASN.mmdb"
        with pytest.raises(PayloadNotFoundError):
            find_payload(tmp_path, max_depth=2)

    def test_errors_are_extraction_errors(self):
        assert issubclass(PayloadNotFoundError, ExtractionError)
        assert issubclass(AmbiguousPayloadError, ExtractionError)


class TestExtractArchive:

    def test_tar_gz(self, tmp_path):
        archive = tmp_path / "db.tar.gz"
        archive.write_bytes(ARCHIVES["GeoLite2-City"])
        dest = tmp_path / "out"
        dest.mkdir()

        extract_archive(archive, dest)

        assert (dest / "GeoLite2-City_20240101" / "GeoLite2-City.mmdb").exists()

    def test_zip(self, tmp_path):
        archive = tmp_path / "db.zip"
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("GeoLite2-Country_20240101/GeoLite2-Country.mmdb", "{}")
        archive.write_bytes(buf.getvalue())
        dest = tmp_path / "out"
        dest.mkdir()

        extract_archive(archive, dest)

        assert find_payload(dest).name == "GeoLite2-Country.mmdb"

    def test_corrupt_archive(self, tmp_path):
        archive = tmp_path / "db.tar.gz"
        archive.write_bytes(b"\x1f\x8b this is not gzip at all")
        with pytest.raises(ExtractionError):
            extract_archive(archive, tmp_path)

    def test_path_traversal_rejected(self, tmp_path):
        archive = tmp_path / "evil.tar.gz"
        archive.write_bytes(make_archive({}, extra_files={"../../escape.mmdb": b"x"}))
        dest = tmp_path / "out"
        dest.mkdir()
        with pytest.raises(ExtractionError):
            extract_archive(archive, dest)
        assert not (tmp_path / "escape.mmdb").exists()


class TestRefreshPipeline:

    def test_full_refresh_publishes_everything(self, store, data_dir):
        pipeline = make_pipeline(store, data_dir)

        report = pipeline.refresh()

        assert report.status == "ok"
        assert [j.db_type for j in report.jobs] == list(DatabaseType)
        assert all(store.get(t) is not None for t in DatabaseType)
        for t in DatabaseType:
            assert t.canonical_path(data_dir).exists()

        record = LookupEngine(store).lookup(GOOGLE_IP)
        assert record.location.city == "Mountain View"
        assert record.network.asn == 15169

    def test_scratch_is_cleaned(self, store, data_dir):
        make_pipeline(store, data_dir).refresh()

        scratch = data_dir / "tmp"
        assert list(scratch.iterdir()) == []
        assert not any(p.name.endswith((".tmp", ".prev")) for p in data_dir.iterdir())

    def test_scratch_is_cleaned_on_failure(self, store, data_dir):
        broken = {"GeoLite2-City": make_archive({}, extra_files={"other/second.mmdb": b"{}"})}
        report = make_pipeline(store, data_dir, archives=broken).refresh([DatabaseType.CITY])

        assert report.status == "failed"
        assert "AmbiguousPayloadError" in report.jobs[0].reason
        assert list((data_dir / "tmp").iterdir()) == []
        assert store.get(DatabaseType.CITY) is None

    def test_refresh_is_idempotent(self, store, data_dir):
        pipeline = make_pipeline(store, data_dir)
        engine = LookupEngine(store)

        pipeline.refresh()
        first = engine.lookup(GOOGLE_IP).to_response()
        pipeline.refresh()
        second = engine.lookup(GOOGLE_IP).to_response()

        assert first == second
        assert sorted(p.name for p in data_dir.iterdir()) == [
            "GeoLite2-ASN.mmdb", "GeoLite2-City.mmdb", "GeoLite2-Country.mmdb", "tmp",
        ]

    def test_network_failure_is_isolated(self, store, data_dir):
        archives = dict(ARCHIVES)
        archives["GeoLite2-ASN"] = requests.ConnectionError("connection reset")

        report = make_pipeline(store, data_dir, archives=archives).refresh()

        assert report.status == "degraded"
        outcomes = {j.db_type: j.ok for j in report.jobs}
        assert outcomes == {DatabaseType.COUNTRY: True, DatabaseType.CITY: True, DatabaseType.NETWORK: False}
        assert "TransferError" in report.jobs[2].reason

        record = LookupEngine(store).lookup(GOOGLE_IP).to_response()
        assert record["location"]["city"] == "Mountain View"
        assert record["network"] == {"isp": "Unknown", "organization": "Unknown", "asn": None, "asName": "Unknown"}

    def test_http_error_is_transfer_error(self, store, data_dir):
        session = MagicMock()
        response = MagicMock()
        response.__enter__.return_value = response
        response.__exit__.return_value = False
        response.raise_for_status.side_effect = requests.HTTPError("401 Client Error for url ...license_key=test-key")
        session.get.return_value = response
        pipeline = RefreshPipeline(store=store, data_dir=data_dir, license_key="test-key", session=session)

        job = pipeline.refresh_type(DatabaseType.COUNTRY)

        assert not job.ok
        assert job.reason.startswith("TransferError")
        assert "test-key" not in job.reason
        assert session.get.call_args.kwargs["timeout"] == pipeline.timeout

    def test_missing_license_key(self, store, data_dir):
        pipeline = make_pipeline(store, data_dir, license_key="")

        report = pipeline.refresh()

        assert report.status == "failed"
        assert all("MAXMIND_LICENSE_KEY" in j.reason for j in report.jobs)
        pipeline.session.get.assert_not_called()

    def test_load_failure_keeps_old_database(self, store, data_dir):
        make_pipeline(store, data_dir).refresh([DatabaseType.CITY])
        published = store.get(DatabaseType.CITY)
        before = DatabaseType.CITY.canonical_path(data_dir).read_bytes()

        bad = {"GeoLite2-City": _archive_with_payload(b"not a database")}
        report = make_pipeline(store, data_dir, archives=bad).refresh([DatabaseType.CITY])

        assert report.status == "failed"
        assert report.jobs[0].reason.startswith("LoadError")
        assert store.get(DatabaseType.CITY) is published
        assert DatabaseType.CITY.canonical_path(data_dir).read_bytes() == before
        assert LookupEngine(store).lookup(GOOGLE_IP).location.city == "Mountain View"
        assert not any(p.name.endswith((".tmp", ".prev")) for p in data_dir.iterdir())

    def test_load_failure_without_previous_file(self, store, data_dir):
        bad = {"GeoLite2-ASN": _archive_with_payload(b"garbage", edition="GeoLite2-ASN")}
        report = make_pipeline(store, data_dir, archives=bad).refresh([DatabaseType.NETWORK])

        assert report.status == "failed"
        assert not DatabaseType.NETWORK.canonical_path(data_dir).exists()

    def test_without_store_validates_before_install(self, opener, data_dir):
        write_db(DatabaseType.CITY.canonical_path(data_dir), {GOOGLE_IP: CITY_RECORD})
        before = DatabaseType.CITY.canonical_path(data_dir).read_bytes()
        bad = {"GeoLite2-City": _archive_with_payload(b"garbage")}
        pipeline = RefreshPipeline(data_dir=data_dir, license_key="k", session=fake_session(bad), opener=opener)

        job = pipeline.refresh_type(DatabaseType.CITY)

        assert not job.ok
        assert DatabaseType.CITY.canonical_path(data_dir).read_bytes() == before

    def test_without_store_installs_file(self, opener, data_dir):
        pipeline = RefreshPipeline(data_dir=data_dir, license_key="k", session=fake_session(ARCHIVES), opener=opener)

        report = pipeline.refresh([DatabaseType.NETWORK])

        assert report.status == "ok"
        assert report.jobs[0].path == DatabaseType.NETWORK.canonical_path(data_dir)
        assert all(r.closed for r in opener.readers)

    def test_report_dict_redacts_key(self, store, data_dir):
        report = make_pipeline(store, data_dir, license_key="secret-key").refresh([DatabaseType.COUNTRY])

        summary = report.to_dict()
        assert summary["status"] == "ok"
        assert "secret-key" not in summary["databases"][0]["source"]
        assert "edition_id=GeoLite2-Country" in summary["databases"][0]["source"]

    def test_installs_of_one_type_from_two_processes_do_not_collide(self, data_dir):
        other = RefreshPipeline(data_dir=data_dir, license_key="k", session=fake_session(ARCHIVES), opener=FakeOpener())
        other_jobs = []
        validating = FakeOpener()

        def opener(path):
            # the other process installs while this one holds a staged copy
            if not other_jobs:
                other_jobs.append(other.refresh_type(DatabaseType.CITY))
            return validating(path)

        pipeline = RefreshPipeline(data_dir=data_dir, license_key="k", session=fake_session(ARCHIVES), opener=opener)

        job = pipeline.refresh_type(DatabaseType.CITY)

        assert other_jobs[0].ok, other_jobs[0].reason
        assert job.ok, job.reason
        assert sorted(p.name for p in data_dir.iterdir()) == ["GeoLite2-City.mmdb", "tmp"]


class TestScratchLocation:

    @pytest.fixture
    def configured(self, tmp_path, monkeypatch):
        data, scratch = tmp_path / "data", tmp_path / "scratch"
        monkeypatch.setattr(config, "DATA_DIR", data)
        monkeypatch.setattr(config, "SCRATCH_DIR", scratch)
        return data, scratch

    def test_configured_scratch_dir_is_used(self, configured, opener):
        data, scratch = configured
        pipeline = RefreshPipeline(license_key="k", session=fake_session(ARCHIVES), opener=opener)

        assert pipeline.data_dir == data
        assert pipeline.scratch_dir == scratch

        report = pipeline.refresh([DatabaseType.CITY])

        assert report.status == "ok"
        assert scratch.is_dir()
        assert list(scratch.iterdir()) == []
        assert not (data / "tmp").exists()

    def test_store_on_configured_data_dir_uses_scratch_dir(self, configured, opener):
        data, scratch = configured
        store = DatabaseStore(opener=opener, data_dir=data)

        assert RefreshPipeline(store=store, license_key="k").scratch_dir == scratch

    def test_other_data_dir_gets_its_own_scratch(self, configured, tmp_path):
        other = tmp_path / "elsewhere"
        assert RefreshPipeline(data_dir=other, license_key="k").scratch_dir == other / "tmp"

    def test_explicit_scratch_dir_wins(self, configured, tmp_path):
        assert RefreshPipeline(scratch_dir=tmp_path / "mine", license_key="k").scratch_dir == tmp_path / "mine"


def _archive_with_payload(payload: bytes, edition="GeoLite2-City") -> bytes:
    import tarfile
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        info = tarfile.TarInfo(f"{edition}_20240102/{edition}.mmdb")
        info.size = len(payload)
        tar.addfile(info, io.BytesIO(payload))
    return buf.getvalue()


def test_redact_url():
    url = "https://download.maxmind.com/app/geoip_download?edition_id=GeoLite2-City&license_key=abc123&suffix=tar.gz"
    assert "abc123" not in redact_url(url)
    assert "license_key=%2A%2A%2A" in redact_url(url)
