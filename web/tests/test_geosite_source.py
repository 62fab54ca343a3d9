import hashlib

import pytest

from services import geosite_source
from services.errors import ChecksumMismatch, GeositeNetworkError
from services.geosite_config import GeositeConfig
from services.geosite_db import DOMAIN
from services.geosite_source import (
    DEFAULT_DATABASE_PATH,
    FAILED,
    REPLACED,
    UNCHANGED,
    GeositeSource,
    check_and_update,
    sha256_hex,
)


SOURCE = "https://mirror.example/dlc.dat"
CHECKSUM = SOURCE + ".sha256sum"


def _fake_http(monkeypatch, responses):
    calls = []

    def fake_get(url, *, timeout_seconds, max_bytes):
        calls.append(url)
        r = responses[url]
        if isinstance(r, Exception):
            raise r
        return r

    monkeypatch.setattr(geosite_source, "_http_get", fake_get)
    return calls


def _sum_body(data: bytes) -> bytes:
    # sha256sum(1) output: lower-case hex, two spaces, file name.
    return (hashlib.sha256(data).hexdigest() + "  dlc.dat\n").encode()


def _source(tmp_path, raw: bytes) -> GeositeSource:
    db = tmp_path / "dlc.dat"
    db.write_bytes(raw)
    return GeositeSource(
        GeositeConfig(geosite_url=SOURCE, direct_groups=["cn"], proxied_groups=["geolocation-!cn"]),
        database_path=str(db),
    )


def test_sha256_hex_is_upper_case():
    assert sha256_hex(b"abc") == hashlib.sha256(b"abc").hexdigest().upper()


def test_unchanged_when_checksums_match(monkeypatch, example_dlc):
    calls = _fake_http(monkeypatch, {CHECKSUM: _sum_body(example_dlc)})
    result = check_and_update(SOURCE, example_dlc, checksum_url=CHECKSUM)
    assert result.status == UNCHANGED
    assert result.ok
    # The database itself is not downloaded.
    assert calls == [CHECKSUM]


def test_replaced_when_download_matches_digest(monkeypatch, example_dlc, build_dlc):
    new = build_dlc([("cn", [(DOMAIN, "new.cn", ())])])
    _fake_http(monkeypatch, {CHECKSUM: _sum_body(new), SOURCE: new})
    result = check_and_update(SOURCE, example_dlc, checksum_url=CHECKSUM)
    assert result.status == REPLACED
    assert result.data == new


def test_mismatch_is_reported_as_failure(monkeypatch, example_dlc, build_dlc):
    published = build_dlc([("cn", [(DOMAIN, "published.cn", ())])])
    corrupted = build_dlc([("cn", [(DOMAIN, "corrupted.cn", ())])])
    _fake_http(monkeypatch, {CHECKSUM: _sum_body(published), SOURCE: corrupted})
    result = check_and_update(SOURCE, example_dlc, checksum_url=CHECKSUM)
    assert result.status == FAILED
    assert isinstance(result.error, ChecksumMismatch)
    assert result.data is None


def test_malformed_checksum_is_a_failure(monkeypatch, example_dlc):
    _fake_http(monkeypatch, {CHECKSUM: b"<html>not found</html>"})
    result = check_and_update(SOURCE, example_dlc, checksum_url=CHECKSUM)
    assert result.status == FAILED
    assert isinstance(result.error, GeositeNetworkError)


def test_network_error_is_a_failure(monkeypatch, example_dlc):
    _fake_http(monkeypatch, {CHECKSUM: GeositeNetworkError("timed out")})
    result = check_and_update(SOURCE, example_dlc, checksum_url=CHECKSUM)
    assert result.status == FAILED
    assert "timed out" in result.reason


def test_http_get_rejects_non_http_scheme():
    with pytest.raises(GeositeNetworkError):
        geosite_source._http_get("file:///etc/passwd", timeout_seconds=1, max_bytes=10)


def test_seeds_database_from_packaged_default(tmp_path):
    db = tmp_path / "data" / "dlc.dat"
    src = GeositeSource(GeositeConfig(), database_path=str(db))

    with open(DEFAULT_DATABASE_PATH, "rb") as f:
        default = f.read()
    assert db.read_bytes() == default
    assert src.database_bytes == default
    assert "geolocation-!cn" in src.index


def test_empty_database_file_is_reseeded(tmp_path):
    db = tmp_path / "dlc.dat"
    db.write_bytes(b"")
    src = GeositeSource(GeositeConfig(), database_path=str(db))
    assert db.stat().st_size > 0
    assert "cn" in src.index


def test_corrupt_database_file_is_reseeded(tmp_path):
    db = tmp_path / "dlc.dat"
    db.write_bytes(b"\x0a\x64garbage")
    src = GeositeSource(GeositeConfig(), database_path=str(db))
    assert "cn" in src.index


def test_config_is_validated_against_index(tmp_path, build_dlc):
    raw = build_dlc([("cn", [(DOMAIN, "a.cn", ())]), ("geolocation-!cn", [(DOMAIN, "a.com", ())])])
    db = tmp_path / "dlc.dat"
    db.write_bytes(raw)
    src = GeositeSource(GeositeConfig(direct_groups=["nope"], proxied_groups=["cn"]), database_path=str(db))
    assert src.direct_groups == ["cn", "geolocation-!cn@cn"]
    assert src.proxied_groups == ["cn"]


def test_update_unchanged_keeps_index_reference(monkeypatch, tmp_path, example_dlc):
    src = _source(tmp_path, example_dlc)
    before = src.index
    _fake_http(monkeypatch, {CHECKSUM: _sum_body(example_dlc)})

    result = src.update_source()
    assert result.status == UNCHANGED
    assert src.index is before


def test_update_replaces_file_and_index(monkeypatch, tmp_path, example_dlc, build_dlc):
    src = _source(tmp_path, example_dlc)
    old_index = src.index
    new = build_dlc([("cn", [(DOMAIN, "fresh.cn", ())]), ("geolocation-!cn", [(DOMAIN, "fresh.com", ())])])
    _fake_http(monkeypatch, {CHECKSUM: _sum_body(new), SOURCE: new})

    result = src.update_source()
    assert result.status == REPLACED
    assert (tmp_path / "dlc.dat").read_bytes() == new
    assert src.database_bytes == new
    assert src.index is not old_index
    assert src.index.get("cn")[0].value == "fresh.cn"
    # Readers holding the old reference still see the old data.
    assert old_index.get("cn")[0].value == "example.cn"


def test_update_mismatch_leaves_everything_untouched(monkeypatch, tmp_path, example_dlc, build_dlc):
    src = _source(tmp_path, example_dlc)
    before_index = src.index
    published = build_dlc([("cn", [(DOMAIN, "published.cn", ())])])
    _fake_http(monkeypatch, {CHECKSUM: _sum_body(published), SOURCE: b"tampered"})

    errors = []
    result = src.update_source(error=errors.append)

    assert result.status == FAILED
    assert len(errors) == 1 and isinstance(errors[0], ChecksumMismatch)
    assert (tmp_path / "dlc.dat").read_bytes() == example_dlc
    assert src.database_bytes == example_dlc
    assert src.index is before_index


def test_update_network_failure_reports_error(monkeypatch, tmp_path, example_dlc):
    src = _source(tmp_path, example_dlc)
    _fake_http(monkeypatch, {CHECKSUM: GeositeNetworkError("HTTP 503")})

    errors = []
    result = src.update_source(error=errors.append)
    assert result.status == FAILED
    assert isinstance(errors[0], GeositeNetworkError)
    assert (tmp_path / "dlc.dat").read_bytes() == example_dlc


def test_verified_but_unparseable_download_is_not_applied(monkeypatch, tmp_path, example_dlc):
    src = _source(tmp_path, example_dlc)
    before_index = src.index
    bad = b"\x0a\x64truncated"
    _fake_http(monkeypatch, {CHECKSUM: _sum_body(bad), SOURCE: bad})

    result = src.update_source()
    assert result.status == FAILED
    assert (tmp_path / "dlc.dat").read_bytes() == example_dlc
    assert src.index is before_index


def test_generate_rules_uses_current_index(tmp_path, example_dlc):
    src = _source(tmp_path, example_dlc)
    assert src.generate_rules(["cn"], ["geolocation-!cn@cn"], True) == [
        "||cdn.example.com.cn",
        "@@||example.cn",
        "@@|http://www.example.cn",
        "@@|https://www.example.cn",
    ]


def test_second_instance_picks_up_replaced_database(monkeypatch, tmp_path, example_dlc, build_dlc):
    worker_a = _source(tmp_path, example_dlc)
    worker_b = _source(tmp_path, example_dlc)
    new = build_dlc([("cn", [(DOMAIN, "new.cn", ())]), ("geolocation-!cn", [(DOMAIN, "new.com", ())])])
    _fake_http(monkeypatch, {CHECKSUM: _sum_body(new), SOURCE: new})

    assert worker_b.update_source().status == REPLACED

    assert "@@||new.cn" in worker_a.generate_rules(["cn"], ["geolocation-!cn"], True)
    assert worker_a.database_bytes == new

    # Now in sync: the published digest matches and nothing is downloaded.
    calls = _fake_http(monkeypatch, {CHECKSUM: _sum_body(new)})
    assert worker_a.update_source().status == UNCHANGED
    assert calls == [CHECKSUM]


def test_unparseable_file_from_elsewhere_is_ignored(tmp_path, example_dlc):
    src = _source(tmp_path, example_dlc)
    before = src.index
    (tmp_path / "dlc.dat").write_bytes(b"\x0a\x64broken")
    assert src.reload_if_changed() is False
    assert src.index is before
    assert src.generate_rules(["cn"], [], True) == [
        "@@||example.cn",
        "@@|http://www.example.cn",
        "@@|https://www.example.cn",
    ]
