from __future__ import annotations

import os
import stat
import threading

import pytest
import requests

from conftest import FakeResponse, FakeSession, files_in, redirect_chain
from media_service.conversion import HttpExecutableProvisioner
from media_service.conversion.errors import DownloadFailed, InvalidArtifact, TooManyRedirects

BASE = "https://dl.example/yt-dlp"
MIN_BYTES = 1000
BINARY = [b"\x7fELF" + b"x" * 596, b"y" * 600]


def _provisioner(tmp_path, session, **kwargs) -> HttpExecutableProvisioner:
    return HttpExecutableProvisioner(
        tmp_path / "bin" / "yt-dlp",
        f"{BASE}/0",
        min_size_bytes=MIN_BYTES,
        session=session,
        **kwargs,
    )


def test_ensure_downloads_once_and_reuses(tmp_path) -> None:
    session = FakeSession({f"{BASE}/0": FakeResponse(200, chunks=BINARY)})
    prov = _provisioner(tmp_path, session)

    first = prov.ensure()
    second = prov.ensure()

    assert session.requests == [f"{BASE}/0"]
    assert first.verified and second.verified
    assert first.size_bytes == 1200
    assert second.path == first.path
    assert first.path.read_bytes() == b"".join(BINARY)


def test_installed_file_is_executable(tmp_path) -> None:
    session = FakeSession({f"{BASE}/0": FakeResponse(200, chunks=BINARY)})
    exe = _provisioner(tmp_path, session).ensure()

    mode = exe.path.stat().st_mode
    assert mode & stat.S_IXUSR
    assert os.access(exe.path, os.X_OK)


def test_existing_file_is_trusted_without_download(tmp_path) -> None:
    target = tmp_path / "bin" / "yt-dlp"
    target.parent.mkdir()
    target.write_bytes(b"tiny")
    session = FakeSession({})

    exe = _provisioner(tmp_path, session).ensure()

    assert session.requests == []
    assert exe.size_bytes == 4


def test_current_does_not_download(tmp_path) -> None:
    session = FakeSession({})
    assert _provisioner(tmp_path, session).current() is None
    assert session.requests == []


def test_follows_five_redirects(tmp_path) -> None:
    session = FakeSession(redirect_chain(BASE, 5, FakeResponse(200, chunks=BINARY)))

    exe = _provisioner(tmp_path, session).ensure()

    assert len(session.requests) == 6
    assert exe.path.exists()


def test_sixth_redirect_fails(tmp_path) -> None:
    session = FakeSession(redirect_chain(BASE, 6, FakeResponse(200, chunks=BINARY)))
    prov = _provisioner(tmp_path, session)

    with pytest.raises(TooManyRedirects):
        prov.ensure()
    assert not prov.path.exists()
    assert files_in(prov.path.parent) == []


def test_relative_redirect_is_resolved(tmp_path) -> None:
    session = FakeSession({
        f"{BASE}/0": FakeResponse(301, {"Location": "/assets/yt-dlp_linux"}),
        "https://dl.example/assets/yt-dlp_linux": FakeResponse(200, chunks=BINARY),
    })

    _provisioner(tmp_path, session).ensure()

    assert session.requests[-1] == "https://dl.example/assets/yt-dlp_linux"


def test_non_2xx_final_response(tmp_path) -> None:
    session = FakeSession({f"{BASE}/0": FakeResponse(404)})

    with pytest.raises(DownloadFailed) as exc_info:
        _provisioner(tmp_path, session).ensure()
    assert exc_info.value.http_status == 404
    assert exc_info.value.status_code == 500


def test_small_download_is_rejected(tmp_path) -> None:
    page = [b"<html>Moved</html>"]
    session = FakeSession({f"{BASE}/0": FakeResponse(200, chunks=page)})
    prov = _provisioner(tmp_path, session)

    with pytest.raises(InvalidArtifact) as exc_info:
        prov.ensure()
    assert exc_info.value.size_bytes == len(page[0])
    assert not prov.path.exists()
    # No partial temp file left behind either
    assert files_in(prov.path.parent) == []


def test_network_error_is_download_failure(tmp_path) -> None:
    class BrokenSession:
        def get(self, url, **kwargs):
            raise requests.ConnectionError("connection refused")

    with pytest.raises(DownloadFailed) as exc_info:
        _provisioner(tmp_path, BrokenSession()).ensure()
    assert exc_info.value.http_status is None
    assert "connection refused" in str(exc_info.value)


def test_concurrent_first_callers_share_one_download(tmp_path) -> None:
    gate = threading.Event()

    class SlowSession(FakeSession):
        def get(self, url, **kwargs):
            gate.wait(timeout=5)
            return super().get(url, **kwargs)

    session = SlowSession({f"{BASE}/0": FakeResponse(200, chunks=BINARY)})
    prov = _provisioner(tmp_path, session)
    results = []
    threads = [threading.Thread(target=lambda: results.append(prov.ensure())) for _ in range(4)]
    for t in threads:
        t.start()
    gate.set()
    for t in threads:
        t.join(timeout=10)

    assert len(results) == 4
    assert session.requests == [f"{BASE}/0"]
    assert {r.path for r in results} == {prov.path}
