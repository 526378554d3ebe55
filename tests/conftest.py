from __future__ import annotations

import time
from pathlib import Path

import pytest

from media_service.conversion import ProvisionedExecutable

# Parses the argv the runner builds: <kind args> ... -o DEST -- SOURCE
_PREAMBLE = """#!/bin/sh
out=""
src=""
args="$*"
while [ $# -gt 0 ]; do
  case "$1" in
    -o) out="$2"; shift 2 ;;
    --) src="$2"; shift 2 ;;
    *) shift ;;
  esac
done
"""


@pytest.fixture
def make_converter(tmp_path):
    """Write a stub converter script; ``body`` runs with $out, $src and $args set."""

    def _make(body: str) -> ProvisionedExecutable:
        path = tmp_path / "bin" / "yt-dlp"
        path.parent.mkdir(exist_ok=True)
        path.write_text(_PREAMBLE + body)
        path.chmod(0o755)
        return ProvisionedExecutable(path=path, verified=True, size_bytes=path.stat().st_size)

    return _make


class StaticProvisioner:
    def __init__(self, executable: ProvisionedExecutable) -> None:
        self.executable = executable
        self.calls = 0

    def ensure(self) -> ProvisionedExecutable:
        self.calls += 1
        return self.executable

    def current(self) -> ProvisionedExecutable | None:
        return self.executable


class FakeResponse:
    def __init__(self, status_code: int, headers: dict[str, str] | None = None, chunks: list[bytes] | None = None):
        self.status_code = status_code
        self.headers = headers or {}
        self._chunks = chunks or []
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        yield from self._chunks

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Serves canned responses keyed by URL and records every request."""

    def __init__(self, routes: dict[str, FakeResponse]) -> None:
        self.routes = routes
        self.requests: list[str] = []

    def get(self, url: str, **kwargs) -> FakeResponse:
        assert kwargs.get("allow_redirects") is False
        assert kwargs.get("stream") is True
        self.requests.append(url)
        return self.routes[url]


def redirect_chain(base: str, hops: int, final: FakeResponse) -> dict[str, FakeResponse]:
    routes: dict[str, FakeResponse] = {}
    for i in range(hops):
        routes[f"{base}/{i}"] = FakeResponse(302, {"Location": f"{base}/{i + 1}"})
    routes[f"{base}/{hops}"] = final
    return routes


def process_gone(pid: int, timeout: float = 2.0) -> bool:
    """True once ``pid`` has exited; zombies awaiting a reaper count as exited."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            stat = Path(f"/proc/{pid}/stat").read_text()
        except (FileNotFoundError, ProcessLookupError):
            return True
        if stat.rsplit(")", 1)[1].split()[0] in {"Z", "X"}:
            return True
        if time.monotonic() > deadline:
            return False
        time.sleep(0.05)


def files_in(directory: Path) -> list[str]:
    if not directory.exists():
        return []
    return sorted(p.name for p in directory.iterdir())
