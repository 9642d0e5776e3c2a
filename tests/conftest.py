import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@pytest.fixture(autouse=True)
def isolated_questline_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("QUESTLINE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("QUESTLINE_HTTP_CIRCUIT_BREAKER_ENABLED", "0")


@pytest.fixture(autouse=True)
def block_external_http(monkeypatch: pytest.MonkeyPatch) -> None:
    import httpx

    async def _deny_external_http(self, request):
        candidate = str(request.url)
        if candidate.startswith(("http://127.0.0.1", "http://localhost", "https://127.0.0.1", "https://localhost")):
            return await _original_handle(self, request)
        raise RuntimeError(f"External HTTP disabled during tests: {candidate}")

    _original_handle = httpx.AsyncHTTPTransport.handle_async_request
    monkeypatch.setattr(httpx.AsyncHTTPTransport, "handle_async_request", _deny_external_http)
