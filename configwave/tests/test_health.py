from __future__ import annotations

import threading
import urllib.error
import urllib.request

from configwave.src.health import start_health_server
from configwave.src.metrics import METRICS


def _get(url: str, timeout: float = 2) -> tuple[int, str, str]:
    """GET *url* and return (status_code, body, content_type)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode(), response.headers["Content-Type"]
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode(), exc.headers["Content-Type"]


class TestHealthServer:
    def setup_method(self) -> None:
        self.synced = threading.Event()
        self.depth = 0
        self.server = start_health_server(synced=self.synced, port=0, queue_depth=lambda: self.depth)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()
        self.server.server_close()

    def test_healthz_always_returns_200(self) -> None:
        status, body, _ = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_returns_503_until_synced(self) -> None:
        status, body, _ = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "synced=false queue=0"

    def test_readyz_reports_queue_depth_once_synced(self) -> None:
        self.synced.set()
        self.depth = 3

        status, body, _ = _get(f"{self.base_url}/readyz")

        assert status == 200
        assert body == "synced=true queue=3"

    def test_readyz_returns_503_after_sync_is_lost(self) -> None:
        self.synced.set()
        assert _get(f"{self.base_url}/readyz")[0] == 200

        self.synced.clear()
        assert _get(f"{self.base_url}/readyz")[0] == 503

    def test_metrics_exposes_controller_series(self) -> None:
        METRICS.hash_updates_total.labels(kind="Deployment").inc()

        status, body, content_type = _get(f"{self.base_url}/metrics")

        assert status == 200
        assert content_type.startswith("text/plain")
        assert "configwave_hash_updates_total" in body

    def test_unknown_path_returns_404(self) -> None:
        status, body, _ = _get(f"{self.base_url}/leadz")
        assert status == 404
        assert body == "not found"
