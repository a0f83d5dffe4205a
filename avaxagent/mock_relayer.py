"""A mock bundle relayer that accepts bundles and confirms them after a delay."""

from __future__ import annotations

import argparse
import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Optional

from aiohttp import web

CONFIRMATION_DELAY_SECONDS = 5
PROCESS_INTERVAL_SECONDS = 2.0
STATUS_INCLUSION_BLOCK = "0x1234"


@dataclass
class _Bundle:
    status: str
    submitted_at: int


def _validate_request(request: Any) -> None:
    if not isinstance(request, dict):
        raise ValueError("bundle request must be an object")
    for name in ("transactions", "reverting_hashes"):
        value = request.get(name)
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ValueError(f"field `{name}` must be a list of strings")
    if not isinstance(request.get("block_number"), str):
        raise ValueError("field `block_number` must be a string")
    for name in ("min_timestamp", "max_timestamp"):
        value = request.get(name)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
            raise ValueError(f"field `{name}` must be a non-negative integer")


class BundleStore:
    """In-memory bundle statuses keyed by bundle hash."""

    def __init__(self) -> None:
        self._bundles: dict[str, _Bundle] = {}

    def submit(self, request: dict[str, Any], now: int) -> dict[str, Any]:
        """Register a bundle as pending and return the submission response."""
        _validate_request(request)
        print(f"Received bundle with {len(request['transactions'])} transactions")
        bundle_hash = f"0x{random.getrandbits(64):016x}"
        self._bundles[bundle_hash] = _Bundle("pending", now)
        print(f"Created bundle with hash: {bundle_hash}")
        return {
            "bundle_hash": bundle_hash,
            "inclusion_block": request["block_number"],
            "status": "pending",
        }

    def status(self, bundle_hash: str) -> tuple[int, dict[str, Optional[str]]]:
        """HTTP status code and body for a bundle status request."""
        bundle = self._bundles.get(bundle_hash)
        if bundle is None:
            return 404, {
                "bundle_hash": bundle_hash,
                "status": "unknown",
                "inclusion_block": None,
                "error": "Bundle not found",
            }
        return 200, {
            "bundle_hash": bundle_hash,
            "status": bundle.status,
            "inclusion_block": STATUS_INCLUSION_BLOCK,
            "error": None,
        }

    def process(self, now: int) -> list[str]:
        """Confirm pending bundles old enough; return the hashes that changed."""
        updated = [
            bundle_hash
            for bundle_hash, bundle in self._bundles.items()
            if bundle.status == "pending"
            and now - bundle.submitted_at >= CONFIRMATION_DELAY_SECONDS
        ]
        for bundle_hash in updated:
            print(f"Updating bundle {bundle_hash} status to confirmed")
            self._bundles[bundle_hash].status = "confirmed"
        return updated


def create_app(store: BundleStore) -> web.Application:
    """HTTP application serving bundle submission and status routes."""

    async def submit_bundle(request: web.Request) -> web.Response:
        try:
            body = await request.json()
            response = store.submit(body, int(time.time()))
        except ValueError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        return web.json_response(response)

    async def bundle_status(request: web.Request) -> web.Response:
        code, body = store.status(request.match_info["bundle_hash"])
        return web.json_response(body, status=code)

    app = web.Application()
    app.router.add_post("/api/v1/bundle", submit_bundle)
    app.router.add_get("/api/v1/bundle/{bundle_hash}/status", bundle_status)
    return app


def main(argv: Optional[list[str]] = None) -> None:
    """Run the mock relayer until interrupted."""
    parser = argparse.ArgumentParser(description="Mock bundle relayer")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8545)
    args = parser.parse_args(argv)

    store = BundleStore()
    app = create_app(store)

    async def processor(_app: web.Application):
        async def loop() -> None:
            while True:
                store.process(int(time.time()))
                await asyncio.sleep(PROCESS_INTERVAL_SECONDS)

        task = asyncio.get_running_loop().create_task(loop())
        yield
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    app.cleanup_ctx.append(processor)
    print(f"Starting mock bundle relayer on port {args.port}")
    web.run_app(app, host=args.host, port=args.port, print=None)


if __name__ == "__main__":
    main()