from __future__ import annotations

import logging
import unittest
from unittest.mock import AsyncMock

import base58
from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from paymaster.relay import FeeTransferValidator, RelayPipeline
from paymaster.runtime import build_app
from paymaster.storage import MemoryCache

from relay_fixtures import FEE_PAYER, TOKEN_FEE, build_transaction, fake_network, token_transfer_ix


def _encode(transaction) -> str:
    return base58.b58encode(bytes(transaction)).decode("ascii")


class TransferEndpointTests(AioHTTPTestCase):
    async def get_application(self) -> web.Application:
        self.healthy = True
        self.network = fake_network()
        self.cache = MemoryCache()
        self.cache.set_if_absent = AsyncMock(side_effect=self.cache.set_if_absent)  # type: ignore[method-assign]
        pipeline = RelayPipeline(
            logger=logging.getLogger("test.server"),
            cache=self.cache,
            network=self.network,
            fee_payer=FEE_PAYER,
            transfer_validator=FeeTransferValidator(allowed_tokens=[TOKEN_FEE]),
            max_signatures=2,
            fee_ceiling=10_000,
        )
        return build_app(
            pipeline=pipeline,
            logger=logging.getLogger("test.server"),
            healthchecks=[self._healthcheck],
            cors_origin="https://wallet.example",
        )

    async def _healthcheck(self) -> None:
        if not self.healthy:
            raise ConnectionError("cache unreachable")

    async def test_valid_transfer_returns_confirmed_signature(self) -> None:
        payload = {"transaction": _encode(build_transaction([token_transfer_ix()]))}

        response = await self.client.post("/api/transfer", json=payload)

        self.assertEqual(response.status, 200)
        self.assertEqual(await response.json(), {"status": "ok", "signature": "confirmed-signature"})
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "https://wallet.example")

    async def test_missing_transaction_field_is_rejected_without_cache_writes(self) -> None:
        response = await self.client.post("/api/transfer", json={})

        self.assertEqual(response.status, 400)
        self.assertEqual(
            await response.json(),
            {"status": "error", "message": "request should contain transaction"},
        )
        self.cache.set_if_absent.assert_not_awaited()

    async def test_undecodable_transaction_is_rejected_without_cache_writes(self) -> None:
        response = await self.client.post("/api/transfer", json={"transaction": "not-base58-0OIl"})

        self.assertEqual(response.status, 400)
        self.assertEqual((await response.json())["message"], "can't decode transaction")
        self.cache.set_if_absent.assert_not_awaited()
        self.network.get_fee_for_message.assert_not_awaited()

    async def test_non_json_body_is_treated_as_missing_transaction(self) -> None:
        response = await self.client.post("/api/transfer", data=b"transaction=abc")

        self.assertEqual(response.status, 400)
        self.assertEqual((await response.json())["message"], "request should contain transaction")

    async def test_replayed_transfer_returns_duplicate_message(self) -> None:
        payload = {"transaction": _encode(build_transaction([token_transfer_ix()]))}
        await self.client.post("/api/transfer", json=payload)

        response = await self.client.post("/api/transfer", json=payload)

        self.assertEqual(response.status, 400)
        self.assertEqual((await response.json())["message"], "duplicate transaction")

    async def test_preflight_returns_cors_headers(self) -> None:
        response = await self.client.options("/api/transfer")

        self.assertEqual(response.status, 204)
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "https://wallet.example")
        self.assertIn("POST", response.headers["Access-Control-Allow-Methods"])
        self.assertEqual(response.headers["Access-Control-Allow-Headers"], "Content-Type")

    async def test_health_reports_dependency_state(self) -> None:
        response = await self.client.get("/api/health")
        self.assertEqual(response.status, 200)

        self.healthy = False
        response = await self.client.get("/api/health")
        self.assertEqual(response.status, 503)


if __name__ == "__main__":
    unittest.main()
