from __future__ import annotations

import logging
import unittest
from unittest.mock import AsyncMock

from paymaster.relay import (
    AllowAllGate,
    FeeTransferValidator,
    ReCaptchaGate,
    RelayError,
    RelayPipeline,
    message_digest,
)
from paymaster.storage import MemoryCache

from relay_fixtures import (
    CLIENT,
    FEE_PAYER,
    SOURCE_TOKEN_ACCOUNT,
    TOKEN_FEE,
    build_transaction,
    fake_network,
    token_transfer_ix,
)


class FakeClock:
    def __init__(self, now_ms: int = 5_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


def _make_pipeline(network, cache, *, clock=None, gate=None, fee_ceiling: int = 10_000) -> RelayPipeline:
    clock = clock or FakeClock()
    return RelayPipeline(
        logger=logging.getLogger("test.pipeline"),
        cache=cache,
        network=network,
        fee_payer=FEE_PAYER,
        transfer_validator=FeeTransferValidator(allowed_tokens=[TOKEN_FEE]),
        max_signatures=2,
        fee_ceiling=fee_ceiling,
        return_signature_gate=gate,
        clock=clock,
    )


class RelayPipelineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.cache = MemoryCache(clock=self.clock)
        self.network = fake_network()

    async def test_accepted_transaction_populates_both_caches(self) -> None:
        pipeline = _make_pipeline(self.network, self.cache, clock=self.clock)
        transaction = build_transaction([token_transfer_ix()])

        signed, transfer = await pipeline.sign(transaction)

        self.assertTrue(all(signed.transaction.verify_with_results()))
        self.assertEqual(transfer.source, SOURCE_TOKEN_ACCOUNT)
        digest = message_digest(transaction.message)
        self.assertIsNotNone(await self.cache.get(f"transaction/{digest}"))
        self.assertEqual(
            await self.cache.get(f"transfer/lastSignature/{SOURCE_TOKEN_ACCOUNT}"),
            self.clock.now_ms,
        )
        self.network.simulate.assert_awaited_once_with(signed.transaction)

    async def test_replayed_message_is_rejected_as_duplicate(self) -> None:
        pipeline = _make_pipeline(self.network, self.cache, clock=self.clock)
        transaction = build_transaction([token_transfer_ix()])
        await pipeline.sign(transaction)
        self.clock.now_ms += 60_000

        with self.assertRaises(RelayError) as ctx:
            await pipeline.sign(transaction)
        self.assertEqual(ctx.exception.kind, "DUPLICATE_TRANSACTION")
        self.assertEqual(self.network.get_fee_for_message.await_count, 1)

    async def test_second_transfer_from_same_source_inside_window_is_locked_out(self) -> None:
        pipeline = _make_pipeline(self.network, self.cache, clock=self.clock)
        await pipeline.sign(build_transaction([token_transfer_ix(amount=10_000)]))
        self.clock.now_ms += 1_000

        with self.assertRaises(RelayError) as ctx:
            await pipeline.sign(build_transaction([token_transfer_ix(amount=10_001)]))
        self.assertEqual(ctx.exception.kind, "DUPLICATE_TRANSFER")
        self.assertEqual(self.network.simulate.await_count, 1)

    async def test_second_transfer_after_window_is_accepted(self) -> None:
        pipeline = _make_pipeline(self.network, self.cache, clock=self.clock)
        await pipeline.sign(build_transaction([token_transfer_ix(amount=10_000)]))
        self.clock.now_ms += 5_000

        await pipeline.sign(build_transaction([token_transfer_ix(amount=10_001)]))

    async def test_digest_marker_survives_later_rejection(self) -> None:
        network = fake_network(fee=20_000)
        pipeline = _make_pipeline(network, self.cache, clock=self.clock)
        transaction = build_transaction([token_transfer_ix()])

        with self.assertRaises(RelayError) as ctx:
            await pipeline.sign(transaction)
        self.assertEqual(ctx.exception.kind, "FEE_TOO_HIGH")

        digest = message_digest(transaction.message)
        self.assertIsNotNone(await self.cache.get(f"transaction/{digest}"))
        self.assertIsNone(await self.cache.get(f"transfer/lastSignature/{SOURCE_TOKEN_ACCOUNT}"))

        with self.assertRaises(RelayError) as ctx:
            await pipeline.sign(transaction)
        self.assertEqual(ctx.exception.kind, "DUPLICATE_TRANSACTION")

    async def test_simulation_failure_keeps_lockout(self) -> None:
        self.network.simulate.side_effect = RelayError("SIMULATION_FAILED", "custom program error")
        pipeline = _make_pipeline(self.network, self.cache, clock=self.clock)

        with self.assertRaises(RelayError) as ctx:
            await pipeline.sign(build_transaction([token_transfer_ix()]))
        self.assertEqual(ctx.exception.kind, "SIMULATION_FAILED")
        self.assertIsNotNone(await self.cache.get(f"transfer/lastSignature/{SOURCE_TOKEN_ACCOUNT}"))

    async def test_unexpected_network_error_is_wrapped_by_stage(self) -> None:
        self.network.get_account_data.side_effect = ConnectionError("rpc down")
        pipeline = _make_pipeline(self.network, self.cache, clock=self.clock)

        with self.assertRaises(RelayError) as ctx:
            await pipeline.sign(build_transaction([token_transfer_ix()]))
        self.assertEqual(ctx.exception.kind, "TRANSFER_VALIDATION_FAILED")
        self.assertIn("rpc down", ctx.exception.detail)

    async def test_cache_outage_is_reported_as_dependency_unavailable(self) -> None:
        cache = AsyncMock()
        cache.set_if_absent.side_effect = ConnectionError("redis down")
        pipeline = _make_pipeline(self.network, cache, clock=self.clock)

        with self.assertRaises(RelayError) as ctx:
            await pipeline.sign(build_transaction([token_transfer_ix()]))
        self.assertEqual(ctx.exception.kind, "DEPENDENCY_UNAVAILABLE")
        self.network.get_fee_for_message.assert_not_awaited()

    async def test_relay_submits_and_returns_confirmed_signature(self) -> None:
        pipeline = _make_pipeline(self.network, self.cache, clock=self.clock)

        outcome = await pipeline.relay(build_transaction([token_transfer_ix()]))

        self.assertTrue(outcome.submitted)
        self.assertEqual(outcome.signature, "confirmed-signature")
        self.assertEqual(outcome.source, str(SOURCE_TOKEN_ACCOUNT))
        self.network.submit_and_confirm.assert_awaited_once()

    async def test_relay_with_gate_returns_signature_without_submitting(self) -> None:
        pipeline = _make_pipeline(self.network, self.cache, clock=self.clock, gate=AllowAllGate())

        outcome = await pipeline.relay(build_transaction([token_transfer_ix()]))

        self.assertFalse(outcome.submitted)
        self.assertTrue(pipeline.returns_signature)
        self.network.submit_and_confirm.assert_not_awaited()

    async def test_relay_with_refusing_gate_is_rejected(self) -> None:
        gate = AsyncMock()
        gate.allows.return_value = False
        pipeline = _make_pipeline(self.network, self.cache, clock=self.clock, gate=gate)

        with self.assertLogs("test.pipeline", level="INFO") as captured:
            with self.assertRaises(RelayError) as ctx:
                await pipeline.relay(build_transaction([token_transfer_ix()]), {"reCaptchaToken": "bad"})
        self.assertEqual(ctx.exception.kind, "ANTI_SPAM_CHECK_FAILED")
        gate.allows.assert_awaited_once_with({"reCaptchaToken": "bad"})
        self.network.submit_and_confirm.assert_not_awaited()

        rejected = [record for record in captured.records if record.event == "relay_rejected"]
        self.assertEqual([record.stage for record in rejected], ["anti_spam"])

    async def test_submission_failure_is_logged_at_submit_stage(self) -> None:
        self.network.submit_and_confirm.side_effect = RelayError("SUBMISSION_FAILED", "blockhash expired")
        pipeline = _make_pipeline(self.network, self.cache, clock=self.clock)

        with self.assertLogs("test.pipeline", level="INFO") as captured:
            with self.assertRaises(RelayError) as ctx:
                await pipeline.relay(build_transaction([token_transfer_ix()]))
        self.assertEqual(ctx.exception.kind, "SUBMISSION_FAILED")

        rejected = [record for record in captured.records if record.event == "relay_rejected"]
        self.assertEqual([record.stage for record in rejected], ["submitted"])
        self.assertEqual(rejected[0].kind, "SUBMISSION_FAILED")

    async def test_end_to_end_fee_under_ceiling(self) -> None:
        network = fake_network(fee=5_000)
        pipeline = _make_pipeline(network, self.cache, clock=self.clock, fee_ceiling=10_000)
        transaction = build_transaction([token_transfer_ix()])

        signed, transfer = await pipeline.sign(transaction)

        self.assertEqual(signed.transaction.signatures[1], transaction.signatures[1])
        self.assertEqual(signed.transaction.message.account_keys[1], CLIENT.pubkey())
        self.assertEqual(transfer.amount, 10_000)
        self.assertIsNotNone(await self.cache.get(f"transaction/{message_digest(transaction.message)}"))
        self.assertIsNotNone(await self.cache.get(f"transfer/lastSignature/{SOURCE_TOKEN_ACCOUNT}"))


class ReCaptchaGateTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.gate = ReCaptchaGate(secret="site-secret", min_score=0.5, logger=logging.getLogger("test.gate"))

    async def test_missing_token_is_refused_without_verify_call(self) -> None:
        self.gate._verify = AsyncMock()  # type: ignore[method-assign]

        self.assertFalse(await self.gate.allows({}))
        self.gate._verify.assert_not_awaited()

    async def test_score_threshold_is_applied(self) -> None:
        self.gate._verify = AsyncMock(  # type: ignore[method-assign]
            side_effect=[{"success": True, "score": 0.4}, {"success": True, "score": 0.9}]
        )

        self.assertFalse(await self.gate.allows({"reCaptchaToken": "token"}))
        self.assertTrue(await self.gate.allows({"reCaptchaToken": "token"}))

    async def test_verify_outage_is_refused(self) -> None:
        self.gate._verify = AsyncMock(side_effect=RuntimeError("siteverify down"))  # type: ignore[method-assign]

        self.assertFalse(await self.gate.allows({"reCaptchaToken": "token"}))


if __name__ == "__main__":
    unittest.main()
