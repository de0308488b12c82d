from __future__ import annotations

import argparse
import asyncio
import logging
import os
import unittest
from unittest.mock import AsyncMock, patch

from main import parse_amount, parse_args
from subscription_orchestrator.runtime import AppSettings, bootstrap_dependencies, wait_with_stop
from subscription_orchestrator.runtime.settings import DEFAULT_VERIFY_DELAYS, to_delays
from subscription_orchestrator.storage import StorageSettings


class SettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            app_settings = AppSettings.from_env()
            storage_settings = StorageSettings.from_env()

        self.assertEqual(app_settings.chain_id, 8453)
        self.assertEqual(app_settings.bundler_url, app_settings.rpc_url)
        self.assertEqual(app_settings.submit_timeout_seconds, 60.0)
        self.assertEqual(app_settings.confirm_timeout_seconds, 120.0)
        self.assertEqual(app_settings.poll_interval_seconds, 10.0)
        self.assertEqual(app_settings.poll_max_attempts, 30)
        self.assertEqual(app_settings.recovery_poll_attempts, 3)
        self.assertEqual(app_settings.ledger_max_age_seconds, 86_400.0)
        self.assertEqual(app_settings.approval_verify_delays, DEFAULT_VERIFY_DELAYS)
        self.assertIsNone(app_settings.sponsored_policy_id)
        self.assertEqual(storage_settings.ledger_key, "pending_operations:default")

    def test_overrides_are_clamped(self) -> None:
        env = {
            "BUNDLER_URL": "https://bundler.example/rpc",
            "POLL_MAX_ATTEMPTS": "0",
            "SUBMIT_TIMEOUT_SECONDS": "abc",
            "SPONSORED_POLICY_ID": "  policy-1 ",
            "LEDGER_NAMESPACE": "team/a",
        }
        with patch.dict(os.environ, env, clear=True):
            app_settings = AppSettings.from_env()
            storage_settings = StorageSettings.from_env()

        self.assertEqual(app_settings.bundler_url, "https://bundler.example/rpc")
        self.assertEqual(app_settings.poll_max_attempts, 1)
        self.assertEqual(app_settings.submit_timeout_seconds, 60.0)
        self.assertEqual(app_settings.sponsored_policy_id, "policy-1")
        self.assertEqual(storage_settings.ledger_key, "pending_operations:team-a")

    def test_verify_delays(self) -> None:
        self.assertEqual(to_delays("1, 2.5,3", (9.0,)), (1.0, 2.5, 3.0))
        self.assertEqual(to_delays("1,-2", (9.0,)), (9.0,))
        self.assertEqual(to_delays("", (9.0,)), (9.0,))


class CommandLineTests(unittest.TestCase):
    def test_parse_amount_scales_by_decimals(self) -> None:
        self.assertEqual(parse_amount("12.5", 18), 12_500_000_000_000_000_000)
        self.assertEqual(parse_amount("0", 6), 0)
        with self.assertRaises(argparse.ArgumentTypeError):
            parse_amount("-1", 18)
        with self.assertRaises(argparse.ArgumentTypeError):
            parse_amount("lots", 18)

    def test_create_arguments(self) -> None:
        args = parse_args(["create", "--name", "Alice", "--symbol", "ALICE", "--hub-id", "1", "--deposit", "5"])

        self.assertEqual(args.command, "create")
        self.assertEqual(args.hub_id, 1)
        self.assertEqual(args.deposit, "5")

    def test_retry_requires_handle(self) -> None:
        self.assertEqual(parse_args(["retry", "0xop1"]).handle, "0xop1")


class BootstrapTests(unittest.IsolatedAsyncioTestCase):
    async def test_retries_until_dependencies_connect(self) -> None:
        storage = AsyncMock()
        client = AsyncMock()
        client.connect = AsyncMock(side_effect=[RuntimeError("rpc down"), None])
        with patch.dict(os.environ, {"ERROR_BACKOFF_SECONDS": "0.2"}, clear=True):
            app_settings = AppSettings.from_env()

        await bootstrap_dependencies(
            logger=logging.getLogger("test.bootstrap"),
            stop_event=asyncio.Event(),
            app_settings=app_settings,
            storage=storage,
            clients=[client],
        )

        self.assertEqual(storage.connect.await_count, 2)
        self.assertEqual(client.connect.await_count, 2)
        storage.publish_event.assert_awaited_once()
        client.close.assert_awaited_once()

    async def test_stop_requested_before_connect(self) -> None:
        stop_event = asyncio.Event()
        stop_event.set()

        with self.assertRaises(RuntimeError):
            await bootstrap_dependencies(
                logger=logging.getLogger("test.bootstrap"),
                stop_event=stop_event,
                app_settings=AppSettings.from_env(),
                storage=AsyncMock(),
            )

    async def test_wait_with_stop_returns_early(self) -> None:
        stop_event = asyncio.Event()
        stop_event.set()

        await asyncio.wait_for(wait_with_stop(stop_event, 30), timeout=1)


if __name__ == "__main__":
    unittest.main()
