"""Address validation, fee math and the retry helper."""

import asyncio
from decimal import Decimal

import pytest

from handlers.utils import get_explorer_url, is_valid_address, is_valid_tron_address, short_hash
from services.fee_service import calculate_fee
from utils.retry import is_transient, with_retry


class TestAddressValidation:

    def test_evm_address(self):
        assert is_valid_address("0x" + "ab" * 20, "BSC")
        assert not is_valid_address("0x" + "ab" * 19, "BSC")
        assert not is_valid_address("0x" + "zz" * 20, "ETH")

    def test_tron_address_checksum(self):
        assert is_valid_tron_address("TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t")
        # one character changed breaks the checksum
        assert not is_valid_tron_address("TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6u")

    def test_unknown_chain_rejected(self):
        assert not is_valid_address("0x" + "ab" * 20, "NOPE")

    def test_explorer_links(self):
        assert get_explorer_url("BSC", "0xabc") == "https://bscscan.com/tx/0xabc"
        assert get_explorer_url("TRON", "abc").startswith("https://tronscan.org")
        assert short_hash("0x" + "a" * 64) == "0xaaaaaaaa...aaaaaa"


class TestFees:

    def test_fee_truncated_to_token_precision(self):
        fee, remaining = calculate_fee(Decimal("33.333333"), 6)
        assert fee == Decimal("0.333333")
        assert remaining == Decimal("33")

    def test_fee_disabled(self, monkeypatch):
        import config
        monkeypatch.setattr(config, "ESCROW_FEE_PERCENT", Decimal("0"))
        assert calculate_fee("50") == (Decimal("0"), Decimal("50"))


class TestWithRetry:

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise asyncio.TimeoutError()
            return "ok"

        assert await with_retry(flaky, delay=0) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_permanent_errors_propagate_immediately(self):
        calls = []

        async def broken():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await with_retry(broken, delay=0)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        async def down():
            raise ConnectionError("refused")

        with pytest.raises(ConnectionError):
            await with_retry(down, retries=2, delay=0)

    def test_classification(self):
        assert is_transient(asyncio.TimeoutError())
        assert not is_transient(KeyError("x"))
