"""
Pytest configuration and fixtures for yield-allocator tests.

This conftest.py provides shared fixtures for all tests: a controllable
clock, an in-memory state store and a small set of feed records.
"""
import pytest

from infra.state_store import MemoryStateBackend, StateStore
from tests.helpers import FakeClock, make_opportunity


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return StateStore(backend=MemoryStateBackend())


@pytest.fixture
def blue_chip():
    return make_opportunity()


@pytest.fixture
def sample_opportunities():
    return [
        make_opportunity(),
        make_opportunity(id="compound-usdc-eth", protocol_name="compound", apy=4.0, tvl=900_000_000),
        make_opportunity(id="aave-usdc-base", chain="base", apy=6.0, tvl=250_000_000),
        make_opportunity(
            id="moonfarm-base",
            protocol_name="moonfarm",
            chain="base",
            apy=38.0,
            tvl=4_000_000,
            protocol_type="yield_aggregator",
            risk_attributes={
                "protocol_age_years": 0.3,
                "contract_complexity": "very_complex",
                "is_upgradeable": True,
                "oracle_dependencies": 3,
                "protocol_dependencies": 4,
                "liquidity_depth": "shallow",
                "apy_volatility_30d": 25,
                "apy_volatility_90d": 40,
            },
        ),
    ]
