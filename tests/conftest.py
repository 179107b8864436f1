"""Shared fixtures."""
import pytest

from dexarb.core import funding
from dexarb.models import Token, Venue


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def weth():
    return Token(funding.WETH, "WETH", 18)


@pytest.fixture
def usdc():
    return Token(funding.USDC, "USDC", 6)


@pytest.fixture
def dai():
    return Token(funding.DAI, "DAI", 18)


@pytest.fixture
def venues():
    return [Venue("v1", "Venue One"), Venue("v2", "Venue Two")]
