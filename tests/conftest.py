"""Shared fixtures."""

import pytest

from helpers import GatewayStub
from store.memory import InMemoryConversationStore


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
def gateway(gateway_stub):
    return gateway_stub.client()


@pytest.fixture
def memory_store():
    return InMemoryConversationStore()
