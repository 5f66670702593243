"""Fixtures for pg_backuper tests."""

from __future__ import annotations

import pytest

from pg_backuper.s3client import ObjectStoreClient

from .fakes import FakeS3, client_config


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_client(fake_s3, sleeps):
    """Build an ObjectStoreClient wired to the fake endpoint."""
    clients = []

    def factory(**overrides) -> ObjectStoreClient:
        client = ObjectStoreClient(client_config(**overrides), transport=fake_s3.transport, sleep=sleeps.append)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()
