"""
Pytest configuration and fixtures for organization crypto tests.
"""

from __future__ import annotations

import asyncio
import os
import secrets
from pathlib import Path
from typing import AsyncGenerator, Optional

import pytest
import asyncpg
from dotenv import load_dotenv

from org_crypto import (
    DekCache,
    DekResolver,
    InMemoryStorage,
    KmsClient,
    LocalKmsClient,
    OrgCrypto,
    PostgresStorage,
    TokenVault,
)
from org_crypto.config import KmsProvider


class FakeClock:
    """Manually advanced monotonic clock for cache TTL tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingKms(KmsClient):
    """Local wrapper that counts calls; can be slowed down or told to fail."""

    provider = KmsProvider.LOCAL

    def __init__(self, inner: Optional[LocalKmsClient] = None) -> None:
        self.inner = inner or LocalKmsClient(secrets.token_bytes(32))
        self.wrap_calls = 0
        self.unwrap_calls = 0
        self.fail_with: Optional[Exception] = None
        self.delay = 0.0

    async def wrap_key(self, plaintext_key: bytes) -> bytes:
        self.wrap_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return await self.inner.wrap_key(plaintext_key)

    async def unwrap_key(self, wrapped_blob: bytes) -> bytes:
        self.unwrap_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return await self.inner.unwrap_key(wrapped_blob)


@pytest.fixture
def memory_storage() -> InMemoryStorage:
    """Create an in-memory storage instance for testing."""
    return InMemoryStorage()


@pytest.fixture
def kms() -> CountingKms:
    return CountingKms()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dek_cache(clock: FakeClock) -> DekCache:
    return DekCache(ttl_seconds=300, max_entries=16, clock=clock)


@pytest.fixture
def resolver(
    memory_storage: InMemoryStorage, kms: CountingKms, dek_cache: DekCache
) -> DekResolver:
    return DekResolver(memory_storage, kms, dek_cache)


@pytest.fixture
def org_crypto(resolver: DekResolver) -> OrgCrypto:
    return OrgCrypto(resolver)


@pytest.fixture
def token_vault(org_crypto: OrgCrypto, memory_storage: InMemoryStorage) -> TokenVault:
    return TokenVault(org_crypto, memory_storage)


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    # Load environment from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    schema = (Path(__file__).parent.parent / "schema.sql").read_text()
    await pool.execute(schema)
    await pool.execute("TRUNCATE TABLE org_deks, secure_tokens")

    yield pool

    await pool.close()


@pytest.fixture
async def postgres_storage(pg_pool: asyncpg.Pool) -> PostgresStorage:
    """Create a PostgreSQL storage instance for testing."""
    return PostgresStorage(pg_pool)
