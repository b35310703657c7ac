"""
Organization Crypto Benchmark CLI.

Usage:
    org-crypto-benchmark

Or run directly:
    python -m org_crypto.benchmark

PostgreSQL setup:
    1. Run schema: psql "$DATABASE_URL" -f schema.sql
    2. Set DATABASE_URL, KMS_PROVIDER and KMS_KEY_ID in the environment or .env
"""

from __future__ import annotations

import asyncio
import sys
import time

import asyncpg
from dotenv import load_dotenv

from org_crypto.config import CryptoSettings
from org_crypto.context import FieldContext
from org_crypto.errors import ConfigError
from org_crypto.facade import OrgCrypto
from org_crypto.postgres_storage import PostgresStorage

DEFAULT_ORGS = 25
ITEMS_PER_ORG = 40


def _rate(count: int, seconds: float) -> str:
    return f"{count / seconds:.2f}" if seconds > 0 else "inf"


def _banner(title: str) -> None:
    print("+" + "-" * 68 + "+")
    print(f"|  {title}".ljust(69) + "|")
    print("+" + "-" * 68 + "+")


async def run_benchmark() -> None:
    """Run the organization crypto benchmark."""
    print("=== Organization Crypto Benchmark ===\n")

    load_dotenv()
    try:
        settings = CryptoSettings.from_env()
    except ConfigError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    if not settings.database_url:
        print("ERROR: DATABASE_URL must be set in environment or .env file")
        sys.exit(1)

    pool = await asyncpg.create_pool(settings.database_url)
    if pool is None:
        print("ERROR: Failed to create connection pool")
        sys.exit(1)

    truncate_start = time.perf_counter()
    try:
        await pool.execute("TRUNCATE TABLE org_deks, secure_tokens")
        truncate_duration = (time.perf_counter() - truncate_start) * 1000
        print(f"[STARTUP] Tables truncated in {truncate_duration:.3f}ms")
    except asyncpg.UndefinedTableError:
        print("ERROR: Tables missing; run schema.sql first")
        await pool.close()
        sys.exit(1)

    try:
        user_input = input(f"Enter number of organizations to test (default: {DEFAULT_ORGS}): ").strip()
        org_count = int(user_input) if user_input else DEFAULT_ORGS
    except ValueError:
        org_count = DEFAULT_ORGS
    print(f"Testing with {org_count} organizations ({settings.kms_provider} KMS)\n")

    try:
        crypto = OrgCrypto.from_settings(settings, PostgresStorage(pool))
    except ConfigError as e:
        print(f"ERROR: {e}")
        await pool.close()
        sys.exit(1)

    print("=" * 70)
    print("                    BENCHMARK START")
    print("=" * 70 + "\n")

    # ========================================================================
    # Demo 1: Provision organization DEKs
    # ========================================================================
    _banner(f"Demo 1: Provision {org_count} Organization DEKs")

    org_ids = [f"bench-org-{i:05d}" for i in range(org_count)]

    demo1_start = time.perf_counter()
    for i, org_id in enumerate(org_ids):
        await crypto.resolver.provision_org(org_id)
        if (i + 1) % 25 == 0 or (i + 1) == org_count:
            print(f"  Progress: {i + 1}/{org_count}")
    demo1_duration = time.perf_counter() - demo1_start

    print(f"[OK] Provisioned {org_count} ACTIVE DEKs")
    print(f"[PERF] Time: {demo1_duration * 1000:.3f}ms | Rate: {_rate(org_count, demo1_duration)} ops/sec\n")

    # ========================================================================
    # Demo 2: Field encryption (cached DEK)
    # ========================================================================
    _banner(f"Demo 2: Encrypt {ITEMS_PER_ORG} Email Subjects per Organization")

    blobs = {}
    total_items = org_count * ITEMS_PER_ORG
    encrypt_start = time.perf_counter()
    for org_id in org_ids:
        blobs[org_id] = [
            (
                await crypto.encrypt_for_org(
                    org_id, f"Subject line {n} for {org_id}", FieldContext.EMAIL_SUBJECT
                )
            ).to_bytes()
            for n in range(ITEMS_PER_ORG)
        ]
    encrypt_duration = time.perf_counter() - encrypt_start

    print(f"[OK] Encrypted {total_items} fields")
    print(f"[PERF] Time: {encrypt_duration * 1000:.3f}ms | Rate: {_rate(total_items, encrypt_duration)} ops/sec\n")

    # ========================================================================
    # Demo 3: Cold batch decryption (one KMS unwrap per organization)
    # ========================================================================
    _banner("Demo 3: Batch Decryption After Cache Invalidation")

    for org_id in org_ids:
        crypto.resolver.invalidate(org_id)

    decrypt_start = time.perf_counter()
    failures = 0
    for org_id in org_ids:
        results = await crypto.decrypt_many_for_org(
            org_id, blobs[org_id], FieldContext.EMAIL_SUBJECT
        )
        failures += sum(1 for r in results if not r.ok)
    decrypt_duration = time.perf_counter() - decrypt_start

    print(f"[OK] Decrypted {total_items - failures}/{total_items} fields")
    print(f"[PERF] Time: {decrypt_duration * 1000:.3f}ms | Rate: {_rate(total_items, decrypt_duration)} ops/sec\n")

    # ========================================================================
    # Demo 4: DEK rotation
    # ========================================================================
    _banner(f"Demo 4: Rotate {org_count} Organization DEKs")

    rotate_start = time.perf_counter()
    for org_id in org_ids:
        await crypto.resolver.rotate_org(org_id)
    rotate_duration = time.perf_counter() - rotate_start

    print("[OK] Rotation complete (old versions RETIRED)")
    print(f"[PERF] Time: {rotate_duration * 1000:.3f}ms | Rate: {_rate(org_count, rotate_duration)} ops/sec\n")

    # ========================================================================
    # Demo 5: Old blobs still decrypt; re-encrypt onto the new version
    # ========================================================================
    _banner("Demo 5: Backward Compatibility and Re-encryption")

    sample_org = org_ids[0]
    old_blob = blobs[sample_org][0]

    reencrypt_start = time.perf_counter()
    new_blob = await crypto.reencrypt_for_org(sample_org, old_blob, FieldContext.EMAIL_SUBJECT)
    reencrypt_duration = time.perf_counter() - reencrypt_start

    print(f"[OK] Blob moved from DEK v1 to v{new_blob.dek_version}")
    print(f"[PERF] Re-encrypt: {reencrypt_duration * 1000:.3f}ms\n")

    # ========================================================================
    # Summary
    # ========================================================================
    print("=" * 70)
    print("                    BENCHMARK SUMMARY")
    print("=" * 70 + "\n")

    rows = [
        ("DEK Provisioning", _rate(org_count, demo1_duration)),
        ("Encryption", _rate(total_items, encrypt_duration)),
        ("Batch Decryption", _rate(total_items, decrypt_duration)),
        ("DEK Rotation", _rate(org_count, rotate_duration)),
    ]
    print("+- Performance Summary " + "-" * 46 + "+")
    for label, rate in rows:
        print(f"|  {label + ':':<19}{rate} ops/sec".ljust(69) + "|")
    print("+" + "-" * 68 + "+")

    print("\nTest Configuration:")
    print(f"  - Organizations tested: {org_count}")
    print(f"  - Fields per organization: {ITEMS_PER_ORG}")
    print(f"  - KMS provider: {settings.kms_provider}")
    print("  - Crypto: AES-256-GCM, context-bound AAD")

    print("\n" + "=" * 70)
    print("                    BENCHMARK COMPLETE")
    print("=" * 70 + "\n")

    await pool.close()


def main() -> None:
    """CLI entry point for org-crypto-benchmark command."""
    asyncio.run(run_benchmark())


if __name__ == "__main__":
    main()
