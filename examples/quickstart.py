"""aumai-keyexport quickstart: working demonstrations of the main features.

Run this file directly to verify your installation:

    python examples/quickstart.py

Each demo works inside its own temporary directory and cleans up after itself.
"""

from __future__ import annotations

import tempfile
from datetime import UTC, datetime
from pathlib import Path

from aumai_keyexport import (
    ArchivePackager,
    BatchDescriptor,
    ExportVerifier,
    ExposureRecord,
    KeyManager,
    SignerConfig,
    SignerRegistry,
    parse_export,
    produce_export_archive,
)


def _batch() -> BatchDescriptor:
    return BatchDescriptor(
        start_timestamp=datetime(2023, 1, 1, tzinfo=UTC),
        end_timestamp=datetime(2023, 1, 2, tzinfo=UTC),
        region="AT",
    )


def _exposures() -> list[ExposureRecord]:
    return [
        ExposureRecord(
            key_data=b"K2",
            transmission_risk_level=5,
            rolling_start_interval_number=2660,
            rolling_period=144,
        ),
        ExposureRecord(key_data=b"K1", transmission_risk_level=3),
    ]


def _registry_with_signers(tmp: Path, *signer_ids: str) -> SignerRegistry:
    km = KeyManager()
    registry = SignerRegistry(str(tmp / "signers.json"))
    for signer_id in signer_ids:
        private_pem, public_pem = km.generate_keypair()
        km.save_keypair(private_pem, public_pem, str(tmp / "keys" / signer_id))
        registry.add_signer(
            SignerConfig(
                signer_id=signer_id,
                android_package="org.example.app",
                verification_key_version="v1",
                verification_key_id=signer_id,
            ),
            str(tmp / "keys" / signer_id / "private.pem"),
        )
    return registry


# ---------------------------------------------------------------------------
# Demo 1: produce and verify an archive
# ---------------------------------------------------------------------------

def demo_produce_and_verify() -> None:
    """Build, sign, and pack one batch with two signers, then verify it."""

    print("\n=== Demo 1: Produce & Verify ===")

    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        registry = _registry_with_signers(tmp, "sig1", "sig2")

        archive = produce_export_archive(
            _batch(), _exposures(), 1, 1, registry.signer_configs(), registry
        )
        print(f"  Archive size: {len(archive):,} bytes")

        parsed = parse_export(ArchivePackager().unpack(archive).export_bytes)
        print(f"  Keys in order: {[k.key_data for k in parsed.keys]}")

        for result in ExportVerifier().verify_archive(archive, registry):
            print(f"  {result.signer_id}: valid={result.valid}")
            assert result.valid, f"Unexpected failure: {result.error}"

        print("  Demo 1 passed.")


# ---------------------------------------------------------------------------
# Demo 2: tamper detection
# ---------------------------------------------------------------------------

def demo_tamper_detection() -> None:
    """Show that changing export.bin after signing is detected."""

    print("\n=== Demo 2: Tamper Detection ===")

    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        registry = _registry_with_signers(tmp, "sig1")

        archive = produce_export_archive(
            _batch(), _exposures(), 1, 1, registry.signer_configs(), registry
        )
        packager = ArchivePackager()
        artifact = packager.unpack(archive)
        tampered = packager.pack(
            artifact.export_bytes.replace(b"AT", b"DE"), artifact.signature_bytes
        )

        results = ExportVerifier().verify_archive(tampered, registry)
        print(f"  Region swapped: valid={results[0].valid}  (expected False)")
        assert not results[0].valid

        print("  Demo 2 passed.")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    """Run all quickstart demos in sequence."""
    print("aumai-keyexport quickstart demos")
    print("=" * 45)

    demo_produce_and_verify()
    demo_tamper_detection()

    print("\n" + "=" * 45)
    print("All demos completed successfully.")


if __name__ == "__main__":
    main()
