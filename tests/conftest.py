"""Shared test fixtures for aumai-keyexport."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest
import structlog

from aumai_keyexport.core import KeyManager
from aumai_keyexport.models import BatchDescriptor, ExposureRecord, SignerConfig
from aumai_keyexport.registry import SignerRegistry


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    """Undo any logging configuration a CLI test installed."""
    yield
    structlog.reset_defaults()


# ---------------------------------------------------------------------------
# Key-pair fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def key_manager() -> KeyManager:
    """A shared KeyManager instance (stateless, safe to share)."""
    return KeyManager()


@pytest.fixture(scope="session")
def signer_keypair(key_manager: KeyManager) -> tuple[bytes, bytes]:
    """(private_pem, public_pem) for the primary signer."""
    return key_manager.generate_keypair()


@pytest.fixture(scope="session")
def second_keypair(key_manager: KeyManager) -> tuple[bytes, bytes]:
    """(private_pem, public_pem) for a second, unrelated signer."""
    return key_manager.generate_keypair()


@pytest.fixture()
def saved_signer_keys(
    tmp_path: Path,
    signer_keypair: tuple[bytes, bytes],
    key_manager: KeyManager,
) -> tuple[Path, Path]:
    """Write the primary key pair to tmp_path; return (private, public) Paths."""
    keys_dir = tmp_path / "keys" / "sig1"
    private_pem, public_pem = signer_keypair
    key_manager.save_keypair(private_pem, public_pem, str(keys_dir))
    return keys_dir / "private.pem", keys_dir / "public.pem"


@pytest.fixture()
def saved_second_keys(
    tmp_path: Path,
    second_keypair: tuple[bytes, bytes],
    key_manager: KeyManager,
) -> tuple[Path, Path]:
    """Write the second key pair to tmp_path; return (private, public) Paths."""
    keys_dir = tmp_path / "keys" / "sig2"
    private_pem, public_pem = second_keypair
    key_manager.save_keypair(private_pem, public_pem, str(keys_dir))
    return keys_dir / "private.pem", keys_dir / "public.pem"


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def batch() -> BatchDescriptor:
    """One-day batch for region AT."""
    return BatchDescriptor(
        start_timestamp=datetime(2023, 1, 1, tzinfo=UTC),
        end_timestamp=datetime(2023, 1, 2, tzinfo=UTC),
        region="AT",
    )


@pytest.fixture()
def exposures() -> list[ExposureRecord]:
    """Two keys in reverse order; only K2 carries interval fields."""
    return [
        ExposureRecord(
            key_data=b"K2",
            transmission_risk_level=5,
            rolling_start_interval_number=2660,
            rolling_period=144,
        ),
        ExposureRecord(key_data=b"K1", transmission_risk_level=3),
    ]


@pytest.fixture()
def signer_config() -> SignerConfig:
    return SignerConfig(
        signer_id="sig1",
        android_package="org.example.app",
        verification_key_version="v1",
        verification_key_id="sig1",
    )


@pytest.fixture()
def second_signer_config() -> SignerConfig:
    return SignerConfig(
        signer_id="sig2",
        app_bundle_id="org.example.ios",
        verification_key_version="v1",
        verification_key_id="sig2",
    )


@pytest.fixture()
def registry(
    signer_config: SignerConfig,
    saved_signer_keys: tuple[Path, Path],
) -> SignerRegistry:
    """In-memory registry holding the primary signer."""
    reg = SignerRegistry()
    reg.add_signer(signer_config, str(saved_signer_keys[0]))
    return reg


@pytest.fixture()
def two_signer_registry(
    registry: SignerRegistry,
    second_signer_config: SignerConfig,
    saved_second_keys: tuple[Path, Path],
) -> SignerRegistry:
    """Registry holding both signers."""
    registry.add_signer(second_signer_config, str(saved_second_keys[0]))
    return registry
