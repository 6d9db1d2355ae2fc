"""Pydantic models for aumai-keyexport."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

EXPORT_HEADER = b"EK Export v1".ljust(16, b" ")
EXPORT_BINARY_NAME = "export.bin"
EXPORT_SIGNATURE_NAME = "export.sig"

# ecdsa-with-SHA256
SIGNATURE_ALGORITHM_OID = "1.2.840.10045.4.3.2"

# One day of 10-minute intervals.
DEFAULT_ROLLING_PERIOD = 144


class BatchDescriptor(BaseModel):
    """Time window and region of one export batch."""

    model_config = ConfigDict(frozen=True)

    start_timestamp: datetime
    end_timestamp: datetime
    region: str = Field(min_length=1)

    @field_validator("start_timestamp", "end_timestamp")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @model_validator(mode="after")
    def _window_is_ordered(self) -> BatchDescriptor:
        if self.end_timestamp < self.start_timestamp:
            raise ValueError("end_timestamp must not precede start_timestamp")
        return self

    @property
    def start_epoch(self) -> int:
        return int(self.start_timestamp.timestamp())

    @property
    def end_epoch(self) -> int:
        return int(self.end_timestamp.timestamp())


class ExposureRecord(BaseModel):
    """A single diagnosis key as stored by the exposure key store.

    ``key_data`` accepts raw bytes or a ``str`` (taken as its UTF-8 bytes) and
    serialises to JSON as base64.  The optional interval fields stay
    ``None`` when the source record does not have them, and are then left out
    of the encoded message entirely.
    """

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64")

    key_data: bytes = Field(min_length=1)
    transmission_risk_level: int = Field(ge=0, le=8)
    rolling_start_interval_number: int | None = Field(default=None, ge=0)
    rolling_period: int | None = Field(default=None, ge=0)


class SignerConfig(BaseModel):
    """Public descriptor of a registered signer.

    ``signer_id`` is the reference the signer registry uses to find the
    signer's private key; it is never written into an export.
    """

    model_config = ConfigDict(frozen=True)

    signer_id: str = Field(min_length=1)
    android_package: str | None = None
    app_bundle_id: str | None = None
    verification_key_version: str | None = None
    verification_key_id: str | None = None

    @field_validator(
        "android_package",
        "app_bundle_id",
        "verification_key_version",
        "verification_key_id",
    )
    @classmethod
    def _empty_is_absent(cls, value: str | None) -> str | None:
        return value or None

    def descriptor(self) -> tuple[str | None, ...]:
        """Identity fields as they appear inside a signature info entry."""
        return (
            self.android_package,
            self.app_bundle_id,
            self.verification_key_version,
            self.verification_key_id,
        )


class ExportArtifact(BaseModel):
    """The two byte sequences bundled into one export archive."""

    export_bytes: bytes
    signature_bytes: bytes


class SignatureInfo(BaseModel):
    """Signature info entry decoded from an export or signature file."""

    signature_algorithm: str | None = None
    android_package: str | None = None
    app_bundle_id: str | None = None
    verification_key_version: str | None = None
    verification_key_id: str | None = None

    def descriptor(self) -> tuple[str | None, ...]:
        return (
            self.android_package,
            self.app_bundle_id,
            self.verification_key_version,
            self.verification_key_id,
        )


class ParsedExport(BaseModel):
    """Structured view of an ``export.bin`` file."""

    model_config = ConfigDict(ser_json_bytes="base64")

    start_timestamp: datetime
    end_timestamp: datetime
    region: str
    batch_num: int
    batch_size: int
    keys: list[ExposureRecord] = Field(default_factory=list)
    signature_infos: list[SignatureInfo] = Field(default_factory=list)


class ParsedSignature(BaseModel):
    """One entry of an ``export.sig`` signature list."""

    model_config = ConfigDict(ser_json_bytes="base64")

    signature_info: SignatureInfo
    batch_num: int
    batch_size: int
    signature: bytes


class VerificationResult(BaseModel):
    """Outcome of verifying one export signature."""

    valid: bool
    signer_id: str | None = None
    verification_key_id: str | None = None
    error: str | None = None


class RegisteredSigner(BaseModel):
    """A signer whose persisted key pair is known to the registry."""

    config: SignerConfig
    private_key_path: str
    public_key: str  # Base-64 encoded PEM
    registered_at: datetime
    password_env: str | None = None


__all__ = [
    "BatchDescriptor",
    "DEFAULT_ROLLING_PERIOD",
    "EXPORT_BINARY_NAME",
    "EXPORT_HEADER",
    "EXPORT_SIGNATURE_NAME",
    "ExportArtifact",
    "ExposureRecord",
    "ParsedExport",
    "ParsedSignature",
    "RegisteredSigner",
    "SIGNATURE_ALGORITHM_OID",
    "SignatureInfo",
    "SignerConfig",
    "VerificationResult",
]
