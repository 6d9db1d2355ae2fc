"""Export building, signing, packaging, and verification of diagnosis keys."""

from __future__ import annotations

import hashlib
import io
import os
import zipfile
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed
from google.protobuf.message import DecodeError, EncodeError
from pydantic import ValidationError

from aumai_keyexport import proto
from aumai_keyexport.errors import (
    ArchiveError,
    ContractError,
    CryptoError,
    SerializationError,
)
from aumai_keyexport.models import (
    EXPORT_BINARY_NAME,
    EXPORT_HEADER,
    EXPORT_SIGNATURE_NAME,
    SIGNATURE_ALGORITHM_OID,
    BatchDescriptor,
    ExportArtifact,
    ExposureRecord,
    ParsedExport,
    ParsedSignature,
    RegisteredSigner,
    SignatureInfo,
    SignerConfig,
    VerificationResult,
)

if TYPE_CHECKING:
    from aumai_keyexport.registry import SignerRegistry

logger = structlog.get_logger(__name__)

# Archive entries carry a fixed timestamp so identical inputs pack identically.
FIXED_TIME = (1980, 1, 1, 0, 0, 0)

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def sha256_digest(data: bytes) -> bytes:
    """Return the raw SHA-256 digest of *data*."""
    return hashlib.sha256(data).digest()


def _check_batch_position(batch_num: int, batch_size: int) -> None:
    if batch_size < 1:
        raise ContractError(f"batch_size must be at least 1, got {batch_size}")
    if not 1 <= batch_num <= batch_size:
        raise ContractError(
            f"batch_num must be between 1 and {batch_size}, got {batch_num}"
        )


def _coerce_exposure(exposure: ExposureRecord | Mapping[str, Any]) -> ExposureRecord:
    if isinstance(exposure, ExposureRecord):
        return exposure
    try:
        return ExposureRecord.model_validate(exposure)
    except ValidationError as exc:
        raise ContractError(f"Malformed exposure record: {exc}") from exc


def _fill_signature_info(target: Any, signer: SignerConfig) -> None:
    target.signature_algorithm = SIGNATURE_ALGORITHM_OID
    if signer.android_package:
        target.android_package = signer.android_package
    if signer.app_bundle_id:
        target.app_bundle_id = signer.app_bundle_id
    if signer.verification_key_version:
        target.verification_key_version = signer.verification_key_version
    if signer.verification_key_id:
        target.verification_key_id = signer.verification_key_id


def _optional(message: Any, field: str) -> Any:
    return getattr(message, field) if message.HasField(field) else None


def _signature_info_from_message(message: Any) -> SignatureInfo:
    return SignatureInfo(
        signature_algorithm=_optional(message, "signature_algorithm"),
        android_package=_optional(message, "android_package"),
        app_bundle_id=_optional(message, "app_bundle_id"),
        verification_key_version=_optional(message, "verification_key_version"),
        verification_key_id=_optional(message, "verification_key_id"),
    )


# ---------------------------------------------------------------------------
# KeyManager
# ---------------------------------------------------------------------------


class KeyManager:
    """Generate and persist ECDSA P-256 signing key pairs."""

    def generate_keypair(self, passphrase: bytes | None = None) -> tuple[bytes, bytes]:
        """Generate a fresh P-256 key pair for a new signer identity.

        Args:
            passphrase: Optional passphrase to encrypt the private key PEM.

        Returns:
            A tuple of ``(private_key_bytes, public_key_bytes)`` in PEM format.
        """
        encryption: serialization.KeySerializationEncryption = (
            serialization.BestAvailableEncryption(passphrase)
            if passphrase is not None
            else serialization.NoEncryption()
        )
        private_key = ec.generate_private_key(ec.SECP256R1())
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return private_pem, public_pem

    def save_keypair(
        self, private_key: bytes, public_key: bytes, path: str
    ) -> None:
        """Write the PEM-encoded key pair to *path*/private.pem and *path*/public.pem.

        The output directory is created if it does not exist.  The private key
        file is written with mode 0o600 on POSIX systems.
        """
        out_dir = Path(path)
        out_dir.mkdir(parents=True, exist_ok=True)

        private_file = out_dir / "private.pem"
        public_file = out_dir / "public.pem"

        private_file.write_bytes(private_key)
        public_file.write_bytes(public_key)

        try:
            os.chmod(private_file, 0o600)
        except NotImplementedError:
            pass  # Windows


# ---------------------------------------------------------------------------
# SigningKey
# ---------------------------------------------------------------------------


class SigningKey:
    """Signing capability bound to one signer's persisted P-256 private key."""

    def __init__(self, private_key: Any) -> None:
        if not isinstance(private_key, ec.EllipticCurvePrivateKey):
            raise CryptoError(
                f"Unsupported key type: {type(private_key).__name__}. "
                "Only ECDSA P-256 keys can sign exports."
            )
        if not isinstance(private_key.curve, ec.SECP256R1):
            raise CryptoError(
                f"Unsupported curve: {private_key.curve.name}. Exports require secp256r1."
            )
        self._private_key = private_key

    @classmethod
    def from_pem(cls, pem_bytes: bytes, password: bytes | None = None) -> SigningKey:
        try:
            private_key = serialization.load_pem_private_key(
                pem_bytes, password=password
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise CryptoError(f"Failed to load private key: {exc}") from exc
        return cls(private_key)

    def sign(self, digest: bytes) -> bytes:
        """Sign a SHA-256 *digest* and return the DER-encoded ECDSA signature."""
        try:
            return self._private_key.sign(digest, ec.ECDSA(Prehashed(hashes.SHA256())))
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise CryptoError(f"Signing failed: {exc}") from exc

    def public_key_pem(self) -> bytes:
        return self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )


class KeyResolver(Protocol):
    """Anything that maps a signer id to that signer's :class:`SigningKey`."""

    def resolve(self, signer_id: str) -> SigningKey: ...


# ---------------------------------------------------------------------------
# ExportBuilder
# ---------------------------------------------------------------------------


class ExportBuilder:
    """Serialise a batch of exposure keys into the ``export.bin`` format."""

    def build_export(
        self,
        batch: BatchDescriptor,
        exposures: Iterable[ExposureRecord | Mapping[str, Any]],
        batch_num: int,
        batch_size: int,
        signers: Sequence[SignerConfig],
    ) -> bytes:
        """Return the 16-byte header followed by the encoded export message.

        Keys are written in ascending byte order of ``key_data`` whatever the
        input order.  Optional interval fields are only set when present on
        the record.

        Raises:
            ContractError: on an invalid batch position or exposure record.
            SerializationError: if a value does not fit the message schema.
        """
        _check_batch_position(batch_num, batch_size)
        records = sorted(
            (_coerce_exposure(exposure) for exposure in exposures),
            key=lambda record: record.key_data,
        )

        try:
            message = proto.TemporaryExposureKeyExport(
                start_timestamp=batch.start_epoch,
                end_timestamp=batch.end_epoch,
                region=batch.region,
                batch_num=batch_num,
                batch_size=batch_size,
            )
            for record in records:
                key = message.keys.add(
                    key_data=record.key_data,
                    transmission_risk_level=record.transmission_risk_level,
                )
                if record.rolling_start_interval_number is not None:
                    key.rolling_start_interval_number = (
                        record.rolling_start_interval_number
                    )
                if record.rolling_period is not None:
                    key.rolling_period = record.rolling_period
            for signer in signers:
                _fill_signature_info(message.signature_infos.add(), signer)
            body = message.SerializeToString(deterministic=True)
        except (ValueError, TypeError, EncodeError) as exc:
            raise SerializationError(f"Cannot encode export: {exc}") from exc

        export_bytes = EXPORT_HEADER + body
        logger.info(
            "export_built",
            region=batch.region,
            batch_num=batch_num,
            batch_size=batch_size,
            key_count=len(records),
            signer_count=len(signers),
            size=len(export_bytes),
        )
        return export_bytes


# ---------------------------------------------------------------------------
# ExportSigner
# ---------------------------------------------------------------------------


class ExportSigner:
    """Sign ``export.bin`` bytes once per signer and encode ``export.sig``.

    The signer holds no key state.  Every signer's own key is resolved from
    *keys* on each call.
    """

    def sign_export(
        self,
        export_bytes: bytes,
        batch_num: int,
        batch_size: int,
        signers: Sequence[SignerConfig],
        keys: KeyResolver,
    ) -> bytes:
        """Return the encoded signature list covering *export_bytes*.

        Raises:
            ContractError: on an invalid batch position.
            CryptoError: if any signer's key cannot be resolved or used.  No
                partial signature list is returned.
            SerializationError: if the signature list cannot be encoded.
        """
        _check_batch_position(batch_num, batch_size)
        digest = sha256_digest(export_bytes)

        signed: list[tuple[SignerConfig, bytes]] = []
        for signer in signers:
            signing_key = keys.resolve(signer.signer_id)
            signed.append((signer, signing_key.sign(digest)))
            logger.info(
                "export_signed",
                signer_id=signer.signer_id,
                batch_num=batch_num,
                batch_size=batch_size,
            )

        try:
            signature_list = proto.TEKSignatureList()
            for signer, signature in signed:
                entry = signature_list.signatures.add(
                    batch_num=batch_num,
                    batch_size=batch_size,
                    signature=signature,
                )
                _fill_signature_info(entry.signature_info, signer)
            return signature_list.SerializeToString(deterministic=True)
        except (ValueError, TypeError, EncodeError) as exc:
            raise SerializationError(f"Cannot encode signature list: {exc}") from exc


# ---------------------------------------------------------------------------
# ArchivePackager
# ---------------------------------------------------------------------------


class ArchivePackager:
    """Bundle ``export.bin`` and ``export.sig`` into a zip archive."""

    def pack(self, export_bytes: bytes, signature_bytes: bytes) -> bytes:
        """Return the archive bytes, or raise :class:`ArchiveError`.

        The archive holds exactly two entries, binary first, each with a
        declared size equal to the bytes written.
        """
        buffer = io.BytesIO()
        try:
            with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                for name, payload in (
                    (EXPORT_BINARY_NAME, export_bytes),
                    (EXPORT_SIGNATURE_NAME, signature_bytes),
                ):
                    info = zipfile.ZipInfo(filename=name, date_time=FIXED_TIME)
                    info.compress_type = zipfile.ZIP_DEFLATED
                    info.create_system = 0
                    info.external_attr = 0
                    archive.writestr(info, payload)
        except (OSError, ValueError, zipfile.LargeZipFile) as exc:
            raise ArchiveError(f"Cannot write export archive: {exc}") from exc

        archive_bytes = buffer.getvalue()
        logger.info("export_packed", size=len(archive_bytes))
        return archive_bytes

    def unpack(self, archive_bytes: bytes) -> ExportArtifact:
        """Read both entries back out of an export archive."""
        try:
            with zipfile.ZipFile(io.BytesIO(archive_bytes)) as archive:
                return ExportArtifact(
                    export_bytes=archive.read(EXPORT_BINARY_NAME),
                    signature_bytes=archive.read(EXPORT_SIGNATURE_NAME),
                )
        except KeyError as exc:
            raise ArchiveError(f"Export archive is missing an entry: {exc}") from exc
        except (OSError, zipfile.BadZipFile) as exc:
            raise ArchiveError(f"Cannot read export archive: {exc}") from exc


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def build_artifact(
    batch: BatchDescriptor,
    exposures: Iterable[ExposureRecord | Mapping[str, Any]],
    batch_num: int,
    batch_size: int,
    signers: Sequence[SignerConfig],
    keys: KeyResolver,
) -> ExportArtifact:
    """Build ``export.bin`` and sign it for every signer."""
    signers = tuple(signers)
    export_bytes = ExportBuilder().build_export(
        batch, exposures, batch_num, batch_size, signers
    )
    signature_bytes = ExportSigner().sign_export(
        export_bytes, batch_num, batch_size, signers, keys
    )
    return ExportArtifact(export_bytes=export_bytes, signature_bytes=signature_bytes)


def produce_export_archive(
    batch: BatchDescriptor,
    exposures: Iterable[ExposureRecord | Mapping[str, Any]],
    batch_num: int,
    batch_size: int,
    signers: Sequence[SignerConfig],
    keys: KeyResolver,
) -> bytes:
    """Run the whole pipeline and return the export archive bytes.

    Any failure aborts the call; no partial archive is returned.
    """
    artifact = build_artifact(batch, exposures, batch_num, batch_size, signers, keys)
    return ArchivePackager().pack(artifact.export_bytes, artifact.signature_bytes)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_export(export_bytes: bytes) -> ParsedExport:
    """Decode ``export.bin`` bytes back into a :class:`ParsedExport`.

    Raises:
        SerializationError: on a bad header or an undecodable message.
    """
    header, body = export_bytes[: len(EXPORT_HEADER)], export_bytes[len(EXPORT_HEADER) :]
    if header != EXPORT_HEADER:
        raise SerializationError(f"Unexpected export header: {header!r}")

    message = proto.TemporaryExposureKeyExport()
    try:
        message.ParseFromString(body)
    except DecodeError as exc:
        raise SerializationError(f"Cannot decode export: {exc}") from exc

    try:
        start = datetime.fromtimestamp(message.start_timestamp, tz=UTC)
        end = datetime.fromtimestamp(message.end_timestamp, tz=UTC)
    except (OverflowError, OSError, ValueError) as exc:
        raise SerializationError(f"Export timestamps out of range: {exc}") from exc

    try:
        keys = [
            ExposureRecord(
                key_data=key.key_data,
                transmission_risk_level=key.transmission_risk_level,
                rolling_start_interval_number=_optional(
                    key, "rolling_start_interval_number"
                ),
                rolling_period=_optional(key, "rolling_period"),
            )
            for key in message.keys
        ]
    except ValidationError as exc:
        raise SerializationError(f"Export holds an invalid key: {exc}") from exc

    return ParsedExport(
        start_timestamp=start,
        end_timestamp=end,
        region=message.region,
        batch_num=message.batch_num,
        batch_size=message.batch_size,
        keys=keys,
        signature_infos=[
            _signature_info_from_message(info) for info in message.signature_infos
        ],
    )


def parse_signature_list(signature_bytes: bytes) -> list[ParsedSignature]:
    """Decode ``export.sig`` bytes into one :class:`ParsedSignature` per signer."""
    message = proto.TEKSignatureList()
    try:
        message.ParseFromString(signature_bytes)
    except DecodeError as exc:
        raise SerializationError(f"Cannot decode signature list: {exc}") from exc

    return [
        ParsedSignature(
            signature_info=_signature_info_from_message(entry.signature_info),
            batch_num=entry.batch_num,
            batch_size=entry.batch_size,
            signature=entry.signature,
        )
        for entry in message.signatures
    ]


# ---------------------------------------------------------------------------
# ExportVerifier
# ---------------------------------------------------------------------------


class ExportVerifier:
    """Check export signatures the way a client would."""

    def verify_signature(
        self,
        export_bytes: bytes,
        signature: bytes,
        public_key_bytes: bytes,
    ) -> VerificationResult:
        """Verify a DER ECDSA *signature* over SHA-256 of *export_bytes*.

        Args:
            export_bytes: The exact ``export.bin`` bytes.
            signature: DER-encoded signature from a signature list entry.
            public_key_bytes: PEM-encoded P-256 public key.

        Returns:
            A :class:`VerificationResult`; this method does not raise for a
            bad key or signature.
        """
        try:
            public_key = serialization.load_pem_public_key(public_key_bytes)
        except (ValueError, UnsupportedAlgorithm) as exc:
            return VerificationResult(
                valid=False, error=f"Failed to load public key: {exc}"
            )

        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            return VerificationResult(
                valid=False,
                error=f"Unsupported public key type: {type(public_key).__name__}",
            )

        try:
            public_key.verify(
                signature,
                sha256_digest(export_bytes),
                ec.ECDSA(Prehashed(hashes.SHA256())),
            )
        except InvalidSignature:
            return VerificationResult(
                valid=False, error="Signature verification failed"
            )

        return VerificationResult(valid=True)

    def verify_archive(
        self,
        archive_bytes: bytes,
        registry: SignerRegistry,
    ) -> list[VerificationResult]:
        """Verify every signature in an export archive against *registry*.

        Each entry is matched to the registered signers with the same
        descriptor fields and is valid if any of their keys verifies it.
        Entries whose signer is unknown, or whose batch position disagrees
        with ``export.bin``, are reported invalid.
        """
        artifact = ArchivePackager().unpack(archive_bytes)
        parsed = parse_export(artifact.export_bytes)
        signers: dict[tuple[str | None, ...], list[RegisteredSigner]] = {}
        for signer in registry.list_signers():
            signers.setdefault(signer.config.descriptor(), []).append(signer)

        results: list[VerificationResult] = []
        for entry in parse_signature_list(artifact.signature_bytes):
            info = entry.signature_info
            candidates = signers.get(info.descriptor())
            if not candidates:
                results.append(
                    VerificationResult(
                        valid=False,
                        verification_key_id=info.verification_key_id,
                        error="No registered signer matches this signature info.",
                    )
                )
            elif info.signature_algorithm != SIGNATURE_ALGORITHM_OID:
                results.append(
                    VerificationResult(
                        valid=False,
                        signer_id=candidates[0].config.signer_id,
                        verification_key_id=info.verification_key_id,
                        error=f"Unexpected algorithm: {info.signature_algorithm}",
                    )
                )
            elif (entry.batch_num, entry.batch_size) != (
                parsed.batch_num,
                parsed.batch_size,
            ):
                results.append(
                    VerificationResult(
                        valid=False,
                        signer_id=candidates[0].config.signer_id,
                        verification_key_id=info.verification_key_id,
                        error="Batch position does not match export.bin.",
                    )
                )
            else:
                results.append(
                    self._verify_candidates(
                        artifact.export_bytes, entry.signature, candidates, registry
                    ).model_copy(
                        update={"verification_key_id": info.verification_key_id}
                    )
                )

        for result in results:
            if not result.valid:
                logger.warning(
                    "signature_invalid",
                    signer_id=result.signer_id,
                    verification_key_id=result.verification_key_id,
                    error=result.error,
                )
        return results

    def _verify_candidates(
        self,
        export_bytes: bytes,
        signature: bytes,
        candidates: list[RegisteredSigner],
        registry: SignerRegistry,
    ) -> VerificationResult:
        result = VerificationResult(valid=False)
        for registered in candidates:
            signer_id = registered.config.signer_id
            result = self.verify_signature(
                export_bytes, signature, registry.public_key_for(signer_id)
            ).model_copy(update={"signer_id": signer_id})
            if result.valid:
                break
        return result


__all__ = [
    "ArchivePackager",
    "ExportBuilder",
    "ExportSigner",
    "ExportVerifier",
    "KeyManager",
    "KeyResolver",
    "SigningKey",
    "build_artifact",
    "parse_export",
    "parse_signature_list",
    "produce_export_archive",
    "sha256_digest",
]
