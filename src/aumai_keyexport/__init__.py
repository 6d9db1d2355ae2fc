"""aumai-keyexport: Signed diagnosis key export archives for exposure notification."""

from aumai_keyexport.core import (
    ArchivePackager,
    ExportBuilder,
    ExportSigner,
    ExportVerifier,
    KeyManager,
    SigningKey,
    build_artifact,
    parse_export,
    parse_signature_list,
    produce_export_archive,
)
from aumai_keyexport.errors import (
    ArchiveError,
    ContractError,
    CryptoError,
    ExportError,
    RegistryError,
    SerializationError,
)
from aumai_keyexport.models import (
    BatchDescriptor,
    ExportArtifact,
    ExposureRecord,
    ParsedExport,
    ParsedSignature,
    RegisteredSigner,
    SignerConfig,
    VerificationResult,
)
from aumai_keyexport.registry import SignerRegistry

__version__ = "0.1.0"

__all__ = [
    "ArchiveError",
    "ArchivePackager",
    "BatchDescriptor",
    "ContractError",
    "CryptoError",
    "ExportArtifact",
    "ExportBuilder",
    "ExportError",
    "ExportSigner",
    "ExportVerifier",
    "ExposureRecord",
    "KeyManager",
    "ParsedExport",
    "ParsedSignature",
    "RegisteredSigner",
    "RegistryError",
    "SerializationError",
    "SignerConfig",
    "SignerRegistry",
    "SigningKey",
    "VerificationResult",
    "build_artifact",
    "parse_export",
    "parse_signature_list",
    "produce_export_archive",
]
