"""Exception hierarchy for aumai-keyexport."""

from __future__ import annotations


class ExportError(Exception):
    """Base class for every failure raised by the export pipeline."""


class ContractError(ExportError, ValueError):
    """The caller supplied invalid input (batch position, exposure record)."""


class SerializationError(ExportError):
    """A value could not be represented in the structured message encoding."""


class CryptoError(ExportError):
    """Key resolution, algorithm availability, or signing failed."""


class ArchiveError(ExportError, OSError):
    """The export archive could not be written or read."""


class RegistryError(ExportError, ValueError):
    """The signer registry file cannot be read back."""


__all__ = [
    "ArchiveError",
    "ContractError",
    "CryptoError",
    "ExportError",
    "RegistryError",
    "SerializationError",
]
