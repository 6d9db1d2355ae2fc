"""Signer registry for aumai-keyexport."""

from __future__ import annotations

import base64
import json
import os
from datetime import UTC, datetime
from pathlib import Path

import structlog

from aumai_keyexport.core import SigningKey
from aumai_keyexport.errors import ContractError, CryptoError, RegistryError
from aumai_keyexport.models import RegisteredSigner, SignerConfig

logger = structlog.get_logger(__name__)


class SignerRegistry:
    """Durable signer identities with JSON file persistence.

    Each signer is bound to a private key file on disk.  The registry stores
    only the path and the derived public key; private key material is read
    from disk when :meth:`resolve` is called and is never written to the
    registry file.

    Lookups do not mutate state, so one registry can serve concurrent
    export calls.
    """

    def __init__(self, registry_path: str | None = None) -> None:
        self._registry_path = Path(registry_path) if registry_path else None
        self._signers: dict[str, RegisteredSigner] = {}

        if self._registry_path and self._registry_path.exists():
            self._load()

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def add_signer(
        self,
        config: SignerConfig,
        private_key_path: str,
        password_env: str | None = None,
    ) -> RegisteredSigner:
        """Register *config* with the key stored at *private_key_path*.

        The key is loaded immediately so a bad path, passphrase, or curve is
        reported at registration time.

        Raises:
            ContractError: if another signer already uses the same descriptor.
            CryptoError: if the key cannot be loaded as a P-256 private key.
        """
        for other in self._signers.values():
            if (
                other.config.signer_id != config.signer_id
                and other.config.descriptor() == config.descriptor()
            ):
                raise ContractError(
                    f"Signer '{other.config.signer_id}' already uses this "
                    "package, bundle id, key version and key id."
                )
        signing_key = self._load_key(
            config.signer_id, Path(private_key_path), password_env
        )
        registered = RegisteredSigner(
            config=config,
            private_key_path=str(Path(private_key_path).resolve()),
            public_key=base64.b64encode(signing_key.public_key_pem()).decode("ascii"),
            registered_at=datetime.now(tz=UTC),
            password_env=password_env,
        )
        self._signers[config.signer_id] = registered
        self._save()
        logger.info("signer_registered", signer_id=config.signer_id)
        return registered

    def remove_signer(self, signer_id: str) -> None:
        """Remove a signer from the registry.

        Raises:
            KeyError: if the signer_id is not in the registry.
        """
        if signer_id not in self._signers:
            raise KeyError(f"Signer not found: {signer_id}")
        del self._signers[signer_id]
        self._save()
        logger.info("signer_removed", signer_id=signer_id)

    def get_signer(self, signer_id: str) -> RegisteredSigner | None:
        """Return the :class:`RegisteredSigner` for *signer_id*, or None."""
        return self._signers.get(signer_id)

    def list_signers(self) -> list[RegisteredSigner]:
        """Return all registered signers."""
        return list(self._signers.values())

    def signer_configs(self) -> list[SignerConfig]:
        """Return the descriptor of every registered signer."""
        return [signer.config for signer in self._signers.values()]

    # ------------------------------------------------------------------
    # Key access
    # ------------------------------------------------------------------

    def resolve(self, signer_id: str) -> SigningKey:
        """Load the persisted signing key of *signer_id*.

        Raises:
            CryptoError: if the signer is unknown or its key cannot be used.
        """
        registered = self._signers.get(signer_id)
        if registered is None:
            logger.error("signer_key_unresolved", signer_id=signer_id)
            raise CryptoError(f"Signer '{signer_id}' is not registered.")
        return self._load_key(
            signer_id, Path(registered.private_key_path), registered.password_env
        )

    def public_key_for(self, signer_id: str) -> bytes:
        """Return the PEM public key recorded for *signer_id*.

        Raises:
            KeyError: if the signer_id is not in the registry.
        """
        registered = self._signers.get(signer_id)
        if registered is None:
            raise KeyError(f"Signer not found: {signer_id}")
        return base64.b64decode(registered.public_key)

    def _load_key(
        self, signer_id: str, path: Path, password_env: str | None
    ) -> SigningKey:
        password: bytes | None = None
        if password_env:
            value = os.environ.get(password_env)
            if value is None:
                logger.error(
                    "signer_key_unresolved",
                    signer_id=signer_id,
                    reason="passphrase variable unset",
                    password_env=password_env,
                )
                raise CryptoError(
                    f"Passphrase variable '{password_env}' for signer "
                    f"'{signer_id}' is not set."
                )
            password = value.encode("utf-8")
        try:
            pem_bytes = path.read_bytes()
        except OSError as exc:
            logger.error(
                "signer_key_unresolved", signer_id=signer_id, reason=str(exc)
            )
            raise CryptoError(
                f"Cannot read key for signer '{signer_id}': {exc}"
            ) from exc
        return SigningKey.from_pem(pem_bytes, password=password)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save(self) -> None:
        if self._registry_path is None:
            return
        self._registry_path.parent.mkdir(parents=True, exist_ok=True)
        data = [s.model_dump(mode="json") for s in self._signers.values()]
        self._registry_path.write_text(
            json.dumps(data, indent=2, default=str), encoding="utf-8"
        )

    def _load(self) -> None:
        if self._registry_path is None or not self._registry_path.exists():
            return
        try:
            raw = json.loads(self._registry_path.read_text(encoding="utf-8"))
            signers = [RegisteredSigner.model_validate(entry) for entry in raw]
        except (OSError, ValueError, TypeError) as exc:
            logger.error(
                "registry_load_failed", path=str(self._registry_path), reason=str(exc)
            )
            raise RegistryError(
                f"Cannot load signer registry {self._registry_path}: {exc}"
            ) from exc
        for signer in signers:
            self._signers[signer.config.signer_id] = signer


__all__ = ["SignerRegistry"]
