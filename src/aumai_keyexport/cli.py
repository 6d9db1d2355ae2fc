"""CLI entry point for aumai-keyexport."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import NoReturn

import click
from pydantic import Base64Bytes, BaseModel, Field, ValidationError

from aumai_keyexport.core import (
    ArchivePackager,
    ExportVerifier,
    KeyManager,
    parse_export,
    parse_signature_list,
    produce_export_archive,
)
from aumai_keyexport.errors import ExportError
from aumai_keyexport.models import BatchDescriptor, ExposureRecord, SignerConfig
from aumai_keyexport.observability import configure_logging
from aumai_keyexport.registry import SignerRegistry

REGISTRY_ENV = "AUMAI_KEYEXPORT_REGISTRY"
LOG_FORMAT_ENV = "AUMAI_KEYEXPORT_LOG_FORMAT"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _ExposureInput(BaseModel):
    key_data: Base64Bytes
    transmission_risk_level: int
    rolling_start_interval_number: int | None = None
    rolling_period: int | None = None


class _ExportInput(BaseModel):
    batch: BatchDescriptor
    exposures: list[_ExposureInput] = Field(default_factory=list)


def _load_export_input(path: str) -> tuple[BatchDescriptor, list[ExposureRecord]]:
    raw = Path(path).read_text(encoding="utf-8")
    request = _ExportInput.model_validate_json(raw)
    return request.batch, [ExposureRecord(**dict(e)) for e in request.exposures]


def _fail(exc: Exception) -> NoReturn:
    click.echo(f"Error: {exc}", err=True)
    sys.exit(1)


registry_option = click.option(
    "--registry",
    "registry_path",
    envvar=REGISTRY_ENV,
    default="signers.json",
    show_default=True,
    metavar="PATH",
    help=f"Signer registry JSON file (env: {REGISTRY_ENV}).",
)

# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="aumai-keyexport")
@click.option(
    "--log-level",
    envvar="LOG_LEVEL",
    default="WARNING",
    show_default=True,
    help="Log level (env: LOG_LEVEL).",
)
@click.option(
    "--log-format",
    envvar=LOG_FORMAT_ENV,
    type=click.Choice(["console", "json"], case_sensitive=False),
    default="console",
    show_default=True,
    help=f"Log output format (env: {LOG_FORMAT_ENV}).",
)
def main(log_level: str, log_format: str) -> None:
    """AumAI KeyExport: signed diagnosis key export archives."""
    configure_logging(
        environment="production" if log_format.lower() == "json" else "development",
        level=log_level,
    )


@main.command("keygen")
@click.option(
    "--output",
    default="keys",
    show_default=True,
    metavar="DIR",
    help="Directory to write private.pem and public.pem.",
)
@click.option(
    "--passphrase-env",
    default=None,
    metavar="VAR",
    help="Encrypt the private key with the passphrase held in this variable.",
)
def keygen_command(output: str, passphrase_env: str | None) -> None:
    """Generate an ECDSA P-256 key pair for a signer."""
    passphrase: bytes | None = None
    if passphrase_env:
        value = os.environ.get(passphrase_env)
        if not value:
            click.echo(f"Error: variable '{passphrase_env}' is not set.", err=True)
            sys.exit(1)
        passphrase = value.encode("utf-8")

    km = KeyManager()
    private_pem, public_pem = km.generate_keypair(passphrase)
    km.save_keypair(private_pem, public_pem, output)
    click.echo(f"Key pair (ecdsa_p256) written to '{output}/'")
    click.echo(f"  Private: {output}/private.pem")
    click.echo(f"  Public : {output}/public.pem")


# ---------------------------------------------------------------------------
# signer
# ---------------------------------------------------------------------------


@main.group("signer")
def signer_group() -> None:
    """Manage the signer registry."""


@signer_group.command("add")
@registry_option
@click.option("--signer-id", required=True, metavar="ID", help="Registry id.")
@click.option(
    "--key",
    required=True,
    metavar="PATH",
    help="Path to the signer's private PEM key file.",
)
@click.option("--android-package", default=None, help="Android package name.")
@click.option("--app-bundle-id", default=None, help="iOS app bundle id.")
@click.option("--key-version", default=None, help="Verification key version.")
@click.option("--key-id", default=None, help="Verification key id.")
@click.option(
    "--password-env",
    default=None,
    metavar="VAR",
    help="Variable holding the private key passphrase.",
)
def signer_add_command(
    registry_path: str,
    signer_id: str,
    key: str,
    android_package: str | None,
    app_bundle_id: str | None,
    key_version: str | None,
    key_id: str | None,
    password_env: str | None,
) -> None:
    """Register a signer and its private key."""
    try:
        config = SignerConfig(
            signer_id=signer_id,
            android_package=android_package,
            app_bundle_id=app_bundle_id,
            verification_key_version=key_version,
            verification_key_id=key_id,
        )
        registry = SignerRegistry(registry_path)
        registry.add_signer(config, key, password_env=password_env)
    except (ExportError, ValidationError, OSError) as exc:
        _fail(exc)

    click.echo(f"Signer '{signer_id}' registered in {registry_path}")


@signer_group.command("list")
@registry_option
def signer_list_command(registry_path: str) -> None:
    """List registered signers."""
    try:
        registry = SignerRegistry(registry_path)
    except ExportError as exc:
        _fail(exc)
    signers = registry.list_signers()
    if not signers:
        click.echo("No signers registered.")
        return
    for signer in signers:
        c = signer.config
        click.echo(
            f"{c.signer_id}  key_id={c.verification_key_id or '-'}  "
            f"version={c.verification_key_version or '-'}  "
            f"package={c.android_package or '-'}  bundle={c.app_bundle_id or '-'}"
        )


@signer_group.command("remove")
@registry_option
@click.option("--signer-id", required=True, metavar="ID")
def signer_remove_command(registry_path: str, signer_id: str) -> None:
    """Remove a signer from the registry."""
    try:
        registry = SignerRegistry(registry_path)
        registry.remove_signer(signer_id)
    except (ExportError, KeyError) as exc:
        _fail(exc)
    click.echo(f"Signer '{signer_id}' removed.")


# ---------------------------------------------------------------------------
# export / verify / inspect
# ---------------------------------------------------------------------------


@main.command("export")
@registry_option
@click.option(
    "--input",
    "input_path",
    required=True,
    metavar="PATH",
    help='JSON file: {"batch": {...}, "exposures": [...]}.',
)
@click.option("--output", required=True, metavar="PATH", help="Archive to write.")
@click.option("--batch-num", default=1, show_default=True, type=int)
@click.option("--batch-size", default=1, show_default=True, type=int)
@click.option(
    "--signer",
    "signer_ids",
    multiple=True,
    metavar="ID",
    help="Sign with these signers only (default: every registered signer).",
)
def export_command(
    registry_path: str,
    input_path: str,
    output: str,
    batch_num: int,
    batch_size: int,
    signer_ids: tuple[str, ...],
) -> None:
    """Build, sign, and pack one export batch."""
    try:
        batch, exposures = _load_export_input(input_path)
        registry = SignerRegistry(registry_path)
        if signer_ids:
            signers = []
            for signer_id in signer_ids:
                registered = registry.get_signer(signer_id)
                if registered is None:
                    raise KeyError(f"Signer not found: {signer_id}")
                signers.append(registered.config)
        else:
            signers = registry.signer_configs()
        if not signers:
            raise KeyError("No signers registered.")

        archive = produce_export_archive(
            batch,
            exposures,
            batch_num,
            batch_size,
            signers,
            registry,
        )
    except (ExportError, ValidationError, KeyError, OSError) as exc:
        _fail(exc)

    out_path = Path(output)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(archive)

    click.echo(f"Export archive written to: {out_path}")
    click.echo(f"  Region   : {batch.region}")
    click.echo(f"  Batch    : {batch_num}/{batch_size}")
    click.echo(f"  Keys     : {len(exposures)}")
    click.echo(f"  Signers  : {', '.join(s.signer_id for s in signers)}")


@main.command("verify")
@registry_option
@click.option("--archive", "archive_path", required=True, metavar="PATH")
def verify_command(registry_path: str, archive_path: str) -> None:
    """Verify every signature in an export archive."""
    verifier = ExportVerifier()
    try:
        registry = SignerRegistry(registry_path)
        results = verifier.verify_archive(Path(archive_path).read_bytes(), registry)
    except (ExportError, OSError) as exc:
        _fail(exc)

    if not results:
        click.echo("Signature: INVALID: archive carries no signatures")
        sys.exit(2)

    all_ok = True
    for result in results:
        who = result.signer_id or result.verification_key_id or "unknown"
        if result.valid:
            click.echo(f"Signature: VALID  ({who})")
        else:
            all_ok = False
            click.echo(f"Signature: INVALID ({who}): {result.error}")
    if not all_ok:
        sys.exit(2)


@main.command("inspect")
@click.option("--archive", "archive_path", required=True, metavar="PATH")
@click.option("--json-output", is_flag=True, help="Emit raw JSON.")
def inspect_command(archive_path: str, json_output: bool) -> None:
    """Display the contents of an export archive."""
    try:
        artifact = ArchivePackager().unpack(Path(archive_path).read_bytes())
        parsed = parse_export(artifact.export_bytes)
        signatures = parse_signature_list(artifact.signature_bytes)
    except (ExportError, OSError) as exc:
        click.echo(f"Error loading archive: {exc}", err=True)
        sys.exit(1)

    if json_output:
        payload = {
            "export": parsed.model_dump(mode="json"),
            "signatures": [s.model_dump(mode="json") for s in signatures],
        }
        click.echo(json.dumps(payload, indent=2))
        return

    click.echo(f"Region       : {parsed.region}")
    click.echo(f"Start        : {parsed.start_timestamp.isoformat()}")
    click.echo(f"End          : {parsed.end_timestamp.isoformat()}")
    click.echo(f"Batch        : {parsed.batch_num}/{parsed.batch_size}")
    click.echo(f"Keys         : {len(parsed.keys)}")
    for key in parsed.keys:
        interval = key.rolling_start_interval_number
        period = key.rolling_period
        click.echo(
            f"  {key.key_data.hex()}  risk={key.transmission_risk_level}  "
            f"interval={'-' if interval is None else interval}  "
            f"period={'-' if period is None else period}"
        )
    click.echo(f"\nSignatures   : {len(signatures)}")
    for entry in signatures:
        info = entry.signature_info
        click.echo(
            f"  key_id={info.verification_key_id or '-'}  "
            f"version={info.verification_key_version or '-'}  "
            f"algorithm={info.signature_algorithm}  "
            f"{len(entry.signature)} bytes"
        )


if __name__ == "__main__":
    main()
