"""Tests for aumai_keyexport.cli: Click command group."""

from __future__ import annotations

import io
import json
import zipfile
from pathlib import Path
from unittest.mock import patch

from click.testing import CliRunner
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from aumai_keyexport.cli import main
from aumai_keyexport.core import ArchivePackager, KeyManager

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_keys(tmp_path: Path, name: str = "sig1") -> tuple[Path, Path]:
    """Generate a key pair under tmp_path/keys/<name>. Return (private, public)."""
    km = KeyManager()
    private_pem, public_pem = km.generate_keypair()
    km.save_keypair(private_pem, public_pem, str(tmp_path / "keys" / name))
    return (
        tmp_path / "keys" / name / "private.pem",
        tmp_path / "keys" / name / "public.pem",
    )


def _write_input(tmp_path: Path) -> Path:
    path = tmp_path / "batch.json"
    path.write_text(
        json.dumps(
            {
                "batch": {
                    "start_timestamp": "2023-01-01T00:00:00Z",
                    "end_timestamp": "2023-01-02T00:00:00Z",
                    "region": "AT",
                },
                "exposures": [
                    {
                        "key_data": "SzI=",  # K2
                        "transmission_risk_level": 5,
                        "rolling_start_interval_number": 2660,
                        "rolling_period": 144,
                    },
                    {"key_data": "SzE=", "transmission_risk_level": 3},  # K1
                ],
            }
        ),
        encoding="utf-8",
    )
    return path


def _add_signer(runner: CliRunner, registry: Path, key: Path, signer_id: str) -> None:
    result = runner.invoke(
        main,
        [
            "signer",
            "add",
            "--registry",
            str(registry),
            "--signer-id",
            signer_id,
            "--key",
            str(key),
            "--android-package",
            "org.example.app",
            "--key-version",
            "v1",
            "--key-id",
            signer_id,
        ],
    )
    assert result.exit_code == 0, result.output


def _export(runner: CliRunner, tmp_path: Path, registry: Path, *extra: str):
    return runner.invoke(
        main,
        [
            "export",
            "--registry",
            str(registry),
            "--input",
            str(_write_input(tmp_path)),
            "--output",
            str(tmp_path / "out" / "export.zip"),
            *extra,
        ],
    )


# ===========================================================================
# Global flags
# ===========================================================================


class TestCliVersion:
    def test_version_flag_reports_version(self) -> None:
        runner = CliRunner()
        with patch("importlib.metadata.version", return_value="0.1.0"):
            result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_help_shows_subcommands(self) -> None:
        result = CliRunner().invoke(main, ["--help"])
        assert result.exit_code == 0
        for cmd in ("keygen", "signer", "export", "verify", "inspect"):
            assert cmd in result.output


# ===========================================================================
# keygen
# ===========================================================================


class TestKeygenCommand:
    def test_keygen_writes_p256_pair(self, tmp_path: Path) -> None:
        keys_dir = tmp_path / "out"
        result = CliRunner().invoke(main, ["keygen", "--output", str(keys_dir)])
        assert result.exit_code == 0
        assert "ecdsa_p256" in result.output
        key = serialization.load_pem_private_key(
            (keys_dir / "private.pem").read_bytes(), password=None
        )
        assert isinstance(key, ec.EllipticCurvePrivateKey)
        assert (keys_dir / "public.pem").exists()

    def test_keygen_with_passphrase(self, tmp_path: Path) -> None:
        keys_dir = tmp_path / "enc"
        result = CliRunner().invoke(
            main,
            ["keygen", "--output", str(keys_dir), "--passphrase-env", "KEY_PASS"],
            env={"KEY_PASS": "pw"},
        )
        assert result.exit_code == 0
        pem = (keys_dir / "private.pem").read_bytes()
        assert b"ENCRYPTED" in pem
        serialization.load_pem_private_key(pem, password=b"pw")

    def test_keygen_missing_passphrase_var_fails(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(
            main,
            ["keygen", "--output", str(tmp_path / "k"), "--passphrase-env", "NOPE_VAR"],
            env={"NOPE_VAR": ""},
        )
        assert result.exit_code == 1
        assert not (tmp_path / "k").exists()


# ===========================================================================
# signer
# ===========================================================================


class TestSignerCommands:
    def test_add_then_list(self, tmp_path: Path) -> None:
        runner = CliRunner()
        registry = tmp_path / "signers.json"
        private, _ = _write_keys(tmp_path)
        _add_signer(runner, registry, private, "sig1")

        result = runner.invoke(main, ["signer", "list", "--registry", str(registry)])
        assert result.exit_code == 0
        assert "sig1" in result.output
        assert "org.example.app" in result.output

    def test_registry_from_environment(self, tmp_path: Path) -> None:
        runner = CliRunner()
        registry = tmp_path / "env-signers.json"
        private, _ = _write_keys(tmp_path)
        _add_signer(runner, registry, private, "sig1")

        result = runner.invoke(
            main,
            ["signer", "list"],
            env={"AUMAI_KEYEXPORT_REGISTRY": str(registry)},
        )
        assert "sig1" in result.output

    def test_list_empty(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(
            main, ["signer", "list", "--registry", str(tmp_path / "none.json")]
        )
        assert result.exit_code == 0
        assert "No signers registered" in result.output

    def test_corrupt_registry_reports_error(self, tmp_path: Path) -> None:
        registry = tmp_path / "signers.json"
        registry.write_text("{not json", encoding="utf-8")
        runner = CliRunner()
        for args in (
            ["signer", "list"],
            ["signer", "remove", "--signer-id", "sig1"],
            ["verify", "--archive", str(tmp_path / "any.zip")],
        ):
            result = runner.invoke(main, [*args, "--registry", str(registry)])
            assert result.exit_code == 1, args
            assert "Cannot load signer registry" in result.output
            assert result.exception is None or isinstance(result.exception, SystemExit)

    def test_add_duplicate_descriptor_fails(self, tmp_path: Path) -> None:
        runner = CliRunner()
        registry = tmp_path / "signers.json"
        _add_signer(runner, registry, _write_keys(tmp_path, "a")[0], "sig1")
        result = runner.invoke(
            main,
            [
                "signer",
                "add",
                "--registry",
                str(registry),
                "--signer-id",
                "copy",
                "--key",
                str(_write_keys(tmp_path, "b")[0]),
                "--android-package",
                "org.example.app",
                "--key-version",
                "v1",
                "--key-id",
                "sig1",
            ],
        )
        assert result.exit_code == 1
        assert "already uses" in result.output

    def test_add_with_bad_key_fails(self, tmp_path: Path) -> None:
        bogus = tmp_path / "bogus.pem"
        bogus.write_text("nope", encoding="utf-8")
        result = CliRunner().invoke(
            main,
            [
                "signer",
                "add",
                "--registry",
                str(tmp_path / "signers.json"),
                "--signer-id",
                "x",
                "--key",
                str(bogus),
            ],
        )
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_remove(self, tmp_path: Path) -> None:
        runner = CliRunner()
        registry = tmp_path / "signers.json"
        private, _ = _write_keys(tmp_path)
        _add_signer(runner, registry, private, "sig1")

        result = runner.invoke(
            main, ["signer", "remove", "--registry", str(registry), "--signer-id", "sig1"]
        )
        assert result.exit_code == 0
        listing = runner.invoke(main, ["signer", "list", "--registry", str(registry)])
        assert "No signers registered" in listing.output

    def test_remove_unknown_fails(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(
            main,
            [
                "signer",
                "remove",
                "--registry",
                str(tmp_path / "signers.json"),
                "--signer-id",
                "ghost",
            ],
        )
        assert result.exit_code == 1


# ===========================================================================
# export / verify / inspect
# ===========================================================================


class TestExportCommand:
    def test_export_writes_two_entry_archive(self, tmp_path: Path) -> None:
        runner = CliRunner()
        registry = tmp_path / "signers.json"
        private, _ = _write_keys(tmp_path)
        _add_signer(runner, registry, private, "sig1")

        result = _export(runner, tmp_path, registry)
        assert result.exit_code == 0, result.output
        assert "Keys     : 2" in result.output

        archive = (tmp_path / "out" / "export.zip").read_bytes()
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            assert zf.namelist() == ["export.bin", "export.sig"]

    def test_export_selected_signer_only(self, tmp_path: Path) -> None:
        runner = CliRunner()
        registry = tmp_path / "signers.json"
        _add_signer(runner, registry, _write_keys(tmp_path, "a")[0], "sig1")
        _add_signer(runner, registry, _write_keys(tmp_path, "b")[0], "sig2")

        result = _export(runner, tmp_path, registry, "--signer", "sig2")
        assert result.exit_code == 0, result.output
        assert "Signers  : sig2" in result.output

    def test_export_unknown_signer_fails(self, tmp_path: Path) -> None:
        runner = CliRunner()
        registry = tmp_path / "signers.json"
        _add_signer(runner, registry, _write_keys(tmp_path)[0], "sig1")

        result = _export(runner, tmp_path, registry, "--signer", "ghost")
        assert result.exit_code == 1
        assert not (tmp_path / "out" / "export.zip").exists()

    def test_export_without_signers_fails(self, tmp_path: Path) -> None:
        result = _export(CliRunner(), tmp_path, tmp_path / "empty.json")
        assert result.exit_code == 1
        assert "No signers registered" in result.output

    def test_export_bad_batch_position_fails(self, tmp_path: Path) -> None:
        runner = CliRunner()
        registry = tmp_path / "signers.json"
        _add_signer(runner, registry, _write_keys(tmp_path)[0], "sig1")

        result = _export(runner, tmp_path, registry, "--batch-num", "3", "--batch-size", "2")
        assert result.exit_code == 1
        assert "batch_num" in result.output

    def test_export_key_deleted_after_registration_fails(self, tmp_path: Path) -> None:
        runner = CliRunner()
        registry = tmp_path / "signers.json"
        private, _ = _write_keys(tmp_path)
        _add_signer(runner, registry, private, "sig1")
        private.unlink()

        result = _export(runner, tmp_path, registry)
        assert result.exit_code == 1
        assert not (tmp_path / "out" / "export.zip").exists()


class TestVerifyCommand:
    def test_verify_valid_archive(self, tmp_path: Path) -> None:
        runner = CliRunner()
        registry = tmp_path / "signers.json"
        _add_signer(runner, registry, _write_keys(tmp_path, "a")[0], "sig1")
        _add_signer(runner, registry, _write_keys(tmp_path, "b")[0], "sig2")
        _export(runner, tmp_path, registry)

        result = runner.invoke(
            main,
            [
                "verify",
                "--registry",
                str(registry),
                "--archive",
                str(tmp_path / "out" / "export.zip"),
            ],
        )
        assert result.exit_code == 0, result.output
        assert result.output.count("Signature: VALID") == 2

    def test_verify_tampered_archive_exits_2(self, tmp_path: Path) -> None:
        runner = CliRunner()
        registry = tmp_path / "signers.json"
        _add_signer(runner, registry, _write_keys(tmp_path)[0], "sig1")
        _export(runner, tmp_path, registry)

        path = tmp_path / "out" / "export.zip"
        artifact = ArchivePackager().unpack(path.read_bytes())
        path.write_bytes(
            ArchivePackager().pack(
                artifact.export_bytes.replace(b"AT", b"DE"), artifact.signature_bytes
            )
        )

        result = runner.invoke(
            main, ["verify", "--registry", str(registry), "--archive", str(path)]
        )
        assert result.exit_code == 2
        assert "INVALID" in result.output

    def test_verify_missing_archive_fails(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(
            main,
            [
                "verify",
                "--registry",
                str(tmp_path / "signers.json"),
                "--archive",
                str(tmp_path / "missing.zip"),
            ],
        )
        assert result.exit_code == 1


class TestInspectCommand:
    def _archive(self, tmp_path: Path) -> Path:
        runner = CliRunner()
        registry = tmp_path / "signers.json"
        _add_signer(runner, registry, _write_keys(tmp_path)[0], "sig1")
        _export(runner, tmp_path, registry)
        return tmp_path / "out" / "export.zip"

    def test_inspect_text(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(
            main, ["inspect", "--archive", str(self._archive(tmp_path))]
        )
        assert result.exit_code == 0
        assert "Region       : AT" in result.output
        assert "Keys         : 2" in result.output
        # K1 has no interval fields; K2 does.
        assert f"{b'K1'.hex()}  risk=3  interval=-  period=-" in result.output
        assert f"{b'K2'.hex()}  risk=5  interval=2660  period=144" in result.output
        assert "1.2.840.10045.4.3.2" in result.output

    def test_inspect_json(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(
            main,
            ["inspect", "--archive", str(self._archive(tmp_path)), "--json-output"],
        )
        assert result.exit_code == 0
        payload = json.loads(result.output)
        keys = payload["export"]["keys"]
        assert [k["key_data"] for k in keys] == ["SzE=", "SzI="]
        assert keys[0]["rolling_period"] is None
        assert payload["signatures"][0]["signature_info"]["verification_key_id"] == "sig1"

    def test_inspect_not_a_zip(self, tmp_path: Path) -> None:
        bogus = tmp_path / "bogus.zip"
        bogus.write_bytes(b"nope")
        result = CliRunner().invoke(main, ["inspect", "--archive", str(bogus)])
        assert result.exit_code == 1
        assert "Error loading archive" in result.output
