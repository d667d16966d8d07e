"""Smoke tests for the CLI.

These tests run commands against temporary artifact trees. They need no
network access, root privileges or external tools.
"""

import hashlib
import io
import json
import tarfile

import pytest
from typer.testing import CliRunner

from netboot_imagegen import __version__
from netboot_imagegen.artifacts.manifest import build_manifest, write_manifest
from netboot_imagegen.cli import app
from netboot_imagegen.config import Settings

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point the CLI at a temporary artifacts tree and database."""
    artifacts = tmp_path / "artifacts"
    monkeypatch.setenv("NETBOOT_ARTIFACTS_DIR", str(artifacts))
    monkeypatch.setenv("NETBOOT_DB_URL", f"sqlite:///{tmp_path / 'cache.sqlite'}")
    monkeypatch.setenv("NETBOOT_RETRY_BACKOFF", "0")
    return Settings(artifacts_dir=artifacts)


@pytest.fixture
def manifest_written(cli_env):
    """Write extracted files and their manifest for the default version."""
    cli_env.extract_dir.mkdir(parents=True)
    files = []
    for name in ("vmlinuz", "initrd.img", "filesystem.squashfs"):
        path = cli_env.extract_dir / name
        path.write_bytes(name.encode())
        files.append(path)
    write_manifest(build_manifest(cli_env.version, files), cli_env.manifest_path)
    return cli_env


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Netboot provisioning" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        """CLI with no args should show help."""
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout

    @pytest.mark.parametrize(
        "command",
        [
            "fetch",
            "import",
            "list",
            "verify",
            "sync",
            "generate-config",
            "guard",
            "test",
            "verify-all",
            "plan",
            "build-image",
        ],
    )
    def test_subcommand_help(self, command: str) -> None:
        """Every subcommand should provide help."""
        result = runner.invoke(app, [command, "--help"])
        assert result.exit_code == 0


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self, cli_env) -> None:
        """CLI config should show configuration sections."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Paths:" in result.stdout
        assert "Transport:" in result.stdout
        assert "Installation:" in result.stdout

    def test_config_json(self, cli_env) -> None:
        """CLI config --json should output the effective settings."""
        result = runner.invoke(app, ["--release", "3.2.0-5", "-t", "nfs", "config", "--json"])
        assert result.exit_code == 0
        config_data = json.loads(result.stdout)
        assert config_data["version"] == "3.2.0-5"
        assert config_data["transport"] == "nfs"
        assert config_data["artifacts_dir"] == str(cli_env.artifacts_dir)


class TestCLIImageSets:
    """Test import, list and verify commands."""

    @pytest.fixture
    def image_dir(self, tmp_path):
        """A minimal Clonezilla image directory."""
        path = tmp_path / "edge-2024"
        path.mkdir()
        (path / "info").write_text("saved\n")
        (path / "parts").write_text("sda1 sda2\n")
        (path / "sda1.ext4-ptcl-img.gz.aa").write_bytes(b"data")
        return path

    def test_list_empty(self, cli_env) -> None:
        """CLI list should report when nothing is imported."""
        result = runner.invoke(app, ["list"])
        assert result.exit_code == 0
        assert "No image sets found" in result.stdout

    def test_import_list_verify(self, cli_env, image_dir) -> None:
        """An imported set should be listed and verify cleanly."""
        result = runner.invoke(app, ["import", str(image_dir)])
        assert result.exit_code == 0
        assert "Imported image: edge-2024" in result.stdout

        result = runner.invoke(app, ["list", "--json"])
        assert json.loads(result.stdout) == ["edge-2024"]

        result = runner.invoke(app, ["verify", "edge-2024"])
        assert result.exit_code == 0
        assert "PASSED" in result.stdout

    def test_verify_detects_tampering(self, cli_env, image_dir) -> None:
        """CLI verify should fail for a modified file."""
        runner.invoke(app, ["import", str(image_dir)])
        (cli_env.image_sets_dir / "edge-2024" / "sda1.ext4-ptcl-img.gz.aa").write_bytes(b"x")

        result = runner.invoke(app, ["verify", "edge-2024"])

        assert result.exit_code == 1
        assert "Mismatched: sda1.ext4-ptcl-img.gz.aa" in result.output

    def test_import_invalid(self, cli_env, tmp_path) -> None:
        """CLI import should reject a directory that is not an image set."""
        result = runner.invoke(app, ["import", str(tmp_path)])
        assert result.exit_code == 1


class TestCLIBootConfig:
    """Test generate-config, guard and verify-all commands."""

    def test_generate_without_manifest(self, cli_env) -> None:
        """generate-config should fail before fetch has run."""
        result = runner.invoke(
            app, ["generate-config", "--http-base", "http://10.0.0.1/images"]
        )
        assert result.exit_code == 1
        assert "Boot config generation failed" in result.output

    def test_generate_manual(self, manifest_written) -> None:
        """generate-config should write the boot config."""
        result = runner.invoke(
            app, ["generate-config", "--http-base", "http://10.0.0.1/images"]
        )

        assert result.exit_code == 0
        content = manifest_written.boot_config_path.read_text()
        assert "fetch=http://10.0.0.1/images/clonezilla/" in content
        assert "ocs-sr" not in content

    def test_generate_unconfirmed_warns(self, manifest_written) -> None:
        """Destructive modes without confirmation should only warn."""
        result = runner.invoke(
            app,
            ["-m", "auto_full", "generate-config", "--http-base", "http://10.0.0.1/images"],
        )

        assert result.exit_code == 0
        assert "destructive entry omitted" in result.stdout
        assert "restore-disk" not in manifest_written.boot_config_path.read_text()

    def test_generate_confirmed(self, manifest_written) -> None:
        """--confirm YES should arm the restore entry."""
        result = runner.invoke(
            app,
            [
                "-m",
                "auto_full",
                "generate-config",
                "--http-base",
                "http://10.0.0.1/images",
                "--target-disk",
                "/dev/nvme0n1",
                "--confirm",
                "YES",
            ],
        )

        assert result.exit_code == 0
        assert "restore-disk default-image /dev/nvme0n1" in (
            manifest_written.boot_config_path.read_text()
        )

    def test_generate_misconfigured_transport(self, manifest_written) -> None:
        """generate-config should fail for an unusable transport."""
        result = runner.invoke(app, ["-t", "nfs", "generate-config"])
        assert result.exit_code == 1

    def test_verify_all_fails_on_empty_tree(self, cli_env) -> None:
        """verify-all should exit non-zero when checks fail."""
        result = runner.invoke(app, ["verify-all", "--json"])

        assert result.exit_code == 1
        assert '"status": "fail"' in result.stdout

    def test_verify_all_passes(self, manifest_written, monkeypatch) -> None:
        """verify-all should pass after generate-config."""
        monkeypatch.setenv("NETBOOT_HTTP_BASE", "http://10.0.0.1/images")
        runner.invoke(app, ["generate-config"])

        result = runner.invoke(app, ["verify-all"])

        assert result.exit_code == 0, result.output

    @pytest.mark.parametrize(
        "args",
        [
            ["verify-all"],
            ["guard", "--target-disk", "/dev/vdb"],
            ["test"],
        ],
    )
    def test_invalid_configuration(self, cli_env, monkeypatch, args) -> None:
        """Commands should report invalid settings instead of a traceback."""
        monkeypatch.setenv("NETBOOT_SMOKE_TIMEOUT", "0")

        result = runner.invoke(app, args)

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)

    def test_guard(self, cli_env) -> None:
        """guard should write the disk check script."""
        result = runner.invoke(app, ["guard", "--target-disk", "/dev/vdb", "--dry-run"])

        assert result.exit_code == 0
        script = cli_env.guard_dir / "disk-check.sh"
        assert "/dev/vdb" in script.read_text()
        assert (cli_env.guard_dir / "echo-ocs-sr").exists()


class TestCLIFetch:
    """Test the fetch command against a local release container."""

    def test_fetch_local_release(self, cli_env, tmp_path, monkeypatch) -> None:
        """fetch should extract the boot files and write the manifest."""
        container = tmp_path / "release.tar"
        with tarfile.open(container, "w") as tar:
            for name in ("vmlinuz", "initrd.img", "filesystem.squashfs"):
                data = name.encode()
                info = tarfile.TarInfo(name=f"live/{name}")
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
        monkeypatch.setenv("NETBOOT_ISO_URL", container.as_uri())
        monkeypatch.setenv(
            "NETBOOT_ISO_SHA256", hashlib.sha256(container.read_bytes()).hexdigest()
        )

        result = runner.invoke(app, ["--release", "9.9.9-1", "fetch"])

        assert result.exit_code == 0, result.output
        assert "Release 9.9.9-1 ready" in result.stdout
        manifest = cli_env.clonezilla_dir / "extract" / "9.9.9-1" / "manifest.json"
        assert json.loads(manifest.read_text())["version"] == "9.9.9-1"

    def test_fetch_offline_without_cache(self, cli_env) -> None:
        """fetch should fail in offline mode when nothing is cached."""
        result = runner.invoke(app, ["--offline", "fetch"])
        assert result.exit_code == 1
        assert "Fetch failed" in result.output


class TestCLIPlan:
    """Test the plan command."""

    def test_plan_json(self, cli_env, tmp_path) -> None:
        """plan --json should describe each partition."""
        layout = tmp_path / "layout.yaml"
        layout.write_text(
            "partitions:\n"
            "  - {name: ESP, size_mib: 256, fs: vfat, label: EFI, boot: true}\n"
            "  - {name: ROOT, size_mib: 1000, fs: ext4, label: ROOT}\n"
            "  - {name: DATA, size_mode: remainder, min_mib: 64, fs: ext4, label: DATA}\n"
        )

        result = runner.invoke(
            app,
            ["plan", str(tmp_path), "--layout", str(layout), "--total-mib", "4000", "--json"],
        )

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert [p["name"] for p in data["partitions"]] == ["ESP", "ROOT", "DATA"]
        assert data["partitions"][0]["size_mib"] == 256

    def test_plan_invalid_layout(self, cli_env, tmp_path) -> None:
        """plan should reject an invalid layout file."""
        layout = tmp_path / "layout.yaml"
        layout.write_text("- not a mapping\n")

        result = runner.invoke(app, ["plan", str(tmp_path), "--layout", str(layout)])

        assert result.exit_code == 1
        assert "Invalid layout file" in result.output

    def test_plan_too_small(self, cli_env, tmp_path) -> None:
        """plan should report layouts that do not fit."""
        result = runner.invoke(app, ["plan", str(tmp_path), "--total-mib", "100"])
        assert result.exit_code == 1
