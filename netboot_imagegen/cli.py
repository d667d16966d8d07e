"""Thin CLI wrapper for netboot_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table
from sqlalchemy.orm import Session, sessionmaker

from netboot_imagegen import __version__
from netboot_imagegen.config import MIB, Settings, get_settings, print_settings_json
from netboot_imagegen.errors import NetbootError
from netboot_imagegen.logging_utils import configure_logging
from netboot_imagegen.types import InstallMode, Transport

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="netboot",
    help="Netboot provisioning - fetch live assets, build disk images, generate boot menus",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"netboot-imagegen version {__version__}")
        raise typer.Exit()


def _settings(ctx: typer.Context, **extra: Any) -> Settings:
    """Build the settings for this invocation from global and command flags."""
    overrides: dict[str, Any] = dict(ctx.obj or {})
    overrides.update(extra)
    return get_settings(**overrides)


def _fail(message: str, exc: Exception | None = None) -> typer.Exit:
    """Report a fatal error and return the Exit to raise."""
    if exc is not None:
        logger.error("%s: %s", message, exc)
        err_console.print(f"[red]{message}: {exc}[/red]")
    else:
        logger.error("%s", message)
        err_console.print(f"[red]{message}[/red]")
    return typer.Exit(code=1)


def _session_factory(settings: Settings) -> sessionmaker[Session]:
    from netboot_imagegen.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    artifacts_dir: Annotated[
        Path | None,
        typer.Option("--artifacts-dir", help="Root directory for artifacts"),
    ] = None,
    release: Annotated[
        str | None,
        typer.Option("--release", "-r", help="Clonezilla Live version"),
    ] = None,
    transport: Annotated[
        Transport | None,
        typer.Option("--transport", "-t", help="Payload transport"),
    ] = None,
    mode: Annotated[
        InstallMode | None,
        typer.Option("--mode", "-m", help="Installation mode"),
    ] = None,
    offline: Annotated[
        bool | None,
        typer.Option("--offline/--online", help="Never download assets"),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Logging level"),
    ] = None,
) -> None:
    """Netboot provisioning - fetch live assets, build disk images, generate boot menus."""
    ctx.obj = {
        "artifacts_dir": artifacts_dir,
        "version": release,
        "transport": transport,
        "mode": mode,
        "offline": offline,
        "log_level": log_level.upper() if log_level else None,
    }
    try:
        settings = _settings(ctx)
    except ValidationError as e:
        raise _fail("Invalid configuration", e) from None
    configure_logging(settings.log_level)


@app.command()
def config(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = _settings(ctx)
    if json_output:
        console.print_json(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Artifacts directory: {settings.artifacts_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print(f"  Boot config:         {settings.boot_config_path}")
    console.print()
    console.print("[bold]Release:[/bold]")
    console.print(f"  Version:             {settings.version}")
    console.print(f"  Source:              {settings.source_locator}")
    console.print(f"  Expected digest:     {settings.iso_sha256 or '(none)'}")
    console.print()
    console.print("[bold]Transport:[/bold]")
    console.print(f"  Transport:           {settings.transport.value}")
    console.print(f"  Server host:         {settings.server_host or '(unset)'}")
    console.print(f"  HTTP base:           {settings.http_base or '(unset)'}")
    console.print(f"  NFS export:          {settings.nfs_export or '(unset)'}")
    console.print()
    console.print("[bold]Installation:[/bold]")
    console.print(f"  Mode:                {settings.mode.value}")
    console.print(f"  Target disk:         {settings.target_disk}")
    console.print(f"  Image set:           {settings.image_name}")
    console.print(f"  Destructive armed:   {settings.armed}")
    console.print(f"  Dry run:             {settings.dry_run}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Offline mode:        {settings.offline}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Download timeout:    {settings.download_timeout}s")
    console.print(f"  Download retries:    {settings.download_retries}")


@app.command()
def fetch(ctx: typer.Context) -> None:
    """Fetch the live ISO, extract boot files and write the manifest."""
    from netboot_imagegen.artifacts.service import fetch_release
    from netboot_imagegen.db import get_session

    settings = _settings(ctx)
    factory = _session_factory(settings)

    console.print(f"[blue]Fetching Clonezilla Live {settings.version}...[/blue]")
    try:
        with get_session(factory) as session:
            assets = fetch_release(session, settings)
    except NetbootError as e:
        raise _fail("Fetch failed", e) from None

    verified = "verified" if assets.iso.verified else "unverified"
    console.print(f"[green]✓ Release {assets.version} ready[/green]")
    console.print(f"  ISO: {assets.iso.path} ({verified}, {assets.iso.sha256[:16]}...)")
    console.print(f"  Extracted: {assets.extract_dir}")
    state = "created" if assets.manifest_created else "verified"
    console.print(f"  Manifest: {assets.manifest_path} ({state})")


@app.command("import")
def import_image(
    ctx: typer.Context,
    path: Annotated[Path, typer.Argument(help="Clonezilla image directory")],
) -> None:
    """Import a Clonezilla image set."""
    from netboot_imagegen.artifacts.imagesets import import_image_set

    settings = _settings(ctx)
    try:
        image_set = import_image_set(path, settings.image_sets_dir)
    except NetbootError as e:
        raise _fail("Import failed", e) from None
    console.print(
        f"[green]✓ Imported image: {image_set.name} ({image_set.file_count} files)[/green]"
    )


@app.command("list")
def list_images(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List imported image sets."""
    from netboot_imagegen.artifacts.imagesets import list_image_sets

    settings = _settings(ctx)
    names = list_image_sets(settings.image_sets_dir)
    if json_output:
        console.print_json(data=names)
        return
    if not names:
        console.print("[yellow]No image sets found[/yellow]")
        return
    for name in names:
        console.print(name)


@app.command()
def verify(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Image set name")],
) -> None:
    """Recompute an image set's hashes and compare with SHA256SUMS."""
    from netboot_imagegen.artifacts.imagesets import verify_image_set

    settings = _settings(ctx)
    try:
        result = verify_image_set(name, settings.image_sets_dir)
    except NetbootError as e:
        raise _fail("Verification failed", e) from None

    if result.ok:
        console.print(f"[green]✓ Image {name} verification PASSED[/green]")
        return
    for label, files in (
        ("Mismatched", result.mismatched),
        ("Missing", result.missing),
        ("Unexpected", result.unexpected),
    ):
        for rel in files:
            err_console.print(f"  {label}: {rel}")
    raise _fail(f"Image {name} verification FAILED")


@app.command()
def sync(ctx: typer.Context) -> None:
    """Stage boot files for the configured transport."""
    from netboot_imagegen.boot.sync import sync_artifacts

    settings = _settings(ctx)
    try:
        result = sync_artifacts(settings)
    except NetbootError as e:
        raise _fail("Sync failed", e) from None
    console.print(f"[green]✓ Artifacts synced for {result.transport.value}[/green]")
    console.print(f"  Kernel:  {result.kernel}")
    console.print(f"  Initrd:  {result.initrd}")
    console.print(f"  Payload: {result.payload}")
    console.print(f"  Hashes:  {result.hashes_path}")


@app.command("generate-config")
def generate_config(
    ctx: typer.Context,
    server_host: Annotated[
        str | None,
        typer.Option("--server-host", help="PXE/NFS/TFTP server host"),
    ] = None,
    http_base: Annotated[
        str | None,
        typer.Option("--http-base", help="HTTP base URL of the payload tree"),
    ] = None,
    nfs_export: Annotated[
        str | None,
        typer.Option("--nfs-export", help="NFS export path"),
    ] = None,
    target_disk: Annotated[
        str | None,
        typer.Option("--target-disk", help="Target disk for destructive entries"),
    ] = None,
    image_name: Annotated[
        str | None,
        typer.Option("--image", help="Image set used by automated entries"),
    ] = None,
    confirm: Annotated[
        str | None,
        typer.Option("--confirm", help="Type YES to arm destructive entries"),
    ] = None,
    dry_run: Annotated[
        bool | None,
        typer.Option("--dry-run/--no-dry-run", help="Wrap destructive commands in echo"),
    ] = None,
) -> None:
    """Generate GRUB entries for the configured transport and mode."""
    from netboot_imagegen.artifacts.manifest import load_manifest
    from netboot_imagegen.boot.generator import generate_config_file

    try:
        settings = _settings(
            ctx,
            server_host=server_host,
            http_base=http_base,
            nfs_export=nfs_export,
            target_disk=target_disk,
            image_name=image_name,
            confirm=confirm,
            dry_run=dry_run,
        )
    except ValidationError as e:
        raise _fail("Invalid configuration", e) from None

    try:
        manifest = load_manifest(settings.manifest_path)
        path = generate_config_file(settings, manifest)
    except NetbootError as e:
        raise _fail("Boot config generation failed", e) from None

    console.print(f"[green]✓ GRUB entries generated: {path}[/green]")
    if settings.mode.is_destructive and not settings.armed:
        console.print(
            f"[yellow]Mode {settings.mode.value} not confirmed; "
            "destructive entry omitted (use --confirm YES)[/yellow]"
        )


@app.command()
def guard(
    ctx: typer.Context,
    check: Annotated[
        bool,
        typer.Option("--check", help="Also validate the target disk on this host"),
    ] = False,
    target_disk: Annotated[
        str | None,
        typer.Option("--target-disk", help="Target disk"),
    ] = None,
    dry_run: Annotated[
        bool | None,
        typer.Option("--dry-run/--no-dry-run", help="Also write the echo-ocs-sr wrapper"),
    ] = None,
) -> None:
    """Write guard scripts used before destructive operations."""
    from netboot_imagegen.boot.device import check_target_disk
    from netboot_imagegen.boot.guard import prepare_guard

    try:
        settings = _settings(ctx, target_disk=target_disk, dry_run=dry_run)
    except ValidationError as e:
        raise _fail("Invalid configuration", e) from None
    paths = prepare_guard(settings)
    console.print(f"[green]✓ Guard scripts prepared in {settings.guard_dir}[/green]")
    for path in paths:
        console.print(f"  {path.name}")

    if check:
        try:
            result = check_target_disk(settings.target_disk, settings.guard_min_disk_bytes)
        except NetbootError as e:
            raise _fail("Target disk check failed", e) from None
        console.print(f"[green]✓ Target disk OK: {result.path} ({result.size_bytes} bytes)[/green]")


@app.command()
def test(ctx: typer.Context) -> None:
    """Boot the PXE tree in QEMU and look for Clonezilla on the serial console."""
    from netboot_imagegen.boot.smoke import run_smoke_test

    try:
        settings = _settings(ctx)
    except ValidationError as e:
        raise _fail("Invalid configuration", e) from None
    try:
        result = run_smoke_test(settings)
    except NetbootError as e:
        raise _fail("Smoke test failed", e) from None

    if not result.passed:
        raise _fail(f"Clonezilla not detected; inspect {result.serial_log}")
    console.print("[green]✓ QEMU smoke test PASSED[/green]")


@app.command("verify-all")
def verify_all_cmd(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Verify extracted files, the boot config and the default image set."""
    from netboot_imagegen.verify.engine import verify_all

    try:
        settings = _settings(ctx)
    except ValidationError as e:
        raise _fail("Invalid configuration", e) from None
    report = verify_all(settings)

    if json_output:
        console.print_json(data=report.to_dict())
    else:
        table = Table(title="Verification Summary")
        table.add_column("Check")
        table.add_column("Status")
        table.add_column("Detail")
        for result in report.results:
            status = "[green]PASS[/green]" if result.passed else "[red]FAIL[/red]"
            table.add_row(result.name, status, result.detail or "")
        console.print(table)

    if not report.passed:
        raise _fail(f"{len(report.failures)} check(s) failed")


def _load_layout_option(layout_file: Path | None) -> Any:
    import yaml

    from netboot_imagegen.disk.layout import DEFAULT_LAYOUT, load_layout

    if layout_file is None:
        return DEFAULT_LAYOUT
    try:
        return load_layout(layout_file)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise _fail(f"Invalid layout file {layout_file}", e) from None


@app.command("plan")
def plan_cmd(
    ctx: typer.Context,
    source_root: Annotated[Path, typer.Argument(help="Root filesystem tree")],
    layout_file: Annotated[
        Path | None,
        typer.Option("--layout", "-l", help="YAML layout file"),
    ] = None,
    total_mib: Annotated[
        int | None,
        typer.Option("--total-mib", help="Usable disk size in MiB"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the partition plan for a root filesystem tree."""
    from netboot_imagegen.disk.service import plan_for_tree

    settings = _settings(ctx)
    layout = _load_layout_option(layout_file)
    total = total_mib * MIB if total_mib is not None else None
    try:
        partition_plan = plan_for_tree(settings, source_root, layout, total)
    except NetbootError as e:
        raise _fail("Planning failed", e) from None

    if json_output:
        console.print_json(data=partition_plan.to_dict())
        return

    table = Table(title=f"Partition plan ({partition_plan.total_bytes // MIB} MiB)")
    table.add_column("#")
    table.add_column("Name")
    table.add_column("Label")
    table.add_column("FS")
    table.add_column("Start (MiB)", justify="right")
    table.add_column("Size (MiB)", justify="right")
    for part in partition_plan.partitions:
        table.add_row(
            str(part.number),
            part.name + (" *" if part.boot else ""),
            part.label,
            part.fs.value,
            str(part.offset // MIB),
            str(part.size_mib),
        )
    console.print(table)


@app.command("build-image")
def build_image_cmd(
    ctx: typer.Context,
    source_root: Annotated[Path, typer.Argument(help="Root filesystem tree")],
    layout_file: Annotated[
        Path | None,
        typer.Option("--layout", "-l", help="YAML layout file"),
    ] = None,
    total_mib: Annotated[
        int | None,
        typer.Option("--total-mib", help="Usable disk size in MiB"),
    ] = None,
    name: Annotated[
        str,
        typer.Option("--name", help="Raw image file name"),
    ] = "edge-device-init.img",
) -> None:
    """Build, compress and checksum a multi-partition disk image (needs root)."""
    from netboot_imagegen.disk.service import build_image

    settings = _settings(ctx)
    layout = _load_layout_option(layout_file)
    total = total_mib * MIB if total_mib is not None else None

    console.print(f"[blue]Building disk image from {source_root}...[/blue]")
    try:
        outcome = build_image(settings, source_root, layout, total, image_name=name)
    except NetbootError as e:
        raise _fail("Image build failed", e) from None

    console.print(f"[green]✓ Disk image built: {outcome.image.path}[/green]")
    console.print(f"  Compressed: {outcome.published.compressed_path}")
    console.print(f"  Manifest:   {outcome.published.manifest_path}")


if __name__ == "__main__":
    app()
