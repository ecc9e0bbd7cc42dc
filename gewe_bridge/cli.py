"""Click CLI for running the GeWe bridge and its voice tooling."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from gewe_bridge.config import GeweAccountConfig, load_config
from gewe_bridge.installer.rust_silk import RustSilkInstaller
from gewe_bridge.media.silk import VoiceTranscoder
from gewe_bridge.monitor import serve as serve_bridge


@click.group()
@click.option("--config", "config_path", default=None, help="Path to the account config JSON.")
@click.option("--log-level", default="INFO", help="Root logging level.")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str) -> None:
    """GeWe WeChat webhook bridge."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        raise click.ClickException(str(e)) from e


@cli.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the webhook server (and media server when configured)."""
    config: GeweAccountConfig = ctx.obj["config"]
    try:
        asyncio.run(serve_bridge(config))
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    except KeyboardInterrupt:
        click.echo("Stopped", err=True)


@cli.command("install-silk")
@click.pass_context
def install_silk(ctx: click.Context) -> None:
    """Download and verify the rust-silk binary, then print its path."""
    config: GeweAccountConfig = ctx.obj["config"]
    installer = RustSilkInstaller(config)
    path = asyncio.run(installer.ensure())
    if not path:
        click.echo("rust-silk is not available for this platform or configuration", err=True)
        sys.exit(1)
    click.echo(path)


@cli.command("decode-voice")
@click.argument("input_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("output_path", type=click.Path(dir_okay=False))
@click.pass_context
def decode_voice(ctx: click.Context, input_path: str, output_path: str) -> None:
    """Decode a SILK voice file to WAV."""
    config: GeweAccountConfig = ctx.obj["config"]
    transcoder = VoiceTranscoder(config, installer=RustSilkInstaller(config))
    decoded = asyncio.run(transcoder.decode(Path(input_path).read_bytes()))
    if decoded is None:
        click.echo("Voice decode failed", err=True)
        sys.exit(1)
    Path(output_path).write_bytes(decoded.buffer)
    click.echo(f"Wrote {len(decoded.buffer)} bytes to {output_path}")
