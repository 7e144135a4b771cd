"""CLI entry point for adbpair."""

import asyncio
from pathlib import Path

import click

from adbpair import __version__
from adbpair.config import load_config
from adbpair.errors import AdbPairError
from adbpair.logging import setup_logging

STATE_MESSAGES = {
    "EXCHANGING_KEYS": "Exchanging keys...",
    "EXCHANGING_IDENTITY": "Exchanging identities...",
}


def _fail(error: AdbPairError) -> None:
    """Print the user-facing message and exit with status 1."""
    click.echo(f"Error: {error.user_message}", err=True)
    raise SystemExit(1)


def _echo_state(state) -> None:
    message = STATE_MESSAGES.get(state.name)
    if message:
        click.echo(message)


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None) -> None:
    """adbpair - Pair with Android devices for wireless debugging."""
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config)
    except ValueError as e:
        click.echo(f"Error: invalid config: {e}", err=True)
        raise SystemExit(1)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"adbpair version {__version__}")


@main.command()
@click.argument("host")
@click.argument("port", type=click.IntRange(1, 65535))
@click.argument("code")
@click.pass_context
def pair(ctx: click.Context, host: str, port: int, code: str) -> None:
    """Pair with a device showing a pairing CODE on HOST:PORT."""
    from adbpair.factory import create_key_manager, open_trusted_key_store
    from adbpair.pairing import PairingClient, PeerInfoType

    config = ctx.obj["config"]

    async def _pair():
        key_manager = create_key_manager(config)
        client = PairingClient(
            host,
            port,
            code,
            key_manager,
            key_name=config.key_name,
            timeout=config.handshake_timeout,
            on_state_change=_echo_state,
        )
        peer_info = await client.start()

        if peer_info.type != PeerInfoType.RSA_PUBLIC_KEY:
            click.echo(f"Paired with {host}:{port} ({peer_info.type.name.lower()})")
            return

        store = await open_trusted_key_store(config)
        trusted = await store.add_key(peer_info.data)
        click.echo(f"Paired with {trusted.name} ({trusted.fingerprint[:16]})")

    try:
        asyncio.run(_pair())
    except AdbPairError as e:
        _fail(e)
    except ValueError as e:
        click.echo(f"Error: device sent an invalid public key: {e}", err=True)
        raise SystemExit(1)


@main.command()
@click.argument("code")
@click.option("--host", default="0.0.0.0", show_default=True, help="Address to listen on.")
@click.option("--port", default=0, type=click.IntRange(0, 65535), help="Port to listen on (default: any).")
@click.pass_context
def serve(ctx: click.Context, code: str, host: str, port: int) -> None:
    """Accept one pairing attempt using pairing CODE."""
    from adbpair.factory import create_key_manager, open_trusted_key_store
    from adbpair.pairing import PairingServer

    config = ctx.obj["config"]

    async def _serve():
        server = PairingServer(
            code,
            create_key_manager(config),
            host=host,
            port=port,
            key_name=config.key_name,
            timeout=config.handshake_timeout,
            trusted_keys=await open_trusted_key_store(config),
        )
        async with server:
            click.echo(f"Listening on {host}:{server.port} with code {code}")
            click.echo("Press Ctrl+C to stop")
            peer_info = await server.wait_for_pairing()
        click.echo(f"Paired ({peer_info.type.name.lower()}, {len(peer_info.data)} bytes)")

    try:
        asyncio.run(_serve())
    except AdbPairError as e:
        _fail(e)
    except OSError as e:
        click.echo(f"Error: cannot listen on {host}:{port}: {e}", err=True)
        raise SystemExit(1)
    except KeyboardInterrupt:
        click.echo("\nStopped.")


@main.command()
@click.pass_context
def pubkey(ctx: click.Context) -> None:
    """Print our public key in adb_keys format."""
    from adbpair.factory import create_key_manager

    try:
        key_manager = create_key_manager(ctx.obj["config"])
        encoded = key_manager.export_protocol_public_key()
        fingerprint = key_manager.fingerprint()
    except AdbPairError as e:
        _fail(e)

    click.echo(encoded.rstrip(b"\x00").decode("utf-8"))
    click.echo(f"Fingerprint: {fingerprint}", err=True)


@main.command()
@click.argument("host")
@click.argument("port", type=click.IntRange(1, 65535))
@click.argument("command")
@click.pass_context
def shell(ctx: click.Context, host: str, port: int, command: str) -> None:
    """Run COMMAND on a paired device's adbd at HOST:PORT."""
    from adbpair.adb import AdbConnection
    from adbpair.factory import create_key_manager

    config = ctx.obj["config"]

    async def _shell():
        async with AdbConnection(host, port, create_key_manager(config), key_name=config.key_name) as adb:
            await adb.shell_command(
                command,
                on_output=lambda chunk: click.echo(chunk.decode("utf-8", errors="replace"), nl=False),
            )

    try:
        asyncio.run(_shell())
    except AdbPairError as e:
        _fail(e)


@main.group()
def trusted() -> None:
    """Trusted key management commands."""
    pass


@trusted.command("list")
@click.option("--full", is_flag=True, help="Show full fingerprints")
@click.pass_context
def trusted_list(ctx: click.Context, full: bool) -> None:
    """List keys of paired peers."""
    from adbpair.factory import open_trusted_key_store

    async def _list():
        store = await open_trusted_key_store(ctx.obj["config"])
        keys = store.all()

        if not keys:
            click.echo("No trusted keys.")
            return

        click.echo(f"{'FINGERPRINT':<18} {'NAME':<24} {'PAIRED':<12} {'LAST SEEN'}")
        click.echo("-" * 72)

        for key in sorted(keys, key=lambda k: k.last_seen or k.paired_at, reverse=True):
            fingerprint = key.fingerprint if full else key.fingerprint[:16]
            last_seen = key.last_seen[:10] if key.last_seen else "Never"
            click.echo(f"{fingerprint:<18} {key.name:<24} {key.paired_at[:10]:<12} {last_seen}")

    try:
        asyncio.run(_list())
    except AdbPairError as e:
        _fail(e)


@trusted.command("remove")
@click.argument("fingerprint")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
@click.pass_context
def trusted_remove(ctx: click.Context, fingerprint: str, force: bool) -> None:
    """Remove a trusted key.

    Use the short FINGERPRINT from 'adbpair trusted list'.
    """
    from adbpair.factory import open_trusted_key_store

    async def _remove():
        store = await open_trusted_key_store(ctx.obj["config"])

        key = store.get(fingerprint)
        if key is None:
            matches = store.find(fingerprint)
            if not matches:
                click.echo(f"Error: Key '{fingerprint}' not found.", err=True)
                raise SystemExit(1)
            if len(matches) > 1:
                click.echo(f"Error: Ambiguous fingerprint '{fingerprint}'. Matches:", err=True)
                for k in matches:
                    click.echo(f"  {k.fingerprint[:16]} - {k.name}", err=True)
                raise SystemExit(1)
            key = matches[0]

        if not force and not click.confirm(f"Remove key '{key.name}'?"):
            click.echo("Aborted.")
            return

        await store.remove(key.fingerprint)
        click.echo("Key removed.")

    try:
        asyncio.run(_remove())
    except AdbPairError as e:
        _fail(e)


if __name__ == "__main__":
    main()
