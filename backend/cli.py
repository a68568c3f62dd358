"""Command line interface: run the signaling server or act as a peer."""

import asyncio
import logging
import os

import click

from config import API_HOST, API_PORT, DEFAULT_SAVE_DIR, DEVICE_NAME, SIGNAL_URL
from connection.node import PeerNode
from errors import PeerDropError
from events import ConnectionStateChanged, ErrorOccurred, FileReceived, TransferProgress

logger = logging.getLogger(__name__)


def _human_size(size: float) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def _print_event(event) -> None:
    if isinstance(event, ConnectionStateChanged):
        click.echo(f"[{event.remote_device_id[:8]}] connection {event.state}")
    elif isinstance(event, TransferProgress):
        click.echo(
            f"\r{event.direction.value} {event.file_name}: "
            f"{_human_size(event.transferred_bytes)} / {_human_size(event.total_size)} "
            f"({event.progress * 100:.0f}%)",
            nl=event.transferred_bytes == event.total_size,
        )
    elif isinstance(event, ErrorOccurred):
        click.secho(f"error ({event.category.value}): {event.message}", fg="red", err=True)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def main(verbose: bool) -> None:
    """PeerDrop: discover devices on the LAN and send files directly."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@main.command()
@click.option("--host", default=API_HOST, show_default=True)
@click.option("--port", default=API_PORT, show_default=True, type=int)
def serve(host: str, port: int) -> None:
    """Run the signaling server."""
    import uvicorn

    from main import app

    uvicorn.run(app, host=host, port=port, log_level="info")


@main.command()
@click.option("--server", default=SIGNAL_URL, show_default=True, help="Signaling websocket URL.")
@click.option("--name", default=DEVICE_NAME, show_default=True)
def devices(server: str, name: str) -> None:
    """List the devices registered with the signaling server."""

    async def run() -> None:
        node = PeerNode(device_name=name, signal_url=server)
        await node.start()
        await asyncio.sleep(0.5)
        try:
            if not node.devices:
                click.echo("No other devices.")
            for device in node.devices:
                click.echo(f"{device.id}  {device.status.value:<7}  {device.name}")
        finally:
            await node.stop()

    asyncio.run(run())


@main.command()
@click.argument("device_id")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--server", default=SIGNAL_URL, show_default=True, help="Signaling websocket URL.")
@click.option("--name", default=DEVICE_NAME, show_default=True)
def send(device_id: str, files: tuple[str, ...], server: str, name: str) -> None:
    """Send FILES to the device DEVICE_ID."""

    async def run() -> None:
        node = PeerNode(device_name=name, signal_url=server)
        node.events.subscribe(_print_event)
        await node.start()
        try:
            await node.connect(device_id)
            for path in files:
                session = await node.send_file(device_id, path)
                click.echo(f"Sent {session.file_name} ({_human_size(session.total_size)})")
        finally:
            await node.stop()

    try:
        asyncio.run(run())
    except PeerDropError as e:
        raise click.ClickException(f"{e.category.value}: {e.message}")


@main.command()
@click.option("--server", default=SIGNAL_URL, show_default=True, help="Signaling websocket URL.")
@click.option("--name", default=DEVICE_NAME, show_default=True)
@click.option("--save-dir", default=DEFAULT_SAVE_DIR, show_default=True, type=click.Path(file_okay=False))
def receive(server: str, name: str, save_dir: str) -> None:
    """Stay registered and save incoming files until interrupted."""
    os.makedirs(save_dir, exist_ok=True)

    async def run() -> None:
        node = PeerNode(device_name=name, signal_url=server)

        def on_event(event) -> None:
            _print_event(event)
            if isinstance(event, FileReceived):
                path = event.file.save(save_dir)
                node.clear_received_files()
                click.echo(f"Saved {event.file.name} from {event.remote_device_id[:8]} to {path}")

        node.events.subscribe(on_event)
        device_id = await node.start()
        click.echo(f"Registered as '{node.device_name}' ({device_id}). Waiting for files...")
        try:
            await asyncio.Event().wait()
        finally:
            await node.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        click.echo("\nStopped.")


if __name__ == "__main__":
    main()
