import asyncio
from typing import List, Optional

import typer

from .config import DEFAULT_RELAY_URL, ExchangeConfig
from .exchange import ExchangeDisposed, PeerExchange
from .links import connect_url
from .log import configure_logging
from .nicknames import room_nickname
from .secret import InvalidConnectKey, Role, channel_id_for, generate_connect_key, generate_room_id, normalize_connect_key
from .transport import HttpRelayTransport

app = typer.Typer(help="Encrypted WebRTC signaling over a pub/sub relay")

DEFAULT_APP_URL = "http://localhost:8000/"


@app.command()
def keygen(
    base_url: str = typer.Option(DEFAULT_APP_URL, help="URL to put the connect link on"),
) -> None:
    """Generate a connect key and the link to share it."""
    key = generate_connect_key()
    typer.echo(key)
    typer.echo(connect_url(base_url, key))


@app.command()
def channel(key: str = typer.Argument(..., help="Connect key (64 hex chars)")) -> None:
    """Show the relay channel a connect key maps to."""
    try:
        key = normalize_connect_key(key)
    except InvalidConnectKey as e:
        typer.echo(f"Invalid connect key: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(channel_id_for(key))


@app.command()
def room(
    room_id: Optional[str] = typer.Option(None, help="Existing room id; a new one is generated if omitted"),
    base_url: str = typer.Option(DEFAULT_APP_URL, help="URL to put the room link on"),
) -> None:
    """Show a room's name, channel and join link."""
    room_id = (room_id or generate_room_id()).lower()
    typer.echo(f"Room: {room_nickname(room_id, with_hash=True)}")
    typer.echo(f"Channel: {channel_id_for(room_id)}")
    typer.echo(connect_url(base_url, room_id, mode="room"))


@app.command()
def connect(
    key: Optional[str] = typer.Option(None, help="Connect key from the other side; omit to initiate"),
    relay: str = typer.Option(DEFAULT_RELAY_URL, envvar="PEEREXCHANGE_RELAY_URL", help="Relay server URL"),
    ice_server: List[str] = typer.Option(
        [], envvar="PEEREXCHANGE_ICE_SERVERS", help="STUN/TURN URL, repeatable"
    ),
    nickname: Optional[str] = typer.Option(None, help="Name shown in presence"),
    message: Optional[str] = typer.Option(None, help="Text to send once connected"),
    wait: float = typer.Option(300.0, help="Seconds to wait for the other side"),
    request_timeout: Optional[float] = typer.Option(None, help="Give up on a single attempt after this many seconds"),
    linger: float = typer.Option(5.0, help="Seconds to keep printing received messages"),
    log_level: str = typer.Option("INFO", help="Logging level"),
) -> None:
    """Run one exchange through the relay and open a data channel."""
    configure_logging(log_level)
    if key is not None:
        try:
            key = normalize_connect_key(key)
        except InvalidConnectKey as e:
            typer.echo(f"Invalid connect key: {e}", err=True)
            raise typer.Exit(1)
    from .webrtc import DEFAULT_ICE_SERVERS, AiortcPeer

    ice_servers = ice_server or list(DEFAULT_ICE_SERVERS)
    config = ExchangeConfig(
        request_timeout=request_timeout,
        retry_delay=2.0 if request_timeout else None,
        nickname=nickname,
    )

    async def _run() -> None:
        transport = HttpRelayTransport(relay)
        try:
            async with PeerExchange(
                transport, lambda initiator: AiortcPeer(initiator, ice_servers), key, config
            ) as exchange:
                if exchange.role is Role.INITIATOR:
                    typer.echo(f"Connect key: {exchange.connect_key}")
                typer.echo(f"Waiting as {exchange.peer_nickname} on channel {exchange.channel_id[:8]}...")
                peer = await asyncio.wait_for(exchange.wait(), wait)
        finally:
            await transport.aclose()

        typer.echo("P2P connection established.")
        received: asyncio.Queue = asyncio.Queue()
        peer.on("data", received.put_nowait)
        try:
            if message:
                peer.send(message)
            loop = asyncio.get_running_loop()
            deadline = loop.time() + linger
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    data = await asyncio.wait_for(received.get(), remaining)
                except asyncio.TimeoutError:
                    break
                typer.echo(f"<< {data}")
        finally:
            peer.destroy()

    try:
        asyncio.run(_run())
    except (asyncio.TimeoutError, ExchangeDisposed):
        typer.echo("No connection was established.", err=True)
        raise typer.Exit(1)


@app.command()
def relay(
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    port: int = typer.Option(8000, help="Port to listen on"),
) -> None:
    """Run the pub/sub relay server."""
    import uvicorn
    from server import app as relay_app

    uvicorn.run(relay_app, host=host, port=port)


if __name__ == "__main__":
    app()
