"""Relay server: transports, per-client receive loops, entry point.

Handles:
- Stream connections (TCP, optionally TLS), newline-delimited frames
- Datagram clients (UDP), one frame per datagram
- Optional idle timeout
- Hands every decoded command to the CommandDispatcher
"""

import argparse
import asyncio
import logging
import ssl
from pathlib import Path
from typing import Dict, Optional, Tuple

from .dispatcher import CommandDispatcher
from .protocol import Command, FrameTooLargeError, LineFrameReader, MalformedFrameError, ProtocolError
from .registry import SessionRegistry
from .session import ConnectionState, DatagramClient, StreamClient
from ..settings import ServerSettings, TRANSPORTS, load_settings

logger = logging.getLogger(__name__)


class GameServer:
    """Stream relay server.

    Usage:
        server = GameServer(ServerSettings(host='0.0.0.0', port=7777))
        await server.start()
    """

    def __init__(
        self,
        settings: Optional[ServerSettings] = None,
        registry: Optional[SessionRegistry] = None,
    ):
        self.settings = settings or ServerSettings()
        self.registry = registry or SessionRegistry()
        self.dispatcher = CommandDispatcher(self.registry, self.settings)

        self.clients: Dict[int, StreamClient] = {}  # id(client) -> client

        self._server: Optional[asyncio.AbstractServer] = None
        self._running = False

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port), once listening."""
        if not self._server or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[:2]

    def _create_ssl_context(self) -> Optional[ssl.SSLContext]:
        """Create SSL context for TLS."""
        if not self.settings.use_tls:
            return None

        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.load_cert_chain(self.settings.certfile, self.settings.keyfile)
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        return ctx

    async def listen(self):
        """Bind and start accepting connections."""
        ssl_ctx = self._create_ssl_context()

        self._server = await asyncio.start_server(
            self._handle_connection,
            self.settings.host,
            self.settings.port,
            ssl=ssl_ctx,
        )

        self._running = True
        host, port = self.address
        tls_status = "with TLS" if ssl_ctx else "without TLS"
        logger.info(f"Server started on {host}:{port} {tls_status}")

    async def start(self):
        """Start the server and serve until stopped."""
        await self.listen()
        async with self._server:
            await self._server.serve_forever()

    async def stop(self):
        """Stop the server."""
        self._running = False
        if self._server:
            self._server.close()

        for client in list(self.clients.values()):
            await client.close()

        if self._server:
            await self._server.wait_closed()

        logger.info("Server stopped")

    # =========================================================================
    # CONNECTION HANDLING
    # =========================================================================

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ):
        """Handle a new client connection."""
        client = StreamClient(reader=reader, writer=writer)
        self.clients[id(client)] = client
        logger.info(f"New connection from {client.address}")

        try:
            await self._connection_loop(client)
        except FrameTooLargeError as e:
            logger.warning(f"Dropping {client.label}: {e}")
        except (ConnectionError, OSError):
            logger.info(f"Connection lost: {client.label}")
        except Exception as e:
            logger.error(f"Error handling {client.label}: {e}")
        finally:
            await self._handle_disconnect(client)

    async def _connection_loop(self, client: StreamClient):
        """Read frames until the client goes away."""
        frame_reader = LineFrameReader(self.settings.max_frame_size)

        while self._running and client.is_connected:
            try:
                data = await asyncio.wait_for(
                    client.reader.read(4096),
                    timeout=self.settings.idle_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Idle timeout: {client.label}")
                break

            if not data:
                break  # Connection closed

            frame_reader.feed(data)

            while client.is_connected:
                try:
                    command = frame_reader.get_command()
                except MalformedFrameError as e:
                    logger.debug(f"Dropped frame from {client.label}: {e}")
                    continue
                except FrameTooLargeError:
                    raise
                except ProtocolError as e:
                    logger.warning(f"{client.label}: {e}")
                    continue

                if command is None:
                    break
                await self.dispatcher.dispatch(client, command)

    async def _handle_disconnect(self, client: StreamClient):
        """Handle client disconnect."""
        logger.info(f"Disconnected: {client.label}")
        self.clients.pop(id(client), None)
        await self.dispatcher.handle_disconnect(client)
        await client.close()


class _DatagramProtocol(asyncio.DatagramProtocol):
    """Feeds datagrams to the owning DatagramGameServer."""

    def __init__(self, server: 'DatagramGameServer'):
        self.server = server

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        self.server.feed_datagram(data, addr)

    def error_received(self, exc: Exception):
        logger.warning(f"Datagram error: {exc}")


class DatagramGameServer:
    """Datagram relay server.

    There is no connection to accept, so the first datagram from a new
    address creates its DatagramClient and the task that serves it. A
    DISCONNECT or the idle timeout ends that task.

    Usage:
        server = DatagramGameServer(ServerSettings(transport='udp', port=7777))
        await server.start()
    """

    def __init__(
        self,
        settings: Optional[ServerSettings] = None,
        registry: Optional[SessionRegistry] = None,
    ):
        self.settings = settings or ServerSettings(transport='udp')
        self.registry = registry or SessionRegistry()
        self.dispatcher = CommandDispatcher(self.registry, self.settings)

        self.clients: Dict[Tuple[str, int], DatagramClient] = {}  # remote -> client
        self._tasks: Dict[Tuple[str, int], asyncio.Task] = {}

        self._transport: Optional[asyncio.DatagramTransport] = None
        self._running = False
        self._stopped: Optional[asyncio.Event] = None

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        if self._transport is None:
            return None
        return self._transport.get_extra_info('sockname')[:2]

    async def listen(self):
        """Bind the datagram endpoint."""
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _DatagramProtocol(self),
            local_addr=(self.settings.host, self.settings.port),
        )
        self._running = True
        self._stopped = asyncio.Event()
        host, port = self.address
        logger.info(f"Datagram server started on {host}:{port}")

    async def start(self):
        """Start the server and serve until stopped."""
        await self.listen()
        await self._stopped.wait()

    async def stop(self):
        """Stop the server."""
        self._running = False
        for client in list(self.clients.values()):
            await client.close()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._transport:
            self._transport.close()
        if self._stopped:
            self._stopped.set()
        logger.info("Server stopped")

    def feed_datagram(self, data: bytes, remote: Tuple[str, int]):
        """Queue a datagram for the client at remote."""
        if not self._running:
            return

        client = self.clients.get(remote)
        if client is None:
            # Strangers get a handle only once they speak the protocol
            try:
                Command.from_bytes(data)
            except ProtocolError as e:
                logger.debug(f"Ignored datagram from unknown {remote[0]}:{remote[1]}: {e}")
                return
            client = DatagramClient(transport=self._transport, remote=remote)
            self.clients[remote] = client
            self._tasks[remote] = asyncio.get_running_loop().create_task(self._client_task(client))
            logger.info(f"New datagram client {client.address}")

        client.inbox.put_nowait(data)

    async def _client_task(self, client: DatagramClient):
        try:
            await self._client_loop(client)
        except Exception as e:
            logger.error(f"Error handling {client.label}: {e}")
        finally:
            await self._handle_disconnect(client)

    async def _client_loop(self, client: DatagramClient):
        """Process the client's datagrams in arrival order."""
        while self._running and client.is_connected:
            seated = client.state == ConnectionState.SEATED
            try:
                data = await asyncio.wait_for(
                    client.inbox.get(),
                    timeout=self._timeout_for(seated),
                )
            except asyncio.TimeoutError:
                if seated:
                    logger.warning(f"Idle timeout: {client.label}")
                else:
                    logger.info(f"Lobby timeout: {client.label}")
                break

            if data is None:
                break  # Closed

            try:
                command = Command.from_bytes(data)
            except MalformedFrameError as e:
                logger.debug(f"Dropped datagram from {client.label}: {e}")
                continue
            except ProtocolError as e:
                logger.warning(f"{client.label}: {e}")
                continue

            await self.dispatcher.dispatch(client, command)

    def _timeout_for(self, seated: bool) -> Optional[float]:
        """Seconds of silence allowed; the lobby limit also caps unseated clients."""
        idle = self.settings.idle_timeout
        if seated:
            return idle
        lobby = self.settings.lobby_timeout
        if idle is None or lobby is None:
            return idle if lobby is None else lobby
        return min(idle, lobby)

    async def _handle_disconnect(self, client: DatagramClient):
        logger.info(f"Disconnected: {client.label}")
        if self.clients.get(client.remote) is client:
            del self.clients[client.remote]
            self._tasks.pop(client.remote, None)
        await self.dispatcher.handle_disconnect(client)
        client.state = ConnectionState.DISCONNECTED


def create_server(settings: ServerSettings, registry: Optional[SessionRegistry] = None):
    """Server for the configured transport."""
    if settings.transport == 'udp':
        return DatagramGameServer(settings, registry)
    return GameServer(settings, registry)


# =============================================================================
# ENTRY POINT
# =============================================================================

def run_server(settings: Optional[ServerSettings] = None):
    """Run the relay server."""
    settings = settings or ServerSettings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(message)s',
    )

    server = create_server(settings)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Server interrupted")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Two-player Snake relay server')
    parser.add_argument('--config', type=Path, help='Settings JSON file')
    parser.add_argument('--host', help='Host to bind to')
    parser.add_argument('--port', type=int, help='Port to listen on')
    parser.add_argument('--transport', choices=TRANSPORTS, help='tcp (default) or udp')
    parser.add_argument('--cert', help='TLS certificate file (tcp only)')
    parser.add_argument('--key', help='TLS key file (tcp only)')
    parser.add_argument('--idle-timeout', type=float, help='Disconnect clients silent this many seconds')
    parser.add_argument('--log-level', help='DEBUG, INFO, WARNING, ...')
    return parser


def settings_from_args(args: argparse.Namespace) -> ServerSettings:
    """Settings file (or defaults) with command-line overrides applied."""
    data = load_settings(args.config).to_dict()
    overrides = {
        'host': args.host,
        'port': args.port,
        'transport': args.transport,
        'certfile': args.cert,
        'keyfile': args.key,
        'idle_timeout': args.idle_timeout,
        'log_level': args.log_level,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    return ServerSettings.from_dict(data)


def main(argv=None):
    args = build_parser().parse_args(argv)
    run_server(settings_from_args(args))


if __name__ == '__main__':
    main()
