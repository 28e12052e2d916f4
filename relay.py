#!/usr/bin/env python3
"""
WebSocket relay — broadcasts any message from any client to all others.
Usage: python3 relay.py [port]   (default: $PORT or 5180)

Every peer (the host app and each remote surface) is an equal client. Frames
are forwarded verbatim: text stays text, binary stays binary. Nothing is
echoed back to the sender.

Each connection gets a bounded outbox drained by its own writer task, so a
slow peer only ever delays itself. When an outbox is full the oldest queued
message is dropped: for live control events a stale message is worth less
than the latency of waiting for it.
"""
import asyncio
import enum
import itertools
import os
import sys

import websockets

HOST = os.environ.get('RELAY_HOST', '0.0.0.0')
DEFAULT_PORT = int(os.environ.get('PORT', 5180))
OUTBOX_SIZE = 64


class ConnectionState(enum.Enum):
    CONNECTING = 'connecting'
    OPEN = 'open'
    CLOSED = 'closed'


class Connection:
    """One peer. Owned by the relay's registry; never reused once closed."""

    def __init__(self, conn_id, ws, outbox_size=OUTBOX_SIZE):
        self.id = conn_id
        self.ws = ws
        self.state = ConnectionState.CONNECTING
        self.outbox = asyncio.Queue(maxsize=outbox_size)
        self.dropped = 0
        self.writer = None

    def __repr__(self):
        return f'<Connection #{self.id} {self.state.value} {self.remote_address}>'

    @property
    def remote_address(self):
        return getattr(self.ws, 'remote_address', None)

    def open(self):
        if self.state is not ConnectionState.CONNECTING:
            return
        self.state = ConnectionState.OPEN
        self.writer = asyncio.create_task(self._drain(), name=f'relay-writer-{self.id}')

    def offer(self, message):
        """Queue a message without blocking. False if the peer is not open."""
        if self.state is not ConnectionState.OPEN:
            return False
        if self.outbox.full():
            self.outbox.get_nowait()
            self.dropped += 1
        self.outbox.put_nowait(message)
        return True

    def close(self):
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        if self.writer is not None:
            self.writer.cancel()

    async def _drain(self):
        while True:
            message = await self.outbox.get()
            try:
                await self.ws.send(message)
            except websockets.ConnectionClosed:
                # the receive side sees the same close and unregisters us
                self.state = ConnectionState.CLOSED
                return


class Registry:
    """Open connections by id.

    Only touched from the event loop and never across an await, so inserts,
    removals and snapshots are serialized with respect to each other.
    """

    def __init__(self):
        self._connections = {}

    def __len__(self):
        return len(self._connections)

    def __contains__(self, conn_id):
        return conn_id in self._connections

    def add(self, conn):
        self._connections[conn.id] = conn

    def remove(self, conn_id):
        return self._connections.pop(conn_id, None)

    def get(self, conn_id):
        return self._connections.get(conn_id)

    def ids(self):
        return sorted(self._connections)

    def snapshot(self):
        return list(self._connections.values())


class Relay:
    """Broadcast relay server. Use `await start()` / `await close()`, or `async with`."""

    def __init__(self, host=HOST, port=DEFAULT_PORT, outbox_size=OUTBOX_SIZE):
        self.host = host
        self.requested_port = port
        self.outbox_size = outbox_size
        self.registry = Registry()
        self._ids = itertools.count(1)
        self._server = None
        self._closed = False

    async def __aenter__(self):
        return await self.start()

    async def __aexit__(self, *exc_info):
        await self.close()

    @property
    def port(self):
        """The bound port once started (resolves port 0), else the requested one."""
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self.requested_port

    @property
    def running(self):
        return self._server is not None and not self._closed

    async def start(self):
        if self._server is not None or self._closed:
            raise RuntimeError('relay already started')
        # OSError (port taken, permission denied) goes straight to the caller
        self._server = await websockets.serve(self._handler, self.host, self.requested_port)
        print(f'Relay listening on ws://{self.host}:{self.port}')
        return self

    async def close(self):
        if self._closed:
            return
        self._closed = True
        for conn in self.registry.snapshot():
            conn.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
        print('Relay stopped')

    def broadcast(self, sender, message):
        """Offer `message` to every open peer except `sender`; returns how many took it."""
        delivered = 0
        for peer in self.registry.snapshot():
            if peer.id == sender.id:
                continue
            if peer.offer(message):
                delivered += 1
        return delivered

    async def _handler(self, ws):
        conn = Connection(next(self._ids), ws, self.outbox_size)
        if self._closed:
            await ws.close(1001, 'relay shutting down')
            return
        conn.open()
        self.registry.add(conn)
        addr = conn.remote_address
        print(f'[+] #{conn.id} {addr}  ({len(self.registry)} connected)')
        try:
            async for message in ws:
                self.broadcast(conn, message)
                # let the writers flush before taking the next buffered frame
                await asyncio.sleep(0)
        except websockets.ConnectionClosedError as e:
            print(f'[!] #{conn.id} {addr}  {e}')
        finally:
            self.registry.remove(conn.id)
            conn.close()
            print(f'[-] #{conn.id} {addr}  ({len(self.registry)} connected)')


async def start_relay(port=DEFAULT_PORT, host=HOST, outbox_size=OUTBOX_SIZE):
    """Start a relay on `port` and return it as the shutdown handle."""
    return await Relay(host, port, outbox_size).start()


async def main():
    port = int(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_PORT
    relay = await start_relay(port)
    try:
        await asyncio.Future()
    finally:
        await relay.close()


if __name__ == '__main__':
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
