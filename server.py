#!/usr/bin/env python3
"""
Launcher:
  finds a free port (from 5180 up), starts the WebSocket relay on it and
  prints where the host app and remote surfaces should connect.
  With --web-dir it also serves the built front-end over HTTP (port 5173)
  so phones and tablets on the LAN can load it.

Usage:
  python3 server.py [--port PORT] [--attempts N] [--web-dir DIR] [--http-port PORT]
"""
import argparse
import asyncio
import functools
import http.server
import os
import socket
import sys
import threading
from urllib.parse import urlencode

from port_discovery import MAX_PORT_ATTEMPTS, find_available_port
from relay import DEFAULT_PORT, HOST, OUTBOX_SIZE, Relay

HTTP_PORT = 5173


def choose_port(preferred=DEFAULT_PORT, max_attempts=MAX_PORT_ATTEMPTS):
    """Discovered port, or `preferred` when nothing was free (the real bind then fails loudly)."""
    port = find_available_port(preferred, max_attempts)
    if port is None:
        print(f'No free port in {max_attempts} attempts from {preferred}, falling back to {preferred}')
        return preferred
    if port != preferred:
        print(f'Port {preferred} busy, using {port}')
    return port


def client_url(base, mode, bridge_host, bridge_port):
    return f'{base}?' + urlencode({'mode': mode, 'bridgeHost': bridge_host, 'bridgePort': bridge_port})


def lan_address():
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return '?.?.?.?'


# ── HTTP ─────────────────────────────────────────────────────
class Handler(http.server.SimpleHTTPRequestHandler):
    def log_message(self, format, *args):
        pass  # suppress per-request logging


def start_http(directory, port, host=HOST):
    handler = functools.partial(Handler, directory=directory)
    httpd = http.server.ThreadingHTTPServer((host, port), handler)
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    return httpd


# ── Launch ────────────────────────────────────────────────────
async def run(args, stop=None):
    """Start everything and serve until `stop` is set. Returns the exit status."""
    port = choose_port(args.port, args.attempts)
    relay = Relay(args.host, port, args.outbox_size)
    try:
        await relay.start()
    except OSError as e:
        print(f'[WS] ERROR: could not bind {args.host}:{port} - {e}', file=sys.stderr)
        return 1

    lan_ip = lan_address()
    print(f'[WS]  ws://localhost:{relay.port}     (this machine)')
    print(f'      ws://{lan_ip}:{relay.port}  (LAN)')

    httpd = None
    if args.web_dir:
        try:
            httpd = start_http(args.web_dir, args.http_port, args.host)
        except OSError as e:
            print(f'[HTTP] ERROR: could not bind {args.host}:{args.http_port} - {e}', file=sys.stderr)
            await relay.close()
            return 1
        http_port = httpd.server_address[1]
        print(f'[HTTP] host:   {client_url(f"http://localhost:{http_port}/index.html", "host", "localhost", relay.port)}')
        print(f'       remote: {client_url(f"http://{lan_ip}:{http_port}/index.html", "remote", lan_ip, relay.port)}')
        print(f'       Directory: {os.path.abspath(args.web_dir)}')

    try:
        if stop is None:
            await asyncio.Future()
        else:
            await stop.wait()
    finally:
        if httpd is not None:
            await asyncio.to_thread(httpd.shutdown)
            httpd.server_close()
        await relay.close()
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='MIDI control bridge: port discovery + WebSocket relay')
    parser.add_argument('--port', type=int, default=DEFAULT_PORT, help='preferred relay port (env PORT)')
    parser.add_argument('--attempts', type=int, default=MAX_PORT_ATTEMPTS,
                        help='ports to probe upward from --port (env MAX_PORT_ATTEMPTS)')
    parser.add_argument('--host', default=HOST, help='interface to listen on (env RELAY_HOST)')
    parser.add_argument('--outbox-size', type=int, default=OUTBOX_SIZE,
                        help='queued messages per peer before the oldest is dropped')
    parser.add_argument('--web-dir', help='serve this built front-end directory over HTTP')
    parser.add_argument('--http-port', type=int, default=HTTP_PORT)
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 0


if __name__ == '__main__':
    sys.exit(main())
