#!/usr/bin/env python3
"""
Find a free TCP port for the relay, probing upward from a preferred port.
Usage: python3 port_discovery.py [preferred] [--attempts N]   (default: 5180, 20)

The probe socket is released before the real server binds, so another process
can grab the port in between. That window is accepted: one machine, one
launcher.
"""
import argparse
import os
import socket
import sys

DEFAULT_PORT = int(os.environ.get('PORT', 5180))
MAX_PORT_ATTEMPTS = int(os.environ.get('MAX_PORT_ATTEMPTS', 20))
HOST = '0.0.0.0'


def is_port_free(port, host=HOST):
    """Try to bind a listening socket on (host, port) and release it."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((host, port))
            s.listen(1)
        return True
    except (OSError, OverflowError):
        # in use, permission denied, out of range: all the same to the caller
        return False


def find_available_port(preferred_port=DEFAULT_PORT, max_attempts=MAX_PORT_ATTEMPTS, host=HOST):
    """Return the first bindable port in [preferred_port, preferred_port + max_attempts), or None."""
    port = preferred_port
    for _ in range(max_attempts):
        if is_port_free(port, host):
            return port
        port += 1
    return None


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument('preferred', nargs='?', type=int, default=DEFAULT_PORT)
    parser.add_argument('--attempts', type=int, default=MAX_PORT_ATTEMPTS)
    args = parser.parse_args(argv)

    port = find_available_port(args.preferred, args.attempts)
    if port is None:
        print(f'No free port in {args.preferred}..{args.preferred + args.attempts - 1}', file=sys.stderr)
        return 1
    print(port)
    return 0


if __name__ == '__main__':
    sys.exit(main())
