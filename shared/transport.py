"""
Persistent duplex TCP channel carrying newline-delimited JSON messages.
"""
import socket
import threading
import time
import logging
from typing import Iterator

from shared.models import Message, encode_msg, decode_msg

logger = logging.getLogger('Channel')


class Channel:
    """
    One connected socket shared by a reader and any number of writers.

    Writes are serialised so a GRANT and concurrent replication sends never
    interleave on the wire.
    """

    def __init__(self, sock: socket.socket, peer: str = ''):
        self.sock = sock
        self.peer = peer
        self._send_lock = threading.Lock()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, message: Message):
        """Write one message. Raises ConnectionError once the channel is closed."""
        if self._closed.is_set():
            raise ConnectionError(f"channel to {self.peer} is closed")
        with self._send_lock:
            self.sock.sendall(encode_msg(message.to_dict()))

    def messages(self) -> Iterator[Message]:
        """
        Yield decoded messages until the peer closes the stream.

        Lines that are not valid JSON or not a known message are logged and
        skipped. Socket errors propagate to the caller.
        """
        data = b''
        while True:
            chunk = self.sock.recv(4096)
            if not chunk:
                return
            data += chunk
            while b'\n' in data:
                line, data = data.split(b'\n', 1)
                if not line.strip():
                    continue
                try:
                    yield Message.from_dict(decode_msg(line))
                except (ValueError, UnicodeDecodeError) as e:
                    # json.JSONDecodeError is a ValueError
                    logger.warning(f"Skipping undecodable line from {self.peer}: {e}")

    def close(self):
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()

    def __repr__(self):
        return f"Channel({self.peer})"


def connect(host: str, port: int, retries: int = 30, delay: float = 1.0,
            timeout: float = 2.0) -> Channel:
    """Open a channel, retrying until the endpoint accepts connections."""
    for attempt in range(retries):
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
            sock.settimeout(None)
            return Channel(sock, peer=f"{host}:{port}")
        except OSError:
            if attempt == retries - 1:
                raise RuntimeError(f"Service {host}:{port} not reachable after {retries} attempts")
            time.sleep(delay)
