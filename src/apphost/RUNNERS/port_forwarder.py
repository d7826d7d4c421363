# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
TCP forwarding from a proxied endpoint's stable address to the port the
service process actually binds.
"""
import logging
import select
import socket
import socketserver
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class _ForwardingHandler(socketserver.BaseRequestHandler):
    """
    Pumps bytes between one client connection and the upstream process.
    """
    def handle(self):
        server = self.server
        try:
            upstream = socket.create_connection((server.target_host, server.target_port), timeout=5)
        except OSError as e:
            logger.debug("Forward to %s:%d failed: %s", server.target_host, server.target_port, e)
            return

        with upstream:
            upstream.settimeout(None)
            peers = {self.request: upstream, upstream: self.request}
            while not server.closing:
                readable, _, _ = select.select(list(peers), [], [], 0.5)
                for sock in readable:
                    try:
                        data = sock.recv(65536)
                    except OSError:
                        return
                    if not data:
                        return
                    peers[sock].sendall(data)


class _ForwardingServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, listen, target_host: str, target_port: int):
        self.target_host = target_host
        self.target_port = target_port
        self.closing = False
        super().__init__(listen, _ForwardingHandler)


class PortForwarder:
    """
    Listens on ``listen_port`` and forwards every connection to ``target_port``.
    """
    def __init__(self, listen_host: str, listen_port: int, target_host: str, target_port: int):
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.target_host = target_host
        self.target_port = target_port
        self._server: Optional[_ForwardingServer] = None
        self._thread: Optional[threading.Thread] = None

    def start(self):
        """
        Binds the listening socket and starts serving in a daemon thread.

        :raises OSError: If the listening port cannot be bound.
        """
        self._server = _ForwardingServer((self.listen_host, self.listen_port),
                                         self.target_host, self.target_port)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.debug("Forwarding %s:%d -> %s:%d", self.listen_host, self.listen_port,
                     self.target_host, self.target_port)

    def stop(self):
        """
        Stops accepting connections and closes open ones.
        """
        if self._server:
            self._server.closing = True
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=1)
            self._thread = None
