"""
SSH port forwarding for databases behind a bastion.

The tunnel listens on an ephemeral loopback port and relays every accepted
socket through a ``direct-tcpip`` channel of one long-lived SSH session, so
client utilities (pg_dump, psql, mysql) and the connection pool can simply
talk to localhost.
"""

import socket
import select
import logging
import threading
from pathlib import Path
from typing import List

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from dbkp.errors import ConfigurationError, DatabaseConnectionError
from dbkp.models import TunnelConfig


logger = logging.getLogger(__name__)

BUFFER_SIZE = 32 * 1024
POLL_INTERVAL = 0.5


class SshTunnel:
    """
    Local forwarding endpoint owned by a single database connection.

    Attributes:
        local_host: Loopback address the listener is bound to
        local_port: Ephemeral port assigned by the OS
    """

    def __init__(self, config: TunnelConfig, remote_host: str, remote_port: int,
                 local_host: str = '127.0.0.1'):
        """
        Open the SSH session and start forwarding.

        Args:
            config: SSH bastion configuration
            remote_host: Database host as seen from the bastion
            remote_port: Database port as seen from the bastion
            local_host: Address to bind the local listener to

        Raises:
            DatabaseConnectionError: If the SSH session or listener cannot be set up
        """
        self.config = config
        self.remote_host = remote_host
        self.remote_port = remote_port
        self.local_host = local_host

        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._forwarders: List[threading.Thread] = []

        self._client = self._connect()

        try:
            self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self._listener.bind((local_host, 0))
            self._listener.listen(16)
        except OSError as e:
            self._client.close()
            raise DatabaseConnectionError(f"Failed to open local tunnel listener: {e}")

        self.local_port = self._listener.getsockname()[1]

        self._thread = threading.Thread(
            target=self._serve,
            name=f'ssh-tunnel-{self.local_port}',
            daemon=True
        )
        self._thread.start()

        logger.info(
            f"SSH tunnel {local_host}:{self.local_port} -> "
            f"{remote_host}:{remote_port} via {config.username}@{config.host}:{config.port}"
        )

    def _connect(self) -> SSHClient:
        client = SSHClient()
        client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': self.config.host,
            'port': self.config.port,
            'username': self.config.username,
            'timeout': 30
        }

        if self.config.password:
            connect_kwargs['password'] = self.config.password
        elif self.config.key_path:
            key_path = Path(self.config.key_path).expanduser()
            if not key_path.exists():
                raise ConfigurationError(f"Private key not found: {self.config.key_path}")
            connect_kwargs['key_filename'] = str(key_path)
            if self.config.passphrase:
                connect_kwargs['passphrase'] = self.config.passphrase
        else:
            raise ConfigurationError("Either password or key_path must be provided")

        try:
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            client.close()
            raise DatabaseConnectionError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            client.close()
            raise DatabaseConnectionError(f"SSH connection failed: {e}")
        except OSError as e:
            client.close()
            raise DatabaseConnectionError(f"Failed to connect to {self.config.host}: {e}")

        return client

    @property
    def is_active(self) -> bool:
        return not self._stop.is_set()

    def _serve(self):
        while not self._stop.is_set():
            try:
                readable, _, _ = select.select([self._listener], [], [], POLL_INTERVAL)
            except (OSError, ValueError):
                break

            if not readable:
                continue

            try:
                sock, peer = self._listener.accept()
            except OSError:
                continue

            forwarder = threading.Thread(
                target=self._forward,
                args=(sock, peer),
                name=f'ssh-tunnel-{self.local_port}-{peer[1]}',
                daemon=True
            )
            with self._lock:
                self._forwarders = [t for t in self._forwarders if t.is_alive()]
                self._forwarders.append(forwarder)
            forwarder.start()

    def _forward(self, sock: socket.socket, peer):
        try:
            transport = self._client.get_transport()
            if transport is None or not transport.is_active():
                raise paramiko.SSHException("SSH transport is not active")
            channel = transport.open_channel(
                'direct-tcpip',
                (self.remote_host, self.remote_port),
                peer
            )
        except (paramiko.SSHException, OSError) as e:
            logger.error(f"Failed to open tunnel channel to {self.remote_host}:{self.remote_port}: {e}")
            sock.close()
            return

        logger.debug(f"Tunnel stream opened for {peer[0]}:{peer[1]}")

        try:
            while not self._stop.is_set():
                readable, _, _ = select.select([sock, channel], [], [], POLL_INTERVAL)

                if sock in readable:
                    data = sock.recv(BUFFER_SIZE)
                    if not data:
                        break
                    channel.sendall(data)

                if channel in readable:
                    data = channel.recv(BUFFER_SIZE)
                    if not data:
                        break
                    sock.sendall(data)
        except (OSError, paramiko.SSHException) as e:
            logger.debug(f"Tunnel stream for {peer[0]}:{peer[1]} ended: {e}")
        finally:
            channel.close()
            sock.close()

        logger.debug(f"Tunnel stream closed for {peer[0]}:{peer[1]}")

    def close(self):
        """Stop forwarding, release the local port and close the SSH session."""
        if self._stop.is_set():
            return

        self._stop.set()
        self._thread.join(timeout=5)
        self._listener.close()

        with self._lock:
            forwarders = list(self._forwarders)
            self._forwarders = []
        for forwarder in forwarders:
            forwarder.join(timeout=5)

        self._client.close()
        logger.info(f"SSH tunnel on port {self.local_port} closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
