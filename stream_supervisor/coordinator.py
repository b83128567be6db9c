"""
Broadcast server coordinator.

Resolves and caches the ingest target (host, port, source credential) the
encoders connect to. The live values come from the broadcast server's own
config file so that a port or password change made by the operator is
picked up without restarting the supervisor.
"""

import asyncio
import ipaddress
import logging
import os
import sys
import xml.etree.ElementTree as ET
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

import httpx

from stream_supervisor.config import BroadcastServerConfig

logger = logging.getLogger(__name__)

# Bind addresses that are valid for listening but not for connecting out
WILDCARD_HOSTS = {"", "0.0.0.0", "::", "[::]", "*"}

# Source limit Icecast applies when <limits><sources> is absent
DEFAULT_SOURCE_LIMIT = 2


def standard_config_paths() -> List[str]:
    """Locations searched for icecast.xml when no path is configured."""
    if sys.platform.startswith("win"):
        return [
            r"C:\Program Files\Icecast\icecast.xml",
            r"C:\Program Files (x86)\Icecast\icecast.xml",
            r"C:\Program Files\Icecast2 Win32\icecast.xml",
        ]
    return [
        "/etc/icecast2/icecast.xml",
        "/etc/icecast.xml",
        "/usr/local/etc/icecast.xml",
        "/usr/local/etc/icecast2/icecast.xml",
        "/opt/homebrew/etc/icecast.xml",
    ]


def connect_host(host: Optional[str]) -> str:
    """
    Host to connect to for a configured or bound address.

    Args:
        host: Configured host or bind address

    Returns:
        The host itself, or ``localhost`` for wildcard values
    """
    value = (host or "").strip()
    if value in WILDCARD_HOSTS:
        return "localhost"
    return value


def url_host(host: str) -> str:
    """
    Host as written in a URL authority.

    Args:
        host: Hostname or IP literal, optionally already bracketed

    Returns:
        IPv6 literals in brackets, anything else unchanged
    """
    bare = host[1:-1] if host.startswith("[") and host.endswith("]") else host
    try:
        address = ipaddress.ip_address(bare)
    except ValueError:
        return host
    if address.version == 6:
        return f"[{bare}]"
    return bare


@dataclass(frozen=True)
class IngestTarget:
    """Where and how encoders publish audio. Immutable once handed out."""

    host: str
    port: int
    source_user: str
    source_password: str
    fresh: bool = True
    source_limit: Optional[int] = None
    config_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize without the credential."""
        return {
            "host": self.host,
            "port": self.port,
            "source_user": self.source_user,
            "fresh": self.fresh,
            "source_limit": self.source_limit,
            "config_path": self.config_path,
        }


def parse_server_config(path: str) -> Dict[str, Any]:
    """
    Read connection values from an icecast.xml file.

    Args:
        path: Path to the config file

    Returns:
        Dict with the keys found: port, bind_address, source_password,
        source_limit

    Raises:
        OSError: If the file cannot be read
        ET.ParseError: If the file is not valid XML
        ValueError: If a numeric value is malformed
    """
    root = ET.parse(path).getroot()
    values: Dict[str, Any] = {}

    socket = root.find("listen-socket")
    if socket is not None:
        port = socket.findtext("port")
        if port:
            values["port"] = int(port.strip())
        bind_address = socket.findtext("bind-address")
        if bind_address is not None:
            values["bind_address"] = bind_address.strip()

    password = root.findtext("authentication/source-password")
    if password:
        values["source_password"] = password.strip()

    sources = root.findtext("limits/sources")
    values["source_limit"] = int(sources.strip()) if sources else DEFAULT_SOURCE_LIMIT

    return values


class ServerCoordinator:
    """
    Resolves the broadcast server's ingest target.

    Cached targets are returned without I/O while fresh. Discovery runs
    under a lock so concurrent callers share a single read, and is bounded
    by ``discovery_timeout``.
    """

    def __init__(
        self,
        config: Optional[BroadcastServerConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize coordinator.

        Args:
            config: Broadcast server settings (loaded from env if not provided)
            transport: Optional httpx transport for liveness checks
        """
        if config is None:
            from stream_supervisor.config import get_server_config

            config = get_server_config()

        self.config = config
        self._transport = transport
        self._cached: Optional[IngestTarget] = None
        self._lock = asyncio.Lock()
        self.discovery_count = 0

    @property
    def cached_target(self) -> Optional[IngestTarget]:
        return self._cached

    async def resolve_ingest_target(self) -> IngestTarget:
        """
        Get the current ingest target.

        Returns:
            IngestTarget; ``fresh`` is False when discovery failed and a
            fallback was returned
        """
        cached = self._cached
        if cached is not None and cached.fresh:
            return cached

        async with self._lock:
            # Another caller may have finished discovery while we waited
            cached = self._cached
            if cached is not None and cached.fresh:
                return cached

            self.discovery_count += 1
            try:
                target = await asyncio.wait_for(
                    asyncio.to_thread(self._discover),
                    timeout=self.config.discovery_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Server discovery timed out after {self.config.discovery_timeout}s")
                return self._fallback()
            except (OSError, ET.ParseError, ValueError) as e:
                logger.warning(f"Server discovery failed: {e}")
                return self._fallback()

            self._cached = target
            logger.info(
                f"Resolved ingest target {target.host}:{target.port} "
                f"(source limit: {target.source_limit}, config: {target.config_path or 'settings'})"
            )
            return target

    def invalidate(self) -> None:
        """Mark the cached target stale so the next resolution re-discovers."""
        if self._cached is not None and self._cached.fresh:
            self._cached = replace(self._cached, fresh=False)
            logger.info("Ingest target invalidated")

    def find_config_path(self) -> Optional[str]:
        """Configured icecast.xml path, else the first standard location that exists."""
        if self.config.config_path:
            return self.config.config_path
        for path in standard_config_paths():
            if os.path.isfile(path):
                return path
        return None

    def _discover(self) -> IngestTarget:
        path = self.find_config_path()
        if path is None:
            logger.debug("No server config file found, using settings")
            return self._from_settings(fresh=True)

        values = parse_server_config(path)
        bind_address = values.get("bind_address")
        host = connect_host(bind_address) if bind_address is not None else connect_host(self.config.host)
        return IngestTarget(
            host=host,
            port=values.get("port", self.config.port),
            source_user=self.config.source_user,
            source_password=values.get("source_password", self.config.source_password),
            fresh=True,
            source_limit=values.get("source_limit"),
            config_path=path,
        )

    def _from_settings(self, fresh: bool) -> IngestTarget:
        return IngestTarget(
            host=connect_host(self.config.host),
            port=self.config.port,
            source_user=self.config.source_user,
            source_password=self.config.source_password,
            fresh=fresh,
        )

    def _fallback(self) -> IngestTarget:
        if self._cached is not None:
            stale = replace(self._cached, fresh=False)
            self._cached = stale
            return stale
        return self._from_settings(fresh=False)

    def status_url(self, target: Optional[IngestTarget] = None) -> str:
        target = target or self._cached or self._from_settings(fresh=False)
        path = self.config.status_path
        if not path.startswith("/"):
            path = f"/{path}"
        return f"http://{url_host(target.host)}:{target.port}{path}"

    async def check_liveness(self, target: Optional[IngestTarget] = None) -> bool:
        """
        Check the broadcast server answers its status endpoint.

        Args:
            target: Target to check (defaults to the cached target)

        Returns:
            True if the endpoint responded with a 2xx status
        """
        url = self.status_url(target)
        try:
            async with httpx.AsyncClient(
                timeout=self.config.liveness_timeout,
                transport=self._transport,
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            logger.warning(f"Broadcast server liveness check failed for {url}: {e}")
            return False

        if not response.is_success:
            logger.warning(f"Broadcast server status endpoint returned HTTP {response.status_code}")
            return False
        return True
