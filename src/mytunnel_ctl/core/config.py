"""Read the tunnel client configuration and build the runtime settings.

The TOML file itself is owned by the tunnel client (and its setup wizard);
this module only reads it. Two views are exposed:

- `ClientConfig`: raw key lookups (`server.address`, `proxy.http_bind`, ...)
  plus typed accessors that apply the client's documented defaults.
- `AppSettings`: paths and addresses this tool needs, built once at startup
  and handed to every command.
"""

from __future__ import annotations

from dataclasses import dataclass
import ipaddress
import os
from pathlib import Path
import shutil
from typing import Any, Literal

import tomli

from mytunnel_ctl.core.errors import ConfigKeyMissingError, ConfigMissingError

DEFAULT_CONFIG_FILE = "client-config.toml"
DEFAULT_CLIENT_BINARY = "target/release/mytunnel-client"
DEFAULT_SERVER_BINARY = "target/release/mytunnel-server"
DEFAULT_API_ADDR = "127.0.0.1:9091"
DEFAULT_SERVICE_NAME = "mytunnel"

DEFAULT_SOCKS5_BIND = "127.0.0.1:1080"
DEFAULT_HTTP_BIND = "127.0.0.1:8080"

ProxyKind = Literal["socks5", "http"]


@dataclass(frozen=True, slots=True)
class ProxyEndpointConfig:
    kind: ProxyKind
    bind_address: str
    enabled: bool

    @property
    def host(self) -> str:
        return split_host_port(self.bind_address)[0]

    @property
    def port(self) -> int:
        return split_host_port(self.bind_address)[1]

    @property
    def label(self) -> str:
        return "SOCKS5" if self.kind == "socks5" else "HTTP"


@dataclass(frozen=True, slots=True)
class AppSettings:
    config_path: Path
    client_binary: str
    api_addr: str = DEFAULT_API_ADDR
    service_name: str = DEFAULT_SERVICE_NAME
    server_binary: str = DEFAULT_SERVER_BINARY
    install_path: Path = Path("/usr/local/bin/mytunnel-server")
    server_config_dir: Path = Path("/etc/mytunnel")
    unit_file: Path = Path("mytunnel.service")
    systemd_dir: Path = Path("/etc/systemd/system")
    assume_yes: bool = False
    verbose: bool = False

    @property
    def api_base_url(self) -> str:
        return f"http://{self.api_addr}"


def resolve_client_binary(explicit: str | None = None) -> str:
    if explicit:
        return explicit
    env = os.environ.get("MYTUNNEL_CLIENT_BIN")
    if env:
        return env
    if Path(DEFAULT_CLIENT_BINARY).is_file():
        return DEFAULT_CLIENT_BINARY
    return shutil.which("mytunnel-client") or DEFAULT_CLIENT_BINARY


def build_settings(
    *,
    config_path: str | None = None,
    client_binary: str | None = None,
    api_addr: str | None = None,
    assume_yes: bool = False,
    verbose: bool = False,
) -> AppSettings:
    path = config_path or os.environ.get("MYTUNNEL_CONFIG") or DEFAULT_CONFIG_FILE
    return AppSettings(
        config_path=Path(path),
        client_binary=resolve_client_binary(client_binary),
        api_addr=api_addr or os.environ.get("MYTUNNEL_API_ADDR") or DEFAULT_API_ADDR,
        assume_yes=assume_yes,
        verbose=verbose,
    )


def split_host_port(address: str) -> tuple[str, int]:
    """Split `host:port`, `[v6]:port` or a bare host into (host, port).

    A missing or non-numeric port yields port 0.
    """
    address = (address or "").strip()
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port_text = rest[1:] if rest.startswith(":") else ""
    elif address.count(":") > 1:
        # Bare IPv6 literal without brackets: no port.
        return address, 0
    else:
        host, _, port_text = address.rpartition(":")
        if not host:
            host, port_text = port_text, ""
    try:
        port = int(port_text)
    except ValueError:
        port = 0
    return host.strip(), port


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return True


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


class ClientConfig:
    def __init__(self, data: dict[str, Any], *, path: Path | None = None) -> None:
        self._data = data
        self.path = path

    @classmethod
    def load(cls, path: Path) -> ClientConfig:
        if not path.is_file():
            raise ConfigMissingError(
                f"Config file not found: {path}",
                user_message=f"Configuration not found at {path}",
                hint="Create it with the client's setup wizard, or pass --config PATH.",
            )
        try:
            with path.open("rb") as fh:
                data = tomli.load(fh)
        except tomli.TOMLDecodeError as exc:
            raise ConfigMissingError(
                f"Invalid TOML in {path}: {exc}",
                user_message=f"Configuration at {path} is not valid TOML: {exc}",
                hint="Fix the syntax error, or regenerate the file with the setup wizard.",
            ) from exc
        return cls(data, path=path)

    def get(self, key: str) -> Any:
        """Look up a dotted key; a bare leaf key matches in any table."""
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                node = None
                break
            node = node[part]
        if node is not None or "." in key:
            return node
        for value in self._data.values():
            if isinstance(value, dict) and key in value:
                return value[key]
        return None

    def get_str(self, key: str, default: str | None = None) -> str | None:
        value = self.get(key)
        if value is None:
            return default
        text = str(value).strip()
        return text or default

    @property
    def server_address(self) -> str:
        address = self.get_str("server.address")
        if not address:
            raise ConfigKeyMissingError(
                "server.address missing from config",
                user_message="Could not extract server host:port from config (server.address).",
                hint='Set server.address = "host:port" in the [server] table.',
            )
        return address

    @property
    def server_host(self) -> str:
        return split_host_port(self.server_address)[0]

    @property
    def server_port(self) -> int:
        return split_host_port(self.server_address)[1]

    @property
    def server_name(self) -> str:
        return self.get_str("server.server_name") or self.server_host

    @property
    def insecure(self) -> bool:
        return _parse_bool(self.get("server.insecure"), False)

    def proxy_endpoint(self, kind: ProxyKind) -> ProxyEndpointConfig:
        default_bind = DEFAULT_SOCKS5_BIND if kind == "socks5" else DEFAULT_HTTP_BIND
        return ProxyEndpointConfig(
            kind=kind,
            bind_address=self.get_str(f"proxy.{kind}_bind", default_bind) or default_bind,
            enabled=_parse_bool(self.get(f"proxy.{kind}_enabled"), True),
        )

    def proxy_endpoints(self) -> list[ProxyEndpointConfig]:
        return [self.proxy_endpoint("socks5"), self.proxy_endpoint("http")]
