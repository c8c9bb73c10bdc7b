"""
RuntimeConfig: settings that shape one orchestrator process.

Loaded from infra.yml (optional) and environment overrides by
``infra.core.config.loader``.  Every service port, the data directory
layout, and the NATS identity names live here so nothing in the core
reads the environment directly.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from pydantic import BaseModel, Field

DEVELOPMENT_ENVIRONMENTS = frozenset({"development", "dev", "local"})


class PortsConfig(BaseModel):
    """TCP ports for every orchestrated service."""

    web: int = 1337
    nats: int = 4222
    nats_s3: int = 5222
    pocketbase: int = 8090
    caddy: int = 2015
    bento: int = 4195
    deck_api: int = 8888
    xtemplate: int = 8080
    hugo: int = 1313


class NatsIdentityConfig(BaseModel):
    """Names used for the NATS operator → account → user trust chain."""

    operator: str = "infra"
    system_account: str = "SYS"
    account: str = "infra"
    user: str = "infra"
    system_user: str = "sys"


class RuntimeConfig(BaseModel):
    """Root configuration model for the orchestrator."""

    environment: str = "development"
    data_dir: str = ".data"
    bin_dir: str = ".bin"
    marker: str = "infra"
    reclaim_timeout: float = 3.0
    ports: PortsConfig = Field(default_factory=PortsConfig)
    nats: NatsIdentityConfig = Field(default_factory=NatsIdentityConfig)

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in DEVELOPMENT_ENVIRONMENTS

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    def service_dir(self, name: str) -> Path:
        """Per-service working directory under the data root."""
        return self.data_path / name

    @property
    def state_dir(self) -> Path:
        return self.data_path / "state"

    @property
    def nats_auth_dir(self) -> Path:
        return self.service_dir("nats") / "auth"

    @property
    def caddyfile_path(self) -> Path:
        return self.service_dir("caddy") / "Caddyfile"

    def find_binary(self, name: str) -> str | None:
        """Locate a service binary in bin_dir first, then on PATH."""
        local = Path(self.bin_dir).expanduser() / name
        if local.is_file():
            return str(local)
        return shutil.which(name)


def local_address(port: int | str) -> str:
    """Format a port as the loopback ``host:port`` proxy target."""
    return f"localhost:{port}"
