"""
Reverse-proxy reloader: persist the Caddyfile and hot-reload Caddy.

``caddy reload`` swaps the configuration of the running server without
dropping in-flight connections.  The file is always rewritten in full;
it is never patched.
"""

from __future__ import annotations

import logging
from pathlib import Path

from infra.adapters.shell.command import run_command
from infra.core.errors import ProxyReloadError
from infra.core.models.config import RuntimeConfig
from infra.core.persistence.state_file import write_atomic
from infra.core.services.routes import ProxyTemplate, render_caddyfile

logger = logging.getLogger(__name__)

CADDY_BINARY = "caddy"
CADDY_ENV = {"CADDY_LOG_LEVEL": "ERROR"}


def caddy_run_command(binary: str, caddyfile: Path) -> list[str]:
    """argv that starts Caddy in the foreground on ``caddyfile``."""
    return [binary, "run", "--config", str(caddyfile), "--adapter", "caddyfile"]


def caddy_reload_command(binary: str, caddyfile: Path) -> list[str]:
    return [binary, "reload", "--config", str(caddyfile), "--adapter", "caddyfile"]


class CaddyReloader:
    """Writes the rendered Caddyfile and asks the running Caddy to load it."""

    def __init__(self, config: RuntimeConfig, development: bool | None = None):
        self._config = config
        self._development = config.is_development if development is None else development

    @property
    def path(self) -> Path:
        return self._config.caddyfile_path

    def write(self, template: ProxyTemplate) -> bool:
        """Render and persist ``template``.  Returns True if the file changed."""
        content = render_caddyfile(template, development=self._development)
        if self.path.is_file() and self.path.read_text(encoding="utf-8") == content:
            return False
        write_atomic(self.path, content)
        logger.debug("Wrote %s (%d routes)", self.path, len(template.routes))
        return True

    def reload(self, template: ProxyTemplate) -> None:
        """Persist ``template`` and trigger a live reload.

        Raises:
            ProxyReloadError: if Caddy is missing or rejects the config.
        """
        self.write(template)

        binary = self._config.find_binary(CADDY_BINARY)
        if binary is None:
            raise ProxyReloadError("caddy binary not found")

        result = run_command(
            caddy_reload_command(binary, self.path),
            env=CADDY_ENV,
            timeout=30,
        )
        if not result.ok:
            raise ProxyReloadError(f"caddy reload failed: {result.message}")
        logger.info("Caddy routes reloaded (%d routes)", len(template.routes))
