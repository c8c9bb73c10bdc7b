"""
Service hooks: Preparer and Starter implementations per service.

Preparers create the directories a service needs.  Starters launch the
service and hand back a cleanup closure.  External binaries run under
the ProcessSupervisor; the control panel runs in-process on a werkzeug
server thread.

A starter never blocks on its service: it returns as soon as the
process is launched and reports later crashes through ``record_error``.
"""

from __future__ import annotations

import logging
import threading
from abc import abstractmethod
from pathlib import Path

import yaml

from infra.core.errors import InfraError, ServiceStartError
from infra.core.models.service import (
    Cleanup,
    ErrorRecorder,
    Options,
    Preparer,
    RunContext,
    Starter,
)
from infra.core.services.caddy import CADDY_BINARY, CADDY_ENV, CaddyReloader, caddy_run_command
from infra.core.services.identity import IdentityBootstrap
from infra.core.services.routes import build_proxy_template

logger = logging.getLogger(__name__)


# ── Preparers ───────────────────────────────────────────────────


class DirectoryPreparer(Preparer):
    """Create ``<data>/<service>/<subdir>`` for each subdir."""

    def __init__(self, service: str, *subdirs: str):
        self.service = service
        self.subdirs = subdirs or ("",)

    def ensure(self, ctx: RunContext, options: Options) -> None:
        base = ctx.config.service_dir(self.service)
        for sub in self.subdirs:
            (base / sub).mkdir(parents=True, exist_ok=True)


class BentoPreparer(DirectoryPreparer):
    """Directories plus a default pipeline config, written once."""

    def __init__(self) -> None:
        super().__init__("bento")

    def ensure(self, ctx: RunContext, options: Options) -> None:
        super().ensure(ctx, options)
        path = bento_config_path(ctx)
        if path.is_file():
            return
        pipeline = {
            "http": {"address": f"0.0.0.0:{ctx.config.ports.bento}", "enabled": True},
            "input": {
                "generate": {
                    "mapping": 'root = { "message": "hello world", "timestamp": now() }',
                    "interval": "5s",
                },
            },
            "output": {"drop": {}},
        }
        path.write_text(yaml.safe_dump(pipeline, sort_keys=False), encoding="utf-8")
        logger.info("Wrote default Bento config to %s", path)


def bento_config_path(ctx: RunContext) -> Path:
    return ctx.config.service_dir("bento") / "bento.yaml"


# ── Supervised binaries ─────────────────────────────────────────


class BinaryStarter(Starter):
    """Run an external binary under the ProcessSupervisor.

    Subclasses provide the argv; this class resolves the binary,
    launches it, and wires crash reporting and cleanup.
    """

    process_name: str = ""
    binary: str = ""

    def __init__(self, process_name: str | None = None, binary: str | None = None):
        if process_name:
            self.process_name = process_name
        if binary:
            self.binary = binary

    @abstractmethod
    def arguments(self, ctx: RunContext, options: Options) -> list[str]:
        """argv after the binary path."""

    def environment(self, ctx: RunContext) -> dict[str, str] | None:
        return None

    def working_dir(self, ctx: RunContext) -> str | None:
        return str(ctx.config.service_dir(self.process_name))

    def before_start(self, ctx: RunContext, options: Options) -> None:
        """Hook for config files that must exist before launch."""

    def start(
        self,
        ctx: RunContext,
        options: Options,
        record_error: ErrorRecorder,
    ) -> Cleanup | None:
        path = ctx.config.find_binary(self.binary)
        if path is None:
            raise ServiceStartError(
                f"{self.binary} binary not found in {ctx.config.bin_dir} or PATH"
            )

        self.before_start(ctx, options)

        name = self.process_name

        def on_exit(code: int) -> None:
            record_error(ServiceStartError(f"{name} exited unexpectedly with code {code}"))

        pid = ctx.supervisor.start(
            name,
            [path, *self.arguments(ctx, options)],
            env=self.environment(ctx),
            cwd=self.working_dir(ctx),
            on_exit=on_exit,
        )
        logger.info("%s started under supervision (PID %d)", name, pid)

        def cleanup() -> None:
            ctx.supervisor.stop(name)

        return cleanup


class PocketBaseStarter(BinaryStarter):
    process_name = "pocketbase"
    binary = "pocketbase"

    def arguments(self, ctx: RunContext, options: Options) -> list[str]:
        args = [
            "serve",
            "--http", f"0.0.0.0:{ctx.config.ports.pocketbase}",
            "--dir", str(ctx.config.service_dir("pocketbase") / "pb_data"),
        ]
        if options.is_development:
            args.append("--dev")
        return args


class CaddyStarter(BinaryStarter):
    """Caddy needs a Caddyfile on disk before ``caddy run``."""

    process_name = "caddy"
    binary = CADDY_BINARY

    def before_start(self, ctx: RunContext, options: Options) -> None:
        enabled = [s for s in ctx.specs if s.is_enabled(options)]
        reloader = CaddyReloader(ctx.config, development=options.is_development)
        reloader.write(build_proxy_template(enabled, ctx.config))

    def arguments(self, ctx: RunContext, options: Options) -> list[str]:
        return caddy_run_command(self.binary, ctx.config.caddyfile_path)[1:]

    def environment(self, ctx: RunContext) -> dict[str, str] | None:
        return dict(CADDY_ENV)


class BentoStarter(BinaryStarter):
    process_name = "bento"
    binary = "bento"

    def arguments(self, ctx: RunContext, options: Options) -> list[str]:
        return [
            "--set", f"http.address=0.0.0.0:{ctx.config.ports.bento}",
            "run", str(bento_config_path(ctx)),
        ]


class DeckAPIStarter(BinaryStarter):
    process_name = "deck-api"
    binary = "deck-api"

    def arguments(self, ctx: RunContext, options: Options) -> list[str]:
        return ["--port", str(ctx.config.ports.deck_api)]


class XTemplateStarter(BinaryStarter):
    process_name = "xtemplate"
    binary = "xtemplate"

    def arguments(self, ctx: RunContext, options: Options) -> list[str]:
        base = ctx.config.service_dir("xtemplate")
        return [
            "--listen", f"0.0.0.0:{ctx.config.ports.xtemplate}",
            "--template-dir", str(base / "templates"),
        ]


class HugoStarter(BinaryStarter):
    process_name = "hugo"
    binary = "hugo"

    def arguments(self, ctx: RunContext, options: Options) -> list[str]:
        port = ctx.config.ports.hugo
        return [
            "server",
            "--source", str(ctx.config.service_dir("hugo") / "site"),
            "--port", str(port),
            "--baseURL", f"http://localhost:{port}/docs",
            "--appendPort=false",
            "--watch",
            "--buildDrafts",
        ]


class MoxStarter(BinaryStarter):
    process_name = "mox"
    binary = "mox"

    def arguments(self, ctx: RunContext, options: Options) -> list[str]:
        return ["-config", str(ctx.config.service_dir("mox") / "config" / "mox.conf"), "serve"]


# ── NATS ────────────────────────────────────────────────────────


def render_nats_config(ctx: RunContext, operator_jwt_path: str, system_account: str,
                       preload: dict[str, str]) -> str:
    """nats-server config using the memory resolver and JetStream."""
    base = ctx.config.service_dir("nats")
    lines = [
        "# Generated by infra; DO NOT EDIT.",
        f"port: {ctx.config.ports.nats}",
        "server_name: infra",
        "",
        "jetstream {",
        f'  store_dir: "{base / "jetstream"}"',
        "}",
        "",
        f'operator: "{operator_jwt_path}"',
        f"system_account: {system_account}",
        "resolver: MEMORY",
        "resolver_preload: {",
    ]
    for account_id, token in preload.items():
        lines.append(f"  {account_id}: {token}")
    lines.append("}")
    return "\n".join(lines) + "\n"


class NatsStarter(Starter):
    """Bootstrap the trust chain, then run nats-server and the S3 gateway."""

    process_name = "nats"
    s3_process_name = "nats-s3"

    def start(
        self,
        ctx: RunContext,
        options: Options,
        record_error: ErrorRecorder,
    ) -> Cleanup | None:
        artifacts = IdentityBootstrap(ctx.config).ensure()

        binary = ctx.config.find_binary("nats-server")
        if binary is None:
            raise ServiceStartError(
                f"nats-server binary not found in {ctx.config.bin_dir} or PATH"
            )

        base = ctx.config.service_dir("nats")
        conf_path = base / "nats.conf"
        conf_path.write_text(
            render_nats_config(
                ctx,
                artifacts.operator_jwt_path,
                artifacts.system_account_id,
                {
                    artifacts.system_account_id: artifacts.system_account_jwt,
                    artifacts.account_id: artifacts.account_jwt,
                },
            ),
            encoding="utf-8",
        )

        def on_exit(code: int) -> None:
            record_error(ServiceStartError(f"nats-server exited unexpectedly with code {code}"))

        ctx.supervisor.start(
            self.process_name,
            [binary, "-c", str(conf_path)],
            cwd=str(base),
            on_exit=on_exit,
        )
        started = [self.process_name]

        s3_binary = ctx.config.find_binary("nats-s3")
        if s3_binary is None:
            logger.info("nats-s3 not found; S3 gateway disabled")
        else:
            ctx.supervisor.start(
                self.s3_process_name,
                [
                    s3_binary,
                    "--listen", f"0.0.0.0:{ctx.config.ports.nats_s3}",
                    "--natsServers", f"nats://127.0.0.1:{ctx.config.ports.nats}",
                    "--natsCreds", artifacts.app_creds_path,
                ],
                cwd=str(base),
            )
            started.append(self.s3_process_name)

        def cleanup() -> None:
            for name in reversed(started):
                ctx.supervisor.stop(name)

        return cleanup


# ── Web control panel ───────────────────────────────────────────


class WebStarter(Starter):
    """Serve the Flask control panel on a background thread."""

    def __init__(self, host: str = "0.0.0.0"):
        self.host = host

    def start(
        self,
        ctx: RunContext,
        options: Options,
        record_error: ErrorRecorder,
    ) -> Cleanup | None:
        from werkzeug.serving import make_server

        from infra.ui.web.server import create_app

        app = create_app(ctx.config, bus=ctx.bus)
        port = ctx.config.ports.web
        try:
            server = make_server(self.host, port, app, threaded=True)
        except (OSError, SystemExit) as e:
            raise ServiceStartError(f"cannot bind web server to port {port}: {e}") from e

        def serve() -> None:
            try:
                server.serve_forever()
            except Exception as e:
                record_error(InfraError(f"web server stopped: {e}"))

        thread = threading.Thread(target=serve, name="web-server", daemon=True)
        thread.start()
        logger.info("Web control panel on http://%s:%d", self.host, port)

        def cleanup() -> None:
            server.shutdown()
            server.server_close()
            thread.join(timeout=5)

        return cleanup
