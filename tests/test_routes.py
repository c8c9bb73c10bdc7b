"""
Tests for route aggregation, Caddyfile rendering and the Caddy reloader.
"""

import pytest

from conftest import StubStarter, fake_binary
from infra.adapters.shell.command import CommandResult
from infra.core.errors import ProxyReloadError
from infra.core.models.service import RouteSpec, ServiceSpec
from infra.core.services import caddy as caddy_module
from infra.core.services.caddy import CaddyReloader, caddy_reload_command, caddy_run_command
from infra.core.services.routes import build_proxy_template, render_caddyfile


def _spec(service_id, port="", routes=()):
    return ServiceSpec(
        id=service_id,
        display_name=service_id.title(),
        starter=StubStarter(service_id),
        port=port,
        routes=tuple(RouteSpec(path=p, target=t) for p, t in routes),
    )


# ── Aggregation ──────────────────────────────────────────────────────


class TestBuildProxyTemplate:
    def test_web_port_is_root(self, config):
        template = build_proxy_template([_spec("web", "1400")], config)
        assert template.root_target == "localhost:1400"
        assert template.listen_port == config.ports.caddy

    def test_falls_back_to_configured_web_port(self, config):
        template = build_proxy_template([_spec("bento", "4195")], config)
        assert template.root_target == "localhost:1337"

    def test_routes_sorted_by_path(self, config):
        specs = [
            _spec("xtemplate", "8080", [("/xtemplate/*", "localhost:8080")]),
            _spec("bento", "4195", [("/bento-playground/*", "localhost:4195")]),
        ]
        template = build_proxy_template(specs, config)
        assert [r.path for r in template.routes] == ["/bento-playground/*", "/xtemplate/*"]

    def test_first_registration_wins(self, config):
        specs = [
            _spec("a", "1", [("/shared/*", "localhost:1")]),
            _spec("b", "2", [("/shared/*", "localhost:2")]),
        ]
        template = build_proxy_template(specs, config)
        assert len(template.routes) == 1
        assert template.routes[0].target == "localhost:1"

    def test_skips_incomplete_routes(self, config):
        specs = [_spec("a", "1", [("", "localhost:1"), ("/a/*", "")])]
        assert build_proxy_template(specs, config).routes == []

    def test_order_independent(self, config):
        specs = [
            _spec("web", "1337"),
            _spec("pocketbase", "8090", [("/pocketbase/*", "localhost:8090")]),
            _spec("hugo", "1313", [("/docs/*", "localhost:1313")]),
        ]
        forward = render_caddyfile(build_proxy_template(specs, config))
        backward = render_caddyfile(build_proxy_template(list(reversed(specs)), config))
        assert forward == backward

    def test_to_dict(self, config):
        d = build_proxy_template([_spec("web", "1337")], config).to_dict()
        assert d == {"listen_port": 2015, "root_target": "localhost:1337", "routes": []}


# ── Rendering ────────────────────────────────────────────────────────


class TestRenderCaddyfile:
    def _template(self, config):
        return build_proxy_template(
            [
                _spec("web", "1337"),
                _spec("bento", "4195", [("/bento-playground/*", "localhost:4195")]),
            ],
            config,
        )

    def test_development(self, config):
        text = render_caddyfile(self._template(config), development=True)
        assert text.startswith("# Caddyfile generated by infra.\n")
        assert "localhost:2015 {" in text
        assert "\thandle /bento-playground/* {\n\t\treverse_proxy localhost:4195\n\t}\n" in text
        assert "\treverse_proxy localhost:1337\n" in text
        assert "tls internal" in text
        assert 'Cache-Control "no-cache, no-store, must-revalidate"' in text
        assert text.endswith("}\n")

    def test_production(self, config):
        text = render_caddyfile(self._template(config), development=False)
        assert "\n:2015 {\n" in text
        assert "tls internal" not in text
        assert "Cache-Control" not in text

    def test_routes_before_root_proxy(self, config):
        text = render_caddyfile(self._template(config))
        assert text.index("handle /bento-playground/*") < text.index("\treverse_proxy localhost:1337")


# ── Reloader ─────────────────────────────────────────────────────────


class TestCaddyReloader:
    def _template(self, config):
        return build_proxy_template([_spec("web", "1337")], config)

    def test_commands(self, tmp_path):
        path = tmp_path / "Caddyfile"
        assert caddy_run_command("caddy", path)[:2] == ["caddy", "run"]
        assert caddy_reload_command("caddy", path) == [
            "caddy", "reload", "--config", str(path), "--adapter", "caddyfile",
        ]

    def test_write_only_on_change(self, config):
        reloader = CaddyReloader(config)
        assert reloader.write(self._template(config)) is True
        assert reloader.path.is_file()
        assert reloader.write(self._template(config)) is False

    def test_reload_runs_caddy(self, config, monkeypatch):
        binary = fake_binary(config, "caddy")
        calls = []

        def fake_run(command, **kwargs):
            calls.append((command, kwargs))
            return CommandResult(command=command, returncode=0)

        monkeypatch.setattr(caddy_module, "run_command", fake_run)
        CaddyReloader(config).reload(self._template(config))

        command, kwargs = calls[0]
        assert command[0] == str(binary)
        assert command[1] == "reload"
        assert kwargs["env"] == {"CADDY_LOG_LEVEL": "ERROR"}

    def test_reload_failure_raises(self, config, monkeypatch):
        fake_binary(config, "caddy")
        monkeypatch.setattr(
            caddy_module,
            "run_command",
            lambda command, **kw: CommandResult(command=command, returncode=1, stderr="bad config"),
        )
        with pytest.raises(ProxyReloadError, match="bad config"):
            CaddyReloader(config).reload(self._template(config))

    def test_missing_binary_raises(self, config, monkeypatch):
        monkeypatch.setattr("infra.core.models.config.shutil.which", lambda name: None)
        with pytest.raises(ProxyReloadError, match="not found"):
            CaddyReloader(config).reload(self._template(config))
