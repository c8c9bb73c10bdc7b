"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

from infra.adapters.mock import MockPortInspector, MockSupervisor
from infra.core.models.config import RuntimeConfig
from infra.core.models.service import Options, Preparer, RunContext, Starter
from infra.core.services.event_bus import EventBus


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config(tmp_path: Path) -> RuntimeConfig:
    """A development config rooted in a temporary directory."""
    return RuntimeConfig(
        data_dir=str(tmp_path / ".data"),
        bin_dir=str(tmp_path / ".bin"),
    )


@pytest.fixture
def supervisor() -> MockSupervisor:
    return MockSupervisor()


@pytest.fixture
def inspector() -> MockPortInspector:
    return MockPortInspector()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


def fake_binary(config: RuntimeConfig, name: str) -> Path:
    """Drop an executable placeholder for ``name`` into the bin dir."""
    path = Path(config.bin_dir) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(0o755)
    return path


# ── Stub hooks ───────────────────────────────────────────────────────


class StubStarter(Starter):
    """Starts ``name`` on the supervisor and records the call."""

    def __init__(self, name: str):
        self.name = name
        self.calls = 0
        self.cleaned = 0

    def start(self, ctx: RunContext, options: Options, record_error):
        self.calls += 1
        ctx.supervisor.start(
            self.name,
            [self.name],
            on_exit=lambda code: record_error(RuntimeError(f"{self.name} exited {code}")),
        )

        def cleanup() -> None:
            self.cleaned += 1
            ctx.supervisor.stop(self.name)

        return cleanup


class FailingStarter(Starter):
    def __init__(self, message: str = "boom"):
        self.message = message

    def start(self, ctx: RunContext, options: Options, record_error):
        raise RuntimeError(self.message)


class FailingPreparer(Preparer):
    def ensure(self, ctx: RunContext, options: Options) -> None:
        raise OSError("disk full")


class CancellingPreparer(Preparer):
    """Cancels the run as soon as it is prepared."""

    def ensure(self, ctx: RunContext, options: Options) -> None:
        ctx.cancelled.set()
