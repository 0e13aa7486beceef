import io

import pytest

from neuralos.config import AppConfig
from neuralos.console import Console


@pytest.fixture
async def console():
    out = io.StringIO()
    console = Console(AppConfig(), out=out)
    yield console
    await console.close()


@pytest.mark.asyncio
async def test_key_command_validates_prefix(console):
    await console.handle("/key not-a-key")
    assert console.settings.has_api_key() is False

    await console.handle("/key sk-ant-console")
    assert console.settings.get_api_key() == "sk-ant-console"
    assert "API key saved." in console._out.getvalue()


@pytest.mark.asyncio
async def test_model_command(console):
    await console.handle("/model gpt-4")
    assert "Supported models" in console._out.getvalue()

    await console.handle("/model claude-opus-4-20250514")
    assert console.settings.get_model() == "claude-opus-4-20250514"


@pytest.mark.asyncio
async def test_stats_clear_and_quit(console):
    assert await console.handle("/stats") is True
    assert "requests=0" in console._out.getvalue()

    assert await console.handle("/clear") is True
    assert await console.handle("   ") is True
    assert await console.handle("/bogus") is True
    assert "Unknown command /bogus" in console._out.getvalue()

    assert await console.handle("/quit") is False


@pytest.mark.asyncio
async def test_run_without_actions(console):
    await console.handle("/run")

    assert "No actions to run." in console._out.getvalue()


@pytest.mark.asyncio
async def test_registry_has_notification_actions(console):
    assert console.registry.has("send_notification")
    assert console.registry.has("schedule_notification")
    assert console.registry.has("cancel_notifications")
