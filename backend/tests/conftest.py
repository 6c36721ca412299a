"""Test fixtures for agent-farm tests.

Every test gets its own AF_HOME and project directory under tmp_path, so
the machine-wide registry of the developer running the tests is never
touched.
"""

from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

from agentfarm import config
from agentfarm.context import ProjectContext
from agentfarm.port_registry import PortRegistry
from agentfarm.state import StateStore


@pytest.fixture(autouse=True)
def isolated_home(tmp_path):
    """Point AF_HOME at a temp dir for every test."""
    home = tmp_path / "af-home"
    with patch.object(config, "AF_HOME", home):
        yield home


@pytest.fixture()
def registry(isolated_home):
    return PortRegistry(isolated_home)


@pytest.fixture()
def project_root(tmp_path):
    """A minimal project checkout with a codev/ directory."""
    root = tmp_path / "myproject"
    (root / "codev" / "specs").mkdir(parents=True)
    return root.resolve()


@pytest.fixture()
async def store(project_root):
    return await StateStore(project_root / config.STATE_DIR_NAME).initialize()


@pytest.fixture()
async def ctx(project_root, isolated_home):
    """Project context on a fresh registry: always port block 4200."""
    return await ProjectContext.initialize(project_root=project_root, home_dir=isolated_home)


@pytest.fixture()
async def client(ctx):
    """httpx client bound to the dashboard app."""
    from agentfarm.dashboard import create_app

    app = create_app(ctx)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
