"""Fixtures for HTTP API tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from shipyard.server.app import create_app


@pytest.fixture
async def app(server_config, fake_supervisor):
    """App with the in-memory supervisor, lifespan running."""
    application = create_app(server_config, supervisor=fake_supervisor)
    async with application.router.lifespan_context(application):
        yield application


@pytest.fixture
async def anon_client(app):
    """Client without credentials."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def client(app):
    """Client carrying a valid bearer token."""
    token = app.state.tokens.issue()
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"Authorization": f"Bearer {token}"},
    ) as authed:
        yield authed
