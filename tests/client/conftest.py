"""Shared fixtures for delivery tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from fakes import FakeGateway, make_route
from flowvault.client.sync.attachments import AttachmentFetcher
from flowvault.client.sync.engine import DeliveryEngine
from flowvault.client.sync.routes import RouteCache
from flowvault.client.vault import Vault


@pytest.fixture
def vault_dir(tmp_path: Path) -> Path:
    """Empty vault root."""
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def vault(vault_dir: Path) -> Vault:
    """Vault over the temporary root."""
    return Vault(vault_dir)


@pytest.fixture
def gateway() -> FakeGateway:
    """Fake backend with one new-file route."""
    return FakeGateway(routes=[make_route()])


@pytest.fixture
def persisted_routes() -> list[dict[str, dict[str, Any]]]:
    """Snapshots passed to the route cache's on_change callback."""
    return []


@pytest.fixture
def route_cache(gateway: FakeGateway, persisted_routes: list[dict[str, dict[str, Any]]]) -> RouteCache:
    """Empty route cache backed by the fake gateway."""
    return RouteCache(gateway, on_change=persisted_routes.append)


@pytest.fixture
def engine(route_cache: RouteCache, vault: Vault, gateway: FakeGateway) -> DeliveryEngine:
    """Delivery engine over the fake gateway and temporary vault."""
    return DeliveryEngine(route_cache, vault, AttachmentFetcher(gateway, vault))
