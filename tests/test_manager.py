"""
Tests for the lifecycle façade
"""

import logging
from unittest.mock import MagicMock, patch

import pytest

from minectl.errors import ProviderTransientError, ResourceNotFoundError
from minectl.manager import ServerManager
from minectl.providers import ResourceDescriptor, TeardownReport


@pytest.fixture
def driver():
    driver = MagicMock()
    driver.PROVIDER_ID = "hetzner"
    return driver


@pytest.fixture
def manager(driver):
    return ServerManager(driver)


class TestForwarding:

    def test_create(self, manager, driver, spec):
        descriptor = ResourceDescriptor("1", "srv1", "fsn1", "203.0.113.5", "minectl,java")
        driver.create_server.return_value = descriptor

        assert manager.create_server(spec) is descriptor
        driver.create_server.assert_called_once_with(spec)

    def test_list(self, manager, driver):
        driver.list_servers.return_value = []
        assert manager.list_servers() == []

    def test_update(self, manager, driver, spec):
        manager.update_server("1", spec)
        driver.update_server.assert_called_once_with("1", spec)

    def test_no_retry(self, manager, driver, spec):
        driver.create_server.side_effect = ProviderTransientError("hetzner", "503")
        with pytest.raises(ProviderTransientError):
            manager.create_server(spec)
        assert driver.create_server.call_count == 1


class TestDelete:

    def test_missing_ignored_by_default(self, manager, driver, spec):
        driver.delete_server.return_value = TeardownReport("1", missing=["srv1-vol"])
        report = manager.delete_server("1", spec)
        assert report.missing == ["srv1-vol"]

    def test_missing_strict(self, manager, driver, spec):
        driver.delete_server.return_value = TeardownReport("1", missing=["srv1-vol"])
        with pytest.raises(ResourceNotFoundError) as exc_info:
            manager.delete_server("1", spec, ignore_missing=False)
        assert "srv1-vol" in str(exc_info.value)

    def test_complete_strict(self, manager, driver, spec):
        driver.delete_server.return_value = TeardownReport("1", deleted=["srv1-vol"])
        assert manager.delete_server("1", spec, ignore_missing=False).complete


class TestLogging:

    def test_records_carry_context(self, manager, driver, spec, caplog):
        driver.delete_server.return_value = TeardownReport("1", missing=["srv1-fw"])
        with caplog.at_level(logging.INFO, logger="minectl.manager"):
            manager.delete_server("1", spec)

        assert [r.getMessage() for r in caplog.records] == ["Deleting srv1 (1)", "srv1-fw was already gone"]
        for record in caplog.records:
            assert (record.provider, record.server, record.operation) == ("hetzner", "srv1", "delete")


class TestForProvider:

    def test_uses_registry(self, test_config):
        event = MagicMock()
        with patch("minectl.manager.ProviderRegistry.instantiate") as instantiate:
            manager = ServerManager.for_provider("do", test_config, cancel_event=event)

        instantiate.assert_called_once_with("do", test_config, cancel_event=event)
        assert manager.provider is instantiate.return_value

    def test_real_driver(self, test_config):
        manager = ServerManager.for_provider("do", test_config)
        assert manager.provider_id == "do"
