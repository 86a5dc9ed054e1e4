"""Tests for DependencyExecutor: ordering, wiring, sharing and uninstall."""

from __future__ import annotations

import pytest

from porter.actions import ActionExecutor, ActionOptions
from porter.cnab.extensions import DEPENDENCIES_V2_KEY
from porter.core.context import Context
from porter.errors import NotFoundError, ValidationError
from porter.storage.installations import InstallationStore
from porter.storage.models import LABEL_PARENT_INSTALLATION, LABEL_SHARING_GROUP


@pytest.fixture
def wordpress(make_bundle, puller):
    """Factory for a root bundle depending on mysql, with mysql published to the puller."""

    def _factory(mysql: dict | None = None, name: str = "wordpress", **overrides):
        declared = {"bundle": "getporter/mysql:v5.7.0"}
        declared.update(mysql or {})
        puller.add(
            "getporter/mysql:v5.7.0",
            make_bundle(
                name="mysql",
                version="5.7.0",
                parameters={
                    "port": {"type": "integer", "default": 3306},
                    "password": {"type": "string", "default": ""},
                },
                outputs={"connstr": {"type": "string"}},
                actions={"backup": {"modifies": False}},
            ),
        )
        return make_bundle(
            name=name,
            parameters={"db-password": {"type": "string", "default": "changeme"}},
            required_extensions=[DEPENDENCIES_V2_KEY],
            custom={DEPENDENCIES_V2_KEY: {"requires": {"mysql": declared}}},
            **overrides,
        )

    return _factory


def _run(executor: ActionExecutor, ctx: Context, action: str, bundle, installation: str = "wordpress", **kwargs):
    return executor.execute(ctx, ActionOptions(action=action, installation=installation, bundle=bundle, **kwargs))


# ---------------------------------------------------------------------------
# Test: ordering and wiring
# ---------------------------------------------------------------------------


class TestInstall:
    """Dependencies run first, as installations of their own."""

    def test_dependency_installed_first(self, ctx: Context, executor: ActionExecutor, installation_store: InstallationStore, wordpress, driver):
        _run(executor, ctx, "install", wordpress())
        assert driver.executed == [("install", "wordpress-mysql"), ("install", "wordpress")]
        mysql = installation_store.get_installation(ctx, "", "wordpress-mysql")
        assert mysql.labels[LABEL_PARENT_INSTALLATION] == "/wordpress"
        assert mysql.status.bundle_reference == "getporter/mysql:v5.7.0"
        assert mysql.status.installation_completed

    def test_root_parameter_wired(self, ctx: Context, executor: ActionExecutor, wordpress, driver):
        bundle = wordpress({"parameters": {"password": "${ bundle.parameters.db-password }"}})
        _run(executor, ctx, "install", bundle, parameters={"db-password": "s3cr3t"})
        assert driver.operations[0].parameters["password"] == "s3cr3t"

    def test_dependency_parameter_override(self, ctx: Context, executor: ActionExecutor, wordpress, driver):
        _run(executor, ctx, "install", wordpress(), parameters={"mysql#port": "3307"})
        assert driver.operations[0].parameters["port"] == 3307
        assert "mysql#port" not in driver.operations[1].parameters

    def test_dependency_outputs_visible_to_root(self, ctx: Context, executor: ActionExecutor, wordpress, driver):
        driver.outputs["wordpress-mysql"] = {"connstr": "mysql://db"}
        _run(executor, ctx, "install", wordpress())
        context = driver.operations[1].dependencies["mysql"]
        assert context.name == "mysql"
        assert context.version == "5.7.0"
        assert context.outputs == {"connstr": "mysql://db"}

    def test_no_dependencies_flag(self, ctx: Context, executor: ActionExecutor, wordpress, driver):
        _run(executor, ctx, "install", wordpress(), no_dependencies=True)
        assert driver.executed == [("install", "wordpress")]

    def test_dependency_failure_stops_root(self, ctx: Context, executor: ActionExecutor, installation_store: InstallationStore, wordpress, driver):
        driver.failures["wordpress-mysql"] = ValidationError("broken")
        with pytest.raises(ValidationError, match="broken"):
            _run(executor, ctx, "install", wordpress())
        assert driver.executed == [("install", "wordpress-mysql")]
        with pytest.raises(NotFoundError):
            installation_store.get_installation(ctx, "", "wordpress")


class TestOtherActions:
    """Upgrade installs missing dependencies; custom actions run only where defined."""

    def test_upgrade_installs_missing_dependency(self, ctx: Context, executor: ActionExecutor, wordpress, driver):
        bundle = wordpress()
        _run(executor, ctx, "install", bundle, no_dependencies=True)
        _run(executor, ctx, "upgrade", bundle)
        assert driver.executed == [
            ("install", "wordpress"),
            ("install", "wordpress-mysql"),
            ("upgrade", "wordpress"),
        ]

    def test_upgrade_existing_dependency(self, ctx: Context, executor: ActionExecutor, wordpress, driver):
        bundle = wordpress()
        _run(executor, ctx, "install", bundle)
        _run(executor, ctx, "upgrade", bundle)
        assert driver.executed[2:] == [("upgrade", "wordpress-mysql"), ("upgrade", "wordpress")]

    def test_custom_action(self, ctx: Context, executor: ActionExecutor, wordpress, driver):
        bundle = wordpress(actions={"backup": {"modifies": False}, "logs": {"modifies": False}})
        _run(executor, ctx, "install", bundle)
        _run(executor, ctx, "backup", bundle)
        _run(executor, ctx, "logs", bundle)
        assert driver.executed[2:] == [
            ("backup", "wordpress-mysql"),
            ("backup", "wordpress"),
            ("logs", "wordpress"),
        ]

    def test_uninstall_reverse_and_delete(self, ctx: Context, executor: ActionExecutor, installation_store: InstallationStore, wordpress, driver):
        bundle = wordpress()
        _run(executor, ctx, "install", bundle)
        _run(executor, ctx, "uninstall", bundle)
        assert driver.executed[2:] == [("uninstall", "wordpress"), ("uninstall", "wordpress-mysql")]
        with pytest.raises(NotFoundError):
            installation_store.get_installation(ctx, "", "wordpress-mysql")
        assert installation_store.get_installation(ctx, "", "wordpress").is_uninstalled


# ---------------------------------------------------------------------------
# Test: sharing groups
# ---------------------------------------------------------------------------


class TestSharing:
    """A dependency shared by a group is installed once and left in place."""

    SHARED = {"sharing": {"mode": "group", "group": {"name": "blue"}}}

    def test_shared_dependency_named_by_alias(self, ctx: Context, executor: ActionExecutor, installation_store: InstallationStore, wordpress, driver):
        _run(executor, ctx, "install", wordpress(self.SHARED))
        assert driver.executed == [("install", "mysql"), ("install", "wordpress")]
        mysql = installation_store.get_installation(ctx, "", "mysql")
        assert mysql.labels[LABEL_SHARING_GROUP] == "blue"

    def test_second_consumer_reuses(self, ctx: Context, executor: ActionExecutor, wordpress, driver):
        _run(executor, ctx, "install", wordpress(self.SHARED))
        _run(executor, ctx, "install", wordpress(self.SHARED, name="blog"), installation="blog")
        assert driver.executed[2:] == [("install", "blog")]

    def test_uninstall_leaves_shared(self, ctx: Context, executor: ActionExecutor, installation_store: InstallationStore, wordpress, driver):
        bundle = wordpress(self.SHARED)
        _run(executor, ctx, "install", bundle)
        _run(executor, ctx, "uninstall", bundle)
        assert driver.executed[2:] == [("uninstall", "wordpress")]
        assert installation_store.get_installation(ctx, "", "mysql").is_installed

    def test_uninstalled_shared_dependency_rejected(self, ctx: Context, executor: ActionExecutor, wordpress):
        bundle = wordpress(self.SHARED)
        _run(executor, ctx, "install", bundle)
        executor.execute(ctx, ActionOptions(action="uninstall", installation="mysql", no_dependencies=True))
        with pytest.raises(ValidationError, match="must be installed or deleted"):
            _run(executor, ctx, "upgrade", bundle)
