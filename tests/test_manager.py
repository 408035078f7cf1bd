"""Tests for OperatorManager."""

import asyncio

import pytest

from checkly_operator.config import Settings
from checkly_operator.manager import OperatorManager
from checkly_operator.models import ResourceKind, WatchEvent
from checkly_operator.reconciler import READY
from checkly_operator.store import resource_to_object
from checkly_operator.watch import INGRESS

from conftest import FINALIZER, PREFIX, FakeExternalAPI


@pytest.fixture
def settings():
    """Operator settings for tests."""
    return Settings(
        checkly_api_key="test-key",
        checkly_account_id="test-account",
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.1,
        dependency_retry_seconds=0.01,
        resync_interval_seconds=3600,
    )


@pytest.fixture
def apis():
    """One fake external API per kind."""
    return {
        ResourceKind.CHECK: FakeExternalAPI(prefix="chk"),
        ResourceKind.GROUP: FakeExternalAPI(prefix="100"),
        ResourceKind.ALERT_CHANNEL: FakeExternalAPI(prefix="200"),
    }


@pytest.fixture
def manager(settings, store, apis):
    """Operator manager without a watch source."""
    return OperatorManager(settings, store, apis.__getitem__)


class TestOperatorManager:
    """Test cases for OperatorManager."""

    def test_builds_one_controller_per_kind(self, manager):
        """Test every kind and the ingress source get a controller."""
        assert set(manager.controllers) == {"ApiCheck", "Group", "AlertChannel", INGRESS}
        assert manager.loops[ResourceKind.GROUP].config.finalizer == FINALIZER

    @pytest.mark.asyncio
    async def test_resync_converges_everything(self, manager, store, apis, make_resource, make_ingress):
        """Test a resync reconciles declared resources and derives checks."""
        store.put(make_resource(ResourceKind.ALERT_CHANNEL, "oncall", {"email": {"address": "ops@example.com"}}))
        store.put(make_resource(ResourceKind.GROUP, "team", {"locations": ["eu-west-1"], "alertChannels": ["oncall"]}))
        store.put(make_resource(ResourceKind.CHECK, "a", {"url": "https://a.example"}))
        store.put_ingress(make_ingress("web", {f"{PREFIX}check-url": "https://b.example"}))

        await manager.resync()
        await manager.run_until_idle()

        assert store.peek(ResourceKind.CHECK, "default", "a").status.external_id == "chk-1"
        assert store.peek(ResourceKind.ALERT_CHANNEL, "", "oncall").status.external_id == "200-1"
        assert store.peek(ResourceKind.CHECK, "default", "web-rule-0") is not None

        # The derived check is reconciled on the next resync
        await manager.resync()
        await manager.run_until_idle()

        derived = store.peek(ResourceKind.CHECK, "default", "web-rule-0")
        assert derived.status.external_id == "chk-2"
        assert derived.status.get_condition(READY).status.value == "True"
        assert apis[ResourceKind.CHECK].count("create") == 2

    @pytest.mark.asyncio
    async def test_group_waits_for_alert_channel(self, manager, store, apis, make_resource):
        """Test a group created before its channel converges once the channel syncs."""
        store.put(make_resource(ResourceKind.GROUP, "team", {"locations": ["eu-west-1"], "alertChannels": ["oncall"]}))
        store.put(make_resource(ResourceKind.ALERT_CHANNEL, "oncall", {"email": {"address": "ops@example.com"}}))

        manager.enqueue("Group", "team")
        await manager.run_until_idle()
        assert store.peek(ResourceKind.GROUP, "", "team").status.external_id is None

        manager.enqueue("AlertChannel", "oncall")
        await manager.run_until_idle()
        await asyncio.sleep(0.05)
        await manager.run_until_idle()

        group = store.peek(ResourceKind.GROUP, "", "team")
        assert group.status.external_id == "100-1"
        assert apis[ResourceKind.GROUP].resources["100-1"]["alertChannelSubscriptions"] == [
            {"alertChannelId": "200-1", "activated": True}
        ]

    @pytest.mark.asyncio
    async def test_resync_repairs_drift(self, manager, store, apis, make_resource):
        """Test periodic resync compares with the live external state."""
        store.put(make_resource(ResourceKind.CHECK, "a", {"url": "https://a.example"}))
        await manager.resync()
        await manager.run_until_idle()
        apis[ResourceKind.CHECK].resources["chk-1"]["muted"] = True

        await manager.resync()
        await manager.run_until_idle()

        assert apis[ResourceKind.CHECK].resources["chk-1"]["muted"] is False

    @pytest.mark.asyncio
    async def test_resync_collects_orphans(self, manager, store, apis, make_ingress):
        """Test derived checks of a vanished ingress are collected on resync."""
        store.put_ingress(make_ingress("web", {f"{PREFIX}check-url": "https://b.example"}))
        await manager.resync()
        await manager.run_until_idle()
        store.remove_ingress("default", "web")

        await manager.resync()
        await manager.run_until_idle()

        assert store.peek(ResourceKind.CHECK, "default", "web-rule-0").metadata.deletion_requested

        await manager.resync()
        await manager.run_until_idle()

        assert store.peek(ResourceKind.CHECK, "default", "web-rule-0") is None
        assert apis[ResourceKind.CHECK].calls[-1] == ("delete", "chk-1")

    @pytest.mark.asyncio
    async def test_resync_collects_checks_of_unannotated_ingress(self, manager, store, apis, make_ingress):
        """Test an ingress that silently lost its annotations has its checks collected."""
        store.put_ingress(make_ingress("web", {f"{PREFIX}check-url": "https://b.example"}))
        await manager.resync()
        await manager.run_until_idle()
        assert store.peek(ResourceKind.CHECK, "default", "web-rule-0") is not None

        # Annotations removed without a watch event
        store.put_ingress(make_ingress("web", {}))
        for _ in range(2):
            await manager.resync()
            await manager.run_until_idle()

        assert store.peek(ResourceKind.CHECK, "default", "web-rule-0") is None
        assert apis[ResourceKind.CHECK].resources == {}

    @pytest.mark.asyncio
    async def test_resync_skips_owners_outside_watched_namespace(self, settings, store, apis, make_ingress):
        """Test a namespaced operator leaves other namespaces' derived checks alone."""
        store.put_ingress(make_ingress("web", {f"{PREFIX}check-url": "https://b.example"}, namespace="other"))
        await OperatorManager(settings, store, apis.__getitem__).synchronizer.sync("other", "web")
        scoped = OperatorManager(
            settings.model_copy(update={"watch_namespace": "team"}), store, apis.__getitem__
        )

        await scoped.resync()

        assert len(scoped.controllers[INGRESS].queue) == 0

    @pytest.mark.asyncio
    async def test_derived_check_event_enqueues_owner(self, manager, store, make_ingress):
        """Test an event on a derived check re-syncs its ingress."""
        store.put_ingress(make_ingress("web", {f"{PREFIX}check-url": "https://b.example"}))
        await manager.synchronizer.sync("default", "web")
        derived = store.peek(ResourceKind.CHECK, "default", "web-rule-0")

        manager.handle_event(
            WatchEvent(
                event_type="DELETED",
                resource_type="ApiCheck",
                name="web-rule-0",
                namespace="default",
                object=resource_to_object(derived, "k8s.checklyhq.com", "v1alpha1"),
            )
        )

        assert len(manager.controllers["ApiCheck"].queue) == 1
        assert len(manager.controllers[INGRESS].queue) == 1

    @pytest.mark.asyncio
    async def test_ingress_event(self, manager):
        """Test ingress events go to the ingress queue."""
        manager.handle_event(WatchEvent(event_type="ADDED", resource_type=INGRESS, name="web", namespace="default"))

        assert len(manager.controllers[INGRESS].queue) == 1
        assert len(manager.controllers["ApiCheck"].queue) == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, manager, store, apis, make_resource):
        """Test workers reconcile in the background once started."""
        store.put(make_resource(ResourceKind.CHECK, "a", {"url": "https://a.example"}))

        await manager.start()
        try:
            for _ in range(50):
                if store.peek(ResourceKind.CHECK, "default", "a").status.external_id:
                    break
                await asyncio.sleep(0.01)
        finally:
            await manager.stop()

        assert store.peek(ResourceKind.CHECK, "default", "a").status.external_id == "chk-1"
