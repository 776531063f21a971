"""
Unit tests for the feature manager lifecycle.
"""

import asyncio

import pytest

from featurebot.core.commands import CommandRegistry
from featurebot.core.events import EventBus
from featurebot.core.storage import MemoryStore
from featurebot.features.errors import (
    CircularDependencyError,
    DependencyMissingError,
    FeatureLifecycleError,
    FeatureNotFoundError,
    FeatureStateError,
)
from featurebot.features.base import Feature
from featurebot.features.interfaces import FeatureMetadata, FeatureState
from featurebot.features.loader import FeatureLoader
from featurebot.features.manager import FeatureManager
from featurebot.utils.config import FeatureBotSettings
from resources.tests.helpers.features import define_feature


@pytest.fixture
def journal():
    return []


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def settings():
    return FeatureBotSettings(_env_file=None, feature_stop_timeout_seconds=0.2)


@pytest.fixture
def commands():
    return CommandRegistry()


@pytest.fixture
def make_manager(bus, store, settings, commands):
    def _make(*feature_classes, config_settings=None):
        loader = FeatureLoader()
        for feature_class in feature_classes:
            loader.register(feature_class)
        manager = FeatureManager(
            bus,
            store,
            loader=loader,
            settings=config_settings or settings,
            command_router=commands
        )
        manager.discover()
        return manager
    return _make


def capture(bus, event_name):
    events = []

    async def handler(payload):
        events.append(payload)

    bus.subscribe("observer", event_name, handler)
    return events


class TestLoadOrder:
    """Dependency ordering."""

    def test_dependencies_come_first(self, make_manager, journal):
        c = define_feature("gamma", ["beta"], journal)
        a = define_feature("alpha", [], journal)
        b = define_feature("beta", ["alpha"], journal)
        manager = make_manager(c, a, b)

        order = manager.resolve_load_order()

        assert order.index("alpha") < order.index("beta") < order.index("gamma")

    def test_independent_features_keep_discovery_order(self, make_manager):
        manager = make_manager(define_feature("one"), define_feature("two"), define_feature("three"))
        assert manager.resolve_load_order() == ["one", "two", "three"]

    def test_cycle_is_reported(self, make_manager):
        manager = make_manager(define_feature("alpha", ["beta"]), define_feature("beta", ["alpha"]))

        with pytest.raises(CircularDependencyError) as exc_info:
            manager.resolve_load_order()

        assert exc_info.value.cycle == ["alpha", "beta", "alpha"]
        assert "alpha -> beta -> alpha" in str(exc_info.value)

    def test_unknown_dependency_is_not_fatal(self, make_manager):
        manager = make_manager(define_feature("alpha", ["ghost"]))
        assert manager.resolve_load_order() == ["alpha"]

    def test_explicit_descriptor_subset(self, make_manager):
        manager = make_manager(define_feature("alpha"), define_feature("beta", ["alpha"]))
        beta = manager.get_descriptor("beta")

        assert manager.resolve_load_order([beta]) == ["beta"]


class TestLifecycle:
    """load / start / stop transitions."""

    @pytest.mark.asyncio
    async def test_load_start_stop(self, make_manager, bus, journal):
        manager = make_manager(define_feature("alpha", journal=journal))
        started = capture(bus, "feature.started")
        stopped = capture(bus, "feature.stopped")

        assert manager.get_state("alpha") == FeatureState.DISCOVERED
        await manager.load("alpha")
        assert manager.get_state("alpha") == FeatureState.LOADED
        await manager.start("alpha")
        assert manager.get_state("alpha") == FeatureState.STARTED
        assert bus.subscription_count("alpha") == 2
        await manager.stop("alpha")

        assert manager.get_state("alpha") == FeatureState.STOPPED
        assert bus.subscription_count("alpha") == 0
        assert journal == [("alpha", "initialize"), ("alpha", "start"), ("alpha", "stop")]
        assert [event["feature"] for event in started] == ["alpha"]
        assert [event["feature"] for event in stopped] == ["alpha"]

    @pytest.mark.asyncio
    async def test_started_feature_receives_events(self, make_manager, bus):
        manager = make_manager(define_feature("alpha"))
        await manager.load("alpha")
        await manager.start("alpha")

        await bus.emit("alpha.ping", {"n": 1})

        assert manager.get_feature("alpha").received == [{"n": 1}]

    @pytest.mark.asyncio
    async def test_load_failure_marks_failed(self, make_manager, bus):
        manager = make_manager(define_feature("alpha", fail_phase="initialize"))
        errors = capture(bus, "feature.error")

        with pytest.raises(FeatureLifecycleError) as exc_info:
            await manager.load("alpha")

        assert exc_info.value.phase == "load"
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert manager.get_state("alpha") == FeatureState.FAILED
        assert errors[0]["phase"] == "load"

    @pytest.mark.asyncio
    async def test_start_failure_marks_failed_without_subscriptions(self, make_manager, bus):
        manager = make_manager(define_feature("alpha", fail_phase="start"))
        await manager.load("alpha")

        with pytest.raises(FeatureLifecycleError):
            await manager.start("alpha")

        assert manager.get_state("alpha") == FeatureState.FAILED
        assert bus.subscription_count("alpha") == 0

    @pytest.mark.asyncio
    async def test_start_requires_started_dependencies(self, make_manager):
        manager = make_manager(define_feature("alpha"), define_feature("beta", ["alpha", "ghost"]))
        await manager.load("alpha")
        await manager.load("beta")

        with pytest.raises(DependencyMissingError) as exc_info:
            await manager.start("beta")

        assert exc_info.value.missing == ["alpha", "ghost"]
        assert manager.get_state("beta") == FeatureState.LOADED
        assert manager.get_state("alpha") == FeatureState.LOADED

    @pytest.mark.asyncio
    async def test_start_succeeds_once_dependency_started(self, make_manager):
        manager = make_manager(define_feature("alpha"), define_feature("beta", ["alpha"]))
        for name in ("alpha", "beta"):
            await manager.load(name)

        await manager.start("alpha")
        await manager.start("beta")

        assert manager.get_state("beta") == FeatureState.STARTED

    @pytest.mark.asyncio
    async def test_stop_hook_failure_still_unsubscribes(self, make_manager, bus, commands):
        manager = make_manager(define_feature("alpha", fail_phase="stop", commands=("hello",)))
        await manager.load("alpha")
        await manager.start("alpha")
        assert commands.list_commands("alpha") == ["hello"]

        with pytest.raises(FeatureLifecycleError) as exc_info:
            await manager.stop("alpha")

        assert exc_info.value.phase == "stop"
        assert manager.get_state("alpha") == FeatureState.FAILED
        assert bus.subscription_count("alpha") == 0
        assert commands.list_commands("alpha") == []

    @pytest.mark.asyncio
    async def test_hanging_stop_hook_times_out(self, make_manager, bus):
        manager = make_manager(define_feature("alpha", hang_on_stop=True))
        await manager.load("alpha")
        await manager.start("alpha")

        with pytest.raises(FeatureLifecycleError) as exc_info:
            await manager.stop("alpha")

        assert "did not finish" in str(exc_info.value)
        assert manager.get_state("alpha") == FeatureState.FAILED
        assert bus.subscription_count("alpha") == 0

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, make_manager, journal):
        manager = make_manager(define_feature("alpha", journal=journal))
        await manager.load("alpha")
        await manager.start("alpha")
        await manager.stop("alpha")
        await manager.start("alpha")

        assert manager.get_state("alpha") == FeatureState.STARTED
        assert journal.count(("alpha", "start")) == 2

    @pytest.mark.asyncio
    async def test_invalid_transitions(self, make_manager):
        manager = make_manager(define_feature("alpha"))

        with pytest.raises(FeatureStateError):
            await manager.start("alpha")

        await manager.load("alpha")
        with pytest.raises(FeatureStateError):
            await manager.load("alpha")

        with pytest.raises(FeatureNotFoundError):
            await manager.load("ghost")

    @pytest.mark.asyncio
    async def test_stop_of_unstarted_feature_is_noop(self, make_manager, journal):
        manager = make_manager(define_feature("alpha", journal=journal))
        await manager.load("alpha")

        await manager.stop("alpha")

        assert manager.get_state("alpha") == FeatureState.LOADED
        assert ("alpha", "stop") not in journal

    @pytest.mark.asyncio
    async def test_commands_registered_while_started(self, make_manager, commands):
        manager = make_manager(define_feature("alpha", commands=("hello",)))
        await manager.load("alpha")
        await manager.start("alpha")

        assert await commands.dispatch("hello", "world") == "alpha:world"

        await manager.stop("alpha")
        assert commands.get_command("hello") is None


class TestInjectedContext:
    """Context handed to features."""

    @pytest.mark.asyncio
    async def test_settings_are_merged_and_validated(self, make_manager, store, settings):
        schema = {"type": "object", "properties": {"limit": {"type": "integer", "minimum": 1}}}
        feature = define_feature("alpha", settings_schema=schema, default_settings={"limit": 5, "mode": "a"})
        settings.features_config = {"alpha": {"settings": {"mode": "b"}}}
        await store.save("features/alpha", {"limit": 7})
        manager = make_manager(feature)

        instance = await manager.load("alpha")

        assert instance.settings == {"limit": 7, "mode": "b"}
        assert instance.context.logger.name == "featurebot.features.alpha"

    @pytest.mark.asyncio
    async def test_invalid_persisted_settings_fail_load(self, make_manager, store):
        schema = {"type": "object", "properties": {"limit": {"type": "integer", "minimum": 1}}}
        manager = make_manager(define_feature("alpha", settings_schema=schema))
        await store.save("features/alpha", {"limit": 0})

        with pytest.raises(FeatureLifecycleError):
            await manager.load("alpha")

        assert manager.get_state("alpha") == FeatureState.FAILED

    @pytest.mark.asyncio
    async def test_dependency_accessor_limited_to_declared(self, make_manager):
        manager = make_manager(define_feature("alpha"), define_feature("beta", ["alpha"]), define_feature("gamma"))
        for name in ("alpha", "beta", "gamma"):
            await manager.load(name)

        beta = manager.get_feature("beta")

        assert beta.get_dependency("alpha") is manager.get_feature("alpha")
        assert beta.get_dependency("gamma") is None


class TestBulkOperations:
    """start_all / stop_all."""

    @pytest.mark.asyncio
    async def test_start_all_and_stop_all_order(self, make_manager, journal, bus):
        manager = make_manager(
            define_feature("c", ["b"], journal),
            define_feature("a", [], journal),
            define_feature("b", ["a"], journal)
        )

        assert await manager.start_all() == {}
        starts = [name for name, phase in journal if phase == "start"]
        assert starts == ["a", "b", "c"]

        journal.clear()
        assert await manager.stop_all() == {}
        stops = [name for name, phase in journal if phase == "stop"]
        assert stops == ["c", "b", "a"]
        assert all(bus.subscription_count(name) == 0 for name in "abc")

    @pytest.mark.asyncio
    async def test_start_all_is_best_effort(self, make_manager):
        manager = make_manager(
            define_feature("alpha", fail_phase="start"),
            define_feature("beta", ["alpha"]),
            define_feature("gamma")
        )

        errors = await manager.start_all()

        assert set(errors) == {"alpha", "beta"}
        assert isinstance(errors["alpha"], FeatureLifecycleError)
        assert isinstance(errors["beta"], DependencyMissingError)
        assert manager.get_state("gamma") == FeatureState.STARTED
        assert manager.get_state("beta") == FeatureState.LOADED

    @pytest.mark.asyncio
    async def test_start_all_raises_on_cycle(self, make_manager, journal):
        manager = make_manager(define_feature("alpha", ["beta"], journal), define_feature("beta", ["alpha"], journal))

        with pytest.raises(CircularDependencyError):
            await manager.start_all()

        assert journal == []

    @pytest.mark.asyncio
    async def test_disabled_feature_is_loaded_not_started(self, make_manager, settings):
        settings.features_config = {"alpha": {"enabled": False}}
        manager = make_manager(define_feature("alpha"))

        await manager.start_all()

        assert manager.get_state("alpha") == FeatureState.LOADED

    @pytest.mark.asyncio
    async def test_stop_all_continues_after_failure(self, make_manager, journal):
        manager = make_manager(
            define_feature("alpha", journal=journal),
            define_feature("beta", ["alpha"], journal, fail_phase="stop")
        )
        await manager.start_all()

        errors = await manager.stop_all()

        assert list(errors) == ["beta"]
        assert manager.get_state("alpha") == FeatureState.STOPPED


class TestReload:
    """reload semantics."""

    @pytest.mark.asyncio
    async def test_reload_creates_fresh_instance(self, make_manager, journal):
        manager = make_manager(define_feature("alpha", journal=journal))
        await manager.start_all()
        old = manager.get_feature("alpha")

        new = await manager.reload("alpha")

        assert new is not old
        assert manager.get_feature("alpha") is new
        assert manager.get_state("alpha") == FeatureState.STARTED
        assert journal[-3:] == [("alpha", "stop"), ("alpha", "initialize"), ("alpha", "start")]

    @pytest.mark.asyncio
    async def test_reload_does_not_touch_dependents(self, make_manager, journal):
        manager = make_manager(define_feature("alpha", journal=journal), define_feature("beta", ["alpha"], journal))
        await manager.start_all()
        journal.clear()

        await manager.reload("alpha")

        assert all(name == "alpha" for name, _ in journal)
        assert manager.get_state("beta") == FeatureState.STARTED
        assert manager.get_dependents("alpha") == ["beta"]

    @pytest.mark.asyncio
    async def test_failed_reload_leaves_failed(self, make_manager):
        feature = define_feature("alpha")
        manager = make_manager(feature)
        await manager.start_all()
        feature.fail_phase = "initialize"

        with pytest.raises(FeatureLifecycleError):
            await manager.reload("alpha")

        assert manager.get_state("alpha") == FeatureState.FAILED
        assert manager.get_feature("alpha") is None

    @pytest.mark.asyncio
    async def test_reload_recovers_failed_feature(self, make_manager):
        feature = define_feature("alpha", fail_phase="start")
        manager = make_manager(feature)
        await manager.start_all()
        assert manager.get_state("alpha") == FeatureState.FAILED

        feature.fail_phase = None
        await manager.reload("alpha")

        assert manager.get_state("alpha") == FeatureState.STARTED

    @pytest.mark.asyncio
    async def test_reload_over_bus(self, make_manager, bus, journal):
        manager = make_manager(define_feature("alpha", journal=journal))
        manager.attach()
        await manager.start_all()
        journal.clear()

        await bus.emit("feature.reload", {"feature": "alpha"})

        assert journal == [("alpha", "stop"), ("alpha", "initialize"), ("alpha", "start")]
        manager.detach()
        assert bus.subscription_count("feature_manager") == 0

    @pytest.mark.asyncio
    async def test_start_hook_reloading_itself_does_not_hang(self, make_manager, bus):
        class SelfReloadingFeature(Feature):
            metadata = FeatureMetadata(name="self_reloading")

            async def on_start(self):
                await self.emit("feature.reload", {"feature": self.name})

        manager = make_manager(SelfReloadingFeature)
        manager.attach()
        errors = capture(bus, "feature.error")

        assert await asyncio.wait_for(manager.start_all(), timeout=2.0) == {}

        assert manager.get_state("self_reloading") == FeatureState.STARTED
        assert errors == []

    @pytest.mark.asyncio
    async def test_transition_from_inside_own_transition_is_rejected(self, make_manager, bus):
        manager = make_manager(define_feature("alpha"))
        await manager.start_all()
        outcome = []

        async def stop_alpha(payload):
            try:
                await manager.stop("alpha")
            except FeatureStateError as e:
                outcome.append(e)

        bus.subscribe("observer", "feature.stopped", stop_alpha)

        await asyncio.wait_for(manager.stop("alpha"), timeout=2.0)

        assert len(outcome) == 1
        assert manager.get_state("alpha") == FeatureState.STOPPED


class TestFeatureConfig:
    """Persistent enable flags."""

    @pytest.mark.asyncio
    async def test_disable_and_enable_persist(self, make_manager, store):
        manager = make_manager(define_feature("alpha"))
        await manager.start_all()

        assert await manager.disable_feature("alpha") is True
        assert manager.get_state("alpha") == FeatureState.STOPPED
        assert (await store.load("features"))["alpha"]["enabled"] is False
        assert manager.get_feature_config("alpha")["enabled"] is False

        assert await manager.enable_feature("alpha") is True
        assert manager.get_state("alpha") == FeatureState.STARTED
        assert (await store.load("features"))["alpha"]["enabled"] is True

    @pytest.mark.asyncio
    async def test_persisted_disable_is_honoured_by_start_all(self, make_manager, store):
        await store.save("features", {"alpha": {"enabled": False}})
        manager = make_manager(define_feature("alpha"))

        await manager.start_all()

        assert manager.get_state("alpha") == FeatureState.LOADED

    @pytest.mark.asyncio
    async def test_list_features(self, make_manager):
        manager = make_manager(define_feature("alpha"), define_feature("beta", ["alpha"]))
        await manager.start_all()

        features = manager.list_features()

        assert set(features) == {"alpha", "beta"}
        assert features["beta"]["state"] == "started"
        assert features["beta"]["dependencies"] == ["alpha"]
        assert features["alpha"]["status"]["started"] is True
        assert manager.get_feature_names() == ["alpha", "beta"]

    @pytest.mark.asyncio
    async def test_managed_lifecycle(self, make_manager, bus):
        manager = make_manager(define_feature("alpha"))

        async with manager.managed_lifecycle():
            assert manager.get_state("alpha") == FeatureState.STARTED

        assert manager.get_state("alpha") == FeatureState.STOPPED
        assert bus.subscription_count() == 0
