import threading
import time

import pytest

from chat.core.errors import ModelUnavailable
from chat.model_selector import ModelSelector, build_gemini_factory
from config.settings import Settings
from conftest import FakeFactory, ScriptedModel


def test_resolve_picks_first_healthy_candidate():
    factory = FakeFactory({
        "fast": ScriptedModel("fast", probe_error=RuntimeError("429 quota exceeded")),
        "pro": ScriptedModel("pro"),
        "legacy": ScriptedModel("legacy"),
    })
    selector = ModelSelector(["fast", "pro", "legacy"], factory)

    handle = selector.resolve()

    assert handle.name == "pro"
    assert factory.built == ["fast", "pro"]
    assert selector.current_name == "pro"


def test_resolve_is_cached_until_invalidated():
    factory = FakeFactory({"fast": ScriptedModel("fast")})
    selector = ModelSelector(["fast"], factory)

    first = selector.resolve()
    second = selector.resolve()

    assert first is second
    assert factory.models["fast"].probes == 1


def test_invalidate_reprobes_from_the_top():
    flaky = ScriptedModel("fast")
    factory = FakeFactory({"fast": flaky, "pro": ScriptedModel("pro")})
    selector = ModelSelector(["fast", "pro"], factory)
    assert selector.resolve().name == "fast"

    flaky.probe_error = RuntimeError("model overloaded")
    selector.invalidate()
    assert selector.current_name is None
    assert selector.resolve().name == "pro"

    flaky.probe_error = None
    selector.invalidate()
    assert selector.resolve().name == "fast"
    assert factory.built == ["fast", "fast", "pro", "fast"]


def test_all_candidates_failing_raises_and_leaves_cache_empty():
    factory = FakeFactory({})
    selector = ModelSelector(["a", "b"], factory)

    with pytest.raises(ModelUnavailable) as info:
        selector.resolve()

    assert "a:" in info.value.error and "b:" in info.value.error
    assert selector.current_name is None

    # A later call probes again rather than remembering the failure.
    factory.models["b"] = ScriptedModel("b")
    assert selector.resolve().name == "b"


def test_concurrent_first_resolve_probes_once():
    slow = ScriptedModel("fast")
    original = slow.invoke

    def slow_invoke(input, *args, **kwargs):
        time.sleep(0.05)
        return original(input, *args, **kwargs)

    slow.invoke = slow_invoke
    selector = ModelSelector(["fast"], FakeFactory({"fast": slow}))

    results = []
    threads = [threading.Thread(target=lambda: results.append(selector.resolve())) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert slow.probes == 1
    assert len({id(h) for h in results}) == 1


def test_selector_needs_candidates():
    with pytest.raises(ValueError):
        ModelSelector([], FakeFactory({}))


def test_gemini_factory_rejects_missing_key():
    settings = Settings()
    settings.gemini_api_key = None
    factory = build_gemini_factory(settings)
    with pytest.raises(RuntimeError, match="not configured"):
        factory("gemini-1.5-flash")


def test_gemini_factory_rejects_malformed_key():
    settings = Settings()
    settings.gemini_api_key = "sk-not-a-google-key"
    with pytest.raises(RuntimeError, match="AIza"):
        build_gemini_factory(settings)("gemini-1.5-flash")


def test_bad_key_surfaces_as_model_unavailable():
    settings = Settings()
    settings.gemini_api_key = ""
    selector = ModelSelector(["gemini-1.5-flash"], build_gemini_factory(settings))
    with pytest.raises(ModelUnavailable) as info:
        selector.resolve()
    assert "GEMINI_API_KEY" in info.value.error
