import pytest

from cueline.services.backend.dummy import DummyBackend
from cueline.services.factory import ServiceConfigurationError, resolve_generation_backend


@pytest.mark.parametrize("name", [None, "", "dummy", " Offline "])
def test_dummy_aliases(name):
    assert isinstance(resolve_generation_backend(name), DummyBackend)


def test_unknown_backend_rejected():
    with pytest.raises(ServiceConfigurationError):
        resolve_generation_backend("carrier-pigeon")


def test_openai_backend_resolves_lazily():
    pytest.importorskip("openai")
    from cueline.services.backend.openai_client import OpenAIBackend

    backend = resolve_generation_backend("openai", model="gpt-4o-mini")

    assert isinstance(backend, OpenAIBackend)
