import os

import pytest

from src.config import reset_config
from src.sandbox.admission import AdmissionLimits
from src.sandbox.context import simulated_context_factory
from src.sandbox.runner import PreviewRunner
from src.sandbox.virtual_fs import ResourceMaterializer


@pytest.fixture(autouse=True)
def _clean_config(monkeypatch):
    for name in [n for n in os.environ if n.startswith("PREVIEW_")]:
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def limits():
    return AdmissionLimits()


@pytest.fixture
def materializer():
    return ResourceMaterializer(resource_base="/_preview")


@pytest.fixture
def behaviors():
    """Python stand-ins for bundle scripts, keyed by bundle path."""
    return {}


@pytest.fixture
def runner(materializer, behaviors):
    return PreviewRunner(
        materializer=materializer,
        context_factory=simulated_context_factory(behaviors),
        limits=AdmissionLimits(),
        ready_timeout=1.0,
        message_timeout=0.2,
        storage_policy="reset",
    )
