# test_imports.py
import importlib

import pytest

MODULES = [
    "media_guard.config.loader",
    "media_guard.core.fingerprint",
    "media_guard.core.cache",
    "media_guard.core.uploads",
    "media_guard.core.executor",
    "media_guard.core.pricing",
    "media_guard.core.limits",
    "media_guard.core.ledger",
    "media_guard.storage.models",
    "media_guard.storage.repository",
    "media_guard.sdk",
    "media_guard.cli.main",
]


@pytest.mark.parametrize("name", MODULES)
def test_module_imports(name):
    assert importlib.import_module(name) is not None


def test_sdk_exports():
    from media_guard.sdk import FalQueueClient, GenerationRequest, GuardedGenerator

    assert FalQueueClient and GenerationRequest and GuardedGenerator
