"""Test configuration and fixtures."""

import logging

import pytest

from peel.models import FileEntry, LayerInfo


@pytest.fixture
def app_layers():
    """Base layer with an app and a library; second layer updates the app and
    deletes the library."""
    return [
        {
            "app": None,
            "app/main": b"m" * 100,
            "app/lib/a.so": b"a" * 50,
        },
        {
            "app/main": b"M" * 120,
            "app/lib/.wh.a.so": b"",
        },
    ]


@pytest.fixture
def opaque_layers():
    """Base layer with two data files; second layer resets the directory."""
    return [
        {"data/x": b"x" * 10, "data/y": b"y" * 20},
        {"data/.wh..wh..opq": b"", "data/z": b"z" * 30},
    ]


@pytest.fixture
def make_layer():
    """Build a LayerInfo from (path, size) pairs and whiteout markers."""

    def _make(digest, files=(), whiteouts=(), opaque=()):
        entries = [FileEntry(path=path, size=size) for path, size in files]
        entries += [FileEntry(path=path, is_whiteout=True) for path in whiteouts]
        entries += [
            FileEntry(path=path, is_whiteout=True, is_opaque=True) for path in opaque
        ]
        return LayerInfo(digest=digest, files=tuple(sorted(entries)))

    return _make


@pytest.fixture(autouse=True)
def debug_logging(caplog):
    caplog.set_level(logging.DEBUG, logger="peel")
    yield


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as needing a real container runtime"
    )
    config.addinivalue_line("markers", "unit: mark test as unit test (default)")
