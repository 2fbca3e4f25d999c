"""
Shared fixtures for repobuild tests.
"""

import os

import pytest

from repobuild.domain.descriptor import RepositoryDescriptor
from repobuild.services.resolver import BaselineResolver


def make_descriptor(name, dependencies=(), ref="main", exclusions=()):
    return RepositoryDescriptor.create(
        name=name,
        url=f"https://example.com/{name}.git",
        ref=ref,
        dependencies=dependencies,
        platform_exclusions=exclusions,
    )


def make_graph(edges, roots=None, exclusions=None):
    """
    Resolve a graph from ``{name: [dependencies]}``.

    Roots default to the first key.
    """
    exclusions = exclusions or {}
    descriptors = {
        name: make_descriptor(name, deps, exclusions=exclusions.get(name, ()))
        for name, deps in edges.items()
    }
    root_names = roots or [next(iter(edges))]
    return BaselineResolver(descriptors.get).resolve([descriptors[r] for r in root_names])


@pytest.fixture
def descriptor_factory():
    return make_descriptor


@pytest.fixture
def graph_factory():
    return make_graph


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep tests away from the user's ~/.repobuild and REPOBUILD_* variables."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    for key in list(os.environ):
        if key.startswith("REPOBUILD_"):
            monkeypatch.delenv(key, raising=False)
    return home
