"""Test that all modules can be imported without circular import errors."""

import importlib

import pytest

MODULES = [
    "batchmigrate",
    "batchmigrate.audit",
    "batchmigrate.batch_processor",
    "batchmigrate.duplicates",
    "batchmigrate.exceptions",
    "batchmigrate.governor",
    "batchmigrate.mappings",
    "batchmigrate.metrics",
    "batchmigrate.models",
    "batchmigrate.observability",
    "batchmigrate.orchestrator",
    "batchmigrate.progress",
    "batchmigrate.protocols",
    "batchmigrate.registry",
    "batchmigrate.rollback",
    "batchmigrate.stores",
    "batchmigrate.stores.in_memory",
    "batchmigrate.stores.sql",
]


@pytest.mark.parametrize("module", MODULES)
def test_module_imports(module):
    """Every public module imports cleanly on its own."""
    importlib.import_module(module)


def test_top_level_exports_resolve():
    """Every name in batchmigrate.__all__ is importable from the package."""
    import batchmigrate

    missing = [name for name in batchmigrate.__all__ if not hasattr(batchmigrate, name)]
    assert missing == []


def test_top_level_import_matches_module_import():
    """Top-level re-exports are the module objects themselves."""
    from batchmigrate import MigrationOrchestrator
    from batchmigrate.orchestrator import MigrationOrchestrator as direct

    assert MigrationOrchestrator is direct


def test_version():
    """The package exposes a version string."""
    import batchmigrate

    assert isinstance(batchmigrate.__version__, str)
    assert batchmigrate.__version__
