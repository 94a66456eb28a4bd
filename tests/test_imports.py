import importlib


def test_import_package():
    pkg = importlib.import_module("mopaPy")
    assert hasattr(pkg, "__version__")


def test_public_api_is_exported():
    pkg = importlib.import_module("mopaPy")
    for name in pkg.__all__:
        assert hasattr(pkg, name), name
    assert callable(pkg.train)
    assert callable(pkg.cross_validate)
