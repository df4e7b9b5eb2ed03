"""Top-level pytest configuration for plugin fixture registration.

`pytest_plugins` must be declared in a top-level conftest located at the
rootdir, so shared fixture modules are registered here.
"""

pytest_plugins = [
    "tests.fixtures.upstream_api",
]
