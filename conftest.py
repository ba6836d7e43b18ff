"""
Pytest configuration for the Y86-64 test suite.

    python -m pytest                 # everything
    python -m pytest -m scenario     # end-to-end program scenarios only
    python -m pytest -m "not cli"    # skip the command-line front end
"""


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "scenario: end-to-end programs run from assembly to halt")
    config.addinivalue_line("markers",
        "cli: tests that drive the command-line front end")
