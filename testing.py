"""Test utilities."""

from __future__ import annotations

import pathlib
import sys
import warnings


# AsyncMock session managers leave unawaited coroutines behind in sync tests
warnings.filterwarnings("ignore", message="coroutine.*was never awaited")


def write_files(root: pathlib.Path, files: dict[str, bytes]) -> pathlib.Path:
    """Create a media tree under root from {relative path: contents}."""
    for relative, data in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    return root


def run_tests(test_file: str) -> None:
    """Run pytest on a single test module.

    Usage:
        if __name__ == "__main__":
            from testing import run_tests
            run_tests(__file__)
    """
    import pytest

    sys.exit(pytest.main([test_file, "-v", "-s", "-W", "ignore::pytest.PytestAssertRewriteWarning", *sys.argv[1:]]))
