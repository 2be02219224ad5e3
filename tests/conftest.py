"""Shared pytest fixtures for the scmscan test suite."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from scmscan.config import ScannerSettings

if TYPE_CHECKING:
    from pathlib import Path

pytest_plugins = ("respx",)


@pytest.fixture
def settings(tmp_path: Path) -> ScannerSettings:
    """Provide scanner settings with deterministic defaults for tests."""
    return ScannerSettings.model_validate(
        {
            "github_api_url": "https://api.github.com",
            "gitlab_api_url": "https://gitlab.example.com",
            "bitbucket_cloud_api_url": "https://api.bitbucket.org/2.0",
            "per_page": 20,
            "max_attempts": 2,
            "rate_limit_reset_buffer_seconds": 30,
            "store_dir": tmp_path / "store",
            "clone_dir": tmp_path / "clones",
        },
    )
