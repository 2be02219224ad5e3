"""Tests for repository URL parsing."""

import pytest

from scmscan.models import Platform, ToolType
from scmscan.urls import (
    bitbucket_api_base,
    detect_tool_type,
    gitlab_api_base,
    parse_repository_url,
    relativize,
)


def test_parse_github_url() -> None:
    """GitHub URLs resolve owner and repository, dropping the .git suffix."""
    info = parse_repository_url("https://github.com/octo/widgets.git", ToolType.GITHUB)

    assert info.platform is Platform.GITHUB
    assert (info.owner, info.name, info.full_name) == ("octo", "widgets", "octo/widgets")
    assert info.is_cloud


def test_parse_gitlab_url_with_nested_groups() -> None:
    """Self-hosted GitLab keeps the full group path as namespace."""
    info = parse_repository_url("https://git.example.com/team/platform/api/-/tree/main", ToolType.GITLAB)

    assert info.platform is Platform.GITLAB
    assert info.namespace == "team/platform"
    assert info.name == "api"
    assert info.full_name == "team/platform/api"
    assert not info.is_cloud


@pytest.mark.parametrize(
    "url",
    [
        "https://bitbucket.example.com/scm/PROJ/repo.git",
        "https://bitbucket.example.com/projects/PROJ/repos/repo/browse",
    ],
)
def test_parse_bitbucket_server_urls(url: str) -> None:
    """Both Bitbucket Server URL shapes yield the project key and slug."""
    info = parse_repository_url(url, ToolType.BITBUCKET)

    assert info.platform is Platform.BITBUCKET_SERVER
    assert (info.owner, info.name) == ("PROJ", "repo")


def test_parse_bitbucket_cloud_url() -> None:
    """bitbucket.org URLs map to the Cloud variant."""
    info = parse_repository_url("https://bitbucket.org/workspace/repo", ToolType.BITBUCKET)

    assert info.platform is Platform.BITBUCKET_CLOUD
    assert (info.owner, info.name) == ("workspace", "repo")


def test_parse_falls_back_to_repository_name() -> None:
    """Unrecognized paths use the owner/name display name."""
    info = parse_repository_url("https://github.com/", ToolType.GITHUB, "octo/widgets")

    assert (info.owner, info.name) == ("octo", "widgets")


def test_parse_rejects_unusable_url() -> None:
    """Without a usable path or display name parsing fails."""
    with pytest.raises(ValueError, match="Cannot determine"):
        parse_repository_url("https://github.com/", ToolType.GITHUB)


def test_api_bases() -> None:
    """API bases derive from the repository host."""
    assert gitlab_api_base("https://user@git.example.com:8443/team/api.git") == "https://git.example.com:8443"
    assert (
        bitbucket_api_base("https://bitbucket.org/ws/repo", "https://api.bitbucket.org/2.0")
        == "https://api.bitbucket.org/2.0"
    )
    assert (
        bitbucket_api_base("https://code.example.com/bitbucket/scm/PROJ/repo.git", "https://api.bitbucket.org/2.0")
        == "https://code.example.com/bitbucket/rest/api/1.0"
    )


def test_relativize_strips_base_path() -> None:
    """Absolute next links are cut back to a path under the API base."""
    next_url = "https://api.bitbucket.org/2.0/repositories/ws/repo/commits?page=abc"

    assert relativize(next_url, "https://api.bitbucket.org/2.0") == "/repositories/ws/repo/commits?page=abc"
    assert relativize("https://elsewhere.example.com/x", "https://api.bitbucket.org/2.0") == (
        "https://elsewhere.example.com/x"
    )


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://github.com/a/b", ToolType.GITHUB),
        ("https://gitlab.internal/a/b", ToolType.GITLAB),
        ("https://bitbucket.org/a/b", ToolType.BITBUCKET),
        ("https://dev.azure.com/org/proj/_git/repo", ToolType.AZURE),
        ("https://org.visualstudio.com/proj/_git/repo", ToolType.AZURE),
        ("https://example.com/a/b", None),
    ],
)
def test_detect_tool_type(url: str, expected: ToolType | None) -> None:
    """Tool type detection uses well-known URL substrings."""
    assert detect_tool_type(url) is expected
