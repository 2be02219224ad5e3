"""Repository URL parsing and API base derivation."""

from __future__ import annotations

from urllib.parse import urlsplit

from .models import Platform, RepoInfo, ToolType

_BITBUCKET_CLOUD_HOST = "bitbucket.org"
_GITHUB_HOST = "github.com"


def _strip_git_suffix(value: str) -> str:
    return value[:-4] if value.endswith(".git") else value


def _split_path(url: str) -> tuple[str, list[str]]:
    parts = urlsplit(url.strip())
    if not parts.scheme or not parts.netloc:
        msg = f"Repository URL must be absolute: {url!r}"
        raise ValueError(msg)
    host = parts.hostname or ""
    segments = [segment for segment in parts.path.split("/") if segment]
    if segments:
        segments[-1] = _strip_git_suffix(segments[-1])
    return host.lower(), segments


def detect_tool_type(url: str) -> ToolType | None:
    """Guess the hosting tool from well-known URL substrings."""
    lowered = url.lower()
    if "github.com" in lowered:
        return ToolType.GITHUB
    if "gitlab" in lowered:
        return ToolType.GITLAB
    if "bitbucket" in lowered:
        return ToolType.BITBUCKET
    if "dev.azure.com" in lowered or "visualstudio.com" in lowered:
        return ToolType.AZURE
    return None


def resolve_platform(tool_type: ToolType, url: str) -> Platform:
    """Map a tool type to the concrete platform API variant for a URL."""
    if tool_type is ToolType.BITBUCKET:
        host, _ = _split_path(url)
        if host == _BITBUCKET_CLOUD_HOST or host.endswith(f".{_BITBUCKET_CLOUD_HOST}"):
            return Platform.BITBUCKET_CLOUD
        return Platform.BITBUCKET_SERVER
    return Platform(tool_type.value)


def parse_repository_url(
    url: str,
    tool_type: ToolType,
    repository_name: str | None = None,
) -> RepoInfo:
    """Derive owner, name and namespace for a repository URL.

    Falls back to ``repository_name`` (``owner/name``) when the path does not
    have a recognizable shape.
    """
    platform = resolve_platform(tool_type, url)
    host, segments = _split_path(url)
    owner: str | None = None
    name: str | None = None
    namespace: str | None = None

    if platform is Platform.BITBUCKET_SERVER:
        if "scm" in segments:
            index = segments.index("scm")
            if len(segments) >= index + 3:
                owner, name = segments[index + 1], segments[index + 2]
        elif "projects" in segments and "repos" in segments:
            project_index = segments.index("projects")
            repos_index = segments.index("repos")
            if repos_index == project_index + 2 and len(segments) > repos_index + 1:
                owner, name = segments[project_index + 1], segments[repos_index + 1]
        namespace = owner
    elif platform is Platform.GITLAB:
        if "-" in segments:
            segments = segments[: segments.index("-")]
        if len(segments) >= 2:
            owner, name = segments[0], segments[-1]
            namespace = "/".join(segments[:-1])
    elif platform is Platform.AZURE:
        if "_git" in segments:
            index = segments.index("_git")
            if index >= 1 and len(segments) > index + 1:
                owner, name = segments[0], segments[index + 1]
                namespace = "/".join(segments[:index])
    elif len(segments) >= 2:
        owner, name = segments[0], segments[1]
        namespace = owner

    if owner is None or name is None:
        if repository_name and "/" in repository_name:
            owner, _, name = repository_name.rpartition("/")
            namespace = owner
        else:
            msg = f"Cannot determine owner and repository from {url!r}"
            raise ValueError(msg)

    is_cloud = host in {_GITHUB_HOST, _BITBUCKET_CLOUD_HOST, "gitlab.com", "dev.azure.com"}
    return RepoInfo(
        platform=platform,
        owner=owner,
        name=name,
        namespace=namespace or owner,
        original_url=url,
        is_cloud=is_cloud,
    )


def gitlab_api_base(url: str) -> str:
    """Return ``scheme://host[:port]`` of a GitLab repository URL."""
    parts = urlsplit(url.strip())
    if not parts.scheme or not parts.netloc:
        msg = f"Repository URL must be absolute: {url!r}"
        raise ValueError(msg)
    netloc = parts.netloc.rpartition("@")[2]
    return f"{parts.scheme}://{netloc}"


def bitbucket_api_base(url: str, cloud_api_url: str) -> str:
    """Return the REST base for Bitbucket Cloud or a Bitbucket Server host."""
    parts = urlsplit(url.strip())
    netloc = parts.netloc.rpartition("@")[2]
    host = (parts.hostname or "").lower()
    if host == _BITBUCKET_CLOUD_HOST or host.endswith(f".{_BITBUCKET_CLOUD_HOST}"):
        return cloud_api_url.rstrip("/")
    prefix = ""
    segments = [segment for segment in parts.path.split("/") if segment]
    for marker in ("scm", "projects"):
        if marker in segments:
            context = segments[: segments.index(marker)]
            prefix = "/" + "/".join(context) if context else ""
            break
    return f"{parts.scheme}://{netloc}{prefix}/rest/api/1.0"


def relativize(next_url: str, base_url: str) -> str:
    """Strip the API base from an absolute next-page URL.

    Returns a path plus query that can be reissued against ``base_url``.
    URLs on a different host are returned unchanged.
    """
    target = urlsplit(next_url)
    if not target.scheme:
        return next_url
    base = urlsplit(base_url)
    if target.netloc.lower() != base.netloc.lower():
        return next_url
    base_path = base.path.rstrip("/")
    path = target.path
    if base_path and path.startswith(base_path):
        path = path[len(base_path) :] or "/"
    return f"{path}?{target.query}" if target.query else path


def azure_api_base(url: str) -> str:
    """Return the ``scheme://host/<org>/<project>`` prefix of an Azure Repos URL.

    Covers ``dev.azure.com``, ``*.visualstudio.com`` and Azure DevOps Server
    collections; everything before the ``_git`` segment is kept.
    """
    parts = urlsplit(url.strip())
    segments = [segment for segment in parts.path.split("/") if segment]
    if not parts.scheme or not parts.netloc or "_git" not in segments:
        msg = f"Not an Azure Repos URL: {url!r}"
        raise ValueError(msg)
    netloc = parts.netloc.rpartition("@")[2]
    prefix = "/".join(segments[: segments.index("_git")])
    return f"{parts.scheme}://{netloc}/{prefix}" if prefix else f"{parts.scheme}://{netloc}"
