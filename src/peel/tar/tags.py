"""Image reference and repository tag handling."""

from typing import Any, Optional

DEFAULT_REGISTRY = "docker.io"
OCI_REF_ANNOTATION = "org.opencontainers.image.ref.name"
CONTAINERD_NAME_ANNOTATION = "io.containerd.image.name"


def parse_repository_tag(repo_tag: str) -> tuple[str, str]:
    """Parse a "repository:tag" string into repository and tag.

    Args:
        repo_tag: Repository tag string
            - e.g. "nginx:alpine", "localhost:5000/myapp:latest"
            - registry port without tag: "localhost:5000/myapp"

    Returns:
        tuple[str, str]: (repository, tag), tag defaulting to "latest"

    Examples:
        parse_repository_tag("nginx:alpine")
        # ("nginx", "alpine")

        parse_repository_tag("localhost:5000/myapp")
        # ("localhost:5000/myapp", "latest")
    """
    if "@" in repo_tag:
        repository, _ = repo_tag.split("@", 1)
        return parse_repository_tag(repository)[0], "latest"

    if ":" in repo_tag:
        # Split only on the last ':' to handle registry URLs like localhost:5000/repo:tag
        repository, tag = repo_tag.rsplit(":", 1)
        if "/" in tag:
            # The colon belonged to a registry port
            return repo_tag, "latest"
        if tag:
            return repository, tag
        return repository, "latest"

    return repo_tag, "latest"


def reference_candidates(reference: str) -> list[str]:
    """Spellings under which a runtime may have stored a reference.

    Docker keeps familiar names ("nginx:latest"); Podman and containerd keep
    fully qualified ones ("docker.io/library/nginx:latest", "localhost/app:1").
    """
    if "@" in reference:
        repository, digest = reference.split("@", 1)
        suffix = f"@{digest}"
    else:
        repository, tag = parse_repository_tag(reference)
        suffix = f":{tag}"

    names = [repository]
    first = repository.split("/", 1)[0]
    has_registry = "/" in repository and ("." in first or ":" in first or first == "localhost")
    if has_registry:
        if repository.startswith(f"{DEFAULT_REGISTRY}/library/"):
            names.append(repository[len(f"{DEFAULT_REGISTRY}/library/"):])
        elif repository.startswith(f"{DEFAULT_REGISTRY}/"):
            names.append(repository[len(f"{DEFAULT_REGISTRY}/"):])
    else:
        if "/" not in repository:
            names.append(f"{DEFAULT_REGISTRY}/library/{repository}")
        names.append(f"{DEFAULT_REGISTRY}/{repository}")
        names.append(f"localhost/{repository}")

    candidates: list[str] = []
    for name in names:
        candidate = f"{name}{suffix}"
        if candidate not in candidates:
            candidates.append(candidate)
    return candidates


def repo_tags_from_manifest(manifest_entry: dict[str, Any]) -> list[str]:
    """RepoTags of a docker-save manifest entry (empty if absent or malformed)."""
    repo_tags = manifest_entry.get("RepoTags") or []
    if not isinstance(repo_tags, list):
        return []
    return [tag for tag in repo_tags if isinstance(tag, str)]


def repo_tags_from_repositories(repositories: dict[str, Any]) -> list[str]:
    """Tags from a legacy "repositories" file: {"repo": {"tag": "layer_id"}}."""
    if not isinstance(repositories, dict):
        return []
    repo_tags = []
    for repo_name, tag_dict in repositories.items():
        if isinstance(tag_dict, dict):
            for tag_name in tag_dict:
                repo_tags.append(f"{repo_name}:{tag_name}")
    return repo_tags


def ref_from_annotations(annotations: Optional[dict[str, Any]]) -> Optional[str]:
    """Image reference recorded in OCI index annotations, if any."""
    if not annotations:
        return None
    full_name = annotations.get(CONTAINERD_NAME_ANNOTATION)
    if isinstance(full_name, str) and full_name:
        return full_name
    ref_name = annotations.get(OCI_REF_ANNOTATION)
    if isinstance(ref_name, str) and ref_name:
        return ref_name
    return None
