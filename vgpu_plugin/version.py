"""Version information of the plugin build."""

VERSION = "unknown"
GIT_COMMIT = ""


def get_version_parts() -> list[str]:
    """Return the version components."""
    parts = [VERSION]
    if GIT_COMMIT:
        parts.append(f"commit: {GIT_COMMIT}")
    return parts


def get_version_string(*args: str) -> str:
    """Return the version components and any extra lines joined by newlines."""
    return "\n".join([*get_version_parts(), *args])