"""Project file value object shared by the sandbox, backup and restore paths."""

import posixpath
from dataclasses import dataclass
from typing import Iterable, Mapping

PACKAGE_JSON = "package.json"


@dataclass(frozen=True)
class ProjectFile:
    """A single file of a project, addressed relative to the project root.

    Attributes:
        path: Relative POSIX path, never starting with "/"
        content: Text content
    """

    path: str
    content: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalize_relative_path(self.path))

    def absolute_path(self, project_dir: str) -> str:
        """Path of this file inside the sandbox."""
        return posixpath.join(project_dir, self.path)

    @property
    def is_package_manifest(self) -> bool:
        return self.path == PACKAGE_JSON


def normalize_relative_path(path: str) -> str:
    """Strip leading slashes and "./" segments.

    Raises:
        ValueError: If the path is empty or escapes the project root
    """
    cleaned = posixpath.normpath(path.strip().lstrip("/"))
    if cleaned in ("", "."):
        raise ValueError("File path must not be empty")
    if cleaned == ".." or cleaned.startswith("../"):
        raise ValueError(f"File path escapes project root: {path}")
    return cleaned


def files_from_mapping(files: Mapping[str, str | None]) -> list[ProjectFile]:
    """Build ProjectFile objects from a {path: content} mapping.

    Entries whose content is None are dropped.
    """
    return [ProjectFile(path, content) for path, content in files.items() if content is not None]


def files_to_mapping(files: Iterable[ProjectFile]) -> dict[str, str]:
    return {f.path: f.content for f in files}
