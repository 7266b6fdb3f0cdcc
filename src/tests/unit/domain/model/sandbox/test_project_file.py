"""Tests for project file paths and the env hash."""

import pytest

from src.domain.model.sandbox.dev_server import compute_env_hash
from src.domain.model.sandbox.project_file import (
    ProjectFile,
    files_from_mapping,
    files_to_mapping,
    normalize_relative_path,
)


class TestNormalizeRelativePath:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("app/page.tsx", "app/page.tsx"),
            ("/app/page.tsx", "app/page.tsx"),
            ("./app//page.tsx", "app/page.tsx"),
            ("app/../package.json", "package.json"),
        ],
    )
    def test_normalizes(self, raw, expected) -> None:
        assert normalize_relative_path(raw) == expected

    @pytest.mark.parametrize("raw", ["", "/", ".", "../etc/passwd", "app/../../x"])
    def test_rejects(self, raw) -> None:
        with pytest.raises(ValueError):
            normalize_relative_path(raw)


class TestProjectFile:
    def test_absolute_path(self) -> None:
        f = ProjectFile("/src/index.ts", "x")
        assert f.path == "src/index.ts"
        assert f.absolute_path("/home/user/app") == "/home/user/app/src/index.ts"

    def test_package_manifest(self) -> None:
        assert ProjectFile("package.json", "{}").is_package_manifest
        assert not ProjectFile("web/package.json", "{}").is_package_manifest

    def test_mapping_helpers(self) -> None:
        files = files_from_mapping({"a.ts": "1", "b.ts": None})
        assert files == [ProjectFile("a.ts", "1")]
        assert files_to_mapping(files) == {"a.ts": "1"}


class TestEnvHash:
    def test_key_order_does_not_matter(self) -> None:
        assert compute_env_hash({"A": "1", "B": "2"}) == compute_env_hash({"B": "2", "A": "1"})

    def test_value_change_changes_hash(self) -> None:
        assert compute_env_hash({"A": "1"}) != compute_env_hash({"A": "2"})
