"""
Tests for the paths module.

Project root detection and canonical paths.
"""

import pytest

from ems_district import paths
from ems_district.paths import (
    CLUSTERS_DIR,
    CONFIG_DIR,
    DISTRICTS_DIR,
    FIGURES_DIR,
    LOGS_DIR,
    METADATA_DIR,
    OUTPUT_DIRS,
    PARAMS_FILE,
    PROCESSED_DIR,
    PROJECT_ROOT,
    RAW_DIR,
    TABLES_DIR,
    ensure_dirs_exist,
    find_project_root,
)

ALL_PATHS = [
    PROJECT_ROOT, CONFIG_DIR, RAW_DIR, PROCESSED_DIR, DISTRICTS_DIR,
    CLUSTERS_DIR, METADATA_DIR, LOGS_DIR, FIGURES_DIR, TABLES_DIR,
]


class TestProjectRoot:
    """Tests for project root detection."""

    def test_project_root_exists(self):
        """PROJECT_ROOT should be a valid directory."""
        assert PROJECT_ROOT.exists()
        assert PROJECT_ROOT.is_dir()

    def test_project_root_marker_exists(self):
        """The .project-root marker file should exist."""
        assert (PROJECT_ROOT / ".project-root").exists(), "Missing .project-root marker file"

    def test_find_project_root_from_subdir(self):
        """find_project_root should work from the package directory."""
        assert find_project_root(PROJECT_ROOT / "src" / "ems_district") == PROJECT_ROOT

    def test_find_project_root_from_marker(self, tmp_path):
        """A .project-root marker makes a directory the root."""
        (tmp_path / ".project-root").touch()
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_project_root(nested) == tmp_path


class TestCanonicalPaths:
    """Tests for canonical path definitions."""

    def test_processed_subdirectories(self):
        assert DISTRICTS_DIR.parent == PROCESSED_DIR
        assert CLUSTERS_DIR.parent == PROCESSED_DIR
        assert METADATA_DIR.parent == PROCESSED_DIR

    def test_raw_and_processed_under_data(self):
        assert RAW_DIR.parent.name == "data"
        assert PROCESSED_DIR.parent == RAW_DIR.parent

    def test_all_paths_absolute(self):
        """All canonical paths should be absolute and free of '..'."""
        for p in ALL_PATHS:
            assert p.is_absolute(), f"Path is not absolute: {p}"
            assert ".." not in p.parts, f"Path contains '..': {p}"

    def test_output_dirs_cover_every_stage(self):
        for directory in (RAW_DIR, DISTRICTS_DIR, CLUSTERS_DIR, METADATA_DIR, FIGURES_DIR, TABLES_DIR, LOGS_DIR):
            assert directory in OUTPUT_DIRS

    def test_ensure_dirs_exist(self, tmp_path, monkeypatch):
        """Every output directory is created, nested ones included."""
        targets = (tmp_path / "data" / "raw", tmp_path / "reports" / "figures")
        monkeypatch.setattr(paths, "OUTPUT_DIRS", targets)
        ensure_dirs_exist()
        ensure_dirs_exist()
        assert all(t.is_dir() for t in targets)


@pytest.mark.smoke
class TestPathsSmoke:
    """Smoke tests for the project layout."""

    def test_config_present(self):
        assert PARAMS_FILE.exists()
        assert PARAMS_FILE.parent == CONFIG_DIR

    def test_source_tree_present(self):
        assert (PROJECT_ROOT / "src" / "ems_district").is_dir()
        assert (PROJECT_ROOT / "scripts").is_dir()
