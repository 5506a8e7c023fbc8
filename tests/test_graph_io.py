"""Tests for graph/io.py module."""

import json
from pathlib import Path

import pytest

from bundlesmith.graph.io import GraphLoadError, load_run_document, load_yaml
from bundlesmith.types import Platform

RUN_YAML = """
root: App
packages:
  - package_id: example.com/app
    name: App
    path: app
    targets:
      - name: AppCore
  - package_id: example.com/lib
    name: LibPackage
    path: lib
    targets:
      - name: Lib
build_options:
  platforms: [ios, watchos]
  simulator_supported: true
build_options_matrix:
  Lib:
    platforms: [ios]
"""


class TestLoadYaml:
    """Tests for load_yaml function."""

    def test_empty_file(self, tmp_path: Path) -> None:
        """An empty file loads as an empty mapping."""
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml(path) == {}

    def test_non_mapping_rejected(self, tmp_path: Path) -> None:
        """A top-level list is not a run document."""
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_yaml(path)


class TestLoadRunDocument:
    """Tests for load_run_document function."""

    def test_load_yaml_document(self, tmp_path: Path) -> None:
        """YAML run documents load with options and overrides."""
        path = tmp_path / "run.yaml"
        path.write_text(RUN_YAML)

        doc = load_run_document(path)

        assert doc.root == "App"
        assert doc.build_options.platforms == [Platform.IOS, Platform.WATCHOS]
        assert doc.build_options.simulator_supported is True
        assert doc.build_options_matrix["Lib"].platforms == [Platform.IOS]
        assert doc.build_options_matrix["Lib"].simulator_supported is None

    def test_load_json_document(self, tmp_path: Path) -> None:
        """JSON is chosen by file extension."""
        path = tmp_path / "run.json"
        path.write_text(
            json.dumps(
                {
                    "root": "App",
                    "packages": [
                        {"package_id": "app", "name": "App", "path": "."}
                    ],
                }
            )
        )
        assert load_run_document(path).root == "App"

    def test_missing_file(self, tmp_path: Path) -> None:
        """Missing files raise not_found."""
        with pytest.raises(GraphLoadError) as exc_info:
            load_run_document(tmp_path / "nope.yaml")
        assert exc_info.value.code == "not_found"

    def test_parse_error(self, tmp_path: Path) -> None:
        """Malformed YAML raises parse_error."""
        path = tmp_path / "bad.yaml"
        path.write_text("root: [unclosed\n")
        with pytest.raises(GraphLoadError) as exc_info:
            load_run_document(path)
        assert exc_info.value.code == "parse_error"

    def test_validation_error(self, tmp_path: Path) -> None:
        """Schema violations raise validation_error."""
        path = tmp_path / "invalid.yaml"
        path.write_text(RUN_YAML.replace("platforms: [ios]", "platforms: [amiga]"))
        with pytest.raises(GraphLoadError) as exc_info:
            load_run_document(path)
        assert exc_info.value.code == "validation_error"
