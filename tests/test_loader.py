from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

import pytest
import yaml

from oops.errors import ConfigurationError
from oops.services.loader import (
    ScenarioLoadError,
    affected_services,
    discover_scenarios,
    filter_by_affected_services,
    filter_by_tags,
    load_scenario,
    resolve_scenarios,
)


def _write_scenario(path: Path, tags: Optional[Dict[str, str]] = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    document = {"maintainers": ["qa@example.com"], "tags": tags or {}, "run": []}
    path.write_text(yaml.safe_dump(document), encoding="utf-8")
    return path


@pytest.fixture
def scenario_tree(tmp_path: Path) -> Path:
    _write_scenario(tmp_path / "services" / "foo" / "scenarios" / "a.yaml", {"env": "dev", "team": "core"})
    _write_scenario(tmp_path / "cmd" / "bar" / "scenarios" / "b.yaml", {"env": "prod"})
    _write_scenario(tmp_path / "pkg" / "baz" / "scenarios" / "nested" / "c.yml", {"env": "dev"})
    (tmp_path / "services" / "foo" / "scenarios" / "notes.txt").write_text("ignored", encoding="utf-8")
    _write_scenario(tmp_path / "docs" / "scenarios" / "outside.yaml")
    return tmp_path


@pytest.mark.unit
def test_discovery_walks_known_layouts_and_deduplicates(scenario_tree: Path) -> None:
    explicit = [
        str(scenario_tree / "services" / "foo" / "scenarios" / "a.yaml"),
        str(scenario_tree / "cmd" / "bar" / "scenarios" / "b.yaml"),
    ]
    found = discover_scenarios(explicit, str(scenario_tree))

    assert len(found) == len(set(found)) == 3
    names = sorted(Path(path).name for path in found)
    assert names == ["a.yaml", "b.yaml", "c.yml"]
    assert all(Path(path).is_absolute() for path in found)


@pytest.mark.unit
def test_discovery_walks_root_when_no_known_layout(tmp_path: Path) -> None:
    _write_scenario(tmp_path / "one.yaml")
    _write_scenario(tmp_path / "deeper" / "two.yaml")

    found = discover_scenarios([], str(tmp_path))

    assert sorted(Path(path).name for path in found) == ["one.yaml", "two.yaml"]


@pytest.mark.unit
def test_missing_explicit_files_are_dropped(tmp_path: Path) -> None:
    real = _write_scenario(tmp_path / "real.yaml")

    found = discover_scenarios([str(real), str(tmp_path / "missing.yaml")])

    assert found == [str(real.resolve())]


@pytest.mark.unit
def test_empty_scenario_set_is_a_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        discover_scenarios([str(tmp_path / "missing.yaml")], str(tmp_path / "nowhere"))


@pytest.mark.unit
def test_tag_filter_requires_every_pair(scenario_tree: Path) -> None:
    paths = discover_scenarios([], str(scenario_tree))

    dev = filter_by_tags(paths, ["env=dev"])
    dev_core = filter_by_tags(paths, ["env=dev", "team=core"])

    assert sorted(Path(p).name for p in dev) == ["a.yaml", "c.yml"]
    assert [Path(p).name for p in dev_core] == ["a.yaml"]
    assert filter_by_tags(paths, []) == paths


@pytest.mark.unit
def test_tag_filter_is_idempotent(scenario_tree: Path) -> None:
    paths = discover_scenarios([], str(scenario_tree))
    tags = ["env=dev"]

    once = filter_by_tags(paths, tags)

    assert filter_by_tags(once, tags) == once


@pytest.mark.unit
def test_affected_services_are_collected_and_lowercased() -> None:
    metadata = {
        "affected_services": ["Foo", "bar "],
        "services": "baz,qux",
        "test_analysis": {"components": ["Quux"], "score": 3},
    }

    assert affected_services(metadata) == {"foo", "bar", "baz", "qux", "quux"}
    assert affected_services({"pr_number": "12"}) == set()
    assert affected_services(None) == set()


@pytest.mark.unit
def test_affected_filter_matches_full_path_segments(tmp_path: Path) -> None:
    paths = [
        str(tmp_path / "services" / "foo" / "scenarios" / "a.yaml"),
        str(tmp_path / "services" / "foobar" / "scenarios" / "b.yaml"),
        str(tmp_path / "cmd" / "bar" / "scenarios" / "c.yaml"),
    ]

    kept = filter_by_affected_services(paths, {"affected_services": ["foo"]})

    assert kept == [paths[0]]
    assert filter_by_affected_services(paths, {"branch": "main"}) == paths


@pytest.mark.unit
def test_resolve_combines_both_filters(scenario_tree: Path) -> None:
    resolved = resolve_scenarios([], str(scenario_tree), ["env=dev"], {"services": ["baz"]})

    assert [Path(p).name for p in resolved] == ["c.yml"]


@pytest.mark.unit
def test_load_scenario_coerces_yaml_scalars(tmp_path: Path) -> None:
    path = tmp_path / "typed.yaml"
    path.write_text(
        "tags:\n  version: 2\nenv:\n  RETRIES: 3\nrun:\n"
        "  - http:\n      method: get\n      url: http://localhost/x\n      headers:\n        X-Count: 1\n",
        encoding="utf-8",
    )

    scenario = load_scenario(str(path))

    assert scenario.tags == {"version": "2"}
    assert scenario.env == {"RETRIES": "3"}
    assert scenario.run[0].http.method == "GET"
    assert scenario.run[0].http.headers == {"X-Count": "1"}


@pytest.mark.unit
def test_load_scenario_rejects_non_mapping(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- one\n- two\n", encoding="utf-8")

    with pytest.raises(ScenarioLoadError):
        load_scenario(str(path))
