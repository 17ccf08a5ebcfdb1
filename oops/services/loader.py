from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

import yaml
from pydantic import ValidationError

from oops.constants import AFFECTED_SERVICE_FIELDS, ANALYSIS_FIELD, SCENARIO_DIR_PATTERNS, SCENARIO_SUFFIXES
from oops.errors import ConfigurationError
from oops.schemas import ScenarioSpec

LOGGER = logging.getLogger("oops.loader")


class ScenarioLoadError(Exception):
    """A scenario file exists but cannot be read or parsed."""


def _is_scenario_file(path: Path) -> bool:
    return path.is_file() and path.suffix.lower() in SCENARIO_SUFFIXES


def _walk(directory: Path) -> Iterable[Path]:
    for child in sorted(directory.rglob("*")):
        if _is_scenario_file(child):
            yield child


def discover_scenarios(files: Sequence[str] = (), root: Optional[str] = None) -> List[str]:
    """Resolve explicit files and a root directory into a deduplicated list of absolute paths.

    The root is scanned through the well-known ``<kind>/*/scenarios`` layout; when none of
    those directories exist the root itself is walked. Explicit files that do not exist are
    dropped with a warning. An empty result is a configuration error.
    """
    found: Dict[str, None] = {}
    for raw in files:
        path = Path(raw).expanduser().resolve()
        if not path.is_file():
            LOGGER.warning("Scenario file %s does not exist; skipping", raw)
            continue
        found[str(path)] = None

    if root:
        root_path = Path(root).expanduser().resolve()
        if not root_path.is_dir():
            LOGGER.warning("Scenario directory %s does not exist; skipping", root)
        else:
            directories: List[Path] = []
            for pattern in SCENARIO_DIR_PATTERNS:
                directories.extend(p for p in sorted(root_path.glob(pattern)) if p.is_dir())
            if not directories:
                directories = [root_path]
            for directory in directories:
                for path in _walk(directory):
                    found[str(path.resolve())] = None

    if not found:
        raise ConfigurationError("No scenario files found; provide scenario files or a scenario directory.")
    for path in found:
        LOGGER.info("input: %s", path)
    return list(found)


def load_scenario(path: str) -> ScenarioSpec:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data: Any = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError) as exc:
        raise ScenarioLoadError(f"cannot read scenario {path}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ScenarioLoadError(f"scenario {path} must be a mapping, got {type(data).__name__}")
    try:
        return ScenarioSpec.model_validate(data)
    except ValidationError as exc:
        raise ScenarioLoadError(f"invalid scenario {path}: {exc}") from exc


def parse_tags(tags: Iterable[str]) -> Dict[str, str]:
    """Turn ``key=value`` strings into requirements; malformed entries are ignored."""
    required: Dict[str, str] = {}
    for item in tags:
        key, sep, value = item.partition("=")
        if not sep or not key.strip() or "=" in value:
            LOGGER.warning("Ignoring malformed tag filter %r", item)
            continue
        required[key.strip()] = value.strip()
    return required


def tags_match(declared: Mapping[str, str], tags: Iterable[str]) -> bool:
    required = parse_tags(tags)
    return all(declared.get(key) == value for key, value in required.items())


def filter_by_tags(paths: Sequence[str], tags: Sequence[str]) -> List[str]:
    if not parse_tags(tags):
        return list(paths)
    kept: List[str] = []
    for path in paths:
        try:
            scenario = load_scenario(path)
        except ScenarioLoadError as exc:
            LOGGER.warning("%s", exc)
            continue
        if tags_match(scenario.tags, tags):
            kept.append(path)
        else:
            LOGGER.info("%s is not allowed by tags", path)
    return kept


def _names_from(value: Any) -> List[str]:
    if isinstance(value, str):
        return [item for item in value.replace(",", " ").split() if item]
    if isinstance(value, (list, tuple, set)):
        names: List[str] = []
        for item in value:
            names.extend(_names_from(item))
        return names
    return []


def affected_services(metadata: Optional[Mapping[str, Any]]) -> Set[str]:
    """Collect lower-cased component names named by change metadata.

    Top-level fields and the same fields nested under the analysis sub-map are consulted.
    """
    if not metadata:
        return set()
    sources: List[Mapping[str, Any]] = [metadata]
    analysis = metadata.get(ANALYSIS_FIELD)
    if isinstance(analysis, Mapping):
        sources.append(analysis)
    names: Set[str] = set()
    for source in sources:
        for field_name in AFFECTED_SERVICE_FIELDS:
            for name in _names_from(source.get(field_name)):
                names.add(name.strip().strip("/").lower())
    names.discard("")
    return names


def filter_by_affected_services(paths: Sequence[str], metadata: Optional[Mapping[str, Any]]) -> List[str]:
    names = affected_services(metadata)
    if not names:
        return list(paths)
    kept: List[str] = []
    for path in paths:
        segments = {part.lower() for part in Path(path).parts}
        if segments & names:
            kept.append(path)
    LOGGER.info("Affected services %s kept %s of %s scenario(s)", sorted(names), len(kept), len(paths))
    return kept


def resolve_scenarios(
    files: Sequence[str],
    root: Optional[str],
    tags: Sequence[str],
    metadata: Optional[Mapping[str, Any]] = None,
) -> List[str]:
    paths = discover_scenarios(files, root)
    paths = filter_by_tags(paths, tags)
    return filter_by_affected_services(paths, metadata)
