"""
Configuration Loader (``review_config.loader``).

Responsibility
--------------
Loads the YAML files of one configuration set and parses them into typed
``review_config.schema`` dataclass instances.  Runtime callers use
``review_config.get_active_config()`` instead of calling this directly.

Layout of a configuration set directory::

    <set>/engine.yaml
    <set>/templates/<template>.yaml

Invariants enforced
-------------------
* Missing required keys and wrongly typed values raise ``ConfigLoadError``
  naming the file and the field; there are no silent defaults for
  required fields.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the raw
  documents for configuration identity and change detection.

Failure modes
-------------
* Missing directory or file -> ``FileNotFoundError`` propagates.
* Malformed YAML -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from review_config.schema import (
    EngineSettingsDef,
    RankRewardDef,
    ReviewConfigSet,
    StageDef,
    TemplateDef,
    TransitionDef,
)


class ConfigLoadError(ValueError):
    """A configuration document is missing a field or has a bad value."""

    def __init__(self, source: str, field: str, reason: str):
        self.source = source
        self.field = field
        self.reason = reason
        super().__init__(f"{source}: {field}: {reason}")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file; an empty file yields an empty dict."""
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(str(path), "<root>", "document must be a mapping")
    return data


def _require(data: dict[str, Any], key: str, source: str, kind: type | tuple = object) -> Any:
    if key not in data:
        raise ConfigLoadError(source, key, "required field is missing")
    value = data[key]
    if kind is int and isinstance(value, bool):
        raise ConfigLoadError(source, key, f"expected int, got {value!r}")
    if not isinstance(value, kind):
        expected = kind.__name__ if isinstance(kind, type) else "/".join(k.__name__ for k in kind)
        raise ConfigLoadError(source, key, f"expected {expected}, got {value!r}")
    return value


def _optional_seconds(data: dict[str, Any], key: str, source: str) -> float | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigLoadError(source, key, f"expected a positive number of seconds, got {value!r}")
    return float(value)


def parse_engine_settings(data: dict[str, Any], source: str = "engine.yaml") -> EngineSettingsDef:
    engine = _require(data, "engine", source, dict)
    return EngineSettingsDef(
        platform_account_owner=str(_require(engine, "platform_account_owner", source)),
        treasury_account_owner=str(_require(engine, "treasury_account_owner", source)),
        commitment_window_hours=int(engine.get("commitment_window_hours", 72)),
        author_award_points=int(engine.get("author_award_points", 2)),
        reviewer_award_points=int(engine.get("reviewer_award_points", 1)),
        lock_timeout_seconds=_optional_seconds(engine, "lock_timeout_seconds", source),
    )


def parse_stage(data: dict[str, Any], source: str) -> StageDef:
    return StageDef(
        key=_require(data, "key", source, str),
        stage_type=_require(data, "type", source, str),
        display_name=data.get("display_name", ""),
        deadline_days=data.get("deadline_days"),
        round_number=data.get("round_number"),
        is_initial=bool(data.get("initial", False)),
        is_terminal=bool(data.get("terminal", False)),
    )


def parse_transition(data: dict[str, Any], source: str) -> TransitionDef:
    return TransitionDef(
        from_stage=_require(data, "from", source, str),
        to_stage=_require(data, "to", source, str),
        condition=_require(data, "condition", source, dict),
        is_automatic=bool(data.get("automatic", True)),
        transition_order=int(data.get("order", 0)),
    )


def parse_rank_reward(data: dict[str, Any], source: str) -> RankRewardDef:
    return RankRewardDef(
        rank=_require(data, "rank", source, int),
        tokens=_require(data, "tokens", source, int),
    )


def parse_template(data: dict[str, Any], source: str = "<template>") -> TemplateDef:
    template = _require(data, "template", source, dict)
    return TemplateDef(
        name=_require(template, "name", source, str),
        version=_require(template, "version", source, int),
        activity_kind=_require(template, "activity_kind", source, str),
        description=template.get("description"),
        reviewer_count=_require(template, "reviewer_count", source, int),
        total_tokens=_require(template, "total_tokens", source, int),
        insurance_fraction=str(template.get("insurance_fraction", "0")),
        stages=tuple(
            parse_stage(s, f"{source}: stages[{i}]")
            for i, s in enumerate(_require(template, "stages", source, list))
        ),
        transitions=tuple(
            parse_transition(t, f"{source}: transitions[{i}]")
            for i, t in enumerate(_require(template, "transitions", source, list))
        ),
        rank_rewards=tuple(
            parse_rank_reward(r, f"{source}: rank_rewards[{i}]")
            for i, r in enumerate(template.get("rank_rewards", []))
        ),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def load_config_set(set_dir: Path) -> ReviewConfigSet:
    """Load and parse every document of one configuration set."""
    if not set_dir.is_dir():
        raise FileNotFoundError(f"Configuration set directory not found: {set_dir}")

    engine_file = set_dir / "engine.yaml"
    engine_doc = load_yaml_file(engine_file)
    template_docs = {
        path.name: load_yaml_file(path)
        for path in sorted((set_dir / "templates").glob("*.yaml"))
    }

    return ReviewConfigSet(
        config_id=str(engine_doc.get("config_id", set_dir.name)),
        engine=parse_engine_settings(engine_doc, str(engine_file)),
        templates=tuple(parse_template(doc, name) for name, doc in template_docs.items()),
        checksum=compute_checksum({"engine": engine_doc, "templates": template_docs}),
    )
