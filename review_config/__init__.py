"""
review_config -- single public entrypoint for review engine configuration.

Responsibility:
    Provides the only way to obtain configuration at runtime through
    ``get_active_config()``.  Returns a validated ``ReviewConfigSet``; the
    bridges in ``review_config.bridges`` turn it into ``EngineOptions`` and
    ``TemplateSpec`` objects for the kernel.

Architecture position:
    Configuration -- YAML-driven, validated at load time.  Sits above
    ``review_kernel``.  The kernel must never import from ``review_config``.

Invariants enforced:
    - Every template in the set passes the kernel's structural validation
      before the set is returned.
    - Deterministic loading: the same YAML always yields the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the requested configuration set is missing.
    - ``ConfigLoadError`` -- a document lacks a required field.
    - ``ValueError`` -- template validation failures, listed one per line.

Audit relevance:
    Every successful call emits a ``review_config_loaded`` log entry with
    the config_id, checksum and template count.
"""

from __future__ import annotations

import logging
from pathlib import Path

from review_config.bridges import template_specs, to_engine_options
from review_config.loader import ConfigLoadError, load_config_set
from review_config.schema import ReviewConfigSet
from review_kernel.domain.template_graph import validate_template

_logger = logging.getLogger("review_kernel.config")

# Default configuration sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"
DEFAULT_SET = "default"


def get_active_config(
    config_set: str = DEFAULT_SET,
    config_dir: Path | None = None,
) -> ReviewConfigSet:
    """Load, validate and return one configuration set.

    Args:
        config_set: Name of the set directory under ``config_dir``.
        config_dir: Override path to the configuration sets directory.
            Defaults to review_config/sets/.

    Raises:
        FileNotFoundError: If the configuration set does not exist.
        ConfigLoadError: If a document is missing a required field.
        ValueError: If any template fails structural validation.
    """
    sets_dir = config_dir or _DEFAULT_CONFIG_DIR
    config = load_config_set(sets_dir / config_set)

    # Engine settings must bridge cleanly too (owner ids are UUIDs)
    to_engine_options(config.engine)

    errors: list[str] = []
    names = [t.name for t in config.templates]
    for name in sorted({n for n in names if names.count(n) > 1}):
        errors.append(f"{name}: template name appears more than once")
    for spec in template_specs(config):
        errors.extend(f"{spec.name}: {issue}" for issue in validate_template(spec))
    if errors:
        raise ValueError(
            "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        )

    _logger.info(
        "review_config_loaded",
        extra={
            "config_set_id": config.config_id,
            "checksum": config.checksum,
            "template_count": len(config.templates),
        },
    )
    return config


__all__ = ["DEFAULT_SET", "ConfigLoadError", "ReviewConfigSet", "get_active_config"]
