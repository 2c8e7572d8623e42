"""Task definitions loaded from a YAML file."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Union

import yaml
from pydantic import ValidationError

from crawler.models import TaskDefinition

LOGGER = logging.getLogger(__name__)


def load_definitions(path: Union[str, Path]) -> List[TaskDefinition]:
    """Read task definitions from ``path``.

    The file holds either a list of definitions or a mapping with a
    ``tasks`` list. A missing file yields no definitions.

    Raises
    ------
    ValueError
        If the file is not valid YAML or an entry fails validation
    """
    path = Path(path)
    if not path.exists():
        LOGGER.warning("Definitions file %s not found; starting with no tasks", path)
        return []

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or []
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    entries = data.get("tasks", []) if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ValueError(f"{path}: expected a list of task definitions")

    definitions: List[TaskDefinition] = []
    seen = set()
    for index, entry in enumerate(entries):
        try:
            definition = TaskDefinition.model_validate(entry)
        except ValidationError as exc:
            raise ValueError(f"{path}: task #{index} is invalid: {exc}") from exc
        if definition.id in seen:
            raise ValueError(f"{path}: duplicate task id {definition.id!r}")
        seen.add(definition.id)
        definitions.append(definition)

    LOGGER.info("Loaded %d task definition(s) from %s", len(definitions), path)
    return definitions
