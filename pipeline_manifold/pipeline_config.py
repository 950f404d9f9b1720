"""
Loading and validation of pipeline configuration documents.

A document describes one input source and a tree of stages:

    input: stdin                 # or {bin: ..., args: [...]}
    outputs:                     # `pipes` is accepted as well
      - bin: tee
        args: [/tmp/copy.log]
        pipes:
          - bin: gzip

JSON files are parsed with `json`, everything else with PyYAML.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from pipeline_manifold.config import ConfigurationError, effective_settings as config

log = logging.getLogger(__name__)


@dataclass
class StageConfig:
    """One program in the pipeline and the stages fed by its output."""

    bin: str
    args: List[str] = field(default_factory=list)
    keep_alive: bool = True
    stages: List["StageConfig"] = field(default_factory=list)


@dataclass
class PipelineConfig:
    """
    A parsed pipeline document.

    `input` is None when the supervisor's own standard input is the source.
    """

    input: Optional[StageConfig] = None
    stages: List[StageConfig] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def reads_stdin(self) -> bool:
        return self.input is None


def _parse_args(raw: Any, where: str) -> List[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigurationError(f"{where}: 'args' must be a list, got {type(raw).__name__}")
    return [str(arg) for arg in raw]


def _parse_stage(raw: Any, where: str, nested: bool = True) -> StageConfig:
    """Parses a `{bin, args, keepAlive, pipe|pipes}` mapping into a StageConfig."""
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where}: expected a mapping, got {type(raw).__name__}")

    command = raw.get("bin")
    if not isinstance(command, str) or not command.strip():
        raise ConfigurationError(f"{where}: 'bin' must be a non-empty string")

    keep_alive = raw.get("keepAlive", raw.get("keep_alive", True))
    if not isinstance(keep_alive, bool):
        raise ConfigurationError(f"{where}: 'keepAlive' must be true or false")

    stage = StageConfig(bin=command.strip(), args=_parse_args(raw.get("args"), where), keep_alive=keep_alive)
    if nested:
        stage.stages = _parse_stage_list(raw, where)
    return stage


def _parse_stage_list(raw: Dict[str, Any], where: str, keys=("pipe", "pipes")) -> List[StageConfig]:
    """Collects the downstream stages declared under any of `keys`."""
    stages: List[StageConfig] = []
    for key in keys:
        value = raw.get(key)
        if value is None:
            continue
        entries = value if isinstance(value, list) else [value]
        for index, entry in enumerate(entries):
            stages.append(_parse_stage(entry, f"{where}.{key}[{index}]"))
    return stages


def _parse_input(raw: Any) -> Optional[StageConfig]:
    if raw is None or raw == config.STDIN_INPUT_SENTINEL:
        return None
    if isinstance(raw, str):
        raise ConfigurationError(
            f"input: expected '{config.STDIN_INPUT_SENTINEL}' or a {{bin, args}} mapping, got '{raw}'"
        )
    return _parse_stage(raw, "input", nested=False)


def parse_pipeline_config(document: Any) -> PipelineConfig:
    """
    Builds a PipelineConfig from an already decoded document.

    :param document: The decoded JSON/YAML document.
    :return PipelineConfig: The validated configuration.
    :raises ConfigurationError: If the document is malformed.
    """
    if not isinstance(document, dict):
        raise ConfigurationError("Pipeline configuration must be a mapping at the top level.")

    settings = document.get("settings") or {}
    if not isinstance(settings, dict):
        raise ConfigurationError("'settings' must be a mapping")

    pipeline = PipelineConfig(
        input=_parse_input(document.get("input")),
        stages=_parse_stage_list(document, "config", keys=("outputs", "pipes")),
        settings=settings,
    )
    if not pipeline.stages:
        log.warning("Pipeline configuration declares no output stages.")
    return pipeline


def load_pipeline_config(path: Union[str, Path]) -> PipelineConfig:
    """
    Reads and parses a pipeline configuration file.

    :param path: Path to a `.json`, `.yaml` or `.yml` file.
    :return PipelineConfig: The validated configuration.
    :raises ConfigurationError: If the file cannot be read or parsed.
    """
    config_path = Path(path).expanduser().resolve()
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read '{config_path}': {e}") from e

    try:
        if config_path.suffix.lower() == ".json":
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot parse '{config_path}': {e}") from e

    log.debug(f"Loaded pipeline configuration from {config_path}")
    return parse_pipeline_config(document)
