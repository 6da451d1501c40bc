"""
Lab configuration loading.

A lab is described by a YAML mapping whose keys are the LabSpec fields:

    project: my-project
    instance_name: lab1
    zone: us-central1-a
    ssh_public_key_file: keys/id_rsa.pub
    ssh_private_key_file: keys/id_rsa
    ssh_username: eve
    scripts_dir: scripts
    timings:
      reboot_settle: 90

Relative paths are resolved against the directory holding the file, so a
lab directory can be moved around as a unit.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from .errors import ConfigError
from .models import LabSpec

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "evelab.yaml"

_PATH_FIELDS = ("ssh_public_key_file", "ssh_private_key_file", "scripts_dir")


def _resolve_paths(raw: Dict[str, Any], base_dir: Path) -> Dict[str, Any]:
    resolved = dict(raw)
    for key in _PATH_FIELDS:
        value = resolved.get(key)
        if value is None:
            continue
        path = Path(str(value)).expanduser()
        if not path.is_absolute():
            path = base_dir / path
        resolved[key] = path
    resolved.setdefault("scripts_dir", base_dir)
    return resolved


def parse_lab_spec(
    raw: Any,
    base_dir: Optional[Path] = None,
    instance_name: Optional[str] = None,
) -> LabSpec:
    """Validate an already-parsed mapping into a LabSpec.

    Args:
        raw: Mapping of LabSpec fields.
        base_dir: Directory relative paths are resolved against.
        instance_name: Overrides the mapping's instance_name when given.

    Raises:
        ConfigError: If the mapping is not valid.
    """
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a YAML mapping, got {type(raw).__name__}")

    data = _resolve_paths(raw, (base_dir or Path.cwd()).resolve())
    if instance_name:
        data["instance_name"] = instance_name

    try:
        return LabSpec(**data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigError(f"Invalid lab configuration: {problems}") from exc


def load_lab_spec(path: Path, instance_name: Optional[str] = None) -> LabSpec:
    """Read and validate a lab YAML file.

    Args:
        path: Path to the YAML file.
        instance_name: Overrides the file's instance_name when given.

    Returns:
        Validated LabSpec.

    Raises:
        ConfigError: If the file is missing, unreadable, not YAML, or
            fails validation.
    """
    path = Path(path).expanduser()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read lab config {path}: {exc}") from exc

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Lab config {path} is not valid YAML: {exc}") from exc

    spec = parse_lab_spec(raw, base_dir=path.parent, instance_name=instance_name)
    logger.debug("Loaded lab %s from %s", spec.instance_name, path)
    return spec


def check_lab_files(spec: LabSpec) -> None:
    """Verify the key files and bootstrap scripts exist locally.

    Raises:
        ConfigError: Naming every missing file.
    """
    missing = [
        str(p)
        for p in (
            spec.ssh_public_key_file,
            spec.ssh_private_key_file,
            *(spec.scripts_dir / name for name in spec.scripts),
        )
        if not Path(p).is_file()
    ]
    if missing:
        raise ConfigError(f"Missing lab files: {', '.join(missing)}")
