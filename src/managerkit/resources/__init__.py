"""Packaged resources for managerkit."""

from __future__ import annotations

import copy
import json
from functools import lru_cache
from importlib import resources
from typing import Any, Dict

import yaml

__all__ = ["load_default_config", "load_project_types", "load_schema"]


@lru_cache(maxsize=None)
def _yaml_resource(name: str) -> Dict[str, Any]:
    raw = (resources.files(__name__) / name).read_text("utf-8")
    return yaml.safe_load(raw) or {}


def load_default_config() -> Dict[str, Any]:
    """Return a fresh copy of the default platform configuration."""

    return copy.deepcopy(_yaml_resource("default_config.yaml"))


def load_project_types() -> Dict[str, Any]:
    return copy.deepcopy(_yaml_resource("project_types.yaml"))


@lru_cache(maxsize=None)
def load_schema(name: str) -> Dict[str, Any]:
    resource = resources.files(__name__) / name
    with resource.open("r", encoding="utf-8") as handle:
        return json.load(handle)
