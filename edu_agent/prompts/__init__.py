"""YAML prompt templates for the LLM-backed parts of a turn.

Each ``<name>.yaml`` in this directory is a mapping of section name to a
``str.format`` template. Sections used here:

- ``lead_in``: ``system`` + ``user`` (vars: user_reply, assistant_reply, preview)
- ``open_ended``: ``system`` + ``greeting`` (var: assistant_name)

Usage::

    tpl = load_prompt("open_ended")
    tpl.system(assistant_name="Sanjay")
    tpl.render("greeting", assistant_name="Sanjay")
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

import yaml

_PROMPTS_DIR = Path(__file__).resolve().parent


class _KeepMissing(dict):
    # 未提供的变量保持 {name} 原样，不抛 KeyError
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    sections: Dict[str, str]

    def render(self, section: str, **variables: object) -> str:
        """Empty string for a section the template does not define."""
        text = self.sections.get(section, "")
        return text.format_map(_KeepMissing(variables)) if text else ""

    def system(self, **variables: object) -> str:
        return self.render("system", **variables)

    def user(self, **variables: object) -> str:
        return self.render("user", **variables)


@functools.lru_cache(maxsize=None)
def load_prompt(name: str) -> PromptTemplate:
    """Load and cache ``<name>.yaml``; every section must be a string."""
    path = _PROMPTS_DIR / f"{name}.yaml"
    if not path.is_file():
        raise FileNotFoundError(f"Prompt template not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Prompt template must be a YAML mapping: {path}")
    bad = [k for k, v in data.items() if not isinstance(v, str)]
    if bad:
        raise ValueError(f"Prompt template {name!r} has non-text sections: {', '.join(map(str, bad))}")
    return PromptTemplate(name=name, sections={str(k): v for k, v in data.items()})
