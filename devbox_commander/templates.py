"""
Devbox Commander — Container Templates
══════════════════════════════════════
Maps a template name (claude / vscode / both) to its image, default
environment, exposed ports and post-create tooling commands.

Built-in defaults can be overridden by a YAML file (DEVBOX_TEMPLATES_PATH):

    templates:
      vscode:
        image: my-registry/devbox-vscode:1.2
        environment: {EDITOR: code}
        ports: {"8080/tcp": null}
        post_create_commands:
          - code-server --install-extension ms-python.python
"""

import os
import logging
from typing import Optional, List, Dict

import yaml
from pydantic import BaseModel, Field

from . import config
from .models import Template

logger = logging.getLogger(__name__)


class TemplateDef(BaseModel):
    image: str
    environment: Dict[str, str] = Field(default_factory=dict)
    ports: Dict[str, Optional[int]] = Field(default_factory=dict)
    post_create_commands: List[str] = Field(default_factory=list)


def _builtin() -> Dict[str, TemplateDef]:
    return {
        Template.CLAUDE.value: TemplateDef(image=config.IMAGE_MAP["claude"]),
        Template.VSCODE.value: TemplateDef(
            image=config.IMAGE_MAP["vscode"],
            ports={"8080/tcp": None},
        ),
        Template.BOTH.value: TemplateDef(
            image=config.IMAGE_MAP["both"],
            ports={"8080/tcp": None},
        ),
    }


def load_templates(path: Optional[str] = None) -> Dict[str, TemplateDef]:
    """Built-in templates merged with the YAML overrides at `path`, if any."""
    templates = _builtin()
    path = path if path is not None else config.TEMPLATES_PATH
    if not path:
        return templates
    if not os.path.exists(path):
        logger.warning(f"[Templates] {path} not found, using built-in templates")
        return templates

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    for name, raw in (data.get("templates") or {}).items():
        if name not in templates:
            logger.warning(f"[Templates] Ignoring unknown template '{name}'")
            continue
        merged = templates[name].model_dump()
        merged.update(raw or {})
        templates[name] = TemplateDef(**merged)
        logger.info(f"[Templates] Loaded override for '{name}'")
    return templates


def get_template(name: str, templates: Optional[Dict[str, TemplateDef]] = None) -> TemplateDef:
    templates = templates or load_templates()
    key = name.value if isinstance(name, Template) else name
    return templates.get(key) or templates[Template.CLAUDE.value]
