"""
Runner Pool - Boot Document Renderer

Renders the cloud-config served at /cloud-init/{token}/user-data from an
external template. Only ${runner_name} and ${jit_config} are substituted;
every other $NAME (shell variables inside embedded scripts, apt source
variables) passes through untouched.
"""

from __future__ import annotations

import logging
from pathlib import Path
from string import Template

from core.errors import ConfigurationError

logger = logging.getLogger("runner_pool.cloud_init")

PLACEHOLDERS = ("runner_name", "jit_config")

DEFAULT_TEMPLATE = Path(__file__).resolve().parent / "templates" / "user-data.yaml"


def template_identifiers(template: Template) -> set[str]:
    """Names referenced as $name or ${name} in `template`."""
    names = set()
    for match in template.pattern.finditer(template.template):
        name = match.group("named") or match.group("braced")
        if name:
            names.add(name)
    return names


class BootDocumentRenderer:

    def __init__(self, template: str):
        self._template = Template(template)
        missing = [p for p in PLACEHOLDERS if p not in template_identifiers(self._template)]
        if missing:
            raise ConfigurationError([
                f"user-data template is missing placeholder ${{{name}}}" for name in missing
            ])

    @classmethod
    def from_file(cls, path: str | Path = "") -> BootDocumentRenderer:
        """
        Load the template once at startup; an empty `path` loads the bundled one.

        Raises ConfigurationError.
        """
        path = path or DEFAULT_TEMPLATE
        try:
            text = Path(path).read_text()
        except OSError as e:
            raise ConfigurationError([f"cannot read user-data template {path}: {e}"]) from e
        logger.debug("Loaded user-data template: %s", path)
        return cls(text)

    def render(self, runner_name: str, jit_config: str) -> str:
        return self._template.safe_substitute(runner_name=runner_name, jit_config=jit_config)
