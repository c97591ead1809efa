"""
minectl Bootstrap Templates
===========================

Renders the first-boot payload injected as instance user-data or
startup-script metadata. Two formats exist: a plain bash script for
backends that run a startup script, and a cloud-init document for
backends that hand user-data to cloud-init.

Uses Jinja2 with StrictUndefined: a field missing from the context is
a rendering error, never an empty string in the payload.
"""

import logging
import re
import shlex
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Union

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError as JinjaTemplateError

from .errors import TemplateError

logger = logging.getLogger(__name__)

# Template directory
TEMPLATE_DIR = Path(__file__).parent / "templates"

# Script the bootstrap payload installs and the remote update runs.
UPDATE_SCRIPT_PATH = "/usr/local/bin/minectl-update"
SERVICE_NAME = "minecraft.service"

# JVM heap sizes as accepted by -Xms/-Xmx, e.g. 2G or 1536M.
JAVA_MEMORY_PATTERN = re.compile(r"\d+[KkMmGg]?")


class TemplateFormat(Enum):
    """Bootstrap payload formats."""
    BASH = "bash"
    CLOUD_CONFIG = "cloud-config"

    @property
    def template_name(self) -> str:
        return {
            TemplateFormat.BASH: "bash.sh.j2",
            TemplateFormat.CLOUD_CONFIG: "cloud-config.yaml.j2",
        }[self]


class TemplateRenderer:
    """Render bootstrap payloads for a ServerSpec."""

    def __init__(self, mount: str = "sdb", template_dir: Path = TEMPLATE_DIR):
        """
        Args:
            mount: Block device name of the attached game-data volume
            template_dir: Directory holding the *.j2 templates
        """
        self.mount = mount
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
        self.env.filters["shquote"] = lambda value: shlex.quote(str(value))

    def context(self, spec) -> Dict[str, Any]:
        """
        Template variables for spec.

        Values from spec.extra that end up outside shell quoting (the
        systemd unit and the header comment) are validated here.

        Raises:
            TemplateError: java_memory or port is malformed
        """
        extra = dict(spec.extra)
        java_memory = str(extra.get("java_memory", "2G"))
        if not JAVA_MEMORY_PATTERN.fullmatch(java_memory):
            raise TemplateError(f"Invalid java_memory {java_memory!r} for {spec.name}")
        try:
            port = int(extra.get("port", 25565 if spec.edition != "bedrock" else 19132))
        except (TypeError, ValueError):
            raise TemplateError(f"Invalid port {extra['port']!r} for {spec.name}") from None
        return {
            "name": spec.name,
            "edition": spec.edition,
            "region": spec.region,
            "size": spec.size,
            "volume_size": spec.volume_size,
            "mount": self.mount,
            "version": extra.get("version", "latest"),
            "java_memory": java_memory,
            "port": port,
            "extra": extra,
            "update_script": UPDATE_SCRIPT_PATH,
            "service": SERVICE_NAME,
        }

    def render(self, spec, fmt: Union[TemplateFormat, str]) -> str:
        """
        Render the bootstrap payload for spec in the requested format.

        Args:
            spec: ServerSpec to render
            fmt: TemplateFormat or its string value ("bash", "cloud-config")

        Returns:
            Bootstrap payload as a string

        Raises:
            TemplateError: Unknown format or template failure
        """
        try:
            fmt = TemplateFormat(fmt)
        except ValueError:
            raise TemplateError(f"Unknown template format: {fmt!r}") from None

        try:
            template = self.env.get_template(fmt.template_name)
            payload = template.render(**self.context(spec))
        except JinjaTemplateError as e:
            raise TemplateError(f"Failed to render {fmt.value} template for {spec.name}: {e}") from e

        logger.debug(f"Rendered {fmt.value} bootstrap for {spec.name} ({len(payload)} bytes)")
        return payload
