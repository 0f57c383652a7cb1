"""
Kickstart rendering.

Templates carry ``{{NAME}}`` placeholders. Substitution is a single pass over
the template text: replacement values are inserted literally and never
re-scanned, so a value that itself looks like a placeholder, or contains
characters such as ``&``, ``/`` or ``\\``, cannot change which placeholder
is matched.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

from .exceptions import ContentShapeError, ValidationError
from .logging import logger
from .models import DistributionProfile

PLACEHOLDERS = (
    "HOSTNAME",
    "USERNAME",
    "USER_PASSWORD_HASH",
    "ROOT_PASSWORD_HASH",
    "TIMEZONE",
)
PLACEHOLDER_PATTERN = re.compile(r"\{\{(" + "|".join(PLACEHOLDERS) + r")\}\}")


@dataclass(frozen=True)
class RenderVariables:
    """Values substituted into a kickstart template."""

    hostname: str
    username: str
    user_password_hash: str
    root_password_hash: str
    timezone: str

    def as_placeholders(self) -> Dict[str, str]:
        return {
            "HOSTNAME": self.hostname,
            "USERNAME": self.username,
            "USER_PASSWORD_HASH": self.user_password_hash,
            "ROOT_PASSWORD_HASH": self.root_password_hash,
            "TIMEZONE": self.timezone,
        }


def kickstart_filename(hostname: str) -> str:
    return f"ks_{hostname}.cfg"


class ConfigRenderer:
    """Produces per-VM kickstart files from distribution templates."""

    def check_template(self, template_path: Path) -> str:
        """
        Load a template and verify it carries every placeholder.

        Raises:
            ContentShapeError: If the template is missing, is a shell script,
                or lacks a placeholder
        """
        if not template_path.is_file():
            raise ContentShapeError(
                "kickstart template not found", str(template_path), ["a readable file"]
            )

        text = template_path.read_text()
        first_line = text.splitlines()[0] if text else ""
        if re.search(r"cat.*EOF", first_line):
            raise ContentShapeError(
                "template contains shell code", str(template_path)
            )

        missing = [
            "{{" + name + "}}" for name in PLACEHOLDERS if "{{" + name + "}}" not in text
        ]
        if missing:
            raise ContentShapeError(
                "template is missing required placeholders", str(template_path), missing
            )
        return text

    def substitute(self, text: str, variables: RenderVariables) -> str:
        values = variables.as_placeholders()
        for key, value in values.items():
            if "\n" in value or "\r" in value:
                raise ValidationError("value cannot contain line breaks", key.lower())
        return PLACEHOLDER_PATTERN.sub(lambda m: values[m.group(1)], text)

    def render(
        self,
        profile: DistributionProfile,
        variables: RenderVariables,
        output_dir: Path,
    ) -> Path:
        """
        Render the distribution's template for one VM.

        Args:
            profile: Distribution whose template is used
            variables: Values for the five placeholders
            output_dir: Directory the delivery endpoint serves

        Returns:
            Path: The rendered kickstart file; the caller decides when to delete it
        """
        text = self.check_template(profile.template_path)
        rendered = self.substitute(text, variables)

        output_dir.mkdir(parents=True, exist_ok=True)
        output_path = output_dir / kickstart_filename(variables.hostname)
        tmp_path = output_path.with_name(output_path.name + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(rendered)
        tmp_path.replace(output_path)

        logger.info(
            f"Kickstart file generated: {output_path}",
            vm_name=variables.hostname,
            distribution=profile.distribution.value,
        )
        return output_path
