"""Identifier placeholder rendering for files inside the image root.

Templates reference partitions by ``__<NAME>_UUID__`` (e.g. ``__ROOT_UUID__``).
Rendering replaces every known placeholder and refuses to produce output
that still contains a ``__NAME__`` token.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from collections.abc import Mapping, Sequence
from pathlib import Path

from netboot_imagegen.errors import UnresolvedPlaceholderError

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"__([A-Z][A-Z0-9_]*)__")

# (template path, output path), both relative to the image root
DEFAULT_TEMPLATES: tuple[tuple[str, str], ...] = (
    ("etc/grub.d/40_custom", "etc/grub.d/40_custom"),
    ("etc/fstab.template", "etc/fstab"),
)


def placeholder_for(partition_name: str) -> str:
    """Return the UUID placeholder token for a partition name."""
    return f"__{partition_name}_UUID__"


def build_placeholders(uuids: Mapping[str, str]) -> dict[str, str]:
    """Map partition UUIDs to their placeholder tokens.

    Args:
        uuids: Partition name -> filesystem UUID.

    Returns:
        Placeholder token -> value.
    """
    return {placeholder_for(name): uuid for name, uuid in uuids.items()}


def find_placeholders(text: str) -> list[str]:
    """Return the distinct placeholder tokens present in ``text``."""
    return sorted({m.group(0) for m in PLACEHOLDER_PATTERN.finditer(text)})


def render_text(
    text: str, values: Mapping[str, str], source: str = "<template>"
) -> str:
    """Substitute placeholders in ``text``.

    Args:
        text: Template text.
        values: Placeholder token -> replacement.
        source: Name used in error messages.

    Returns:
        Rendered text.

    Raises:
        UnresolvedPlaceholderError: If any placeholder token remains.
    """

    def _replace(match: re.Match[str]) -> str:
        return values.get(match.group(0), match.group(0))

    rendered = PLACEHOLDER_PATTERN.sub(_replace, text)
    leftover = find_placeholders(rendered)
    if leftover:
        raise UnresolvedPlaceholderError(source, leftover)
    return rendered


def _write_atomic(dest: Path, content: str, mode_from: Path | None = None) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        if mode_from is not None:
            shutil.copymode(mode_from, tmp_path)
        os.replace(tmp_path, dest)
    finally:
        tmp_path.unlink(missing_ok=True)


def render_file(template: Path, output: Path, values: Mapping[str, str]) -> None:
    """Render one template file to ``output``, keeping its permissions.

    Raises:
        UnresolvedPlaceholderError: If any placeholder token remains.
    """
    text = template.read_text(encoding="utf-8")
    rendered = render_text(text, values, source=str(template))
    _write_atomic(output, rendered, mode_from=template)
    logger.info("Rendered %s -> %s", template, output)


def render_templates(
    root: Path,
    values: Mapping[str, str],
    templates: Sequence[tuple[str, str]] = DEFAULT_TEMPLATES,
) -> list[Path]:
    """Render every template present under an image root.

    Templates that do not exist are skipped with a warning. All templates
    are checked before any output is written, so a failure leaves every
    file untouched.

    Args:
        root: Mounted image root.
        values: Placeholder token -> value.
        templates: (template, output) pairs relative to ``root``.

    Returns:
        Paths of the rendered outputs.

    Raises:
        UnresolvedPlaceholderError: If any template keeps a placeholder.
    """
    pending: list[tuple[Path, Path, str]] = []
    for template_rel, output_rel in templates:
        template = root / template_rel
        if not template.is_file():
            logger.warning("Template not found, skipping: %s", template)
            continue
        rendered = render_text(
            template.read_text(encoding="utf-8"), values, source=template_rel
        )
        pending.append((template, root / output_rel, rendered))

    outputs: list[Path] = []
    for template, output, rendered in pending:
        _write_atomic(output, rendered, mode_from=template)
        logger.info("Rendered %s -> %s", template, output)
        outputs.append(output)
    return outputs


__all__ = [
    "DEFAULT_TEMPLATES",
    "PLACEHOLDER_PATTERN",
    "build_placeholders",
    "find_placeholders",
    "placeholder_for",
    "render_file",
    "render_templates",
    "render_text",
]
