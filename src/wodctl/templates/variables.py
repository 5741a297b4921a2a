"""Derive the variables templates are rendered with."""
from __future__ import annotations

from dataclasses import asdict, dataclass

from packaging.version import InvalidVersion, Version

from ..config import CreateConfig


@dataclass(frozen=True, slots=True)
class TemplateVariables:
    """Version fields plus the feature flags derived from the PHP version.

    The flags decide which image build steps a template emits. They are pure
    functions of ``php_version`` and are recomputed for every render.
    """

    wordpress_version: str
    php_version: str
    mysql_version: str
    wordpress_tag: str
    wordpress_custom_image_tag: str
    php_gd_legacy: bool
    php_mcrypt_available: bool
    php_avif_supported: bool

    def as_context(self) -> dict[str, object]:
        """Return the mapping handed to the template renderer."""
        return asdict(self)


def php_major_minor(php_version: str) -> tuple[int, int]:
    """Return the ``(major, minor)`` pair of *php_version*.

    Components that cannot be parsed count as ``0``.
    """
    try:
        release = Version(php_version.strip()).release
    except InvalidVersion:
        release = tuple(_leading_int(part) for part in php_version.strip().split(".")[:2])
    major = release[0] if len(release) > 0 else 0
    minor = release[1] if len(release) > 1 else 0
    return major, minor


def build_template_variables(config: CreateConfig) -> TemplateVariables:
    """Return the :class:`TemplateVariables` for *config*."""
    major, minor = php_major_minor(config.php_version)
    return TemplateVariables(
        wordpress_version=config.wordpress_version,
        php_version=config.php_version,
        mysql_version=config.mysql_version,
        wordpress_tag=config.wordpress_tag,
        wordpress_custom_image_tag=config.wordpress_custom_image_tag,
        php_gd_legacy=major < 7 or (major == 7 and minor < 4),
        php_mcrypt_available=major < 7 or (major == 7 and minor < 2),
        php_avif_supported=major > 8 or (major == 8 and minor >= 1),
    )


def _leading_int(text: str) -> int:
    digits = ""
    for char in text:
        if not char.isdigit():
            break
        digits += char
    return int(digits) if digits else 0


__all__ = ["TemplateVariables", "build_template_variables", "php_major_minor"]
