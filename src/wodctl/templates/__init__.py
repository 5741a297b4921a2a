"""Template resolution, variable derivation, and rendering."""
from __future__ import annotations

from .engine import TEMPLATE_SUFFIX, TemplateEngine
from .sources import (
    BundledTemplateSource,
    DirectoryTemplateSource,
    TemplateError,
    TemplateFile,
    TemplateNotFoundError,
    TemplateSource,
    install_bundled_templates,
    resolve_template_source,
)
from .variables import TemplateVariables, build_template_variables, php_major_minor

__all__ = [
    "BundledTemplateSource",
    "DirectoryTemplateSource",
    "TEMPLATE_SUFFIX",
    "TemplateEngine",
    "TemplateError",
    "TemplateFile",
    "TemplateNotFoundError",
    "TemplateSource",
    "TemplateVariables",
    "build_template_variables",
    "install_bundled_templates",
    "php_major_minor",
    "resolve_template_source",
]
