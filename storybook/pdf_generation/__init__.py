"""
PDF rendering and export for storybook stories.
"""

from .builder import (
    DEFAULT_LAYOUT,
    IMAGE_PLACEHOLDER,
    PAGE_SIZES,
    PageLayoutConfig,
    StorybookPDFBuilder,
    wrap_text,
)
from .export import ExportResult, StoryExporter
from .images import (
    FAST_LIMITS,
    STANDARD_LIMITS,
    AssemblyLimits,
    ImageResolver,
    ResolvedImage,
    convert_to_png,
    data_url_to_png,
    decode_data_url,
    normalize_image_bytes,
)

__all__ = [
    "DEFAULT_LAYOUT",
    "FAST_LIMITS",
    "IMAGE_PLACEHOLDER",
    "PAGE_SIZES",
    "STANDARD_LIMITS",
    "AssemblyLimits",
    "ExportResult",
    "ImageResolver",
    "PageLayoutConfig",
    "ResolvedImage",
    "StoryExporter",
    "StorybookPDFBuilder",
    "convert_to_png",
    "data_url_to_png",
    "decode_data_url",
    "normalize_image_bytes",
    "wrap_text",
]
