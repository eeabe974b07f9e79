"""
Render a story into a printable PDF.

Usage:
    python scripts/render_story_pdf.py \
        --bundle story_bundle.yaml \
        --output story.pdf

    python scripts/render_story_pdf.py --story-id <uuid> --output story.pdf
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# Ensure project root is on the Python path.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from storybook import Settings, StoryBundle, StorybookPDFBuilder  # noqa: E402
from storybook.pdf_generation import FAST_LIMITS, PAGE_SIZES, STANDARD_LIMITS, ImageResolver  # noqa: E402
from storybook.pipeline import build_storage  # noqa: E402
from storybook.storage import SqlStoryRepository  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Convert a story into a storybook PDF.")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--bundle",
        help="Path to a story bundle YAML/JSON file (output of run_illustrations.py --dump).",
    )
    source.add_argument(
        "--story-id",
        help="Load the story from the configured database instead of a file.",
    )
    parser.add_argument(
        "--output",
        required=True,
        help="Destination PDF file path.",
    )
    parser.add_argument(
        "--page-size",
        choices=sorted(PAGE_SIZES.keys()),
        default="letter",
        help="Page size to render (default: letter).",
    )
    parser.add_argument(
        "--offset",
        type=int,
        default=0,
        help="Index of the first story page to render; the cover is only drawn at 0.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum number of story pages to render (capped at 8 unless --all-pages).",
    )
    parser.add_argument(
        "--all-pages",
        action="store_true",
        help="Render every page instead of stopping at 8.",
    )
    parser.add_argument(
        "--fast",
        action="store_true",
        help="Use short fetch timeouts and a 512KB image ceiling.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = Settings.from_env()
    image_storage = build_storage(settings, settings.image_bucket)

    if args.bundle:
        bundle = StoryBundle.from_file(args.bundle)
    else:
        bundle = SqlStoryRepository.from_url(settings.database_url).load_bundle(args.story_id)

    builder = StorybookPDFBuilder(
        page_size=PAGE_SIZES[args.page_size],
        resolver=ImageResolver(
            limits=FAST_LIMITS if args.fast else STANDARD_LIMITS,
            storage=image_storage,
        ),
        max_content_pages=None if args.all_pages else 8,
    )
    builder.build(bundle.story, bundle.pages, args.output, offset=args.offset, limit=args.limit)

    print(f"Rendered storybook PDF to {args.output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
