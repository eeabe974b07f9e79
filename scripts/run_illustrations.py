"""
CLI to create a story and illustrate it end-to-end, or to retry an existing one.

Usage:
    python scripts/run_illustrations.py \
        --profile story_request.yaml \
        --photo example_images/child.jpg \
        --dump story_bundle.yaml

    python scripts/run_illustrations.py --retry <story-id>
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from tqdm.auto import tqdm

# Ensure project root is on the Python path when running as a script.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from storybook import Settings, StoryWorkflow  # noqa: E402
from storybook.pipeline import IllustrationRunResult  # noqa: E402


class ProgressTracker:
    """
    Provides user-friendly command-line progress updates for an illustration run.
    """

    def __init__(self) -> None:
        self._page_bar: tqdm | None = None

    def __call__(self, stage: str, payload: Dict[str, Any]) -> None:
        match stage:
            case "illustrations:start":
                total = payload.get("total_pages", 0)
                self._write(f"[1/3] Illustrating {total} pages...")
                self._page_bar = tqdm(total=total, desc="Illustrated pages", unit="page")
            case "illustrations:page_succeeded":
                if self._page_bar is not None:
                    self._page_bar.set_description(f"Page {payload.get('page_number')} done")
                    self._page_bar.update(1)
            case "illustrations:page_failed":
                self._write(
                    f"      Page {payload.get('page_number')} failed ({payload.get('reason')})."
                )
            case "illustrations:retry_round":
                pages = ", ".join(str(number) for number in payload.get("pages", []))
                delay = payload.get("delay", 0.0)
                self._write(
                    f"[2/3] Retry round {payload.get('retry_round')} for pages {pages} "
                    f"in {delay:.0f}s..."
                )
            case "illustrations:finished":
                self.close()
                self._write(f"[3/3] Story finished as {payload.get('status')}.")
                if payload.get("error_message"):
                    self._write(f"      {payload['error_message']}")

    def close(self) -> None:
        if self._page_bar is not None:
            self._page_bar.close()
            self._page_bar = None

    @staticmethod
    def _write(message: str) -> None:
        tqdm.write(message)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create and illustrate a storybook story.")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--profile",
        help="Path to a YAML/JSON story request (user_id, prompt, child_name, ...).",
    )
    source.add_argument(
        "--retry",
        metavar="STORY_ID",
        help="Retry a failed story; only pages without images are regenerated.",
    )
    parser.add_argument(
        "--photo",
        default=None,
        help="Path or URL to the child's photo, analysed into a character sheet.",
    )
    parser.add_argument(
        "--dump",
        default=None,
        help="Optional YAML file receiving the finished story bundle.",
    )
    parser.add_argument(
        "--export",
        action="store_true",
        help="Export the story PDF to object storage when the run completes.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def _load_mapping_file(path: Path) -> Mapping[str, Any]:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, Mapping):
        raise ValueError(f"{path} must contain a mapping of story settings.")
    return data


async def _run(args: argparse.Namespace, workflow: StoryWorkflow) -> IllustrationRunResult:
    if args.retry:
        return await workflow.retry_story(args.retry)

    request = dict(_load_mapping_file(Path(args.profile)))
    if args.photo:
        request["photo"] = args.photo
    themes = request.get("themes") or ()
    if isinstance(themes, str):
        request["themes"] = tuple(part.strip() for part in themes.split(",") if part.strip())
    return await workflow.create_and_illustrate(**request)


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    tracker = ProgressTracker()
    workflow = StoryWorkflow.from_settings(Settings.from_env(), progress_callback=tracker)
    try:
        result = asyncio.run(_run(args, workflow))
    finally:
        tracker.close()

    if args.export and result.status.value == "completed":
        exported = workflow.export_pdf(result.story_id)
        tqdm.write(f"PDF available at {exported.url}")

    if args.dump:
        output = Path(args.dump)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(workflow.get_bundle(result.story_id).to_yaml(), encoding="utf-8")
        tqdm.write(f"Story bundle saved to {output}")

    return 0 if result.status.value == "completed" else 1


if __name__ == "__main__":
    raise SystemExit(main())
