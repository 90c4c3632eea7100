"""
main.py — command-line entry point.

  python main.py detect  <image-url-or-file> [--provider google|openai]
  python main.py search  --query "coffee machine" [--image URL --box x,y,w,h --dims WxH]
  python main.py history [--limit N]

Results are printed as JSON on stdout; logs go to stderr and DATA_DIR/search.log.
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import config
from geometry import BoundingBox, CoordinateSpace, ImageDimensions

logger = logging.getLogger(__name__)


def _setup_logging(data_dir: str, verbose: bool) -> None:
    # Log file lives in the same data/ directory as the SQLite cache so a
    # single volume mount (./data:/app/data) captures both.
    path = Path(data_dir)
    path.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[
            logging.StreamHandler(sys.stderr),
            logging.FileHandler(str(path / "search.log"), encoding="utf-8"),
        ],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


def _parse_box(raw: str) -> BoundingBox:
    parts = [p.strip() for p in raw.split(",")]
    if len(parts) != 4:
        raise argparse.ArgumentTypeError(f"--box must be x,y,width,height, got {raw!r}")
    try:
        x, y, w, h = (float(p) for p in parts)
    except ValueError:
        raise argparse.ArgumentTypeError(f"--box values must be numbers, got {raw!r}")
    return BoundingBox(x, y, w, h)


def _parse_dims(raw: str) -> ImageDimensions:
    try:
        w, h = (int(p) for p in raw.lower().split("x"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"--dims must be WIDTHxHEIGHT, got {raw!r}")
    return ImageDimensions(w, h)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="object-search", description=__doc__.split("\n\n")[0])
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p_detect = sub.add_parser("detect", help="locate objects in an image")
    p_detect.add_argument("image", help="public image URL or a local file path")
    p_detect.add_argument("--provider", help="google | openai (default: DETECTION_PROVIDER)")
    p_detect.add_argument("--threshold", type=float, help="minimum object confidence")
    p_detect.add_argument("--max-objects", type=int)
    p_detect.add_argument("--refresh", action="store_true", help="bypass the cache")

    p_search = sub.add_parser("search", help="find products for an object or a query")
    p_search.add_argument("--query", help="keyword / detected label")
    p_search.add_argument("--image", help="public image URL")
    p_search.add_argument("--box", type=_parse_box, help="object box x,y,width,height")
    p_search.add_argument("--dims", type=_parse_dims, help="original image size WIDTHxHEIGHT")
    p_search.add_argument(
        "--space",
        choices=[s.value for s in CoordinateSpace],
        default=CoordinateSpace.NORMALIZED.value,
        help="coordinate space of --box",
    )
    p_search.add_argument("--best-guess", help="label that overrides --query for the keyword tier")
    p_search.add_argument("--max-results", type=int)
    p_search.add_argument("--refresh", action="store_true", help="invalidate cached results first")

    p_history = sub.add_parser("history", help="show recent analyses")
    p_history.add_argument("--limit", type=int, default=None)
    return parser


def _load_image(ref: str):
    """A URL passes through; anything else is read as a local file."""
    if ref.startswith(("http://", "https://", "data:")):
        return ref
    return Path(ref).read_bytes()


async def run(args: argparse.Namespace, settings: config.Settings) -> dict:
    from orchestrator import SearchObject, SearchOptions
    from product_search import get_orchestrator

    orchestrator = get_orchestrator(settings)

    if args.command == "detect":
        result = await orchestrator.detect(
            _load_image(args.image),
            provider=args.provider,
            threshold=args.threshold,
            max_objects=args.max_objects,
            force_refresh=args.refresh,
        )
        return result.to_dict()

    if args.command == "search":
        if not args.query and not args.image:
            raise SystemExit("search needs --query, --image, or both")
        options = SearchOptions(
            max_results=args.max_results or settings.max_results,
            best_guess_label=args.best_guess,
            coordinate_space=CoordinateSpace(args.space),
            force_refresh=args.refresh,
        )
        if not args.image:
            result = await orchestrator.search_text(args.query, options)
        else:
            obj = SearchObject(label=args.query or "", bounding_box=args.box)
            search = orchestrator.refresh if args.refresh else orchestrator.search
            result = await search(obj, args.image, args.dims, options)
        return result.to_dict()

    entries = await orchestrator.recent_history(args.limit)
    return {"history": [e.to_dict() for e in entries]}


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = config.load_settings()
    _setup_logging(settings.data_dir, args.verbose)

    try:
        output = asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        return 130
    except ValueError as exc:
        logger.error("%s", exc)
        return 2

    json.dump(output, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")
    return 0 if output.get("success", True) else 1


if __name__ == "__main__":
    sys.exit(main())
