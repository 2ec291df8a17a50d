"""Command-line interface for mineru2md."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from .version import __version__


def _get_usage() -> str:
    return (
        f"mineru2md {__version__}\n"
        "Usage:\n"
        "  mineru2md [--help] [--version|--ver]\n"
        "  mineru2md INPUT_JSON [OUTPUT_MD] [options]\n\n"
        "Options:\n"
        "  --locale LOCALE              Page divider language: en, zh (default: en, env MINERU2MD_LOCALE)\n"
        "  --max-depth N                Maximum block nesting depth (default: 64)\n"
        "  --verbose                    Verbose progress logs\n"
        "  --debug                      Debug logs"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--help", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--ver", action="store_true")
    parser.add_argument("input", nargs="?", help="Layout JSON file produced by MinerU")
    parser.add_argument("output", nargs="?", help="Output Markdown file (default: INPUT with .md suffix)")
    parser.add_argument("--locale", default=None, help="Language of the page divider labels")
    parser.add_argument(
        "--max-depth",
        type=int,
        default=None,
        help="Maximum block nesting depth before sub-blocks are dropped (default: 64)",
    )
    parser.add_argument("--verbose", action="store_true", help="Verbose progress logs")
    parser.add_argument("--debug", action="store_true", help="Debug logs")
    return parser


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        print(_get_usage())
        return 2

    if args.help:
        print(_get_usage())
        return 0

    if args.version or args.ver:
        print(__version__)
        return 0

    from mineru2md import core

    if not args.input:
        print(_get_usage())
        print("An input JSON file is required", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    if args.max_depth is not None and args.max_depth <= 0:
        print("Invalid value for --max-depth: must be > 0", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    locale = core.resolve_locale(args.locale)
    if locale not in core.PAGE_LABELS:
        supported = ", ".join(sorted(core.PAGE_LABELS))
        print(f"Unsupported locale: {locale} (supported: {supported})", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    core.setup_logging(args.verbose, args.debug)

    config = core.RenderConfig(
        locale=locale,
        max_block_depth=int(args.max_depth or core.DEFAULT_MAX_BLOCK_DEPTH),
        verbose=bool(args.verbose),
        debug=bool(args.debug),
    )

    input_path = Path(args.input).expanduser().resolve()
    if args.output:
        output_path = Path(args.output).expanduser().resolve()
    else:
        output_path = core.default_output_path(input_path)

    if not input_path.exists() or not input_path.is_file():
        print(f"Error: File not found: {input_path}", file=sys.stderr)
        return core.EXIT_INPUT_ERROR

    print(f"Reading: {input_path}")

    try:
        _, page_count = core.run_conversion(input_path, output_path, config)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return core.EXIT_INPUT_ERROR
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return core.EXIT_OUTPUT_ERROR

    print(f"Processed {page_count} pages")
    print(f"Output written to: {output_path}")
    print("Done!")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
