import argparse
import asyncio
import sys
from pathlib import Path

from tether.tether_fs import LocalFileSystem
from tether.tether_printer import Printer
from tether.tether_runtime import Engine


def _print_effect(effect):
    stream = sys.stderr if effect.get('topics') == ['stderr'] else sys.stdout
    print(effect.get('message', ''), file=stream)


async def run_script_file(file_path: str, *, sync: bool = False, safe_points: bool = True) -> int:
    """Run a guest file non-interactively; returns the process exit status."""
    p = Path(file_path)
    if not p.is_file():
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        return 1
    # The script's directory becomes the virtual root
    fs = LocalFileSystem(str(p.parent.resolve()))
    engine = Engine(fs, on_output=_print_effect, safe_points=safe_points)
    if sync:
        result = engine.run_sync("/" + p.name)
    else:
        result = await engine.start("/" + p.name)
    if result.status != 'success':
        print(result.format_error(), file=sys.stderr)
        return 130 if result.status == 'aborted' else 1
    if result.value is not None:
        print(Printer().pformat(result.value))
    return 0


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(prog="tether", description="Run a sandboxed module chain.")
    ap.add_argument("path", help="root module to run")
    ap.add_argument("--sync", action="store_true", help="use the synchronous loader")
    ap.add_argument("--no-safe-points", action="store_true",
                    help="do not trace guest lines (abort only at import boundaries)")
    args = ap.parse_args(argv)
    try:
        return asyncio.run(run_script_file(args.path, sync=args.sync,
                                           safe_points=not args.no_safe_points))
    except KeyboardInterrupt:
        print("\nAborted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
