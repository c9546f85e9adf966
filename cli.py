"""Command line entry point: `lpu build` and `lpu run`.

Exit status: 0 on normal halt, 1 on assembler/format/VM errors,
2 on bad configuration or missing input files.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import yaml

from config import ConfigError, load_config
from errors import LpuError
from parser import build_file
from processor import LOGFILE, STOPPED, init_logging, run_bytes
from semantic import ScriptedAdapter


def _load_replay(path: str) -> ScriptedAdapter:
    """Load a YAML list of raw backend answers for an offline run."""
    p = Path(path)
    if not p.exists():
        err = f"Replay file not found: {path}"
        raise FileNotFoundError(err)
    with p.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or []
    if not isinstance(data, list):
        err = f"Replay file {path} does not contain a list"
        raise ConfigError(err)
    return ScriptedAdapter(data)


def cmd_build(args: argparse.Namespace) -> int:
    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print("Bad config:", e, file=sys.stderr)
        return 2
    try:
        out = build_file(
            args.source,
            out=args.out,
            build_dir=cfg["build_dir"],
            register_count=cfg["register_count"],
            debug=args.debug,
        )
    except OSError as e:
        print(e, file=sys.stderr)
        return 2
    except LpuError as e:
        print(f"{e.kind}: {e}", file=sys.stderr)
        return 1
    print(out)
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    init_logging(logfile=args.logfile, debug=args.debug, console=args.console)
    try:
        cfg = load_config(args.config)
        adapter = _load_replay(args.replay) if args.replay else None
    except (ConfigError, yaml.YAMLError) as e:
        print("Bad config:", e, file=sys.stderr)
        return 2
    except OSError as e:
        print(e, file=sys.stderr)
        return 2

    code_path = Path(args.program)
    if not code_path.exists():
        print("Program file not found:", args.program, file=sys.stderr)
        return 2

    try:
        code = code_path.read_bytes()
    except OSError as e:
        print(e, file=sys.stderr)
        return 2

    try:
        _out, steps, state, vm_err = run_bytes(code, cfg, adapter=adapter, out=sys.stdout)
    except LpuError as e:
        print(f"{e.kind}: {e}", file=sys.stderr)
        return 1
    logging.debug("run finished: state=%s steps=%d", state, steps)

    if vm_err is not None:
        print(f"{vm_err.kind}: {vm_err}", file=sys.stderr)
        return 1
    if state == STOPPED:
        print(f"stopped after {steps} steps (step_limit)", file=sys.stderr)
    return 0


def make_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="lpu", description="Semantic assembly toolchain")
    sub = ap.add_subparsers(dest="command", required=True)

    b = sub.add_parser("build", help="assemble source into bytecode")
    b.add_argument("source", help="source file (e.g. program.aasm)")
    b.add_argument("-o", "--out", help="output bytecode file (default: <build_dir>/<stem>.lpu)")
    b.add_argument("--config", help="path to yaml config", default=None)
    b.add_argument("--debug", action="store_true", help="write additional debug hex file (<out>.hex)")
    b.set_defaults(func=cmd_build)

    r = sub.add_parser("run", help="run a bytecode file")
    r.add_argument("program", help="program.lpu (bytecode)")
    r.add_argument("--config", help="path to yaml config", default=None)
    r.add_argument("--debug", action="store_true", help="enable debug logging to logfile (detailed per-step state).")
    r.add_argument("--logfile", default=LOGFILE, help="path to processor log")
    r.add_argument("--console", action="store_true", help="also echo logs to console (only when --debug)")
    r.add_argument("--replay", default=None, help="yaml list of canned backend answers (offline run)")
    r.set_defaults(func=cmd_run)
    return ap


def main(argv: list[str] | None = None) -> int:
    args = make_parser().parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
