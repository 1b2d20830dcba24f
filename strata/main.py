#!/usr/bin/env python3
"""strata: layered environment builds in Python."""

import argparse
import importlib
import json
import logging
import sys
from pathlib import Path

from strata import manifest as manifests
from strata.cache import StageCache
from strata.docker import DockerClient
from strata.dockerfile import TOOLCHAINS, render
from strata.errors import BuildError
from strata.resolver import DirectoryIndex
from strata.steps import installed_packages
from strata.tree import load_directory

DEFAULT_PIPELINE = "stratapkgs.devcontainer:Development"
CACHE_DIR = "/usr/local/bundle"


def _parse_args_kv(pairs: list[str]) -> dict[str, str]:
    out = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise SystemExit(f"--arg expects KEY=VALUE, got {pair!r}")
        out[key] = value
    return out


def load_pipeline(spec: str, arg_pairs: list[str]):
    """Instantiate ``module:Class`` with build arguments from ``--arg``."""
    module_name, _, class_name = spec.partition(":")
    cls = getattr(importlib.import_module(module_name), class_name)
    values = _parse_args_kv(arg_pairs)
    if not values:
        return cls()
    from stratapkgs.devcontainer import BuildArgs

    try:
        return cls(BuildArgs.from_strings(values))
    except ValueError as e:
        raise SystemExit(f"--arg: {e}") from e


def cmd_graph(args):
    pipeline = load_pipeline(args.pipeline, args.arg)
    for s in pipeline.stages():
        origin = s.parent.name if s.parent is not None else s.base
        deps = f" (promotes from {', '.join(d.name for d in s.deps)})" if s.deps else ""
        print(f"{s.name:<18} {origin:<28} {s.definition_id}{deps}")


def cmd_render(args):
    pipeline = load_pipeline(args.pipeline, args.arg)
    sys.stdout.write(render(pipeline.stages(), TOOLCHAINS[args.toolchain]))


def cmd_build(args):
    from stratapkgs.build import Builder

    pipeline = load_pipeline(args.pipeline, args.arg)
    target = pipeline.target(args.target)
    builder = Builder(
        source=load_directory(args.source),
        index=DirectoryIndex(args.index),
        cache=StageCache(args.cache) if args.cache else None,
        repair_ownership=not args.no_repair,
    )
    snap = builder.build(target)
    account = snap.build_account
    summary = {
        "stage": target.name,
        "key": builder.key(target),
        "digest": snap.digest(),
        "user": snap.user,
        "build_account": account,
        "workdir": snap.workdir,
        "workdir_owner": snap.owner(snap.workdir),
        "cache_owner": snap.owner(CACHE_DIR) if snap.exists(CACHE_DIR) else None,
        "os_packages": sorted(snap.os_packages),
        "dependencies": installed_packages(snap, CACHE_DIR),
        "promotions": [
            {"stage": h.stage, "key": h.stage_key, "manifest": h.manifest_digest}
            for h in snap.promotions
        ],
    }
    json.dump(summary, sys.stdout, indent=2)
    print()


def cmd_docker_build(args):
    pipeline = load_pipeline(args.pipeline, args.arg)
    target = pipeline.target(args.target)
    dockerfile = render(pipeline.stages(), TOOLCHAINS[args.toolchain])
    DockerClient().build(target.name, dockerfile, args.context, tag=args.tag)
    print(f"built {target.name}" + (f" as {args.tag}" if args.tag else ""))


def cmd_manifest(args):
    path = Path(args.path)
    m = manifests.load(path)
    info = {
        "digest": manifests.digest({path.name: path.read_bytes()}),
        "groups": {g: sorted(m.closure([g])) for g in sorted(m.groups)},
        "group_only": {g: sorted(m.group_only(g)) for g in sorted(m.groups)},
        "packages": {n: p.version for n, p in m.packages.items()},
    }
    json.dump(info, sys.stdout, indent=2)
    print()


def main(argv=None):
    parser = argparse.ArgumentParser(prog="strata", description="Layered environment builds")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("--pipeline", default=DEFAULT_PIPELINE,
                        help="Stage set as module:Class")
    parser.add_argument("--arg", action="append", default=[], metavar="KEY=VALUE",
                        help="Build argument (repeatable)")
    sub = parser.add_subparsers(dest="command")

    # graph
    p = sub.add_parser("graph", help="List stages in build order")
    p.set_defaults(func=cmd_graph)

    # render
    p = sub.add_parser("render", help="Print the equivalent Dockerfile")
    p.add_argument("--toolchain", choices=sorted(TOOLCHAINS), default="bundler")
    p.set_defaults(func=cmd_render)

    # build
    p = sub.add_parser("build", help="Build a stage in-process and summarize it")
    p.add_argument("target")
    p.add_argument("--source", required=True, help="Library source tree")
    p.add_argument("--index", required=True, help="Directory of <name>-<version>.pkg files")
    p.add_argument("--cache", help="Persist snapshots here")
    p.add_argument("--no-repair", action="store_true",
                   help="Fail instead of reassigning misowned guarded paths")
    p.set_defaults(func=cmd_build)

    # docker-build
    p = sub.add_parser("docker-build", help="Build a stage with docker")
    p.add_argument("target")
    p.add_argument("--context", default=".")
    p.add_argument("--tag")
    p.add_argument("--toolchain", choices=sorted(TOOLCHAINS), default="bundler")
    p.set_defaults(func=cmd_docker_build)

    # manifest
    p = sub.add_parser("manifest", help="Show lockfile groups and digest")
    p.add_argument("path")
    p.set_defaults(func=cmd_manifest)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=[logging.WARNING, logging.INFO, logging.DEBUG][min(args.verbose, 2)],
        format="%(levelname)s %(name)s: %(message)s",
    )
    if not args.command:
        parser.print_help()
        sys.exit(1)
    try:
        args.func(args)
    except (BuildError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
