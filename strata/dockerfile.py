"""Render a stage graph as a multi-stage Dockerfile.

The renderer is the textual twin of the builder: the same steps, in the
same order, spelled as Dockerfile instructions. Two things are derived
rather than declared:

- ``USER`` lines come from each step's privilege, so no step runs under an
  identity it did not ask for.
- After a root step that writes under a guarded path, a ``chown -R`` back to
  the build account is emitted, the same repair the builder performs.

Stages are duck-typed: anything with ``name``, ``parent``, ``base``,
``steps`` and ``user`` renders.
"""

from __future__ import annotations

import posixpath
import shlex
from dataclasses import dataclass
from typing import Sequence

from strata import steps as S
from strata import tree


@dataclass(frozen=True)
class Toolchain:
    """Commands that drive the language's dependency tooling."""

    name: str
    config_set: str
    config_unset: str
    install: str
    tool_install: str


BUNDLER = Toolchain(
    name="bundler",
    config_set="bundle config set --local {key} {value}",
    config_unset="bundle config unset --local {key}",
    install="bundle install",
    tool_install="gem install {tools}",
)

TOOLCHAINS = {"bundler": BUNDLER}


@dataclass
class _State:
    user: str
    account: str | None
    workdir: str
    guarded: set[str]


def _lineage(stage) -> list:
    chain = []
    while stage is not None:
        chain.append(stage)
        stage = stage.parent
    return list(reversed(chain))


def _state_before(stage) -> _State:
    """Identity, working directory and guarded paths inherited from ancestors."""
    st = _State(user="root", account=None, workdir="/", guarded=set())
    for anc in _lineage(stage)[:-1]:
        for step in anc.steps:
            _track(st, step)
        st.user = anc.user
    return st


def _track(st: _State, step: S.Step) -> None:
    if isinstance(step, S.CreateAccount):
        st.account = step.name
    elif isinstance(step, S.SetWorkdir):
        st.workdir = step.path
    elif isinstance(step, S.Claim):
        st.guarded |= set(step.paths)


def _continued(lines: list[str], indent: str = "    ") -> str:
    return " \\\n".join([lines[0]] + [indent + ln for ln in lines[1:]])


def _render_step(step: S.Step, st: _State, tc: Toolchain) -> list[str]:
    acct = st.account or "root"
    if isinstance(step, S.SetEnv):
        return ["ENV " + " ".join(f'{k}="{v}"' for k, v in step.values)]
    if isinstance(step, S.ExtendPath):
        return [f"ENV PATH={step.directory}:$PATH"]
    if isinstance(step, S.SetWorkdir):
        return [f"WORKDIR {step.path}"]
    if isinstance(step, S.InstallPackages):
        flags = "-y --no-install-recommends" if step.minimal else "-y"
        body = [f"apt-get install {flags}"] + list(step.packages)
        cmd = _continued(body)
        if step.refresh_index:
            cmd = "apt-get update \\\n && " + cmd
        if step.purge_index:
            cmd += f" \\\n && rm -rf {S.APT_LISTS}/*"
        return ["RUN " + cmd]
    if isinstance(step, S.Run):
        return [f"RUN {step.command}"]
    if isinstance(step, S.InstallTools):
        return ["RUN " + tc.tool_install.format(tools=" ".join(step.tools))]
    if isinstance(step, S.CreateAccount):
        gid = step.gid if step.gid is not None else step.uid
        return [
            f"RUN addgroup --gid {gid} {step.name} \\\n"
            f" && useradd -r -m -u {step.uid} --gid {gid} \\\n"
            f'    --shell {step.shell} -c "{step.comment}" {step.name}'
        ]
    if isinstance(step, S.GrantSudo):
        return [f'RUN echo "{step.name} ALL=(ALL) NOPASSWD:ALL" | tee "{S.SUDOERS_DIR}/{step.name}"']
    if isinstance(step, S.Claim):
        paths = " ".join(step.paths)
        return [f"RUN mkdir -p {paths} \\\n && chown -R {acct}:{acct} {paths}"]
    if isinstance(step, S.MakeDirs):
        paths = " ".join(step.paths)
        cmd = f"RUN mkdir -p {paths}"
        if step.owner:
            cmd += f" \\\n && chown -R {step.owner} {paths}"
        return [cmd]
    if isinstance(step, S.Touch):
        paths = " ".join(step.paths)
        cmd = f"RUN touch {paths}"
        if step.owner:
            cmd += f" \\\n && chown {step.owner} {paths}"
        return [cmd]
    if isinstance(step, S.AppendLine):
        cmd = f"RUN echo {shlex.quote(step.line)} >> {step.path}"
        if step.owner:
            cmd += f" \\\n && chown {step.owner} {step.path}"
        return [cmd]
    if isinstance(step, S.ConfigureResolver):
        out = []
        for key in ("retry", "jobs"):
            value = getattr(step, key)
            if value is not None:
                out.append("RUN " + tc.config_set.format(key=key, value=value))
        if step.without is not None:
            out.append("RUN " + tc.config_set.format(key="without", value=" ".join(step.without)))
        for key in step.unset:
            out.append("RUN " + tc.config_unset.format(key=key))
        return out
    if isinstance(step, S.CopyManifest):
        by_dir: dict[str, list[str]] = {}
        for f in step.files:
            by_dir.setdefault(posixpath.dirname(f), []).append(f)
        out = []
        for d, files in by_dir.items():
            dest = tree.normalize(posixpath.join(st.workdir, d)).rstrip("/") + "/"
            out.append(f"COPY --chown={acct} {' '.join(files)} {dest}")
        return out
    if isinstance(step, S.Resolve):
        return ["RUN " + tc.install]
    if isinstance(step, S.Promote):
        return [f"COPY --from={step.stage} --chown={acct} {p} {p}" for p in step.paths]
    raise TypeError(f"cannot render {type(step).__name__}")


def _repair(step: S.Step, st: _State) -> list[str]:
    if step.privilege != S.Privilege.ROOT or st.account is None or isinstance(step, S.Claim):
        return []
    # Whole guarded roots, since a root step may also have created parents.
    hit = sorted(g for g in st.guarded if any(tree.is_under(t, g) for t in step.targets()))
    if not hit:
        return []
    return [f"RUN chown -R {st.account}:{st.account} {' '.join(hit)}"]


def render_stage(stage, toolchain: Toolchain = BUNDLER) -> str:
    st = _state_before(stage)
    source = stage.base if stage.parent is None else stage.parent.name
    lines = [f"# Stage: {stage.name} ".ljust(80, "="), f"FROM {source} AS {stage.name}"]
    for step in stage.steps:
        _track(st, step)
        want = "root" if step.privilege == S.Privilege.ROOT else (st.account or "root")
        if want != st.user:
            lines.append(f"USER {want}")
            st.user = want
        lines += _render_step(step, st, toolchain)
        lines += _repair(step, st)
    if stage.user != st.user:
        lines.append(f"USER {stage.user}")
    return "\n\n".join([lines[0] + "\n" + lines[1]] + lines[2:]) + "\n"


def render(stages: Sequence, toolchain: Toolchain = BUNDLER) -> str:
    """Render stages (already in build order) into one Dockerfile."""
    return "\n".join(render_stage(s, toolchain) for s in stages)
