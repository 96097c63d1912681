import subprocess
import shlex
import os
from pathlib import Path
from typing import Collection, Sequence, TypeAlias

import click


def mk_env_for(env_ext=None) -> dict[str, str]:
    env = os.environ.copy()

    if env_ext is not None:
        env = {**env, **env_ext}

    # Git must never stop to ask for credentials: a private or missing
    # repository should fail fast so we can report it as such.
    env.setdefault("GIT_TERMINAL_PROMPT", "0")
    # We classify failures by matching on git's (English) diagnostics.
    env["LC_ALL"] = "C"

    return env


RunSpec: TypeAlias = str | Sequence[str | bytes | os.PathLike[str] | os.PathLike[bytes]]


def shellize(cmd: RunSpec, unquoted: Collection[str] = ()) -> str:
    """Render a command for display or for `shell=True`.

    Arguments listed in `unquoted` (e.g. a `*.o` glob) are passed through
    verbatim so that the shell gets to expand them.
    """
    if isinstance(cmd, str):
        return cmd
    else:
        return " ".join(str(x) if str(x) in unquoted else shlex.quote(str(x)) for x in cmd)


def common_helper_for_run(cmd: RunSpec, cmd_cwd: Path | str | None = None):
    def print_cmd_only():
        click.echo(f": {shellize(cmd)}", err=True)

    def print_cmd_within(cdpath: Path):
        click.echo(f": ( cd {cdpath.as_posix()} ; {shellize(cmd)} )", err=True)

    if os.environ.get("TREESMITH_SHOW_CMDS", "0") != "0":
        if os.environ.get("PWD") is None:
            print_cmd_only()
            return

        if cmd_cwd is None:
            print_cmd_only()
            return

        invoked_from = Path(os.environ["PWD"]).resolve()
        cmd_cwd = Path(cmd_cwd).resolve()
        if cmd_cwd == invoked_from:
            print_cmd_only()
        else:
            try:
                cdpath = cmd_cwd.relative_to(invoked_from)
                print_cmd_within(cdpath)
            except ValueError:
                print_cmd_within(cmd_cwd)


def run(cmd: RunSpec, check=False, env_ext=None, **kwargs) -> subprocess.CompletedProcess:
    common_helper_for_run(cmd, kwargs.get("cwd", None))

    return subprocess.run(
        cmd,
        check=check,
        env=mk_env_for(env_ext),
        **kwargs,
    )


def run_shell_cmd(
    cmd: RunSpec, check=False, env_ext=None, unquoted: Collection[str] = (), **kwargs
) -> subprocess.CompletedProcess:
    return run(
        shellize(cmd, unquoted),
        check=check,
        env_ext=env_ext,
        shell=True,
        **kwargs,
    )


def check_output(cmd: RunSpec, cwd: Path | None = None) -> bytes:
    common_helper_for_run(cmd, cwd)

    return subprocess.check_output(
        cmd,
        cwd=cwd,
        env=mk_env_for(None),
        stderr=subprocess.PIPE,
    )

