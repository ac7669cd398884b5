"""Run a command on a microVM's serial console and attach to it.

cloud-hypervisor's serial port is a tty owned by a tmux session on the
host. An agent terminal reaches the guest by typing its command line into
that console and then attaching to it:

    python -m orchestra.isolation.console --session ch-vm-1-ab12cd34 \\
        --cwd /workspace --env ORCHESTRA_SESSION_ID=... -- claude --resume ...

The attach replaces this process, so the agent's own tmux pane ends up
showing the guest console.
"""

from __future__ import annotations

import argparse
import os
import subprocess
import sys

from orchestra.paths import shell_join


def guest_command(argv: list[str], cwd: str, env: dict[str, str]) -> str:
    """The line typed at the guest shell prompt."""
    words = [*(f"{key}={value}" for key, value in env.items()), *argv]
    if env:
        words.insert(0, "env")
    return f"cd {shell_join([cwd])} && {shell_join(words)}"


def _env_pair(value: str) -> tuple[str, str]:
    key, sep, val = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {value!r}")
    return key, val


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="orchestra.isolation.console")
    parser.add_argument("--session", required=True, help="tmux session owning the VM console")
    parser.add_argument("--cwd", default="/workspace", help="guest directory to run in")
    parser.add_argument("--env", type=_env_pair, action="append", default=[], metavar="KEY=VALUE")
    return parser


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    if "--" in argv:
        split = argv.index("--")
        options, command = argv[:split], argv[split + 1:]
    else:
        options, command = argv, []
    args = build_parser().parse_args(options)

    target = f"={args.session}:"
    if command:
        line = guest_command(command, args.cwd, dict(args.env))
        try:
            subprocess.run(["tmux", "send-keys", "-t", target, "-l", line], check=True)
            subprocess.run(["tmux", "send-keys", "-t", target, "Enter"], check=True)
        except (OSError, subprocess.CalledProcessError) as exc:
            print(f"Error: cannot reach VM console {args.session}: {exc}", file=sys.stderr)
            return 1

    # Nested attach is refused while TMUX is set.
    env = {key: value for key, value in os.environ.items() if key != "TMUX"}
    os.execvpe("tmux", ["tmux", "attach-session", "-t", f"={args.session}"], env)
    return 0  # not reached


if __name__ == "__main__":
    sys.exit(main())
