"""The built-in ``exec`` mixin: run a command with arguments and flags.

Installed as ``$PORTER_HOME/mixins/exec/exec`` (any executable that calls
:func:`main`). Action commands read ``{<action>: [{exec: {...}}]}`` from
stdin or ``--file`` and run each step's command, passing its stdout and
stderr through.

Step fields::

    exec:
      description: Say hello
      command: bash
      dir: .                  # working directory
      arguments: [...]        # before the flags
      flags: {c: "'echo hi'"} # sorted by name; -x for one letter, --name otherwise
      suffix-arguments: [...] # after the flags
      envs: {NAME: value}
      suppress-output: false
      ignoreError: {all: false, exitCodes: [], output: {contains: [], regex: []}}
"""

from __future__ import annotations

import json
import os
import re
import shlex
import subprocess
import sys
from pathlib import Path
from typing import Any

import typer
import yaml
from pydantic import BaseModel, ConfigDict, Field

from porter import __version__

MIXIN_NAME = "exec"

CODE_EMBEDDED_BASH = "exec-100"
CODE_BASH_C_ARG_MISSING_QUOTES = "exec-101"


class IgnoreErrorOutput(BaseModel):
    contains: list[str] = Field(default_factory=list)
    regex: list[str] = Field(default_factory=list)


class IgnoreError(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    all: bool = False
    exit_codes: list[int] = Field(default_factory=list, alias="exitCodes")
    output: IgnoreErrorOutput = Field(default_factory=IgnoreErrorOutput)

    def allows(self, exit_code: int, stderr: str) -> bool:
        if self.all or exit_code in self.exit_codes:
            return True
        if any(s in stderr for s in self.output.contains):
            return True
        return any(re.search(p, stderr) for p in self.output.regex)


class Instruction(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    description: str = ""
    command: str
    dir: str = ""
    arguments: list[str] = Field(default_factory=list)
    suffix_arguments: list[str] = Field(default_factory=list, alias="suffix-arguments")
    flags: dict[str, Any] = Field(default_factory=dict)
    envs: dict[str, str] = Field(default_factory=dict)
    outputs: list[dict[str, Any]] = Field(default_factory=list)
    suppress_output: bool = Field(default=False, alias="suppress-output")
    ignore_error: IgnoreError | None = Field(default=None, alias="ignoreError")


def _flag_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def flag_args(flags: dict[str, Any]) -> list[str]:
    """Render flags as argv, sorted by name.

    Examples
    --------
    >>> flag_args({"c": "'echo hi'", "verbose": None, "set": ["a=1", "b=2"]})
    ['-c', 'echo hi', '--set', 'a=1', '--set', 'b=2', '--verbose']
    """
    args: list[str] = []
    for name in sorted(flags):
        flag = ("-" if len(name) == 1 else "--") + name
        value = flags[name]
        values = value if isinstance(value, list) else ([] if value is None else [value])
        if not values:
            args.append(flag)
        for item in values:
            args.append(flag)
            args.extend(split_words(_flag_value(item)))
    return args


def split_words(value: str) -> list[str]:
    """Split on unquoted whitespace, stripping the quotes; unbalanced quotes keep the value whole."""
    try:
        return shlex.split(value) or [value]
    except ValueError:
        return [value]


def build_argv(instruction: Instruction) -> list[str]:
    return [
        instruction.command,
        *instruction.arguments,
        *flag_args(instruction.flags),
        *instruction.suffix_arguments,
    ]


def _load_steps(action: str, file: Path | None) -> list[Instruction]:
    text = file.read_text(encoding="utf-8") if file else sys.stdin.read()
    document = yaml.safe_load(text) or {}
    steps = document.get(action) or []
    return [Instruction.model_validate(step[MIXIN_NAME]) for step in steps if MIXIN_NAME in step]


def execute(action: str, file: Path | None = None) -> int:
    for instruction in _load_steps(action, file):
        argv = build_argv(instruction)
        env = {**os.environ, **instruction.envs}
        cwd = instruction.dir if instruction.dir and instruction.dir != "." else None
        try:
            completed = subprocess.run(argv, cwd=cwd, env=env, capture_output=True)
        except OSError as exc:
            print(f"couldn't run command {' '.join(argv)}: {exc}", file=sys.stderr)
            return 1
        stderr = completed.stderr.decode("utf-8", errors="replace")
        if not instruction.suppress_output:
            sys.stdout.buffer.write(completed.stdout)
            sys.stdout.flush()
            sys.stderr.write(stderr)
        if completed.returncode != 0:
            handler = instruction.ignore_error
            if handler is not None and handler.allows(completed.returncode, stderr):
                continue
            print(f"error running command {' '.join(argv)}: exit status {completed.returncode}", file=sys.stderr)
            return completed.returncode
    return 0


def lint(document: dict[str, Any]) -> list[dict[str, Any]]:
    """Flag embedded ``bash -c`` commands, and unquoted ones as errors."""
    results: list[dict[str, Any]] = []
    for action, steps in (document.get("actions") or {}).items():
        for number, step in enumerate(steps or [], start=1):
            instruction = Instruction.model_validate(step.get(MIXIN_NAME) or {"command": ""})
            if instruction.command != "bash" or "c" not in instruction.flags:
                continue
            location = {
                "action": action,
                "mixin": MIXIN_NAME,
                "stepNumber": number,
                "stepDescription": instruction.description,
            }
            results.append(
                {
                    "level": "warning",
                    "code": CODE_EMBEDDED_BASH,
                    "title": "Best Practice: Avoid Embedded Bash",
                    "message": "",
                    "url": "https://getporter.org/best-practices/exec-mixin/#use-scripts",
                    "location": location,
                }
            )
            value = instruction.flags["c"]
            for command in value if isinstance(value, list) else [value]:
                command = _flag_value(command)
                if not any(command.startswith(q) and command.endswith(q) and len(command) > 1 for q in ('"', "'")):
                    results.append(
                        {
                            "level": "error",
                            "code": CODE_BASH_C_ARG_MISSING_QUOTES,
                            "title": "bash -c argument missing wrapping quotes",
                            "message": "The bash -c flag argument must be wrapped in quotes",
                            "url": "https://getporter.org/best-practices/exec-mixin/#quoting-escaping-bash-and-yaml",
                            "location": location,
                        }
                    )
                    break
    return results


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

app = typer.Typer(name=MIXIN_NAME, help="Run a command.", no_args_is_help=True, add_completion=False)

_FILE_OPTION = typer.Option(None, "--file", "-f", help="Read the step document from a file instead of stdin.")


@app.command(name="version")
def version_cmd(output: str = typer.Option("plaintext", "--output", "-o")) -> None:
    if output == "json":
        typer.echo(json.dumps({"name": MIXIN_NAME, "version": __version__}))
    else:
        typer.echo(f"{MIXIN_NAME} {__version__}")


@app.command(name="schema")
def schema_cmd() -> None:
    typer.echo(json.dumps(Instruction.model_json_schema(by_alias=True), indent=2))


@app.command(name="build")
def build_cmd() -> None:
    # Nothing to add to the invocation image
    sys.stdin.read()


@app.command(name="lint")
def lint_cmd(output: str = typer.Option("json", "--output", "-o")) -> None:
    document = yaml.safe_load(sys.stdin.read()) or {}
    typer.echo(json.dumps(lint(document)))


@app.command(name="install")
def install_cmd(file: Path = _FILE_OPTION) -> None:
    raise typer.Exit(code=execute("install", file))


@app.command(name="upgrade")
def upgrade_cmd(file: Path = _FILE_OPTION) -> None:
    raise typer.Exit(code=execute("upgrade", file))


@app.command(name="uninstall")
def uninstall_cmd(file: Path = _FILE_OPTION) -> None:
    raise typer.Exit(code=execute("uninstall", file))


@app.command(name="invoke")
def invoke_cmd(
    action: str = typer.Option(..., "--action", help="Custom action to run."),
    file: Path = _FILE_OPTION,
) -> None:
    raise typer.Exit(code=execute(action, file))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
