"""
Command classification.

Pure functions over command text. The kind is used for filtering and
statistics only; execution never branches on it. Tool routing is a separate
decision made by ``resolve_tool_route``.
"""

import re
import shlex
from dataclasses import dataclass
from typing import Optional

from src.core.models import CommandKind

# First matching rule wins. Multi-word prefixes come before their first word.
CLASSIFICATION_RULES: tuple[tuple[tuple[str, ...], CommandKind], ...] = (
    (("docker compose", "docker-compose"), CommandKind.CONTAINER),
    (("docker", "kubectl", "helm", "podman"), CommandKind.CONTAINER),
    (("aws", "az", "gcloud"), CommandKind.CLOUD_CLI),
    (("terraform", "tofu", "terragrunt"), CommandKind.INFRA_AS_CODE),
    (("ssh", "scp", "rsync", "curl", "wget"), CommandKind.NETWORK),
)

# Leading tokens that wrap the real command
_WRAPPERS = {"sudo", "time", "nohup", "env"}
_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")

TERRAFORM_TOOL_VERBS = frozenset(
    {"init", "validate", "plan", "apply", "destroy", "fmt", "output", "show"}
)

_FENCED_BLOCK = re.compile(r"```(?:bash|shell|sh)?[ \t]*\n(.*?)```", re.DOTALL)


@dataclass(frozen=True)
class ToolRoute:
    """Tool dispatcher target for a command."""
    backend: str
    operation: str
    params: dict


def _strip_wrappers(command: str) -> str:
    tokens = command.strip().split()
    while tokens and (tokens[0] in _WRAPPERS or _ENV_ASSIGNMENT.match(tokens[0])):
        tokens = tokens[1:]
    return " ".join(tokens)


def classify_command(command: str) -> CommandKind:
    """
    Classify a command by its prefix.

    Unrecognized commands are generic shell.
    """
    text = _strip_wrappers(command).lower()
    for prefixes, kind in CLASSIFICATION_RULES:
        for prefix in prefixes:
            if text == prefix or text.startswith(prefix + " "):
                return kind
    return CommandKind.SHELL


def resolve_tool_route(command: str, backend: str = "terraform-tool") -> Optional[ToolRoute]:
    """
    Recognize ``terraform <verb>`` commands that a tool backend can run.

    Returns None for anything else, including commands chained with shell
    operators.
    """
    if any(op in command for op in ("&&", "||", ";", "|", ">", "<", "`", "$(")):
        return None
    try:
        tokens = shlex.split(_strip_wrappers(command))
    except ValueError:
        return None
    if len(tokens) < 2 or tokens[0] != "terraform":
        return None

    # Global flags such as -chdir=dir precede the verb
    args = tokens[1:]
    global_flags = []
    while args and args[0].startswith("-"):
        global_flags.append(args.pop(0))
    if not args or args[0] not in TERRAFORM_TOOL_VERBS:
        return None

    verb, flags = args[0], args[1:]
    return ToolRoute(
        backend=backend,
        operation=f"run_{verb}",
        params={"args": global_flags + flags, "command": command},
    )


def parse_commands_from_markdown(content: str) -> list[dict]:
    """
    Extract commands from bash/sh/shell fenced blocks.

    Comment lines and lines carrying a ``$`` prompt are skipped.
    """
    commands: list[dict] = []
    if not content:
        return commands

    for block in _FENCED_BLOCK.findall(content):
        for line in block.strip().splitlines():
            cleaned = line.strip()
            if not cleaned or cleaned.startswith("#") or cleaned.startswith("$"):
                continue
            commands.append({"command": cleaned, "kind": classify_command(cleaned)})
    return commands
