"""Terminal command templates: placeholder substitution and argv tokenizing.

A template such as ``ghostty -e bash -c 'cd {directory} && opencode'`` is
turned into an argv for the outer program only. Shell syntax inside a quoted
span reaches that program as one argument; nothing here invokes a shell.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Final

from msgspec import Struct

_PLACEHOLDER: Final = re.compile(r"\{(directory|issueId|branchName)\}")


class EmptyCommandError(ValueError):
    """The template expanded to no tokens."""


class TerminalTokens(Struct, frozen=True, rename="camel"):
    """Values substituted into a terminal command template.

    Encoded names match the placeholders: directory, issueId, branchName.
    """

    directory: str
    issue_id: str
    branch_name: str


class QuoteState(Enum):
    """Tokenizer states.

    UNQUOTED --'--> SINGLE --'--> UNQUOTED
    UNQUOTED --"--> DOUBLE --"--> UNQUOTED
    """

    UNQUOTED = "unquoted"
    SINGLE = "single"
    DOUBLE = "double"


def replace_tokens(template: str, tokens: TerminalTokens) -> str:
    """Substitute placeholders in one pass over the template.

    Substituted values are inserted verbatim and never re-scanned, so a
    value containing ``{issueId}`` stays literal.
    """
    values = {
        "directory": tokens.directory,
        "issueId": tokens.issue_id,
        "branchName": tokens.branch_name,
    }
    return _PLACEHOLDER.sub(lambda match: values[match.group(1)], template)


def parse_command(command: str) -> list[str]:  # Time: O(n), Space: O(n)
    """Split a command into argv tokens on unquoted whitespace.

    Quote characters are consumed. The other quote kind inside a quoted span
    is literal. An unterminated quote runs to the end of the string. Empty
    tokens (e.g. ``''``) are dropped.

    Examples:
        parse_command("ghostty -e \"cd /p && run\"") -> ["ghostty", "-e", "cd /p && run"]
        parse_command("cmd 'arg with spaces'") -> ["cmd", "arg with spaces"]
    """
    parts: list[str] = []
    current: list[str] = []
    state = QuoteState.UNQUOTED

    for char in command:
        match state, char:
            case QuoteState.UNQUOTED, "'":
                state = QuoteState.SINGLE
            case QuoteState.UNQUOTED, '"':
                state = QuoteState.DOUBLE
            case (QuoteState.SINGLE, "'") | (QuoteState.DOUBLE, '"'):
                state = QuoteState.UNQUOTED
            case QuoteState.UNQUOTED, _ if char.isspace():
                if current:
                    parts.append("".join(current))
                    current = []
            case _:
                current.append(char)

    if current:
        parts.append("".join(current))

    return parts


def expand_command(template: str, tokens: TerminalTokens) -> list[str]:
    """Substitute placeholders, then tokenize.

    Raises:
        EmptyCommandError: If nothing but whitespace is left
    """
    parts = parse_command(replace_tokens(template, tokens))
    if not parts:
        raise EmptyCommandError("Empty command after parsing")
    return parts
