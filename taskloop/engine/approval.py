"""Approval gate: may a tool call run without asking the user?

decide() is a pure function of the call, the ApprovalPolicy snapshot
and the workspace root. Command execution additionally consults the
allow/deny prefix lists: each sub-command of a chained command line is
matched on its own, and any deny match wins over every allow match.
"""
from __future__ import annotations

import logging
import os
import re
import shlex
from dataclasses import dataclass, field

from .models import (
    ApprovalDecision,
    ApprovalPolicy,
    AskResponse,
    ToolCall,
    ToolCategory,
    ToolName,
)

logger = logging.getLogger(__name__)

# Punctuation runs made only of these chain (or group) independent commands;
# runs containing < or > are redirections.
_PUNCTUATION = "();<>|&\n"
_CHAIN_CHARS = frozenset(";&|\n()")
_CHAIN_SPLIT = re.compile(r"\&\&|\|\||;|\||&|\n")
ALLOW_ALL = "*"


@dataclass
class CommandMatch:
    """How one command line matched the prefix lists."""
    subcommands: list[str] = field(default_factory=list)
    denied_by: str | None = None
    allowed_by: list[str | None] = field(default_factory=list)

    @property
    def denied(self) -> bool:
        return self.denied_by is not None

    @property
    def fully_allowed(self) -> bool:
        return bool(self.allowed_by) and all(p is not None for p in self.allowed_by)


def split_command(command: str) -> list[str]:
    """Split a command line on chaining operators, dropping empties.

    Quoted text and redirections (2>&1, &>, >|) stay inside their
    sub-command. A line shlex cannot tokenize (unbalanced quotes) falls
    back to splitting on every operator character. A quoted token made
    only of operator characters still reads as an operator, which can
    only add sub-commands.
    """
    lexer = shlex.shlex(command, posix=True, punctuation_chars=_PUNCTUATION)
    lexer.whitespace_split = True
    lexer.whitespace = " \t\r"
    lexer.commenters = ""
    try:
        tokens = list(lexer)
    except ValueError:
        return [part.strip() for part in _CHAIN_SPLIT.split(command) if part.strip()]

    subcommands: list[str] = []
    current: list[str] = []
    for token in tokens:
        if token and set(token) <= _CHAIN_CHARS:
            if current:
                subcommands.append(" ".join(current))
            current = []
        else:
            current.append(token)
    if current:
        subcommands.append(" ".join(current))
    return subcommands


def _longest_prefix(subcommand: str, prefixes: tuple[str, ...]) -> str | None:
    lowered = subcommand.lower()
    matches = [
        cleaned for cleaned in (p.strip() for p in prefixes)
        if cleaned and (cleaned == ALLOW_ALL or lowered.startswith(cleaned.lower()))
    ]
    if not matches:
        return None
    specific = [p for p in matches if p != ALLOW_ALL]
    return max(specific, key=len) if specific else ALLOW_ALL


def match_command(command: str, policy: ApprovalPolicy) -> CommandMatch:
    """Match every sub-command against the deny and allow lists."""
    match = CommandMatch(subcommands=split_command(command))
    for sub in match.subcommands:
        denied = _longest_prefix(sub, policy.denied_commands)
        if denied is not None and (
            match.denied_by is None or len(denied) > len(match.denied_by)
        ):
            match.denied_by = denied
        match.allowed_by.append(_longest_prefix(sub, policy.allowed_commands))
    return match


class ApprovalGate:
    """Decides per tool call between auto-approval and asking the user."""

    def __init__(self, workspace_root: str | None = None) -> None:
        self._workspace_root = (
            os.path.abspath(workspace_root) if workspace_root else None
        )

    def decide(self, call: ToolCall, policy: ApprovalPolicy) -> ApprovalDecision:
        category = call.category
        if category == ToolCategory.INTERACTION:
            return ApprovalDecision.AUTO_APPROVED
        if not policy.allows_category(category):
            return ApprovalDecision.NEEDS_USER_INPUT

        if category in (ToolCategory.READ_ONLY, ToolCategory.WRITE):
            path = call.params.get("path", "")
            if not self.is_inside_workspace(path):
                logger.info(
                    "Approval: %s targets %s outside the workspace, asking",
                    call.name, path,
                )
                return ApprovalDecision.NEEDS_USER_INPUT

        if call.tool == ToolName.EXECUTE_COMMAND:
            return self._decide_command(call.params.get("command", ""), policy)

        return ApprovalDecision.AUTO_APPROVED

    def is_inside_workspace(self, path: str) -> bool:
        if self._workspace_root is None:
            return True
        target = os.path.abspath(os.path.join(self._workspace_root, path or "."))
        try:
            return os.path.commonpath([self._workspace_root, target]) == self._workspace_root
        except ValueError:
            return False

    def _decide_command(self, command: str, policy: ApprovalPolicy) -> ApprovalDecision:
        match = match_command(command, policy)
        if not match.subcommands:
            return ApprovalDecision.NEEDS_USER_INPUT
        if match.denied:
            logger.info(
                "Approval: command %.80s matches denied prefix %r, asking",
                command, match.denied_by,
            )
            return ApprovalDecision.NEEDS_USER_INPUT
        if not policy.allowed_commands or match.fully_allowed:
            return ApprovalDecision.AUTO_APPROVED
        logger.info("Approval: command %.80s not in allowed prefixes, asking", command)
        return ApprovalDecision.NEEDS_USER_INPUT


def decision_from_response(response: AskResponse) -> ApprovalDecision:
    """Map an external answer to an approval ask onto a decision."""
    if response.approved:
        return ApprovalDecision.USER_APPROVED
    return ApprovalDecision.USER_DENIED
