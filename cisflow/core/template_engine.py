"""
Command template processing for cisflow tasks and parameter lookups.

Templates use ``{name}`` placeholders where ``name`` is an identifier.
``{{`` and ``}}`` produce literal braces; any other brace text (``{}``,
``{eks:cluster-name=...}``) is left untouched so CLI shorthand survives.

Commands are either argv lists (each element rendered, values inserted as-is)
or shell strings (values shell-quoted on insertion).
"""

import re
import shlex
from typing import Iterable, List, Mapping, Optional, Set, Union

from .errors import MissingParameterError

Template = Union[str, List[str]]

_TOKEN = re.compile(r"\{\{|\}\}|\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _iter_texts(template: Template) -> Iterable[str]:
    if isinstance(template, str):
        yield template
    else:
        yield from template


def placeholders(template: Template) -> Set[str]:
    """Return the set of parameter names referenced by a template."""
    names: Set[str] = set()
    for text in _iter_texts(template):
        for m in _TOKEN.finditer(text):
            if m.group(1):
                names.add(m.group(1))
    return names


def _substitute(text: str, values: Mapping[str, str], quote: bool) -> str:
    def repl(m: "re.Match[str]") -> str:
        token = m.group(0)
        if token == "{{":
            return "{"
        if token == "}}":
            return "}"
        value = str(values[m.group(1)])
        return shlex.quote(value) if quote else value

    return _TOKEN.sub(repl, text)


def render_text(text: str, values: Mapping[str, str], task: Optional[str] = None, *, shell: bool = False) -> str:
    """Render one template string; raise MissingParameterError on unknown names."""
    missing = placeholders(text) - set(values)
    if missing:
        raise MissingParameterError(missing, task=task)
    return _substitute(text, values, quote=shell)


def render_command(template: Template, values: Mapping[str, str], task: Optional[str] = None) -> Template:
    """Render a task command.

    Args:
        template: argv list or shell string
        values: resolved parameter values
        task: task name used in error reports

    Returns:
        Rendered argv list or shell string (same shape as the template)
    """
    missing = placeholders(template) - set(values)
    if missing:
        raise MissingParameterError(missing, task=task)
    if isinstance(template, str):
        return _substitute(template, values, quote=True)
    return [_substitute(part, values, quote=False) for part in template]


def display_command(command: Template) -> str:
    """Human-readable form of a rendered command for logs."""
    if isinstance(command, str):
        return command
    return " ".join(shlex.quote(x) for x in command)
