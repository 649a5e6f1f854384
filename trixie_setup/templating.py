"""
Text renderers for the files the setup writes or edits.

Every function here is pure: it takes data (and possibly the current file
contents) and returns text. Quoting rules:

- shell aliases and yt-dlp options are quoted with shlex.quote, so any value
  survives a round trip through a POSIX shell or shlex.split unchanged;
- APT sources are edited token-wise; a component is only ever appended to a
  line that lacks it.
"""

import re
import shlex
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from .config import ExternalRepo
from .errors import ConfigurationError

BLOCK_BEGIN = "# >>> trixie-setup shell configuration >>>"
BLOCK_END = "# <<< trixie-setup shell configuration <<<"

# Block appended by the earlier bash post-install script; replaced in place
# so running both never leaves two copies behind.
LEGACY_MARKERS: List[Tuple[str, str]] = [
    (
        "# --- Added by Post-Install Script (Advanced Admin Setup) ---",
        "# --- End Post-Install Aliases ---",
    ),
]

_ALIAS_NAME = re.compile(r"^[A-Za-z0-9_.:+@-]+$")


# ----------------------------------------------------------------
# APT sources
# ----------------------------------------------------------------
def _split_comment(line: str) -> Tuple[str, str]:
    idx = line.find("#")
    if idx == -1:
        return line, ""
    return line[:idx], line[idx:]


def _one_line_components(body: str) -> Optional[List[str]]:
    """Return the components of a ``deb`` line, or None if it is not one."""
    tokens = body.split()
    if not tokens or tokens[0] not in ("deb", "deb-src"):
        return None
    rest = tokens[1:]
    if rest and rest[0].startswith("["):
        while rest and not rest[0].endswith("]"):
            rest = rest[1:]
        rest = rest[1:]
    # uri, suite, components...
    if len(rest) < 3:
        return []
    return rest[2:]


def add_component_one_line(text: str, component: str, anchor: str = "main") -> str:
    """
    Append ``component`` to every active one-line source that lists ``anchor``.

    Args:
        text: Contents of a sources.list style file
        component: Component to add (e.g. non-free-firmware)
        anchor: Only lines carrying this component are changed

    Returns:
        str: Updated file contents; identical input if nothing was missing
    """
    out = []
    for line in text.splitlines(keepends=True):
        newline = "\n" if line.endswith("\n") else ""
        body, comment = _split_comment(line.rstrip("\n"))
        components = _one_line_components(body)
        if components and anchor in components and component not in components:
            body = f"{body.rstrip()} {component}"
            if comment:
                body += f" {comment}"
            out.append(body + newline)
        else:
            out.append(line)
    return "".join(out)


def add_component_deb822(text: str, component: str, anchor: str = "main") -> str:
    """Append ``component`` to every deb822 ``Components:`` field listing ``anchor``."""
    out = []
    for line in text.splitlines(keepends=True):
        match = re.match(r"^(Components:)(.*?)(\n?)$", line, re.IGNORECASE)
        if match:
            values = match.group(2).split()
            if anchor in values and component not in values:
                values.append(component)
                line = f"{match.group(1)} {' '.join(values)}{match.group(3)}"
        out.append(line)
    return "".join(out)


def add_component(text: str, component: str, deb822: bool = False) -> str:
    if deb822:
        return add_component_deb822(text, component)
    return add_component_one_line(text, component)


def component_missing(text: str, component: str, deb822: bool = False) -> bool:
    """True when some source listing ``main`` lacks ``component``."""
    return add_component(text, component, deb822) != text


def render_repo_line(repo: ExternalRepo, keyring: str) -> str:
    """Render the one-line APT source for an external repository."""
    return f"deb [arch={repo.arch} signed-by={keyring}] {repo.repo_url}\n"


# ----------------------------------------------------------------
# yt-dlp configuration
# ----------------------------------------------------------------
def render_ytdlp_config(options: Sequence[Tuple[str, str]]) -> str:
    """
    Render a yt-dlp config file.

    yt-dlp splits config lines with shlex, so each value is shlex-quoted.

    Args:
        options: (flag, value) pairs; an empty value renders the flag alone
    """
    lines = [
        "# ------------------",
        "# yt-dlp config (managed by trixie-setup)",
        "# ------------------",
        "",
    ]
    for flag, value in options:
        if not flag.startswith("-"):
            raise ConfigurationError(f"Invalid yt-dlp option: {flag!r}")
        lines.append(f"{flag} {shlex.quote(value)}" if value else flag)
    return "\n".join(lines) + "\n"


# ----------------------------------------------------------------
# Shell configuration block
# ----------------------------------------------------------------
def render_alias(name: str, command: str) -> str:
    if not _ALIAS_NAME.match(name):
        raise ConfigurationError(f"Invalid alias name: {name!r}")
    return f"alias {name}={shlex.quote(command)}"


def render_bashrc_block(aliases: Mapping[str, str], snippets: Iterable[str] = ()) -> str:
    """
    Render the managed .bashrc block.

    Args:
        aliases: Alias name to command, in display order
        snippets: Raw shell fragments appended after the aliases

    Returns:
        str: Block text including begin/end markers and a trailing newline
    """
    lines = [BLOCK_BEGIN]
    lines.extend(render_alias(name, cmd) for name, cmd in aliases.items())
    for snippet in snippets:
        lines.append("")
        lines.extend(snippet.strip("\n").splitlines())
    lines.append(BLOCK_END)
    return "\n".join(lines) + "\n"


def _find_block(text: str, begin: str, end: str, pos: int = 0) -> Optional[Tuple[int, int]]:
    start = text.find(begin, pos)
    if start == -1:
        return None
    stop = text.find(end, start)
    if stop == -1:
        return None
    stop += len(end)
    if stop < len(text) and text[stop] == "\n":
        stop += 1
    return start, stop


def _block_spans(text: str) -> List[Tuple[int, int]]:
    spans = []
    for begin, end in [(BLOCK_BEGIN, BLOCK_END)] + LEGACY_MARKERS:
        pos = 0
        while True:
            span = _find_block(text, begin, end, pos)
            if span is None:
                break
            spans.append(span)
            pos = span[1]
    return sorted(spans)


def apply_managed_block(text: str, block: str) -> str:
    """
    Insert or replace the managed block in a shell rc file.

    The first existing block (managed or left by the legacy bash script) is
    replaced in place and every other one is removed; with no existing block
    the new one is appended after a blank line.
    """
    spans = _block_spans(text)
    if not spans:
        if text and not text.endswith("\n"):
            text += "\n"
        separator = "\n" if text else ""
        return text + separator + block

    parts: List[str] = []
    last = 0
    placed = False
    for start, stop in spans:
        if start < last:
            # nested inside a block already removed
            continue
        parts.append(text[last:start])
        if not placed:
            parts.append(block)
            placed = True
        last = stop
    parts.append(text[last:])
    return "".join(parts)


def has_managed_block(text: str, block: str) -> bool:
    """True when ``block`` is present exactly once and no legacy block remains."""
    if text.count(BLOCK_BEGIN) != 1 or block not in text:
        return False
    return all(_find_block(text, b, e) is None for b, e in LEGACY_MARKERS)
