"""
System checks and actions used by the provisioning tasks.

Read-only helpers (``is_*``, ``*_installed``, ``*_status``, ``*_pending``)
only read state. Actions mutate it and are written so that re-running them after a
partial failure converges on the same end state.
"""

import grp
import logging
import os
import re
import socket
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set

import requests

from .commands import CommandRunner
from .config import AppConfig, ExternalRepo, TargetUser
from .errors import DownloadError, ExecutionError
from .tasks import TaskContext
from .templating import add_component, component_missing, render_repo_line

logger = logging.getLogger("trixie_setup.system")


# ----------------------------------------------------------------
# File helpers
# ----------------------------------------------------------------
def read_text(path: Path) -> Optional[str]:
    """Return the contents of ``path`` or None if it does not exist."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def file_matches(path: Path, content: str) -> bool:
    return read_text(path) == content


def write_if_changed(
    path: Path,
    content: str,
    mode: int = 0o644,
    owner: Optional[TargetUser] = None,
) -> bool:
    """
    Atomically write ``content`` to ``path`` unless it already holds it.

    Args:
        path: Destination file
        content: Desired file contents
        mode: Permission bits for a newly written file
        owner: User that should own the file

    Returns:
        bool: True if the file was (re)written
    """
    path = Path(path)
    if file_matches(path, content):
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp, mode)
        if owner is not None:
            os.chown(tmp, owner.uid, owner.gid)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    logger.info("Wrote %s", path)
    return True


def ensure_directory(path: Path, owner: Optional[TargetUser] = None, mode: int = 0o755) -> bool:
    """
    Ensure a directory (and its parents below the owner's home) exists.

    Returns:
        bool: True if anything was created
    """
    path = Path(path)
    missing = []
    current = path
    while not current.exists():
        missing.append(current)
        current = current.parent
    for directory in reversed(missing):
        directory.mkdir(mode=mode)
        if owner is not None:
            os.chown(directory, owner.uid, owner.gid)
    return bool(missing)


def download_file(url: str, dest: Path, timeout: float = 60, mode: int = 0o644) -> int:
    """
    Download ``url`` to ``dest`` through a temporary file in the same directory.

    Returns:
        int: Number of bytes written

    Raises:
        DownloadError: On any HTTP or connection failure
    """
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{dest.name}.", dir=str(dest.parent))
    written = 0
    try:
        with (
            os.fdopen(fd, "wb") as handle,
            requests.get(url, stream=True, timeout=timeout) as response,
        ):
            response.raise_for_status()
            for chunk in response.iter_content(chunk_size=8192):
                if chunk:
                    handle.write(chunk)
                    written += len(chunk)
        if written == 0:
            raise DownloadError(f"Downloaded file from {url} is empty")
        os.chmod(tmp, mode)
        os.replace(tmp, dest)
    except requests.RequestException as e:
        raise DownloadError(f"Download of {url} failed: {e}")
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)
    logger.info("Downloaded %s to %s (%d bytes)", url, dest, written)
    return written


def fetch_bytes(url: str, timeout: float = 60) -> bytes:
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise DownloadError(f"Download of {url} failed: {e}")
    return response.content


def _bounded(ctx: Optional[TaskContext], limit: float) -> float:
    remaining = ctx.remaining() if ctx is not None else None
    return limit if remaining is None else max(1.0, min(limit, remaining))


# ----------------------------------------------------------------
# Packages
# ----------------------------------------------------------------
def parse_dpkg_query(output: str) -> Set[str]:
    """Return the packages reported as installed by ``dpkg-query -W``."""
    installed = set()
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) == 2 and parts[1].strip() == "installed":
            installed.add(parts[0].split(":")[0])
    return installed


def parse_apt_search(output: str) -> List[str]:
    """Return package names from ``apt-cache search`` output."""
    names = []
    for line in output.splitlines():
        name = line.split(" - ", 1)[0].strip()
        if name and name not in names:
            names.append(name)
    return names


def _version_key(name: str, prefix: str) -> List[int]:
    return [int(part) for part in re.findall(r"\d+", name[len(prefix):])]


def pick_newest(candidates: Iterable[str], prefix: str, exclude: Iterable[str] = ()) -> Optional[str]:
    """
    Pick the highest-versioned ``<prefix><version>`` package name.

    Args:
        candidates: Package names to choose from
        prefix: Name prefix such as ``virtualbox-``
        exclude: Names never to return

    Returns:
        The newest matching name, or None
    """
    excluded = set(exclude)
    pattern = re.compile(rf"^{re.escape(prefix)}\d+(\.\d+)*$")
    matches = [c for c in candidates if pattern.match(c) and c not in excluded]
    if not matches:
        return None
    return max(matches, key=lambda n: _version_key(n, prefix))


def parse_simulated_count(output: str, label: str) -> int:
    """
    Extract a count from apt's simulation summary line.

    ``label`` is ``upgraded`` or ``to remove`` for lines such as
    ``3 upgraded, 0 newly installed, 1 to remove and 0 not upgraded.``
    """
    match = re.search(rf"(\d+) {re.escape(label)}", output)
    return int(match.group(1)) if match else 0


class PackageManager:
    """APT/dpkg operations."""

    def __init__(self, runner: CommandRunner, config: AppConfig) -> None:
        self.runner = runner
        self.config = config

    def installed(self, packages: Sequence[str], ctx: Optional[TaskContext] = None) -> Set[str]:
        if not packages:
            return set()
        result = self.runner.run(
            ["dpkg-query", "-W", "-f=${Package}\\t${db:Status-Status}\\n", *packages],
            ctx=ctx,
            check=False,
        )
        return parse_dpkg_query(result.stdout)

    def missing(self, packages: Sequence[str], ctx: Optional[TaskContext] = None) -> List[str]:
        present = self.installed(packages, ctx)
        return [p for p in packages if p not in present]

    def all_installed(self, packages: Sequence[str], ctx: Optional[TaskContext] = None) -> bool:
        return not self.missing(packages, ctx)

    def none_installed(self, packages: Sequence[str], ctx: Optional[TaskContext] = None) -> bool:
        return not self.installed(packages, ctx)

    def install(self, packages: Sequence[str], ctx: Optional[TaskContext] = None) -> str:
        missing = self.missing(packages, ctx)
        if not missing:
            return "all packages already installed"
        self.runner.run(["apt-get", "install", "-y", *missing], ctx=ctx)
        return f"installed {len(missing)} package(s): {', '.join(missing)}"

    def purge(self, packages: Sequence[str], ctx: Optional[TaskContext] = None) -> str:
        present = sorted(self.installed(packages, ctx))
        if not present:
            return "nothing to remove"
        self.runner.run(["apt-get", "purge", "-y", *present], ctx=ctx)
        return f"purged {', '.join(present)}"

    def update(self, ctx: Optional[TaskContext] = None) -> str:
        self.runner.run(["apt-get", "update"], ctx=ctx, retry=2)
        return "package lists refreshed"

    def upgradable(self, ctx: Optional[TaskContext] = None) -> int:
        # Matches "apt upgrade": upgrades that need new dependencies are not held back
        out = self.runner.output(
            ["apt-get", "-s", "-o", "Debug::NoLocking=1", "--with-new-pkgs", "upgrade"], ctx
        )
        return parse_simulated_count(out, "upgraded")

    def upgrade(self, ctx: Optional[TaskContext] = None) -> str:
        count = self.upgradable(ctx)
        self.runner.run(["apt-get", "upgrade", "-y", "--with-new-pkgs"], ctx=ctx)
        return f"upgraded {count} package(s)"

    def search(self, prefix: str, ctx: Optional[TaskContext] = None) -> List[str]:
        out = self.runner.output(["apt-cache", "search", "--names-only", f"^{prefix}"], ctx)
        return [n for n in parse_apt_search(out) if n.startswith(prefix)]

    def autoremove_pending(self, ctx: Optional[TaskContext] = None) -> int:
        out = self.runner.output(["apt-get", "-s", "-o", "Debug::NoLocking=1", "autoremove"], ctx)
        return parse_simulated_count(out, "to remove")

    def cache_clean(self) -> bool:
        archives = Path(self.config.APT_ARCHIVES_DIR)
        return not any(archives.glob("*.deb"))

    def cleanup(self, ctx: Optional[TaskContext] = None) -> str:
        self.runner.run(["apt-get", "autoremove", "-y"], ctx=ctx)
        self.runner.run(["apt-get", "clean"], ctx=ctx)
        return "removed unused packages and cleaned the package cache"

    def lists_fresh(self) -> bool:
        """
        True when the package lists are newer than every sources file and
        younger than APT_LISTS_MAX_AGE.
        """
        lists_dir = Path(self.config.APT_LISTS_DIR)
        lists = [p for p in lists_dir.glob("*_Packages*")] if lists_dir.is_dir() else []
        if not lists:
            return False
        newest_list = max(p.stat().st_mtime for p in lists)
        sources = [Path(self.config.SOURCES_LIST)]
        sources_dir = Path(self.config.SOURCES_DIR)
        if sources_dir.is_dir():
            sources.extend(sources_dir.glob("*.list"))
            sources.extend(sources_dir.glob("*.sources"))
        newest_source = max((p.stat().st_mtime for p in sources if p.exists()), default=0.0)
        age = time.time() - newest_list
        return newest_list >= newest_source and age < self.config.APT_LISTS_MAX_AGE


# ----------------------------------------------------------------
# APT sources and external repositories
# ----------------------------------------------------------------
class SourcesManager:
    """Manages APT source definitions and third-party repositories."""

    def __init__(self, runner: CommandRunner, config: AppConfig) -> None:
        self.runner = runner
        self.config = config

    def source_files(self) -> List[Path]:
        """Debian source files that may carry a ``main`` component."""
        files = []
        if Path(self.config.SOURCES_LIST).exists():
            files.append(Path(self.config.SOURCES_LIST))
        sources_dir = Path(self.config.SOURCES_DIR)
        if sources_dir.is_dir():
            files.extend(sorted(sources_dir.glob("*.sources")))
        return files

    def component_enabled(self) -> bool:
        component = self.config.SOURCE_COMPONENT
        for path in self.source_files():
            text = read_text(path) or ""
            if component_missing(text, component, deb822=path.suffix == ".sources"):
                return False
        return True

    def enable_component(self, ctx: Optional[TaskContext] = None) -> str:
        component = self.config.SOURCE_COMPONENT
        changed = []
        for path in self.source_files():
            text = read_text(path) or ""
            updated = add_component(text, component, deb822=path.suffix == ".sources")
            if updated != text and write_if_changed(path, updated, mode=0o644):
                changed.append(str(path))
        if not changed:
            return f"{component} already enabled"
        return f"added {component} to {', '.join(changed)}"

    def repo_line(self, repo: ExternalRepo) -> str:
        return render_repo_line(repo, str(self.config.keyring_path(repo)))

    def repo_configured(self, repo: ExternalRepo) -> bool:
        keyring = self.config.keyring_path(repo)
        return (
            keyring.is_file()
            and keyring.stat().st_size > 0
            and file_matches(self.config.list_path(repo), self.repo_line(repo))
        )

    def install_key(self, repo: ExternalRepo, ctx: Optional[TaskContext] = None) -> None:
        data = fetch_bytes(repo.key_url, timeout=_bounded(ctx, self.config.DOWNLOAD_TIMEOUT))
        if b"-----BEGIN PGP" in data:
            data = self.runner.run(["gpg", "--dearmor"], ctx=ctx, input=data).stdout
        keyring = self.config.keyring_path(repo)
        keyring.parent.mkdir(parents=True, exist_ok=True)
        tmp = keyring.with_name(f".{keyring.name}.tmp")
        tmp.write_bytes(data)
        os.chmod(tmp, 0o644)
        os.replace(tmp, keyring)

    def add_repo(self, repo: ExternalRepo, packages: PackageManager, ctx: Optional[TaskContext] = None) -> str:
        """
        Install the signing key, write the source file and refresh package lists.

        Each sub-step overwrites rather than appends, so a re-run after a
        partial failure leaves exactly one key and one source definition.
        """
        log = ctx.logger if ctx is not None else logger
        log.info("Installing signing key from %s", repo.key_url)
        self.install_key(repo, ctx)
        list_file = self.config.list_path(repo)
        if write_if_changed(list_file, self.repo_line(repo)):
            log.info("Wrote %s", list_file)
        packages.update(ctx)
        return f"{repo.name} repository configured"


# ----------------------------------------------------------------
# Firewall
# ----------------------------------------------------------------
@dataclass
class UfwStatus:
    active: bool = False
    defaults: Dict[str, str] = field(default_factory=dict)
    allowed: Set[str] = field(default_factory=set)


def parse_ufw_status(output: str) -> UfwStatus:
    """
    Parse ``ufw status verbose`` output.

    Allowed rule targets are normalised to the bare port/service without the
    protocol or ``(v6)`` suffix, e.g. ``22/tcp (v6)`` becomes ``22``.
    """
    status = UfwStatus()
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.lower().startswith("status:"):
            status.active = stripped.split(":", 1)[1].strip().lower() == "active"
        elif stripped.lower().startswith("default:"):
            for part in stripped.split(":", 1)[1].split(","):
                match = re.match(r"\s*(\w+)\s*\((\w+)\)", part)
                if match:
                    status.defaults[match.group(2).lower()] = match.group(1).lower()
        else:
            match = re.match(r"^(\S+)(?:\s+\(v6\))?\s+ALLOW(?:\s+IN)?\s+", stripped)
            if match:
                status.allowed.add(match.group(1).split("/")[0].lower())
    return status


def service_port(service: str) -> str:
    """Map a service name such as ``ssh`` to its TCP port, or return it unchanged."""
    if service.isdigit():
        return service
    try:
        return str(socket.getservbyname(service, "tcp"))
    except OSError:
        return service


class Firewall:
    """UFW configuration."""

    UFW = "ufw"

    def __init__(self, runner: CommandRunner, config: AppConfig) -> None:
        self.runner = runner
        self.config = config

    def status(self, ctx: Optional[TaskContext] = None) -> UfwStatus:
        return parse_ufw_status(self.runner.output([self.UFW, "status", "verbose"], ctx))

    def is_allowed(self, status: UfwStatus, service: str) -> bool:
        name = service.split("/")[0].lower()
        return name in status.allowed or service_port(name) in status.allowed

    def configured(self, ctx: Optional[TaskContext] = None) -> bool:
        status = self.status(ctx)
        if not status.active:
            return False
        for direction, policy in self.config.FIREWALL_DEFAULTS.items():
            if status.defaults.get(direction) != policy:
                return False
        return all(self.is_allowed(status, s) for s in self.config.FIREWALL_ALLOW)

    def configure(self, ctx: Optional[TaskContext] = None) -> str:
        for direction, policy in self.config.FIREWALL_DEFAULTS.items():
            self.runner.run([self.UFW, "default", policy, direction], ctx=ctx)
        for service in self.config.FIREWALL_ALLOW:
            self.runner.run([self.UFW, "allow", service], ctx=ctx)
        self.runner.run([self.UFW, "--force", "enable"], ctx=ctx)
        allowed = ", ".join(self.config.FIREWALL_ALLOW) or "nothing"
        return f"ufw active, default deny incoming, allowing {allowed}"


# ----------------------------------------------------------------
# Services
# ----------------------------------------------------------------
class ServiceManager:
    """systemd unit state."""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def enabled_and_active(self, unit: str, ctx: Optional[TaskContext] = None) -> bool:
        return self.runner.succeeds(["systemctl", "is-enabled", "--quiet", unit], ctx) and self.runner.succeeds(
            ["systemctl", "is-active", "--quiet", unit], ctx
        )

    def enable_now(self, unit: str, ctx: Optional[TaskContext] = None) -> str:
        self.runner.run(["systemctl", "enable", "--now", unit], ctx=ctx)
        return f"{unit} enabled and started"


# ----------------------------------------------------------------
# Users and groups
# ----------------------------------------------------------------
def user_in_group(user: TargetUser, group: str) -> bool:
    """
    True when ``user`` is a member of ``group``.

    Raises:
        KeyError: If the group does not exist
    """
    entry = grp.getgrnam(group)
    return user.name in entry.gr_mem or user.gid == entry.gr_gid


class UserManager:
    """Group membership for the target user."""

    def __init__(self, runner: CommandRunner, config: AppConfig) -> None:
        self.runner = runner
        self.config = config

    def is_member(self, group: str) -> bool:
        try:
            return user_in_group(self.config.TARGET, group)
        except KeyError:
            return False

    def add_to_group(self, group: str, ctx: Optional[TaskContext] = None) -> str:
        user = self.config.TARGET.name
        try:
            grp.getgrnam(group)
        except KeyError:
            raise ExecutionError(["usermod", "-aG", group, user], 6, stderr=f"group '{group}' does not exist")
        self.runner.run(["usermod", "-aG", group, user], ctx=ctx)
        return f"{user} added to '{group}' (takes effect after relogging)"
