"""
Configuration for the Debian Trixie post-install run.

Everything the tasks need (package lists, repositories, alias text, target
user, filesystem locations) lives on AppConfig and is passed to the task
closures explicitly.
"""

import os
import pwd
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from .errors import ConfigurationError

VERSION = "1.0.0"


@dataclass(frozen=True)
class TargetUser:
    """The desktop user whose home directory and groups are configured."""

    name: str
    home: Path
    uid: int = 0
    gid: int = 0

    @property
    def owner(self) -> str:
        return f"{self.name}:{self.name}"


@dataclass(frozen=True)
class ExternalRepo:
    """A third-party APT repository signed by a downloaded key."""

    name: str
    key_url: str
    repo_url: str
    list_file: str
    package: str
    arch: str = "amd64"


def resolve_target_user(
    explicit: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> TargetUser:
    """
    Determine the user to configure.

    Order: explicit name, then SUDO_USER, then root.

    Args:
        explicit: User name given on the command line
        environ: Environment to consult (defaults to os.environ)

    Returns:
        TargetUser: Name, home directory and ids from the password database

    Raises:
        ConfigurationError: If the user does not exist
    """
    env = os.environ if environ is None else environ
    name = explicit or env.get("SUDO_USER") or "root"
    if name == "root" and not explicit:
        return TargetUser(name="root", home=Path("/root"))
    try:
        entry = pwd.getpwnam(name)
    except KeyError:
        raise ConfigurationError(f"Target user {name!r} does not exist")
    return TargetUser(
        name=entry.pw_name,
        home=Path(entry.pw_dir),
        uid=entry.pw_uid,
        gid=entry.pw_gid,
    )


@dataclass
class AppConfig:
    """Global application configuration."""

    # Application info
    VERSION: str = VERSION
    APP_NAME: str = "Trixie Setup"
    APP_SUBTITLE: str = "Debian 13 GNOME Post-Install Utility"

    # Logging
    LOG_FILE: str = "/var/log/trixie_setup.log"
    MAX_LOG_SIZE: int = 10 * 1024 * 1024  # 10MB

    # Operation settings
    COMMAND_TIMEOUT: float = 1800  # seconds, per check/apply call
    DOWNLOAD_TIMEOUT: int = 60
    APT_LISTS_MAX_AGE: int = 6 * 3600  # seconds

    # Target user (resolved by the CLI, never read from the environment later)
    TARGET: TargetUser = field(
        default_factory=lambda: TargetUser(name="root", home=Path("/root"))
    )

    # System paths
    SOURCES_LIST: Path = Path("/etc/apt/sources.list")
    SOURCES_DIR: Path = Path("/etc/apt/sources.list.d")
    KEYRING_DIR: Path = Path("/usr/share/keyrings")
    APT_LISTS_DIR: Path = Path("/var/lib/apt/lists")
    APT_ARCHIVES_DIR: Path = Path("/var/cache/apt/archives")

    # APT
    SOURCE_COMPONENT: str = "non-free-firmware"
    SECURITY_PACKAGES: List[str] = field(default_factory=lambda: ["ufw", "fail2ban"])
    APT_PACKAGES: List[str] = field(
        default_factory=lambda: [
            "ufw",
            "nmap",
            "btop",
            "curl",
            "git",
            "python3-venv",
            "python3-pip",
            "pipx",
            "mpv",
            "vlc",
            "gimp",
            "inkscape",
            "audacity",
            "flowblade",
            "keepassxc",
            "firmware-misc-nonfree",
            "filezilla",
            "hexchat",
            "mutt",
            "msmtp",
            "msmtp-mta",
            "rsync",
            "grsync",
            "ansible",
            "cloud-utils",
            "xorriso",
            "cpio",
            "wireshark",
        ]
    )
    EVOLUTION_PACKAGES: List[str] = field(
        default_factory=lambda: [
            "evolution",
            "evolution-data-server",
            "evolution-plugins",
        ]
    )
    MAIL_CLIENT: str = "thunderbird"

    # Firewall
    FIREWALL_DEFAULTS: Dict[str, str] = field(
        default_factory=lambda: {"incoming": "deny", "outgoing": "allow"}
    )
    FIREWALL_ALLOW: List[str] = field(default_factory=lambda: ["ssh"])
    SERVICES: List[str] = field(default_factory=lambda: ["fail2ban"])

    # External repositories
    EXTERNAL_REPOS: List[ExternalRepo] = field(
        default_factory=lambda: [
            ExternalRepo(
                name="google-chrome",
                key_url="https://dl.google.com/linux/linux_signing_key.pub",
                repo_url="http://dl.google.com/linux/chrome/deb/ stable main",
                list_file="google-chrome.list",
                package="google-chrome-stable",
            ),
            ExternalRepo(
                name="google-earth",
                key_url="https://dl.google.com/linux/linux_signing_key.pub",
                repo_url="http://dl.google.com/linux/earth/deb/ stable main",
                list_file="google-earth.list",
                package="google-earth-pro-stable",
            ),
        ]
    )
    VIRTUALBOX_REPO: ExternalRepo = field(
        default_factory=lambda: ExternalRepo(
            name="oracle-virtualbox",
            key_url="https://www.virtualbox.org/download/oracle_vbox_2016.asc",
            repo_url="https://download.virtualbox.org/virtualbox/debian trixie contrib",
            list_file="oracle-virtualbox.list",
            package="virtualbox-7.2",
        )
    )
    VIRTUALBOX_PREFIX: str = "virtualbox-"
    VIRTUALBOX_GROUP: str = "vboxusers"
    WIRESHARK_GROUP: str = "wireshark"

    # yt-dlp
    YTDLP_DEB_PACKAGE: str = "yt-dlp"
    YTDLP_URL: str = "https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp"
    YTDLP_BIN: Path = Path("/usr/local/bin/yt-dlp")
    YTDLP_OPTIONS: List[Tuple[str, str]] = field(
        default_factory=lambda: [
            ("-f", "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"),
            (
                "-o",
                "~/Downloads/YouTube/%(uploader)s/%(playlist_title|Misc Videos)s/"
                "%(upload_date)s - %(title)s [%(id)s].%(ext)s",
            ),
        ]
    )
    DOWNLOAD_DIRS: List[str] = field(
        default_factory=lambda: ["Downloads/YouTube", "Downloads/Videos"]
    )

    # Shell configuration
    BASHRC_ALIASES: Dict[str, str] = field(
        default_factory=lambda: {
            "ls": "ls -F --color=auto",
            "ll": "ls -alF",
            "la": "ls -A",
            "l": "ls -CF",
            "grep": "grep --color=auto",
            "update": "sudo apt update && sudo apt upgrade -y",
            "cleanup": "sudo apt autoremove -y && sudo apt clean",
            "sshkey": 'ssh-keygen -t ed25519 -C "$(whoami)@$(hostname)"',
            "inv": "ansible-inventory -i /etc/ansible/hosts --list --yaml",
            "venv-init": "python3 -m venv .venv && source .venv/bin/activate",
            "ports": "sudo ss -tuln",
            "top": "btop",
            "ytdlp-other": (
                'yt-dlp --no-config -o "~/Downloads/Videos/%(extractor_key)s/'
                '%(uploader|Unknown Uploader)s/%(title)s [%(id)s].%(ext)s"'
            ),
        }
    )
    BASHRC_SNIPPETS: List[str] = field(
        default_factory=lambda: [
            "# Add pipx binaries to PATH\n"
            "if command -v pipx &> /dev/null; then\n"
            '    export PATH="$PATH:$HOME/.local/bin"\n'
            "fi",
            "# Default editor when neither VISUAL nor EDITOR is set\n"
            'if [ -z "$VISUAL" ] && [ -z "$EDITOR" ]; then\n'
            "    export EDITOR=nano\n"
            "fi",
        ]
    )

    NEXT_STEPS: List[str] = field(
        default_factory=lambda: [
            "Reboot (or log out and back in) so the VirtualBox and Wireshark group "
            "changes and kernel modules take effect.",
            "After relogging, run 'update' (your new alias) to confirm the new repositories work.",
            "Configure 'mutt' and 'msmtp' for terminal email, and Thunderbird for GUI mail.",
            "For Ansible, set up /etc/ansible/hosts.",
            "Use 'ytdlp-other' (ignores the default config) for sites other than YouTube.",
        ]
    )

    def __post_init__(self) -> None:
        """Initialize derived configuration values."""
        self.BASHRC: Path = self.TARGET.home / ".bashrc"
        self.YTDLP_CONFIG_DIR: Path = self.TARGET.home / ".config" / "yt-dlp"
        self.YTDLP_CONFIG_FILE: Path = self.YTDLP_CONFIG_DIR / "config"

    def keyring_path(self, repo: ExternalRepo) -> Path:
        return self.KEYRING_DIR / f"{repo.name}-archive-keyring.gpg"

    def list_path(self, repo: ExternalRepo) -> Path:
        return self.SOURCES_DIR / repo.list_file
