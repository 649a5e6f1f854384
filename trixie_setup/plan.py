"""
The Debian Trixie post-install plan.

Each task covers one step of the GNOME workstation post-install checklist
and the numbered comments follow that checklist. The task list is plain
data built from AppConfig; the engine knows nothing about apt or ufw.
"""

import os
from pathlib import Path
from typing import List, Optional

from .commands import CommandRunner
from .config import AppConfig, ExternalRepo
from .errors import ApplyFailure
from .fallback import with_fallback
from .system import (
    Firewall,
    PackageManager,
    ServiceManager,
    SourcesManager,
    UserManager,
    download_file,
    ensure_directory,
    file_matches,
    pick_newest,
    read_text,
    write_if_changed,
)
from .tasks import FailurePolicy, Task, TaskContext
from .templating import (
    apply_managed_block,
    has_managed_block,
    render_bashrc_block,
    render_ytdlp_config,
)

FATAL = FailurePolicy.FATAL
TOLERATED = FailurePolicy.TOLERATED


def _repo_tasks(
    repo: ExternalRepo,
    sources: SourcesManager,
    packages: PackageManager,
    policy: FailurePolicy,
) -> List[Task]:
    repo_task = f"repo-{repo.name}"
    return [
        Task(
            name=repo_task,
            description=f"Add the {repo.name} APT repository",
            check=lambda ctx: sources.repo_configured(repo),
            apply=lambda ctx: sources.add_repo(repo, packages, ctx),
            failure_policy=policy,
            depends_on=("apt-update",),
        ),
        Task(
            name=f"install-{repo.package}",
            description=f"Install {repo.package}",
            check=lambda ctx: packages.all_installed([repo.package], ctx),
            apply=lambda ctx: packages.install([repo.package], ctx),
            failure_policy=policy,
            depends_on=(repo_task,),
        ),
    ]


def build_plan(config: AppConfig, runner: Optional[CommandRunner] = None) -> List[Task]:
    """
    Build the ordered task list for a workstation run.

    Args:
        config: Resolved configuration (including the target user)
        runner: Command runner shared by all tasks

    Returns:
        List[Task]: Tasks in dependency order
    """
    runner = runner or CommandRunner(default_timeout=config.COMMAND_TIMEOUT)
    packages = PackageManager(runner, config)
    sources = SourcesManager(runner, config)
    firewall = Firewall(runner, config)
    services = ServiceManager(runner)
    users = UserManager(runner, config)
    target = config.TARGET

    tasks: List[Task] = [
        # 2. System baseline
        Task(
            name="enable-non-free-firmware",
            description=f"Enable the {config.SOURCE_COMPONENT} component in APT sources",
            check=lambda ctx: sources.component_enabled(),
            apply=sources.enable_component,
        ),
        Task(
            name="apt-update",
            description="Refresh package lists",
            check=lambda ctx: packages.lists_fresh(),
            apply=packages.update,
            depends_on=("enable-non-free-firmware",),
        ),
        Task(
            name="apt-upgrade",
            description="Upgrade installed packages",
            check=lambda ctx: packages.upgradable(ctx) == 0,
            apply=packages.upgrade,
            depends_on=("apt-update",),
        ),
        # 3. Security
        Task(
            name="install-security-packages",
            description="Install the firewall and intrusion prevention packages",
            check=lambda ctx: packages.all_installed(config.SECURITY_PACKAGES, ctx),
            apply=lambda ctx: packages.install(config.SECURITY_PACKAGES, ctx),
            depends_on=("apt-update",),
        ),
        Task(
            name="configure-firewall",
            description="Set UFW default policies, allowed services and enable it",
            check=firewall.configured,
            apply=firewall.configure,
            depends_on=("install-security-packages",),
        ),
    ]

    for unit in config.SERVICES:
        tasks.append(
            Task(
                name=f"enable-{unit}",
                description=f"Enable and start {unit}",
                check=lambda ctx, unit=unit: services.enabled_and_active(unit, ctx),
                apply=lambda ctx, unit=unit: services.enable_now(unit, ctx),
                depends_on=("install-security-packages",),
            )
        )

    # 4. Core packages
    tasks += [
        Task(
            name="install-packages",
            description="Install administrative and creative packages",
            check=lambda ctx: packages.all_installed(config.APT_PACKAGES, ctx),
            apply=lambda ctx: packages.install(config.APT_PACKAGES, ctx),
            depends_on=("apt-update",),
        ),
        Task(
            name="remove-evolution",
            description="Remove Evolution",
            check=lambda ctx: packages.none_installed(config.EVOLUTION_PACKAGES, ctx),
            apply=lambda ctx: packages.purge(config.EVOLUTION_PACKAGES, ctx),
            failure_policy=TOLERATED,
        ),
        Task(
            name=f"install-{config.MAIL_CLIENT}",
            description=f"Install {config.MAIL_CLIENT}",
            check=lambda ctx: packages.all_installed([config.MAIL_CLIENT], ctx),
            apply=lambda ctx: packages.install([config.MAIL_CLIENT], ctx),
            depends_on=("apt-update",),
        ),
    ]

    # 5. External packages
    for repo in config.EXTERNAL_REPOS:
        tasks += _repo_tasks(repo, sources, packages, FATAL)

    vbox = config.VIRTUALBOX_REPO
    prefix = config.VIRTUALBOX_PREFIX
    tasks.append(
        Task(
            name=f"repo-{vbox.name}",
            description="Add the Oracle VirtualBox APT repository",
            check=lambda ctx: sources.repo_configured(vbox),
            apply=lambda ctx: sources.add_repo(vbox, packages, ctx),
            failure_policy=TOLERATED,
            depends_on=("apt-update",),
        )
    )
    tasks.append(
        Task(
            name="install-virtualbox",
            description=f"Install {vbox.package} or the newest available {prefix}* package",
            check=lambda ctx: bool(
                pick_newest(packages.installed(packages.search(prefix, ctx), ctx), prefix)
            ),
            apply=with_fallback(
                vbox.package,
                attempt=lambda name, ctx: packages.install([name], ctx),
                discover=lambda ctx: pick_newest(
                    packages.search(prefix, ctx), prefix, exclude=[vbox.package]
                ),
            ),
            failure_policy=TOLERATED,
            depends_on=(f"repo-{vbox.name}",),
        )
    )
    tasks.append(
        Task(
            name="virtualbox-group",
            description=f"Add {target.name} to {config.VIRTUALBOX_GROUP}",
            check=lambda ctx: users.is_member(config.VIRTUALBOX_GROUP),
            apply=lambda ctx: users.add_to_group(config.VIRTUALBOX_GROUP, ctx),
            failure_policy=TOLERATED,
            depends_on=("install-virtualbox",),
        )
    )

    # 5.4 - 5.6 yt-dlp
    def ytdlp_installed(ctx: TaskContext) -> bool:
        binary = config.YTDLP_BIN
        return binary.is_file() and os.access(binary, os.X_OK)

    def install_ytdlp(ctx: TaskContext) -> str:
        ctx.ensure_time()
        size = download_file(
            config.YTDLP_URL,
            config.YTDLP_BIN,
            timeout=min(config.DOWNLOAD_TIMEOUT, ctx.remaining() or config.DOWNLOAD_TIMEOUT),
            mode=0o755,
        )
        version = runner.output([str(config.YTDLP_BIN), "--version"], ctx).strip()
        return f"yt-dlp {version} installed to {config.YTDLP_BIN} ({size} bytes)"

    ytdlp_config = render_ytdlp_config(config.YTDLP_OPTIONS)

    def write_ytdlp_config(ctx: TaskContext) -> str:
        ensure_directory(config.YTDLP_CONFIG_DIR, owner=target)
        write_if_changed(config.YTDLP_CONFIG_FILE, ytdlp_config, owner=target)
        return f"wrote {config.YTDLP_CONFIG_FILE}"

    download_dirs = [target.home / d for d in config.DOWNLOAD_DIRS]

    def create_download_dirs(ctx: TaskContext) -> str:
        created = [str(d) for d in download_dirs if ensure_directory(d, owner=target)]
        return f"created {', '.join(created)}" if created else "directories already exist"

    tasks += [
        Task(
            name="remove-debian-yt-dlp",
            description="Remove the Debian yt-dlp package",
            check=lambda ctx: packages.none_installed([config.YTDLP_DEB_PACKAGE], ctx),
            apply=lambda ctx: packages.purge([config.YTDLP_DEB_PACKAGE], ctx),
            failure_policy=TOLERATED,
        ),
        Task(
            name="install-yt-dlp",
            description="Install the upstream yt-dlp binary",
            check=ytdlp_installed,
            apply=install_ytdlp,
            depends_on=("remove-debian-yt-dlp",),
        ),
        Task(
            name="ytdlp-config",
            description=f"Write the yt-dlp config for {target.name}",
            check=lambda ctx: file_matches(config.YTDLP_CONFIG_FILE, ytdlp_config),
            apply=write_ytdlp_config,
            depends_on=("install-yt-dlp",),
        ),
        Task(
            name="ytdlp-download-dirs",
            description="Create the yt-dlp output directories",
            check=lambda ctx: all(d.is_dir() for d in download_dirs),
            apply=create_download_dirs,
        ),
        # 5.7 Wireshark captures without root
        Task(
            name="wireshark-group",
            description=f"Add {target.name} to {config.WIRESHARK_GROUP}",
            check=lambda ctx: users.is_member(config.WIRESHARK_GROUP),
            apply=lambda ctx: users.add_to_group(config.WIRESHARK_GROUP, ctx),
            depends_on=("install-packages",),
        ),
    ]

    # 6. Shell configuration
    block = render_bashrc_block(config.BASHRC_ALIASES, config.BASHRC_SNIPPETS)
    bashrc: Path = config.BASHRC

    def configure_bashrc(ctx: TaskContext) -> str:
        current = read_text(bashrc)
        if current is None:
            raise ApplyFailure(f"{bashrc} not found; shell configuration skipped")
        if not os.access(bashrc, os.W_OK):
            raise ApplyFailure(f"{bashrc} is not writable; shell configuration skipped")
        if not write_if_changed(bashrc, apply_managed_block(current, block), owner=target):
            return f"{bashrc} unchanged"
        return f"{len(config.BASHRC_ALIASES)} aliases written to {bashrc}"

    tasks.append(
        Task(
            name="bashrc-aliases",
            description=f"Add aliases and environment settings to {bashrc}",
            check=lambda ctx: has_managed_block(read_text(bashrc) or "", block),
            apply=configure_bashrc,
            failure_policy=TOLERATED,
        )
    )

    # 7. Cleanup
    tasks.append(
        Task(
            name="apt-cleanup",
            description="Remove unused packages and clean the package cache",
            check=lambda ctx: packages.autoremove_pending(ctx) == 0 and packages.cache_clean(),
            apply=packages.cleanup,
            failure_policy=TOLERATED,
            depends_on=("install-packages",),
        )
    )
    return tasks
